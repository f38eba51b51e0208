"""NubRub - Audio pack validation and repository engine.

Provides:
- Pack manifest parsing and validation (pack.json + JSON schema in specs/)
- Discovery of built-in and custom packs under the packs root
- Import of .nubrub bundles, interactive authoring, export and delete
- Path safety and retrying file operations for files held open by playback
"""

__version__ = "0.1.0"
