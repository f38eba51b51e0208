"""NubRub - Configuration constants.

Module-level constants with environment overrides. No external config libraries.
The packs root is host-supplied; every component also accepts it explicitly.
"""

import os
import platform
from pathlib import Path

APP_NAME = "NubRub"
PACKS_FOLDER_NAME = "AudioPacks"

# Package-relative specs directory (JSON schemas shipped with the package)
SPECS_DIR = Path(__file__).parent / "specs"
MANIFEST_SCHEMA_PATH = SPECS_DIR / "pack_manifest.schema.json"


def _get_default_packs_dir() -> Path:
    """Resolve the packs root directory.

    NUBRUB_PACKS_DIR wins when set. Otherwise LocalAppData on Windows and the
    XDG data directory elsewhere.

    Returns:
        Absolute path of the packs root (not created here).
    """
    env_val = os.environ.get("NUBRUB_PACKS_DIR")
    if env_val:
        return Path(env_val).expanduser()

    if platform.system().lower() == "windows":
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            return Path(local_appdata) / APP_NAME / PACKS_FOLDER_NAME
        return Path.home() / "AppData" / "Local" / APP_NAME / PACKS_FOLDER_NAME

    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / APP_NAME / PACKS_FOLDER_NAME


def _get_retry_base_ms() -> int:
    """Get the file-operation backoff base from environment or use default.

    Environment variable NUBRUB_RETRY_BASE_MS allows override for testing.

    Returns:
        Base delay in milliseconds.
    """
    env_val = os.environ.get("NUBRUB_RETRY_BASE_MS")
    if env_val:
        try:
            base = int(env_val)
            if base >= 0:
                return base
        except ValueError:
            pass
    return 200


def _get_verify_wav_headers() -> bool:
    return os.environ.get("NUBRUB_VERIFY_WAV_HEADERS") == "1"


PACKS_DIR = _get_default_packs_dir()

# On-disk names
MANIFEST_FILENAME = "pack.json"
INSTRUCTIONS_FILENAME = "HOW_TO_CREATE_AUDIO_PACKS.txt"
PACK_ARCHIVE_SUFFIX = ".nubrub"

# Validation limits
MAX_MANIFEST_BYTES = 100 * 1024
MAX_ASSET_BYTES = 50 * 1024 * 1024
MAX_ASSETS_PER_PACK = 20
MAX_PACK_NAME_LENGTH = 100
MAX_ASSET_NAME_LENGTH = 255
ALLOWED_ASSET_SUFFIXES = (".wav",)
DEFAULT_PACK_VERSION = "1.0"
FALLBACK_PACK_NAME = "AudioPack"

# Archive limits (import bundles)
MAX_ARCHIVE_ENTRIES = 64
MAX_ARCHIVE_TOTAL_BYTES = MAX_ASSETS_PER_PACK * MAX_ASSET_BYTES + MAX_MANIFEST_BYTES

# Name suffixes used to resolve collisions
IMPORT_RENAME_SUFFIX = " (Imported)"
COPY_SUFFIX = " Copy"

# File-operation retry policy
# Delays in seconds between attempts: 0.2, 0.4, 0.8, 1.6 (with default base)
RETRY_BASE_MS = _get_retry_base_ms()
FILE_OP_RETRY_DELAYS_SECONDS = tuple(RETRY_BASE_MS * (2**n) / 1000 for n in range(4))
# Total attempts = initial attempt + one per delay
FILE_OP_MAX_ATTEMPTS = 1 + len(FILE_OP_RETRY_DELAYS_SECONDS)

# Short inner retry when clearing a copy destination
COPY_DEST_DELETE_DELAYS_SECONDS = (0.1, 0.2)

VERIFY_WAV_HEADERS = _get_verify_wav_headers()
