"""NubRub - Pack API service.

FastAPI service exposing pack discovery, import, export and delete over HTTP.
"""

__all__: list[str] = []
