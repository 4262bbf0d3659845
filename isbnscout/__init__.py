"""
isbnscout - offline-first storage and sync for the ISBN Scout reseller app.

Writes land in a local SQLite store and reach the cloud through a durable
sync ledger.
"""

from .config import SyncSettings, load_settings
from .storage import HybridStorage, open_storage

try:
    from importlib.metadata import version

    __version__ = version("isbnscout")
except Exception:
    __version__ = "0.0.0"

__all__ = ["HybridStorage", "open_storage", "SyncSettings", "load_settings"]
