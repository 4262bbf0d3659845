"""Utility helpers for isbnscout."""

import os
from pathlib import Path


def get_isbnscout_home() -> Path:
    """Directory holding the local database and config.json.

    Defaults to ``~/.isbnscout``; ``ISBNSCOUT_HOME`` overrides it.
    """
    override = os.environ.get("ISBNSCOUT_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".isbnscout"
