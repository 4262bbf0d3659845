"""Settings for the offline-first storage and sync engine.

Priority, highest first:
1. Explicit overrides passed to ``load_settings``
2. Environment variables (ISBNSCOUT_BACKEND_URL, ISBNSCOUT_API_KEY, ...)
3. ~/.isbnscout/config.json
4. Defaults on ``SyncSettings``
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from isbnscout.errors import ConfigurationError
from isbnscout.utils import get_isbnscout_home

logger = logging.getLogger(__name__)

ENV_PREFIX = "ISBNSCOUT_"


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for the local store, ledger and sync engine."""

    db_path: Optional[Path] = None  # defaults to <home>/isbn-scout-offline.db
    backend_url: Optional[str] = None  # remote store; None means local-only
    api_key: Optional[str] = None
    sync_interval: float = 30.0  # seconds between periodic drains
    batch_size: int = 50
    max_retries: int = 5
    resolved_retention_days: int = 7
    failed_retention_days: int = 30
    enqueue_trigger_delay: float = 0.1  # drain shortly after a write
    reconnect_delay: float = 1.0  # drain shortly after the gate opens
    remote_timeout: float = 10.0
    identity_conflict_retries: int = 0  # 0 = fail unreconciled conflicts immediately
    start_online: bool = True

    def resolved_db_path(self) -> Path:
        if self.db_path is not None:
            return Path(self.db_path).expanduser()
        return get_isbnscout_home() / "isbn-scout-offline.db"

    @property
    def remote_configured(self) -> bool:
        return bool(self.backend_url)


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL without a trailing slash if valid, or ``None`` if rejected
        (with a warning logged for each rejection reason).
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url.rstrip("/")


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a config/env value to the type of the field default."""
    if raw is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e
    if name == "db_path":
        return Path(raw).expanduser()
    return raw


def _load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return data


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> SyncSettings:
    """Build settings from config file, environment and explicit overrides."""
    defaults = SyncSettings()
    config_path = config_path or get_isbnscout_home() / "config.json"
    file_values = _load_config_file(config_path)

    values: Dict[str, Any] = {}
    for f in fields(SyncSettings):
        default = getattr(defaults, f.name)
        raw = file_values.get(f.name)
        env_raw = os.environ.get(ENV_PREFIX + f.name.upper())
        if env_raw is not None and env_raw != "":
            raw = env_raw
        if f.name in overrides and overrides[f.name] is not None:
            raw = overrides[f.name]
        if raw is None:
            continue
        values[f.name] = _coerce(f.name, raw, default)

    unknown = set(overrides) - {f.name for f in fields(SyncSettings)}
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")

    settings = replace(defaults, **values)

    if settings.backend_url:
        validated = validate_backend_url(settings.backend_url)
        if validated is None:
            raise ConfigurationError(f"Rejected backend_url: {settings.backend_url}")
        settings = replace(settings, backend_url=validated)

    if settings.batch_size < 1:
        raise ConfigurationError("batch_size must be at least 1")
    if settings.max_retries < 1:
        raise ConfigurationError("max_retries must be at least 1")
    if settings.identity_conflict_retries < 0:
        raise ConfigurationError("identity_conflict_retries must not be negative")

    return settings
