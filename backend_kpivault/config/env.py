"""
Environment variable loading for the KPI vault alert worker.

- Loads .env from the project root and from the package directory when available.
- Typed readers for strings, booleans, ints and floats; bad numbers raise ConfigError.
- mask_url() hides API keys embedded in RPC URLs before they are logged.
"""

from __future__ import annotations

import os
from pathlib import Path

from backend_kpivault.core.exceptions import ConfigError

# Project root: config is backend_kpivault/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATHS = (_PACKAGE_DIR / ".env", _ROOT / ".env")

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def load_worker_env() -> None:
    """Load .env files (package dir first, then project root). Existing env vars win."""
    from dotenv import load_dotenv

    for path in _ENV_PATHS:
        if path.is_file():
            load_dotenv(path, override=False)


def env_str(name: str, default: str = "", *aliases: str) -> str:
    """Return the first non-empty value among name and aliases, stripped."""
    for key in (name, *aliases):
        raw = (os.getenv(key) or "").strip()
        if raw:
            return raw
    return default


def env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, default: int | None) -> int | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer (got {raw!r})") from e


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number (got {raw!r})") from e


def mask_url(url: str) -> str:
    """Mask api keys in RPC URLs (query api-key= or a trailing /v2/<key> path segment)."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    if "/v2/" in url:
        return url.split("/v2/")[0] + "/v2/***"
    if "/v3/" in url:
        return url.split("/v3/")[0] + "/v3/***"
    return url
