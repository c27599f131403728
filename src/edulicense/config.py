"""Configuration for edulicense.

Settings are resolved per key with this precedence (highest first):

    1. Environment variables (``EDULICENSE_HASH_SECRET``, ...)
    2. Config file (``~/.edulicense/config.yaml``, override with
       ``EDULICENSE_CONFIG``)
    3. Built-in defaults

Secrets are never defaulted.  A missing hash secret only becomes an error
when something tries to hash; see :mod:`edulicense.integrity`.
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from edulicense import parse_int_env

logger = logging.getLogger(__name__)

_DEFAULT_EXPIRING_SOON_DAYS = 30
_DEFAULT_FAILURE_THRESHOLD = 3
_DEFAULT_LICENSE_CHECK_INTERVAL = 24 * 3600
_DEFAULT_RETRY_INTERVAL = 4 * 3600
_DEFAULT_EXPIRATION_REPORT_INTERVAL = 7 * 24 * 3600
_DEFAULT_WARNING_THRESHOLDS = [30, 15, 7, 3, 1]

# Valid top-level keys in the config file.
_KNOWN_KEYS: set[str] = {
    "hash_secret",
    "fingerprint_secret",
    "token_secret",
    "signing_private_key",
    "db_path",
    "expiring_soon_days",
    "failure_threshold",
    "license_check_interval",
    "retry_interval",
    "expiration_report_interval",
    "warning_thresholds",
    "alert_webhook_url",
    "alert_webhook_secret",
}

_STRING_ENV: dict[str, str] = {
    "hash_secret": "EDULICENSE_HASH_SECRET",
    "fingerprint_secret": "EDULICENSE_FINGERPRINT_SECRET",
    "token_secret": "EDULICENSE_TOKEN_SECRET",
    "signing_private_key": "EDULICENSE_SIGNING_PRIVATE_KEY",
    "db_path": "EDULICENSE_DB_PATH",
    "alert_webhook_url": "EDULICENSE_ALERT_WEBHOOK_URL",
    "alert_webhook_secret": "EDULICENSE_ALERT_WEBHOOK_SECRET",
}

_INT_ENV: dict[str, str] = {
    "expiring_soon_days": "EDULICENSE_EXPIRING_SOON_DAYS",
    "failure_threshold": "EDULICENSE_FAILURE_THRESHOLD",
    "license_check_interval": "EDULICENSE_LICENSE_CHECK_INTERVAL",
    "retry_interval": "EDULICENSE_RETRY_INTERVAL",
    "expiration_report_interval": "EDULICENSE_EXPIRATION_REPORT_INTERVAL",
}


def get_config_path() -> Path:
    """Return the config file path (``EDULICENSE_CONFIG`` or the default)."""
    override = os.environ.get("EDULICENSE_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".edulicense" / "config.yaml"


@dataclass
class Settings:
    """Resolved process configuration."""

    hash_secret: str | None = None
    fingerprint_secret: str | None = None
    token_secret: str | None = None
    signing_private_key: str | None = None
    db_path: str | None = None
    expiring_soon_days: int = _DEFAULT_EXPIRING_SOON_DAYS
    failure_threshold: int = _DEFAULT_FAILURE_THRESHOLD
    license_check_interval: int = _DEFAULT_LICENSE_CHECK_INTERVAL
    retry_interval: int = _DEFAULT_RETRY_INTERVAL
    expiration_report_interval: int = _DEFAULT_EXPIRATION_REPORT_INTERVAL
    warning_thresholds: list[int] = field(default_factory=lambda: list(_DEFAULT_WARNING_THRESHOLDS))
    alert_webhook_url: str | None = None
    alert_webhook_secret: str | None = None

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        """Return settings as a dict, masking secrets unless *redact* is off."""
        data: dict[str, Any] = {}
        for key in sorted(_KNOWN_KEYS):
            value = getattr(self, key)
            if redact and value and key.endswith(("secret", "private_key")):
                value = "***"
            data[key] = value
        return data


def _check_file_permissions(path: Path) -> None:
    """Warn if *path* is readable by group or others."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
        logger.warning(
            "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
            path,
            stat.S_IMODE(mode),
            path,
        )


def _validate_config_schema(data: dict[str, Any], path: Path) -> None:
    """Log warnings for unknown keys in the config file."""
    unknown = set(data.keys()) - _KNOWN_KEYS
    for key in sorted(unknown):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_KEYS)),
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    _validate_config_schema(data, path)
    return data


def _coerce_int(key: str, value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for config key %s=%r, using default %d", key, value, default)
        return default


def load_settings(path: Path | None = None) -> Settings:
    """Build :class:`Settings` from the environment and the config file."""
    file_data = _read_config_file(path or get_config_path())
    settings = Settings()

    for key, env_name in _STRING_ENV.items():
        env_value = os.environ.get(env_name, "").strip()
        if env_value:
            setattr(settings, key, env_value)
        elif file_data.get(key):
            setattr(settings, key, str(file_data[key]))

    for key, env_name in _INT_ENV.items():
        default = getattr(settings, key)
        if key in file_data:
            default = _coerce_int(key, file_data[key], default)
        setattr(settings, key, parse_int_env(env_name, default))

    thresholds = file_data.get("warning_thresholds")
    if isinstance(thresholds, list):
        try:
            settings.warning_thresholds = sorted({int(t) for t in thresholds}, reverse=True)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid warning_thresholds in config: %r", thresholds)

    if settings.failure_threshold < 1:
        logger.warning("failure_threshold must be >= 1, got %d; using %d",
                       settings.failure_threshold, _DEFAULT_FAILURE_THRESHOLD)
        settings.failure_threshold = _DEFAULT_FAILURE_THRESHOLD

    return settings


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the lazily-loaded process settings."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next :func:`get_settings` reloads."""
    global _settings
    _settings = None
