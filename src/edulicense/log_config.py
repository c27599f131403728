"""Log rotation and secret scrubbing for edulicense.

License keys are bearer credentials, so anything that looks like one
(``edl_hs_...`` / ``edl_v2_...``) is redacted from log output together
with configured secrets, tokens, passwords and ``Authorization`` headers.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".edulicense", "logs")
_LOG_FILE = "edulicense.log"
_REDACTED = "***REDACTED***"

_KEY_VALUE = r'["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]]+)'

_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Full credentials first, so the key/value patterns below see the marker.
    (re.compile(r"\bedl_(hs|v2)_[A-Za-z0-9+/=\-]+_[A-Za-z0-9+/=\-]+"), r"edl_\1_" + _REDACTED),
    (re.compile(r"((?:hash|fingerprint|token|webhook)_secret" + _KEY_VALUE, re.IGNORECASE),
     r"\1" + _REDACTED),
    (re.compile(r"(signing_private_key" + _KEY_VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(license_key" + _KEY_VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(token" + _KEY_VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(password" + _KEY_VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(secret" + _KEY_VALUE, re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(X-EduLicense-Signature:\s*)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(Authorization:\s*(?:Bearer|Basic)\s+)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
]


def scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class ScrubFilter(logging.Filter):
    """Redacts license keys and secrets from the message and its arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: scrub(v) if isinstance(v, str) else v for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(scrub(a) if isinstance(a, str) else a for a in record.args)
        return True


def configure_logging(
    log_dir: str | None = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: str | None = None,
) -> str:
    """Install a rotating file handler and the scrub filter on the root logger.

    :param log_dir: Directory for ``edulicense.log``.  Reads
        ``EDULICENSE_LOG_DIR``, then falls back to ``~/.edulicense/logs/``.
    :param max_bytes: Size at which the file rotates (default 10 MB).
    :param backup_count: Rotated files to keep (default 5).
    :param level: Level name.  Reads ``EDULICENSE_LOG_LEVEL``, then ``INFO``.
    :returns: Path of the log file.
    """
    log_dir = log_dir or os.environ.get("EDULICENSE_LOG_DIR", _DEFAULT_LOG_DIR)
    level = level or os.environ.get("EDULICENSE_LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, _LOG_FILE)
    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root.addHandler(file_handler)

    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(ScrubFilter())
    return log_path
