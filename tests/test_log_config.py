"""Tests for edulicense.log_config -- log rotation and scrubbing."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import pytest

from edulicense.log_config import ScrubFilter, configure_logging, scrub

KEY = "edl_hs_eyJzdWIiOiJTMSJ9_c2lnbmF0dXJl"


class TestScrub:
    def test_redacts_license_key(self):
        result = scrub(f"validating {KEY} for S1")
        assert "eyJzdWIiOiJTMSJ9" not in result
        assert "edl_hs_***REDACTED***" in result
        assert result.endswith(" for S1")

    def test_redacts_v2_key(self):
        result = scrub("key edl_v2_cGF5bG9hZA_c2ln")
        assert "cGF5bG9hZA" not in result

    @pytest.mark.parametrize(
        "text, secret",
        [
            ("hash_secret=abc123", "abc123"),
            ('fingerprint_secret: "fp-secret"', "fp-secret"),
            ("signing_private_key=MC4CAQAw", "MC4CAQAw"),
            ("token=tok_live_xyz", "tok_live_xyz"),
            ("password=hunter2", "hunter2"),
            ("X-EduLicense-Signature: sha256=deadbeef", "deadbeef"),
            ("Authorization: Bearer eyJhbGciOi.payload", "eyJhbGciOi.payload"),
            ("Authorization: Basic dXNlcjpwYXNz", "dXNlcjpwYXNz"),
        ],
    )
    def test_redacts_secrets(self, text, secret):
        result = scrub(text)
        assert secret not in result
        assert "***REDACTED***" in result

    def test_preserves_non_sensitive(self):
        msg = "License lic-1 for North High validated (expires in 12 days)"
        assert scrub(msg) == msg


class TestScrubFilter:
    def _record(self, msg, args):
        return logging.LogRecord(
            name="test", level=logging.INFO, pathname="", lineno=0,
            msg=msg, args=args, exc_info=None,
        )

    def test_scrubs_message(self):
        record = self._record(f"key={KEY}", ())
        assert ScrubFilter().filter(record) is True
        assert "eyJzdWIiOiJTMSJ9" not in record.msg

    def test_scrubs_tuple_args(self):
        record = self._record("validating %s", (KEY,))
        ScrubFilter().filter(record)
        assert "eyJzdWIiOiJTMSJ9" not in record.getMessage()

    def test_leaves_non_string_args(self):
        record = self._record("count %d", (3,))
        ScrubFilter().filter(record)
        assert record.getMessage() == "count 3"


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers = list(root.handlers)
        level = root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers = handlers
        for handler in handlers:
            handler.filters = [f for f in handler.filters if not isinstance(f, ScrubFilter)]
        root.setLevel(level)

    def test_creates_log_file(self, tmp_path):
        path = configure_logging(str(tmp_path / "logs"))
        assert path == os.path.join(str(tmp_path / "logs"), "edulicense.log")
        logging.getLogger("edulicense.test").warning("license %s issued", KEY)
        for handler in logging.getLogger().handlers:
            handler.flush()
        content = open(path, encoding="utf-8").read()
        assert "license edl_hs_***REDACTED*** issued" in content

    def test_env_dir_and_level(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EDULICENSE_LOG_DIR", str(tmp_path / "envlogs"))
        monkeypatch.setenv("EDULICENSE_LOG_LEVEL", "debug")
        path = configure_logging()
        assert path.startswith(str(tmp_path / "envlogs"))
        assert logging.getLogger().level == logging.DEBUG

    def test_idempotent(self, tmp_path):
        configure_logging(str(tmp_path))
        configure_logging(str(tmp_path))
        root = logging.getLogger()
        assert sum(isinstance(h, RotatingFileHandler) for h in root.handlers) == 1
        for handler in root.handlers:
            assert sum(isinstance(f, ScrubFilter) for f in handler.filters) == 1
