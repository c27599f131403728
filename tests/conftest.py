"""Shared fixtures for the edulicense test suite.

Every test runs with known secrets in the environment, an isolated config
path and freshly reset process-wide singletons.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from edulicense import config as config_mod
from edulicense import credentials as credentials_mod
from edulicense import integrity as integrity_mod
from edulicense.credentials import CredentialCodec
from edulicense.events import EventBus
from edulicense.integrity import IntegritySigner
from edulicense.models import Feature, License, LicenseStatus, utcnow
from edulicense.notifications import NotificationSink
from edulicense.repository import InMemoryDeviceRegistry, InMemoryLicenseRepository
from edulicense.service import LicenseService

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HASH_SECRET = "test-hash-secret"
FINGERPRINT_SECRET = "test-fingerprint-secret"
TOKEN_SECRET = "test-token-secret"

_ISOLATED_ENV = (
    "EDULICENSE_SIGNING_PRIVATE_KEY",
    "EDULICENSE_VERIFY_KEYS_JSON",
    "EDULICENSE_ALERT_WEBHOOK_URL",
    "EDULICENSE_ALERT_WEBHOOK_SECRET",
    "EDULICENSE_EXPIRING_SOON_DAYS",
    "EDULICENSE_FAILURE_THRESHOLD",
    "EDULICENSE_LICENSE_CHECK_INTERVAL",
    "EDULICENSE_RETRY_INTERVAL",
    "EDULICENSE_EXPIRATION_REPORT_INTERVAL",
    "EDULICENSE_EVENT_HISTORY",
    "EDULICENSE_LOG_DIR",
    "EDULICENSE_LOG_LEVEL",
)


def _reset_singletons() -> None:
    config_mod.reset_settings()
    integrity_mod.reset_signer()
    credentials_mod.reset_codec()


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Point configuration at a scratch directory with test secrets."""
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("EDULICENSE_CONFIG", str(tmp_path / "config.yaml"))
    monkeypatch.setenv("EDULICENSE_DB_PATH", str(tmp_path / "licenses.db"))
    monkeypatch.setenv("EDULICENSE_HASH_SECRET", HASH_SECRET)
    monkeypatch.setenv("EDULICENSE_FINGERPRINT_SECRET", FINGERPRINT_SECRET)
    monkeypatch.setenv("EDULICENSE_TOKEN_SECRET", TOKEN_SECRET)
    _reset_singletons()
    yield
    _reset_singletons()


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


@pytest.fixture
def signer() -> IntegritySigner:
    return IntegritySigner(HASH_SECRET, FINGERPRINT_SECRET)


@pytest.fixture
def codec() -> CredentialCodec:
    return CredentialCodec(TOKEN_SECRET)


@pytest.fixture
def repo() -> InMemoryLicenseRepository:
    return InMemoryLicenseRepository()


@pytest.fixture
def devices() -> InMemoryDeviceRegistry:
    return InMemoryDeviceRegistry()


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=NotificationSink)


@pytest.fixture
def bus() -> EventBus:
    return EventBus(max_history=100)


@pytest.fixture
def service(repo, devices, notifier, bus, signer, codec) -> LicenseService:
    return LicenseService(
        repo,
        device_counter=devices,
        notifier=notifier,
        event_bus=bus,
        signer=signer,
        codec=codec,
    )


@pytest.fixture
def make_license():
    """Factory for unsigned license records with sensible defaults."""

    def _make(**overrides) -> License:
        now = utcnow()
        values = {
            "id": "lic-1",
            "school_id": "S1",
            "school_name": "North High",
            "issued_at": now,
            "expires_at": now + timedelta(days=30),
            "features": [Feature("gradebook"), Feature("reports", restrictions={"maxUsers": 10})],
            "status": LicenseStatus.ACTIVE,
        }
        values.update(overrides)
        return License(**values)

    return _make
