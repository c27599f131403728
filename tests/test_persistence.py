"""Tests for the license repositories: in-memory and SQLite (LicenseDB).

Covers:
- Repository contract behaviour shared by both implementations
- Patch validation and immutable fields
- Record isolation (copies in and out)
- SQLite round trip of nested JSON columns and timestamps
- Device registration and counting
- Audit trail via the event bus
- File permissions and the get_db singleton
"""

from __future__ import annotations

import os
import stat
import sys
from datetime import timedelta

import pytest

from edulicense import persistence
from edulicense.events import EventBus, EventType
from edulicense.models import (
    DeviceLimit,
    Feature,
    IpRestrictions,
    LicenseStatus,
    SecurityRestrictions,
)
from edulicense.persistence import LicenseDB
from edulicense.repository import InMemoryDeviceRegistry, InMemoryLicenseRepository, validate_patch


@pytest.fixture(params=["memory", "sqlite"])
def any_repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLicenseRepository()
        return
    db = LicenseDB(str(tmp_path / "repo.db"))
    yield db
    db.close()


@pytest.fixture
def db(tmp_path):
    instance = LicenseDB(str(tmp_path / "licenses.db"))
    yield instance
    instance.close()


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class TestRepositoryContract:
    def test_create_assigns_id(self, any_repo, make_license):
        stored = any_repo.create(make_license(id=""))
        assert stored.id
        assert any_repo.find_by_id(stored.id).school_id == "S1"

    def test_find_by_credential(self, any_repo, make_license):
        any_repo.create(make_license(license_key="edl_hs_key_sig"))
        assert any_repo.find_by_credential("edl_hs_key_sig").id == "lic-1"
        assert any_repo.find_by_credential("edl_hs_other_sig") is None
        assert any_repo.find_by_credential("") is None

    def test_find_active_by_school(self, any_repo, make_license):
        any_repo.create(make_license(id="old", status=LicenseStatus.REVOKED))
        assert any_repo.find_active_by_school_id("S1") is None
        any_repo.create(make_license(id="new", license_key="k2"))
        assert any_repo.find_active_by_school_id("S1").id == "new"

    def test_update_applies_patch(self, any_repo, make_license):
        lic = any_repo.create(make_license())
        updated = any_repo.update(lic.id, {"blacklisted": True, "blacklist_reason": "fraud"})
        assert updated.blacklisted is True
        assert any_repo.find_by_id(lic.id).blacklist_reason == "fraud"
        assert updated.updated_at >= lic.updated_at

    def test_update_missing_returns_none(self, any_repo):
        assert any_repo.update("missing", {"blacklisted": True}) is None

    def test_update_rejects_immutable_fields(self, any_repo, make_license):
        lic = any_repo.create(make_license())
        with pytest.raises(ValueError, match="id"):
            any_repo.update(lic.id, {"id": "other"})

    def test_update_status(self, any_repo, make_license):
        lic = any_repo.create(make_license())
        any_repo.update_status(lic.id, LicenseStatus.EXPIRED)
        assert any_repo.find_by_id(lic.id).status is LicenseStatus.EXPIRED

    def test_list_all_filters(self, any_repo, make_license):
        base = make_license().created_at
        any_repo.create(make_license(id="a", created_at=base))
        any_repo.create(make_license(id="b", school_id="S2", license_key="k2", created_at=base + timedelta(seconds=1)))
        any_repo.create(
            make_license(id="c", status=LicenseStatus.REVOKED, license_key="k3", created_at=base + timedelta(seconds=2))
        )
        assert [l.id for l in any_repo.list_all()] == ["a", "b", "c"]
        assert [l.id for l in any_repo.list_all(statuses=[LicenseStatus.ACTIVE])] == ["a", "b"]
        assert [l.id for l in any_repo.list_all(school_id="S1")] == ["a", "c"]
        assert any_repo.list_all(statuses=[]) == []


class TestPatchValidation:
    def test_allowed(self):
        validate_patch({"status": LicenseStatus.ACTIVE, "metadata": {}})

    def test_rejected(self):
        with pytest.raises(ValueError):
            validate_patch({"created_at": None})


class TestInMemoryIsolation:
    def test_returned_records_are_copies(self, make_license):
        repo = InMemoryLicenseRepository()
        lic = repo.create(make_license())
        lic.features.append(Feature("sneaky"))
        assert [f.name for f in repo.find_by_id(lic.id).features] == ["gradebook", "reports"]

    def test_device_registry(self):
        registry = InMemoryDeviceRegistry()
        assert registry.register_device("lic", "a") == 1
        assert registry.register_device("lic", "a") == 1
        assert registry.register_device("lic", "b") == 2
        assert registry.remove_device("lic", "a") is True
        assert registry.remove_device("lic", "a") is False
        assert registry.count_devices_for_license("lic") == 1
        assert registry.has_device("lic", "b") is True
        assert registry.has_device("lic", "a") is False
        assert registry.has_device("other", "b") is False


# ---------------------------------------------------------------------------
# SQLite specifics
# ---------------------------------------------------------------------------


class TestLicenseDB:
    def test_nested_fields_round_trip(self, db, make_license):
        restrictions = SecurityRestrictions(
            ip_restrictions=IpRestrictions(enabled=True, allowed_ips=["10.0.0.0/8"], allowed_countries=["US"]),
            device_limit=DeviceLimit(enabled=True, max_devices=4),
        )
        lic = make_license(
            security_restrictions=restrictions,
            metadata={"renewal_history": [{"days": 30}]},
            fingerprint="fp",
            license_hash="h",
        )
        db.create(lic)
        loaded = db.find_by_id(lic.id)
        assert loaded.security_restrictions == restrictions
        assert loaded.features == lic.features
        assert loaded.metadata == {"renewal_history": [{"days": 30}]}
        assert loaded.expires_at == lic.expires_at
        assert loaded.issued_at.tzinfo is not None

    def test_persists_across_connections(self, tmp_path, make_license):
        path = str(tmp_path / "durable.db")
        first = LicenseDB(path)
        first.create(make_license())
        first.close()
        second = LicenseDB(path)
        try:
            assert second.find_by_id("lic-1").school_name == "North High"
        finally:
            second.close()

    def test_duplicate_credential_rejected(self, db, make_license):
        db.create(make_license(id="a", license_key="same"))
        with pytest.raises(Exception):
            db.create(make_license(id="b", license_key="same"))
        assert db.find_by_id("b") is None

    def test_empty_credentials_do_not_collide(self, db, make_license):
        db.create(make_license(id="a"))
        db.create(make_license(id="b"))
        assert len(db.list_all()) == 2

    def test_devices(self, db):
        assert db.register_device("lic-1", "a") == 1
        assert db.register_device("lic-1", "a") == 1
        assert db.register_device("lic-1", "b") == 2
        assert db.remove_device("lic-1", "b") is True
        assert db.count_devices_for_license("lic-1") == 1
        assert db.has_device("lic-1", "a") is True
        assert db.has_device("lic-1", "b") is False

    def test_audit_trail_from_event_bus(self, db):
        bus = EventBus()
        bus.subscribe(None, db.log_event)
        bus.publish(EventType.LICENSE_REVOKED, {"license_id": "lic-1", "by": "admin"}, source="service")
        bus.publish(EventType.LICENSE_RENEWED, {"license_id": "lic-2", "days": 30}, source="service")

        trail = db.audit_trail()
        assert [e["event_type"] for e in trail] == ["license.renewed", "license.revoked"]
        only = db.audit_trail("lic-1")
        assert len(only) == 1
        assert only[0]["data"]["by"] == "admin"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_is_owner_only(self, db):
        mode = stat.S_IMODE(os.stat(db.path).st_mode)
        assert mode == 0o600

    def test_in_memory_database(self, make_license):
        mem = LicenseDB(":memory:")
        try:
            mem.create(make_license())
            assert mem.find_by_id("lic-1") is not None
        finally:
            mem.close()

    def test_get_db_uses_configured_path(self, monkeypatch, tmp_path):
        monkeypatch.setattr(persistence, "_db", None)
        instance = persistence.get_db()
        try:
            assert instance.path == str(tmp_path / "licenses.db")
            assert persistence.get_db() is instance
        finally:
            instance.close()
            monkeypatch.setattr(persistence, "_db", None)
