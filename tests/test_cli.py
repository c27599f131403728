"""Tests for edulicense.cli.main -- CLI commands using Click's CliRunner.

Covers:
- generate / validate / revoke / renew / transfer round trips
- activate for licenses issued with --require-activation
- Blacklisting and security policy subcommands, device registration
- show (with --claims) / list / check / expiring / audit queries
- scheduler --once
- Error envelopes and exit codes
- A full round trip against a SQLite database file via --db
"""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from edulicense.cli.main import cli
from edulicense.models import LicenseStatus


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, service):
    """Invoke the CLI against the in-memory service fixture."""

    def _invoke(*args: str):
        return runner.invoke(cli, list(args), obj={"service": service})

    return _invoke


def _data(result) -> dict:
    return json.loads(result.output)["data"]


def _generate(invoke, school_id: str = "S1", *extra: str) -> dict:
    result = invoke(
        "generate",
        "--school-id", school_id,
        "--school-name", f"School {school_id}",
        "--days", "30",
        "--feature", "gradebook",
        "--feature", 'reports={"maxUsers": 10}',
        *extra,
        "--json",
    )
    assert result.exit_code == 0, result.output
    return _data(result)["license"]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestGenerate:
    def test_generate_json(self, invoke):
        lic = _generate(invoke)
        assert lic["status"] == "active"
        assert lic["license_key"].startswith("edl_hs_")
        assert lic["features"][1] == {"name": "reports", "enabled": True, "restrictions": {"maxUsers": 10}}
        assert lic["security_restrictions"] is None

    def test_generate_with_restrictions(self, invoke):
        lic = _generate(invoke, "S1", "--max-devices", "3", "--allow-ip", "10.0.0.0/8", "--allow-country", "us")
        policies = lic["security_restrictions"]
        assert policies["device_limit"] == {"enabled": True, "max_devices": 3}
        assert policies["ip_restrictions"]["allowed_countries"] == ["US"]
        assert policies["hardware_binding"]["enabled"] is False

    def test_generate_human_output(self, invoke):
        result = invoke("generate", "--school-id", "S1", "--school-name", "North High")
        assert result.exit_code == 0
        assert "License Issued" in result.output
        assert "North High" in result.output

    def test_duplicate_school_fails(self, invoke):
        _generate(invoke)
        result = invoke("generate", "--school-id", "S1", "--school-name", "Again", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "LICENSE_ALREADY_EXISTS"

    def test_bad_feature_json(self, invoke):
        result = invoke("generate", "--school-id", "S1", "--school-name", "X", "--feature", "reports={oops")
        assert result.exit_code == 2
        assert "not valid JSON" in result.output


class TestActivate:
    def test_activate_pending_license(self, invoke):
        lic = _generate(invoke, "S1", "--require-activation")
        assert lic["status"] == "pending"
        result = invoke("activate", lic["license_key"], "--school-id", "S1", "--by", "installer", "--json")
        assert result.exit_code == 0, result.output
        assert _data(result)["license"]["status"] == "active"
        assert invoke("validate", lic["license_key"], "--school-id", "S1").exit_code == 0

    def test_activate_human_output(self, invoke):
        lic = _generate(invoke, "S1", "--require-activation")
        result = invoke("activate", lic["license_key"], "--school-id", "S1")
        assert result.exit_code == 0
        assert "License Activated" in result.output

    def test_activate_wrong_school(self, invoke, repo):
        lic = _generate(invoke, "S1", "--require-activation")
        result = invoke("activate", lic["license_key"], "--school-id", "S2", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "SCHOOL_ID_MISMATCH"
        assert repo.find_by_id(lic["id"]).metadata["activation_attempts"] == 1

    def test_activate_active_license(self, invoke):
        lic = _generate(invoke)
        result = invoke("activate", lic["license_key"], "--school-id", "S1", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "LICENSE_ALREADY_ACTIVATED"


class TestValidate:
    def test_valid_key(self, invoke):
        lic = _generate(invoke)
        result = invoke("validate", lic["license_key"], "--school-id", "S1", "--json")
        assert result.exit_code == 0, result.output
        data = _data(result)
        assert data["valid"] is True
        assert data["expires_in"] == 30

    def test_wrong_school_exits_1(self, invoke):
        lic = _generate(invoke)
        result = invoke("validate", lic["license_key"], "--school-id", "S2", "--json")
        assert result.exit_code == 1
        assert _data(result)["errors"] == ["License does not match school ID"]

    def test_garbage_key(self, invoke):
        result = invoke("validate", "not-a-key", "--school-id", "S1")
        assert result.exit_code == 1
        assert "License invalid" in result.output

    def test_device_limit_requires_device(self, invoke):
        lic = _generate(invoke, "S1", "--max-devices", "2")
        result = invoke("validate", lic["license_key"], "--school-id", "S1", "--json")
        assert _data(result)["errors"] == ["Device ID required for validation"]
        read_only = invoke("validate", lic["license_key"], "--school-id", "S1", "--read-only", "--json")
        assert read_only.exit_code == 0

    def test_hardware_must_be_json(self, invoke):
        result = invoke("validate", "k", "--school-id", "S1", "--hardware", "{bad")
        assert result.exit_code == 2


class TestRevokeRenewTransfer:
    def test_revoke(self, invoke, repo):
        lic = _generate(invoke)
        result = invoke("revoke", lic["id"], "--by", "admin", "--json")
        assert result.exit_code == 0
        assert _data(result) == {"license_id": lic["id"], "status": "revoked"}
        assert repo.find_by_id(lic["id"]).status is LicenseStatus.REVOKED

    def test_revoke_missing(self, invoke):
        result = invoke("revoke", "nope", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "LICENSE_NOT_FOUND"

    def test_revoke_twice(self, invoke):
        lic = _generate(invoke)
        invoke("revoke", lic["id"])
        result = invoke("revoke", lic["id"], "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "LICENSE_ALREADY_REVOKED"

    def test_renew_reissues_key(self, invoke):
        lic = _generate(invoke)
        result = invoke("renew", lic["id"], "--days", "10", "--json")
        assert result.exit_code == 0, result.output
        renewed = _data(result)["license"]
        assert renewed["expires_at"] > lic["expires_at"]
        assert renewed["license_key"] != lic["license_key"]

    def test_transfer(self, invoke):
        lic = _generate(invoke)
        result = invoke(
            "transfer", lic["id"], "--to-school-id", "S2", "--to-school-name", "South High", "--json"
        )
        assert result.exit_code == 0, result.output
        moved = _data(result)["license"]
        assert moved["school_id"] == "S2"
        valid = invoke("validate", moved["license_key"], "--school-id", "S2", "--json")
        assert valid.exit_code == 0

    def test_transfer_to_same_school(self, invoke):
        lic = _generate(invoke)
        result = invoke("transfer", lic["id"], "--to-school-id", "S1", "--to-school-name", "x", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "INVALID_TRANSFER"


class TestBlacklistAndSecurity:
    def test_blacklist_blocks_validation(self, invoke):
        lic = _generate(invoke)
        assert invoke("blacklist", lic["id"], "--reason", "fraud").exit_code == 0
        result = invoke("validate", lic["license_key"], "--school-id", "S1", "--json")
        assert _data(result)["errors"] == ["License is blacklisted: fraud"]

        assert invoke("unblacklist", lic["id"]).exit_code == 0
        assert invoke("validate", lic["license_key"], "--school-id", "S1").exit_code == 0

    def test_register_hardware(self, invoke):
        lic = _generate(invoke, "S1", "--hardware-binding")
        hw = '{"cpu": "x86"}'
        result = invoke("security", "register-hardware", lic["id"], hw, "--json")
        assert result.exit_code == 0, result.output
        fingerprint = _data(result)["fingerprint"]

        ok = invoke("validate", lic["license_key"], "--school-id", "S1", "--hardware", hw)
        assert ok.exit_code == 0
        other = invoke("validate", lic["license_key"], "--school-id", "S1", "--hardware", '{"cpu": "arm"}')
        assert other.exit_code == 1

        removed = invoke("security", "remove-hardware", lic["id"], fingerprint, "--json")
        assert _data(removed)["removed"] is True

    def test_register_hardware_requires_object(self, invoke):
        result = invoke("security", "register-hardware", "lic", "[1, 2]")
        assert result.exit_code == 2

    def test_ip_restrictions(self, invoke):
        lic = _generate(invoke)
        result = invoke("security", "ip", lic["id"], "--allow-ip", "10.0.0.0/8", "--json")
        assert result.exit_code == 0, result.output
        denied = invoke("validate", lic["license_key"], "--school-id", "S1", "--ip", "8.8.8.8", "--json")
        assert _data(denied)["errors"] == ["IP address not authorized for this license"]
        allowed = invoke("validate", lic["license_key"], "--school-id", "S1", "--ip", "10.1.1.1")
        assert allowed.exit_code == 0

    def test_device_limit(self, invoke):
        lic = _generate(invoke)
        result = invoke("security", "devices", lic["id"], "--max", "5", "--json")
        policies = _data(result)["license"]["security_restrictions"]
        assert policies["device_limit"] == {"enabled": True, "max_devices": 5}

    def test_register_and_remove_device(self, invoke, devices):
        lic = _generate(invoke, "S1", "--max-devices", "1")
        registered = invoke("security", "register-device", lic["id"], "dev-1", "--by", "admin", "--json")
        assert registered.exit_code == 0, registered.output
        assert _data(registered) == {"license_id": lic["id"], "device_id": "dev-1", "device_count": 1}

        full = invoke("security", "register-device", lic["id"], "dev-2", "--json")
        assert full.exit_code == 1
        assert json.loads(full.output)["error"]["code"] == "DEVICE_LIMIT_REACHED"
        denied = invoke("validate", lic["license_key"], "--school-id", "S1", "--device-id", "dev-2", "--json")
        assert _data(denied)["errors"] == ["Device limit exceeded (1/1)"]

        removed = invoke("security", "remove-device", lic["id"], "dev-1", "--json")
        assert _data(removed)["removed"] is True
        assert devices.count_devices_for_license(lic["id"]) == 0
        allowed = invoke("validate", lic["license_key"], "--school-id", "S1", "--device-id", "dev-2")
        assert allowed.exit_code == 0

    def test_security_on_missing_license(self, invoke):
        result = invoke("security", "devices", "nope", "--max", "5", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "LICENSE_NOT_FOUND"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_show_masks_key(self, invoke):
        lic = _generate(invoke)
        result = invoke("show", lic["id"])
        assert result.exit_code == 0
        assert lic["license_key"] not in result.output
        shown = invoke("show", lic["id"], "--show-key", "--json")
        assert _data(shown)["license"]["license_key"] == lic["license_key"]

    def test_show_claims(self, invoke):
        lic = _generate(invoke)
        data = _data(invoke("show", lic["id"], "--claims", "--json"))
        assert data["claims"]["sub"] == "S1"
        assert data["claims"]["license_id"] == lic["id"]
        assert "claims" not in _data(invoke("show", lic["id"], "--json"))
        human = invoke("show", lic["id"], "--claims")
        assert "Claims:" in human.output

    def test_audit_needs_database(self, invoke):
        result = invoke("audit", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "CONFIGURATION_ERROR"

    def test_show_missing(self, invoke):
        result = invoke("show", "nope")
        assert result.exit_code == 1
        assert "LICENSE_NOT_FOUND" in result.output

    def test_list_filters(self, invoke):
        first = _generate(invoke, "S1")
        _generate(invoke, "S2")
        invoke("revoke", first["id"])

        everything = _data(invoke("list", "--json"))
        assert everything["count"] == 2
        active = _data(invoke("list", "--status", "active", "--json"))
        assert [l["school_id"] for l in active["licenses"]] == ["S2"]
        by_school = _data(invoke("list", "--school-id", "S1", "--json"))
        assert by_school["licenses"][0]["status"] == "revoked"

    def test_list_empty_human(self, invoke):
        result = invoke("list")
        assert "No licenses found" in result.output

    def test_list_rejects_unknown_status(self, invoke):
        assert invoke("list", "--status", "bogus").exit_code == 2

    def test_check(self, invoke):
        _generate(invoke)
        result = invoke("check", "--json")
        assert result.exit_code == 0
        report = _data(result)
        assert report["total_checked"] == 1
        assert report["active"] == 1

    def test_expiring(self, invoke):
        _generate(invoke)
        near = _data(invoke("expiring", "--days", "60", "--json"))
        assert near["count"] == 1
        assert near["licenses"][0]["school_id"] == "S1"
        far = _data(invoke("expiring", "--days", "5", "--json"))
        assert far["count"] == 0


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class TestScheduler:
    def test_once(self, invoke):
        _generate(invoke)
        result = invoke("scheduler", "--once", "--json")
        assert result.exit_code == 0, result.output
        data = _data(result)
        assert {t["name"] for t in data["tasks"]} == {
            "daily_license_check",
            "retry_failed_checks",
            "expiration_report",
        }
        assert all(t["status"] == "ok" for t in data["tasks"])
        assert data["failed_tasks"] == []

    def test_once_reports_failures(self, runner, service, monkeypatch):
        def broken():
            raise RuntimeError("db down")

        monkeypatch.setattr(service, "check_licenses", broken)
        result = runner.invoke(cli, ["scheduler", "--once", "--json"], obj={"service": service})
        assert result.exit_code == 1
        failed = _data(result)["failed_tasks"]
        assert failed[0]["task_name"] == "daily_license_check"
        assert failed[0]["last_error"] == "db down"


# ---------------------------------------------------------------------------
# SQLite-backed round trip
# ---------------------------------------------------------------------------


class TestDatabaseRoundTrip:
    def test_state_survives_invocations(self, runner, tmp_path):
        db = str(tmp_path / "cli.db")
        generated = runner.invoke(
            cli, ["--db", db, "generate", "--school-id", "S9", "--school-name", "Lake School", "--json"]
        )
        assert generated.exit_code == 0, generated.output
        lic = _data(generated)["license"]

        validated = runner.invoke(cli, ["--db", db, "validate", lic["license_key"], "--school-id", "S9", "--json"])
        assert validated.exit_code == 0, validated.output
        assert _data(validated)["license"]["last_checked"] is not None

        revoked = runner.invoke(cli, ["--db", db, "revoke", lic["id"]])
        assert revoked.exit_code == 0

        after = runner.invoke(cli, ["--db", db, "validate", lic["license_key"], "--school-id", "S9", "--json"])
        assert after.exit_code == 1
        assert _data(after)["errors"] == ["License is revoked"]

    def test_missing_secret_is_configuration_error(self, runner, tmp_path, monkeypatch):
        monkeypatch.delenv("EDULICENSE_TOKEN_SECRET")
        monkeypatch.delenv("EDULICENSE_HASH_SECRET")
        monkeypatch.delenv("EDULICENSE_FINGERPRINT_SECRET")
        result = runner.invoke(
            cli,
            ["--db", str(tmp_path / "x.db"), "generate", "--school-id", "S1", "--school-name", "X", "--json"],
        )
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "CONFIGURATION_ERROR"

    def test_device_limit_survives_invocations(self, runner, tmp_path):
        db = str(tmp_path / "cli.db")
        generated = runner.invoke(
            cli,
            ["--db", db, "generate", "--school-id", "S9", "--school-name", "Lake School", "--max-devices", "1", "--json"],
        )
        lic = _data(generated)["license"]

        def validate(device_id: str):
            return runner.invoke(
                cli, ["--db", db, "validate", lic["license_key"], "--school-id", "S9", "--device-id", device_id, "--json"]
            )

        assert validate("dev-0").exit_code == 0
        for device_id in ("dev-1", "dev-2"):
            denied = validate(device_id)
            assert denied.exit_code == 1
            assert _data(denied)["errors"] == ["Device limit exceeded (1/1)"]
        assert validate("dev-0").exit_code == 0

    def test_audit_trail(self, runner, tmp_path):
        db = str(tmp_path / "cli.db")
        generated = runner.invoke(
            cli, ["--db", db, "generate", "--school-id", "S9", "--school-name", "Lake School", "--by", "ops", "--json"]
        )
        lic = _data(generated)["license"]
        runner.invoke(cli, ["--db", db, "revoke", lic["id"], "--by", "ops"])

        trail = _data(runner.invoke(cli, ["--db", db, "audit", lic["id"], "--json"]))
        assert [e["event_type"] for e in trail["events"]] == ["license.revoked", "license.generated"]
        assert trail["events"][1]["data"]["by"] == "ops"

        limited = _data(runner.invoke(cli, ["--db", db, "audit", "--limit", "1", "--json"]))
        assert limited["count"] == 1

        human = runner.invoke(cli, ["--db", db, "audit"])
        assert human.exit_code == 0
        assert "license.revoked" in human.output
