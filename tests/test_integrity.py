"""Tests for edulicense.integrity -- license hash, fingerprint and hardware digests.

Covers:
- License hash determinism and sensitivity to each covered field
- Fields outside the hash (status, metadata) do not change it
- Fingerprint coverage of the credential prefix and security restrictions
- Missing secrets raise ConfigurationError
- Hardware fingerprint ordering independence
- Module-level helpers backed by settings
"""

from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest

from edulicense import integrity
from edulicense.errors import ConfigurationError
from edulicense.integrity import IntegritySigner, compute_hardware_fingerprint
from edulicense.models import Feature, LicenseStatus, SecurityRestrictions

# ---------------------------------------------------------------------------
# License hash
# ---------------------------------------------------------------------------


class TestLicenseHash:
    def test_round_trip(self, signer, make_license):
        lic = make_license()
        digest = signer.compute_license_hash(lic)
        assert signer.verify_license_hash(lic, digest) is True

    def test_hex_sha256_length(self, signer, make_license):
        assert len(signer.compute_license_hash(make_license())) == 64

    def test_deterministic(self, signer, make_license):
        lic = make_license()
        assert signer.compute_license_hash(lic) == signer.compute_license_hash(lic)

    @pytest.mark.parametrize(
        "field, value",
        [
            ("school_id", "S2"),
            ("school_name", "South High"),
            ("features", [Feature("gradebook", enabled=False)]),
        ],
    )
    def test_covered_field_changes_digest(self, signer, make_license, field, value):
        lic = make_license()
        original = signer.compute_license_hash(lic)
        changed = dataclasses.replace(lic, **{field: value})
        assert signer.compute_license_hash(changed) != original
        assert signer.verify_license_hash(changed, original) is False

    def test_expiry_change_changes_digest(self, signer, make_license):
        lic = make_license()
        extended = dataclasses.replace(lic, expires_at=lic.expires_at + timedelta(days=1))
        assert signer.compute_license_hash(extended) != signer.compute_license_hash(lic)

    def test_uncovered_fields_do_not_change_digest(self, signer, make_license):
        lic = make_license()
        other = dataclasses.replace(
            lic,
            status=LicenseStatus.REVOKED,
            metadata={"note": "x"},
            blacklisted=True,
            features=[Feature(f.name, f.enabled, {"maxUsers": 999}) for f in lic.features],
        )
        assert signer.compute_license_hash(other) == signer.compute_license_hash(lic)

    def test_different_secret_different_digest(self, make_license):
        lic = make_license()
        assert IntegritySigner("a").compute_license_hash(lic) != IntegritySigner("b").compute_license_hash(lic)

    def test_empty_stored_hash_fails(self, signer, make_license):
        assert signer.verify_license_hash(make_license(), "") is False
        assert signer.verify_license_hash(make_license(), None) is False

    def test_missing_secret_raises(self, make_license):
        with pytest.raises(ConfigurationError, match="EDULICENSE_HASH_SECRET"):
            IntegritySigner(None).compute_license_hash(make_license())


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------


class TestFingerprint:
    def test_no_fingerprint_verifies(self, signer, make_license):
        assert signer.verify_fingerprint(make_license(fingerprint=None)) is True

    def test_round_trip(self, signer, make_license):
        lic = make_license(license_key="edl_hs_abcdefghijklmnopqrstuvwxyz")
        lic.fingerprint = signer.compute_fingerprint(lic)
        assert signer.verify_fingerprint(lic) is True

    def test_tampered_restrictions_detected(self, signer, make_license):
        lic = make_license(security_restrictions=SecurityRestrictions())
        lic.fingerprint = signer.compute_fingerprint(lic)
        lic.security_restrictions.device_limit.enabled = True
        assert signer.verify_fingerprint(lic) is False

    def test_only_credential_prefix_is_covered(self, signer, make_license):
        lic = make_license(license_key="edl_hs_" + "A" * 13 + "tail-one")
        same_prefix = dataclasses.replace(lic, license_key="edl_hs_" + "A" * 13 + "tail-two")
        assert signer.compute_fingerprint(lic) == signer.compute_fingerprint(same_prefix)

        other_prefix = dataclasses.replace(lic, license_key="edl_hs_" + "B" * 13 + "tail-one")
        assert signer.compute_fingerprint(lic) != signer.compute_fingerprint(other_prefix)

    def test_fingerprint_secret_defaults_to_hash_secret(self, make_license):
        lic = make_license()
        assert IntegritySigner("k").compute_fingerprint(lic) == IntegritySigner("k", "k").compute_fingerprint(lic)

    def test_missing_secret_raises_only_when_fingerprint_stored(self, make_license):
        bare = IntegritySigner(None)
        assert bare.verify_fingerprint(make_license()) is True
        with pytest.raises(ConfigurationError):
            bare.verify_fingerprint(make_license(fingerprint="abc"))


# ---------------------------------------------------------------------------
# Hardware fingerprint
# ---------------------------------------------------------------------------


class TestHardwareFingerprint:
    def test_key_order_independent(self):
        a = compute_hardware_fingerprint({"cpu": "x86", "mac": "aa:bb", "disk": "123"})
        b = compute_hardware_fingerprint({"disk": "123", "mac": "aa:bb", "cpu": "x86"})
        assert a == b

    def test_value_sensitive(self):
        assert compute_hardware_fingerprint({"mac": "aa"}) != compute_hardware_fingerprint({"mac": "ab"})

    def test_unserialisable_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            compute_hardware_fingerprint({"obj": object()})


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


class TestModuleHelpers:
    def test_uses_settings_secret(self, make_license):
        lic = make_license()
        expected = IntegritySigner("test-hash-secret").compute_license_hash(lic)
        assert integrity.compute_license_hash(lic) == expected
        assert integrity.verify_license_hash(lic, expected) is True

    def test_signer_is_cached(self):
        assert integrity.get_signer() is integrity.get_signer()

    def test_missing_env_secret_raises(self, monkeypatch, make_license):
        monkeypatch.delenv("EDULICENSE_HASH_SECRET")
        monkeypatch.delenv("EDULICENSE_FINGERPRINT_SECRET")
        from edulicense.config import reset_settings

        reset_settings()
        integrity.reset_signer()
        with pytest.raises(ConfigurationError):
            integrity.compute_license_hash(make_license())
