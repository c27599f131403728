"""Keyed integrity digests over license records.

Two digests protect a persisted license against tampering:

- the **license hash**, an HMAC-SHA256 over the canonical fields
  ``{schoolId, schoolName, features[{name, enabled}], issuedAt, expiresAt}``;
- the **fingerprint**, a broader HMAC that also covers the first 20
  characters of the credential and the security restrictions.

A third, unkeyed digest identifies client hardware for hardware binding.

All comparisons go through :func:`hmac.compare_digest`.  A missing secret
or an unserialisable field raises :class:`ConfigurationError`; it is never
reported as a validation failure.

Example::

    signer = IntegritySigner(hash_secret="s3cret")
    digest = signer.compute_license_hash(license)
    signer.verify_license_hash(license, digest)   # → True
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
from typing import Any

from edulicense.config import get_settings
from edulicense.errors import ConfigurationError
from edulicense.models import License, format_timestamp

logger = logging.getLogger(__name__)

# Length of the credential prefix folded into the fingerprint.
_CREDENTIAL_PREFIX_LEN = 20


def _canonical_json(payload: Any, *, sort_keys: bool = False) -> bytes:
    try:
        return json.dumps(
            payload,
            separators=(",", ":"),
            sort_keys=sort_keys,
            ensure_ascii=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"License data is not serialisable for hashing: {exc}") from exc


def _hash_fields(license: License) -> dict[str, Any]:
    return {
        "schoolId": license.school_id,
        "schoolName": license.school_name,
        "features": [{"name": f.name, "enabled": f.enabled} for f in license.features],
        "issuedAt": format_timestamp(license.issued_at),
        "expiresAt": format_timestamp(license.expires_at),
    }


def _fingerprint_fields(license: License) -> dict[str, Any]:
    fields = _hash_fields(license)
    fields["licenseKey"] = (license.license_key or "")[:_CREDENTIAL_PREFIX_LEN]
    fields["securityRestrictions"] = (
        license.security_restrictions.to_dict() if license.security_restrictions is not None else None
    )
    return fields


class IntegritySigner:
    """Computes and verifies keyed digests for license records.

    :param hash_secret: Key for the license hash.
    :param fingerprint_secret: Key for the fingerprint.  Defaults to
        *hash_secret* when not given.
    """

    def __init__(self, hash_secret: str | None, fingerprint_secret: str | None = None) -> None:
        self._hash_secret = hash_secret or None
        self._fingerprint_secret = fingerprint_secret or hash_secret or None

    def _require_hash_secret(self) -> bytes:
        if not self._hash_secret:
            raise ConfigurationError(
                "License hash secret is not configured: set EDULICENSE_HASH_SECRET"
            )
        return self._hash_secret.encode("utf-8")

    def _require_fingerprint_secret(self) -> bytes:
        if not self._fingerprint_secret:
            raise ConfigurationError(
                "License fingerprint secret is not configured: set "
                "EDULICENSE_FINGERPRINT_SECRET or EDULICENSE_HASH_SECRET"
            )
        return self._fingerprint_secret.encode("utf-8")

    # -- License hash ---------------------------------------------------

    def compute_license_hash(self, license: License) -> str:
        """Return the hex HMAC-SHA256 over the canonical license fields."""
        key = self._require_hash_secret()
        return hmac.new(key, _canonical_json(_hash_fields(license)), hashlib.sha256).hexdigest()

    def verify_license_hash(self, license: License, stored_hash: str | None) -> bool:
        """Recompute the license hash and compare in constant time."""
        expected = self.compute_license_hash(license)
        if not stored_hash:
            return False
        return hmac.compare_digest(expected.encode("ascii"), stored_hash.encode("utf-8"))

    # -- Fingerprint ----------------------------------------------------

    def compute_fingerprint(self, license: License) -> str:
        """Return the hex HMAC over the extended tamper-detection fields."""
        key = self._require_fingerprint_secret()
        return hmac.new(key, _canonical_json(_fingerprint_fields(license)), hashlib.sha256).hexdigest()

    def verify_fingerprint(self, license: License) -> bool:
        """Verify the stored fingerprint; ``True`` when none is stored."""
        if not license.fingerprint:
            return True
        expected = self.compute_fingerprint(license)
        return hmac.compare_digest(expected.encode("ascii"), license.fingerprint.encode("utf-8"))


def compute_hardware_fingerprint(hardware_info: dict[str, Any]) -> str:
    """Return a one-way SHA-256 digest of a hardware attribute bag.

    Keys are sorted so the digest does not depend on the order in which
    the client reported its attributes.
    """
    return hashlib.sha256(_canonical_json(hardware_info, sort_keys=True)).hexdigest()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_signer: IntegritySigner | None = None
_signer_lock = threading.Lock()


def get_signer() -> IntegritySigner:
    """Return the process-wide :class:`IntegritySigner` built from settings."""
    global _signer
    with _signer_lock:
        if _signer is None:
            settings = get_settings()
            _signer = IntegritySigner(settings.hash_secret, settings.fingerprint_secret)
            if not settings.hash_secret:
                logger.warning("EDULICENSE_HASH_SECRET is not set; hashing operations will fail")
        return _signer


def reset_signer() -> None:
    global _signer
    with _signer_lock:
        _signer = None


def compute_license_hash(license: License) -> str:
    return get_signer().compute_license_hash(license)


def verify_license_hash(license: License, stored_hash: str | None) -> bool:
    return get_signer().verify_license_hash(license, stored_hash)


def compute_fingerprint(license: License) -> str:
    return get_signer().compute_fingerprint(license)


def verify_fingerprint(license: License) -> bool:
    return get_signer().verify_fingerprint(license)
