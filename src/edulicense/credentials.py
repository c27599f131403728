"""Signed, time-bounded license credentials.

A credential is what a client presents to prove entitlement.  Format::

    edl_{alg}_{payload_b64}_{signature_b64}

Where:
    - ``alg`` is ``hs`` (HMAC-SHA256, shared secret) or ``v2`` (Ed25519)
    - ``payload_b64`` is base64 (no padding) JSON claims
    - ``signature_b64`` is base64 (no padding) signature over ``payload_b64``

Claims:
    - ``sub``: school id
    - ``school_name``, ``features`` (names), ``license_id``, ``metadata``
    - ``security``: enabled security policy names (optional)
    - ``iss``: always ``"edulicense"``
    - ``iat`` / ``exp``: unix timestamps
    - ``jti``: random token id
    - ``kid``: verify key id (v2 only)

HMAC credentials are minted and verified with ``EDULICENSE_TOKEN_SECRET``.
When ``EDULICENSE_SIGNING_PRIVATE_KEY`` is configured, credentials are
signed with Ed25519 instead and verified against the matching public key
plus any keys in ``EDULICENSE_VERIFY_KEYS_JSON``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from edulicense.config import get_settings
from edulicense.errors import ConfigurationError, CredentialError, CredentialExpiredError
from edulicense.models import License

logger = logging.getLogger(__name__)

ISSUER = "edulicense"

_PREFIX = "edl"
_ALG_HMAC = "hs"
_ALG_ED25519 = "v2"
_DEFAULT_KEY_ID = "k1"
_VERIFY_KEYS_ENV = "EDULICENSE_VERIFY_KEYS_JSON"


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def _decode_b64_flexible(value: str) -> bytes:
    """Decode standard or url-safe base64 with optional missing padding."""
    padded = value + "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        return base64.urlsafe_b64decode(padded)


def _encode_b64_no_pad(raw: bytes) -> str:
    """Encode bytes as standard base64 without trailing padding."""
    return base64.b64encode(raw).decode("ascii").rstrip("=")


def load_private_key(key_value: str) -> Ed25519PrivateKey:
    """Load an Ed25519 private key from PEM, base64, base64url, or hex."""
    value = key_value.strip()
    if not value:
        raise ValueError("Empty signing private key")

    if "BEGIN" in value:
        key = serialization.load_pem_private_key(value.encode("utf-8"), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError("PEM key is not an Ed25519 private key")
        return key

    try:
        raw = bytes.fromhex(value)
    except ValueError:
        raw = _decode_b64_flexible(value)
    if len(raw) != 32:
        raise ValueError("Ed25519 private key must be 32 bytes")
    return Ed25519PrivateKey.from_private_bytes(raw)


def _load_verify_keys_from_env() -> dict[str, Ed25519PublicKey]:
    """Load extra Ed25519 verify keys keyed by key id (kid)."""
    env_json = os.environ.get(_VERIFY_KEYS_ENV, "").strip()
    if not env_json:
        return {}
    try:
        parsed = json.loads(env_json)
    except json.JSONDecodeError as exc:
        logger.warning("Invalid %s value: %s", _VERIFY_KEYS_ENV, exc)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Invalid %s value: expected a JSON object", _VERIFY_KEYS_ENV)
        return {}

    out: dict[str, Ed25519PublicKey] = {}
    for kid, key_raw in parsed.items():
        if not isinstance(kid, str) or not isinstance(key_raw, str):
            continue
        try:
            out[kid.strip()] = Ed25519PublicKey.from_public_bytes(_decode_b64_flexible(key_raw.strip()))
        except ValueError as exc:
            logger.warning("Failed to load verify key %s: %s", kid, exc)
    return out


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class CredentialCodec:
    """Mints and verifies license credentials.

    :param secret: HMAC secret for ``hs`` credentials.
    :param private_key: Optional Ed25519 signing key.  When set, new
        credentials are ``v2``.
    :param verify_keys: Extra Ed25519 public keys by key id.
    :param key_id: Key id stamped into ``v2`` credentials.
    """

    def __init__(
        self,
        secret: str | None = None,
        *,
        private_key: Ed25519PrivateKey | None = None,
        verify_keys: dict[str, Ed25519PublicKey] | None = None,
        key_id: str = _DEFAULT_KEY_ID,
    ) -> None:
        self._secret = secret or None
        self._private_key = private_key
        self._key_id = key_id
        self._verify_keys: dict[str, Ed25519PublicKey] = dict(verify_keys or {})
        if private_key is not None:
            self._verify_keys.setdefault(key_id, private_key.public_key())

    @property
    def algorithm(self) -> str:
        return _ALG_ED25519 if self._private_key is not None else _ALG_HMAC

    def ensure_ready(self) -> None:
        """Raise :class:`ConfigurationError` if credentials cannot be issued."""
        if self._private_key is None and not self._secret:
            raise ConfigurationError("Credential secret is not configured: set EDULICENSE_TOKEN_SECRET")

    def _hmac(self, payload_b64: str) -> bytes:
        if not self._secret:
            raise ConfigurationError("Credential secret is not configured: set EDULICENSE_TOKEN_SECRET")
        return hmac.new(self._secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()

    def issue(self, claims: dict[str, Any], *, expires_at: float) -> str:
        """Sign *claims* into a credential that expires at *expires_at*."""
        payload: dict[str, Any] = dict(claims)
        payload["iss"] = ISSUER
        payload["iat"] = int(time.time())
        payload["exp"] = int(expires_at)
        payload["jti"] = secrets.token_hex(8)
        if self._private_key is not None:
            payload["kid"] = self._key_id

        raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        payload_b64 = _encode_b64_no_pad(raw)

        if self._private_key is not None:
            signature = self._private_key.sign(payload_b64.encode("ascii"))
        else:
            signature = self._hmac(payload_b64)
        return f"{_PREFIX}_{self.algorithm}_{payload_b64}_{_encode_b64_no_pad(signature)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Verify *token* and return its claims.

        :raises CredentialError: Malformed token or bad signature.
        :raises CredentialExpiredError: ``exp`` has passed.
        :raises ConfigurationError: No key available for the token's algorithm.
        """
        alg, payload_b64, signature_b64 = _split(token)
        try:
            signature = _decode_b64_flexible(signature_b64)
        except (binascii.Error, ValueError) as exc:
            raise CredentialError("Malformed credential signature") from exc

        claims = _decode_payload(payload_b64)

        if alg == _ALG_HMAC:
            if not hmac.compare_digest(signature, self._hmac(payload_b64)):
                raise CredentialError("Credential signature verification failed")
        else:
            kid = str(claims.get("kid") or _DEFAULT_KEY_ID)
            verifier = self._verify_keys.get(kid)
            if verifier is None:
                if not self._verify_keys:
                    raise ConfigurationError(
                        f"No Ed25519 verify keys configured: set {_VERIFY_KEYS_ENV} "
                        "or EDULICENSE_SIGNING_PRIVATE_KEY"
                    )
                raise CredentialError(f"Unknown credential key id: {kid}")
            try:
                verifier.verify(signature, payload_b64.encode("ascii"))
            except InvalidSignature as exc:
                raise CredentialError("Credential signature verification failed") from exc

        if claims.get("iss") != ISSUER:
            raise CredentialError("Credential issuer mismatch")

        exp = claims.get("exp")
        try:
            expired = exp is not None and time.time() >= float(exp)
        except (TypeError, ValueError) as exc:
            raise CredentialError("Malformed credential expiry") from exc
        if expired:
            raise CredentialExpiredError("Credential has expired")
        return claims


def _split(token: str) -> tuple[str, str, str]:
    if not token or not isinstance(token, str):
        raise CredentialError("Credential is empty")
    parts = token.strip().split("_", 3)
    if len(parts) != 4 or parts[0] != _PREFIX:
        raise CredentialError("Malformed credential")
    alg, payload_b64, signature_b64 = parts[1], parts[2], parts[3]
    if alg not in (_ALG_HMAC, _ALG_ED25519):
        raise CredentialError(f"Unsupported credential algorithm: {alg}")
    if not payload_b64 or not signature_b64:
        raise CredentialError("Malformed credential")
    return alg, payload_b64, signature_b64


def _decode_payload(payload_b64: str) -> dict[str, Any]:
    try:
        payload = json.loads(_decode_b64_flexible(payload_b64).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        raise CredentialError("Malformed credential payload") from exc
    if not isinstance(payload, dict):
        raise CredentialError("Malformed credential payload")
    return payload


def parse_credential_claims(token: str) -> dict[str, Any] | None:
    """Decode claims from a credential without verifying its signature.

    Intended for administrative display only.
    """
    try:
        _, payload_b64, _ = _split(token)
        return _decode_payload(payload_b64)
    except CredentialError:
        return None


def build_license_claims(license: License) -> dict[str, Any]:
    """Return the claims a credential for *license* carries."""
    claims: dict[str, Any] = {
        "sub": license.school_id,
        "school_name": license.school_name,
        "features": [f.name for f in license.features],
        "license_id": license.id,
        "metadata": dict(license.metadata),
    }
    if license.security_restrictions is not None:
        enabled = license.security_restrictions.enabled_policies()
        if enabled:
            claims["security"] = enabled
    return claims


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_codec: CredentialCodec | None = None
_codec_lock = threading.Lock()


def get_codec() -> CredentialCodec:
    """Return the process-wide :class:`CredentialCodec` built from settings."""
    global _codec
    with _codec_lock:
        if _codec is None:
            settings = get_settings()
            private_key = None
            if settings.signing_private_key:
                try:
                    private_key = load_private_key(settings.signing_private_key)
                except ValueError as exc:
                    raise ConfigurationError(f"Invalid EDULICENSE_SIGNING_PRIVATE_KEY: {exc}") from exc
            _codec = CredentialCodec(
                settings.token_secret,
                private_key=private_key,
                verify_keys=_load_verify_keys_from_env(),
            )
        return _codec


def reset_codec() -> None:
    global _codec
    with _codec_lock:
        _codec = None
