"""Data model for licenses, policies and validation verdicts.

All timestamps are timezone-aware UTC :class:`~datetime.datetime` objects
truncated to millisecond precision.  They serialize as ISO-8601 strings
with a ``Z`` suffix so the integrity digests computed over them are
stable across a round trip through durable storage.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Return the current UTC time truncated to whole milliseconds."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize *value* as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string, epoch number or datetime into UTC.

    Naive values are assumed to be UTC.  Returns ``None`` for ``None`` or
    an empty string and raises :class:`ValueError` for anything else that
    cannot be interpreted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LicenseStatus(enum.Enum):
    """Lifecycle status of a license record."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


# ---------------------------------------------------------------------------
# Policy objects
# ---------------------------------------------------------------------------


@dataclass
class Feature:
    """A licensed feature with optional named restrictions."""

    name: str
    enabled: bool = True
    restrictions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "enabled": self.enabled}
        if self.restrictions:
            data["restrictions"] = dict(self.restrictions)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        return cls(
            name=str(data["name"]),
            enabled=bool(data.get("enabled", True)),
            restrictions=dict(data.get("restrictions") or {}),
        )


@dataclass
class HardwareBinding:
    enabled: bool = False
    fingerprints: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "fingerprints": list(self.fingerprints)}


@dataclass
class IpRestrictions:
    enabled: bool = False
    allowed_ips: list[str] = field(default_factory=list)
    allowed_countries: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "allowed_ips": list(self.allowed_ips),
            "allowed_countries": list(self.allowed_countries) if self.allowed_countries is not None else None,
        }


@dataclass
class DeviceLimit:
    enabled: bool = False
    max_devices: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "max_devices": self.max_devices}


@dataclass
class SecurityRestrictions:
    """Runtime-binding policies attached to a license.

    Each sub-policy is toggled independently through its ``enabled`` flag.
    """

    hardware_binding: HardwareBinding = field(default_factory=HardwareBinding)
    ip_restrictions: IpRestrictions = field(default_factory=IpRestrictions)
    device_limit: DeviceLimit = field(default_factory=DeviceLimit)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hardware_binding": self.hardware_binding.to_dict(),
            "ip_restrictions": self.ip_restrictions.to_dict(),
            "device_limit": self.device_limit.to_dict(),
        }

    def enabled_policies(self) -> list[str]:
        """Return the names of the sub-policies that are switched on."""
        names = []
        if self.hardware_binding.enabled:
            names.append("hardware_binding")
        if self.ip_restrictions.enabled:
            names.append("ip_restrictions")
        if self.device_limit.enabled:
            names.append("device_limit")
        return names

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SecurityRestrictions | None:
        if data is None:
            return None
        hw = data.get("hardware_binding") or {}
        ip = data.get("ip_restrictions") or {}
        dl = data.get("device_limit") or {}
        countries = ip.get("allowed_countries")
        return cls(
            hardware_binding=HardwareBinding(
                enabled=bool(hw.get("enabled", False)),
                fingerprints=list(hw.get("fingerprints") or []),
            ),
            ip_restrictions=IpRestrictions(
                enabled=bool(ip.get("enabled", False)),
                allowed_ips=list(ip.get("allowed_ips") or []),
                allowed_countries=list(countries) if countries is not None else None,
            ),
            device_limit=DeviceLimit(
                enabled=bool(dl.get("enabled", False)),
                max_devices=int(dl.get("max_devices", 1)),
            ),
        )


# ---------------------------------------------------------------------------
# License
# ---------------------------------------------------------------------------


@dataclass
class License:
    """A per-school license record as held by the repository."""

    id: str
    school_id: str
    school_name: str
    issued_at: datetime
    expires_at: datetime
    features: list[Feature] = field(default_factory=list)
    license_key: str = ""
    license_hash: str = ""
    fingerprint: str | None = None
    security_restrictions: SecurityRestrictions | None = None
    status: LicenseStatus = LicenseStatus.PENDING
    last_checked: datetime | None = None
    blacklisted: bool = False
    blacklist_reason: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether ``expires_at`` has passed, regardless of stored status."""
        return self.expires_at < (now or utcnow())

    def days_until_expiry(self, now: datetime | None = None) -> int:
        """Whole days from *now* until expiry, rounded up; negative when past."""
        seconds = (self.expires_at - (now or utcnow())).total_seconds()
        return math.ceil(seconds / 86400)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "id": self.id,
            "school_id": self.school_id,
            "school_name": self.school_name,
            "license_key": self.license_key,
            "license_hash": self.license_hash,
            "fingerprint": self.fingerprint,
            "features": [f.to_dict() for f in self.features],
            "security_restrictions": (
                self.security_restrictions.to_dict() if self.security_restrictions is not None else None
            ),
            "status": self.status.value,
            "issued_at": format_timestamp(self.issued_at),
            "expires_at": format_timestamp(self.expires_at),
            "last_checked": format_timestamp(self.last_checked),
            "blacklisted": self.blacklisted,
            "blacklist_reason": self.blacklist_reason,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> License:
        return cls(
            id=str(data["id"]),
            school_id=str(data["school_id"]),
            school_name=str(data["school_name"]),
            issued_at=parse_timestamp(data["issued_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            features=[Feature.from_dict(f) for f in data.get("features") or []],
            license_key=data.get("license_key") or "",
            license_hash=data.get("license_hash") or "",
            fingerprint=data.get("fingerprint"),
            security_restrictions=SecurityRestrictions.from_dict(data.get("security_restrictions")),
            status=LicenseStatus(data.get("status", LicenseStatus.PENDING.value)),
            last_checked=parse_timestamp(data.get("last_checked")),
            blacklisted=bool(data.get("blacklisted", False)),
            blacklist_reason=data.get("blacklist_reason"),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class LicenseRequest:
    """Input to :meth:`LicenseService.generate_license`."""

    school_id: str
    school_name: str
    duration_days: int
    features: list[Feature] = field(default_factory=list)
    security_restrictions: SecurityRestrictions | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    require_activation: bool = False


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


@dataclass
class ClientInfo:
    """What a client claims about itself when presenting a license."""

    ip: str | None = None
    country: str | None = None
    device_id: str | None = None
    hardware_info: dict[str, Any] | None = None
    user_agent: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ClientInfo | None:
        if data is None:
            return None
        return cls(
            ip=data.get("ip"),
            country=data.get("country"),
            device_id=data.get("device_id"),
            hardware_info=data.get("hardware_info"),
            user_agent=data.get("user_agent"),
        )


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """Outcome of :meth:`LicenseService.validate_license`."""

    valid: bool
    license: License | None = None
    errors: list[str] = field(default_factory=list)
    expires_in: int | None = None

    @classmethod
    def failure(cls, *errors: str, license: License | None = None) -> ValidationResult:
        return cls(valid=False, license=license, errors=list(errors))

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "license": self.license.to_dict() if self.license is not None else None,
            "errors": list(self.errors),
            "expires_in": self.expires_in,
        }


@dataclass
class FeatureValidationResult:
    feature_name: str
    is_valid: bool
    message: str
    restriction_details: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_name": self.feature_name,
            "is_valid": self.is_valid,
            "message": self.message,
            "restriction_details": dict(self.restriction_details),
        }


@dataclass
class SecurityValidationResult:
    valid: bool = True
    errors: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> SecurityValidationResult:
        return cls(valid=True)

    @classmethod
    def fail(cls, message: str) -> SecurityValidationResult:
        return cls(valid=False, errors=[message])

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass
class LicenseCheckReport:
    """Tally produced by a full license sweep."""

    total_checked: int = 0
    active: int = 0
    expired: int = 0
    revoked: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def add_detail(self, license_id: str, school_name: str, status: str, message: str) -> None:
        self.details.append(
            {
                "license_id": license_id,
                "school_name": school_name,
                "status": status,
                "message": message,
            }
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_checked": self.total_checked,
            "active": self.active,
            "expired": self.expired,
            "revoked": self.revoked,
            "failed": self.failed,
            "details": list(self.details),
        }
