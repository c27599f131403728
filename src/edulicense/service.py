"""License validation pipeline and lifecycle operations.

:class:`LicenseService` is the single entry point callers (CLI, HTTP
controllers, the scheduler) use to validate a presented credential and
to mutate licenses.

Validation runs these steps in strict order; the first failure ends the
run and later steps, including repository access, are skipped:

    1. credential signature and ``exp`` claim
    2. credential school id vs. the claimed school id
    3. repository lookup by credential
    4. license hash recomputation
    5. blacklist flag
    6. stored status must be ``active``
    7. ``expires_at`` in the past → persist ``expired``
    8. security restrictions (only with ``check_revocation``)
    9. bind a new device id when a device limit admits it, then touch
       ``last_checked`` (only with ``check_revocation``)

Validation failures are returned as :class:`ValidationResult` values.
Repository failures are raised as :class:`RepositoryError` and
configuration problems as :class:`ConfigurationError`.

Example::

    service = LicenseService(repository, device_counter=registry, notifier=sink)
    lic = service.generate_license(LicenseRequest("S1", "North High", 365, [Feature("gradebook")]))
    result = service.validate_license(lic.license_key, "S1")
    result.valid        # → True
    result.expires_in   # → 365
"""

from __future__ import annotations

import copy
import dataclasses
import ipaddress
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from edulicense.credentials import CredentialCodec, build_license_claims, get_codec
from edulicense.errors import (
    ConfigurationError,
    CredentialError,
    CredentialExpiredError,
    EduLicenseError,
    LicenseOperationError,
    RepositoryError,
)
from edulicense.events import EventBus, EventType
from edulicense.features import validate_feature
from edulicense.integrity import IntegritySigner, compute_hardware_fingerprint, get_signer
from edulicense.models import (
    ClientInfo,
    DeviceLimit,
    FeatureValidationResult,
    IpRestrictions,
    License,
    LicenseCheckReport,
    LicenseRequest,
    LicenseStatus,
    SecurityRestrictions,
    ValidationResult,
    format_timestamp,
    utcnow,
)
from edulicense.notifications import AlertSeverity, LoggingNotificationSink, NotificationSink
from edulicense.repository import DeviceCountProvider, DeviceRegistry, LicenseRepository
from edulicense.security import validate_security_restrictions

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_EXPIRING_SOON_DAYS = 30
_DEFAULT_WARNING_THRESHOLDS = (30, 15, 7, 3, 1)

# Error codes surfaced through LicenseOperationError.
LICENSE_ALREADY_EXISTS = "LICENSE_ALREADY_EXISTS"
LICENSE_NOT_FOUND = "LICENSE_NOT_FOUND"
LICENSE_ALREADY_REVOKED = "LICENSE_ALREADY_REVOKED"
LICENSE_REVOKED = "LICENSE_REVOKED"
INVALID_TRANSFER = "INVALID_TRANSFER"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
INVALID_LICENSE_KEY = "INVALID_LICENSE_KEY"
LICENSE_ALREADY_ACTIVATED = "LICENSE_ALREADY_ACTIVATED"
LICENSE_EXPIRED = "LICENSE_EXPIRED"
SCHOOL_ID_MISMATCH = "SCHOOL_ID_MISMATCH"
DEVICE_LIMIT_REACHED = "DEVICE_LIMIT_REACHED"


class LicenseService:
    """Validates credentials and applies license lifecycle operations.

    :param repository: Durable license store.
    :param device_counter: Source of per-license device counts.  Without
        one, device limits only require a device id.
    :param notifier: Destination for operator alerts and license
        notifications.  Defaults to logging.
    :param event_bus: Optional bus receiving lifecycle events.
    :param signer: Integrity signer.  Defaults to the process-wide one.
    :param codec: Credential codec.  Defaults to the process-wide one.
    :param expiring_soon_days: Lookahead for expiring-soon reports.
    :param warning_thresholds: Days-left values at which the sweep sends
        an expiring-soon notification.
    :param clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: LicenseRepository,
        *,
        device_counter: DeviceCountProvider | None = None,
        notifier: NotificationSink | None = None,
        event_bus: EventBus | None = None,
        signer: IntegritySigner | None = None,
        codec: CredentialCodec | None = None,
        expiring_soon_days: int = _DEFAULT_EXPIRING_SOON_DAYS,
        warning_thresholds: Iterable[int] = _DEFAULT_WARNING_THRESHOLDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._device_counter = device_counter
        self._notifier = notifier or LoggingNotificationSink()
        self._event_bus = event_bus
        self._signer = signer
        self._codec = codec
        self._expiring_soon_days = expiring_soon_days
        self._warning_thresholds = frozenset(warning_thresholds)
        self._clock = clock
        self._failed_checks: set[str] = set()
        self._failed_lock = threading.Lock()

    @property
    def signer(self) -> IntegritySigner:
        return self._signer or get_signer()

    @property
    def codec(self) -> CredentialCodec:
        return self._codec or get_codec()

    @property
    def notifier(self) -> NotificationSink:
        return self._notifier

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call_repo(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """Invoke a repository method, wrapping storage failures."""
        try:
            return func(*args)
        except EduLicenseError:
            raise
        except Exception as exc:
            logger.error("License repository %s failed: %s", operation, exc)
            raise RepositoryError(f"License repository {operation} failed: {exc}", cause=exc) from exc

    def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event_type, data, source="service")

    def _reject(self, school_id: str, *errors: str) -> ValidationResult:
        logger.info("License validation failed for school %s: %s", school_id, "; ".join(errors))
        self._publish(
            EventType.LICENSE_VALIDATION_FAILED,
            {"school_id": school_id, "errors": list(errors)},
        )
        return ValidationResult.failure(*errors)

    def _require(self, license_id: str) -> License:
        lic = self._call_repo("lookup", self._repo.find_by_id, license_id)
        if lic is None:
            raise LicenseOperationError(f"License {license_id} not found", LICENSE_NOT_FOUND, 404)
        return lic

    def _save(self, license_id: str, patch: dict[str, Any]) -> License:
        updated = self._call_repo("update", self._repo.update, license_id, patch)
        if updated is None:
            raise LicenseOperationError(f"License {license_id} not found", LICENSE_NOT_FOUND, 404)
        return updated

    def _seal(self, lic: License) -> dict[str, Any]:
        """Re-issue the credential and recompute both digests for *lic*.

        Returns the patch fields that carry the new values.
        """
        key = self.codec.issue(build_license_claims(lic), expires_at=lic.expires_at.timestamp())
        sealed = dataclasses.replace(lic, license_key=key)
        return {
            "license_key": key,
            "license_hash": self.signer.compute_license_hash(sealed),
            "fingerprint": self.signer.compute_fingerprint(sealed),
        }

    @staticmethod
    def _with_history(lic: License, key: str, entry: dict[str, Any]) -> dict[str, Any]:
        metadata = copy.deepcopy(lic.metadata)
        metadata.setdefault(key, []).append(entry)
        return metadata

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_license(
        self,
        license_key: str,
        school_id: str,
        check_revocation: bool = True,
        client_info: ClientInfo | None = None,
    ) -> ValidationResult:
        """Validate a presented credential for *school_id*.

        :param check_revocation: Run security restrictions and persist
            ``last_checked``.  Pass ``False`` for a read-only check.
        :param client_info: Runtime context for security restrictions.
        :raises RepositoryError: The repository failed.
        :raises ConfigurationError: Secrets are missing.
        """
        try:
            claims = self.codec.verify(license_key)
        except CredentialError as exc:
            return self._reject(school_id, f"Invalid license key: {exc}")

        if claims.get("sub") != school_id:
            return self._reject(school_id, "License does not match school ID")

        lic = self._call_repo("lookup", self._repo.find_by_credential, license_key)
        if lic is None:
            return self._reject(school_id, "License not found in database")

        if not self.signer.verify_license_hash(lic, lic.license_hash):
            logger.warning("License hash mismatch for license %s", lic.id)
            return self._reject(school_id, "License hash verification failed")

        if lic.blacklisted:
            return self._reject(school_id, f"License is blacklisted: {lic.blacklist_reason or 'no reason given'}")

        if lic.status is not LicenseStatus.ACTIVE:
            return self._reject(school_id, f"License is {lic.status.value}")

        now = self._clock()
        if lic.is_expired(now):
            self._call_repo("status update", self._repo.update_status, lic.id, LicenseStatus.EXPIRED)
            self._publish(EventType.LICENSE_EXPIRED, {"license_id": lic.id, "school_id": lic.school_id})
            return self._reject(school_id, "License has expired")

        if check_revocation:
            device_id = client_info.device_id if client_info is not None else None
            device_count = None
            enroll = False
            restrictions = lic.security_restrictions
            if restrictions is not None and restrictions.device_limit.enabled and self._device_counter is not None:
                device_count = self._call_repo(
                    "device count", self._device_counter.count_devices_for_license, lic.id
                )
                registry = self._device_counter
                if device_id and isinstance(registry, DeviceRegistry):
                    # A bound device does not count against its own admission.
                    if self._call_repo("device lookup", registry.has_device, lic.id, device_id):
                        device_count -= 1
                    else:
                        enroll = True
            security = validate_security_restrictions(lic, client_info, device_count, signer=self.signer)
            if not security.valid:
                return self._reject(school_id, *security.errors)

            if enroll:
                self._bind_device(lic, device_id, None)
            touched = self._call_repo("touch", self._repo.update, lic.id, {"last_checked": now})
            lic = touched or lic

        self._publish(EventType.LICENSE_VALIDATED, {"license_id": lic.id, "school_id": lic.school_id})
        return ValidationResult(valid=True, license=lic, expires_in=lic.days_until_expiry(now))

    def check_feature(
        self,
        license_key: str,
        school_id: str,
        feature: str,
        context: dict[str, Any] | None = None,
        *,
        check_revocation: bool = False,
        client_info: ClientInfo | None = None,
    ) -> FeatureValidationResult:
        """Validate the license, then one of its features against *context*."""
        result = self.validate_license(license_key, school_id, check_revocation, client_info)
        if not result.valid or result.license is None:
            return FeatureValidationResult(
                feature_name=feature,
                is_valid=False,
                message="; ".join(result.errors),
            )
        return validate_feature(result.license.features, feature, context)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_license(self, license_id: str) -> License | None:
        return self._call_repo("lookup", self._repo.find_by_id, license_id)

    def list_licenses(
        self,
        status: LicenseStatus | None = None,
        school_id: str | None = None,
    ) -> list[License]:
        statuses = [status] if status is not None else None
        return self._call_repo("list", self._list, statuses, school_id)

    def _list(self, statuses: list[LicenseStatus] | None, school_id: str | None) -> list[License]:
        return self._repo.list_all(statuses=statuses, school_id=school_id)

    def check_blacklist_status(self, id_or_key: str) -> dict[str, Any] | None:
        """Look a license up by id or credential and report its veto flag."""
        lic = self._call_repo("lookup", self._repo.find_by_id, id_or_key)
        if lic is None:
            lic = self._call_repo("lookup", self._repo.find_by_credential, id_or_key)
        if lic is None:
            return None
        return {
            "license_id": lic.id,
            "school_id": lic.school_id,
            "blacklisted": lic.blacklisted,
            "reason": lic.blacklist_reason,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def generate_license(self, request: LicenseRequest) -> License:
        """Issue a new license for a school.

        The license is ``active`` immediately unless
        ``request.require_activation`` is set, in which case it stays
        ``pending`` until :meth:`activate_license` is called with its key.

        :raises LicenseOperationError: The school already has an active
            license, or the duration is not positive.
        """
        if request.duration_days < 1:
            raise LicenseOperationError("duration_days must be at least 1", INVALID_ARGUMENT, 400)
        self.codec.ensure_ready()

        existing = self._call_repo("lookup", self._repo.find_active_by_school_id, request.school_id)
        if existing is not None:
            raise LicenseOperationError("School already has an activated license", LICENSE_ALREADY_EXISTS, 409)

        now = self._clock()
        draft = License(
            id="",
            school_id=request.school_id,
            school_name=request.school_name,
            issued_at=now,
            expires_at=now + timedelta(days=request.duration_days),
            features=copy.deepcopy(request.features),
            security_restrictions=copy.deepcopy(request.security_restrictions),
            status=LicenseStatus.PENDING,
            created_by=request.created_by,
            updated_by=request.created_by,
            created_at=now,
            updated_at=now,
            metadata=copy.deepcopy(request.metadata),
        )
        draft.license_hash = self.signer.compute_license_hash(draft)

        # The credential embeds the record id, so the record is stored first.
        created = self._call_repo("create", self._repo.create, draft)
        patch = self._seal(created)
        if not request.require_activation:
            patch["status"] = LicenseStatus.ACTIVE
        lic = self._save(created.id, patch)

        logger.info("Generated %s license %s for school %s (expires %s)",
                    lic.status.value, lic.id, lic.school_id, format_timestamp(lic.expires_at))
        self._publish(
            EventType.LICENSE_GENERATED,
            {"license_id": lic.id, "school_id": lic.school_id, "status": lic.status.value, "by": request.created_by},
        )
        return lic

    def activate_license(self, license_key: str, school_id: str, by: str | None = None) -> License:
        """Move a ``pending`` license to ``active``.

        The key must be presented together with the school it was issued
        to.  A school mismatch is counted in ``metadata["activation_attempts"]``
        before it is refused.

        :raises LicenseOperationError: Unknown or malformed key, license not
            pending, expired, school mismatch, or the school already holds
            another active license.
        """
        try:
            self.codec.verify(license_key)
        except CredentialExpiredError as exc:
            raise LicenseOperationError("License has expired", LICENSE_EXPIRED, 400) from exc
        except CredentialError as exc:
            raise LicenseOperationError(f"Invalid license key: {exc}", INVALID_LICENSE_KEY, 400) from exc

        lic = self._call_repo("lookup", self._repo.find_by_credential, license_key)
        if lic is None:
            raise LicenseOperationError("Invalid license key", INVALID_LICENSE_KEY, 400)
        if lic.status is LicenseStatus.ACTIVE:
            raise LicenseOperationError("License already activated", LICENSE_ALREADY_ACTIVATED, 400)
        if lic.status is LicenseStatus.REVOKED:
            raise LicenseOperationError("Cannot activate a revoked license", LICENSE_REVOKED, 409)

        now = self._clock()
        if lic.status is LicenseStatus.EXPIRED or lic.is_expired(now):
            raise LicenseOperationError("License has expired", LICENSE_EXPIRED, 400)

        if lic.school_id != school_id:
            metadata = copy.deepcopy(lic.metadata)
            metadata["activation_attempts"] = int(metadata.get("activation_attempts", 0)) + 1
            self._save(lic.id, {"metadata": metadata})
            logger.warning("Activation of license %s refused: school %s does not match", lic.id, school_id)
            raise LicenseOperationError("School ID does not match", SCHOOL_ID_MISMATCH, 400)

        other = self._call_repo("lookup", self._repo.find_active_by_school_id, lic.school_id)
        if other is not None and other.id != lic.id:
            raise LicenseOperationError("School already has an activated license", LICENSE_ALREADY_EXISTS, 409)

        metadata = copy.deepcopy(lic.metadata)
        metadata["activated_at"] = format_timestamp(now)
        metadata["activated_by"] = by
        activated = self._save(
            lic.id,
            {"status": LicenseStatus.ACTIVE, "updated_by": by, "metadata": metadata},
        )

        logger.info("Activated license %s for school %s", lic.id, lic.school_id)
        self._publish(EventType.LICENSE_ACTIVATED, {"license_id": lic.id, "school_id": lic.school_id, "by": by})
        return activated

    def revoke_license(self, license_id: str, by: str | None = None) -> bool:
        """Revoke a license.  Returns ``False`` if it does not exist.

        :raises LicenseOperationError: Already revoked.
        """
        lic = self._call_repo("lookup", self._repo.find_by_id, license_id)
        if lic is None:
            return False
        if lic.status is LicenseStatus.REVOKED:
            raise LicenseOperationError("License already revoked", LICENSE_ALREADY_REVOKED, 409)

        now = self._clock()
        metadata = copy.deepcopy(lic.metadata)
        metadata["revoked_at"] = format_timestamp(now)
        metadata["revoked_by"] = by
        metadata["status_before_revocation"] = lic.status.value
        revoked = self._save(
            license_id,
            {"status": LicenseStatus.REVOKED, "updated_by": by, "metadata": metadata},
        )

        logger.info("Revoked license %s (by %s)", license_id, by)
        self._notifier.notify_license_revoked(revoked)
        self._publish(EventType.LICENSE_REVOKED, {"license_id": license_id, "by": by})
        return True

    def renew_license(self, license_id: str, days: int, by: str | None = None) -> License:
        """Extend a license by *days*.

        Expired licenses are extended from now and restored to ``active``;
        others are extended from their current expiry.

        :raises LicenseOperationError: Not found, revoked, invalid *days*,
            or the school already holds another active license.
        """
        if days < 1:
            raise LicenseOperationError("Renewal days must be at least 1", INVALID_ARGUMENT, 400)
        lic = self._require(license_id)
        if lic.status is LicenseStatus.REVOKED:
            raise LicenseOperationError("Cannot renew a revoked license", LICENSE_REVOKED, 409)

        now = self._clock()
        lapsed = lic.status is LicenseStatus.EXPIRED or lic.is_expired(now)
        status = lic.status
        if lic.status is LicenseStatus.EXPIRED:
            other = self._call_repo("lookup", self._repo.find_active_by_school_id, lic.school_id)
            if other is not None and other.id != lic.id:
                raise LicenseOperationError(
                    "School already has an activated license", LICENSE_ALREADY_EXISTS, 409
                )
            status = LicenseStatus.ACTIVE

        base = now if lapsed else lic.expires_at
        renewed = dataclasses.replace(lic, expires_at=base + timedelta(days=days), status=status)
        patch = self._seal(renewed)
        patch.update(
            {
                "expires_at": renewed.expires_at,
                "status": status,
                "updated_by": by,
                "metadata": self._with_history(
                    lic,
                    "renewal_history",
                    {
                        "at": format_timestamp(now),
                        "by": by,
                        "days": days,
                        "previous_expires_at": format_timestamp(lic.expires_at),
                    },
                ),
            }
        )
        updated = self._save(license_id, patch)

        logger.info("Renewed license %s by %d day(s) to %s", license_id, days, format_timestamp(updated.expires_at))
        self._publish(EventType.LICENSE_RENEWED, {"license_id": license_id, "days": days, "by": by})
        return updated

    def transfer_license(
        self,
        license_id: str,
        new_school_id: str,
        new_school_name: str,
        by: str | None = None,
    ) -> License:
        """Move a license to another school.

        The credential is re-issued and both digests recomputed because the
        school identity is covered by them.

        :raises LicenseOperationError: Not found, revoked, same school, or
            the target already holds an active license.
        """
        lic = self._require(license_id)
        if lic.status is LicenseStatus.REVOKED:
            raise LicenseOperationError("Cannot transfer a revoked license", LICENSE_REVOKED, 409)
        if lic.school_id == new_school_id:
            raise LicenseOperationError("Cannot transfer license to the same school", INVALID_TRANSFER, 400)

        target = self._call_repo("lookup", self._repo.find_active_by_school_id, new_school_id)
        if target is not None:
            raise LicenseOperationError(
                "Target school already has an active license", LICENSE_ALREADY_EXISTS, 409
            )

        now = self._clock()
        moved = dataclasses.replace(lic, school_id=new_school_id, school_name=new_school_name)
        patch = self._seal(moved)
        patch.update(
            {
                "school_id": new_school_id,
                "school_name": new_school_name,
                "updated_by": by,
                "metadata": self._with_history(
                    lic,
                    "transfer_history",
                    {
                        "at": format_timestamp(now),
                        "by": by,
                        "from_school_id": lic.school_id,
                        "from_school_name": lic.school_name,
                        "to_school_id": new_school_id,
                        "to_school_name": new_school_name,
                    },
                ),
            }
        )
        updated = self._save(license_id, patch)

        logger.info("Transferred license %s from %s to %s", license_id, lic.school_id, new_school_id)
        self._notifier.notify_license_transferred(updated, lic.school_id, lic.school_name)
        self._publish(
            EventType.LICENSE_TRANSFERRED,
            {
                "license_id": license_id,
                "from_school_id": lic.school_id,
                "to_school_id": new_school_id,
                "by": by,
            },
        )
        return updated

    def blacklist_license(self, license_id: str, reason: str, by: str | None = None) -> License:
        """Set the veto flag on a license without touching its status."""
        lic = self._require(license_id)
        updated = self._save(
            license_id,
            {"blacklisted": True, "blacklist_reason": reason, "updated_by": by},
        )
        logger.warning("Blacklisted license %s: %s", license_id, reason)
        self._notifier.send_admin_alert(
            f"License {license_id} for {lic.school_name} ({lic.school_id}) has been blacklisted. Reason: {reason}",
            AlertSeverity.HIGH,
        )
        self._publish(EventType.LICENSE_BLACKLISTED, {"license_id": license_id, "reason": reason, "by": by})
        return updated

    def remove_from_blacklist(self, license_id: str, by: str | None = None) -> License:
        """Clear the veto flag on a license."""
        self._require(license_id)
        updated = self._save(
            license_id,
            {"blacklisted": False, "blacklist_reason": None, "updated_by": by},
        )
        logger.info("Removed license %s from blacklist", license_id)
        self._publish(EventType.LICENSE_UNBLACKLISTED, {"license_id": license_id, "by": by})
        return updated

    # ------------------------------------------------------------------
    # Security policy administration
    # ------------------------------------------------------------------

    def _update_security(
        self,
        lic: License,
        restrictions: SecurityRestrictions,
        by: str | None,
        change: str,
    ) -> License:
        changed = dataclasses.replace(lic, security_restrictions=restrictions)
        updated = self._save(
            lic.id,
            {
                "security_restrictions": restrictions,
                "fingerprint": self.signer.compute_fingerprint(changed),
                "updated_by": by,
            },
        )
        self._publish(EventType.SECURITY_UPDATED, {"license_id": lic.id, "change": change, "by": by})
        return updated

    def register_hardware_fingerprint(
        self,
        license_id: str,
        hardware_info: dict[str, Any],
        by: str | None = None,
    ) -> str:
        """Bind a device's hardware to a license and enable hardware binding.

        Returns the computed hardware fingerprint.
        """
        if not hardware_info:
            raise LicenseOperationError("Hardware information is required", INVALID_ARGUMENT, 400)
        lic = self._require(license_id)
        fingerprint = compute_hardware_fingerprint(hardware_info)
        restrictions = copy.deepcopy(lic.security_restrictions) or SecurityRestrictions()
        restrictions.hardware_binding.enabled = True
        if fingerprint not in restrictions.hardware_binding.fingerprints:
            restrictions.hardware_binding.fingerprints.append(fingerprint)
        self._update_security(lic, restrictions, by, "hardware_fingerprint_registered")
        logger.info("Registered hardware fingerprint for license %s", license_id)
        return fingerprint

    def remove_hardware_fingerprint(self, license_id: str, fingerprint: str, by: str | None = None) -> bool:
        """Unbind a hardware fingerprint.  Returns ``False`` if it was not bound."""
        lic = self._require(license_id)
        restrictions = copy.deepcopy(lic.security_restrictions)
        if restrictions is None or fingerprint not in restrictions.hardware_binding.fingerprints:
            return False
        restrictions.hardware_binding.fingerprints.remove(fingerprint)
        self._update_security(lic, restrictions, by, "hardware_fingerprint_removed")
        return True

    def update_ip_restrictions(
        self,
        license_id: str,
        enabled: bool,
        allowed_ips: list[str] | None = None,
        allowed_countries: list[str] | None = None,
        by: str | None = None,
    ) -> License:
        """Replace the IP / country allow-lists of a license."""
        allowed_ips = [ip.strip() for ip in allowed_ips or [] if ip.strip()]
        for entry in allowed_ips:
            try:
                if "/" in entry:
                    ipaddress.ip_network(entry, strict=False)
                else:
                    ipaddress.ip_address(entry)
            except ValueError as exc:
                raise LicenseOperationError(f"Invalid IP entry {entry!r}", INVALID_ARGUMENT, 400) from exc

        lic = self._require(license_id)
        restrictions = copy.deepcopy(lic.security_restrictions) or SecurityRestrictions()
        restrictions.ip_restrictions = IpRestrictions(
            enabled=enabled,
            allowed_ips=allowed_ips,
            allowed_countries=[c.strip().upper() for c in allowed_countries] if allowed_countries else None,
        )
        return self._update_security(lic, restrictions, by, "ip_restrictions_updated")

    def _registry(self) -> DeviceRegistry:
        if not isinstance(self._device_counter, DeviceRegistry):
            raise ConfigurationError("No device registry configured for this service")
        return self._device_counter

    def _bind_device(self, lic: License, device_id: str, by: str | None) -> int:
        count = self._call_repo("device registration", self._registry().register_device, lic.id, device_id)
        logger.info("Bound device %s to license %s (%d device(s))", device_id, lic.id, count)
        self._publish(
            EventType.SECURITY_UPDATED,
            {"license_id": lic.id, "change": "device_registered", "device_id": device_id, "by": by},
        )
        return count

    def register_device(self, license_id: str, device_id: str, by: str | None = None) -> int:
        """Bind a device id to a license and return the license's device count.

        Validation binds new devices on its own while the license is under
        its device limit; this is the administrative path.

        :raises LicenseOperationError: Not found, empty *device_id*, or the
            device limit is already reached.
        :raises ConfigurationError: The service has no device registry.
        """
        device_id = device_id.strip()
        if not device_id:
            raise LicenseOperationError("Device ID is required", INVALID_ARGUMENT, 400)
        registry = self._registry()
        lic = self._require(license_id)
        if self._call_repo("device lookup", registry.has_device, lic.id, device_id):
            return self._call_repo("device count", registry.count_devices_for_license, lic.id)

        limit = lic.security_restrictions.device_limit if lic.security_restrictions is not None else None
        if limit is not None and limit.enabled:
            count = self._call_repo("device count", registry.count_devices_for_license, lic.id)
            if count >= limit.max_devices:
                raise LicenseOperationError(
                    f"Device limit reached ({count}/{limit.max_devices})", DEVICE_LIMIT_REACHED, 409
                )
        return self._bind_device(lic, device_id, by)

    def remove_device(self, license_id: str, device_id: str, by: str | None = None) -> bool:
        """Unbind a device id, freeing a slot.  Returns ``False`` if it was not bound."""
        registry = self._registry()
        self._require(license_id)
        removed = self._call_repo("device removal", registry.remove_device, license_id, device_id)
        if removed:
            logger.info("Removed device %s from license %s", device_id, license_id)
            self._publish(
                EventType.SECURITY_UPDATED,
                {"license_id": license_id, "change": "device_removed", "device_id": device_id, "by": by},
            )
        return removed

    def update_device_limit(
        self,
        license_id: str,
        enabled: bool,
        max_devices: int,
        by: str | None = None,
    ) -> License:
        """Configure the device limit of a license."""
        if max_devices < 1:
            raise LicenseOperationError("max_devices must be at least 1", INVALID_ARGUMENT, 400)
        lic = self._require(license_id)
        restrictions = copy.deepcopy(lic.security_restrictions) or SecurityRestrictions()
        restrictions.device_limit = DeviceLimit(enabled=enabled, max_devices=max_devices)
        return self._update_security(lic, restrictions, by, "device_limit_updated")

    # ------------------------------------------------------------------
    # Scheduled re-verification
    # ------------------------------------------------------------------

    def _check_one(self, lic: License, now: datetime, report: LicenseCheckReport) -> None:
        """Re-verify one license and tally it into *report*."""
        if lic.status is LicenseStatus.REVOKED:
            report.revoked += 1
            report.add_detail(lic.id, lic.school_name, LicenseStatus.REVOKED.value, "License revoked")
            return

        if lic.is_expired(now):
            self._call_repo("status update", self._repo.update_status, lic.id, LicenseStatus.EXPIRED)
            self._notifier.notify_license_expired(lic)
            self._publish(EventType.LICENSE_EXPIRED, {"license_id": lic.id, "school_id": lic.school_id})
            report.expired += 1
            report.add_detail(lic.id, lic.school_name, LicenseStatus.EXPIRED.value, "License expired")
            return

        if lic.status is LicenseStatus.PENDING:
            report.add_detail(lic.id, lic.school_name, LicenseStatus.PENDING.value, "Awaiting activation")
            return

        days_left = lic.days_until_expiry(now)
        if days_left in self._warning_thresholds:
            self._notifier.notify_license_expiring_soon(lic, days_left)
        report.active += 1
        report.add_detail(lic.id, lic.school_name, LicenseStatus.ACTIVE.value, f"{days_left} day(s) remaining")

    def _record_check_failure(self, lic: License, exc: Exception, report: LicenseCheckReport) -> None:
        logger.error("Failed to check license %s: %s", lic.id, exc)
        report.failed += 1
        report.add_detail(lic.id, lic.school_name, lic.status.value, f"Failed to check license: {exc}")
        with self._failed_lock:
            self._failed_checks.add(lic.id)

    def check_licenses(self) -> LicenseCheckReport:
        """Sweep all pending, active and revoked licenses.

        Licenses past their expiry are marked expired.  A failure on one
        license is tallied and queued for :meth:`retry_failed_checks`; it
        does not stop the sweep.

        :raises RepositoryError: The license list could not be loaded.
        """
        now = self._clock()
        report = LicenseCheckReport()
        licenses = self._call_repo(
            "list",
            self._list,
            [LicenseStatus.PENDING, LicenseStatus.ACTIVE, LicenseStatus.REVOKED],
            None,
        )
        report.total_checked = len(licenses)

        for lic in licenses:
            try:
                self._check_one(lic, now, report)
            except Exception as exc:
                self._record_check_failure(lic, exc, report)
            else:
                with self._failed_lock:
                    self._failed_checks.discard(lic.id)

        logger.info(
            "License check completed: checked=%d active=%d expired=%d revoked=%d failed=%d",
            report.total_checked,
            report.active,
            report.expired,
            report.revoked,
            report.failed,
        )
        return report

    @property
    def failed_checks(self) -> set[str]:
        """Ids of licenses whose last check failed."""
        with self._failed_lock:
            return set(self._failed_checks)

    def retry_failed_checks(self) -> int:
        """Re-run the per-license check for every previously failed license.

        Returns the number of licenses retried.
        """
        with self._failed_lock:
            pending = sorted(self._failed_checks)
        if not pending:
            return 0

        now = self._clock()
        report = LicenseCheckReport()
        for license_id in pending:
            lic = self._call_repo("lookup", self._repo.find_by_id, license_id)
            if lic is None:
                with self._failed_lock:
                    self._failed_checks.discard(license_id)
                continue
            try:
                self._check_one(lic, now, report)
            except Exception as exc:
                self._record_check_failure(lic, exc, report)
            else:
                with self._failed_lock:
                    self._failed_checks.discard(license_id)

        logger.info("Retried %d failed license check(s); %d still failing", len(pending), report.failed)
        return len(pending)

    def expiring_soon(self, days: int | None = None) -> list[License]:
        """Active licenses that expire within *days* (default lookahead)."""
        window = self._expiring_soon_days if days is None else days
        now = self._clock()
        horizon = now + timedelta(days=window)
        licenses = self._call_repo("list", self._list, [LicenseStatus.ACTIVE], None)
        soon = [lic for lic in licenses if now <= lic.expires_at <= horizon]
        soon.sort(key=lambda lic: lic.expires_at)
        return soon

    def expiration_report(self, days: int | None = None) -> dict[str, Any]:
        """Summarise licenses expiring soon and alert operators if any."""
        window = self._expiring_soon_days if days is None else days
        now = self._clock()
        soon = self.expiring_soon(window)
        report = {
            "generated_at": format_timestamp(now),
            "window_days": window,
            "count": len(soon),
            "licenses": [
                {
                    "license_id": lic.id,
                    "school_id": lic.school_id,
                    "school_name": lic.school_name,
                    "expires_at": format_timestamp(lic.expires_at),
                    "days_left": lic.days_until_expiry(now),
                }
                for lic in soon
            ],
        }
        logger.info("Expiration report: %d license(s) expire within %d day(s)", len(soon), window)
        if soon:
            self._notifier.send_admin_alert(
                f"{len(soon)} license(s) expire within {window} day(s)",
                AlertSeverity.LOW,
            )
        return report
