"""Repository contracts consumed by the validation pipeline.

The engine never talks to storage directly.  It depends on:

- :class:`LicenseRepository` -- durable license records.
- :class:`DeviceCountProvider` -- how many devices are bound to a license.
- :class:`DeviceRegistry` -- a device count provider that also records
  which device ids use a license, so device limits can be enforced.

Implementations must apply :meth:`LicenseRepository.update` as an atomic
single-record update so concurrent admin actions cannot lose writes.

:class:`InMemoryLicenseRepository` and :class:`InMemoryDeviceRegistry`
are thread-safe reference implementations used by tests and by
short-lived tooling.  :mod:`edulicense.persistence` provides a SQLite
implementation.
"""

from __future__ import annotations

import copy
import dataclasses
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from edulicense.models import License, LicenseStatus, utcnow

# Fields a patch passed to ``update`` may touch.  ``id`` is immutable.
UPDATABLE_FIELDS: frozenset[str] = frozenset(
    f.name for f in dataclasses.fields(License) if f.name not in ("id", "created_at")
)


def validate_patch(patch: dict[str, Any]) -> None:
    """Raise :class:`ValueError` if *patch* names a field that cannot change."""
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update license fields: {', '.join(sorted(unknown))}")


class LicenseRepository(ABC):
    """Abstract durable store for :class:`License` records."""

    @abstractmethod
    def find_by_credential(self, license_key: str) -> License | None:
        """Return the license whose credential is *license_key*."""

    @abstractmethod
    def find_by_id(self, license_id: str) -> License | None:
        """Return the license with *license_id*."""

    @abstractmethod
    def find_active_by_school_id(self, school_id: str) -> License | None:
        """Return the school's license with status ``active``, if any."""

    @abstractmethod
    def create(self, license: License) -> License:
        """Persist a new license.  Assigns an id when ``license.id`` is empty."""

    @abstractmethod
    def update(self, license_id: str, patch: dict[str, Any]) -> License | None:
        """Atomically apply *patch* to one license and return the result.

        Returns ``None`` if the license does not exist.
        """

    def update_status(self, license_id: str, status: LicenseStatus) -> License | None:
        """Set the lifecycle status of one license."""
        return self.update(license_id, {"status": status})

    @abstractmethod
    def list_all(
        self,
        *,
        statuses: Iterable[LicenseStatus] | None = None,
        school_id: str | None = None,
    ) -> list[License]:
        """Return licenses matching the filter, oldest first."""


class DeviceCountProvider(ABC):
    """Reports how many devices currently use a license."""

    @abstractmethod
    def count_devices_for_license(self, license_id: str) -> int:
        """Return the number of distinct devices bound to *license_id*."""


class DeviceRegistry(DeviceCountProvider):
    """Records which device ids are bound to which license."""

    @abstractmethod
    def register_device(self, license_id: str, device_id: str) -> int:
        """Bind *device_id* to *license_id*; return the new device count.

        Registering a device that is already bound is a no-op.
        """

    @abstractmethod
    def remove_device(self, license_id: str, device_id: str) -> bool:
        """Unbind *device_id*.  Returns ``False`` if it was not bound."""

    @abstractmethod
    def has_device(self, license_id: str, device_id: str) -> bool:
        """Return whether *device_id* is bound to *license_id*."""


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryLicenseRepository(LicenseRepository):
    """Thread-safe dict-backed repository.

    Records are deep-copied on the way in and out, so callers never share
    mutable state with the store.
    """

    def __init__(self, licenses: Iterable[License] = ()) -> None:
        self._lock = threading.Lock()
        self._licenses: dict[str, License] = {}
        for lic in licenses:
            self.create(lic)

    def find_by_credential(self, license_key: str) -> License | None:
        if not license_key:
            return None
        with self._lock:
            for lic in self._licenses.values():
                if lic.license_key == license_key:
                    return copy.deepcopy(lic)
        return None

    def find_by_id(self, license_id: str) -> License | None:
        with self._lock:
            lic = self._licenses.get(license_id)
            return copy.deepcopy(lic) if lic is not None else None

    def find_active_by_school_id(self, school_id: str) -> License | None:
        with self._lock:
            for lic in self._licenses.values():
                if lic.school_id == school_id and lic.status is LicenseStatus.ACTIVE:
                    return copy.deepcopy(lic)
        return None

    def create(self, license: License) -> License:
        stored = copy.deepcopy(license)
        if not stored.id:
            stored.id = str(uuid.uuid4())
        with self._lock:
            if stored.id in self._licenses:
                raise ValueError(f"License {stored.id} already exists")
            self._licenses[stored.id] = stored
            return copy.deepcopy(stored)

    def update(self, license_id: str, patch: dict[str, Any]) -> License | None:
        validate_patch(patch)
        with self._lock:
            current = self._licenses.get(license_id)
            if current is None:
                return None
            values = copy.deepcopy(patch)
            values.setdefault("updated_at", utcnow())
            updated = dataclasses.replace(current, **values)
            self._licenses[license_id] = updated
            return copy.deepcopy(updated)

    def list_all(
        self,
        *,
        statuses: Iterable[LicenseStatus] | None = None,
        school_id: str | None = None,
    ) -> list[License]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            licenses = [
                copy.deepcopy(lic)
                for lic in self._licenses.values()
                if (wanted is None or lic.status in wanted)
                and (school_id is None or lic.school_id == school_id)
            ]
        licenses.sort(key=lambda lic: lic.created_at)
        return licenses


class InMemoryDeviceRegistry(DeviceRegistry):
    """Tracks which device ids have used which license."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: dict[str, set[str]] = {}

    def register_device(self, license_id: str, device_id: str) -> int:
        """Record *device_id* against *license_id*; return the new count."""
        with self._lock:
            devices = self._devices.setdefault(license_id, set())
            devices.add(device_id)
            return len(devices)

    def remove_device(self, license_id: str, device_id: str) -> bool:
        with self._lock:
            devices = self._devices.get(license_id)
            if not devices or device_id not in devices:
                return False
            devices.discard(device_id)
            return True

    def has_device(self, license_id: str, device_id: str) -> bool:
        with self._lock:
            return device_id in self._devices.get(license_id, ())

    def count_devices_for_license(self, license_id: str) -> int:
        with self._lock:
            return len(self._devices.get(license_id, ()))
