"""SQLite persistence layer for edulicense.

Provides a durable :class:`~edulicense.repository.LicenseRepository` so
license records, device bindings and the audit trail survive process
restarts.  The database is created automatically at
``~/.edulicense/licenses.db`` (override with the ``EDULICENSE_DB_PATH``
environment variable or the ``db_path`` config key).

Example::

    db = get_db()
    lic = db.find_by_id("2c5e...")
    db.update(lic.id, {"blacklisted": True, "blacklist_reason": "chargeback"})
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import sqlite3
import sys
import threading
import time
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from edulicense.config import get_settings
from edulicense.events import Event
from edulicense.models import License, LicenseStatus, utcnow
from edulicense.repository import DeviceRegistry, LicenseRepository, validate_patch

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = os.path.join(str(Path.home()), ".edulicense", "licenses.db")

_LICENSE_COLUMNS = (
    "id",
    "school_id",
    "school_name",
    "license_key",
    "license_hash",
    "fingerprint",
    "features",
    "security_restrictions",
    "status",
    "issued_at",
    "expires_at",
    "last_checked",
    "blacklisted",
    "blacklist_reason",
    "created_by",
    "updated_by",
    "created_at",
    "updated_at",
    "metadata",
)


class LicenseDB(LicenseRepository, DeviceRegistry):
    """Thread-safe SQLite wrapper implementing the repository contracts.

    Parameters:
        db_path: Filesystem path for the SQLite database file.  Defaults to
            the configured ``db_path`` or ``~/.edulicense/licenses.db``.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path or get_settings().db_path or _DEFAULT_DB_PATH

        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)

        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._write_lock = threading.Lock()

        self._ensure_schema()
        self._enforce_permissions()

    def _enforce_permissions(self) -> None:
        """Restrict the database file to its owner (mode ``0600``)."""
        if sys.platform == "win32" or self._db_path == ":memory:":
            return
        try:
            os.chmod(self._db_path, 0o600)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", self._db_path, exc)

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS licenses (
                id                    TEXT PRIMARY KEY,
                school_id             TEXT NOT NULL,
                school_name           TEXT NOT NULL,
                license_key           TEXT UNIQUE,
                license_hash          TEXT NOT NULL DEFAULT '',
                fingerprint           TEXT,
                features              TEXT NOT NULL DEFAULT '[]',
                security_restrictions TEXT,
                status                TEXT NOT NULL,
                issued_at             TEXT NOT NULL,
                expires_at            TEXT NOT NULL,
                last_checked          TEXT,
                blacklisted           INTEGER NOT NULL DEFAULT 0,
                blacklist_reason      TEXT,
                created_by            TEXT,
                updated_by            TEXT,
                created_at            TEXT NOT NULL,
                updated_at            TEXT NOT NULL,
                metadata              TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_licenses_school_status
                ON licenses(school_id, status);

            CREATE TABLE IF NOT EXISTS license_devices (
                license_id  TEXT NOT NULL,
                device_id   TEXT NOT NULL,
                first_seen  REAL NOT NULL,
                PRIMARY KEY (license_id, device_id)
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type  TEXT NOT NULL,
                license_id  TEXT,
                data        TEXT NOT NULL DEFAULT '{}',
                source      TEXT,
                timestamp   REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_license
                ON audit_events(license_id, timestamp);
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _license_to_row(lic: License) -> dict[str, Any]:
        data = lic.to_dict()
        return {
            "id": data["id"],
            "school_id": data["school_id"],
            "school_name": data["school_name"],
            "license_key": data["license_key"] or None,
            "license_hash": data["license_hash"],
            "fingerprint": data["fingerprint"],
            "features": json.dumps(data["features"]),
            "security_restrictions": (
                json.dumps(data["security_restrictions"]) if data["security_restrictions"] is not None else None
            ),
            "status": data["status"],
            "issued_at": data["issued_at"],
            "expires_at": data["expires_at"],
            "last_checked": data["last_checked"],
            "blacklisted": 1 if data["blacklisted"] else 0,
            "blacklist_reason": data["blacklist_reason"],
            "created_by": data["created_by"],
            "updated_by": data["updated_by"],
            "created_at": data["created_at"],
            "updated_at": data["updated_at"],
            "metadata": json.dumps(data["metadata"]),
        }

    @staticmethod
    def _row_to_license(row: sqlite3.Row) -> License:
        data = dict(row)
        data["features"] = json.loads(data["features"] or "[]")
        if data["security_restrictions"]:
            data["security_restrictions"] = json.loads(data["security_restrictions"])
        data["metadata"] = json.loads(data["metadata"] or "{}")
        data["blacklisted"] = bool(data["blacklisted"])
        return License.from_dict(data)

    def _write_license(self, lic: License, *, replace: bool) -> None:
        row = self._license_to_row(lic)
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        columns = ", ".join(_LICENSE_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _LICENSE_COLUMNS)
        self._conn.execute(f"{verb} INTO licenses ({columns}) VALUES ({placeholders})", row)

    # ------------------------------------------------------------------
    # LicenseRepository
    # ------------------------------------------------------------------

    def find_by_credential(self, license_key: str) -> License | None:
        if not license_key:
            return None
        row = self._conn.execute(
            "SELECT * FROM licenses WHERE license_key = ?", (license_key,)
        ).fetchone()
        return self._row_to_license(row) if row is not None else None

    def find_by_id(self, license_id: str) -> License | None:
        row = self._conn.execute(
            "SELECT * FROM licenses WHERE id = ?", (license_id,)
        ).fetchone()
        return self._row_to_license(row) if row is not None else None

    def find_active_by_school_id(self, school_id: str) -> License | None:
        row = self._conn.execute(
            "SELECT * FROM licenses WHERE school_id = ? AND status = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (school_id, LicenseStatus.ACTIVE.value),
        ).fetchone()
        return self._row_to_license(row) if row is not None else None

    def create(self, license: License) -> License:
        stored = license if license.id else dataclasses.replace(license, id=str(uuid.uuid4()))
        with self._write_lock:
            try:
                self._write_license(stored, replace=False)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return stored

    def update(self, license_id: str, patch: dict[str, Any]) -> License | None:
        validate_patch(patch)
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        with self._write_lock:
            row = self._conn.execute(
                "SELECT * FROM licenses WHERE id = ?", (license_id,)
            ).fetchone()
            if row is None:
                return None
            updated = dataclasses.replace(self._row_to_license(row), **values)
            try:
                self._write_license(updated, replace=True)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return updated

    def list_all(
        self,
        *,
        statuses: Iterable[LicenseStatus] | None = None,
        school_id: str | None = None,
    ) -> list[License]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if school_id is not None:
            clauses.append("school_id = ?")
            params.append(school_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM licenses{where} ORDER BY created_at ASC", params
        ).fetchall()
        return [self._row_to_license(r) for r in rows]

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def register_device(self, license_id: str, device_id: str) -> int:
        """Record *device_id* against *license_id*; return the new count."""
        with self._write_lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO license_devices (license_id, device_id, first_seen) VALUES (?, ?, ?)",
                (license_id, device_id, time.time()),
            )
            self._conn.commit()
        return self.count_devices_for_license(license_id)

    def remove_device(self, license_id: str, device_id: str) -> bool:
        with self._write_lock:
            cur = self._conn.execute(
                "DELETE FROM license_devices WHERE license_id = ? AND device_id = ?",
                (license_id, device_id),
            )
            self._conn.commit()
        return cur.rowcount > 0

    def has_device(self, license_id: str, device_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM license_devices WHERE license_id = ? AND device_id = ?",
            (license_id, device_id),
        ).fetchone()
        return row is not None

    def count_devices_for_license(self, license_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM license_devices WHERE license_id = ?", (license_id,)
        ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def log_event(self, event: Event) -> None:
        """Append a lifecycle event to the audit trail.

        Suitable as a wildcard :class:`~edulicense.events.EventBus` handler.
        """
        with self._write_lock:
            self._conn.execute(
                "INSERT INTO audit_events (event_type, license_id, data, source, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    event.type.value,
                    event.data.get("license_id"),
                    json.dumps(event.data, default=str),
                    event.source,
                    event.timestamp,
                ),
            )
            self._conn.commit()

    def audit_trail(self, license_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        """Return audit events, newest first."""
        if license_id is not None:
            rows = self._conn.execute(
                "SELECT * FROM audit_events WHERE license_id = ? ORDER BY id DESC LIMIT ?",
                (license_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM audit_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        results = []
        for row in rows:
            entry = dict(row)
            entry["data"] = json.loads(entry["data"])
            results.append(entry)
        return results

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @property
    def path(self) -> str:
        """The filesystem path of the database file."""
        return self._db_path


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_db: LicenseDB | None = None


def get_db() -> LicenseDB:
    """Return the module-level :class:`LicenseDB` singleton.

    The instance is lazily created on first call.
    """
    global _db
    if _db is None:
        _db = LicenseDB()
    return _db
