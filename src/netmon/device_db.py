"""
Device database for the network monitor.

SQLite database (default ./netmon.db) storing:
- Known devices, keyed by unique IP address
- Append-only liveness observations per device

Uses WAL mode for crash safety. A single connection is opened when the
database is constructed and closed at shutdown; every mutating call runs
in its own transaction.
"""

from __future__ import annotations

import ipaddress
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from ._types import Device, ObservationEntry, now_utc
from .exceptions import DeviceExistsError, PersistenceError

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

# Database schema
SCHEMA = """
-- Core device inventory
CREATE TABLE IF NOT EXISTS devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ip_address TEXT NOT NULL UNIQUE,
    mac_address TEXT,
    hostname TEXT,

    -- User metadata
    label TEXT,
    category TEXT,

    -- Liveness
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    online BOOLEAN NOT NULL DEFAULT TRUE
);

-- Liveness observations (append-only, kept after device deletion)
CREATE TABLE IF NOT EXISTS device_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    online BOOLEAN NOT NULL,
    checked_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_devices_online ON devices(online);
CREATE INDEX IF NOT EXISTS idx_device_history_device ON device_history(device_id, checked_at);
"""


def _iso_format(dt: datetime) -> str:
    """Format datetime as ISO string with fixed precision so rows sort as text."""
    return dt.isoformat(timespec="microseconds")


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def _ip_sort_key(device: Device):
    try:
        return (0, int(ipaddress.IPv4Address(device.ip_address)))
    except ValueError:
        return (1, device.ip_address)


class DeviceDatabase:
    """
    SQLite persistence port for devices and their liveness history.

    Thread-safe: calls on the shared connection are serialized by a lock.
    Any sqlite3 error surfaces as PersistenceError.
    """

    def __init__(self, db_path: Path | str = "netmon.db"):
        self.db_path = db_path if str(db_path) == MEMORY_DB else Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self.open()

    def __enter__(self) -> "DeviceDatabase":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open(self) -> None:
        """Open the connection and apply the schema. No-op when already open."""
        if self._conn is not None:
            return

        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(SCHEMA)
            # Enable WAL mode for crash safety
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to open device database {self.db_path}: {e}")
            raise PersistenceError(f"Cannot open device database: {e}") from e

        self._conn = conn
        logger.debug(f"Device database opened at {self.db_path}")

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.debug("Device database closed")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a transaction, committing on success."""
        with self._lock:
            if self._conn is None:
                raise PersistenceError("Device database is closed")

            conn = self._conn
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise PersistenceError(str(e)) from e
            except sqlite3.Error as e:
                conn.rollback()
                logger.error(f"Device database error: {e}")
                raise PersistenceError(str(e)) from e

    # -------------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------------

    def create_or_update_device(
        self,
        ip_address: str,
        hostname: Optional[str],
        online: bool = True,
        seen_at: Optional[datetime] = None,
    ) -> Device:
        """
        Insert a device or refresh an existing one with the same IP.

        Existing rows only get online and last_seen_at rewritten; hostname,
        label and category keep their values. Done in one statement so the
        address can never end up on two rows.
        """
        seen = _iso_format(seen_at or now_utc())
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO devices (ip_address, hostname, first_seen_at, last_seen_at, online)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(ip_address) DO UPDATE SET
                    online = excluded.online,
                    last_seen_at = excluded.last_seen_at
            """, (ip_address, hostname, seen, seen, online))
            row = conn.execute(
                "SELECT * FROM devices WHERE ip_address = ?", (ip_address,)
            ).fetchone()
        return self._row_to_device(row)

    def insert_device(
        self,
        ip_address: str,
        mac_address: Optional[str] = None,
        hostname: Optional[str] = None,
        label: Optional[str] = None,
        category: Optional[str] = None,
        online: bool = True,
    ) -> Device:
        """Insert a manually registered device. Raises DeviceExistsError on a taken IP."""
        now = _iso_format(now_utc())
        try:
            with self._transaction() as conn:
                cursor = conn.execute("""
                    INSERT INTO devices (
                        ip_address, mac_address, hostname, label, category,
                        first_seen_at, last_seen_at, online
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (ip_address, mac_address, hostname, label, category, now, now, online))
                row = conn.execute(
                    "SELECT * FROM devices WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
        except PersistenceError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise DeviceExistsError(ip_address) from e.__cause__
            raise
        return self._row_to_device(row)

    def find_by_address(self, ip_address: str) -> Optional[Device]:
        """Get device by IP address."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE ip_address = ?", (ip_address,)
            ).fetchone()
        return self._row_to_device(row) if row else None

    def get_device(self, device_id: int) -> Optional[Device]:
        """Get device by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE id = ?", (device_id,)
            ).fetchone()
        return self._row_to_device(row) if row else None

    def list_devices(self) -> list[Device]:
        """All devices, ordered by numeric IP address."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM devices").fetchall()
        return sorted((self._row_to_device(row) for row in rows), key=_ip_sort_key)

    def update_device(
        self,
        device_id: int,
        label: Optional[str] = None,
        category: Optional[str] = None,
    ) -> int:
        """
        Update user metadata on a device.

        Only fields that are not None are written; an empty string clears
        the field. Returns the number of affected rows.
        """
        updates = []
        params: list = []

        if label is not None:
            updates.append("label = ?")
            params.append(label or None)
        if category is not None:
            updates.append("category = ?")
            params.append(category or None)

        if not updates:
            return 0

        query = f"UPDATE devices SET {', '.join(updates)} WHERE id = ?"
        params.append(device_id)

        with self._transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def delete_device(self, device_id: int) -> int:
        """Delete a device. History rows are kept. Returns affected rows."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
            return cursor.rowcount

    def _row_to_device(self, row: sqlite3.Row) -> Device:
        """Convert database row to Device object."""
        return Device(
            id=row["id"],
            ip_address=row["ip_address"],
            mac_address=row["mac_address"],
            hostname=row["hostname"],
            label=row["label"],
            category=row["category"],
            first_seen_at=_parse_datetime(row["first_seen_at"]) or now_utc(),
            last_seen_at=_parse_datetime(row["last_seen_at"]) or now_utc(),
            online=bool(row["online"]),
        )

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def insert_observation(
        self,
        device_id: int,
        online: bool,
        checked_at: Optional[datetime] = None,
    ) -> None:
        """Append one liveness observation."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO device_history (device_id, online, checked_at) VALUES (?, ?, ?)",
                (device_id, online, _iso_format(checked_at or now_utc())),
            )

    def record_status(
        self,
        device_id: int,
        online: bool,
        checked_at: Optional[datetime] = None,
    ) -> int:
        """
        Write a device's new liveness and append its observation atomically.

        Both writes happen in one transaction. Returns the number of device
        rows updated (0 if the device was deleted in the meantime; the
        observation is still recorded).
        """
        checked = _iso_format(checked_at or now_utc())
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE devices SET online = ?, last_seen_at = ? WHERE id = ?",
                (online, checked, device_id),
            )
            conn.execute(
                "INSERT INTO device_history (device_id, online, checked_at) VALUES (?, ?, ?)",
                (device_id, online, checked),
            )
            return cursor.rowcount

    def list_observations(self, device_id: int, limit: int = 50) -> list[ObservationEntry]:
        """Observations for a device, newest first."""
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT * FROM device_history
                WHERE device_id = ?
                ORDER BY checked_at DESC, id DESC
                LIMIT ?
            """, (device_id, limit)).fetchall()
        return [
            ObservationEntry(
                id=row["id"],
                device_id=row["device_id"],
                online=bool(row["online"]),
                checked_at=_parse_datetime(row["checked_at"]) or now_utc(),
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def aggregate_counts(self) -> dict[str, int]:
        """Get total, active and inactive device counts."""
        with self._transaction() as conn:
            row = conn.execute("""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN online THEN 1 ELSE 0 END), 0) AS active
                FROM devices
            """).fetchone()

        total = row["total"]
        active = row["active"]
        return {"total": total, "active": active, "inactive": total - active}
