"""
Device registry.

The single source of truth for which devices exist. Identity is the IP
address: discovery goes through upsert, which never creates a second row
for an address that is already known. Everything else addresses devices
by their database id.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime
from typing import Optional

from ._types import Device, ObservationEntry
from .device_db import DeviceDatabase

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 1000


def _normalize_ipv4(address: str) -> str:
    try:
        return str(ipaddress.IPv4Address(address.strip()))
    except (ValueError, AttributeError) as e:
        raise ValueError(f"Invalid IPv4 address: {address!r}") from e


class DeviceRegistry:
    """Resolves and mutates devices on top of the device database."""

    def __init__(self, db: DeviceDatabase):
        self.db = db

    def upsert(self, address: str, suggested_name: Optional[str] = None) -> Device:
        """
        Record a sighting of address.

        Known address: marked online and last_seen_at refreshed; hostname,
        label and category are left alone. Unknown address: created online
        with first_seen_at == last_seen_at and suggested_name as hostname.
        """
        device = self.db.create_or_update_device(
            ip_address=_normalize_ipv4(address),
            hostname=suggested_name,
            online=True,
        )
        logger.debug(f"Upserted device {device.id} at {device.ip_address}")
        return device

    def register(
        self,
        ip_address: str,
        mac_address: Optional[str] = None,
        hostname: Optional[str] = None,
        label: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Device:
        """
        Manually register a device.

        Raises ValueError for a malformed address and DeviceExistsError if
        the address is already registered.
        """
        device = self.db.insert_device(
            ip_address=_normalize_ipv4(ip_address),
            mac_address=mac_address.lower() if mac_address else None,
            hostname=hostname,
            label=label,
            category=category,
            online=True,
        )
        logger.info(f"Registered device {device.id} at {device.ip_address}")
        return device

    def get(self, device_id: int) -> Optional[Device]:
        return self.db.get_device(device_id)

    def list(self) -> list[Device]:
        return self.db.list_devices()

    def update(
        self,
        device_id: int,
        label: Optional[str] = None,
        category: Optional[str] = None,
    ) -> int:
        """Change label and/or category only. Returns affected rows."""
        changes = self.db.update_device(device_id, label=label, category=category)
        if changes:
            logger.info(f"Updated device {device_id}")
        return changes

    def delete(self, device_id: int) -> int:
        """Delete a device; unknown ids report 0 affected rows."""
        changes = self.db.delete_device(device_id)
        if changes:
            logger.info(f"Deleted device {device_id}")
        else:
            logger.debug(f"Delete of unknown device {device_id} ignored")
        return changes

    def record_status(
        self,
        device_id: int,
        online: bool,
        checked_at: Optional[datetime] = None,
    ) -> int:
        """
        Write a checked device's liveness and append its observation.

        Returns the number of device rows updated; 0 means the device was
        deleted since it was read, and the observation is still kept.
        """
        return self.db.record_status(device_id, online, checked_at=checked_at)

    def history(
        self,
        device_id: int,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> Optional[list[ObservationEntry]]:
        """
        Newest-first observations for a device, limit clamped to 1..1000.

        Returns None for an id with neither a device row nor any recorded
        observations. A deleted device keeps its readable history.
        """
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        entries = self.db.list_observations(device_id, limit=limit)
        if not entries and self.db.get_device(device_id) is None:
            return None
        return entries
