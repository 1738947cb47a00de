"""
Type definitions for the network monitor.

These dataclasses define the core domain model for device discovery
and liveness tracking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    """Get current UTC timestamp (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@dataclass
class Device:
    """
    A tracked network host.

    The IP address is the identity key: it is unique across all devices
    and never changes once the device exists. The id is assigned by the
    database on insert.
    """
    ip_address: str
    id: Optional[int] = None
    mac_address: Optional[str] = None
    hostname: Optional[str] = None

    # User-assigned metadata
    label: Optional[str] = None
    category: Optional[str] = None

    # Liveness
    first_seen_at: datetime = field(default_factory=now_utc)
    last_seen_at: datetime = field(default_factory=now_utc)
    online: bool = False

    def to_dict(self) -> dict:
        """JSON-friendly representation used by the API."""
        return {
            "id": self.id,
            "ip_address": self.ip_address,
            "mac_address": self.mac_address,
            "hostname": self.hostname,
            "label": self.label,
            "category": self.category,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
            "online": self.online,
        }


@dataclass(frozen=True)
class ObservationEntry:
    """One append-only liveness record for a device."""
    device_id: int
    online: bool
    checked_at: datetime
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "online": self.online,
            "checked_at": _iso(self.checked_at),
        }


@dataclass(frozen=True)
class ScanHit:
    """An address that answered during a subnet scan."""
    ip_address: str
    suggested_name: str

    def to_dict(self) -> dict:
        return {"ip_address": self.ip_address, "suggested_name": self.suggested_name}


@dataclass(frozen=True)
class StatusResult:
    """Outcome of re-probing one known device."""
    device_id: int
    ip_address: str
    online: bool

    def to_dict(self) -> dict:
        return {"id": self.device_id, "ip_address": self.ip_address, "online": self.online}


@dataclass(frozen=True)
class DeviceStats:
    """Aggregate device counts."""
    total: int = 0
    active: int = 0
    inactive: int = 0

    def to_dict(self) -> dict:
        return {"total": self.total, "active": self.active, "inactive": self.inactive}


# Host suffixes probed on a /24 (network and broadcast excluded)
FIRST_HOST_SUFFIX = 1
LAST_HOST_SUFFIX = 254

# Placeholder name given to hosts found by a scan
SUGGESTED_NAME_FORMAT = "device-{suffix}"
