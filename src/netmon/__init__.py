"""
NetMon - Local subnet discovery and device liveness tracking.

Discovers hosts on the local /24 by ping sweep, keeps an inventory of
known devices keyed by IP address, and records an append-only liveness
history every time known devices are re-checked.

Architecture:
    Prober         - one bounded reachability check per address
    SubnetScanner  - concurrent sweep of .1-.254, returns responders
    DeviceRegistry - identity by IP address, the only writer of devices
    StatusTracker  - re-probes known devices, appends observations
    StatsAggregator - total/active/inactive counts on demand

All data stored locally in a SQLite database (netmon.db by default).
"""

__version__ = "1.0.0"

from ._types import (
    Device,
    DeviceStats,
    ObservationEntry,
    ScanHit,
    StatusResult,
)
from .exceptions import (
    DeviceExistsError,
    NetmonError,
    OperationInProgressError,
    PersistenceError,
)

__all__ = [
    "__version__",
    "Device",
    "DeviceStats",
    "ObservationEntry",
    "ScanHit",
    "StatusResult",
    "NetmonError",
    "PersistenceError",
    "DeviceExistsError",
    "OperationInProgressError",
]
