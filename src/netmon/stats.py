"""Aggregate device counts, recomputed from the database on every call."""

from __future__ import annotations

from ._types import DeviceStats
from .device_db import DeviceDatabase


class StatsAggregator:

    def __init__(self, db: DeviceDatabase):
        self.db = db

    def stats(self) -> DeviceStats:
        counts = self.db.aggregate_counts()
        total = counts["total"]
        active = counts["active"]
        return DeviceStats(total=total, active=active, inactive=total - active)
