"""Tests for status tracking and stats."""

import asyncio

import pytest
from unittest.mock import patch

from netmon.device_db import DeviceDatabase
from netmon.exceptions import PersistenceError
from netmon.prober import Prober
from netmon.registry import DeviceRegistry
from netmon.stats import StatsAggregator
from netmon.status_tracker import StatusTracker


class StaticProber(Prober):
    """Prober answering from a mutable set of live addresses."""

    def __init__(self, alive=(), fail=()):
        super().__init__(timeout=0.1)
        self.alive = set(alive)
        self.fail = set(fail)
        self.calls = []

    @property
    def name(self) -> str:
        return "static"

    async def probe(self, address: str) -> bool:
        self.calls.append(address)
        await asyncio.sleep(0)
        if address in self.fail:
            raise RuntimeError("probe exploded")
        return address in self.alive


@pytest.fixture
def db(tmp_path):
    database = DeviceDatabase(tmp_path / "netmon.db")
    yield database
    database.close()


class TestCheckAll:
    """Tests for StatusTracker.check_all."""

    @pytest.mark.asyncio
    async def test_marks_devices_offline(self, db: DeviceDatabase):
        """Devices that stop answering go offline and get one observation each."""
        a = db.create_or_update_device("192.168.1.10", "device-10")
        b = db.create_or_update_device("192.168.1.11", "device-11")
        db.update_device(b.id, label="PC1")
        prober = StaticProber(alive={"192.168.1.10"})

        results = await StatusTracker(DeviceRegistry(db), prober).check_all()

        assert {r.ip_address: r.online for r in results} == {
            "192.168.1.10": True,
            "192.168.1.11": False,
        }
        assert db.get_device(a.id).online is True
        assert db.get_device(b.id).online is False
        assert db.get_device(b.id).label == "PC1"
        assert [h.online for h in db.list_observations(a.id)] == [True]
        assert [h.online for h in db.list_observations(b.id)] == [False]

    @pytest.mark.asyncio
    async def test_reads_and_writes_through_registry(self, db: DeviceDatabase):
        """The registry should be the only path to device rows during a check."""
        device = db.create_or_update_device("192.168.1.10", None)
        registry = DeviceRegistry(db)

        with patch.object(registry, "list", wraps=registry.list) as snapshot, \
                patch.object(registry, "record_status", wraps=registry.record_status) as write:
            await StatusTracker(registry, StaticProber()).check_all()

        snapshot.assert_called_once()
        write.assert_called_once()
        assert write.call_args.args[:2] == (device.id, False)
        assert db.get_device(device.id).online is False

    @pytest.mark.asyncio
    async def test_history_appended_without_change(self, db: DeviceDatabase):
        """Every call appends an observation even when nothing changed."""
        device = db.create_or_update_device("192.168.1.10", None)
        tracker = StatusTracker(DeviceRegistry(db), StaticProber(alive={"192.168.1.10"}))

        await tracker.check_all()
        await tracker.check_all()
        await tracker.check_all()

        assert len(db.list_observations(device.id)) == 3

    @pytest.mark.asyncio
    async def test_refreshes_last_seen(self, db: DeviceDatabase):
        device = db.create_or_update_device("192.168.1.10", None)

        await StatusTracker(DeviceRegistry(db), StaticProber()).check_all()

        assert db.get_device(device.id).last_seen_at > device.last_seen_at

    @pytest.mark.asyncio
    async def test_empty_registry(self, db: DeviceDatabase):
        prober = StaticProber()

        assert await StatusTracker(DeviceRegistry(db), prober).check_all() == []
        assert prober.calls == []

    @pytest.mark.asyncio
    async def test_raising_probe_counts_as_offline(self, db: DeviceDatabase):
        device = db.create_or_update_device("192.168.1.10", None)
        db.create_or_update_device("192.168.1.11", None)
        prober = StaticProber(alive={"192.168.1.10", "192.168.1.11"}, fail={"192.168.1.10"})

        results = await StatusTracker(DeviceRegistry(db), prober).check_all()

        assert len(results) == 2
        assert db.get_device(device.id).online is False

    @pytest.mark.asyncio
    async def test_devices_added_during_cycle_not_visited(self, db: DeviceDatabase):
        """Only devices present when the cycle starts are probed."""
        db.create_or_update_device("192.168.1.10", None)

        class AddingProber(StaticProber):
            async def probe(self, address):
                db.create_or_update_device("192.168.1.99", None)
                return await super().probe(address)

        prober = AddingProber()
        results = await StatusTracker(DeviceRegistry(db), prober).check_all()

        assert [r.ip_address for r in results] == ["192.168.1.10"]
        assert prober.calls == ["192.168.1.10"]
        late = db.find_by_address("192.168.1.99")
        assert db.list_observations(late.id) == []

    @pytest.mark.asyncio
    async def test_device_deleted_during_cycle(self, db: DeviceDatabase):
        """A device deleted mid-cycle is not resurrected."""
        device = db.create_or_update_device("192.168.1.10", None)

        class DeletingProber(StaticProber):
            async def probe(self, address):
                db.delete_device(device.id)
                return await super().probe(address)

        results = await StatusTracker(DeviceRegistry(db), DeletingProber()).check_all()

        assert len(results) == 1
        assert db.get_device(device.id) is None
        assert db.list_devices() == []

    @pytest.mark.asyncio
    async def test_persistence_failure_aborts_cycle(self, db: DeviceDatabase):
        """A write failure stops the cycle; earlier writes stay applied."""
        first = db.create_or_update_device("192.168.1.1", None)
        second = db.create_or_update_device("192.168.1.2", None)
        original = db.record_status

        def failing_record_status(device_id, online, checked_at=None):
            if device_id == second.id:
                raise PersistenceError("disk full")
            return original(device_id, online, checked_at=checked_at)

        with patch.object(db, "record_status", side_effect=failing_record_status):
            with pytest.raises(PersistenceError):
                await StatusTracker(DeviceRegistry(db), StaticProber()).check_all()

        assert db.get_device(first.id).online is False
        assert len(db.list_observations(first.id)) == 1
        assert db.get_device(second.id).online is True
        assert db.list_observations(second.id) == []


class TestStats:
    """Tests for StatsAggregator."""

    def test_empty(self, db: DeviceDatabase):
        stats = StatsAggregator(db).stats()
        assert (stats.total, stats.active, stats.inactive) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_counts_follow_status_check(self, db: DeviceDatabase):
        """total == active + inactive after every change."""
        for suffix in range(1, 6):
            db.create_or_update_device(f"192.168.1.{suffix}", None)
        aggregator = StatsAggregator(db)

        assert aggregator.stats().active == 5

        await StatusTracker(DeviceRegistry(db), StaticProber(alive={"192.168.1.1", "192.168.1.2"})).check_all()
        stats = aggregator.stats()

        assert stats.total == 5
        assert stats.active == 2
        assert stats.inactive == 3
        assert stats.total == stats.active + stats.inactive
