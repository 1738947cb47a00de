"""Tests for the subnet scanner."""

import asyncio

import pytest

from netmon.prober import Prober
from netmon.scanner import SubnetScanner, candidate_addresses, subnet_prefix


class StaticProber(Prober):
    """Prober answering from a fixed set of live addresses."""

    def __init__(self, alive=(), delay=0.0, fail=()):
        super().__init__(timeout=0.1)
        self.alive = set(alive)
        self.fail = set(fail)
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def name(self) -> str:
        return "static"

    async def probe(self, address: str) -> bool:
        self.calls.append(address)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if address in self.fail:
                raise RuntimeError("probe exploded")
            return address in self.alive
        finally:
            self.in_flight -= 1


class TestSubnetPrefix:
    """Tests for deriving the /24 from a local address."""

    def test_prefix(self):
        assert subnet_prefix("192.168.1.42") == "192.168.1"

    def test_prefix_strips_whitespace(self):
        assert subnet_prefix(" 10.0.0.7 ") == "10.0.0"

    @pytest.mark.parametrize("bad", ["", "192.168.1", "192.168.1.300", "fe80::1", "host.local"])
    def test_invalid_address(self, bad):
        with pytest.raises(ValueError):
            subnet_prefix(bad)

    def test_candidates(self):
        """Should produce .1 through .254, skipping network and broadcast."""
        candidates = candidate_addresses("192.168.1.42")

        assert len(candidates) == 254
        assert candidates[0] == "192.168.1.1"
        assert candidates[-1] == "192.168.1.254"
        assert "192.168.1.0" not in candidates
        assert "192.168.1.255" not in candidates


class TestScan:
    """Tests for the concurrent sweep."""

    @pytest.mark.asyncio
    async def test_probes_every_candidate_once(self):
        prober = StaticProber()

        await SubnetScanner(prober).scan("192.168.1.42")

        assert sorted(prober.calls) == sorted(candidate_addresses("192.168.1.42"))

    @pytest.mark.asyncio
    async def test_returns_only_responders(self):
        """Should report each live address exactly once with its suggested name."""
        prober = StaticProber(alive={"192.168.1.1", "192.168.1.42", "192.168.1.254"})

        hits = await SubnetScanner(prober).scan("192.168.1.42")

        by_ip = {hit.ip_address: hit.suggested_name for hit in hits}
        assert len(hits) == 3
        assert by_ip == {
            "192.168.1.1": "device-1",
            "192.168.1.42": "device-42",
            "192.168.1.254": "device-254",
        }

    @pytest.mark.asyncio
    async def test_no_responders(self):
        assert await SubnetScanner(StaticProber()).scan("10.0.0.1") == []

    @pytest.mark.asyncio
    async def test_invalid_local_address(self):
        prober = StaticProber()

        with pytest.raises(ValueError):
            await SubnetScanner(prober).scan("not-an-ip")

        assert prober.calls == []

    @pytest.mark.asyncio
    async def test_raising_probe_is_isolated(self):
        """A probe that raises should count as unreachable without aborting the sweep."""
        prober = StaticProber(
            alive={"192.168.1.10", "192.168.1.11"},
            fail={"192.168.1.11", "192.168.1.12"},
        )

        hits = await SubnetScanner(prober).scan("192.168.1.1")

        assert [hit.ip_address for hit in hits] == ["192.168.1.10"]
        assert len(prober.calls) == 254

    @pytest.mark.asyncio
    async def test_unbounded_concurrency(self):
        """With no ceiling every candidate is in flight at once."""
        prober = StaticProber(delay=0.01)

        await SubnetScanner(prober).scan("192.168.1.1")

        assert prober.max_in_flight == 254

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self):
        prober = StaticProber(delay=0.001)

        await SubnetScanner(prober, max_concurrent=16).scan("192.168.1.1")

        assert prober.max_in_flight <= 16
        assert len(prober.calls) == 254

    @pytest.mark.asyncio
    async def test_completion_order(self):
        """Hits arrive in the order probes finish, not by address."""

        class SlowLowProber(StaticProber):
            async def probe(self, address):
                self.calls.append(address)
                suffix = int(address.rsplit(".", 1)[1])
                await asyncio.sleep(0.05 if suffix == 2 else 0.0)
                return suffix in (2, 3)

        hits = await SubnetScanner(SlowLowProber()).scan("10.1.1.1")

        assert [hit.ip_address for hit in hits] == ["10.1.1.3", "10.1.1.2"]
