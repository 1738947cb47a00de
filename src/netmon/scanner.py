"""
Subnet scanner.

Sweeps the /24 around a local address: every host suffix 1..254 is probed
concurrently and the addresses that answered come back as ScanHits, in
completion order.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Optional

from ._types import FIRST_HOST_SUFFIX, LAST_HOST_SUFFIX, SUGGESTED_NAME_FORMAT, ScanHit
from .prober import Prober

logger = logging.getLogger(__name__)


def subnet_prefix(local_address: str) -> str:
    """First three octets of an IPv4 address, e.g. '192.168.1'."""
    try:
        address = ipaddress.IPv4Address(local_address.strip())
    except ValueError as e:
        raise ValueError(f"Invalid local IPv4 address: {local_address!r}") from e
    return str(address).rsplit(".", 1)[0]


def candidate_addresses(local_address: str) -> list[str]:
    """Every host address of the /24 containing local_address."""
    prefix = subnet_prefix(local_address)
    return [f"{prefix}.{i}" for i in range(FIRST_HOST_SUFFIX, LAST_HOST_SUFFIX + 1)]


class SubnetScanner:
    """
    Concurrent ping sweep of one /24.

    All candidates are in flight at once unless max_concurrent is set, in
    which case a semaphore caps simultaneous probes.
    """

    def __init__(self, prober: Prober, max_concurrent: Optional[int] = None):
        """
        Initialize the scanner.

        Args:
            prober: Reachability probe used for each candidate
            max_concurrent: Ceiling on simultaneous probes (None or 0 = unbounded)
        """
        self.prober = prober
        self.max_concurrent = max_concurrent or None

    async def _probe_candidate(
        self,
        suffix: int,
        address: str,
        semaphore: Optional[asyncio.Semaphore],
    ) -> tuple[int, str, bool]:
        try:
            if semaphore is None:
                alive = await self.prober.probe(address)
            else:
                async with semaphore:
                    alive = await self.prober.probe(address)
        except Exception as e:
            # A misbehaving prober must not take the rest of the sweep down
            logger.warning(f"Probe of {address} raised, treating as unreachable: {e}")
            alive = False
        return suffix, address, bool(alive)

    async def scan(self, local_address: str) -> list[ScanHit]:
        """
        Probe every host of local_address's /24.

        Returns the responding addresses, each exactly once. Ordering follows
        probe completion and must not be relied on.
        """
        prefix = subnet_prefix(local_address)
        semaphore = asyncio.Semaphore(self.max_concurrent) if self.max_concurrent else None

        logger.info(
            f"Scanning {prefix}.0/24 with {self.prober.name} probe "
            f"(timeout={self.prober.timeout}s, max_concurrent={self.max_concurrent or 'unbounded'})"
        )

        tasks = [
            asyncio.ensure_future(self._probe_candidate(i, f"{prefix}.{i}", semaphore))
            for i in range(FIRST_HOST_SUFFIX, LAST_HOST_SUFFIX + 1)
        ]

        hits: list[ScanHit] = []
        for next_done in asyncio.as_completed(tasks):
            suffix, address, alive = await next_done
            if alive:
                hits.append(ScanHit(
                    ip_address=address,
                    suggested_name=SUGGESTED_NAME_FORMAT.format(suffix=suffix),
                ))

        logger.info(f"Scan of {prefix}.0/24 finished: {len(hits)} hosts answered")
        return hits
