"""
Liveness tracking for known devices.

Each check_all() cycle snapshots the registry, probes every device in the
snapshot and writes the result back together with one history row per
device, whether or not the state changed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ._types import Device, StatusResult, now_utc
from .exceptions import PersistenceError
from .prober import Prober
from .registry import DeviceRegistry

logger = logging.getLogger(__name__)


class StatusTracker:
    """Re-probes registered devices and appends observations."""

    def __init__(
        self,
        registry: DeviceRegistry,
        prober: Prober,
        max_concurrent: Optional[int] = None,
    ):
        self.registry = registry
        self.prober = prober
        self.max_concurrent = max_concurrent or None

    async def _probe_all(self, devices: list[Device]) -> list[bool]:
        semaphore = asyncio.Semaphore(self.max_concurrent) if self.max_concurrent else None

        async def probe_one(device: Device) -> bool:
            try:
                if semaphore is None:
                    return bool(await self.prober.probe(device.ip_address))
                async with semaphore:
                    return bool(await self.prober.probe(device.ip_address))
            except Exception as e:
                logger.warning(f"Probe of {device.ip_address} raised, treating as unreachable: {e}")
                return False

        return await asyncio.gather(*(probe_one(d) for d in devices))

    async def check_all(self) -> list[StatusResult]:
        """
        Probe every device known at call time and record the outcome.

        Devices created while the cycle runs are not visited. A persistence
        failure stops the cycle; devices already written stay written.
        """
        snapshot = self.registry.list()
        logger.info(f"Checking status of {len(snapshot)} devices")

        alive_flags = await self._probe_all(snapshot)

        results: list[StatusResult] = []
        for device, alive in zip(snapshot, alive_flags):
            try:
                updated = self.registry.record_status(device.id, alive, checked_at=now_utc())
            except PersistenceError as e:
                logger.error(
                    f"Status check aborted at {device.ip_address} after "
                    f"{len(results)}/{len(snapshot)} devices: {e}"
                )
                raise

            if not updated:
                logger.debug(f"Device {device.id} ({device.ip_address}) was deleted during the check")
            if alive != device.online:
                logger.info(
                    f"Device {device.ip_address} went {'online' if alive else 'offline'}"
                )
            results.append(StatusResult(device_id=device.id, ip_address=device.ip_address, online=alive))

        online = sum(1 for r in results if r.online)
        logger.info(f"Status check finished: {online}/{len(results)} devices online")
        return results
