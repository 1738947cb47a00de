"""
Reachability probing.

A prober answers one question about one address: did it respond within
the timeout? Every failure (timeout, unreachable host, missing ping
binary, bad address) folds into False. Probers never raise and never
retry.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import platform
from abc import ABC, abstractmethod
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1.0

# Extra time granted to the ping process on top of its own timeout flag
SUBPROCESS_GRACE_SECONDS = 1.0

DEFAULT_TCP_PORTS = (80, 443, 22, 445)


class Prober(ABC):
    """Base class for reachability probes."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this probe method."""
        pass

    @abstractmethod
    async def probe(self, address: str) -> bool:
        """Return True if the address answered within the timeout."""
        pass


def _is_ipv4(address: str) -> bool:
    try:
        ipaddress.IPv4Address(address)
        return True
    except ValueError:
        return False


class PingProber(Prober):
    """
    ICMP echo via the system ping binary.

    One echo request per call, bounded both by ping's own timeout flag and
    by asyncio.wait_for around the subprocess.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, system: Optional[str] = None):
        super().__init__(timeout)
        self.system = (system or platform.system()).lower()

    @property
    def name(self) -> str:
        return "ping"

    def build_command(self, address: str) -> list[str]:
        """Platform-specific single-echo ping command."""
        timeout_ms = max(1, int(self.timeout * 1000))
        if "windows" in self.system:
            return ["ping", "-n", "1", "-w", str(timeout_ms), address]
        if "darwin" in self.system:
            # macOS -W takes milliseconds
            return ["ping", "-c", "1", "-W", str(timeout_ms), address]
        # Linux -W takes whole seconds
        return ["ping", "-c", "1", "-W", str(max(1, math.ceil(self.timeout))), address]

    async def probe(self, address: str) -> bool:
        if not _is_ipv4(address):
            logger.debug(f"Refusing to ping invalid address {address!r}")
            return False

        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(address),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            returncode = await asyncio.wait_for(
                proc.wait(),
                timeout=self.timeout + SUBPROCESS_GRACE_SECONDS,
            )
            return returncode == 0
        except asyncio.TimeoutError:
            logger.debug(f"Ping to {address} timed out")
            return False
        except Exception as e:
            logger.debug(f"Ping to {address} failed: {e}")
            return False
        finally:
            # Also runs on cancellation; a ping still running is killed and reaped
            if proc is not None and proc.returncode is None:
                await self._reap(proc)

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=SUBPROCESS_GRACE_SECONDS)
        except (asyncio.TimeoutError, OSError):
            logger.warning(f"Ping process {proc.pid} did not exit after kill")


class TcpProber(Prober):
    """
    TCP connect probe.

    A host is alive if any port accepts the connection or actively refuses
    it (a refusal still proves the host answered). Useful where the
    process cannot send ICMP.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        ports: Sequence[int] = DEFAULT_TCP_PORTS,
    ):
        super().__init__(timeout)
        self.ports = tuple(ports)

    @property
    def name(self) -> str:
        return "tcp"

    async def _connect(self, address: str, port: int) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host=address, port=port),
                timeout=self.timeout,
            )
        except ConnectionRefusedError:
            return True
        except (asyncio.TimeoutError, OSError):
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def probe(self, address: str) -> bool:
        if not _is_ipv4(address) or not self.ports:
            return False

        try:
            results = await asyncio.gather(
                *(self._connect(address, port) for port in self.ports),
                return_exceptions=True,
            )
        except Exception as e:
            logger.debug(f"TCP probe of {address} failed: {e}")
            return False
        return any(r is True for r in results)


PROBERS = {
    "ping": PingProber,
    "tcp": TcpProber,
}


def create_prober(
    method: str = "ping",
    timeout: float = DEFAULT_TIMEOUT,
    ports: Sequence[int] = DEFAULT_TCP_PORTS,
) -> Prober:
    """Build a prober by method name."""
    method = method.lower()
    if method == "ping":
        return PingProber(timeout=timeout)
    if method == "tcp":
        return TcpProber(timeout=timeout, ports=ports)
    raise ValueError(f"Unknown probe method: {method} (expected one of {sorted(PROBERS)})")


async def probe(address: str, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Ping one address once. Never raises."""
    return await PingProber(timeout=timeout).probe(address)
