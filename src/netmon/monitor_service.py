"""
Network Monitor Service - main orchestration loop.

Wires the prober, subnet scanner, device registry, status tracker and
stats aggregator to one device database, runs the periodic status check
and serves the JSON API.

Scans and status checks are maintenance operations: only one may run at a
time. A second request while one is active fails with
OperationInProgressError (HTTP 409) instead of racing it.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from aiohttp import web

from ._types import now_utc
from .config import MonitorConfig
from .device_db import DeviceDatabase
from .exceptions import DeviceExistsError, OperationInProgressError, PersistenceError
from .prober import Prober, create_prober
from .registry import DeviceRegistry
from .scanner import SubnetScanner
from .stats import StatsAggregator
from .status_tracker import StatusTracker

logger = logging.getLogger(__name__)

# Optional device fields accepted on manual registration
TEXT_FIELDS = ("mac_address", "hostname", "label", "category")


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


def _field_update(data: dict, key: str) -> Optional[str]:
    """Absent key leaves the field alone; an explicit null clears it."""
    if key not in data:
        return None
    value = data[key]
    return "" if value is None else str(value)


def _device_id(request: web.Request) -> Optional[int]:
    try:
        return int(request.match_info["device_id"])
    except ValueError:
        return None


class NetworkMonitorService:
    """
    Main network monitor service.

    Owns the device database for its whole lifetime: opened on
    construction, closed by stop().
    """

    def __init__(
        self,
        config: MonitorConfig,
        prober: Optional[Prober] = None,
        db: Optional[DeviceDatabase] = None,
    ):
        """
        Initialize monitor service.

        Args:
            config: Monitor configuration
            prober: Reachability probe (built from config when omitted)
            db: Device database (opened at config.db_path when omitted)
        """
        self.config = config
        self.db = db or DeviceDatabase(config.db_path)
        self.prober = prober or create_prober(
            config.probe_method,
            timeout=config.probe_timeout_seconds,
            ports=config.tcp_ports,
        )

        self.registry = DeviceRegistry(self.db)
        self.scanner = SubnetScanner(self.prober, max_concurrent=config.max_concurrent_probes)
        self.tracker = StatusTracker(self.registry, self.prober, max_concurrent=config.max_concurrent_probes)
        self.stats = StatsAggregator(self.db)

        self._running = False
        self._shutdown_event = asyncio.Event()

        # At most one scan or status check at a time
        self._maintenance_lock = asyncio.Lock()
        self._active_operation: Optional[str] = None

        # API server
        self._api_app: Optional[web.Application] = None
        self._api_runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        """Start the monitor service."""
        logger.info("Starting Network Monitor Service")
        self._running = True

        await self._start_api_server()
        await self._main_loop()

    async def stop(self) -> None:
        """Stop the monitor service and close the database."""
        logger.info("Stopping Network Monitor Service")
        self._running = False
        self._shutdown_event.set()

        if self._api_runner:
            await self._api_runner.cleanup()
            self._api_runner = None

        self.db.close()

    def create_app(self) -> web.Application:
        """Build the aiohttp application with all API routes."""
        app = web.Application()
        app.router.add_get("/api/devices", self._handle_list_devices)
        app.router.add_post("/api/devices", self._handle_create_device)
        app.router.add_get("/api/devices/{device_id}", self._handle_get_device)
        app.router.add_put("/api/devices/{device_id}", self._handle_update_device)
        app.router.add_delete("/api/devices/{device_id}", self._handle_delete_device)
        app.router.add_get("/api/devices/{device_id}/history", self._handle_device_history)
        app.router.add_post("/api/scan", self._handle_scan)
        app.router.add_post("/api/check-status", self._handle_check_status)
        app.router.add_get("/api/stats", self._handle_stats)
        app.router.add_get("/api/health", self._handle_health)
        return app

    async def _start_api_server(self) -> None:
        """Start API server."""
        self._api_app = self.create_app()
        self._api_runner = web.AppRunner(self._api_app)
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")

    async def _main_loop(self) -> None:
        """Main service loop - runs the periodic status check."""
        interval = self.config.check_interval_seconds
        if interval <= 0:
            logger.info("Periodic status checks disabled")
            await self._shutdown_event.wait()
            return

        logger.info(f"Monitor main loop started (status check every {interval}s)")

        while self._running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                # Shutdown requested
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_status_check(triggered_by="schedule")
            except OperationInProgressError as e:
                logger.info(f"Skipping scheduled status check: {e}")
            except Exception as e:
                logger.error(f"Scheduled status check failed: {e}")

        logger.info("Monitor main loop stopped")

    # -------------------------------------------------------------------------
    # Maintenance operations
    # -------------------------------------------------------------------------

    @property
    def active_operation(self) -> Optional[str]:
        return self._active_operation

    @asynccontextmanager
    async def _maintenance(self, operation: str) -> AsyncIterator[None]:
        """Hold the maintenance guard, failing fast if it is taken."""
        if self._maintenance_lock.locked():
            raise OperationInProgressError(self._active_operation or "maintenance", operation)

        async with self._maintenance_lock:
            self._active_operation = operation
            try:
                yield
            finally:
                self._active_operation = None

    async def run_scan(
        self,
        local_address: Optional[str] = None,
        triggered_by: str = "manual",
    ) -> dict:
        """
        Sweep the local /24 and upsert every responding host.

        Args:
            local_address: Address whose /24 is scanned (defaults to config)
            triggered_by: Who triggered the scan

        Returns:
            Scan result summary

        A PersistenceError part way through leaves earlier upserts in place
        and propagates; rerunning the scan is safe.
        """
        address = local_address or self.config.local_address
        if not address:
            raise ValueError("No local address configured for scanning")

        async with self._maintenance("scan"):
            started_at = now_utc()
            logger.info(f"Starting scan of {address}/24 (triggered_by={triggered_by})")

            hits = await self.scanner.scan(address)

            devices = []
            for hit in hits:
                try:
                    devices.append(self.registry.upsert(hit.ip_address, hit.suggested_name))
                except PersistenceError as e:
                    logger.error(
                        f"Scan aborted while storing {hit.ip_address} "
                        f"({len(devices)}/{len(hits)} stored): {e}"
                    )
                    raise

            new_count = sum(1 for d in devices if d.first_seen_at == d.last_seen_at)
            logger.info(f"Scan completed: {len(devices)} devices found, {new_count} new")

            return {
                "status": "completed",
                "started_at": started_at.isoformat(),
                "completed_at": now_utc().isoformat(),
                "devices_found": len(devices),
                "new_devices": new_count,
                "devices": [d.to_dict() for d in devices],
            }

    async def run_status_check(self, triggered_by: str = "manual") -> dict:
        """Re-probe every known device and append one observation each."""
        async with self._maintenance("status check"):
            logger.debug(f"Status check triggered_by={triggered_by}")
            results = await self.tracker.check_all()
            return {
                "status": "completed",
                "checked": len(results),
                "online": sum(1 for r in results if r.online),
                "results": [r.to_dict() for r in results],
            }

    # -------------------------------------------------------------------------
    # API Handlers
    # -------------------------------------------------------------------------

    async def _handle_list_devices(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices."""
        try:
            devices = self.registry.list()
            return web.json_response([d.to_dict() for d in devices])
        except PersistenceError as e:
            return _error(str(e), 500)

    async def _handle_get_device(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}."""
        device_id = _device_id(request)
        if device_id is None:
            return _error("Device not found", 404)

        try:
            device = self.registry.get(device_id)
        except PersistenceError as e:
            return _error(str(e), 500)

        if not device:
            return _error("Device not found", 404)
        return web.json_response(device.to_dict())

    async def _handle_create_device(self, request: web.Request) -> web.Response:
        """Handle POST /api/devices."""
        try:
            data = await request.json()
        except ValueError:
            return _error("Request body must be JSON", 400)
        if not isinstance(data, dict) or not data.get("ip_address"):
            return _error("ip_address is required", 400)
        for key in TEXT_FIELDS:
            if not isinstance(data.get(key), (str, type(None))):
                return _error(f"{key} must be a string", 400)

        try:
            device = self.registry.register(
                ip_address=str(data["ip_address"]),
                mac_address=data.get("mac_address"),
                hostname=data.get("hostname"),
                label=data.get("label"),
                category=data.get("category"),
            )
        except ValueError as e:
            return _error(str(e), 400)
        except DeviceExistsError as e:
            return _error(str(e), 409)
        except PersistenceError as e:
            return _error(str(e), 500)

        return web.json_response(device.to_dict(), status=201)

    async def _handle_update_device(self, request: web.Request) -> web.Response:
        """Handle PUT /api/devices/{device_id}."""
        device_id = _device_id(request)
        if device_id is None:
            return web.json_response({"status": "ok", "changes": 0})

        try:
            data = await request.json()
        except ValueError:
            return _error("Request body must be JSON", 400)
        if not isinstance(data, dict) or not ({"label", "category"} & data.keys()):
            return _error("Nothing to update (expected label and/or category)", 400)

        try:
            changes = self.registry.update(
                device_id,
                label=_field_update(data, "label"),
                category=_field_update(data, "category"),
            )
        except PersistenceError as e:
            return _error(str(e), 500)

        return web.json_response({"status": "ok", "changes": changes})

    async def _handle_delete_device(self, request: web.Request) -> web.Response:
        """Handle DELETE /api/devices/{device_id}."""
        device_id = _device_id(request)
        if device_id is None:
            return web.json_response({"status": "ok", "changes": 0})

        try:
            changes = self.registry.delete(device_id)
        except PersistenceError as e:
            return _error(str(e), 500)

        return web.json_response({"status": "ok", "changes": changes})

    async def _handle_device_history(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}/history."""
        device_id = _device_id(request)
        if device_id is None:
            return _error("Device not found", 404)

        try:
            limit = int(request.query.get("limit", str(self.config.history_limit)))
        except ValueError:
            return _error("limit must be an integer", 400)

        try:
            entries = self.registry.history(device_id, limit=limit)
        except PersistenceError as e:
            return _error(str(e), 500)

        if entries is None:
            return _error("Device not found", 404)
        return web.json_response([e.to_dict() for e in entries])

    async def _handle_scan(self, request: web.Request) -> web.Response:
        """Handle POST /api/scan."""
        try:
            result = await self.run_scan(triggered_by="api")
        except OperationInProgressError as e:
            return _error(str(e), 409)
        except ValueError as e:
            return _error(str(e), 400)
        except PersistenceError as e:
            return _error(str(e), 500)

        return web.json_response(result)

    async def _handle_check_status(self, request: web.Request) -> web.Response:
        """Handle POST /api/check-status."""
        try:
            result = await self.run_status_check(triggered_by="api")
        except OperationInProgressError as e:
            return _error(str(e), 409)
        except PersistenceError as e:
            return _error(str(e), 500)

        return web.json_response(result)

    async def _handle_stats(self, request: web.Request) -> web.Response:
        """Handle GET /api/stats."""
        try:
            return web.json_response(self.stats.stats().to_dict())
        except PersistenceError as e:
            return _error(str(e), 500)

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        return web.json_response({
            "status": "ok",
            "service": "netmon",
            "database": "open" if self.db.is_open else "closed",
            "local_address": self.config.local_address,
            "probe_method": self.prober.name,
            "active_operation": self._active_operation,
        })


def main():
    """Entry point for the netmon service."""
    import argparse

    parser = argparse.ArgumentParser(description="NetMon network monitor service")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="API host")
    parser.add_argument("--port", type=int, help="API port")
    parser.add_argument("--db", type=str, help="Path to SQLite database")
    parser.add_argument("--log-level", type=str, help="Log level")
    args = parser.parse_args()

    # Load configuration
    if args.config:
        config = MonitorConfig.from_yaml(Path(args.config))
    else:
        config = MonitorConfig.from_env()

    # Override with CLI args
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.db:
        config.db_path = Path(args.db)
    if args.log_level:
        config.log_level = args.log_level

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        sys.exit(1)

    try:
        service = NetworkMonitorService(config)
    except PersistenceError as e:
        logger.error(f"Cannot start: {e}")
        sys.exit(1)

    # Handle signals
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
