"""
Network monitor configuration.

Loaded from environment variables (from_env) or a YAML file (from_yaml).
Only the local IPv4 address is needed to derive the scanned /24; when it
is not configured it is detected from the host's interfaces.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .prober import DEFAULT_TCP_PORTS, PROBERS

logger = logging.getLogger(__name__)


def _detect_local_address() -> Optional[str]:
    """Auto-detect the first non-loopback IPv4 address of this host.

    Parses `ip -4 addr` output (Linux), then falls back to asking the
    kernel which source address it would route external traffic from.
    """
    try:
        result = subprocess.run(
            ["ip", "-4", "-o", "addr", "show"],
            capture_output=True, text=True, timeout=5,
        )
        if result.returncode == 0:
            for line in result.stdout.splitlines():
                parts = line.split()
                # Format: "2: eth0    inet 192.168.88.241/24 brd ..."
                iface = parts[1] if len(parts) > 1 else ""
                if iface == "lo":
                    continue
                for part in parts:
                    if "/" not in part:
                        continue
                    try:
                        interface = ipaddress.IPv4Interface(part)
                    except ValueError:
                        continue
                    if not interface.ip.is_loopback:
                        logger.info(f"Auto-detected local address: {interface.ip} ({iface})")
                        return str(interface.ip)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass

    # UDP connect sends nothing, it only selects a route
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("10.255.255.255", 1))
            address = s.getsockname()[0]
        if not ipaddress.IPv4Address(address).is_loopback:
            logger.info(f"Auto-detected local address (route): {address}")
            return address
    except (OSError, ValueError):
        pass

    logger.warning("Could not auto-detect local address")
    return None


def _parse_ports(value: str) -> list[int]:
    return [int(p) for p in value.split(",") if p.strip()]


def _optional_int(value) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value) or None


@dataclass
class MonitorConfig:
    """
    Network monitor configuration.

    max_concurrent_probes of None means every candidate of a scan is probed
    at once.
    """

    # Subnet to scan (/24 of this address)
    local_address: Optional[str] = None

    # Probing
    probe_method: str = "ping"  # ping, tcp
    probe_timeout_seconds: float = 1.0
    tcp_ports: list[int] = field(default_factory=lambda: list(DEFAULT_TCP_PORTS))
    max_concurrent_probes: Optional[int] = None

    # Periodic status check (0 disables)
    check_interval_seconds: int = 30

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 5000

    # Database
    db_path: Path = field(default_factory=lambda: Path("netmon.db"))

    # History reads
    history_limit: int = 50

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables."""
        config = cls()

        address = os.getenv("LOCAL_ADDRESS", "").strip()
        if address.lower() == "auto" or not address:
            config.local_address = _detect_local_address()
        else:
            config.local_address = address

        # Probing
        config.probe_method = os.getenv("PROBE_METHOD", "ping").lower()
        config.probe_timeout_seconds = float(os.getenv("PROBE_TIMEOUT", "1.0"))
        if ports := os.getenv("TCP_PORTS"):
            config.tcp_ports = _parse_ports(ports)
        config.max_concurrent_probes = _optional_int(os.getenv("MAX_CONCURRENT_PROBES"))

        # Schedule
        config.check_interval_seconds = int(os.getenv("CHECK_INTERVAL", "30"))

        # API server
        config.api_host = os.getenv("API_HOST", "127.0.0.1")
        config.api_port = int(os.getenv("API_PORT", "5000"))

        # Paths
        if db_path := os.getenv("DB_PATH"):
            config.db_path = Path(db_path)

        config.history_limit = int(os.getenv("HISTORY_LIMIT", "50"))

        # Logging
        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "MonitorConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            config = cls()
            config.local_address = _detect_local_address()
            return config

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        network = data.get("network", {})
        address = str(network.get("local_address") or "").strip()
        if address and address.lower() != "auto":
            config.local_address = address
        else:
            config.local_address = _detect_local_address()

        if "probe" in data:
            p = data["probe"]
            config.probe_method = str(p.get("method", "ping")).lower()
            config.probe_timeout_seconds = float(p.get("timeout_seconds", 1.0))
            if "tcp_ports" in p:
                config.tcp_ports = [int(port) for port in p["tcp_ports"]]
            config.max_concurrent_probes = _optional_int(p.get("max_concurrent"))

        if "schedule" in data:
            config.check_interval_seconds = int(data["schedule"].get("check_interval_seconds", 30))

        if "api" in data:
            a = data["api"]
            config.api_host = a.get("host", "127.0.0.1")
            config.api_port = a.get("port", 5000)

        if "paths" in data:
            p = data["paths"]
            if "db" in p:
                config.db_path = Path(p["db"])

        config.history_limit = int(data.get("history_limit", 50))
        config.log_level = data.get("log_level", "INFO")

        return config

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if not self.local_address:
            errors.append("No local address configured or detected")
        else:
            try:
                ipaddress.IPv4Address(self.local_address)
            except ValueError:
                errors.append(f"Invalid local address: {self.local_address}")

        if self.probe_method not in PROBERS:
            errors.append(f"Unknown probe method: {self.probe_method}")

        if self.probe_timeout_seconds <= 0:
            errors.append(f"Probe timeout must be positive: {self.probe_timeout_seconds}")

        if self.probe_method == "tcp" and not self.tcp_ports:
            errors.append("TCP probe selected but no ports configured")

        if self.max_concurrent_probes is not None and self.max_concurrent_probes < 0:
            errors.append(f"Invalid probe concurrency: {self.max_concurrent_probes}")

        if self.check_interval_seconds < 0:
            errors.append(f"Invalid check interval: {self.check_interval_seconds}")

        if not 1 <= self.history_limit <= 1000:
            errors.append(f"History limit out of range: {self.history_limit}")

        return errors


# Example netmon.yaml:
"""
network:
  local_address: "192.168.1.20"   # or "auto"

probe:
  method: ping                    # ping, tcp
  timeout_seconds: 1.0
  tcp_ports: [80, 443, 22, 445]
  max_concurrent: 64              # omit for unbounded

schedule:
  check_interval_seconds: 30      # 0 disables periodic checks

api:
  host: "127.0.0.1"
  port: 5000

paths:
  db: "/var/lib/netmon/netmon.db"

history_limit: 50
log_level: "INFO"
"""
