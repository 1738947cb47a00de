"""Exceptions raised by the network monitor core and service."""


class NetmonError(Exception):
    """Base exception for network monitor errors."""
    pass


class PersistenceError(NetmonError):
    """The device database could not complete a read or write."""
    pass


class DeviceExistsError(PersistenceError):
    """A device with the same IP address is already registered."""

    def __init__(self, ip_address: str):
        super().__init__(f"Device already registered: {ip_address}")
        self.ip_address = ip_address


class OperationInProgressError(NetmonError):
    """Another scan or status check is already running."""

    def __init__(self, active: str, requested: str):
        super().__init__(f"Cannot start {requested}: {active} already in progress")
        self.active = active
        self.requested = requested
