"""
Exception hierarchy for hostwatch.
"""
from datetime import datetime
from typing import Optional


class HostwatchError(Exception):
    """Base class for all hostwatch errors."""
    pass


class RangeError(HostwatchError):
    """Base class for errors raised while resolving a target range."""
    def __init__(self, message: str, range_spec: Optional[str] = None):
        super().__init__(message)
        self.range_spec = range_spec


class InvalidRangeError(RangeError):
    """Raised when a range specification cannot be parsed or is not allowed."""
    pass


class RangeTooLargeError(RangeError):
    """Raised when a range expands to more addresses than the hard cap.
    Carries a narrower /24 suggestion the caller can offer instead."""
    def __init__(self, range_spec: str, address_count: int, limit: int, suggested_range: Optional[str] = None):
        message = f"Range '{range_spec}' expands to {address_count} addresses (limit is {limit})"
        if suggested_range:
            message += f"; try '{suggested_range}'"
        super().__init__(message, range_spec=range_spec)
        self.address_count = address_count
        self.limit = limit
        self.suggested_range = suggested_range


class AutoDetectFailedError(RangeError):
    """Raised when no usable interface could be found to derive a local range."""
    pass


class ScanAlreadyInProgressError(HostwatchError):
    """Raised when a sweep is requested while another one is running.
    Requests are rejected, never queued."""
    def __init__(self, message: str = "A scan is already in progress", kind: Optional[str] = None, started_at: Optional[datetime] = None):
        super().__init__(message)
        self.kind = kind
        self.started_at = started_at


class PortScanAlreadyInProgressError(HostwatchError):
    """Raised when a port scan is requested while another one is running."""
    pass


class PortScannerUnavailableError(HostwatchError):
    """Raised when the external port scanner binary cannot be found."""
    def __init__(self, message: str, binary: Optional[str] = None):
        super().__init__(message)
        self.binary = binary


class ProbeTimeout(HostwatchError):
    """Raised inside the prober when a host does not answer in time.
    Always absorbed and recorded as an offline result."""
    def __init__(self, ip: str, timeout_seconds: float):
        super().__init__(f"Probe of {ip} timed out after {timeout_seconds}s")
        self.ip = ip
        self.timeout_seconds = timeout_seconds


class RepositoryError(HostwatchError):
    """Base class for inventory repository errors."""
    pass


class RepositoryWriteError(RepositoryError):
    """Raised when the repository fails to persist a change. Fatal to a sweep."""
    def __init__(self, message: str, operation: Optional[str] = None, ip: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.ip = ip


class InvalidRetentionConfigError(HostwatchError):
    """Raised when a retention configuration update fails validation."""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidScheduleConfigError(HostwatchError):
    """Raised when a schedule configuration update fails validation."""
    pass


class HostNotFoundError(HostwatchError):
    """Raised when an operation targets an IP that is not in the inventory."""
    def __init__(self, ip: str):
        super().__init__(f"Host {ip} not found")
        self.ip = ip
