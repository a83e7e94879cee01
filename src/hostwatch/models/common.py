import ipaddress
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ip_sort_key(ip: str) -> int:
    """Numeric ordering key for dotted IPv4 strings."""
    return int(ipaddress.IPv4Address(ip))


def validate_ipv4(value: str) -> str:
    """Returns the canonical form of an IPv4 address or raises ValueError."""
    return str(ipaddress.IPv4Address(value.strip()))


class BasePydanticModel(BaseModel):
    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "use_enum_values": True,
        "alias_generator": to_camel,
    }

class HostStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"

class HostnameSource(str, Enum):
    MANUAL = "manual"
    SCANNER = "scanner"
    PLUGIN = "plugin"

class ScanMode(str, Enum):
    FULL = "full"
    QUICK = "quick"

class ScanKind(str, Enum):
    SCAN = "scan"
    REFRESH = "refresh"

class ScanTrigger(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    STARTUP = "startup"

class ScanState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"

class RejectionReason(str, Enum):
    ALREADY_RUNNING = "already_running"
    INVALID_INPUT = "invalid_input"
    REPOSITORY_UNAVAILABLE = "repository_unavailable"

class PurgeCategory(str, Enum):
    HISTORY = "history"
    SCANS = "scans"
    OFFLINE = "offline"
    LATENCY_SAMPLES = "latencySamples"

class SortField(str, Enum):
    IP = "ip"
    LAST_SEEN = "last_seen"
    FIRST_SEEN = "first_seen"
    STATUS = "status"
    PING_LATENCY = "ping_latency"
    HOSTNAME = "hostname"
    MAC = "mac"
    VENDOR = "vendor"

class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"
