"""
Models for inventory rows: hosts, their probe history and latency samples.
"""
from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from .common import (
    BasePydanticModel,
    HostnameSource,
    HostStatus,
    ScanMode,
    SortField,
    SortOrder,
    utc_now,
    validate_ipv4,
)


class HostRecord(BasePydanticModel):
    """One row per known IP address."""
    ip: str
    mac: str | None = None
    hostname: str | None = None
    hostname_source: HostnameSource | None = None
    vendor: str | None = None
    status: HostStatus = HostStatus.UNKNOWN
    ping_latency_ms: int | None = None
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    additional_info: dict[str, Any] = Field(default_factory=dict)

    @field_validator("ip")
    @classmethod
    def _check_ip(cls, value: str) -> str:
        return validate_ipv4(value)

    @property
    def open_ports(self) -> list[dict[str, Any]]:
        return list(self.additional_info.get("openPorts") or [])


class HistoryEntry(BasePydanticModel):
    ip: str
    status: HostStatus
    ping_latency_ms: int | None = None
    seen_at: datetime = Field(default_factory=utc_now)


class LatencySample(BasePydanticModel):
    ip: str
    latency_ms: int
    measured_at: datetime = Field(default_factory=utc_now)


class ProbeResult(BasePydanticModel):
    """Outcome of probing a single address. Lookups that failed stay None."""
    ip: str
    status: HostStatus
    mode: ScanMode = ScanMode.QUICK
    ping_latency_ms: int | None = None
    mac: str | None = None
    hostname: str | None = None
    vendor: str | None = None
    probed_at: datetime = Field(default_factory=utc_now)

    @property
    def is_online(self) -> bool:
        return self.status == HostStatus.ONLINE


class HostQuery(BasePydanticModel):
    status: HostStatus | None = None
    ip_prefix: str | None = None
    search: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    sort_by: SortField = SortField.LAST_SEEN
    sort_order: SortOrder = SortOrder.DESC


class HostPage(BasePydanticModel):
    items: list[HostRecord] = Field(default_factory=list)
    total: int = 0
    limit: int = 100
    offset: int = 0
