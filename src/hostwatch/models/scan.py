"""
Models describing sweeps and port scans while they run and after they finish.
"""
from datetime import datetime

from pydantic import Field

from .common import (
    BasePydanticModel,
    RejectionReason,
    ScanKind,
    ScanMode,
    ScanState,
    ScanTrigger,
    utc_now,
)


class ScanProgress(BasePydanticModel):
    """Live counters of a running sweep. Only exists while the sweep runs."""
    scan_id: str
    kind: ScanKind = ScanKind.SCAN
    mode: ScanMode = ScanMode.FULL
    range: str | None = None
    total: int = 0
    completed: int = 0
    found: int = 0
    updated: int = 0
    current_target: str | None = None
    started_at: datetime = Field(default_factory=utc_now)


class ScanResult(BasePydanticModel):
    """Final tallies of a completed sweep, kept until the next one completes."""
    scan_id: str
    kind: ScanKind = ScanKind.SCAN
    mode: ScanMode = ScanMode.FULL
    trigger: ScanTrigger = ScanTrigger.MANUAL
    state: ScanState = ScanState.COMPLETED
    range: str | None = None
    total: int = 0
    scanned: int = 0
    found: int = 0
    updated: int = 0
    online: int = 0
    offline: int = 0
    excluded: int = 0
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0


class ScanOutcome(BasePydanticModel):
    """Answer to a scan or refresh request: accepted, or rejected with a reason."""
    accepted: bool
    scan_id: str | None = None
    kind: ScanKind | None = None
    total: int | None = None
    range: str | None = None
    reason: RejectionReason | None = None
    message: str | None = None
    suggested_range: str | None = None


class OpenPort(BasePydanticModel):
    port: int = Field(ge=1, le=65535)
    protocol: str = "tcp"
    service: str | None = None


class PortScanProgress(BasePydanticModel):
    active: bool = False
    current_host: str | None = None
    scanned_count: int = 0
    total_count: int = 0
    hosts_with_open_ports: int = 0
    abort_requested: bool = False
    aborted: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
