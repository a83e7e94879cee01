"""
Pydantic models for hostwatch.
"""
from .common import (
    BasePydanticModel,
    HostnameSource,
    HostStatus,
    PurgeCategory,
    RejectionReason,
    ScanKind,
    ScanMode,
    ScanState,
    ScanTrigger,
    SortField,
    SortOrder,
)
from .host import (
    HistoryEntry,
    HostPage,
    HostQuery,
    HostRecord,
    LatencySample,
    ProbeResult,
)
from .scan import (
    OpenPort,
    PortScanProgress,
    ScanOutcome,
    ScanProgress,
    ScanResult,
)
from .settings import (
    BlacklistEntry,
    DefaultRangeConfig,
    FullScanSchedule,
    LegacyAutoScanConfig,
    PurgeResult,
    RefreshSchedule,
    RetentionConfig,
    SizeEstimate,
    UnifiedAutoScanConfig,
)

__all__ = [
    "BasePydanticModel",
    "BlacklistEntry",
    "DefaultRangeConfig",
    "FullScanSchedule",
    "HistoryEntry",
    "HostPage",
    "HostQuery",
    "HostRecord",
    "HostStatus",
    "HostnameSource",
    "LatencySample",
    "LegacyAutoScanConfig",
    "OpenPort",
    "PortScanProgress",
    "ProbeResult",
    "PurgeCategory",
    "PurgeResult",
    "RefreshSchedule",
    "RejectionReason",
    "RetentionConfig",
    "ScanKind",
    "ScanMode",
    "ScanOutcome",
    "ScanProgress",
    "ScanResult",
    "ScanState",
    "ScanTrigger",
    "SizeEstimate",
    "SortField",
    "SortOrder",
    "UnifiedAutoScanConfig",
]
