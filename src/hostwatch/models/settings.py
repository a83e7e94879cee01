"""
Runtime configuration models persisted in the settings store, and the
reports produced by the retention engine.
"""
from datetime import datetime

from pydantic import Field, field_validator

from .common import BasePydanticModel, ScanMode, utc_now, validate_ipv4

FULL_SCAN_INTERVALS = (15, 30, 60, 120, 360, 720, 1440)
REFRESH_INTERVALS = (5, 10, 15, 30, 60)


class FullScanSchedule(BasePydanticModel):
    enabled: bool = False
    interval_minutes: int = Field(default=60, description="One of 15, 30, 60, 120, 360, 720, 1440.")
    mode: ScanMode = ScanMode.FULL
    port_scan_enabled: bool = False

    @field_validator("interval_minutes")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        if value not in FULL_SCAN_INTERVALS:
            raise ValueError(f"full scan interval must be one of {FULL_SCAN_INTERVALS}, got {value}")
        return value


class RefreshSchedule(BasePydanticModel):
    enabled: bool = False
    interval_minutes: int = Field(default=10, description="One of 5, 10, 15, 30, 60.")
    mode: ScanMode = ScanMode.QUICK

    @field_validator("interval_minutes")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        if value not in REFRESH_INTERVALS:
            raise ValueError(f"refresh interval must be one of {REFRESH_INTERVALS}, got {value}")
        return value


class LegacyAutoScanConfig(BasePydanticModel):
    """Single-purpose trigger config kept in sync for older readers."""
    enabled: bool = False
    interval: int = 60
    scan_type: ScanMode = ScanMode.FULL


class UnifiedAutoScanConfig(BasePydanticModel):
    """Master switch plus the full scan and refresh triggers."""
    enabled: bool = False
    full_scan: FullScanSchedule = Field(default_factory=FullScanSchedule)
    refresh: RefreshSchedule = Field(default_factory=RefreshSchedule)

    @property
    def full_scan_active(self) -> bool:
        return bool(self.enabled and self.full_scan.enabled)

    @property
    def refresh_active(self) -> bool:
        return bool(self.enabled and self.refresh.enabled)

    def to_legacy(self) -> tuple[LegacyAutoScanConfig, LegacyAutoScanConfig]:
        """Derives the legacy (scan, refresh) configs. The master switch is folded
        into each legacy `enabled` flag."""
        scan = LegacyAutoScanConfig(
            enabled=self.full_scan_active,
            interval=self.full_scan.interval_minutes,
            scan_type=self.full_scan.mode,
        )
        refresh = LegacyAutoScanConfig(
            enabled=self.refresh_active,
            interval=self.refresh.interval_minutes,
            scan_type=self.refresh.mode,
        )
        return scan, refresh

    @classmethod
    def from_legacy(
        cls,
        scan: LegacyAutoScanConfig | None,
        refresh: LegacyAutoScanConfig | None,
    ) -> "UnifiedAutoScanConfig":
        full_scan = FullScanSchedule()
        if scan is not None:
            full_scan = FullScanSchedule(enabled=scan.enabled, interval_minutes=scan.interval, mode=scan.scan_type)
        refresh_schedule = RefreshSchedule()
        if refresh is not None:
            refresh_schedule = RefreshSchedule(enabled=refresh.enabled, interval_minutes=refresh.interval, mode=refresh.scan_type)
        return cls(
            enabled=full_scan.enabled or refresh_schedule.enabled,
            full_scan=full_scan,
            refresh=refresh_schedule,
        )


class DefaultRangeConfig(BasePydanticModel):
    default_range: str = "192.168.1.0/24"
    default_auto_detect: bool = True


class RetentionConfig(BasePydanticModel):
    history_retention_days: int = Field(default=30, ge=0, le=3650)
    scan_retention_days: int = Field(default=90, ge=0, le=3650)
    offline_retention_days: int = Field(default=7, ge=0, le=3650)
    latency_retention_days: int = Field(default=30, ge=0, le=3650)
    keep_ips_on_purge: bool = False
    auto_purge_enabled: bool = True
    purge_schedule: str = Field(default="0 2 * * *", description="Five-field cron expression.")


class BlacklistEntry(BasePydanticModel):
    ip: str
    added_at: datetime = Field(default_factory=utc_now)

    @field_validator("ip")
    @classmethod
    def _check_ip(cls, value: str) -> str:
        return validate_ipv4(value)


class PurgeResult(BasePydanticModel):
    history_deleted: int = 0
    scans_deleted: int = 0
    offline_deleted: int = 0
    latency_deleted: int = 0

    @property
    def total_deleted(self) -> int:
        return self.history_deleted + self.scans_deleted + self.offline_deleted + self.latency_deleted

    def as_report(self) -> dict[str, int]:
        report = self.model_dump(by_alias=True)
        report["totalDeleted"] = self.total_deleted
        return report


class SizeEstimate(BasePydanticModel):
    host_rows: int = 0
    history_rows: int = 0
    latency_rows: int = 0
    purgeable_history_rows: int = 0
    purgeable_host_rows: int = 0
    purgeable_offline_rows: int = 0
    purgeable_latency_rows: int = 0
    current_bytes: int = 0
    projected_bytes: int = 0
    reclaimable_bytes: int = 0
