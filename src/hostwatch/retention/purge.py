"""
Retention and purge engine.

Every category has its own retention window in days and its own purge
operation. A window of 0 days deletes every row of that category.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from ..audit import BaseAuditSink, StructlogAuditSink
from ..exceptions import InvalidRetentionConfigError
from ..models.common import HostStatus, PurgeCategory, utc_now
from ..models.settings import PurgeResult, RetentionConfig, SizeEstimate
from ..storage.repository import BaseInventoryRepository
from ..storage.settings import BaseSettingsStore

logger = structlog.get_logger(__name__)

RETENTION_KEY = "network_scan_retention"
PURGE_JOB_ID = "auto_purge"
OPTIMIZE_THRESHOLD = 100

HOST_ROW_BYTES = 200
HISTORY_ROW_BYTES = 100
LATENCY_ROW_BYTES = 50


def cutoff_for(days: int, now: Optional[datetime] = None) -> Optional[datetime]:
    """`now - days`, or None (no cutoff: every row) for a 0 day window."""
    if days < 0:
        raise InvalidRetentionConfigError(f"Retention days must be >= 0, got {days}", field="days")
    if days == 0:
        return None
    return (now or utc_now()) - timedelta(days=days)


def _earliest(first: Optional[datetime], second: Optional[datetime]) -> Optional[datetime]:
    """The stricter of two cutoffs, None meaning no cutoff at all."""
    if first is None:
        return second
    if second is None:
        return first
    return min(first, second)


def validate_crontab(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression)
    except ValueError as e:
        raise InvalidRetentionConfigError(f"Invalid purge schedule '{expression}': {e}", field="purgeSchedule") from e


class PurgeEngine:
    """Deletes inventory rows that fell out of their retention window."""

    def __init__(
        self,
        repository: BaseInventoryRepository,
        settings_store: BaseSettingsStore,
        scheduler: Optional[BaseScheduler] = None,
        audit_sink: Optional[BaseAuditSink] = None,
    ):
        self.repository = repository
        self.settings_store = settings_store
        self.scheduler = scheduler
        self.audit_sink = audit_sink or StructlogAuditSink()
        self.logger = logger.bind(service="PurgeEngine")

    # Configuration

    def get_config(self) -> RetentionConfig:
        raw = self.settings_store.get(RETENTION_KEY)
        if raw is None:
            return RetentionConfig()
        try:
            return RetentionConfig.model_validate(raw)
        except ValidationError as e:
            self.logger.warning("Stored retention config is invalid, using defaults", error=str(e))
            return RetentionConfig()

    def set_config(self, updates: Dict[str, Any]) -> RetentionConfig:
        """Merges a partial update onto the stored config, validates and persists it.
        Keys may be given in camelCase or snake_case."""
        current = self.get_config()
        merged = current.model_dump(by_alias=True)
        for key, value in (updates or {}).items():
            merged[to_camel(key) if key in RetentionConfig.model_fields else key] = value
        try:
            config = RetentionConfig.model_validate(merged)
        except ValidationError as e:
            errors = e.errors()
            location = ".".join(str(part) for part in errors[0]["loc"]) if errors else None
            raise InvalidRetentionConfigError(f"Invalid retention configuration: {e}", field=location) from e
        validate_crontab(config.purge_schedule)

        self.settings_store.set(RETENTION_KEY, config.model_dump(mode="json", by_alias=True))
        self.logger.info("Retention configuration updated", config=config.model_dump(by_alias=True))
        if (
            config.auto_purge_enabled != current.auto_purge_enabled
            or config.purge_schedule != current.purge_schedule
        ):
            self.start_auto_purge(config)
        return config

    # Per-category purges

    async def purge_history(self, days: int) -> int:
        deleted = await self.repository.delete_history(before=cutoff_for(days))
        self.logger.info("History purged", days=days, deleted=deleted)
        return deleted

    async def purge_scans(self, days: int, keep_ips: bool = False) -> int:
        """Hosts not seen for `days`. With keep_ips the rows are reset instead of deleted."""
        cutoff = cutoff_for(days)
        if keep_ips:
            affected = await self.repository.reset_hosts(last_seen_before=cutoff)
        else:
            affected = await self.repository.delete_hosts(last_seen_before=cutoff)
        self.logger.info("Scan results purged", days=days, keep_ips=keep_ips, affected=affected)
        return affected

    async def purge_offline(self, days: int, keep_ips: bool = False) -> int:
        """Offline hosts not seen for `days`."""
        cutoff = cutoff_for(days)
        if keep_ips:
            affected = await self.repository.reset_hosts(last_seen_before=cutoff, status=HostStatus.OFFLINE)
        else:
            affected = await self.repository.delete_hosts(last_seen_before=cutoff, status=HostStatus.OFFLINE)
        self.logger.info("Offline hosts purged", days=days, keep_ips=keep_ips, affected=affected)
        return affected

    async def purge_latency(self, days: int) -> int:
        deleted = await self.repository.delete_latency_samples(before=cutoff_for(days))
        self.logger.info("Latency samples purged", days=days, deleted=deleted)
        return deleted

    # Combined

    async def execute_full_purge(self, config: Optional[RetentionConfig] = None) -> PurgeResult:
        config = config or self.get_config()
        result = PurgeResult(
            history_deleted=await self.purge_history(config.history_retention_days),
            offline_deleted=await self.purge_offline(config.offline_retention_days, config.keep_ips_on_purge),
            scans_deleted=await self.purge_scans(config.scan_retention_days, config.keep_ips_on_purge),
            latency_deleted=await self.purge_latency(config.latency_retention_days),
        )
        await self._finish(result, category=None)
        return result

    async def purge(self, category: Optional[PurgeCategory] = None, days: Optional[int] = None) -> PurgeResult:
        """Purges one category (with the configured window unless `days` is given),
        or every category when no category is given."""
        config = self.get_config()
        if category is None:
            if days is not None:
                config = config.model_copy(update={
                    "history_retention_days": days,
                    "scan_retention_days": days,
                    "offline_retention_days": days,
                    "latency_retention_days": days,
                })
            return await self.execute_full_purge(config)

        category = PurgeCategory(category)
        if category == PurgeCategory.HISTORY:
            result = PurgeResult(history_deleted=await self.purge_history(
                config.history_retention_days if days is None else days))
        elif category == PurgeCategory.SCANS:
            result = PurgeResult(scans_deleted=await self.purge_scans(
                config.scan_retention_days if days is None else days, config.keep_ips_on_purge))
        elif category == PurgeCategory.OFFLINE:
            result = PurgeResult(offline_deleted=await self.purge_offline(
                config.offline_retention_days if days is None else days, config.keep_ips_on_purge))
        else:
            result = PurgeResult(latency_deleted=await self.purge_latency(
                config.latency_retention_days if days is None else days))
        await self._finish(result, category=category)
        return result

    async def _finish(self, result: PurgeResult, category: Optional[PurgeCategory]) -> None:
        if result.total_deleted > OPTIMIZE_THRESHOLD:
            self.logger.info("Large purge, optimizing storage", total_deleted=result.total_deleted)
            await self.repository.optimize()
        self.audit_sink.record(
            "purge_completed",
            category=category.value if category else "all",
            **result.as_report(),
        )

    async def clear_all(self) -> Dict[str, int]:
        counts = await self.repository.clear_all()
        await self.repository.optimize()
        self.logger.warning("Inventory cleared", **counts)
        self.audit_sink.record("inventory_cleared", **counts)
        return counts

    async def estimate_size(self, config: Optional[RetentionConfig] = None) -> SizeEstimate:
        """Dry run of the full purge with the configured windows."""
        config = config or self.get_config()
        host_rows = await self.repository.count_hosts()
        history_rows = await self.repository.count_history()
        latency_rows = await self.repository.count_latency_samples()

        purgeable_history = await self.repository.count_history(before=cutoff_for(config.history_retention_days))
        purgeable_latency = await self.repository.count_latency_samples(before=cutoff_for(config.latency_retention_days))
        if config.keep_ips_on_purge:
            purgeable_hosts = purgeable_offline = 0
        else:
            purgeable_offline = await self.repository.count_hosts(
                last_seen_before=cutoff_for(config.offline_retention_days), status=HostStatus.OFFLINE)
            stale = await self.repository.count_hosts(last_seen_before=cutoff_for(config.scan_retention_days))
            # Offline rows are purged first; the scan purge only sees what is left.
            overlap = await self.repository.count_hosts(
                last_seen_before=_earliest(cutoff_for(config.offline_retention_days), cutoff_for(config.scan_retention_days)),
                status=HostStatus.OFFLINE,
            )
            purgeable_hosts = stale - overlap

        current = host_rows * HOST_ROW_BYTES + history_rows * HISTORY_ROW_BYTES + latency_rows * LATENCY_ROW_BYTES
        reclaimable = (
            (purgeable_hosts + purgeable_offline) * HOST_ROW_BYTES
            + purgeable_history * HISTORY_ROW_BYTES
            + purgeable_latency * LATENCY_ROW_BYTES
        )
        return SizeEstimate(
            host_rows=host_rows,
            history_rows=history_rows,
            latency_rows=latency_rows,
            purgeable_history_rows=purgeable_history,
            purgeable_host_rows=purgeable_hosts,
            purgeable_offline_rows=purgeable_offline,
            purgeable_latency_rows=purgeable_latency,
            current_bytes=current,
            projected_bytes=current - reclaimable,
            reclaimable_bytes=reclaimable,
        )

    # Scheduled purge

    def start_auto_purge(self, config: Optional[RetentionConfig] = None) -> None:
        if self.scheduler is None:
            return
        config = config or self.get_config()
        if not config.auto_purge_enabled:
            self.stop_auto_purge()
            return
        trigger = validate_crontab(config.purge_schedule)
        self.scheduler.add_job(
            self._run_scheduled_purge,
            trigger,
            id=PURGE_JOB_ID,
            name="Automatic purge",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("Automatic purge scheduled", schedule=config.purge_schedule)

    def stop_auto_purge(self) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(PURGE_JOB_ID)
            self.logger.info("Automatic purge unscheduled")
        except JobLookupError:
            pass

    async def _run_scheduled_purge(self) -> None:
        try:
            result = await self.execute_full_purge()
        except Exception as e:
            self.logger.error("Scheduled purge failed", error=str(e), exc_info=True)
            return
        self.logger.info("Scheduled purge finished", **result.as_report())
