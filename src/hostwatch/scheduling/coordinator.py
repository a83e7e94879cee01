"""
Schedule coordinator: the recurring full-scan and refresh triggers.

Both triggers are APScheduler interval jobs with fixed ids. Reconfiguring a
trigger replaces its job in place (`replace_existing=True`), so the old timer
can never fire again once the new configuration is applied.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from pydantic import ValidationError

from ..exceptions import InvalidScheduleConfigError, ScanAlreadyInProgressError
from ..models.common import utc_now
from ..models.settings import (
    FullScanSchedule,
    LegacyAutoScanConfig,
    RefreshSchedule,
    UnifiedAutoScanConfig,
)
from ..storage.settings import BaseSettingsStore

logger = structlog.get_logger(__name__)

UNIFIED_KEY = "network_scan_unified_auto"
LEGACY_SCAN_KEY = "network_scan_auto"
LEGACY_REFRESH_KEY = "network_scan_refresh_auto"
LAST_AUTO_KEY = "network_scan_last_auto"

FULL_SCAN_JOB_ID = "auto_full_scan"
REFRESH_JOB_ID = "auto_refresh"

FullScanRunner = Callable[[FullScanSchedule], Awaitable[Any]]
RefreshRunner = Callable[[RefreshSchedule], Awaitable[Any]]


class ScheduleCoordinator:
    """Owns the automatic triggers and the pause flag manual runs hold."""

    def __init__(
        self,
        settings_store: BaseSettingsStore,
        scheduler: BaseScheduler,
        full_scan_runner: FullScanRunner,
        refresh_runner: RefreshRunner,
        misfire_grace_seconds: int = 60,
    ):
        self.settings_store = settings_store
        self.scheduler = scheduler
        self.full_scan_runner = full_scan_runner
        self.refresh_runner = refresh_runner
        self.misfire_grace_seconds = misfire_grace_seconds
        self.logger = logger.bind(service="ScheduleCoordinator")
        self._config = self.load_config()
        self._paused = False

    # Configuration

    def _load_legacy(self, key: str) -> Optional[LegacyAutoScanConfig]:
        raw = self.settings_store.get(key)
        if raw is None:
            return None
        try:
            return LegacyAutoScanConfig.model_validate(raw)
        except ValidationError as e:
            self.logger.warning("Ignoring invalid legacy schedule config", key=key, error=str(e))
            return None

    def load_config(self) -> UnifiedAutoScanConfig:
        """Reads the unified config, or derives it from the legacy keys.
        Corrupt values fall back to defaults."""
        raw = self.settings_store.get(UNIFIED_KEY)
        if raw is not None:
            try:
                return UnifiedAutoScanConfig.model_validate(raw)
            except ValidationError as e:
                self.logger.warning("Stored schedule config is invalid, trying legacy keys", error=str(e))

        scan = self._load_legacy(LEGACY_SCAN_KEY)
        refresh = self._load_legacy(LEGACY_REFRESH_KEY)
        if scan is None and refresh is None:
            return UnifiedAutoScanConfig()
        try:
            return UnifiedAutoScanConfig.from_legacy(scan, refresh)
        except ValidationError as e:
            self.logger.warning("Legacy schedule config cannot be converted, using defaults", error=str(e))
            return UnifiedAutoScanConfig()

    def get_config(self) -> UnifiedAutoScanConfig:
        return self._config.model_copy(deep=True)

    def set_config(self, config: Any) -> UnifiedAutoScanConfig:
        """Validates, persists (unified and legacy forms) and applies a config."""
        if isinstance(config, UnifiedAutoScanConfig):
            config = config.model_dump(by_alias=True)
        try:
            validated = UnifiedAutoScanConfig.model_validate(config)
        except ValidationError as e:
            raise InvalidScheduleConfigError(f"Invalid schedule configuration: {e}") from e

        legacy_scan, legacy_refresh = validated.to_legacy()
        self.settings_store.set(UNIFIED_KEY, validated.model_dump(mode="json", by_alias=True))
        self.settings_store.set(LEGACY_SCAN_KEY, legacy_scan.model_dump(mode="json", by_alias=True))
        self.settings_store.set(LEGACY_REFRESH_KEY, legacy_refresh.model_dump(mode="json", by_alias=True))
        self._config = validated
        self.apply(validated)
        self.logger.info(
            "Schedule configuration updated",
            enabled=validated.enabled,
            full_scan_active=validated.full_scan_active,
            refresh_active=validated.refresh_active,
        )
        return self.get_config()

    def apply(self, config: UnifiedAutoScanConfig) -> None:
        """Programs the scheduler so that exactly the active triggers have a job."""
        if config.full_scan_active:
            self.scheduler.add_job(
                self._run_full_scan_job,
                "interval",
                minutes=config.full_scan.interval_minutes,
                id=FULL_SCAN_JOB_ID,
                name="Automatic full scan",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self.misfire_grace_seconds,
            )
        else:
            self._remove_job(FULL_SCAN_JOB_ID)

        if config.refresh_active:
            self.scheduler.add_job(
                self._run_refresh_job,
                "interval",
                minutes=config.refresh.interval_minutes,
                id=REFRESH_JOB_ID,
                name="Automatic refresh",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self.misfire_grace_seconds,
            )
        else:
            self._remove_job(REFRESH_JOB_ID)

    def _remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def start(self) -> None:
        self._config = self.load_config()
        self.apply(self._config)
        self.logger.info("Schedule coordinator started", jobs=[job["id"] for job in self.job_status()])

    def stop(self) -> None:
        self._remove_job(FULL_SCAN_JOB_ID)
        self._remove_job(REFRESH_JOB_ID)

    # Pause / resume

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause_auto_scans(self) -> None:
        if not self._paused:
            self._paused = True
            self.logger.info("Automatic scans paused")

    def resume_auto_scans(self) -> None:
        if self._paused:
            self._paused = False
            self.logger.info("Automatic scans resumed")

    @asynccontextmanager
    async def manual_run(self) -> AsyncIterator[None]:
        """Keeps automatic scans paused for the duration of a manual run."""
        self.pause_auto_scans()
        try:
            yield
        finally:
            self.resume_auto_scans()

    # Jobs

    async def _run_full_scan_job(self) -> None:
        await self._run_job(FULL_SCAN_JOB_ID, "scan", lambda: self.full_scan_runner(self._config.full_scan))

    async def _run_refresh_job(self) -> None:
        await self._run_job(REFRESH_JOB_ID, "refresh", lambda: self.refresh_runner(self._config.refresh))

    async def _run_job(self, job_id: str, kind: str, runner: Callable[[], Awaitable[Any]]) -> None:
        log = self.logger.bind(job_id=job_id)
        if self._paused:
            log.info("Automatic scans are paused, skipping run")
            self._record_last_run(kind, "skipped_paused")
            return
        try:
            await runner()
        except ScanAlreadyInProgressError:
            log.info("A sweep is already running, skipping run")
            self._record_last_run(kind, "skipped_busy")
            return
        except Exception as e:
            log.error("Automatic run failed", error=str(e), exc_info=True)
            self._record_last_run(kind, "failed", error=str(e))
            return
        self._record_last_run(kind, "completed")

    def _record_last_run(self, kind: str, outcome: str, error: Optional[str] = None) -> None:
        entry: Dict[str, Any] = {"kind": kind, "outcome": outcome, "at": utc_now().isoformat()}
        if error:
            entry["error"] = error
        self.settings_store.set(LAST_AUTO_KEY, entry)

    def last_auto_run(self) -> Optional[Dict[str, Any]]:
        return self.settings_store.get(LAST_AUTO_KEY)

    def job_status(self) -> List[Dict[str, Any]]:
        jobs = []
        for job_id in (FULL_SCAN_JOB_ID, REFRESH_JOB_ID):
            job = self.scheduler.get_job(job_id)
            if job is None:
                continue
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "nextRunTime": next_run.isoformat() if next_run else None,
            })
        return jobs
