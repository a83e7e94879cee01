"""
InventoryEngine: the single entry point to discovery, the inventory and its
lifecycle. It wires the components together and owns their lifecycle.
"""
import logging as py_logging
from typing import Any, Callable, Dict, List, Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from .audit import BaseAuditSink, StructlogAuditSink
from .config import Config
from .discovery.filters import build_default_filter_chain
from .discovery.prober import HostProber
from .discovery.ranges import RangeResolver
from .discovery.vendors import BaseVendorLookup, get_vendor_lookup
from .exceptions import (
    HostNotFoundError,
    PortScanAlreadyInProgressError,
    PortScannerUnavailableError,
    RangeError,
    RangeTooLargeError,
    RepositoryError,
    ScanAlreadyInProgressError,
)
from .models.common import (
    HostnameSource,
    HostStatus,
    PurgeCategory,
    RejectionReason,
    ScanMode,
    ScanTrigger,
    SortField,
    SortOrder,
    validate_ipv4,
)
from .models.host import HistoryEntry, HostPage, HostQuery, HostRecord
from .models.scan import PortScanProgress, ScanOutcome, ScanProgress, ScanResult
from .models.settings import (
    BlacklistEntry,
    DefaultRangeConfig,
    FullScanSchedule,
    PurgeResult,
    RefreshSchedule,
    RetentionConfig,
    SizeEstimate,
    UnifiedAutoScanConfig,
)
from .retention.purge import PurgeEngine
from .scanning.orchestrator import ScanOrchestrator, ScanTicket
from .scanning.port_scan import PortScanner
from .scheduling.coordinator import ScheduleCoordinator
from .storage import get_inventory_repository
from .storage.blacklist import BlacklistStore
from .storage.query import apply_host_query
from .storage.repository import BaseInventoryRepository
from .storage.settings import BaseSettingsStore, get_settings_store
from .utils.tasks import BackgroundTasks

logger = structlog.get_logger(__name__)

DEFAULT_RANGE_KEY = "network_scan_default"
MAX_PAGE_SIZE = 1000


class InventoryEngine:
    """
    Discovers hosts, keeps the inventory fresh and bounds its growth.

    Every collaborator can be injected; anything not given is built from
    `app_config`.
    """

    def __init__(
        self,
        app_config: Optional[Config] = None,
        repository: Optional[BaseInventoryRepository] = None,
        settings_store: Optional[BaseSettingsStore] = None,
        prober: Optional[HostProber] = None,
        vendor_lookup: Optional[BaseVendorLookup] = None,
        scheduler: Optional[BaseScheduler] = None,
        audit_sink: Optional[BaseAuditSink] = None,
        local_addresses: Optional[Callable[[], Set[str]]] = None,
        range_detector: Optional[Callable[[], Optional[str]]] = None,
        configure_logging: bool = True,
    ):
        self.app_config = app_config or Config()
        if configure_logging:
            self._setup_global_logging()
        self.logger = logger.bind(service="InventoryEngine", instance=self.app_config.instance_name)

        self.settings_store = settings_store or get_settings_store(self.app_config.storage)
        self.repository = repository or get_inventory_repository(self.app_config.storage)
        self.audit_sink = audit_sink or StructlogAuditSink()
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.blacklist = BlacklistStore(self.settings_store)

        self.range_resolver = RangeResolver(self.app_config.scan, auto_detector=range_detector)
        self.filter_chain = build_default_filter_chain(
            self.blacklist.is_blacklisted,
            self.get_default_range_config,
            self.range_resolver.expand,
            local_addresses,
        )
        self.prober = prober or HostProber(
            self.app_config.probe,
            vendor_lookup or get_vendor_lookup(self.app_config.probe),
        )
        self.orchestrator = ScanOrchestrator(
            self.app_config.scan,
            self.repository,
            self.prober,
            self.filter_chain,
            self.range_resolver,
            self.get_default_range_config,
            self.audit_sink,
        )
        self.port_scanner = PortScanner(self.app_config.port_scan, self.repository, self.filter_chain)
        self.coordinator = ScheduleCoordinator(
            self.settings_store,
            self.scheduler,
            self._run_auto_full_scan,
            self._run_auto_refresh,
            misfire_grace_seconds=self.app_config.schedule.misfire_grace_seconds,
        )
        self.purge_engine = PurgeEngine(self.repository, self.settings_store, self.scheduler, self.audit_sink)
        self._tasks = BackgroundTasks("InventoryEngine")
        self._started = False

    def _setup_global_logging(self) -> None:
        level = getattr(py_logging, self.app_config.logging.level.upper(), py_logging.INFO)
        py_logging.basicConfig(level=level, format="%(message)s", force=True)
        if self.app_config.logging.file:
            file_handler = py_logging.FileHandler(self.app_config.logging.file, encoding="utf-8")
            file_handler.setFormatter(py_logging.Formatter("%(message)s"))
            py_logging.getLogger().addHandler(file_handler)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.StackInfoRenderer(),
                structlog.dev.set_exc_info,
                structlog.processors.format_exc_info,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.dev.ConsoleRenderer(colors=True) if self.app_config.logging.format.lower() == "console"
                else structlog.processors.JSONRenderer(sort_keys=True)
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        structlog.get_logger(__name__).debug(
            "Global logging configured.",
            logging_level=self.app_config.logging.level,
            logging_format=self.app_config.logging.format,
        )

    # Lifecycle

    async def start(self) -> None:
        """Starts the scheduler, the automatic scans and purges, and the startup refresh."""
        if self._started:
            return
        if not self.scheduler.running:
            self.scheduler.start()
        self.coordinator.start()
        self.purge_engine.start_auto_purge()
        self._started = True
        self.logger.info("Inventory engine started", jobs=[job.id for job in self.scheduler.get_jobs()])

        if self.app_config.schedule.refresh_on_startup:
            await self._startup_refresh()

    async def _startup_refresh(self) -> None:
        try:
            if await self.repository.count_hosts() == 0:
                return
            ticket = await self.orchestrator.start_refresh(ScanMode.QUICK, ScanTrigger.STARTUP)
            self.logger.info("Startup refresh started", scan_id=ticket.scan_id, total=ticket.total)
        except (ScanAlreadyInProgressError, RepositoryError) as e:
            self.logger.warning("Startup refresh skipped", error=str(e))

    async def stop(self) -> None:
        self.coordinator.stop()
        self.purge_engine.stop_auto_purge()
        await self._tasks.cancel_all()
        await self.port_scanner.close()
        await self.orchestrator.close()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.prober.close()
        await self.repository.close()
        self._started = False
        self.logger.info("Inventory engine stopped")

    async def __aenter__(self) -> "InventoryEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Ranges

    def get_default_range_config(self) -> DefaultRangeConfig:
        raw = self.settings_store.get(DEFAULT_RANGE_KEY)
        if raw is not None:
            try:
                return DefaultRangeConfig.model_validate(raw)
            except ValidationError as e:
                self.logger.warning("Stored default range is invalid, using configured default", error=str(e))
        return DefaultRangeConfig(
            default_range=self.app_config.scan.default_range,
            default_auto_detect=self.app_config.scan.default_auto_detect,
        )

    def set_default_range_config(self, updates: Dict[str, Any]) -> DefaultRangeConfig:
        """Updates the default range. A non-auto range must expand cleanly."""
        merged = self.get_default_range_config().model_dump(by_alias=True)
        for key, value in (updates or {}).items():
            merged[to_camel(key) if key in DefaultRangeConfig.model_fields else key] = value
        config = DefaultRangeConfig.model_validate(merged)
        if not self.range_resolver.is_auto(config.default_range):
            self.range_resolver.expand(config.default_range)
        self.settings_store.set(DEFAULT_RANGE_KEY, config.model_dump(mode="json", by_alias=True))
        self.logger.info("Default range updated", default_range=config.default_range, auto_detect=config.default_auto_detect)
        return config

    def resolve_range(self, spec: Optional[str] = None) -> List[str]:
        return self.range_resolver.resolve_with_fallback(spec, self.get_default_range_config()).addresses

    # Scans

    @staticmethod
    def _rejection(error: Exception) -> ScanOutcome:
        if isinstance(error, ScanAlreadyInProgressError):
            return ScanOutcome(accepted=False, reason=RejectionReason.ALREADY_RUNNING, message=str(error))
        if isinstance(error, RangeError):
            return ScanOutcome(
                accepted=False,
                reason=RejectionReason.INVALID_INPUT,
                message=str(error),
                range=error.range_spec,
                suggested_range=error.suggested_range if isinstance(error, RangeTooLargeError) else None,
            )
        return ScanOutcome(accepted=False, reason=RejectionReason.REPOSITORY_UNAVAILABLE, message=str(error))

    @staticmethod
    def _accepted(ticket: ScanTicket) -> ScanOutcome:
        return ScanOutcome(accepted=True, scan_id=ticket.scan_id, kind=ticket.kind, total=ticket.total, range=ticket.range)

    def _wants_port_scan(self, mode: ScanMode) -> bool:
        return ScanMode(mode) == ScanMode.FULL and self.coordinator.get_config().full_scan.port_scan_enabled

    async def _follow_manual_sweep(self, ticket: ScanTicket, port_scan: bool) -> ScanResult:
        """Keeps automatic scans paused until the sweep and its continuation are done."""
        async with self.coordinator.manual_run():
            result = await ticket.task
            if port_scan:
                await self._start_detached_port_scan()
        return result

    @staticmethod
    def _invalid_mode(mode: Any) -> Optional[ScanOutcome]:
        try:
            ScanMode(mode)
        except ValueError:
            return ScanOutcome(
                accepted=False,
                reason=RejectionReason.INVALID_INPUT,
                message=f"Invalid scan mode '{mode}', expected one of: {', '.join(m.value for m in ScanMode)}",
            )
        return None

    async def start_scan(self, range_spec: Optional[str] = None, mode: ScanMode = ScanMode.FULL) -> ScanOutcome:
        """Non-blocking manual scan. Rejections come back as a ScanOutcome."""
        rejected = self._invalid_mode(mode)
        if rejected is not None:
            self.logger.info("Scan request rejected", range=range_spec, mode=mode, error=rejected.message)
            return rejected
        try:
            ticket = await self.orchestrator.start_scan(range_spec, mode, ScanTrigger.MANUAL)
        except (ScanAlreadyInProgressError, RangeError, RepositoryError) as e:
            self.logger.info("Scan request rejected", range=range_spec, error=str(e))
            return self._rejection(e)
        self.coordinator.pause_auto_scans()
        self._tasks.spawn(self._follow_manual_sweep(ticket, self._wants_port_scan(mode)), name=f"manual-{ticket.scan_id}")
        return self._accepted(ticket)

    async def run_scan(self, range_spec: Optional[str] = None, mode: ScanMode = ScanMode.FULL) -> ScanResult:
        """Blocking manual scan. Errors are raised, not translated."""
        ticket = await self.orchestrator.start_scan(range_spec, mode, ScanTrigger.MANUAL)
        self.coordinator.pause_auto_scans()
        return await self._follow_manual_sweep(ticket, self._wants_port_scan(mode))

    async def refresh(self, mode: ScanMode = ScanMode.QUICK) -> ScanOutcome:
        rejected = self._invalid_mode(mode)
        if rejected is not None:
            self.logger.info("Refresh request rejected", mode=mode, error=rejected.message)
            return rejected
        try:
            ticket = await self.orchestrator.start_refresh(mode, ScanTrigger.MANUAL)
        except (ScanAlreadyInProgressError, RepositoryError) as e:
            self.logger.info("Refresh request rejected", error=str(e))
            return self._rejection(e)
        self.coordinator.pause_auto_scans()
        self._tasks.spawn(self._follow_manual_sweep(ticket, False), name=f"manual-{ticket.scan_id}")
        return self._accepted(ticket)

    async def run_refresh(self, mode: ScanMode = ScanMode.QUICK) -> ScanResult:
        ticket = await self.orchestrator.start_refresh(mode, ScanTrigger.MANUAL)
        self.coordinator.pause_auto_scans()
        return await self._follow_manual_sweep(ticket, False)

    def get_scan_progress(self) -> Optional[ScanProgress]:
        return self.orchestrator.progress

    def get_last_scan_result(self) -> Optional[ScanResult]:
        return self.orchestrator.last_result

    async def _run_auto_full_scan(self, schedule: FullScanSchedule) -> ScanResult:
        result = await self.orchestrator.run_scan(None, schedule.mode, ScanTrigger.AUTO)
        if schedule.port_scan_enabled and ScanMode(schedule.mode) == ScanMode.FULL:
            await self._start_detached_port_scan()
        return result

    async def _run_auto_refresh(self, schedule: RefreshSchedule) -> ScanResult:
        return await self.orchestrator.run_refresh(schedule.mode, ScanTrigger.AUTO)

    # Port scan

    async def _start_detached_port_scan(self) -> None:
        try:
            await self.port_scanner.start()
        except (PortScanAlreadyInProgressError, PortScannerUnavailableError, RepositoryError) as e:
            self.logger.warning("Follow-up port scan not started", error=str(e))

    async def start_port_scan(self) -> PortScanProgress:
        return await self.port_scanner.start()

    def get_port_scan_progress(self) -> PortScanProgress:
        return self.port_scanner.progress

    def request_port_scan_abort(self) -> bool:
        return self.port_scanner.request_abort()

    # Hosts

    async def list_hosts(
        self,
        status: Optional[HostStatus] = None,
        ip_prefix: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        sort_by: SortField = SortField.LAST_SEEN,
        sort_order: SortOrder = SortOrder.DESC,
    ) -> HostPage:
        query = HostQuery(
            status=status,
            ip_prefix=ip_prefix,
            search=search,
            limit=max(1, min(limit, MAX_PAGE_SIZE)),
            offset=max(0, offset),
            sort_by=sort_by,
            sort_order=sort_order,
        )
        records = await self.repository.find_hosts(status=query.status, ip_prefix=query.ip_prefix)
        return apply_host_query(records, query, self.filter_chain.is_excluded)

    async def get_host(self, ip: str) -> Optional[HostRecord]:
        return await self.repository.get_host(validate_ipv4(ip))

    async def get_host_history(self, ip: str, limit: int = 100) -> List[HistoryEntry]:
        return await self.repository.list_history(validate_ipv4(ip), limit=limit)

    async def delete_host(self, ip: str) -> bool:
        ip = validate_ipv4(ip)
        async with self.repository.host_lock(ip):
            deleted = await self.repository.delete_host(ip)
        if deleted:
            self.logger.info("Host deleted", ip=ip)
            self.audit_sink.record("host_deleted", ip=ip)
        return deleted

    async def update_hostname(
        self,
        ip: str,
        hostname: Optional[str],
        source: Optional[HostnameSource] = None,
    ) -> HostRecord:
        """Sets or clears a hostname. The source defaults to manual; clearing
        the hostname clears its source."""
        ip = validate_ipv4(ip)
        hostname = hostname.strip() if hostname and hostname.strip() else None
        hostname_source = HostnameSource(source or HostnameSource.MANUAL) if hostname else None
        async with self.repository.host_lock(ip):
            record = await self.repository.get_host(ip)
            if record is None:
                raise HostNotFoundError(ip)
            updated = await self.repository.upsert_host(
                record.model_copy(update={"hostname": hostname, "hostname_source": hostname_source})
            )
        self.logger.info("Hostname updated", ip=ip, hostname=hostname, source=hostname_source)
        self.audit_sink.record("hostname_updated", ip=ip, hostname=hostname, source=hostname_source)
        return updated

    async def add_host(self, ip: str, hostname: Optional[str] = None) -> HostRecord:
        """Adds a host by hand. Adding a known host only sets its hostname."""
        ip = validate_ipv4(ip)
        if self.blacklist.is_blacklisted(ip):
            raise ValueError(f"{ip} is blacklisted")
        hostname = hostname.strip() if hostname and hostname.strip() else None
        async with self.repository.host_lock(ip):
            record = await self.repository.get_host(ip)
            if record is None:
                record = HostRecord(
                    ip=ip,
                    hostname=hostname,
                    hostname_source=HostnameSource.MANUAL if hostname else None,
                )
            elif hostname:
                record = record.model_copy(update={"hostname": hostname, "hostname_source": HostnameSource.MANUAL})
            stored = await self.repository.upsert_host(record)
        self.audit_sink.record("host_added", ip=ip, hostname=hostname)
        return stored

    # Retention

    def get_retention_config(self) -> RetentionConfig:
        return self.purge_engine.get_config()

    def set_retention_config(self, updates: Dict[str, Any]) -> RetentionConfig:
        return self.purge_engine.set_config(updates)

    async def estimate_purge_size(self) -> SizeEstimate:
        return await self.purge_engine.estimate_size()

    async def purge(self, category: Optional[PurgeCategory] = None, days: Optional[int] = None) -> PurgeResult:
        return await self.purge_engine.purge(category, days)

    async def clear_all(self) -> Dict[str, int]:
        return await self.purge_engine.clear_all()

    # Schedule

    def get_schedule_config(self) -> UnifiedAutoScanConfig:
        return self.coordinator.get_config()

    def set_schedule_config(self, config: Any) -> UnifiedAutoScanConfig:
        return self.coordinator.set_config(config)

    def pause_auto_scans(self) -> None:
        self.coordinator.pause_auto_scans()

    def resume_auto_scans(self) -> None:
        self.coordinator.resume_auto_scans()

    # Blacklist

    def list_blacklist(self) -> List[BlacklistEntry]:
        return self.blacklist.entries()

    async def add_to_blacklist(self, ip: str) -> bool:
        """Blacklists an address and removes its host record."""
        if not self.blacklist.add(ip):
            return False
        normalized = validate_ipv4(ip)
        async with self.repository.host_lock(normalized):
            deleted = await self.repository.delete_host(normalized)
        self.audit_sink.record("blacklist_added", ip=normalized, host_deleted=deleted)
        return True

    def remove_from_blacklist(self, ip: str) -> bool:
        removed = self.blacklist.remove(ip)
        if removed:
            self.audit_sink.record("blacklist_removed", ip=ip)
        return removed
