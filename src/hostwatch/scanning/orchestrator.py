"""
Scan orchestrator: runs one sweep at a time over a resolved range (scan) or
over the hosts already in the inventory (refresh).

The orchestrator owns the sweep state machine

    idle -> running -> completed | aborted

and a second trigger while a sweep is running is rejected with
ScanAlreadyInProgressError, whichever of the two came from the scheduler.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import structlog

from ..audit import BaseAuditSink, StructlogAuditSink
from ..config import ScanConfig
from ..discovery.filters import ExclusionFilterChain
from ..discovery.prober import HostProber
from ..discovery.ranges import RangeResolver
from ..exceptions import RepositoryError, RepositoryWriteError, ScanAlreadyInProgressError
from ..models.common import (
    HostnameSource,
    HostStatus,
    ScanKind,
    ScanMode,
    ScanState,
    ScanTrigger,
    ip_sort_key,
    utc_now,
)
from ..models.host import HistoryEntry, HostRecord, LatencySample, ProbeResult
from ..models.scan import ScanProgress, ScanResult
from ..models.settings import DefaultRangeConfig
from ..storage.repository import BaseInventoryRepository
from ..utils.tasks import BackgroundTasks

logger = structlog.get_logger(__name__)


def merge_probe_result(existing: Optional[HostRecord], result: ProbeResult) -> Optional[HostRecord]:
    """Record to store for a probe result, or None when nothing is stored.

    Offline results for unknown addresses are dropped. Known MAC, hostname and
    vendor survive a probe that did not find them, and a manual hostname is
    never replaced by the scanner.
    """
    if existing is None:
        if not result.is_online:
            return None
        return HostRecord(
            ip=result.ip,
            mac=result.mac,
            hostname=result.hostname,
            hostname_source=HostnameSource.SCANNER if result.hostname else None,
            vendor=result.vendor,
            status=result.status,
            ping_latency_ms=result.ping_latency_ms,
            first_seen=result.probed_at,
            last_seen=result.probed_at,
        )

    update = {"status": result.status, "ping_latency_ms": result.ping_latency_ms}
    if result.is_online:
        update["last_seen"] = result.probed_at
    if result.mac:
        update["mac"] = result.mac
    if result.vendor:
        update["vendor"] = result.vendor
    if result.hostname and existing.hostname_source != HostnameSource.MANUAL:
        update["hostname"] = result.hostname
        update["hostname_source"] = HostnameSource.SCANNER
    return existing.model_copy(update=update)


@dataclass
class ScanTicket:
    """Handle on a sweep that has been accepted and is running in the background."""
    scan_id: str
    kind: ScanKind
    mode: ScanMode
    range: Optional[str]
    total: int
    task: asyncio.Task


@dataclass
class _Tally:
    online: int = 0
    offline: int = 0


class ScanOrchestrator:
    """Fans the host prober out over a worker pool and persists what it finds."""

    def __init__(
        self,
        scan_config: ScanConfig,
        repository: BaseInventoryRepository,
        prober: HostProber,
        filter_chain: ExclusionFilterChain,
        range_resolver: RangeResolver,
        default_range_provider: Callable[[], DefaultRangeConfig],
        audit_sink: Optional[BaseAuditSink] = None,
    ):
        self.scan_config = scan_config
        self.repository = repository
        self.prober = prober
        self.filter_chain = filter_chain
        self.range_resolver = range_resolver
        self.default_range_provider = default_range_provider
        self.audit_sink = audit_sink or StructlogAuditSink()
        self.logger = logger.bind(service="ScanOrchestrator")

        self._state = ScanState.IDLE
        self._progress: Optional[ScanProgress] = None
        self._last_result: Optional[ScanResult] = None
        self._last_error: Optional[str] = None
        self._tasks = BackgroundTasks("ScanOrchestrator")

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ScanState.RUNNING

    @property
    def progress(self) -> Optional[ScanProgress]:
        """Snapshot of the running sweep, or None when no sweep is running."""
        return self._progress.model_copy() if self._progress is not None else None

    @property
    def last_result(self) -> Optional[ScanResult]:
        return self._last_result

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    # State machine

    def _claim(self, kind: ScanKind, mode: ScanMode) -> ScanProgress:
        """Atomically moves to `running`. Must not await before the state is set."""
        if self._state == ScanState.RUNNING:
            running = self._progress
            raise ScanAlreadyInProgressError(
                kind=running.kind if running else None,
                started_at=running.started_at if running else None,
            )
        self._state = ScanState.RUNNING
        self._progress = ScanProgress(scan_id=str(uuid.uuid4()), kind=kind, mode=mode)
        return self._progress

    def _release(self) -> None:
        """Gives the claim back when a sweep fails before it started probing."""
        self._progress = None
        self._state = ScanState.COMPLETED if self._last_result is not None else ScanState.IDLE

    def _abort(self, progress: ScanProgress, error: BaseException) -> None:
        self._state = ScanState.ABORTED
        self._last_error = str(error)
        self._progress = None
        self.logger.error("Sweep aborted", scan_id=progress.scan_id, kind=progress.kind, error=str(error))
        self.audit_sink.record(
            "scan_aborted",
            scan_id=progress.scan_id,
            kind=progress.kind,
            completed=progress.completed,
            total=progress.total,
            error=str(error),
        )

    # Entry points

    async def start_scan(
        self,
        range_spec: Optional[str] = None,
        mode: ScanMode = ScanMode.FULL,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> ScanTicket:
        """Claims the orchestrator, resolves the range and starts probing in the
        background. Range errors surface here, after the claim is released."""
        mode = ScanMode(mode)
        progress = self._claim(ScanKind.SCAN, mode)
        try:
            resolved = self.range_resolver.resolve_with_fallback(range_spec, self.default_range_provider())
            targets, excluded = self.filter_chain.partition(resolved.addresses)
        except Exception:
            self._release()
            raise

        progress.range = resolved.spec
        progress.total = len(targets)
        self.logger.info(
            "Scan started",
            scan_id=progress.scan_id, range=resolved.spec, mode=mode, trigger=trigger,
            targets=len(targets), excluded=len(excluded), auto_detected=resolved.auto_detected,
        )
        task = self._tasks.spawn(self._execute(progress, targets, trigger, len(excluded)), name=f"scan-{progress.scan_id}")
        return ScanTicket(progress.scan_id, ScanKind.SCAN, mode, resolved.spec, len(targets), task)

    async def run_scan(
        self,
        range_spec: Optional[str] = None,
        mode: ScanMode = ScanMode.FULL,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> ScanResult:
        ticket = await self.start_scan(range_spec, mode, trigger)
        return await ticket.task

    async def start_refresh(
        self,
        mode: ScanMode = ScanMode.QUICK,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> ScanTicket:
        """Re-probes every known host, in numeric address order."""
        mode = ScanMode(mode)
        progress = self._claim(ScanKind.REFRESH, mode)
        try:
            known = await self.repository.find_hosts()
        except Exception as e:
            self._release()
            if isinstance(e, RepositoryError):
                raise
            raise RepositoryError(f"Cannot list known hosts: {e}") from e

        addresses = sorted((record.ip for record in known), key=ip_sort_key)
        targets, excluded = self.filter_chain.partition(addresses)
        progress.total = len(targets)
        self.logger.info(
            "Refresh started",
            scan_id=progress.scan_id, mode=mode, trigger=trigger,
            targets=len(targets), excluded=len(excluded),
        )
        task = self._tasks.spawn(self._execute(progress, targets, trigger, len(excluded)), name=f"refresh-{progress.scan_id}")
        return ScanTicket(progress.scan_id, ScanKind.REFRESH, mode, None, len(targets), task)

    async def run_refresh(
        self,
        mode: ScanMode = ScanMode.QUICK,
        trigger: ScanTrigger = ScanTrigger.MANUAL,
    ) -> ScanResult:
        ticket = await self.start_refresh(mode, trigger)
        return await ticket.task

    # Sweep

    async def _execute(self, progress: ScanProgress, targets: List[str], trigger: ScanTrigger, excluded: int) -> ScanResult:
        started = time.monotonic()
        queue: asyncio.Queue = asyncio.Queue()
        for ip in targets:
            queue.put_nowait(ip)

        tally = _Tally()
        pool_size = min(self.scan_config.worker_pool_size, len(targets))
        workers = [
            asyncio.create_task(self._worker(queue, progress, tally), name=f"probe-worker-{i}")
            for i in range(pool_size)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException as e:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self._abort(progress, e)
            raise

        finished_at = utc_now()
        result = ScanResult(
            scan_id=progress.scan_id,
            kind=progress.kind,
            mode=progress.mode,
            trigger=trigger,
            state=ScanState.COMPLETED,
            range=progress.range,
            total=progress.total,
            scanned=progress.completed,
            found=progress.found,
            updated=progress.updated,
            online=tally.online,
            offline=tally.offline,
            excluded=excluded,
            started_at=progress.started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._last_result = result
        self._last_error = None
        self._progress = None
        self._state = ScanState.COMPLETED
        self.logger.info(
            "Sweep completed",
            scan_id=result.scan_id, kind=result.kind, total=result.total, found=result.found,
            updated=result.updated, online=result.online, duration_ms=result.duration_ms,
        )
        self.audit_sink.record(
            "scan_completed",
            scan_id=result.scan_id, kind=result.kind, mode=result.mode, trigger=result.trigger,
            range=result.range, total=result.total, found=result.found, updated=result.updated,
        )
        return result

    async def _worker(self, queue: asyncio.Queue, progress: ScanProgress, tally: _Tally) -> None:
        while True:
            try:
                ip = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            progress.current_target = ip
            result = await self._probe(ip, progress)
            is_new, stored = await self._persist(result)
            if result.is_online:
                tally.online += 1
            else:
                tally.offline += 1
            progress.completed += 1
            if stored:
                if is_new:
                    progress.found += 1
                else:
                    progress.updated += 1
            queue.task_done()

    async def _probe(self, ip: str, progress: ScanProgress) -> ProbeResult:
        existing = await self._repository_call("get_host", ip, self.repository.get_host(ip))
        known_mac = existing.mac if existing is not None and progress.kind == ScanKind.REFRESH else None
        known_hostname = (
            existing.hostname
            if existing is not None and existing.hostname_source == HostnameSource.MANUAL
            else None
        )
        deadline = self.scan_config.probe_deadline_seconds
        try:
            return await asyncio.wait_for(
                self.prober.probe(ip, progress.mode, known_mac=known_mac, known_hostname=known_hostname),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Probe overran its deadline, recording host as offline", ip=ip, timeout=deadline)
            return ProbeResult(ip=ip, status=HostStatus.OFFLINE, mode=progress.mode)
        except Exception as e:
            self.logger.warning("Probe failed, recording host as offline", ip=ip, error=str(e))
            return ProbeResult(ip=ip, status=HostStatus.OFFLINE, mode=progress.mode)

    async def _persist(self, result: ProbeResult) -> Tuple[bool, bool]:
        """Merges a probe result under the host lock. Returns (is_new, stored)."""
        ip = result.ip
        async with self.repository.host_lock(ip):
            existing = await self._repository_call("get_host", ip, self.repository.get_host(ip))
            record = merge_probe_result(existing, result)
            if record is None:
                return False, False
            await self._repository_call("upsert_host", ip, self.repository.upsert_host(record))
            await self._repository_call(
                "add_history", ip,
                self.repository.add_history(HistoryEntry(
                    ip=ip, status=result.status, ping_latency_ms=result.ping_latency_ms, seen_at=result.probed_at,
                )),
            )
            if result.is_online and result.ping_latency_ms is not None:
                await self._repository_call(
                    "add_latency_sample", ip,
                    self.repository.add_latency_sample(LatencySample(
                        ip=ip, latency_ms=result.ping_latency_ms, measured_at=result.probed_at,
                    )),
                )
        return existing is None, True

    async def _repository_call(self, operation: str, ip: str, coro):
        try:
            return await coro
        except RepositoryWriteError:
            raise
        except Exception as e:
            raise RepositoryWriteError(f"Repository {operation} failed for {ip}: {e}", operation=operation, ip=ip) from e

    async def close(self) -> None:
        await self._tasks.cancel_all()
