"""Tests for the sweep orchestrator."""

import asyncio
from datetime import timedelta

import pytest

from hostwatch.config import ScanConfig
from hostwatch.discovery.filters import build_default_filter_chain
from hostwatch.discovery.ranges import RangeResolver
from hostwatch.exceptions import RangeTooLargeError, RepositoryWriteError, ScanAlreadyInProgressError
from hostwatch.models.common import HostnameSource, HostStatus, ScanKind, ScanMode, ScanState, ScanTrigger, utc_now
from hostwatch.models.host import HostRecord, ProbeResult
from hostwatch.models.settings import DefaultRangeConfig
from hostwatch.scanning.orchestrator import ScanOrchestrator, merge_probe_result
from hostwatch.storage.repository import InMemoryInventoryRepository


class FlakyRepository(InMemoryInventoryRepository):
    def __init__(self):
        super().__init__()
        self.fail_upserts = True

    async def upsert_host(self, record):
        if self.fail_upserts:
            raise RuntimeError("disk full")
        return await super().upsert_host(record)


@pytest.fixture
def make_orchestrator(repository, audit_sink):
    def _make(prober, repo=None, blacklist=(), pool_size=20, probe_deadline=30.0):
        scan_config = ScanConfig(worker_pool_size=pool_size, probe_deadline_seconds=probe_deadline)
        resolver = RangeResolver(scan_config, auto_detector=lambda: "192.168.1.0/24")
        default = DefaultRangeConfig(default_range="192.168.1.0/24", default_auto_detect=True)
        chain = build_default_filter_chain(
            lambda ip: ip in blacklist,
            lambda: default,
            resolver.expand,
            local_addresses=lambda: set(),
        )
        return ScanOrchestrator(scan_config, repo or repository, prober, chain, resolver, lambda: default, audit_sink)
    return _make


# merge_probe_result

def test_offline_result_for_unknown_host_is_dropped():
    assert merge_probe_result(None, ProbeResult(ip="10.0.0.1", status=HostStatus.OFFLINE)) is None


def test_new_online_host():
    result = ProbeResult(ip="10.0.0.1", status=HostStatus.ONLINE, ping_latency_ms=4, hostname="nas")
    record = merge_probe_result(None, result)
    assert record.status == HostStatus.ONLINE
    assert record.hostname_source == HostnameSource.SCANNER
    assert record.first_seen == record.last_seen == result.probed_at


def test_offline_result_keeps_last_seen_and_identity():
    seen = utc_now() - timedelta(hours=1)
    existing = HostRecord(ip="10.0.0.1", mac="aa:bb:cc:dd:ee:ff", vendor="Acme", status=HostStatus.ONLINE,
                          ping_latency_ms=3, first_seen=seen, last_seen=seen)
    record = merge_probe_result(existing, ProbeResult(ip="10.0.0.1", status=HostStatus.OFFLINE))
    assert record.status == HostStatus.OFFLINE
    assert record.ping_latency_ms is None
    assert record.last_seen == seen
    assert record.mac == "aa:bb:cc:dd:ee:ff"
    assert record.vendor == "Acme"


def test_manual_hostname_is_never_replaced():
    existing = HostRecord(ip="10.0.0.1", hostname="my-nas", hostname_source=HostnameSource.MANUAL)
    record = merge_probe_result(existing, ProbeResult(ip="10.0.0.1", status=HostStatus.ONLINE, hostname="ds918.local"))
    assert record.hostname == "my-nas"
    assert record.hostname_source == HostnameSource.MANUAL


# Sweeps

@pytest.mark.asyncio
async def test_slash_30_sweep(make_orchestrator, make_prober, repository, audit_sink):
    orchestrator = make_orchestrator(make_prober({"192.168.1.1": 2}))

    ticket = await orchestrator.start_scan("192.168.1.0/30")
    assert ticket.total == 2
    assert ticket.kind == ScanKind.SCAN
    result = await ticket.task

    assert result.total == 2
    assert result.scanned == 2
    assert result.found == 1
    assert result.updated == 0
    assert result.online == 1
    assert result.offline == 1
    assert orchestrator.state == ScanState.COMPLETED
    assert orchestrator.progress is None
    assert orchestrator.last_result == result

    host = await repository.get_host("192.168.1.1")
    assert host.status == HostStatus.ONLINE
    assert host.ping_latency_ms == 2
    assert await repository.get_host("192.168.1.2") is None
    assert len(await repository.list_history("192.168.1.1")) == 1
    assert len(await repository.list_latency_samples("192.168.1.1")) == 1
    assert audit_sink.names() == ["scan_completed"]


@pytest.mark.asyncio
async def test_known_host_counts_as_updated(make_orchestrator, make_prober, repository):
    await repository.upsert_host(HostRecord(ip="192.168.1.1", status=HostStatus.OFFLINE))
    orchestrator = make_orchestrator(make_prober({"192.168.1.1": 5}))

    result = await orchestrator.run_scan("192.168.1.1")

    assert result.found == 0
    assert result.updated == 1
    assert (await repository.get_host("192.168.1.1")).status == HostStatus.ONLINE


@pytest.mark.asyncio
async def test_second_sweep_is_rejected_while_running(make_orchestrator, make_prober):
    gate = asyncio.Event()
    orchestrator = make_orchestrator(make_prober({"192.168.1.1": 1}, gate=gate))

    ticket = await orchestrator.start_scan("192.168.1.0/30")
    assert orchestrator.is_running

    with pytest.raises(ScanAlreadyInProgressError) as exc_info:
        await orchestrator.start_scan("192.168.1.0/30")
    assert exc_info.value.kind == ScanKind.SCAN
    with pytest.raises(ScanAlreadyInProgressError):
        await orchestrator.start_refresh()

    progress = orchestrator.progress
    assert progress.scan_id == ticket.scan_id
    assert progress.total == 2
    assert progress.completed == 0

    gate.set()
    await ticket.task
    result = await orchestrator.run_scan("192.168.1.1")
    assert result.scan_id != ticket.scan_id


@pytest.mark.asyncio
async def test_range_error_releases_the_claim(make_orchestrator, make_prober):
    orchestrator = make_orchestrator(make_prober({}))

    with pytest.raises(RangeTooLargeError) as exc_info:
        await orchestrator.start_scan("10.0.0.0/16")
    assert exc_info.value.suggested_range == "10.0.0.0/24"
    assert orchestrator.state == ScanState.IDLE
    assert orchestrator.progress is None

    result = await orchestrator.run_scan("192.168.1.0/30")
    assert result.total == 2


@pytest.mark.asyncio
async def test_auto_detected_range(make_orchestrator, make_prober):
    orchestrator = make_orchestrator(make_prober({}))
    ticket = await orchestrator.start_scan(None, ScanMode.QUICK)
    assert ticket.range == "192.168.1.0/24"
    assert ticket.total == 254
    await ticket.task


@pytest.mark.asyncio
async def test_excluded_addresses_are_not_probed(make_orchestrator, make_prober):
    prober = make_prober({"192.168.1.1": 1, "192.168.1.2": 1})
    orchestrator = make_orchestrator(prober, blacklist={"192.168.1.1"})

    result = await orchestrator.run_scan("192.168.1.0/30")

    assert result.total == 1
    assert result.excluded == 1
    assert [call[0] for call in prober.calls] == ["192.168.1.2"]


@pytest.mark.asyncio
async def test_failing_probe_counts_as_offline(make_orchestrator, make_prober):
    prober = make_prober({"192.168.1.1": 1, "192.168.1.2": 1})
    prober.failing.add("192.168.1.2")
    orchestrator = make_orchestrator(prober)

    result = await orchestrator.run_scan("192.168.1.0/30")

    assert result.scanned == result.total == 2
    assert result.online == 1
    assert result.offline == 1


@pytest.mark.asyncio
async def test_repository_failure_aborts_the_sweep(make_orchestrator, make_prober, audit_sink):
    repo = FlakyRepository()
    orchestrator = make_orchestrator(make_prober({"192.168.1.1": 1}), repo=repo)

    with pytest.raises(RepositoryWriteError) as exc_info:
        await orchestrator.run_scan("192.168.1.0/30")

    assert exc_info.value.operation == "upsert_host"
    assert exc_info.value.ip == "192.168.1.1"
    assert orchestrator.state == ScanState.ABORTED
    assert orchestrator.progress is None
    assert "disk full" in orchestrator.last_error
    assert "scan_aborted" in audit_sink.names()

    repo.fail_upserts = False
    result = await orchestrator.run_scan("192.168.1.0/30")
    assert result.found == 1
    assert orchestrator.last_error is None


@pytest.mark.asyncio
async def test_refresh_probes_known_hosts_in_numeric_order(make_orchestrator, make_prober, repository):
    seen = utc_now() - timedelta(days=1)
    for ip in ("192.168.1.10", "192.168.1.2", "192.168.1.100"):
        await repository.upsert_host(HostRecord(ip=ip, mac="aa:bb:cc:00:00:01", status=HostStatus.ONLINE,
                                                first_seen=seen, last_seen=seen))
    prober = make_prober({"192.168.1.2": 3})
    orchestrator = make_orchestrator(prober, pool_size=1)

    ticket = await orchestrator.start_refresh(ScanMode.QUICK, ScanTrigger.AUTO)
    assert ticket.kind == ScanKind.REFRESH
    result = await ticket.task

    assert [call[0] for call in prober.calls] == ["192.168.1.2", "192.168.1.10", "192.168.1.100"]
    assert all(call[2] == "aa:bb:cc:00:00:01" for call in prober.calls)
    assert result.trigger == ScanTrigger.AUTO
    assert result.updated == 3
    assert result.found == 0

    offline = await repository.get_host("192.168.1.10")
    assert offline.status == HostStatus.OFFLINE
    assert offline.last_seen == seen
    assert (await repository.list_history("192.168.1.10"))[0].status == HostStatus.OFFLINE
    assert (await repository.get_host("192.168.1.2")).last_seen > seen


@pytest.mark.asyncio
async def test_manual_hostname_is_passed_to_the_prober(make_orchestrator, make_prober, repository):
    await repository.upsert_host(HostRecord(ip="192.168.1.1", hostname="router", hostname_source=HostnameSource.MANUAL))
    prober = make_prober({"192.168.1.1": 1}, details={"192.168.1.1": {"hostname": "gw.lan"}})
    orchestrator = make_orchestrator(prober)

    await orchestrator.run_scan("192.168.1.1", ScanMode.FULL)

    assert prober.calls[0][3] == "router"
    assert prober.calls[0][2] is None
    host = await repository.get_host("192.168.1.1")
    assert host.hostname == "router"
    assert host.hostname_source == HostnameSource.MANUAL


@pytest.mark.asyncio
async def test_empty_refresh_completes(make_orchestrator, make_prober):
    orchestrator = make_orchestrator(make_prober({}))
    result = await orchestrator.run_refresh()
    assert result.total == 0
    assert result.scanned == 0
    assert orchestrator.state == ScanState.COMPLETED


@pytest.mark.asyncio
async def test_stalled_host_is_recorded_offline(make_orchestrator, make_prober, repository):
    await repository.upsert_host(HostRecord(ip="192.168.1.1", status=HostStatus.ONLINE, ping_latency_ms=3))
    orchestrator = make_orchestrator(make_prober({"192.168.1.1": 1}, gate=asyncio.Event()), probe_deadline=0.05)

    result = await asyncio.wait_for(orchestrator.run_scan("192.168.1.0/30"), timeout=5)

    assert result.scanned == 2
    assert result.offline == 2
    assert orchestrator.state == ScanState.COMPLETED
    assert (await repository.get_host("192.168.1.1")).status == HostStatus.OFFLINE
    assert await repository.get_host("192.168.1.2") is None


class ConcurrencyTrackingProber:
    def __init__(self):
        self.active = 0
        self.peak = 0

    async def probe(self, ip, mode=ScanMode.FULL, known_mac=None, known_hostname=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.005)
        finally:
            self.active -= 1
        return ProbeResult(ip=ip, status=HostStatus.ONLINE, mode=mode, ping_latency_ms=1)

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_worker_pool_caps_concurrency(make_orchestrator):
    prober = ConcurrencyTrackingProber()
    orchestrator = make_orchestrator(prober, pool_size=2)

    ticket = await orchestrator.start_scan("192.168.1.1-20")
    samples = []
    while not ticket.task.done():
        progress = orchestrator.progress
        if progress is not None:
            samples.append(progress.completed)
        await asyncio.sleep(0.001)
    result = await ticket.task

    assert prober.peak == 2
    assert result.scanned == 20
    assert result.found == 20
    assert samples
    assert samples == sorted(samples)
    assert all(completed <= 20 for completed in samples)
