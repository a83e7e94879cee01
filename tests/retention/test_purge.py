"""Tests for retention windows and purges."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hostwatch.exceptions import InvalidRetentionConfigError
from hostwatch.models.common import HostStatus, PurgeCategory, utc_now
from hostwatch.models.host import HistoryEntry, HostRecord, LatencySample
from hostwatch.models.settings import RetentionConfig
from hostwatch.retention.purge import PURGE_JOB_ID, RETENTION_KEY, PurgeEngine, cutoff_for


async def _seed(repository, days_old, online=2, offline=1, history=3, latency=4):
    """Adds hosts, history entries and latency samples aged `days_old` days."""
    when = utc_now() - timedelta(days=days_old)
    prefix = f"10.{days_old % 250}.0."
    for i in range(online + offline):
        ip = f"{prefix}{i + 1}"
        status = HostStatus.ONLINE if i < online else HostStatus.OFFLINE
        await repository.upsert_host(HostRecord(ip=ip, status=status, ping_latency_ms=1, first_seen=when, last_seen=when))
    for _ in range(history):
        await repository.add_history(HistoryEntry(ip=f"{prefix}1", status=HostStatus.ONLINE, seen_at=when))
    for _ in range(latency):
        await repository.add_latency_sample(LatencySample(ip=f"{prefix}1", latency_ms=1, measured_at=when))


async def _counts(repository):
    return (
        await repository.count_hosts(),
        await repository.count_history(),
        await repository.count_latency_samples(),
    )


@pytest.fixture
def engine(repository, settings_store, audit_sink):
    return PurgeEngine(repository, settings_store, audit_sink=audit_sink)


def test_cutoff_for():
    now = utc_now()
    assert cutoff_for(0, now) is None
    assert cutoff_for(7, now) == now - timedelta(days=7)
    with pytest.raises(InvalidRetentionConfigError):
        cutoff_for(-1, now)


@pytest.mark.asyncio
async def test_history_window(engine, repository):
    await _seed(repository, days_old=40)
    await _seed(repository, days_old=1)

    deleted = await engine.purge_history(30)

    assert deleted == 3
    assert await repository.count_history() == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("category,expected", [
    (PurgeCategory.HISTORY, (6, 0, 8)),
    (PurgeCategory.LATENCY_SAMPLES, (6, 6, 0)),
    (PurgeCategory.SCANS, (0, 6, 8)),
    (PurgeCategory.OFFLINE, (4, 6, 8)),
])
async def test_zero_days_only_touches_its_category(engine, repository, category, expected):
    await _seed(repository, days_old=40)
    await _seed(repository, days_old=1)

    await engine.purge(category, days=0)

    assert await _counts(repository) == expected


@pytest.mark.asyncio
async def test_offline_purge_respects_the_window(engine, repository):
    await _seed(repository, days_old=10)
    await _seed(repository, days_old=1)

    assert await engine.purge_offline(7) == 1
    assert await repository.count_hosts(status=HostStatus.OFFLINE) == 1
    assert await repository.count_hosts(status=HostStatus.ONLINE) == 4


@pytest.mark.asyncio
async def test_keep_ips_resets_instead_of_deleting(engine, repository):
    await _seed(repository, days_old=100)

    affected = await engine.purge_scans(90, keep_ips=True)

    assert affected == 3
    hosts = await repository.find_hosts()
    assert len(hosts) == 3
    assert all(h.status == HostStatus.UNKNOWN and h.ping_latency_ms is None for h in hosts)


@pytest.mark.asyncio
async def test_full_purge_uses_configured_windows(engine, repository, audit_sink):
    await _seed(repository, days_old=100)
    await _seed(repository, days_old=1)

    result = await engine.execute_full_purge()

    assert result.history_deleted == 3
    assert result.offline_deleted == 1
    assert result.scans_deleted == 2
    assert result.latency_deleted == 4
    assert result.total_deleted == 10
    assert await _counts(repository) == (3, 3, 4)
    name, fields = audit_sink.events[-1]
    assert name == "purge_completed"
    assert fields["category"] == "all"
    assert fields["totalDeleted"] == 10


@pytest.mark.asyncio
async def test_days_override_applies_to_every_category(engine, repository):
    await _seed(repository, days_old=5)

    result = await engine.purge(days=0)

    assert result.total_deleted == 3 + 3 + 4
    assert await _counts(repository) == (0, 0, 0)


@pytest.mark.asyncio
async def test_large_purge_optimizes_storage(engine, repository):
    await _seed(repository, days_old=40, online=0, offline=0, history=101, latency=0)
    with patch.object(repository, "optimize", AsyncMock()) as optimize:
        await engine.purge(PurgeCategory.HISTORY, days=0)
    optimize.assert_awaited_once()


@pytest.mark.asyncio
async def test_small_purge_does_not_optimize(engine, repository):
    await _seed(repository, days_old=40, online=0, offline=0, history=100, latency=0)
    with patch.object(repository, "optimize", AsyncMock()) as optimize:
        await engine.purge(PurgeCategory.HISTORY, days=0)
    optimize.assert_not_awaited()


@pytest.mark.asyncio
async def test_clear_all(engine, repository, audit_sink):
    await _seed(repository, days_old=1)

    counts = await engine.clear_all()

    assert counts == {"history": 3, "latency": 4, "hosts": 3}
    assert await _counts(repository) == (0, 0, 0)
    assert "inventory_cleared" in audit_sink.names()


@pytest.mark.asyncio
async def test_estimate_size(engine, repository):
    await _seed(repository, days_old=100)
    await _seed(repository, days_old=1)

    estimate = await engine.estimate_size()

    assert estimate.host_rows == 6
    assert estimate.history_rows == 6
    assert estimate.latency_rows == 8
    assert estimate.purgeable_history_rows == 3
    assert estimate.purgeable_offline_rows == 1
    assert estimate.purgeable_host_rows == 2
    assert estimate.purgeable_latency_rows == 4
    assert estimate.current_bytes == 6 * 200 + 6 * 100 + 8 * 50
    assert estimate.reclaimable_bytes == 3 * 200 + 3 * 100 + 4 * 50
    assert estimate.projected_bytes == estimate.current_bytes - estimate.reclaimable_bytes

    # The estimate matches what the purge then deletes.
    result = await engine.execute_full_purge()
    assert result.scans_deleted == estimate.purgeable_host_rows
    assert result.offline_deleted == estimate.purgeable_offline_rows


@pytest.mark.asyncio
async def test_estimate_with_keep_ips(engine, repository):
    await _seed(repository, days_old=100)
    estimate = await engine.estimate_size(RetentionConfig(keep_ips_on_purge=True))
    assert estimate.purgeable_host_rows == 0
    assert estimate.purgeable_offline_rows == 0


def test_config_defaults_and_partial_update(engine, settings_store):
    assert engine.get_config() == RetentionConfig()

    config = engine.set_config({"historyRetentionDays": 14, "keep_ips_on_purge": True})

    assert config.history_retention_days == 14
    assert config.keep_ips_on_purge is True
    assert config.scan_retention_days == 90
    assert settings_store.get(RETENTION_KEY)["historyRetentionDays"] == 14


@pytest.mark.parametrize("updates,field", [
    ({"historyRetentionDays": -1}, "historyRetentionDays"),
    ({"purgeSchedule": "every night"}, "purgeSchedule"),
])
def test_invalid_retention_updates(engine, settings_store, updates, field):
    with pytest.raises(InvalidRetentionConfigError) as exc_info:
        engine.set_config(updates)
    assert exc_info.value.field == field
    assert settings_store.get(RETENTION_KEY) is None


@pytest.mark.asyncio
async def test_auto_purge_job_follows_config(repository, settings_store):
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start(paused=True)
    try:
        engine = PurgeEngine(repository, settings_store, scheduler)
        engine.start_auto_purge()
        assert scheduler.get_job(PURGE_JOB_ID) is not None

        engine.set_config({"purgeSchedule": "30 3 * * 0"})
        assert "hour='3'" in str(scheduler.get_job(PURGE_JOB_ID).trigger)

        engine.set_config({"autoPurgeEnabled": False})
        assert scheduler.get_job(PURGE_JOB_ID) is None
    finally:
        scheduler.shutdown(wait=False)


@pytest.mark.asyncio
async def test_scheduled_purge_swallows_errors(engine, repository):
    with patch.object(repository, "delete_history", AsyncMock(side_effect=RuntimeError("locked"))):
        await engine._run_scheduled_purge()
