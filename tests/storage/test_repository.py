"""Contract tests run against every inventory repository backend."""

import asyncio
from datetime import timedelta

import pytest

from hostwatch.models.common import HostnameSource, HostStatus, utc_now
from hostwatch.models.host import HistoryEntry, HostRecord, LatencySample
from hostwatch.storage.repository import InMemoryInventoryRepository
from hostwatch.storage.sqlite_repository import SqliteInventoryRepository


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryInventoryRepository()
    return SqliteInventoryRepository(tmp_path / "inventory.db")


def _host(ip, days_ago=0, status=HostStatus.ONLINE, **fields):
    seen = utc_now() - timedelta(days=days_ago)
    return HostRecord(ip=ip, status=status, first_seen=seen, last_seen=seen, **fields)


@pytest.mark.asyncio
async def test_upsert_and_get(repo):
    record = _host("192.168.1.10", mac="aa:bb:cc:dd:ee:ff", hostname="nas", hostname_source=HostnameSource.MANUAL,
                   vendor="Synology", ping_latency_ms=4, additional_info={"openPorts": [{"port": 22}]})
    await repo.upsert_host(record)

    stored = await repo.get_host("192.168.1.10")
    assert stored.mac == "aa:bb:cc:dd:ee:ff"
    assert stored.hostname_source == HostnameSource.MANUAL
    assert stored.status == HostStatus.ONLINE
    assert stored.ping_latency_ms == 4
    assert stored.additional_info == {"openPorts": [{"port": 22}]}
    assert stored.last_seen == record.last_seen
    assert await repo.get_host("192.168.1.11") is None


@pytest.mark.asyncio
async def test_first_seen_is_kept_and_last_seen_never_goes_back(repo):
    original = _host("192.168.1.10", days_ago=5)
    await repo.upsert_host(original)
    await repo.upsert_host(_host("192.168.1.10", days_ago=1))
    await repo.upsert_host(_host("192.168.1.10", days_ago=3, status=HostStatus.OFFLINE))

    stored = await repo.get_host("192.168.1.10")
    assert stored.first_seen == original.first_seen
    assert stored.last_seen > utc_now() - timedelta(days=2)
    assert stored.status == HostStatus.OFFLINE


@pytest.mark.asyncio
async def test_find_hosts_orders_numerically_and_filters(repo):
    for ip, status in [("192.168.1.100", HostStatus.ONLINE), ("192.168.1.20", HostStatus.OFFLINE),
                       ("192.168.1.3", HostStatus.ONLINE), ("10.0.0.1", HostStatus.ONLINE)]:
        await repo.upsert_host(_host(ip, status=status))

    assert [h.ip for h in await repo.find_hosts()] == ["10.0.0.1", "192.168.1.3", "192.168.1.20", "192.168.1.100"]
    assert [h.ip for h in await repo.find_hosts(status=HostStatus.ONLINE, ip_prefix="192.168.")] == ["192.168.1.3", "192.168.1.100"]
    assert [h.ip for h in await repo.find_hosts(ip_prefix="192.168.1.1")] == ["192.168.1.100"]


@pytest.mark.asyncio
async def test_bulk_delete_reset_and_count(repo):
    await repo.upsert_host(_host("192.168.1.1", days_ago=10))
    await repo.upsert_host(_host("192.168.1.2", days_ago=10, status=HostStatus.OFFLINE))
    await repo.upsert_host(_host("192.168.1.3", days_ago=1, status=HostStatus.OFFLINE))
    cutoff = utc_now() - timedelta(days=5)

    assert await repo.count_hosts() == 3
    assert await repo.count_hosts(last_seen_before=cutoff) == 2
    assert await repo.count_hosts(last_seen_before=cutoff, status=HostStatus.OFFLINE) == 1

    assert await repo.reset_hosts(last_seen_before=cutoff, status=HostStatus.ONLINE) == 1
    reset = await repo.get_host("192.168.1.1")
    assert reset.status == HostStatus.UNKNOWN
    assert reset.ping_latency_ms is None

    assert await repo.delete_hosts(status=HostStatus.OFFLINE) == 2
    assert [h.ip for h in await repo.find_hosts()] == ["192.168.1.1"]
    assert await repo.delete_host("192.168.1.1") is True
    assert await repo.delete_host("192.168.1.1") is False


@pytest.mark.asyncio
async def test_history_is_newest_first_and_survives_host_deletion(repo):
    now = utc_now()
    for hours in (3, 1, 2):
        await repo.add_history(HistoryEntry(ip="192.168.1.1", status=HostStatus.ONLINE, ping_latency_ms=hours,
                                            seen_at=now - timedelta(hours=hours)))
    await repo.add_history(HistoryEntry(ip="192.168.1.2", status=HostStatus.OFFLINE, seen_at=now))
    await repo.upsert_host(_host("192.168.1.1"))
    await repo.delete_host("192.168.1.1")

    entries = await repo.list_history("192.168.1.1")
    assert [e.ping_latency_ms for e in entries] == [1, 2, 3]
    assert len(await repo.list_history("192.168.1.1", limit=2)) == 2

    assert await repo.count_history(before=now - timedelta(minutes=90)) == 2
    assert await repo.delete_history(before=now - timedelta(minutes=90)) == 2
    assert await repo.count_history() == 2
    assert await repo.delete_history() == 2


@pytest.mark.asyncio
async def test_latency_samples(repo):
    now = utc_now()
    for minutes in (30, 10, 20):
        await repo.add_latency_sample(LatencySample(ip="192.168.1.1", latency_ms=minutes, measured_at=now - timedelta(minutes=minutes)))

    samples = await repo.list_latency_samples("192.168.1.1")
    assert [s.latency_ms for s in samples] == [30, 20, 10]
    assert [s.latency_ms for s in await repo.list_latency_samples("192.168.1.1", since=now - timedelta(minutes=25))] == [20, 10]
    assert await repo.count_latency_samples(before=now - timedelta(minutes=15)) == 2
    assert await repo.delete_latency_samples(before=now - timedelta(minutes=15)) == 2
    assert await repo.count_latency_samples() == 1


@pytest.mark.asyncio
async def test_clear_all(repo):
    await repo.upsert_host(_host("192.168.1.1"))
    await repo.add_history(HistoryEntry(ip="192.168.1.1", status=HostStatus.ONLINE))
    await repo.add_latency_sample(LatencySample(ip="192.168.1.1", latency_ms=1))

    assert await repo.clear_all() == {"history": 1, "latency": 1, "hosts": 1}
    await repo.optimize()
    assert await repo.count_hosts() == 0


@pytest.mark.asyncio
async def test_host_lock_serializes_writers(repo):
    await repo.upsert_host(_host("192.168.1.1", additional_info={"counter": 0}))

    async def increment():
        async with repo.host_lock("192.168.1.1"):
            record = await repo.get_host("192.168.1.1")
            await asyncio.sleep(0)
            info = {"counter": record.additional_info["counter"] + 1}
            await repo.upsert_host(record.model_copy(update={"additional_info": info}))

    await asyncio.gather(*(increment() for _ in range(10)))
    assert (await repo.get_host("192.168.1.1")).additional_info["counter"] == 10
    assert repo.held_lock_count == 0


@pytest.mark.asyncio
async def test_returned_records_are_copies(repo):
    await repo.upsert_host(_host("192.168.1.1", additional_info={"tags": ["a"]}))
    record = await repo.get_host("192.168.1.1")
    record.additional_info["tags"].append("b")
    assert (await repo.get_host("192.168.1.1")).additional_info == {"tags": ["a"]}


@pytest.mark.asyncio
async def test_host_locks_are_released_after_use(repo):
    for last_octet in range(1, 51):
        async with repo.host_lock(f"10.0.{last_octet}.1"):
            assert repo.held_lock_count == 1
    assert repo.held_lock_count == 0

    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder():
        async with repo.host_lock("192.168.1.1"):
            entered.set()
            await release.wait()

    async def waiter():
        async with repo.host_lock("192.168.1.1"):
            pass

    tasks = [asyncio.create_task(holder())]
    await entered.wait()
    tasks.append(asyncio.create_task(waiter()))
    await asyncio.sleep(0)
    assert repo.held_lock_count == 1
    release.set()
    await asyncio.gather(*tasks)
    assert repo.held_lock_count == 0
