"""
Inventory repository: the persistence boundary for hosts, their history and
latency samples.
"""
import abc
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

import structlog

from ..models.common import HostStatus, ip_sort_key
from ..models.host import HistoryEntry, HostRecord, LatencySample

logger = structlog.get_logger(__name__)


class BaseInventoryRepository(abc.ABC):
    """Abstract base class for inventory storage.

    Implementations provide upsert by IP, filtered queries and bulk deletes.
    Callers doing read-modify-write on a host hold `host_lock(ip)` so that
    concurrent writers (sweeps, manual edits, purges) never lose updates.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def host_lock(self, ip: str) -> AsyncIterator[None]:
        """Serializes writers of one IP. The lock is dropped once its last
        holder or waiter leaves."""
        lock = self._locks.setdefault(ip, asyncio.Lock())
        self._lock_users[ip] = self._lock_users.get(ip, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[ip] -= 1
            if self._lock_users[ip] == 0:
                del self._lock_users[ip]
                del self._locks[ip]

    @property
    def held_lock_count(self) -> int:
        return len(self._locks)

    @staticmethod
    def _apply_invariants(existing: Optional[HostRecord], record: HostRecord) -> HostRecord:
        """first_seen never changes once set; last_seen never goes backwards."""
        if existing is None:
            return record
        return record.model_copy(update={
            "first_seen": existing.first_seen,
            "last_seen": max(existing.last_seen, record.last_seen),
        })

    # Hosts

    @abc.abstractmethod
    async def get_host(self, ip: str) -> Optional[HostRecord]:
        pass

    @abc.abstractmethod
    async def find_hosts(self, status: Optional[HostStatus] = None, ip_prefix: Optional[str] = None) -> List[HostRecord]:
        """Hosts matching the filters, ordered by IP."""
        pass

    @abc.abstractmethod
    async def upsert_host(self, record: HostRecord) -> HostRecord:
        pass

    @abc.abstractmethod
    async def delete_host(self, ip: str) -> bool:
        pass

    @abc.abstractmethod
    async def delete_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        """Bulk delete. With no criteria every host is deleted."""
        pass

    @abc.abstractmethod
    async def reset_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        """Marks matching hosts `unknown` and clears their latency, keeping the rows."""
        pass

    @abc.abstractmethod
    async def count_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        pass

    # History

    @abc.abstractmethod
    async def add_history(self, entry: HistoryEntry) -> None:
        pass

    @abc.abstractmethod
    async def list_history(self, ip: str, limit: int = 100) -> List[HistoryEntry]:
        """Most recent entries first."""
        pass

    @abc.abstractmethod
    async def delete_history(self, before: Optional[datetime] = None) -> int:
        pass

    @abc.abstractmethod
    async def count_history(self, before: Optional[datetime] = None) -> int:
        pass

    # Latency samples

    @abc.abstractmethod
    async def add_latency_sample(self, sample: LatencySample) -> None:
        pass

    @abc.abstractmethod
    async def list_latency_samples(self, ip: str, since: Optional[datetime] = None) -> List[LatencySample]:
        pass

    @abc.abstractmethod
    async def delete_latency_samples(self, before: Optional[datetime] = None) -> int:
        pass

    @abc.abstractmethod
    async def count_latency_samples(self, before: Optional[datetime] = None) -> int:
        pass

    # Maintenance

    async def clear_all(self) -> Dict[str, int]:
        """Deletes every host, history entry and latency sample."""
        return {
            "history": await self.delete_history(),
            "latency": await self.delete_latency_samples(),
            "hosts": await self.delete_hosts(),
        }

    async def optimize(self) -> None:
        pass

    async def close(self) -> None:
        pass


def _host_matches(record: HostRecord, last_seen_before: Optional[datetime], status: Optional[HostStatus]) -> bool:
    if status is not None and record.status != status:
        return False
    if last_seen_before is not None and not record.last_seen < last_seen_before:
        return False
    return True


class InMemoryInventoryRepository(BaseInventoryRepository):
    """Process-local repository, used for tests and ephemeral runs."""

    def __init__(self):
        super().__init__()
        self._hosts: Dict[str, HostRecord] = {}
        self._history: List[HistoryEntry] = []
        self._latency: List[LatencySample] = []

    async def get_host(self, ip: str) -> Optional[HostRecord]:
        record = self._hosts.get(ip)
        return record.model_copy(deep=True) if record else None

    async def find_hosts(self, status: Optional[HostStatus] = None, ip_prefix: Optional[str] = None) -> List[HostRecord]:
        records = [
            r for r in self._hosts.values()
            if (status is None or r.status == status) and (not ip_prefix or r.ip.startswith(ip_prefix))
        ]
        records.sort(key=lambda r: ip_sort_key(r.ip))
        return [r.model_copy(deep=True) for r in records]

    async def upsert_host(self, record: HostRecord) -> HostRecord:
        stored = self._apply_invariants(self._hosts.get(record.ip), record)
        self._hosts[record.ip] = stored.model_copy(deep=True)
        return stored

    async def delete_host(self, ip: str) -> bool:
        return self._hosts.pop(ip, None) is not None

    async def delete_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        doomed = [ip for ip, r in self._hosts.items() if _host_matches(r, last_seen_before, status)]
        for ip in doomed:
            del self._hosts[ip]
        return len(doomed)

    async def reset_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        matched = [ip for ip, r in self._hosts.items() if _host_matches(r, last_seen_before, status)]
        for ip in matched:
            self._hosts[ip] = self._hosts[ip].model_copy(update={"status": HostStatus.UNKNOWN, "ping_latency_ms": None})
        return len(matched)

    async def count_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        return sum(1 for r in self._hosts.values() if _host_matches(r, last_seen_before, status))

    async def add_history(self, entry: HistoryEntry) -> None:
        self._history.append(entry.model_copy())

    async def list_history(self, ip: str, limit: int = 100) -> List[HistoryEntry]:
        entries = [e for e in self._history if e.ip == ip]
        entries.sort(key=lambda e: e.seen_at, reverse=True)
        return [e.model_copy() for e in entries[:limit]]

    async def delete_history(self, before: Optional[datetime] = None) -> int:
        kept = [e for e in self._history if before is not None and not e.seen_at < before]
        deleted = len(self._history) - len(kept)
        self._history = kept
        return deleted

    async def count_history(self, before: Optional[datetime] = None) -> int:
        return sum(1 for e in self._history if before is None or e.seen_at < before)

    async def add_latency_sample(self, sample: LatencySample) -> None:
        self._latency.append(sample.model_copy())

    async def list_latency_samples(self, ip: str, since: Optional[datetime] = None) -> List[LatencySample]:
        samples = [s for s in self._latency if s.ip == ip and (since is None or s.measured_at >= since)]
        samples.sort(key=lambda s: s.measured_at)
        return [s.model_copy() for s in samples]

    async def delete_latency_samples(self, before: Optional[datetime] = None) -> int:
        kept = [s for s in self._latency if before is not None and not s.measured_at < before]
        deleted = len(self._latency) - len(kept)
        self._latency = kept
        return deleted

    async def count_latency_samples(self, before: Optional[datetime] = None) -> int:
        return sum(1 for s in self._latency if before is None or s.measured_at < before)
