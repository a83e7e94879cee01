"""
SQLite implementation of the inventory repository (stdlib sqlite3).

Every call opens a short-lived connection in a worker thread; a thread lock
serializes access to the database file.
"""
import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional, Tuple, TypeVar

import structlog

from ..exceptions import RepositoryError, RepositoryWriteError
from ..models.common import HostnameSource, HostStatus, ip_sort_key
from ..models.host import HistoryEntry, HostRecord, LatencySample
from .repository import BaseInventoryRepository

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS hosts (
    ip              TEXT PRIMARY KEY,
    ip_num          INTEGER NOT NULL,
    mac             TEXT,
    hostname        TEXT,
    hostname_source TEXT,
    vendor          TEXT,
    status          TEXT NOT NULL DEFAULT 'unknown',
    ping_latency_ms INTEGER,
    first_seen      TEXT NOT NULL,
    last_seen       TEXT NOT NULL,
    additional_info TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_hosts_status ON hosts(status);
CREATE INDEX IF NOT EXISTS idx_hosts_last_seen ON hosts(last_seen);
CREATE TABLE IF NOT EXISTS host_history (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    ip              TEXT NOT NULL,
    status          TEXT NOT NULL,
    ping_latency_ms INTEGER,
    seen_at         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_ip_seen ON host_history(ip, seen_at);
CREATE INDEX IF NOT EXISTS idx_history_seen ON host_history(seen_at);
CREATE TABLE IF NOT EXISTS latency_samples (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    ip          TEXT NOT NULL,
    latency_ms  INTEGER NOT NULL,
    measured_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_latency_ip_measured ON latency_samples(ip, measured_at);
"""


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _host_where(last_seen_before: Optional[datetime], status: Optional[HostStatus]) -> Tuple[str, List[Any]]:
    clauses, params = [], []
    if status is not None:
        clauses.append("status = ?")
        params.append(HostStatus(status).value)
    if last_seen_before is not None:
        clauses.append("last_seen < ?")
        params.append(_ts(last_seen_before))
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


def _before_where(column: str, before: Optional[datetime]) -> Tuple[str, List[Any]]:
    if before is None:
        return "", []
    return f" WHERE {column} < ?", [_ts(before)]


class SqliteInventoryRepository(BaseInventoryRepository):
    def __init__(self, db_path: Path):
        super().__init__()
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self.logger = logger.bind(storage_type="sqlite", db_path=self._db_path)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA_SQL)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Cannot initialise database {self._db_path}: {e}") from e

    @contextmanager
    def _tx(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    async def _read(self, operation: str, func: Callable[[sqlite3.Connection], T]) -> T:
        def run() -> T:
            with self._tx() as conn:
                return func(conn)
        try:
            return await asyncio.to_thread(run)
        except sqlite3.Error as e:
            self.logger.error("Database read failed", operation=operation, error=str(e))
            raise RepositoryError(f"{operation} failed: {e}") from e

    async def _write(self, operation: str, func: Callable[[sqlite3.Connection], T], ip: Optional[str] = None) -> T:
        def run() -> T:
            with self._tx() as conn:
                return func(conn)
        try:
            return await asyncio.to_thread(run)
        except sqlite3.Error as e:
            self.logger.error("Database write failed", operation=operation, ip=ip, error=str(e))
            raise RepositoryWriteError(f"{operation} failed: {e}", operation=operation, ip=ip) from e

    @staticmethod
    def _row_to_host(row: sqlite3.Row) -> HostRecord:
        return HostRecord(
            ip=row["ip"],
            mac=row["mac"],
            hostname=row["hostname"],
            hostname_source=row["hostname_source"],
            vendor=row["vendor"],
            status=row["status"],
            ping_latency_ms=row["ping_latency_ms"],
            first_seen=_parse_ts(row["first_seen"]),
            last_seen=_parse_ts(row["last_seen"]),
            additional_info=json.loads(row["additional_info"] or "{}"),
        )

    async def get_host(self, ip: str) -> Optional[HostRecord]:
        def query(conn: sqlite3.Connection) -> Optional[HostRecord]:
            row = conn.execute("SELECT * FROM hosts WHERE ip = ?", (ip,)).fetchone()
            return self._row_to_host(row) if row else None
        return await self._read("get_host", query)

    async def find_hosts(self, status: Optional[HostStatus] = None, ip_prefix: Optional[str] = None) -> List[HostRecord]:
        def query(conn: sqlite3.Connection) -> List[HostRecord]:
            where, params = _host_where(None, status)
            sql = "SELECT * FROM hosts" + where
            if ip_prefix:
                sql += (" AND " if where else " WHERE ") + "substr(ip, 1, ?) = ?"
                params += [len(ip_prefix), ip_prefix]
            rows = conn.execute(sql + " ORDER BY ip_num", params).fetchall()
            return [self._row_to_host(r) for r in rows]
        return await self._read("find_hosts", query)

    async def upsert_host(self, record: HostRecord) -> HostRecord:
        def write(conn: sqlite3.Connection) -> HostRecord:
            row = conn.execute("SELECT * FROM hosts WHERE ip = ?", (record.ip,)).fetchone()
            stored = self._apply_invariants(self._row_to_host(row) if row else None, record)
            conn.execute(
                """
                INSERT INTO hosts(ip, ip_num, mac, hostname, hostname_source, vendor, status,
                                  ping_latency_ms, first_seen, last_seen, additional_info)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(ip) DO UPDATE SET
                  mac=excluded.mac, hostname=excluded.hostname, hostname_source=excluded.hostname_source,
                  vendor=excluded.vendor, status=excluded.status, ping_latency_ms=excluded.ping_latency_ms,
                  first_seen=excluded.first_seen, last_seen=excluded.last_seen,
                  additional_info=excluded.additional_info
                """,
                (
                    stored.ip, ip_sort_key(stored.ip), stored.mac, stored.hostname,
                    HostnameSource(stored.hostname_source).value if stored.hostname_source else None,
                    stored.vendor, HostStatus(stored.status).value,
                    stored.ping_latency_ms, _ts(stored.first_seen), _ts(stored.last_seen),
                    json.dumps(stored.additional_info),
                ),
            )
            return stored
        return await self._write("upsert_host", write, ip=record.ip)

    async def delete_host(self, ip: str) -> bool:
        return await self._write(
            "delete_host",
            lambda conn: conn.execute("DELETE FROM hosts WHERE ip = ?", (ip,)).rowcount > 0,
            ip=ip,
        )

    async def delete_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        where, params = _host_where(last_seen_before, status)
        return await self._write("delete_hosts", lambda conn: conn.execute("DELETE FROM hosts" + where, params).rowcount)

    async def reset_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        where, params = _host_where(last_seen_before, status)
        sql = "UPDATE hosts SET status = 'unknown', ping_latency_ms = NULL" + where
        return await self._write("reset_hosts", lambda conn: conn.execute(sql, params).rowcount)

    async def count_hosts(self, last_seen_before: Optional[datetime] = None, status: Optional[HostStatus] = None) -> int:
        where, params = _host_where(last_seen_before, status)
        return await self._read("count_hosts", lambda conn: conn.execute("SELECT COUNT(*) FROM hosts" + where, params).fetchone()[0])

    async def add_history(self, entry: HistoryEntry) -> None:
        await self._write(
            "add_history",
            lambda conn: conn.execute(
                "INSERT INTO host_history(ip, status, ping_latency_ms, seen_at) VALUES (?, ?, ?, ?)",
                (entry.ip, HostStatus(entry.status).value, entry.ping_latency_ms, _ts(entry.seen_at)),
            ),
            ip=entry.ip,
        )

    async def list_history(self, ip: str, limit: int = 100) -> List[HistoryEntry]:
        def query(conn: sqlite3.Connection) -> List[HistoryEntry]:
            rows = conn.execute(
                "SELECT * FROM host_history WHERE ip = ? ORDER BY seen_at DESC, id DESC LIMIT ?", (ip, limit)
            ).fetchall()
            return [
                HistoryEntry(ip=r["ip"], status=r["status"], ping_latency_ms=r["ping_latency_ms"], seen_at=_parse_ts(r["seen_at"]))
                for r in rows
            ]
        return await self._read("list_history", query)

    async def delete_history(self, before: Optional[datetime] = None) -> int:
        where, params = _before_where("seen_at", before)
        return await self._write("delete_history", lambda conn: conn.execute("DELETE FROM host_history" + where, params).rowcount)

    async def count_history(self, before: Optional[datetime] = None) -> int:
        where, params = _before_where("seen_at", before)
        return await self._read("count_history", lambda conn: conn.execute("SELECT COUNT(*) FROM host_history" + where, params).fetchone()[0])

    async def add_latency_sample(self, sample: LatencySample) -> None:
        await self._write(
            "add_latency_sample",
            lambda conn: conn.execute(
                "INSERT INTO latency_samples(ip, latency_ms, measured_at) VALUES (?, ?, ?)",
                (sample.ip, sample.latency_ms, _ts(sample.measured_at)),
            ),
            ip=sample.ip,
        )

    async def list_latency_samples(self, ip: str, since: Optional[datetime] = None) -> List[LatencySample]:
        def query(conn: sqlite3.Connection) -> List[LatencySample]:
            sql, params = "SELECT * FROM latency_samples WHERE ip = ?", [ip]
            if since is not None:
                sql += " AND measured_at >= ?"
                params.append(_ts(since))
            rows = conn.execute(sql + " ORDER BY measured_at", params).fetchall()
            return [
                LatencySample(ip=r["ip"], latency_ms=r["latency_ms"], measured_at=_parse_ts(r["measured_at"]))
                for r in rows
            ]
        return await self._read("list_latency_samples", query)

    async def delete_latency_samples(self, before: Optional[datetime] = None) -> int:
        where, params = _before_where("measured_at", before)
        return await self._write("delete_latency_samples", lambda conn: conn.execute("DELETE FROM latency_samples" + where, params).rowcount)

    async def count_latency_samples(self, before: Optional[datetime] = None) -> int:
        where, params = _before_where("measured_at", before)
        return await self._read("count_latency_samples", lambda conn: conn.execute("SELECT COUNT(*) FROM latency_samples" + where, params).fetchone()[0])

    async def optimize(self) -> None:
        def vacuum() -> None:
            with self._lock:
                conn = self._connect()
                try:
                    conn.execute("VACUUM")
                finally:
                    conn.close()
        try:
            await asyncio.to_thread(vacuum)
        except sqlite3.Error as e:
            self.logger.warning("VACUUM failed", error=str(e))
