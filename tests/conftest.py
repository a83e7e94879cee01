"""Shared fixtures for the hostwatch test suite."""

import asyncio
from typing import Dict, Optional

import pytest

from hostwatch.audit import MemoryAuditSink
from hostwatch.models.common import HostStatus, ScanMode
from hostwatch.models.host import ProbeResult
from hostwatch.storage.repository import InMemoryInventoryRepository
from hostwatch.storage.settings import InMemorySettingsStore


class ScriptedProber:
    """Stands in for HostProber: answers from a fixed table of online hosts."""

    def __init__(self, online: Dict[str, int], details: Optional[Dict[str, dict]] = None, gate: Optional[asyncio.Event] = None):
        self.online = online
        self.details = details or {}
        self.gate = gate
        self.calls = []
        self.failing = set()

    async def probe(self, ip, mode=ScanMode.FULL, known_mac=None, known_hostname=None):
        mode = ScanMode(mode)
        self.calls.append((ip, mode, known_mac, known_hostname))
        if self.gate is not None:
            await self.gate.wait()
        if ip in self.failing:
            raise RuntimeError(f"prober exploded on {ip}")
        if ip not in self.online:
            return ProbeResult(ip=ip, status=HostStatus.OFFLINE, mode=mode)
        extra = self.details.get(ip, {}) if mode == ScanMode.FULL else {}
        return ProbeResult(ip=ip, status=HostStatus.ONLINE, mode=mode, ping_latency_ms=self.online[ip], **extra)

    async def close(self):
        pass


@pytest.fixture
def make_prober():
    return ScriptedProber


@pytest.fixture
def repository():
    return InMemoryInventoryRepository()


@pytest.fixture
def settings_store():
    return InMemorySettingsStore()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()
