"""
Hostname resolution for probed addresses: reverse DNS, the system resolver
(`getent hosts`) and, as a last resort, an mDNS reverse (PTR) query.
"""
import asyncio
import ipaddress
import platform
import socket
from typing import Awaitable, Callable, List, Optional

import structlog
from zeroconf import DNSOutgoing, DNSQuestion, const
from zeroconf.asyncio import AsyncZeroconf

from ..config import ProbeConfig
from ..utils.process import run_command

logger = structlog.get_logger(__name__)


def reverse_pointer_name(ip: str) -> str:
    """`192.168.1.5` -> `5.1.168.192.in-addr.arpa.`"""
    return ipaddress.IPv4Address(ip).reverse_pointer + "."


def clean_hostname(name: Optional[str], ip: str) -> Optional[str]:
    """Drops empty answers, the address itself and unresolved PTR names."""
    if not name:
        return None
    name = name.strip().rstrip(".")
    if not name or name == ip or name.lower().endswith(".in-addr.arpa"):
        return None
    return name


class HostnameResolver:
    """Tries each lookup method in order; the first usable name wins.
    A failing method never prevents the next one from running."""

    def __init__(self, probe_config: Optional[ProbeConfig] = None):
        self.probe_config = probe_config or ProbeConfig()
        self.timeout = self.probe_config.hostname_timeout_seconds
        self._aiozc: Optional[AsyncZeroconf] = None
        self._mdns_available = self.probe_config.enable_mdns
        self._mdns_lock = asyncio.Lock()
        self.logger = logger.bind(service="HostnameResolver")

    def _methods(self) -> List[Callable[[str], Awaitable[Optional[str]]]]:
        methods = [self.reverse_dns]
        if platform.system() != "Windows":
            methods.append(self.system_resolver)
        if self._mdns_available:
            methods.append(self.mdns)
        return methods

    async def resolve(self, ip: str) -> Optional[str]:
        for method in self._methods():
            try:
                name = clean_hostname(await method(ip), ip)
            except Exception as e:
                self.logger.debug("Hostname lookup failed", ip=ip, method=method.__name__, error=str(e))
                continue
            if name:
                return name
        return None

    async def reverse_dns(self, ip: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        host, _service = await asyncio.wait_for(
            loop.getnameinfo((ip, 0), socket.NI_NAMEREQD), timeout=self.timeout
        )
        return host

    async def system_resolver(self, ip: str) -> Optional[str]:
        result = await run_command(["getent", "hosts", ip], timeout=self.timeout)
        if not result.ok:
            return None
        parts = result.stdout.split()
        return parts[1] if len(parts) > 1 else None

    async def _get_zeroconf(self) -> Optional[AsyncZeroconf]:
        async with self._mdns_lock:
            if self._aiozc is None and self._mdns_available:
                try:
                    self._aiozc = AsyncZeroconf()
                except OSError as e:
                    self.logger.warning("mDNS unavailable, disabling mDNS hostname lookups", error=str(e))
                    self._mdns_available = False
            return self._aiozc

    async def mdns(self, ip: str) -> Optional[str]:
        aiozc = await self._get_zeroconf()
        if aiozc is None:
            return None
        zc = aiozc.zeroconf
        name = reverse_pointer_name(ip)

        answer = self._cached_pointer(zc, name)
        if answer:
            return answer

        query = DNSOutgoing(const._FLAGS_QR_QUERY)
        query.add_question(DNSQuestion(name, const._TYPE_PTR, const._CLASS_IN))
        zc.async_send(query)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.probe_config.mdns_timeout_seconds
        while loop.time() < deadline:
            await asyncio.sleep(0.1)
            answer = self._cached_pointer(zc, name)
            if answer:
                return answer
        return None

    @staticmethod
    def _cached_pointer(zc, name: str) -> Optional[str]:
        for record in zc.cache.get_all_by_details(name, const._TYPE_PTR, const._CLASS_IN):
            alias = getattr(record, "alias", None)
            if alias:
                return alias
        return None

    async def close(self) -> None:
        if self._aiozc is not None:
            await self._aiozc.async_close()
            self._aiozc = None
