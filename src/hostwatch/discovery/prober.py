"""
Per-host probing: liveness through the system `ping`, and in full mode the MAC
address, hostname and vendor of the host.

`HostProber.probe` never raises for an unreachable or misbehaving host; every
failure ends up as a None field or an offline status in the ProbeResult.
"""
import asyncio
import platform
import re
import time
from pathlib import Path
from typing import List, Optional

import structlog

from ..config import ProbeConfig
from ..exceptions import ProbeTimeout
from ..models.common import HostStatus, ScanMode, utc_now
from ..models.host import ProbeResult
from ..utils.process import run_command
from .hostnames import HostnameResolver
from .vendors import BaseVendorLookup, mac_prefix, normalize_mac

logger = structlog.get_logger(__name__)

_LATENCY_POSIX = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)
_LATENCY_WINDOWS = re.compile(r"(?:time|temps|zeit)\s*[=<]\s*(\d+)\s*ms", re.IGNORECASE)
_MAC_PATTERN = re.compile(r"([0-9a-f]{1,2}[:-]){5}[0-9a-f]{1,2}", re.IGNORECASE)
PROC_ARP_PATH = Path("/proc/net/arp")


def parse_ping_latency(output: str, windows: bool = False) -> Optional[int]:
    """Round-trip time in whole milliseconds from ping output, if present."""
    match = (_LATENCY_WINDOWS if windows else _LATENCY_POSIX).search(output)
    if not match:
        return None
    return int(round(float(match.group(1))))


def find_mac(output: str) -> Optional[str]:
    """First valid MAC address in a blob of text (zero MACs are ignored)."""
    for match in _MAC_PATTERN.finditer(output):
        octets = re.split(r"[:-]", match.group(0))
        mac = normalize_mac("".join(octet.zfill(2) for octet in octets))
        if mac:
            return mac
    return None


def parse_proc_arp(content: str, ip: str) -> Optional[str]:
    """MAC of `ip` from /proc/net/arp (IP, HW type, Flags, HW address, Mask, Device)."""
    for line in content.splitlines()[1:]:
        fields = line.split()
        if len(fields) >= 4 and fields[0] == ip:
            return normalize_mac(fields[3])
    return None


class HostProber:
    """Probes one address at a time. Holds no per-scan state."""

    def __init__(
        self,
        probe_config: Optional[ProbeConfig] = None,
        vendor_lookup: Optional[BaseVendorLookup] = None,
        hostname_resolver: Optional[HostnameResolver] = None,
    ):
        self.probe_config = probe_config or ProbeConfig()
        self.vendor_lookup = vendor_lookup
        self.hostname_resolver = hostname_resolver or HostnameResolver(self.probe_config)
        self.windows = platform.system() == "Windows"
        self.logger = logger.bind(service="HostProber")

    def _ping_command(self, ip: str) -> List[str]:
        timeout = self.probe_config.ping_timeout_seconds
        if self.windows:
            return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), ip]
        return ["ping", "-c", "1", "-W", str(max(1, int(round(timeout)))), ip]

    async def ping(self, ip: str) -> Optional[int]:
        """Latency in ms when the host answers, None when it does not.
        Raises ProbeTimeout when the ping process itself hangs."""
        limit = self.probe_config.ping_timeout_seconds + self.probe_config.ping_timeout_buffer_seconds
        started = time.perf_counter()
        try:
            result = await run_command(self._ping_command(ip), timeout=limit)
        except asyncio.TimeoutError as e:
            raise ProbeTimeout(ip, limit) from e
        if not result.ok:
            return None
        if self.windows and "ttl=" not in result.stdout.lower():
            # Windows answers 0 for "Destination host unreachable" replies.
            return None
        latency = parse_ping_latency(result.stdout, windows=self.windows)
        if latency is None:
            latency = int(round((time.perf_counter() - started) * 1000))
        return latency

    async def lookup_mac(self, ip: str) -> Optional[str]:
        """MAC from the neighbour table: `ip neigh`, /proc/net/arp, then `arp`."""
        timeout = self.probe_config.arp_timeout_seconds
        if not self.windows:
            try:
                result = await run_command(["ip", "neigh", "show", ip], timeout=timeout)
                mac = find_mac(result.stdout) if result.ok else None
                if mac:
                    return mac
            except (OSError, asyncio.TimeoutError) as e:
                self.logger.debug("ip neigh lookup failed", ip=ip, error=str(e))

            if PROC_ARP_PATH.exists():
                try:
                    content = await asyncio.to_thread(PROC_ARP_PATH.read_text)
                    mac = parse_proc_arp(content, ip)
                    if mac:
                        return mac
                except OSError as e:
                    self.logger.debug("Reading /proc/net/arp failed", error=str(e))

        arp_args = ["arp", "-a", ip] if self.windows else ["arp", "-n", ip]
        try:
            result = await run_command(arp_args, timeout=timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.debug("arp lookup failed", ip=ip, error=str(e))
            return None
        return find_mac(result.stdout) if result.ok else None

    async def lookup_hostname(self, ip: str) -> Optional[str]:
        return await self.hostname_resolver.resolve(ip)

    async def lookup_vendor(self, mac: Optional[str]) -> Optional[str]:
        prefix = mac_prefix(mac)
        if not prefix or self.vendor_lookup is None:
            return None
        return await self.vendor_lookup.lookup(prefix)

    async def _guarded(self, what: str, ip: str, coro) -> Optional[str]:
        timeout = self.probe_config.lookup_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.debug("Lookup timed out", lookup=what, ip=ip, timeout=timeout)
            return None
        except Exception as e:
            self.logger.debug("Lookup failed", lookup=what, ip=ip, error=str(e))
            return None

    async def probe(
        self,
        ip: str,
        mode: ScanMode = ScanMode.FULL,
        known_mac: Optional[str] = None,
        known_hostname: Optional[str] = None,
    ) -> ProbeResult:
        mode = ScanMode(mode)
        try:
            latency = await self.ping(ip)
        except ProbeTimeout as e:
            self.logger.debug("Ping timed out", ip=ip, timeout=e.timeout_seconds)
            latency = None
        except OSError as e:
            self.logger.warning("Ping could not be executed", ip=ip, error=str(e))
            latency = None

        if latency is None:
            return ProbeResult(ip=ip, status=HostStatus.OFFLINE, mode=mode, probed_at=utc_now())

        result = ProbeResult(ip=ip, status=HostStatus.ONLINE, mode=mode, ping_latency_ms=latency, probed_at=utc_now())
        if mode != ScanMode.FULL:
            return result

        mac = normalize_mac(known_mac) or await self._guarded("mac", ip, self.lookup_mac(ip))
        hostname = known_hostname or await self._guarded("hostname", ip, self.lookup_hostname(ip))
        vendor = await self._guarded("vendor", ip, self.lookup_vendor(mac)) if mac else None
        return result.model_copy(update={"mac": mac, "hostname": hostname, "vendor": vendor})

    async def close(self) -> None:
        await self.hostname_resolver.close()
        if self.vendor_lookup is not None:
            await self.vendor_lookup.close()
