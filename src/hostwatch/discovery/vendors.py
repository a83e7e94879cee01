"""
Vendor lookup from the OUI prefix of a MAC address.

Lookups are pluggable: a local table (built-in entries plus an optional
Wireshark `manuf` file), a remote macvendors-style HTTP API, or a chain of both.
"""
import abc
import asyncio
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import aiohttp
import structlog

from ..config import ProbeConfig
from ..utils.resilience import CircuitBreaker, CircuitBreakerOpenError

logger = structlog.get_logger(__name__)

_MAC_HEX = re.compile(r"[0-9a-f]{12}")

BUILTIN_OUI_VENDORS: Dict[str, str] = {
    "00:03:93": "Apple",
    "3c:07:54": "Apple",
    "00:05:69": "VMware",
    "00:0c:29": "VMware",
    "00:50:56": "VMware",
    "00:15:5d": "Microsoft (Hyper-V)",
    "08:00:27": "Oracle VirtualBox",
    "52:54:00": "QEMU/KVM",
    "b8:27:eb": "Raspberry Pi Foundation",
    "dc:a6:32": "Raspberry Pi Trading",
    "e4:5f:01": "Raspberry Pi Trading",
    "00:11:32": "Synology",
    "00:17:88": "Philips Lighting",
    "00:1b:21": "Intel",
    "00:24:d4": "Freebox",
    "02:42:ac": "Docker",
}


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """Lowercase, colon separated form of a MAC address, or None if invalid."""
    if not mac:
        return None
    digits = re.sub(r"[^0-9a-f]", "", mac.lower())
    if not _MAC_HEX.fullmatch(digits) or digits == "0" * 12:
        return None
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def mac_prefix(mac: Optional[str]) -> Optional[str]:
    """The OUI part (first three octets) of a MAC address."""
    normalized = normalize_mac(mac)
    return normalized[:8] if normalized else None


def parse_manuf(lines: Iterable[str]) -> Dict[str, str]:
    """Parses Wireshark `manuf` lines (`00:00:0C<TAB>Cisco<TAB>Cisco Systems, Inc`).
    Entries with a bit mask (`/28`, `/36`) are skipped."""
    table: Dict[str, str] = {}
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        fields = [field.strip() for field in line.split("\t") if field.strip()]
        if len(fields) < 2 or "/" in fields[0]:
            continue
        prefix = mac_prefix(fields[0].replace("-", ":") + ":00:00:00")
        if prefix:
            table[prefix] = fields[2] if len(fields) > 2 else fields[1]
    return table


class BaseVendorLookup(abc.ABC):
    """Maps an OUI prefix (`aa:bb:cc`) to a vendor name."""

    @abc.abstractmethod
    async def lookup(self, mac_prefix: str) -> Optional[str]:
        pass

    async def lookup_mac(self, mac: str) -> Optional[str]:
        prefix = mac_prefix(mac)
        if not prefix:
            return None
        return await self.lookup(prefix)

    async def close(self) -> None:
        pass


class StaticOuiVendorLookup(BaseVendorLookup):
    """Local table lookup. Never touches the network."""

    def __init__(self, table: Optional[Dict[str, str]] = None, manuf_file: Optional[Path] = None):
        self._table: Dict[str, str] = dict(BUILTIN_OUI_VENDORS)
        if table:
            self._table.update({k.lower(): v for k, v in table.items()})
        if manuf_file:
            self.load_manuf_file(manuf_file)

    def __len__(self) -> int:
        return len(self._table)

    def load_manuf_file(self, path: Path) -> int:
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                entries = parse_manuf(f)
        except OSError as e:
            logger.warning("Could not read OUI file", path=str(path), error=str(e))
            return 0
        self._table.update(entries)
        logger.info("Loaded OUI vendor table", path=str(path), entries=len(entries))
        return len(entries)

    async def lookup(self, mac_prefix: str) -> Optional[str]:
        return self._table.get(mac_prefix.lower())


class MacVendorsApiLookup(BaseVendorLookup):
    """Remote lookup against a macvendors-style API (`GET <base>/<prefix>`
    returns the vendor as plain text, 404 when unknown)."""

    def __init__(
        self,
        base_url: str = "https://api.macvendors.com",
        timeout_seconds: float = 3.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._breaker = circuit_breaker or CircuitBreaker(name="vendor-api")
        self._session = session
        self._owns_session = session is None
        self._cache: Dict[str, Optional[str]] = {}
        self.logger = logger.bind(service="MacVendorsApiLookup", base_url=self.base_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    async def _fetch(self, prefix: str) -> Optional[str]:
        session = await self._get_session()
        async with session.get(f"{self.base_url}/{prefix}") as response:
            if response.status == 404:
                return None
            response.raise_for_status()
            vendor = (await response.text()).strip()
            return vendor or None

    async def lookup(self, mac_prefix: str) -> Optional[str]:
        prefix = mac_prefix.lower()
        if prefix in self._cache:
            return self._cache[prefix]
        try:
            vendor = await self._breaker.call(self._fetch, prefix)
        except CircuitBreakerOpenError as e:
            self.logger.debug("Vendor API skipped, circuit open", remaining=round(e.remaining_time, 1))
            return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.debug("Vendor API lookup failed", prefix=prefix, error=str(e))
            return None
        self._cache[prefix] = vendor
        return vendor

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class ChainedVendorLookup(BaseVendorLookup):
    """First non-empty answer wins."""

    def __init__(self, lookups: List[BaseVendorLookup]):
        self.lookups = lookups

    async def lookup(self, mac_prefix: str) -> Optional[str]:
        for lookup in self.lookups:
            vendor = await lookup.lookup(mac_prefix)
            if vendor:
                return vendor
        return None

    async def close(self) -> None:
        for lookup in self.lookups:
            await lookup.close()


def get_vendor_lookup(probe_config: ProbeConfig) -> BaseVendorLookup:
    """Factory returning the vendor lookup described by the configuration."""
    local = StaticOuiVendorLookup(manuf_file=probe_config.oui_file)
    if not probe_config.vendor_api_enabled:
        return local
    remote = MacVendorsApiLookup(
        base_url=probe_config.vendor_api_url,
        timeout_seconds=probe_config.vendor_api_timeout_seconds,
        circuit_breaker=CircuitBreaker(
            failure_threshold=probe_config.cb_failure_threshold,
            recovery_timeout_seconds=probe_config.cb_recovery_timeout_seconds,
            name="vendor-api",
        ),
    )
    return ChainedVendorLookup([local, remote])
