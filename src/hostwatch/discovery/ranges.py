"""
Expansion of range specifications into bounded lists of target addresses.

Accepted forms:
    192.168.1.0/24          CIDR, network and broadcast skipped up to /30
    192.168.1.10-20         dashed range on the last octet (capped at .254)
    192.168.1.10-192.168.1.20
    192.168.1.7             single address
    a, b, c                 comma separated list of any of the above
    auto (or empty)         /24 derived from the local interfaces
"""
import ipaddress
import re
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

import structlog

from ..config import ScanConfig
from ..exceptions import AutoDetectFailedError, InvalidRangeError, RangeTooLargeError
from ..models.settings import DefaultRangeConfig
from .network import detect_local_range

logger = structlog.get_logger(__name__)

MAX_RANGE_ADDRESSES = 1000
AUTO_DETECT = "auto"

PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)

_SHORT_DASHED = re.compile(r"^(\d{1,3}\.\d{1,3}\.\d{1,3})\.(\d{1,3})\s*-\s*(\d{1,3})$")
_FULL_DASHED = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3})\s*-\s*(\d{1,3}(?:\.\d{1,3}){3})$")


def suggest_narrower_range(address: str) -> str:
    """The /24 built from the first three octets of an address."""
    first_three = ".".join(address.split(".")[:3])
    return f"{first_three}.0/24"


@dataclass
class ResolvedRange:
    spec: str
    addresses: List[str]
    auto_detected: bool = False
    fell_back: bool = False


class _Segment:
    """One comma separated part of a specification, sized before expansion."""

    def __init__(self, first: ipaddress.IPv4Address, last: ipaddress.IPv4Address):
        self.first = first
        self.last = last

    @property
    def count(self) -> int:
        return int(self.last) - int(self.first) + 1

    def __iter__(self) -> Iterator[str]:
        for value in range(int(self.first), int(self.last) + 1):
            yield str(ipaddress.IPv4Address(value))


class RangeResolver:
    """Turns a range specification into an ordered, deduplicated address list."""

    def __init__(
        self,
        scan_config: Optional[ScanConfig] = None,
        auto_detector: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.scan_config = scan_config or ScanConfig()
        self.limit = min(self.scan_config.max_addresses, MAX_RANGE_ADDRESSES)
        self.private_only = self.scan_config.private_ranges_only
        self._auto_detector = auto_detector or (
            lambda: detect_local_range(self.scan_config.excluded_interface_prefixes)
        )
        self.logger = logger.bind(service="RangeResolver")

    @staticmethod
    def is_auto(spec: Optional[str]) -> bool:
        return spec is None or spec.strip() == "" or spec.strip().lower() == AUTO_DETECT

    def detect(self) -> str:
        """Returns the auto-detected local range or raises AutoDetectFailedError."""
        try:
            detected = self._auto_detector()
        except Exception as e:
            raise AutoDetectFailedError(f"Range auto-detection failed: {e}") from e
        if not detected:
            raise AutoDetectFailedError("No usable network interface found for range auto-detection")
        return detected

    def resolve(self, spec: Optional[str]) -> List[str]:
        if self.is_auto(spec):
            spec = self.detect()
        return self.expand(spec)

    def resolve_with_fallback(self, spec: Optional[str], default: DefaultRangeConfig) -> ResolvedRange:
        """Resolve a spec, treating None/auto as "use the configured default".

        When auto-detection is requested and fails, the configured default range
        is used before the error is surfaced.
        """
        if not self.is_auto(spec):
            return ResolvedRange(spec=spec.strip(), addresses=self.expand(spec))

        if not default.default_auto_detect and spec is None:
            return ResolvedRange(spec=default.default_range, addresses=self.expand(default.default_range))

        try:
            detected = self.detect()
            return ResolvedRange(spec=detected, addresses=self.expand(detected), auto_detected=True)
        except AutoDetectFailedError as e:
            if not default.default_range or self.is_auto(default.default_range):
                raise
            self.logger.warning(
                "Auto-detection failed, falling back to default range",
                default_range=default.default_range, error=str(e),
            )
            return ResolvedRange(spec=default.default_range, addresses=self.expand(default.default_range), fell_back=True)

    def expand(self, spec: str) -> List[str]:
        spec = (spec or "").strip()
        if not spec:
            raise InvalidRangeError("Empty range specification", range_spec=spec)

        segments = [self._parse_segment(part.strip(), spec) for part in spec.split(",") if part.strip()]
        if not segments:
            raise InvalidRangeError(f"No addresses in range '{spec}'", range_spec=spec)

        # Size check before materializing anything.
        upper_bound = sum(segment.count for segment in segments)
        if upper_bound > self.limit:
            seen_count = self._count_distinct(segments) if len(segments) > 1 else upper_bound
            if seen_count > self.limit:
                raise RangeTooLargeError(
                    spec, seen_count, self.limit,
                    suggested_range=suggest_narrower_range(str(segments[0].first)),
                )

        addresses = list(dict.fromkeys(address for segment in segments for address in segment))
        return addresses

    def _count_distinct(self, segments: List[_Segment]) -> int:
        intervals = sorted((int(s.first), int(s.last)) for s in segments)
        total = 0
        current_start, current_end = intervals[0]
        for start, end in intervals[1:]:
            if start <= current_end + 1:
                current_end = max(current_end, end)
            else:
                total += current_end - current_start + 1
                current_start, current_end = start, end
        return total + current_end - current_start + 1

    def _parse_segment(self, part: str, spec: str) -> _Segment:
        if "/" in part:
            segment = self._parse_cidr(part, spec)
        elif "-" in part:
            segment = self._parse_dashed(part, spec)
        else:
            address = self._parse_address(part, spec)
            segment = _Segment(address, address)
        self._check_allowed(segment, spec)
        return segment

    def _parse_address(self, text: str, spec: str) -> ipaddress.IPv4Address:
        try:
            return ipaddress.IPv4Address(text.strip())
        except ValueError as e:
            raise InvalidRangeError(f"Invalid IPv4 address '{text}' in range '{spec}'", range_spec=spec) from e

    def _parse_cidr(self, part: str, spec: str) -> _Segment:
        try:
            network = ipaddress.IPv4Network(part, strict=False)
        except ValueError as e:
            raise InvalidRangeError(f"Invalid CIDR '{part}': {e}", range_spec=spec) from e
        if network.prefixlen >= 31:
            return _Segment(network.network_address, network.broadcast_address)
        return _Segment(network.network_address + 1, network.broadcast_address - 1)

    def _parse_dashed(self, part: str, spec: str) -> _Segment:
        short = _SHORT_DASHED.match(part)
        if short:
            prefix, start_text, end_text = short.groups()
            start, end = int(start_text), int(end_text)
            if start > 255 or end > 255:
                raise InvalidRangeError(f"Octet out of range in '{part}'", range_spec=spec)
            end = min(end, 254)
            if end < start:
                raise InvalidRangeError(f"Range end is lower than range start in '{part}'", range_spec=spec)
            return _Segment(
                self._parse_address(f"{prefix}.{start}", spec),
                self._parse_address(f"{prefix}.{end}", spec),
            )

        full = _FULL_DASHED.match(part)
        if full:
            first = self._parse_address(full.group(1), spec)
            last = self._parse_address(full.group(2), spec)
            if last < first:
                raise InvalidRangeError(f"Range end is lower than range start in '{part}'", range_spec=spec)
            return _Segment(first, last)

        raise InvalidRangeError(f"Unrecognised range '{part}'", range_spec=spec)

    def _check_allowed(self, segment: _Segment, spec: str) -> None:
        if not self.private_only:
            return
        for network in PRIVATE_NETWORKS:
            if segment.first in network and segment.last in network:
                return
        raise InvalidRangeError(
            f"Only private ranges (10/8, 172.16/12, 192.168/16) are allowed, got '{spec}'",
            range_spec=spec,
        )
