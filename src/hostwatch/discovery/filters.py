"""
Exclusion filters applied before a probe result is persisted or a host is listed.

Filters are evaluated in insertion order and the first one that matches
excludes the address.
"""
import abc
import ipaddress
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from ..exceptions import RangeError
from ..models.settings import DefaultRangeConfig
from .network import get_local_addresses, is_docker_address

logger = structlog.get_logger(__name__)


class ExclusionFilter(abc.ABC):
    """A predicate deciding whether an address must be left out."""

    name: str = "filter"

    @abc.abstractmethod
    def excludes(self, ip: str) -> bool:
        pass


class SelfAddressFilter(ExclusionFilter):
    """Loopback addresses and the addresses of this machine."""

    name = "self"

    def __init__(self, local_addresses: Optional[Callable[[], Set[str]]] = None):
        self._provider = local_addresses or get_local_addresses
        self._cached: Optional[Set[str]] = None

    def refresh(self) -> None:
        self._cached = None

    def excludes(self, ip: str) -> bool:
        try:
            if ipaddress.IPv4Address(ip).is_loopback:
                return True
        except ValueError:
            return False
        if self._cached is None:
            try:
                self._cached = set(self._provider())
            except Exception as e:
                logger.warning("Could not read local addresses", error=str(e))
                self._cached = set()
        return ip in self._cached


class DockerBridgeFilter(ExclusionFilter):
    """Addresses from Docker's default bridge pools (172.17.0.0/16 - 172.31.0.0/16)."""

    name = "docker"

    def excludes(self, ip: str) -> bool:
        return is_docker_address(ip)


class BlacklistFilter(ExclusionFilter):
    name = "blacklist"

    def __init__(self, is_blacklisted: Callable[[str], bool]):
        self._is_blacklisted = is_blacklisted

    def excludes(self, ip: str) -> bool:
        return self._is_blacklisted(ip)


class OutsideDefaultRangeFilter(ExclusionFilter):
    """Addresses outside the configured default range. Inactive while the
    default range is auto-detected."""

    name = "outside_default_range"

    def __init__(
        self,
        default_range: Callable[[], DefaultRangeConfig],
        expand: Callable[[str], List[str]],
    ):
        self._default_range = default_range
        self._expand = expand
        self._cache: Dict[str, Optional[Set[str]]] = {}

    def _members(self, spec: str) -> Optional[Set[str]]:
        if spec not in self._cache:
            try:
                self._cache[spec] = set(self._expand(spec))
            except RangeError as e:
                logger.warning("Configured default range is unusable, not filtering on it", default_range=spec, error=str(e))
                self._cache[spec] = None
        return self._cache[spec]

    def excludes(self, ip: str) -> bool:
        config = self._default_range()
        if config.default_auto_detect or not config.default_range:
            return False
        members = self._members(config.default_range)
        if members is None:
            return False
        return ip not in members


class ExclusionFilterChain:
    """Ordered collection of filters; the first match wins."""

    def __init__(self, filters: Optional[Iterable[ExclusionFilter]] = None):
        self._filters: List[ExclusionFilter] = list(filters or [])

    def add(self, exclusion_filter: ExclusionFilter) -> "ExclusionFilterChain":
        self._filters.append(exclusion_filter)
        return self

    @property
    def filters(self) -> List[ExclusionFilter]:
        return list(self._filters)

    def first_match(self, ip: str) -> Optional[str]:
        """Name of the first filter excluding `ip`, or None if it is kept."""
        for exclusion_filter in self._filters:
            if exclusion_filter.excludes(ip):
                return exclusion_filter.name
        return None

    def is_excluded(self, ip: str) -> bool:
        return self.first_match(ip) is not None

    def partition(self, ips: Iterable[str]) -> Tuple[List[str], Dict[str, str]]:
        """Splits addresses into (kept, {excluded_ip: filter_name})."""
        kept: List[str] = []
        excluded: Dict[str, str] = {}
        for ip in ips:
            reason = self.first_match(ip)
            if reason is None:
                kept.append(ip)
            else:
                excluded[ip] = reason
        return kept, excluded


def build_default_filter_chain(
    is_blacklisted: Callable[[str], bool],
    default_range: Callable[[], DefaultRangeConfig],
    expand: Callable[[str], List[str]],
    local_addresses: Optional[Callable[[], Set[str]]] = None,
) -> ExclusionFilterChain:
    return ExclusionFilterChain([
        SelfAddressFilter(local_addresses),
        DockerBridgeFilter(),
        BlacklistFilter(is_blacklisted),
        OutsideDefaultRangeFilter(default_range, expand),
    ])
