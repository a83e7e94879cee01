"""
Host listing: free-text search, exclusion, sorting and pagination over the
records returned by the repository.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

from ..models.common import SortField, SortOrder, ip_sort_key
from ..models.host import HostPage, HostQuery, HostRecord

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)
_STATUS_ORDER = {"online": 0, "offline": 1, "unknown": 2}


def matches_search(record: HostRecord, search: str) -> bool:
    """Case-insensitive match on ip, mac, hostname, vendor and open ports."""
    needle = search.strip().lower()
    if not needle:
        return True
    haystack = [record.ip, record.mac, record.hostname, record.vendor]
    if any(value and needle in value.lower() for value in haystack):
        return True
    for entry in record.open_ports:
        port = str(entry.get("port", "")) if isinstance(entry, dict) else str(entry)
        service = (entry.get("service") or "") if isinstance(entry, dict) else ""
        if needle == port or (service and needle in service.lower()):
            return True
    return False


def _sort_key(field: SortField) -> Callable[[HostRecord], Any]:
    if field == SortField.IP:
        return lambda r: ip_sort_key(r.ip)
    if field == SortField.FIRST_SEEN:
        return lambda r: r.first_seen or _EPOCH
    if field == SortField.STATUS:
        return lambda r: _STATUS_ORDER.get(str(getattr(r.status, "value", r.status)), 3)
    if field == SortField.PING_LATENCY:
        return lambda r: r.ping_latency_ms if r.ping_latency_ms is not None else -1
    return lambda r: r.last_seen or _EPOCH


def sort_hosts(records: List[HostRecord], field: SortField, order: SortOrder) -> List[HostRecord]:
    field = SortField(field)
    descending = SortOrder(order) == SortOrder.DESC
    if field in (SortField.HOSTNAME, SortField.MAC, SortField.VENDOR):
        attribute = field.value
        present = [r for r in records if getattr(r, attribute)]
        missing = [r for r in records if not getattr(r, attribute)]
        present.sort(key=lambda r: getattr(r, attribute).lower(), reverse=descending)
        # Empty values always go last, whatever the direction.
        missing.sort(key=lambda r: ip_sort_key(r.ip))
        return present + missing
    return sorted(records, key=_sort_key(field), reverse=descending)


def apply_host_query(
    records: Iterable[HostRecord],
    query: HostQuery,
    is_excluded: Optional[Callable[[str], bool]] = None,
) -> HostPage:
    """Filters before paginating so `total` counts what the caller can page through."""
    selected: List[HostRecord] = []
    for record in records:
        if is_excluded is not None and is_excluded(record.ip):
            continue
        if query.ip_prefix and not record.ip.startswith(query.ip_prefix):
            continue
        if query.status is not None and record.status != query.status:
            continue
        if query.search and not matches_search(record, query.search):
            continue
        selected.append(record)

    ordered = sort_hosts(selected, query.sort_by, query.sort_order)
    window: Tuple[int, int] = (query.offset, query.offset + query.limit)
    return HostPage(
        items=ordered[window[0]:window[1]],
        total=len(ordered),
        limit=query.limit,
        offset=query.offset,
    )
