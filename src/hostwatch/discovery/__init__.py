"""
Discovery module for hostwatch.

Range expansion, interface helpers, per-host probing (ping, MAC, hostname,
vendor) and the exclusion filters applied to probe results.
"""
from .filters import ExclusionFilterChain, build_default_filter_chain
from .prober import HostProber
from .ranges import RangeResolver
from .vendors import BaseVendorLookup, get_vendor_lookup

__all__ = [
    "BaseVendorLookup",
    "ExclusionFilterChain",
    "HostProber",
    "RangeResolver",
    "build_default_filter_chain",
    "get_vendor_lookup",
]  # type: list[str]
