"""
Sweeps over address ranges and known hosts, and the follow-up port scans.
"""
from .orchestrator import ScanOrchestrator, ScanTicket, merge_probe_result
from .port_scan import PortScanner, parse_nmap_output

__all__ = [
    "ScanOrchestrator",
    "ScanTicket",
    "merge_probe_result",
    "PortScanner",
    "parse_nmap_output",
]
