"""hostwatch - LAN host discovery and inventory lifecycle engine.

Sweeps IPv4 ranges, probes liveness and identity (MAC, hostname, vendor, open
ports), keeps a per-host history, schedules recurring scans and purges old data
according to retention policies.
"""

__version__ = "0.1.0"

from .config import Config

__all__ = ["Config", "__version__"]
