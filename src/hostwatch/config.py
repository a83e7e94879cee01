"""Configuration management for hostwatch."""

import json
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScanConfig(BaseModel):
    """Configuration for range resolution and sweeps."""

    default_range: str = Field(default="192.168.1.0/24", description="Range used when auto-detection is off or fails.")
    default_auto_detect: bool = Field(default=True, description="Derive the target range from local interfaces when no range is given.")
    worker_pool_size: int = Field(default=20, ge=1, le=128, description="Number of concurrent host probes during a sweep.")
    probe_deadline_seconds: float = Field(default=30.0, gt=0, le=300.0, description="Upper bound on one host probe, lookups included. A probe that overruns it is recorded offline.")
    max_addresses: int = Field(default=1000, ge=1, le=1000, description="Hard cap on the number of addresses a range may expand to.")
    private_ranges_only: bool = Field(default=True, description="Reject ranges outside 10/8, 172.16/12 and 192.168/16.")
    excluded_interface_prefixes: List[str] = Field(
        default_factory=lambda: ["lo", "docker", "veth", "br-"],
        description="Interfaces ignored by range auto-detection.",
    )


class ProbeConfig(BaseModel):
    """Configuration for the per-host prober."""

    ping_timeout_seconds: float = Field(default=2.0, ge=0.5, le=10.0, description="Timeout passed to the ping command.")
    ping_timeout_buffer_seconds: float = Field(default=0.5, ge=0.0, le=5.0, description="Extra time granted to the ping process before it is killed.")
    arp_timeout_seconds: float = Field(default=2.0, ge=0.5, le=10.0, description="Timeout for ARP/neighbour table lookups.")
    hostname_timeout_seconds: float = Field(default=2.0, ge=0.2, le=10.0, description="Timeout for each hostname lookup method.")
    lookup_timeout_seconds: float = Field(default=5.0, gt=0, le=60.0, description="Upper bound on each MAC, hostname or vendor lookup of an online host.")
    enable_mdns: bool = Field(default=True, description="Fall back to mDNS reverse lookups for hostnames.")
    mdns_timeout_seconds: float = Field(default=1.5, ge=0.2, le=10.0, description="How long to wait for an mDNS answer.")
    oui_file: Optional[Path] = Field(default=None, description="Optional Wireshark 'manuf' file used for vendor lookups.")
    vendor_api_enabled: bool = Field(default=False, description="Query a remote MAC vendor API when the local table has no match.")
    vendor_api_url: str = Field(default="https://api.macvendors.com", description="Base URL of the MAC vendor API.")
    vendor_api_timeout_seconds: float = Field(default=3.0, ge=0.5, le=30.0, description="Timeout for a vendor API request.")
    cb_failure_threshold: int = Field(default=5, ge=1, description="Vendor API failures before the circuit breaker opens.")
    cb_recovery_timeout_seconds: float = Field(default=60.0, gt=0, description="Seconds the vendor API circuit stays open.")


class PortScanConfig(BaseModel):
    """Configuration for the nmap based port scan."""

    nmap_path: str = Field(default="nmap", description="nmap executable name or path.")
    port_range: str = Field(default="1-10000", description="Ports passed to nmap -p.")
    host_timeout_seconds: float = Field(default=120.0, ge=5.0, le=1800.0, description="Maximum time spent scanning one host.")
    max_hosts: int = Field(default=200, ge=1, le=1000, description="Maximum number of online hosts scanned per run.")
    concurrency: int = Field(default=1, ge=1, le=8, description="Hosts scanned in parallel.")


class ScheduleSettings(BaseModel):
    """Configuration for scheduled jobs."""

    misfire_grace_seconds: int = Field(default=60, ge=1, le=3600, description="How late a scheduled job may still run.")
    refresh_on_startup: bool = Field(default=True, description="Run a quick refresh of known hosts when the engine starts.")


class StorageConfig(BaseModel):
    """Configuration for persistence backends."""

    backend: str = Field(default="sqlite", description="Inventory backend ('memory', 'sqlite').")
    database_path: Path = Field(default=Path("hostwatch.db"), description="SQLite database file.")
    settings_backend: str = Field(default="file", description="Settings backend ('memory', 'file').")
    settings_path: Path = Field(default=Path("hostwatch-settings.json"), description="JSON file holding runtime settings.")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format")
    file: Optional[Path] = Field(default=None, description="Log file path")


class Config(BaseSettings):
    """Main configuration for hostwatch. Loads from environment variables prefixed with HOSTWATCH_."""

    model_config = SettingsConfigDict(
        env_prefix='HOSTWATCH_',
        env_nested_delimiter='__', # e.g., HOSTWATCH_SCAN__WORKER_POOL_SIZE
        extra='ignore',
        env_file='.env',
        env_file_encoding='utf-8'
    )

    scan: ScanConfig = Field(default_factory=ScanConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    port_scan: PortScanConfig = Field(default_factory=PortScanConfig)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    instance_name: str = Field(default="hostwatch", description="Name attached to log records of this instance.")

    @classmethod
    def from_file(cls, file_path: Path) -> "Config":
        """Create configuration strictly from a JSON file.
        Environment variables are not layered on top.
        """
        with open(file_path) as f:
            config_data = json.load(f)
        return cls.model_validate(config_data)
