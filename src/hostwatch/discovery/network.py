"""Network interface discovery utilities for hostwatch."""

import ipaddress
import platform
import subprocess
from typing import Iterable, List, Optional, Set, Tuple

import netifaces
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_EXCLUDED_PREFIXES = ("lo", "docker", "veth", "br-")
# Docker allocates bridge networks from 172.17.0.0/16 up to 172.31.0.0/16.
DOCKER_ADDRESS_POOL = tuple(ipaddress.IPv4Network(f"172.{octet}.0.0/16") for octet in range(17, 32))

def get_windows_interfaces() -> List[str]:
    """Get network interfaces on Windows using netsh."""
    try:
        output = subprocess.check_output(
            ["netsh", "interface", "show", "interface"],
            universal_newlines=True
        )
        interfaces = []
        for line in output.split('\n')[3:]:  # Skip header rows
            parts = line.split()
            if len(parts) >= 4 and parts[0] == "Enabled":
                interfaces.append(" ".join(parts[3:]))
        return interfaces
    except (subprocess.SubprocessError, OSError) as e:
        logger.error("Failed to get Windows interfaces", error=str(e))
        return []

def get_linux_interfaces() -> List[str]:
    """Get network interfaces on Linux using the ip command."""
    try:
        output = subprocess.check_output(
            ["ip", "-o", "link", "show"],
            universal_newlines=True
        )
        interfaces = []
        for line in output.split('\n'):
            if ": " in line:
                interfaces.append(line.split(": ")[1].split("@")[0])
        return interfaces
    except (subprocess.SubprocessError, OSError) as e:
        logger.error("Failed to get Linux interfaces", error=str(e))
        return []

def get_network_interfaces(skip_loopback: bool = True) -> List[str]:
    """Get list of network interfaces in a platform-agnostic way.

    Args:
        skip_loopback: Whether to exclude loopback interfaces.

    Returns:
        List[str]: List of interface names.
    """
    try:
        interfaces = netifaces.interfaces()
    except Exception as e:
        logger.warning("netifaces discovery failed, trying platform-specific fallback", error=str(e))
        if platform.system() == "Windows":
            interfaces = get_windows_interfaces()
        else:
            interfaces = get_linux_interfaces()
    if skip_loopback:
        interfaces = [
            iface for iface in interfaces
            if not iface.lower().startswith(("lo", "loopback"))
        ]
    return interfaces

def get_interface_ipv4(interface: str) -> List[Tuple[str, Optional[str]]]:
    """Get the IPv4 (address, netmask) pairs bound to an interface."""
    try:
        addr_info = netifaces.ifaddresses(interface)
    except (ValueError, KeyError, OSError) as e:
        logger.error("Failed to get addresses for interface", interface=interface, error=str(e))
        return []
    return [
        (entry['addr'], entry.get('netmask'))
        for entry in addr_info.get(netifaces.AF_INET, [])
        if 'addr' in entry
    ]

def get_local_addresses() -> Set[str]:
    """All IPv4 addresses of this machine, loopback included."""
    addresses = {"127.0.0.1"}
    for iface in get_network_interfaces(skip_loopback=False):
        addresses.update(addr for addr, _ in get_interface_ipv4(iface))
    return addresses

def get_default_gateway() -> Optional[Tuple[str, str]]:
    """Returns (gateway_ip, interface) of the default IPv4 route, if any."""
    try:
        gateways = netifaces.gateways()
    except Exception as e:
        logger.debug("Could not read gateways", error=str(e))
        return None
    default = gateways.get('default', {}).get(netifaces.AF_INET)
    if not default:
        return None
    return default[0], default[1]

def is_docker_address(ip: str) -> bool:
    try:
        address = ipaddress.IPv4Address(ip)
    except ValueError:
        return False
    return any(address in network for network in DOCKER_ADDRESS_POOL)

def is_excluded_interface(name: str, prefixes: Iterable[str] = DEFAULT_EXCLUDED_PREFIXES) -> bool:
    return name.lower().startswith(tuple(prefixes))

def _address_priority(ip: str) -> Optional[int]:
    """Lower is better. None means the address is not a usable LAN address."""
    address = ipaddress.IPv4Address(ip)
    if address.is_loopback or address.is_link_local or is_docker_address(ip):
        return None
    if address in ipaddress.IPv4Network("192.168.0.0/16"):
        return 0
    if address in ipaddress.IPv4Network("10.0.0.0/8"):
        return 1
    if address in ipaddress.IPv4Network("172.16.0.0/12"):
        return 2
    return None

def _to_slash24(ip: str) -> str:
    return str(ipaddress.IPv4Network(f"{ip}/24", strict=False))

def detect_local_range(excluded_prefixes: Iterable[str] = DEFAULT_EXCLUDED_PREFIXES) -> Optional[str]:
    """Derive the /24 of the most likely LAN address of this machine.

    The interface carrying the default route wins when it holds a usable private
    address; otherwise 192.168/16 is preferred over 10/8 over 172.16/12.
    """
    prefixes = tuple(excluded_prefixes)
    candidates: List[Tuple[int, str, str]] = []
    for iface in get_network_interfaces(skip_loopback=True):
        if is_excluded_interface(iface, prefixes):
            continue
        for addr, _netmask in get_interface_ipv4(iface):
            try:
                priority = _address_priority(addr)
            except ValueError:
                continue
            if priority is not None:
                candidates.append((priority, iface, addr))

    if not candidates:
        logger.warning("No usable interface found for range auto-detection")
        return None

    gateway = get_default_gateway()
    if gateway:
        _gateway_ip, gateway_iface = gateway
        for _priority, iface, addr in candidates:
            if iface == gateway_iface:
                logger.debug("Using default route interface for auto-detection", interface=iface, address=addr)
                return _to_slash24(addr)

    _priority, iface, addr = min(candidates, key=lambda c: c[0])
    logger.debug("Auto-detected local range", interface=iface, address=addr)
    return _to_slash24(addr)
