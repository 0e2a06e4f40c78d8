"""Lookups of local addresses and networks.

These functions query the host networking state on every call.
"""

import asyncio
import ipaddress
import socket

import psutil
import structlog

from pgarchiver.exceptions import NetworkResolutionError

logger = structlog.get_logger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _parse_address(address: str) -> IPAddress | None:
    # link-local IPv6 addresses come with a "%iface" zone suffix
    try:
        return ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return None


def _local_interface_addresses() -> list[tuple[str, IPAddress, str | None]]:
    """List (interface, address, netmask) for every IP bound locally."""
    entries: list[tuple[str, IPAddress, str | None]] = []

    for interface, addresses in psutil.net_if_addrs().items():
        for snic in addresses:
            if snic.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            address = _parse_address(snic.address)
            if address is not None:
                entries.append((interface, address, snic.netmask))

    return entries


async def _resolve(hostname: str) -> list[IPAddress]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as e:
        raise NetworkResolutionError(
            hostname, f'Failed to resolve hostname "{hostname}": {e}'
        ) from e

    resolved: list[IPAddress] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = _parse_address(str(sockaddr[0]))
        if address is not None and address not in resolved:
            resolved.append(address)
    return resolved


async def find_hostname_local_address(hostname: str) -> str:
    """Find the local IP address this machine is reachable at as hostname.

    Args:
        hostname: Name (or IP literal) other nodes use to reach this node

    Returns:
        The first address the hostname resolves to that is bound to a
        local interface

    Raises:
        NetworkResolutionError: The hostname does not resolve to any
            local address
    """
    resolved = await _resolve(hostname)
    logger.debug("Resolved hostname", hostname=hostname, addresses=[str(a) for a in resolved])

    local = {address for _interface, address, _netmask in _local_interface_addresses()}

    for address in resolved:
        if address in local:
            return str(address)

    raise NetworkResolutionError(
        hostname,
        f'Failed to find a local IP address for hostname "{hostname}", '
        f"it resolves to {', '.join(str(a) for a in resolved) or 'nothing'}",
    )


def _prefix_length(netmask: str) -> int | None:
    mask = _parse_address(netmask)
    if mask is None:
        return None
    return bin(int(mask)).count("1")


def fetch_local_cidr(address: str) -> str:
    """Find the local network an address belongs to.

    Args:
        address: IP address bound to a local interface

    Returns:
        The enclosing network in CIDR notation, e.g. "192.168.1.0/24"

    Raises:
        NetworkResolutionError: The address is not bound locally or its
            interface has no netmask
    """
    target = _parse_address(address)
    if target is None:
        raise NetworkResolutionError(address, f'"{address}" is not an IP address')

    for interface, local_address, netmask in _local_interface_addresses():
        if local_address != target or not netmask:
            continue

        prefix = _prefix_length(netmask)
        if prefix is None:
            continue

        network = ipaddress.ip_interface(f"{target}/{prefix}").network
        logger.debug("Found local network", address=address, interface=interface, cidr=str(network))
        return str(network)

    raise NetworkResolutionError(
        address, f'Failed to find the local network of IP address "{address}"'
    )
