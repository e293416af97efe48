"""
Address safety checks – resolve a hostname and refuse non-public targets.

Always resolves through DNS (IP literals are refused outright) and never
caches results, so every hop is checked against fresh records.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable

from vastunwrap.common.exceptions import NetworkError, SecurityError
from vastunwrap.common.logger import get_logger
from vastunwrap.common.utils import dedupe

logger = get_logger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
HostResolver = Callable[[str], Awaitable[list[str]]]

FORBIDDEN_V4_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),      # loopback
    ipaddress.ip_network("169.254.0.0/16"),   # link-local, cloud metadata
    ipaddress.ip_network("100.64.0.0/10"),    # CGNAT
    ipaddress.ip_network("224.0.0.0/4"),      # multicast
    ipaddress.ip_network("240.0.0.0/4"),      # reserved
    ipaddress.ip_network("0.0.0.0/8"),        # "this" network
]

FORBIDDEN_V6_NETWORKS = [
    ipaddress.ip_network("::1/128"),          # loopback
    ipaddress.ip_network("::/128"),           # unspecified
    ipaddress.ip_network("fe80::/10"),        # link-local
    ipaddress.ip_network("fc00::/7"),         # unique-local
    ipaddress.ip_network("ff00::/8"),         # multicast
]


def is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return True


def is_forbidden_ip(ip: str | IPAddress) -> bool:
    """Return True if the address is private, loopback, link-local, multicast or reserved."""
    addr = ipaddress.ip_address(ip) if isinstance(ip, str) else ip
    if isinstance(addr, ipaddress.IPv6Address):
        # ::ffff:a.b.c.d is judged by the IPv4 address it embeds
        if addr.ipv4_mapped is not None:
            return is_forbidden_ip(addr.ipv4_mapped)
        return any(addr in net for net in FORBIDDEN_V6_NETWORKS)
    return any(addr in net for net in FORBIDDEN_V4_NETWORKS)


async def resolve_host(hostname: str) -> list[str]:
    """Resolve A and AAAA records via the event loop's getaddrinfo."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(
            hostname, None, family=socket.AF_UNSPEC, type=socket.SOCK_STREAM
        )
    except socket.gaierror as e:
        raise NetworkError(f"DNS resolution failed for {hostname}: {e}", {"host": hostname}) from e
    # IPv6 sockaddrs may carry a zone suffix (fe80::1%eth0)
    return dedupe([sockaddr[0].split("%", 1)[0] for *_, sockaddr in infos])


class AddressSafetyChecker:
    """
    Resolve a hostname and verify every resolved address is public.

    Usage::

        checker = AddressSafetyChecker()
        ips = await checker.check("ads.example.com")
    """

    def __init__(self, resolver: HostResolver | None = None):
        self._resolve = resolver or resolve_host

    async def check(self, hostname: str) -> set[str]:
        """
        Return the public IPs a hostname resolves to.

        Raises:
            SecurityError: IP-literal host, or any resolved address forbidden.
            NetworkError: Resolution failed or yielded no addresses.
        """
        if not hostname:
            raise SecurityError("Empty hostname")
        if is_ip_literal(hostname):
            raise SecurityError("IP literals are not allowed as hosts", {"host": hostname})

        addresses = await self._resolve(hostname)
        if not addresses:
            raise NetworkError(f"Host {hostname} did not resolve to any IPs", {"host": hostname})

        for ip in addresses:
            try:
                forbidden = is_forbidden_ip(ip)
            except ValueError as e:
                raise NetworkError(f"Resolver returned an invalid address {ip!r}", {"host": hostname}) from e
            if forbidden:
                logger.warning("Blocked non-public address", host=hostname, ip=ip)
                raise SecurityError(
                    f"Resolved IP {ip} is private/link-local/loopback/reserved",
                    {"host": hostname, "ip": ip},
                )

        return set(addresses)
