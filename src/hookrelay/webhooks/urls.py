"""Endpoint URL validation.

Rejects URLs that could turn the dispatcher into a server-side request
forgery vector: non-http(s) schemes, embedded credentials, and hosts that
are (or resolve to) private, loopback, link-local, reserved, multicast or
unspecified addresses. Allow-listed hosts skip the address check.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Awaitable, Callable, Iterable
from urllib.parse import urlsplit

from hookrelay.exceptions import InvalidURLError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})
MAX_URL_LENGTH = 2048

# Resolves (host, port) to a list of IP address strings
Resolver = Callable[[str, int], Awaitable[list[str]]]

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve a hostname with the event loop's getaddrinfo.

    Raises:
        InvalidURLError: If the host does not resolve.
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise InvalidURLError(f"host does not resolve: {host}") from e
    return sorted({str(info[4][0]) for info in infos})


def is_public_address(address: IPAddress) -> bool:
    """Whether an address is globally routable."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
        or not address.is_global
    )


def _parse_ip(host: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


class URLValidator:
    """Validates endpoint URLs before they are stored.

    Args:
        allow_private_networks: Skip the address check entirely.
        allowed_hosts: Hostnames exempt from the address check.
        resolver: Async hostname resolver (defaults to resolve_host).
    """

    def __init__(
        self,
        allow_private_networks: bool = False,
        allowed_hosts: Iterable[str] = (),
        resolver: Resolver | None = None,
    ) -> None:
        self._allow_private = allow_private_networks
        self._allowed_hosts = {h.lower().rstrip(".") for h in allowed_hosts}
        self._resolver = resolver or resolve_host

    async def validate(self, url: str) -> str:
        """Validate an endpoint URL.

        Args:
            url: Candidate URL.

        Returns:
            The URL, stripped of surrounding whitespace.

        Raises:
            InvalidURLError: If the URL is not acceptable.
        """
        url = url.strip()
        if len(url) > MAX_URL_LENGTH:
            raise InvalidURLError(f"URL must be {MAX_URL_LENGTH} characters or less")

        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as e:
            raise InvalidURLError(f"malformed URL: {e}") from e

        if parts.scheme.lower() not in ALLOWED_SCHEMES:
            raise InvalidURLError("URL must use http or https")
        if not parts.hostname:
            raise InvalidURLError("URL must include a host")
        if parts.username or parts.password:
            raise InvalidURLError("URL must not embed credentials")

        host = parts.hostname.lower().rstrip(".")
        if self._allow_private or host in self._allowed_hosts:
            return url

        if port is None:
            port = 443 if parts.scheme.lower() == "https" else 80

        literal = _parse_ip(host)
        addresses = [host] if literal is not None else await self._resolver(host, port)
        if not addresses:
            raise InvalidURLError(f"host does not resolve: {host}")

        for raw in addresses:
            address = _parse_ip(raw)
            if address is None or not is_public_address(address):
                logger.info("Rejected endpoint host %s (resolves to %s)", host, raw)
                raise InvalidURLError(
                    f"host {host} resolves to a non-public address ({raw}); "
                    "add it to allowed_hosts to permit it"
                )

        return url
