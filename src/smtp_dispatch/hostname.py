# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Best-effort resolution of this machine's externally visible hostname.

The resolved name is only used as the EHLO/HELO identity of the SMTP
client. Network and DNS problems degrade to a fallback value; only a
malformed answer from the IP lookup endpoint is reported as an error.

Resolution steps:
1. Fetch the external IPv4 address from a "what is my IP" HTTP endpoint.
2. Validate it as dotted-quad IPv4.
3. Query the PTR record of its ``in-addr.arpa`` name directly over DNS.
4. If that yields nothing, ask the platform's reverse lookup, which returns
   the IP text itself when no name is known.
5. If the HTTP call fails, use ``"localhost.localdomain"``. A response that
   is not IPv4 raises :class:`InvalidFormatError` and nothing is cached.

Example:
    Sharing one resolver between dispatchers::

        resolver = HostnameResolver()
        name = await resolver.resolve()   # performs the lookups
        name = await resolver.resolve()   # cached
"""

from __future__ import annotations

import asyncio
import socket

import aiohttp
import dns.asyncresolver
import dns.exception

from .exceptions import InvalidFormatError
from .logger import get_logger

DEFAULT_IP_LOOKUP_URL = "http://checkip.amazonaws.com"
FALLBACK_HOSTNAME = "localhost.localdomain"

logger = get_logger("hostname")


def parse_ipv4(text: str) -> tuple[int, int, int, int]:
    """Validate a dotted-quad IPv4 address.

    Args:
        text: Candidate address such as ``"203.0.113.7"``.

    Returns:
        The four octets as integers.

    Raises:
        InvalidFormatError: If there are not exactly four decimal octets in
            the range 0-255.
    """
    parts = text.split(".")
    if len(parts) != 4:
        raise InvalidFormatError(f"{text} does not match IPv4 format")

    octets = []
    for part in parts:
        if not (part.isascii() and part.isdigit()):
            raise InvalidFormatError(f"{text} does not match IPv4 format")
        value = int(part)
        if value > 255:
            raise InvalidFormatError(f"{text} does not match IPv4 format")
        octets.append(value)
    return octets[0], octets[1], octets[2], octets[3]


def reverse_dns_name(octets: tuple[int, int, int, int]) -> str:
    """Return the ``in-addr.arpa`` name used for the PTR query of an address."""
    a, b, c, d = octets
    return f"{d}.{c}.{b}.{a}.in-addr.arpa"


class HostnameResolver:
    """Lazily resolves and caches the local machine's external hostname.

    The cached value is assigned once, under an asyncio lock, so concurrent
    callers share a single resolution and later calls never repeat the
    network lookups.

    Attributes:
        ip_lookup_url: Endpoint returning the caller's public IPv4 as text.
        timeout: Timeout in seconds for the HTTP lookup.
    """

    def __init__(
        self,
        ip_lookup_url: str = DEFAULT_IP_LOOKUP_URL,
        timeout: float = 10.0,
        dns_resolver: dns.asyncresolver.Resolver | None = None,
    ):
        """Initialize the resolver.

        Args:
            ip_lookup_url: Endpoint returning the caller's public IPv4 address.
            timeout: Timeout in seconds for the HTTP lookup.
            dns_resolver: dnspython resolver for PTR queries. A resolver
                configured from the system settings is created on first use
                when omitted.
        """
        self.ip_lookup_url = ip_lookup_url
        self.timeout = timeout
        self._dns_resolver = dns_resolver
        self._hostname: str | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> str | None:
        """The resolved hostname, or ``None`` before the first resolution."""
        return self._hostname

    async def resolve(self) -> str:
        """Return the local hostname, resolving it on first call.

        Returns:
            A hostname, the external IP address text, or
            ``"localhost.localdomain"``. Never raises for network reasons.

        Raises:
            InvalidFormatError: If the lookup endpoint does not answer with
                an IPv4 address. The cache stays empty.
        """
        if self._hostname is not None:
            return self._hostname
        async with self._lock:
            if self._hostname is None:
                self._hostname = await self._resolve()
                logger.debug("Local hostname resolved to %s", self._hostname)
        return self._hostname

    async def _resolve(self) -> str:
        try:
            ip = await self.fetch_external_ip()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("External IP lookup failed: %s; using %s", exc, FALLBACK_HOSTNAME)
            return FALLBACK_HOSTNAME

        octets = parse_ipv4(ip)

        hostname = await self.lookup_ptr(reverse_dns_name(octets))
        if hostname:
            return hostname
        return await self.lookup_platform(ip)

    async def fetch_external_ip(self) -> str:
        """Fetch this machine's public IPv4 address as text.

        Raises:
            aiohttp.ClientError: If the request fails or returns an error status.
            asyncio.TimeoutError: If the request exceeds ``timeout``.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.ip_lookup_url) as response:
                response.raise_for_status()
                body = await response.text()
        lines = body.strip().splitlines()
        return lines[0].strip() if lines else ""

    async def lookup_ptr(self, name: str) -> str | None:
        """Query the PTR record for an ``in-addr.arpa`` name.

        Returns:
            The first PTR target without its trailing dot, or ``None`` when
            the query fails or yields no record.
        """
        try:
            if self._dns_resolver is None:
                self._dns_resolver = dns.asyncresolver.Resolver()
            answer = await self._dns_resolver.resolve(name, "PTR")
        except dns.exception.DNSException as exc:
            logger.debug("PTR lookup for %s failed: %s", name, exc)
            return None

        for record in answer:
            hostname = record.to_text()
            if len(hostname) > 1 and hostname.endswith("."):
                hostname = hostname[:-1]
            return hostname
        return None

    async def lookup_platform(self, ip: str) -> str:
        """Reverse-resolve ``ip`` with the platform resolver.

        Returns:
            The name found, or ``ip`` itself when none is known.
        """
        loop = asyncio.get_running_loop()
        try:
            hostname, _ = await loop.getnameinfo((ip, 0), socket.NI_NAMEREQD)
        except OSError as exc:
            logger.debug("Platform reverse lookup for %s failed: %s", ip, exc)
            return ip
        return hostname or ip


default_resolver = HostnameResolver()


async def resolve_local_hostname() -> str:
    """Resolve the local hostname through the shared :data:`default_resolver`."""
    return await default_resolver.resolve()
