"""
SSRF Guard
==========
Keeps the scanner away from private and internal networks.

Three checkpoints:
  1. Submission: the target hostname must not resolve to a blocked range.
  2. Pre-navigation: every page host is re-resolved and re-checked, since
     an earlier DNS answer may have been rebound.
  3. Post-navigation: the IP the browser actually connected to is checked,
     and HTTP fetches follow redirects manually, validating every hop.

Failures at 2 and 3 raise ``SecurityValidationError``.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Callable, List, Optional
from urllib.parse import urljoin, urlsplit

import requests

from .errors import SecurityValidationError, ValidationError

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 5

BLOCKED_IPV4_RANGES = [
    ipaddress.ip_network("0.0.0.0/8"),       # "This" network
    ipaddress.ip_network("10.0.0.0/8"),      # Private Class A
    ipaddress.ip_network("100.64.0.0/10"),   # Carrier-grade NAT
    ipaddress.ip_network("127.0.0.0/8"),     # Loopback
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local / cloud metadata
    ipaddress.ip_network("172.16.0.0/12"),   # Private Class B
    ipaddress.ip_network("192.0.0.0/24"),    # IETF Protocol Assignments
    ipaddress.ip_network("192.0.2.0/24"),    # TEST-NET-1
    ipaddress.ip_network("192.88.99.0/24"),  # 6to4 relay anycast
    ipaddress.ip_network("192.168.0.0/16"),  # Private Class C
    ipaddress.ip_network("198.18.0.0/15"),   # Benchmarking
    ipaddress.ip_network("198.51.100.0/24"), # TEST-NET-2
    ipaddress.ip_network("203.0.113.0/24"),  # TEST-NET-3
    ipaddress.ip_network("224.0.0.0/4"),     # Multicast
    ipaddress.ip_network("240.0.0.0/4"),     # Reserved
]

BLOCKED_IPV6_RANGES = [
    ipaddress.ip_network("::/128"),          # Unspecified
    ipaddress.ip_network("::1/128"),         # Loopback
    ipaddress.ip_network("fe80::/10"),       # Link-local
    ipaddress.ip_network("fec0::/10"),       # Site-local (deprecated)
    ipaddress.ip_network("fc00::/7"),        # Unique local
    ipaddress.ip_network("ff00::/8"),        # Multicast
    ipaddress.ip_network("2001:db8::/32"),   # Documentation
]

_LOCALHOST_NAMES = frozenset(["localhost", "127.0.0.1", "::1", "[::1]"])


def is_private_or_reserved_ip(ip_text: str) -> bool:
    """
    True when ``ip_text`` falls in a blocked range.

    Empty or unparseable input counts as unsafe.  IPv4-mapped IPv6
    addresses are checked as the IPv4 address they carry.
    """
    if not ip_text:
        return True
    try:
        ip = ipaddress.ip_address(ip_text.strip().strip("[]"))
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    ranges = BLOCKED_IPV4_RANGES if ip.version == 4 else BLOCKED_IPV6_RANGES
    return any(ip in blocked for blocked in ranges)


def is_localhost(host: str) -> bool:
    host = host.lower()
    return host in _LOCALHOST_NAMES or host.endswith(".localhost")


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def resolve_host(host: str) -> List[str]:
    """Resolve a hostname to all of its addresses."""
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in infos]


class SSRFGuard:
    """Host and address validation for every network touch point of a scan."""

    def __init__(
        self,
        resolver: Callable[[str], List[str]] = resolve_host,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            resolver: hostname -> list of IP strings; raises ``OSError`` on failure
            session:  ``requests.Session`` used by ``fetch``
        """
        self._resolver = resolver
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # 1. Submission
    # ------------------------------------------------------------------

    def validate_submission_url(self, url: str) -> str:
        """Validate a URL submitted for scanning.

        Returns:
            The URL's hostname.

        Raises:
            ValidationError: malformed URL, bad scheme, localhost, or a host
                resolving into a blocked range.
        """
        if not url or not url.strip():
            raise ValidationError("URL is required.")
        try:
            parsed = urlsplit(url.strip())
            host = parsed.hostname
        except ValueError:
            raise ValidationError("Invalid URL format.")

        if parsed.scheme.lower() not in ("http", "https"):
            raise ValidationError("Only HTTP and HTTPS URLs are allowed.")
        if not host:
            raise ValidationError("Invalid URL format.")
        if is_localhost(host):
            raise ValidationError("Localhost URLs are not allowed.")

        self.validate_host(host)
        return host

    # ------------------------------------------------------------------
    # 2. Pre-navigation
    # ------------------------------------------------------------------

    def validate_host(self, host: str) -> None:
        """Resolve ``host`` and reject it if any address is blocked.

        Raises:
            SecurityValidationError: blocked address or resolution failure.
        """
        host = host.strip("[]")
        if _is_ip_literal(host):
            if is_private_or_reserved_ip(host):
                logger.warning(f"[SSRF] Blocked private address {host}")
                raise SecurityValidationError(
                    "Private or internal IP addresses are not allowed.", host
                )
            return

        try:
            addresses = self._resolver(host)
        except OSError as e:
            logger.warning(f"[SSRF] Could not resolve {host}: {e}")
            raise SecurityValidationError("Unable to resolve hostname.", host)

        if not addresses:
            raise SecurityValidationError("Unable to resolve hostname.", host)

        for address in addresses:
            if is_private_or_reserved_ip(address):
                logger.warning(f"[SSRF] {host} resolves to blocked address {address}")
                raise SecurityValidationError(
                    "URL resolves to a private or internal IP address.", host
                )

    async def validate_host_async(self, host: str) -> None:
        """``validate_host`` with DNS resolution moved off the event loop."""
        await asyncio.to_thread(self.validate_host, host)

    async def validate_url_host(self, url: str) -> None:
        try:
            host = urlsplit(url).hostname
        except ValueError:
            host = None
        if not host:
            raise SecurityValidationError("URL has no host.", "")
        await self.validate_host_async(host)

    # ------------------------------------------------------------------
    # 3. Post-navigation / redirects
    # ------------------------------------------------------------------

    def check_remote_address(self, ip_text: Optional[str], url: str = "") -> None:
        """Reject a page whose connected remote IP is private or reserved.

        A missing address (served from cache, or unknown) is not checked.
        """
        if not ip_text:
            return
        if is_private_or_reserved_ip(ip_text):
            logger.warning(f"[SSRF] {url} connected to blocked address {ip_text}")
            raise SecurityValidationError(
                f"Connected to private or internal address {ip_text}.", ip_text
            )

    def fetch(self, url: str, **kwargs) -> requests.Response:
        """GET ``url``, following redirects by hand and validating each hop.

        Keyword arguments are passed to ``requests.Session.get``.

        Raises:
            SecurityValidationError: a hop is not http(s), targets a blocked
                host, or more than ``MAX_REDIRECTS`` redirects were seen.
            requests.RequestException: transport failures.
        """
        kwargs["allow_redirects"] = False
        current = url

        for hop in range(MAX_REDIRECTS + 1):
            parsed = urlsplit(current)
            if parsed.scheme.lower() not in ("http", "https"):
                raise SecurityValidationError(
                    f"Redirect to non-HTTP scheme '{parsed.scheme}' rejected.",
                    parsed.hostname or "",
                )
            if not parsed.hostname:
                raise SecurityValidationError("Redirect target has no host.", "")
            self.validate_host(parsed.hostname)

            response = self._session.get(current, **kwargs)
            if not response.is_redirect:
                return response

            location = response.headers.get("Location", "")
            response.close()
            current = urljoin(current, location)
            logger.debug(f"[SSRF] Redirect {hop + 1} -> {current}")

        raise SecurityValidationError(
            f"Too many redirects (max {MAX_REDIRECTS}).", urlsplit(current).hostname or ""
        )
