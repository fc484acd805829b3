"""Server address detection for the connection instructions."""

import ipaddress
import logging
import subprocess

import httpx


logger = logging.getLogger(__name__)

IP_ENDPOINTS = (
    "https://ifconfig.me/ip",
    "https://api.ipify.org",
    "https://ipinfo.io/ip",
)
LOOKUP_TIMEOUT = 3.0

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)


def _parse_ip(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError:
        return None


def is_rfc1918(address: str) -> bool:
    """True for addresses in the three RFC 1918 private IPv4 ranges."""
    parsed = ipaddress.ip_address(address)
    return parsed.version == 4 and any(parsed in network for network in PRIVATE_NETWORKS)


def local_ip() -> str | None:
    """First address reported by ``hostname -I``."""
    try:
        result = subprocess.run(
            ["hostname", "-I"], capture_output=True, text=True, timeout=LOOKUP_TIMEOUT
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"hostname -I failed: {e}")
        return None
    parts = result.stdout.split()
    return parts[0] if parts else None


def fetch_public_ip(client: httpx.Client, endpoints: tuple[str, ...] = IP_ENDPOINTS) -> str | None:
    """Ask each lookup service in turn until one returns a valid address.

    Args:
        client: HTTP client to use
        endpoints: Lookup URLs returning the caller's address as plain text

    Returns:
        Address string, or None if every endpoint failed
    """
    for url in endpoints:
        try:
            response = client.get(url, timeout=LOOKUP_TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(f"IP lookup via {url} failed: {e}")
            continue
        address = _parse_ip(response.text)
        if address is None:
            logger.debug(f"IP lookup via {url} returned garbage: {response.text[:40]!r}")
            continue
        return str(address)
    return None


def get_public_ip(client: httpx.Client | None = None) -> str:
    """Best guess at the address users should connect to.

    Falls back to the local address when no lookup service answers or the
    answer is an RFC 1918 address.

    Returns:
        Address string ("localhost" when nothing at all is known)
    """
    if client is None:
        with httpx.Client(follow_redirects=True) as owned:
            address = fetch_public_ip(owned)
    else:
        address = fetch_public_ip(client)

    if address is None or is_rfc1918(address):
        fallback = local_ip()
        if fallback:
            logger.debug(f"Using local address {fallback}")
            return fallback
    return address or "localhost"
