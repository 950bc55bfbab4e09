"""
Client address extraction

Finds the viewer's public IP behind reverse proxies so stream resolution can
be tied to the viewer's location rather than the server's.
"""
import ipaddress
import re
from collections.abc import Mapping


# Checked in order after X-Forwarded-For
_DIRECT_IP_HEADERS = (
    "cf-connecting-ip",
    "true-client-ip",
    "x-real-ip",
    "x-client-ip",
    "fly-client-ip",
    "fastly-client-ip",
    "x-forwarded",
    "forwarded",
)

# Every header get_client_ip consults, in lookup order
FORWARDING_HEADERS = ("x-forwarded-for",) + _DIRECT_IP_HEADERS

_BRACKETED_WITH_PORT_RE = re.compile(r"^\[(.*)\]:\d+$")
_MAPPED_V4_RE = re.compile(r"::ffff:(\d+\.\d+\.\d+\.\d+)", re.IGNORECASE)


def normalize_ip(raw: str | None) -> str:
    """Strip brackets, ports and IPv4-mapped prefixes from an address string."""
    if not raw:
        return ""
    raw = raw.strip()
    ip = raw
    if ip.startswith("[") and ip.endswith("]"):
        ip = ip[1:-1]
    bracketed = _BRACKETED_WITH_PORT_RE.match(raw)
    if bracketed:
        ip = bracketed.group(1)
    elif ip.count(":") == 1 and re.search(r":\d+$", ip):
        ip = ip.rsplit(":", 1)[0]
    mapped = _MAPPED_V4_RE.search(ip)
    if mapped:
        ip = mapped.group(1)
    return ip


def is_private_ip(ip: str) -> bool:
    """True for empty, loopback, private, link-local or unparsable addresses."""
    if not ip:
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return address.is_private or address.is_loopback or address.is_link_local


def _first_public(candidates: list[str]) -> str | None:
    normalized = [normalize_ip(raw) for raw in candidates]
    for ip in normalized:
        if ip and not is_private_ip(ip):
            return ip
    for ip in normalized:
        if ip:
            return ip
    return None


def get_client_ip(headers: Mapping[str, str], peer: str | None = None) -> str | None:
    """
    Determine the viewer's IP from request headers and the socket peer.

    Args:
        headers: Request headers (case-insensitive mapping or lowercase keys)
        peer: Socket peer address, used when no proxy header is present

    Returns:
        Best client address, or None if nothing usable is known
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        found = _first_public([part.strip() for part in forwarded_for.split(",") if part.strip()])
        if found:
            return found

    for header in _DIRECT_IP_HEADERS:
        value = headers.get(header)
        if value:
            ip = normalize_ip(value)
            if ip:
                return ip

    ip = normalize_ip(peer)
    return ip or None
