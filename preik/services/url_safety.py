"""SSRF protection: reject URLs pointing at private or internal networks.

Hosts are canonicalised the way a browser URL parser does before matching, so
decimal, hex, octal and shorthand IPv4 spellings (`2130706433`, `0x7f000001`,
`0177.0.0.1`, `127.1`) are caught as their dotted form. No DNS resolution
happens here; the scraper service performs the actual fetch, so DNS
rebinding has to be handled on its side.
"""
from __future__ import annotations

import ipaddress
import re
import socket
from urllib.parse import urlsplit

PRIVATE_IP_PATTERNS = [
    re.compile(r"^127\."),  # loopback
    re.compile(r"^10\."),  # class A private
    re.compile(r"^172\.(1[6-9]|2\d|3[01])\."),  # class B private
    re.compile(r"^192\.168\."),  # class C private
    re.compile(r"^169\.254\."),  # link-local
    re.compile(r"^0\."),  # current network
    re.compile(r"^::1$"),  # IPv6 loopback
    re.compile(r"^fc00:", re.IGNORECASE),  # IPv6 unique local
    re.compile(r"^fe80:", re.IGNORECASE),  # IPv6 link-local
]

_NUMERIC_HOST_RE = re.compile(r"^[0-9a-fx.]+$", re.IGNORECASE)


def canonical_host(hostname: str) -> str:
    """Dotted-quad for numeric IPv4 spellings, compressed form for IPv6.

    IPv4-mapped IPv6 addresses collapse to their IPv4 part. Anything else is
    returned lowercased and unchanged.
    """
    host = re.sub(r"^\[|\]$", "", hostname or "").lower()
    if ":" in host:
        try:
            addr = ipaddress.IPv6Address(host)
        except ValueError:
            return host
        return str(addr.ipv4_mapped) if addr.ipv4_mapped else addr.compressed
    candidate = host.rstrip(".")
    if candidate and _NUMERIC_HOST_RE.match(candidate) and any(c.isdigit() for c in candidate):
        try:
            return str(ipaddress.IPv4Address(socket.inet_aton(candidate)))
        except OSError:
            return host
    return host


def is_private_host(hostname: str) -> bool:
    clean = canonical_host(hostname)
    if clean.rstrip(".") == "localhost":
        return True
    return any(p.search(clean) for p in PRIVATE_IP_PATTERNS)


def is_safe_url(url: str) -> bool:
    """HTTPS only, and the host must not look private."""
    try:
        parts = urlsplit((url or "").strip())
        host = parts.hostname
    except ValueError:
        return False
    if parts.scheme != "https" or not host:
        return False
    return not is_private_host(host)
