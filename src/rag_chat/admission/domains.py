"""Domain allowlist matching and caller identification."""

from __future__ import annotations

from collections.abc import Mapping
from urllib.parse import urlsplit


def _host(value: str) -> str:
    parts = urlsplit(value)
    if not parts.scheme or not parts.netloc:
        return ""
    return parts.netloc.rsplit("@", 1)[-1].lower()


def is_domain_allowed(origin: str | None, allowed_domains: list[str] | None) -> bool:
    """Check a request origin against an agent's allowlist.

    An empty allowlist allows everything. With a non-empty allowlist a missing
    or unparseable origin is rejected. Entries may be full URLs or bare
    hostnames; a host matches exactly or as a subdomain.
    """

    if not allowed_domains:
        return True
    if not origin:
        return False
    origin_host = _host(origin)
    if not origin_host:
        return False

    for domain in allowed_domains:
        allowed_host = _host(domain) or domain.strip().lower()
        if not allowed_host:
            continue
        if origin_host == allowed_host or origin_host.endswith(f".{allowed_host}"):
            return True
    return False


def caller_key(headers: Mapping[str, str], peer: str | None = None) -> str:
    """Identify the caller for rate limiting, honouring proxy headers."""

    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer or "unknown"


def request_origin(headers: Mapping[str, str]) -> str | None:
    return headers.get("origin") or headers.get("referer") or None
