"""
den/origin.py

Origin / host canonicalization and the handoff allow-list.

Every trust decision in the service (which origin may receive a handoff, whether
a cookie is marked Secure, whether a request is on the canonical origin) goes
through these helpers, so they are deliberately strict:

- Only the first entry of a comma-separated forwarding header is used
  (multi-hop proxy chains append to the right).
- Origins must be exactly http/https, carry a host and no userinfo.
- Hosts coming from configuration may be bare (`example.com:8443`) or full
  origins, but never contain a path, query or fragment.
"""

import logging
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}


def _header_value_first(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


def request_host(headers: Mapping[str, str]) -> Optional[str]:
    """Host the client addressed: X-Forwarded-Host wins over Host."""
    return _header_value_first(headers, "x-forwarded-host") or _header_value_first(headers, "host")


def request_origin(headers: Mapping[str, str], fallback_scheme: str) -> Optional[str]:
    """Best-effort `scheme://host[:port]` for the request, or None without a host."""
    host = request_host(headers)
    if host is None:
        return None
    proto = _header_value_first(headers, "x-forwarded-proto") or fallback_scheme
    return f"{proto}://{host}"


def _ascii_host(hostname: str) -> Optional[str]:
    # IPv6 literals come back from urlsplit without brackets
    if ":" in hostname:
        return f"[{hostname.lower()}]"
    try:
        return hostname.encode("idna").decode("ascii").lower()
    except UnicodeError:
        return None


def _split_origin(origin: str):
    """
    Parse `origin` into (scheme, ascii_host, port|None) or None.

    The port is None when absent or equal to the scheme's default.
    """
    origin = (origin or "").strip()
    if not origin or any(c.isspace() for c in origin):
        return None

    try:
        p = urlsplit(origin)
        port = p.port
    except ValueError:
        return None

    scheme = p.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        return None

    if p.username is not None or p.password is not None:
        return None

    if not p.hostname:
        return None

    host = _ascii_host(p.hostname)
    if not host:
        return None

    if port == DEFAULT_PORTS[scheme]:
        port = None
    return scheme, host, port


def normalize_origin(origin: str) -> Optional[str]:
    """ASCII serialization `scheme://host[:port]` of an http(s) origin, else None."""
    parts = _split_origin(origin)
    if parts is None:
        return None
    scheme, host, port = parts
    if port is None:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def origin_host(origin: str) -> Optional[str]:
    """Lowercase `host[:port]` of an origin; the allow-list comparison key."""
    parts = _split_origin(origin)
    if parts is None:
        return None
    _, host, port = parts
    if port is None:
        return host
    return f"{host}:{port}"


def normalize_host(candidate: str) -> Optional[str]:
    """Accept a bare host or a full origin and return its allow-list key."""
    candidate = (candidate or "").strip()
    if not candidate:
        return None
    if "://" in candidate:
        return origin_host(candidate)
    if any(c in candidate for c in "/?#"):
        return None
    return origin_host(f"http://{candidate}")


def origin_scheme(origin: str) -> str:
    return "https" if (origin or "").lower().startswith("https://") else "http"


def request_fallback_scheme(headers: Mapping[str, str], canonical_origin: str) -> str:
    """
    Scheme to assume when no X-Forwarded-Proto is present.

    Requests for the canonical host inherit the canonical scheme so a proxy
    cannot silently downgrade it; any other host falls back to plain http.
    """
    canonical_fallback = origin_scheme(canonical_origin)

    canonical_host = origin_host(canonical_origin)
    if canonical_host is None:
        return canonical_fallback

    raw_host = request_host(headers)
    host = normalize_host(raw_host) if raw_host else None
    if host is None:
        return canonical_fallback

    if host.lower() == canonical_host.lower():
        return canonical_fallback
    return "http"


def resolve_request_origin(headers: Mapping[str, str], canonical_origin: str) -> Optional[str]:
    """request_origin() with the canonical-aware fallback scheme."""
    return request_origin(headers, request_fallback_scheme(headers, canonical_origin))


def load_allowed_hosts(canonical_origin: str, configured_hosts: Iterable[str]) -> frozenset:
    """Canonical host plus every valid configured host. Immutable after startup."""
    hosts = set()
    canonical_host = origin_host(canonical_origin)
    if canonical_host:
        hosts.add(canonical_host)

    for candidate in configured_hosts:
        normalized = normalize_host(candidate)
        if normalized:
            hosts.add(normalized)
        else:
            logger.warning("ignoring invalid allowed host %r", candidate)

    return frozenset(hosts)
