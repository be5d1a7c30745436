"""
den/handoff.py

Cross-origin login handoff.

A user authenticates on the canonical origin (the only place passkeys work)
and is sent back to another, allow-listed origin with a 60 second handoff
token in the URL:

    {target_origin}/api/auth/redirect/complete?token=...

The target origin verifies the token (tokens.verify_handoff_token) and mints
its own session cookie, so the session cookie never travels cross-site.

Replay: handoff tokens carry no server-side single-use marker; their short
lifetime is the only replay bound.
"""

from typing import AbstractSet, Optional
from urllib.parse import urlencode

from .origin import normalize_origin, origin_host

REDIRECT_COMPLETE_PATH = "/api/auth/redirect/complete"


class InvalidRedirectOrigin(ValueError):
    pass


def normalize_redirect_path(path: Optional[str]) -> str:
    """
    Same-origin relative path to land on, or "/".

    Rejects protocol-relative paths ("//host") and backslashes, which some
    browsers treat as "/".
    """
    if path is None:
        return "/"
    path = path.strip()
    if path.startswith("/") and not path.startswith("//") and "\\" not in path:
        return path
    return "/"


def _allow_listed(origin: str, canonical_origin: str, allowed_hosts: AbstractSet[str]) -> str:
    normalized = normalize_origin(origin)
    if normalized is None:
        raise InvalidRedirectOrigin("invalid redirect origin")
    if normalized.lower() == canonical_origin.lower():
        return canonical_origin
    host = origin_host(normalized)
    if host is None or host not in allowed_hosts:
        raise InvalidRedirectOrigin("redirect origin not allowed")
    return normalized


def normalize_redirect_origin(
    origin: Optional[str],
    canonical_origin: str,
    allowed_hosts: AbstractSet[str],
) -> Optional[str]:
    """
    Handoff target requested at login begin.

    None when no handoff is needed (absent, or the canonical origin itself).
    """
    if origin is None:
        return None
    normalized = _allow_listed(origin, canonical_origin, allowed_hosts)
    if normalized == canonical_origin:
        return None
    return normalized


def normalize_redirect_target_origin(
    origin: str,
    canonical_origin: str,
    allowed_hosts: AbstractSet[str],
) -> str:
    """Handoff target for an explicit redirect start; the canonical origin is allowed."""
    return _allow_listed(origin, canonical_origin, allowed_hosts)


def redirect_complete_url(target_origin: str, token: str) -> str:
    return f"{target_origin}{REDIRECT_COMPLETE_PATH}?{urlencode({'token': token})}"
