# den/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *token layer* shared by sessions and handoffs.
#
# Responsibilities:
#   - Create and verify compact, signed, stateless tokens
#   - Provide deterministic serialization of claims
#   - Enforce expiry and the handoff binding rules
#
# What this module is NOT:
#   - Not a cookie/transport layer (see auth.py)
#   - Not stateful: nothing here touches the database
#
# Security model:
#   - The process holds ONE random secret (signing_key row, see storage.py)
#   - Each token kind signs under its own key derived from that secret:
#         key(kind) = HMAC-SHA256(secret, "den/" + kind)
#     so a handoff token can never be replayed as a session token and the
#     other way round, even though both come from the same secret.
#
# Token wire format:
#
#     <kind>.<payload_b64url>.<signature_b64url>
#
# Where:
#   - kind is "session" or "handoff"
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = HMAC-SHA256(key(kind), "<kind>." + payload_bytes)
# -----------------------------------------------------------------------------

import base64
import json
import time
from dataclasses import dataclass
from typing import Iterable, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .origin import origin_host

SESSION_KIND = "session"
HANDOFF_KIND = "handoff"

SESSION_TTL_SECONDS = 7 * 24 * 3600
HANDOFF_TTL_SECONDS = 60


class TokenError(ValueError):
    """Token is malformed, forged, or carries claims we refuse."""


class TokenExpired(TokenError):
    pass


def _now_epoch() -> int:
    return int(time.time())


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (tokens travel in cookies and query strings)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Padding is restored automatically to allow lenient decoding.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


# -----------------------------------------------------------------------------
# Signing primitives
# -----------------------------------------------------------------------------
def _derive_key(secret: bytes, kind: str) -> bytes:
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(f"den/{kind}".encode("ascii"))
    return h.finalize()


def _mac(secret: bytes, kind: str, payload_bytes: bytes) -> hmac.HMAC:
    h = hmac.HMAC(_derive_key(secret, kind), hashes.SHA256())
    h.update(kind.encode("ascii") + b"." + payload_bytes)
    return h


def sign_token(secret: bytes, kind: str, claims: dict) -> str:
    """
    Sign a claims object into a compact token.

    JSON is serialized with sorted keys and no whitespace so the signed bytes
    are reproducible.
    """
    payload_bytes = json.dumps(
        claims,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")

    sig = _mac(secret, kind, payload_bytes).finalize()
    return f"{kind}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[str, bytes, bytes]:
    """
    Parse a token into (kind, payload bytes, signature).

    Format validation only; cryptographic verification happens in verify_token.
    """
    parts = str(token).strip().split(".")
    if len(parts) != 3 or not parts[0]:
        raise TokenError("bad token format")

    try:
        payload_bytes = b64url_decode(parts[1])
        sig = b64url_decode(parts[2])
    except (ValueError, UnicodeEncodeError) as e:
        raise TokenError("bad token encoding") from e
    return parts[0], payload_bytes, sig


def verify_token(secret: bytes, kind: str, token: str) -> dict:
    """
    Verify signature and expiry of a token of the given kind; return its claims.

    Semantic checks beyond `exp` (issuer, audience, ...) are the caller's job.
    """
    got_kind, payload_bytes, sig = decode_token(token)
    if got_kind != kind:
        raise TokenError("unexpected token kind")

    try:
        _mac(secret, kind, payload_bytes).verify(sig)
    except InvalidSignature as e:
        raise TokenError("invalid signature") from e

    try:
        claims = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TokenError("invalid payload") from e
    if not isinstance(claims, dict):
        raise TokenError("invalid payload")

    try:
        exp = int(claims["exp"])
    except (KeyError, TypeError, ValueError) as e:
        raise TokenError("missing or invalid exp") from e

    if _now_epoch() >= exp:
        raise TokenExpired("token expired")

    return claims


# -----------------------------------------------------------------------------
# Session tokens
# -----------------------------------------------------------------------------
def issue_session_token(secret: bytes, user_id: str, ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    now = _now_epoch()
    claims = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + int(ttl_seconds),
    }
    return sign_token(secret, SESSION_KIND, claims)


def verify_session_token(secret: bytes, token: str) -> str:
    """Return the user id a valid session token was issued for."""
    claims = verify_token(secret, SESSION_KIND, token)
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise TokenError("missing sub")
    return sub


# -----------------------------------------------------------------------------
# Handoff tokens (cross-origin login redirect)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class HandoffClaims:
    iss: str
    aud: str
    sub: str
    path: str
    iat: int
    exp: int


def issue_handoff_token(
    secret: bytes,
    issuer: str,
    audience: str,
    user_id: str,
    path: str,
    ttl_seconds: int = HANDOFF_TTL_SECONDS,
) -> str:
    now = _now_epoch()
    claims = {
        "iss": issuer,
        "aud": audience,
        "sub": str(user_id),
        "path": path,
        "iat": now,
        "exp": now + int(ttl_seconds),
    }
    return sign_token(secret, HANDOFF_KIND, claims)


def verify_handoff_token(
    secret: bytes,
    token: str,
    canonical_origin: str,
    observed_origin: str,
    allowed_hosts: Iterable[str],
) -> HandoffClaims:
    """
    Verify a handoff token redeemed on `observed_origin`.

    Every check is mandatory:
      1. signature valid and not expired
      2. iss == canonical origin
      3. aud == origin of the request redeeming it
      4. host of aud is allow-listed
    """
    raw = verify_token(secret, HANDOFF_KIND, token)

    try:
        claims = HandoffClaims(
            iss=str(raw["iss"]),
            aud=str(raw["aud"]),
            sub=str(raw["sub"]),
            path=str(raw["path"]),
            iat=int(raw["iat"]),
            exp=int(raw["exp"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise TokenError("missing handoff claims") from e

    if claims.iss.lower() != canonical_origin.lower():
        raise TokenError("issuer mismatch")

    if claims.aud.lower() != observed_origin.lower():
        raise TokenError("audience mismatch")

    aud_host = origin_host(claims.aud)
    if aud_host is None or aud_host not in set(allowed_hosts):
        raise TokenError("audience host not allowed")

    return claims
