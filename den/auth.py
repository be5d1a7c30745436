# den/auth.py
#
# Session transport: the session token travels only in an HttpOnly,
# SameSite=Strict cookie set by the origin that will receive it.
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response, status

from .ceremony import CeremonyStore
from .config import Settings
from .origin import origin_scheme, resolve_request_origin
from .storage import Database
from .tokens import TokenError, verify_session_token
from .verifier import PasskeyVerifier

logger = logging.getLogger(__name__)

SESSION_COOKIE = "den_session"


@dataclass(frozen=True)
class AppState:
    """Everything a request handler needs; built once at startup."""

    settings: Settings
    db: Database
    ceremonies: CeremonyStore
    verifier: PasskeyVerifier
    secret: bytes
    canonical_origin: str
    allowed_hosts: frozenset


def get_state(request: Request) -> AppState:
    return request.app.state.den


def request_is_secure(request: Request, state: AppState) -> bool:
    """Secure flag follows the scheme the client actually used (proxy-aware)."""
    origin = resolve_request_origin(request.headers, state.canonical_origin)
    if origin is None:
        return origin_scheme(state.canonical_origin) == "https"
    return origin_scheme(origin) == "https"


def set_session_cookie(response: Response, token: str, *, secure: bool, max_age: int):
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="strict",
    )


def clear_session_cookie(response: Response):
    response.delete_cookie(SESSION_COOKIE, path="/", httponly=True, samesite="strict")


def optional_user(request: Request, state: AppState = Depends(get_state)) -> Optional[str]:
    """User id of a valid session cookie, or None."""
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    try:
        return verify_session_token(state.secret, token)
    except TokenError as e:
        logger.warning("rejected session cookie on %s: %s", request.url.path, e)
        return None


def current_user(request: Request, user_id: Optional[str] = Depends(optional_user)) -> str:
    if user_id is None:
        logger.warning("unauthenticated request to %s", request.url.path)
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "authentication required")
    return user_id
