from typing import AbstractSet
from urllib.parse import parse_qsl, urlencode

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import RedirectResponse

from .origin import origin_host, resolve_request_origin

CANONICAL_AUTH_PATHS = ("/login", "/setup")


def path_matches(path: str, route: str) -> bool:
    return path == route or path.startswith(route + "/")


def is_canonical_auth_path(path: str) -> bool:
    return any(path_matches(path, route) for route in CANONICAL_AUTH_PATHS)


def canonical_redirect_target(
    path: str,
    query: str,
    origin: str,
    canonical_origin: str,
    allowed_hosts: AbstractSet[str],
) -> str:
    """
    URL on the canonical origin for an auth page requested on `origin`.

    redirect_origin is never forwarded from the client; on /login it is
    re-derived from the requesting origin when that origin is allow-listed, so
    a handoff can bring the user back after signing in.
    """
    is_login = path_matches(path, "/login")

    params = []
    has_origin = has_path = False
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == "redirect_origin":
            continue
        if key == "redirect_path":
            if not is_login:
                continue
            has_path = True
        params.append((key, value))

    if is_login and origin_host(origin) in allowed_hosts:
        params.append(("redirect_origin", origin))
        has_origin = True
    if is_login and has_origin and not has_path:
        params.append(("redirect_path", "/"))

    target = f"{canonical_origin}{path}"
    if params:
        target += "?" + urlencode(params)
    return target


class CanonicalOriginMiddleware(BaseHTTPMiddleware):
    """
    WebAuthn ceremonies are bound to one origin, so the login and setup pages
    are only ever served from the canonical origin. Requests for them on any
    other host get a 307 to the same page there.
    """

    def __init__(self, app, canonical_origin: str, allowed_hosts: AbstractSet[str]):
        super().__init__(app)
        self.canonical_origin = canonical_origin
        self.allowed_hosts = allowed_hosts

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not is_canonical_auth_path(path):
            return await call_next(request)

        origin = resolve_request_origin(request.headers, self.canonical_origin)
        if origin is None or origin.lower() == self.canonical_origin.lower():
            return await call_next(request)

        target = canonical_redirect_target(
            path,
            request.url.query,
            origin,
            self.canonical_origin,
            self.allowed_hosts,
        )
        return RedirectResponse(target, status_code=307)
