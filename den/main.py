# den/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" wiring:
#   - It builds the immutable AppState once at startup and hands it to every
#     handler through FastAPI dependencies (no module-level globals).
#   - It MUST NOT implement crypto or origin rules itself.
#
# Key modules / responsibilities:
#   - config.py      : settings (env / .env / config.toml)
#   - origin.py      : request origin resolution + allow-list
#   - ceremony.py    : single-use, TTL-bound ceremony state
#   - verifier.py    : WebAuthn ceremony engine behind an interface
#   - tokens.py      : session + handoff token codec
#   - handoff.py     : cross-origin redirect rules
#   - middleware.py  : canonical-origin funnel for /login and /setup
#   - storage.py     : SQLite persistence, signing key, single-user guard
#   - api.py         : HTTP endpoints under /api
#
# Deployment: all cross-request coordination lives in SQLite statements, so
# running several Uvicorn workers against one database file is safe.
# -----------------------------------------------------------------------------
import argparse
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api import router as api_router
from .auth import AppState
from .ceremony import CeremonyStateCorrupt, CeremonyStore
from .config import DEFAULT_LOG_LEVEL, Settings, ensure_config_file
from .frontend import mount_frontend
from .middleware import CanonicalOriginMiddleware
from .origin import load_allowed_hosts, normalize_origin
from .storage import Database
from .verifier import PasskeyVerifier, WebAuthnVerifier

logger = logging.getLogger(__name__)

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def configure_logging(level: str):
    level = (level or "").strip().lower()
    if level not in LOG_LEVELS:
        print(
            f"invalid log_level {level!r} in config, falling back to {DEFAULT_LOG_LEVEL!r}",
            file=sys.stderr,
        )
        level = DEFAULT_LOG_LEVEL
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def build_state(
    settings: Settings,
    canonical_origin: str,
    allowed_hosts: frozenset,
    verifier: PasskeyVerifier,
) -> AppState:
    db = Database(settings.database_path)
    await db.initialize()
    secret = await db.ensure_signing_secret()
    return AppState(
        settings=settings,
        db=db,
        ceremonies=CeremonyStore(db, ttl_seconds=settings.CHALLENGE_TTL_SECONDS),
        verifier=verifier,
        secret=secret,
        canonical_origin=canonical_origin,
        allowed_hosts=allowed_hosts,
    )


def create_app(settings: Optional[Settings] = None, verifier: Optional[PasskeyVerifier] = None) -> FastAPI:
    settings = settings or Settings()

    canonical_origin = normalize_origin(settings.ORIGIN)
    if canonical_origin is None:
        raise ValueError(f"invalid ORIGIN {settings.ORIGIN!r}")
    allowed_hosts = load_allowed_hosts(canonical_origin, settings.ALLOWED_HOSTS)

    verifier = verifier or WebAuthnVerifier(
        rp_id=settings.RP_ID,
        rp_name=settings.RP_NAME,
        origin=canonical_origin,
        timeout_ms=settings.CHALLENGE_TTL_SECONDS * 1000,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.den = await build_state(settings, canonical_origin, allowed_hosts, verifier)
        logger.info(
            "canonical origin %s, allowed hosts: %s",
            canonical_origin,
            ", ".join(sorted(allowed_hosts)),
        )
        yield

    app = FastAPI(
        title="den",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CanonicalOriginMiddleware,
        canonical_origin=canonical_origin,
        allowed_hosts=allowed_hosts,
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "invalid request"})

    @app.exception_handler(CeremonyStateCorrupt)
    async def corrupt_ceremony(request: Request, exc: CeremonyStateCorrupt):
        logger.error("%s on %s", exc, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "internal error"})

    @app.exception_handler(aiosqlite.Error)
    async def database_error(request: Request, exc: aiosqlite.Error):
        logger.error("database error on %s: %s", request.url.path, exc)
        if isinstance(exc, aiosqlite.OperationalError):
            return JSONResponse(status_code=503, content={"detail": "service unavailable"})
        return JSONResponse(status_code=500, content={"detail": "internal error"})

    app.include_router(api_router, prefix="/api")

    if settings.STATIC_DIR is not None:
        mount_frontend(app, settings.STATIC_DIR)

    return app


def run(argv=None):
    parser = argparse.ArgumentParser(description="den passkey login service")
    parser.add_argument("--host", help="bind address (overrides config)")
    parser.add_argument("--port", type=int, help="listen port (overrides config)")
    args = parser.parse_args(argv)

    config_path = ensure_config_file()
    settings = Settings()
    configure_logging(settings.LOG_LEVEL)
    logger.info("using config file %s", config_path)

    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.HOST,
        port=args.port or settings.PORT,
        log_level=settings.LOG_LEVEL if settings.LOG_LEVEL in LOG_LEVELS else DEFAULT_LOG_LEVEL,
        proxy_headers=False,
    )


if __name__ == "__main__":
    run()
