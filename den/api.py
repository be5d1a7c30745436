# den/api.py
#
# HTTP surface of the auth core, mounted under /api.
#
# Handlers are orchestration glue only:
#   - ceremony state  -> ceremony.py (CeremonyStore)
#   - passkey crypto  -> verifier.py (PasskeyVerifier)
#   - tokens          -> tokens.py
#   - origin rules    -> origin.py / handoff.py
#   - persistence     -> storage.py
#
# Status codes are the error channel: 400 bad input, 401 failed
# authentication, 404 unknown passkey, 409 lost the first-user race,
# 503 database unavailable.
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from .auth import (
    AppState,
    clear_session_cookie,
    current_user,
    get_state,
    optional_user,
    request_is_secure,
    set_session_cookie,
)
from .ceremony import AuthenticationContext, CeremonyKind, RegistrationContext
from .handoff import (
    InvalidRedirectOrigin,
    normalize_redirect_origin,
    normalize_redirect_path,
    normalize_redirect_target_origin,
    redirect_complete_url,
)
from .models import (
    AuthStatus,
    BeginResponse,
    CeremonyCompleteRequest,
    LoginBeginRequest,
    LoginCompleteResponse,
    PasskeyInfo,
    RedirectStartRequest,
    RegisterBeginRequest,
    RenameRequest,
)
from .origin import origin_scheme, resolve_request_origin
from .qr import make_login_qr_svg_bytes
from .storage import DeleteOutcome, PasskeyRow
from .tokens import TokenError, issue_handoff_token, issue_session_token, verify_handoff_token
from .verifier import CeremonyFailed

logger = logging.getLogger(__name__)

router = APIRouter()


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _load_credentials(rows: List[PasskeyRow]) -> List[Tuple[PasskeyRow, Dict[str, Any]]]:
    out = []
    for row in rows:
        try:
            out.append((row, json.loads(row.data)))
        except json.JSONDecodeError:
            logger.error("passkey %s has unreadable verifier state; skipping", row.id)
    return out


def _issue_session(response: Response, request: Request, state: AppState, user_id: str):
    token = issue_session_token(state.secret, user_id, state.settings.SESSION_TTL_SECONDS)
    set_session_cookie(
        response,
        token,
        secure=request_is_secure(request, state),
        max_age=state.settings.SESSION_TTL_SECONDS,
    )


def _handoff_url(state: AppState, user_id: str, target_origin: str, target_path: str) -> str:
    token = issue_handoff_token(
        state.secret,
        issuer=state.canonical_origin,
        audience=target_origin,
        user_id=user_id,
        path=target_path,
        ttl_seconds=state.settings.HANDOFF_TTL_SECONDS,
    )
    return redirect_complete_url(target_origin, token)


def _redirect_target(state: AppState, redirect_origin: str, redirect_path: Optional[str]) -> Tuple[str, str]:
    try:
        origin = normalize_redirect_target_origin(redirect_origin, state.canonical_origin, state.allowed_hosts)
    except InvalidRedirectOrigin as e:
        raise HTTPException(400, str(e))
    return origin, normalize_redirect_path(redirect_path)


# -----------------------------------------------------------------------------
# Registration
# -----------------------------------------------------------------------------
@router.post("/auth/register/begin", response_model=BeginResponse)
async def register_begin(
    body: RegisterBeginRequest,
    background: BackgroundTasks,
    state: AppState = Depends(get_state),
    user_id: Optional[str] = Depends(optional_user),
):
    background.add_task(state.ceremonies.sweep_expired)

    existing = await state.db.get_user()

    # once set up, only a signed-in user may add passkeys
    if existing is not None and user_id is None:
        logger.warning("register begin without session after setup")
        raise HTTPException(401, "authentication required")

    if existing is not None:
        target_id, user_name, is_new_user = existing["id"], existing["name"], False
        exclude = [blob for _, blob in _load_credentials(await state.db.list_passkeys(target_id))]
    else:
        user_name = (body.user_name or "").strip()
        if not user_name:
            raise HTTPException(400, "user_name required for first setup")
        target_id, is_new_user, exclude = str(uuid.uuid4()), True, []

    passkey_name = body.passkey_name.strip()
    if not passkey_name:
        raise HTTPException(400, "passkey_name required")

    options, verifier_state = state.verifier.begin_registration(target_id, user_name, exclude)
    challenge_id = await state.ceremonies.begin(
        RegistrationContext(
            verifier_state=verifier_state,
            user_id=target_id,
            user_name=user_name,
            passkey_name=passkey_name,
            is_new_user=is_new_user,
        )
    )
    return {"challenge_id": challenge_id, "options": options}


@router.post("/auth/register/complete")
async def register_complete(
    body: CeremonyCompleteRequest,
    request: Request,
    response: Response,
    state: AppState = Depends(get_state),
    user_id: Optional[str] = Depends(optional_user),
):
    context = await state.ceremonies.redeem(body.challenge_id, CeremonyKind.REGISTRATION)
    if context is None:
        raise HTTPException(400, "challenge not found")

    if not context.is_new_user and user_id != context.user_id:
        logger.warning("register complete without session after setup")
        raise HTTPException(401, "authentication required")

    try:
        credential = state.verifier.finish_registration(body.credential, context.verifier_state)
    except CeremonyFailed as e:
        logger.warning("registration verification failed: %s", e)
        raise HTTPException(400, "registration failed")

    if context.is_new_user:
        created = await state.db.create_user_if_absent(context.user_id, context.user_name)
        if not created:
            logger.warning("first-user registration lost the race; rejecting")
            raise HTTPException(409, "user already exists")
        logger.info("created user %s", context.user_id)

    await state.db.add_passkey(context.user_id, context.passkey_name, json.dumps(credential))

    if context.is_new_user:
        _issue_session(response, request, state, context.user_id)

    return {"success": True}


# -----------------------------------------------------------------------------
# Login
# -----------------------------------------------------------------------------
@router.post("/auth/login/begin", response_model=BeginResponse)
async def login_begin(
    body: LoginBeginRequest,
    background: BackgroundTasks,
    state: AppState = Depends(get_state),
):
    try:
        redirect_origin = normalize_redirect_origin(body.redirect_origin, state.canonical_origin, state.allowed_hosts)
    except InvalidRedirectOrigin as e:
        raise HTTPException(400, str(e))
    redirect_path = normalize_redirect_path(body.redirect_path) if redirect_origin else None

    background.add_task(state.ceremonies.sweep_expired)

    rows = await state.db.list_passkeys()
    if not rows:
        raise HTTPException(400, "no passkeys registered")

    credentials = _load_credentials(rows)
    if not credentials:
        raise HTTPException(500, "no usable passkeys")

    options, verifier_state = state.verifier.begin_authentication([blob for _, blob in credentials])
    challenge_id = await state.ceremonies.begin(
        AuthenticationContext(
            verifier_state=verifier_state,
            user_id=rows[0].user_id,
            redirect_origin=redirect_origin,
            redirect_path=redirect_path,
        )
    )
    return {"challenge_id": challenge_id, "options": options}


@router.post("/auth/login/complete", response_model=LoginCompleteResponse)
async def login_complete(
    body: CeremonyCompleteRequest,
    request: Request,
    response: Response,
    state: AppState = Depends(get_state),
):
    context = await state.ceremonies.redeem(body.challenge_id, CeremonyKind.AUTHENTICATION)
    if context is None:
        raise HTTPException(400, "challenge not found")

    try:
        result = state.verifier.finish_authentication(body.credential, context.verifier_state)
    except CeremonyFailed as e:
        logger.warning("authentication verification failed: %s", e)
        raise HTTPException(401, "authentication failed")

    # persist counter / backup state of the credential that was used
    try:
        for row, blob in _load_credentials(await state.db.list_passkeys(context.user_id)):
            changed = state.verifier.apply_authentication(blob, result)
            if changed is None:
                continue
            await state.db.touch_passkey(row.id, json.dumps(blob) if changed else None)
            break
    except aiosqlite.Error:
        logger.exception("failed to record passkey use")

    _issue_session(response, request, state, context.user_id)
    user_name = await state.db.get_user_name(context.user_id)

    redirect_url = None
    if context.redirect_origin:
        redirect_url = _handoff_url(
            state,
            context.user_id,
            context.redirect_origin,
            context.redirect_path or "/",
        )

    return {"success": True, "user_name": user_name, "redirect_url": redirect_url}


@router.post("/auth/logout")
async def logout(response: Response):
    clear_session_cookie(response)
    return {"success": True}


@router.get("/auth/status", response_model=AuthStatus)
async def auth_status(
    state: AppState = Depends(get_state),
    user_id: Optional[str] = Depends(optional_user),
):
    user = await state.db.get_user()
    authenticated = user is not None and user_id == user["id"]
    return {
        "setup_complete": user is not None,
        "authenticated": authenticated,
        "user_name": user["name"] if authenticated else None,
        "canonical_origin": state.canonical_origin,
    }


# -----------------------------------------------------------------------------
# Cross-origin handoff
# -----------------------------------------------------------------------------
@router.post("/auth/redirect/start")
async def redirect_start(
    body: RedirectStartRequest,
    state: AppState = Depends(get_state),
    user_id: str = Depends(current_user),
):
    target_origin, target_path = _redirect_target(state, body.redirect_origin, body.redirect_path)
    return {"redirect_url": _handoff_url(state, user_id, target_origin, target_path)}


@router.get("/auth/redirect/qr.svg")
async def redirect_qr(
    redirect_origin: str,
    redirect_path: Optional[str] = None,
    state: AppState = Depends(get_state),
    user_id: str = Depends(current_user),
):
    target_origin, target_path = _redirect_target(state, redirect_origin, redirect_path)
    svg_bytes = make_login_qr_svg_bytes(_handoff_url(state, user_id, target_origin, target_path))
    return Response(content=svg_bytes, media_type="image/svg+xml", headers={"Cache-Control": "no-store"})


@router.get("/auth/redirect/complete")
async def redirect_complete(
    request: Request,
    token: str = Query(...),
    state: AppState = Depends(get_state),
):
    origin = resolve_request_origin(request.headers, state.canonical_origin)
    if origin is None:
        raise HTTPException(400, "cannot determine request origin")

    try:
        claims = verify_handoff_token(
            state.secret,
            token,
            canonical_origin=state.canonical_origin,
            observed_origin=origin,
            allowed_hosts=state.allowed_hosts,
        )
    except TokenError as e:
        logger.warning("rejected handoff token on %s: %s", origin, e)
        raise HTTPException(401, "invalid handoff token")

    response = RedirectResponse(normalize_redirect_path(claims.path), status_code=status.HTTP_303_SEE_OTHER)
    session = issue_session_token(state.secret, claims.sub, state.settings.SESSION_TTL_SECONDS)
    set_session_cookie(
        response,
        session,
        secure=origin_scheme(origin) == "https",
        max_age=state.settings.SESSION_TTL_SECONDS,
    )
    return response


# -----------------------------------------------------------------------------
# Passkey management (owner-scoped)
# -----------------------------------------------------------------------------
@router.get("/auth/passkeys", response_model=List[PasskeyInfo])
async def list_passkeys(
    state: AppState = Depends(get_state),
    user_id: str = Depends(current_user),
):
    return [row.public_view() for row in await state.db.list_passkeys(user_id)]


@router.patch("/auth/passkeys/{passkey_id}/name", status_code=204)
async def rename_passkey(
    passkey_id: int,
    body: RenameRequest,
    state: AppState = Depends(get_state),
    user_id: str = Depends(current_user),
):
    name = body.name.strip()
    if not name:
        raise HTTPException(400, "name required")
    if not await state.db.rename_passkey(passkey_id, user_id, name):
        raise HTTPException(404, "passkey not found")
    return Response(status_code=204)


@router.delete("/auth/passkeys/{passkey_id}", status_code=204)
async def delete_passkey(
    passkey_id: int,
    state: AppState = Depends(get_state),
    user_id: str = Depends(current_user),
):
    outcome = await state.db.delete_passkey(passkey_id, user_id)
    if outcome is DeleteOutcome.LAST_REMAINING:
        raise HTTPException(400, "cannot delete the last passkey")
    if outcome is DeleteOutcome.NOT_FOUND:
        raise HTTPException(404, "passkey not found")
    return Response(status_code=204)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
@router.get("/health")
async def health(state: AppState = Depends(get_state)):
    try:
        await state.db.ping()
    except aiosqlite.Error as e:
        logger.warning("health check database ping failed: %s", e)
        raise HTTPException(503, "database unavailable")
    return {"status": "ok"}
