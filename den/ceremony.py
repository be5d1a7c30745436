# den/ceremony.py
#
# In-progress WebAuthn ceremonies, persisted between the "begin" and
# "complete" round trips of the browser.
#
# A row is:
#   - keyed by an unguessable challenge id (carries no other authority)
#   - tagged with its kind (registration | authentication)
#   - single-use: redeem() deletes and returns it in one statement
#   - bounded by an absolute expires_at that redeem() re-checks, so the
#     periodic sweep is only housekeeping
import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import aiosqlite

from .storage import Database

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class CeremonyStateCorrupt(RuntimeError):
    """A stored ceremony row could not be decoded."""


@dataclass
class RegistrationContext:
    verifier_state: Dict[str, Any]
    user_id: str
    user_name: str
    passkey_name: str
    is_new_user: bool

    kind = CeremonyKind.REGISTRATION


@dataclass
class AuthenticationContext:
    verifier_state: Dict[str, Any]
    user_id: str
    redirect_origin: Optional[str] = None
    redirect_path: Optional[str] = None

    kind = CeremonyKind.AUTHENTICATION


CeremonyContext = Union[RegistrationContext, AuthenticationContext]

_CONTEXT_TYPES = {
    CeremonyKind.REGISTRATION: RegistrationContext,
    CeremonyKind.AUTHENTICATION: AuthenticationContext,
}


def _now_epoch() -> int:
    return int(time.time())


def encode_context(context: CeremonyContext) -> str:
    return json.dumps({"kind": context.kind.value, **asdict(context)}, separators=(",", ":"))


def decode_context(raw: str, expected_kind: CeremonyKind) -> CeremonyContext:
    """Inverse of encode_context; any mismatch is corruption, never a default."""
    try:
        obj = json.loads(raw)
        if obj.pop("kind") != expected_kind.value:
            raise ValueError("kind tag mismatch")
        return _CONTEXT_TYPES[expected_kind](**obj)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise CeremonyStateCorrupt(f"undecodable {expected_kind.value} ceremony state") from e


class CeremonyStore:
    def __init__(self, db: Database, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.db = db
        self.ttl_seconds = int(ttl_seconds)

    async def begin(self, context: CeremonyContext, ttl_seconds: Optional[int] = None) -> str:
        """Persist `context` and return the fresh challenge id that redeems it."""
        ttl = self.ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        challenge_id = secrets.token_urlsafe(32)
        expires_at = _now_epoch() + ttl

        async with self.db.transaction() as conn:
            await conn.execute(
                "INSERT INTO auth_challenge (id, state, kind, expires_at) VALUES (?, ?, ?, ?)",
                (challenge_id, encode_context(context), context.kind.value, expires_at),
            )
        return challenge_id

    async def redeem(self, challenge_id: str, expected_kind: CeremonyKind) -> Optional[CeremonyContext]:
        """
        Consume a live ceremony of the expected kind.

        Returns None when the id is unknown, already used, expired, or of the
        other kind; callers cannot tell these apart.
        """
        if not challenge_id:
            return None

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM auth_challenge WHERE id = ? AND kind = ? AND expires_at > ? RETURNING state",
                (challenge_id, expected_kind.value, _now_epoch()),
            )
            rows = await cursor.fetchall()

        if not rows:
            return None
        return decode_context(rows[0]["state"], expected_kind)

    async def sweep_expired(self) -> int:
        """Best-effort removal of expired rows. Never raises."""
        try:
            async with self.db.transaction() as conn:
                cursor = await conn.execute(
                    "DELETE FROM auth_challenge WHERE expires_at < ?",
                    (_now_epoch(),),
                )
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.debug("expired challenge sweep failed: %s", e)
            return 0
