# den/storage.py
import enum
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import aiosqlite

logger = logging.getLogger(__name__)

SIGNING_SECRET_BYTES = 64

SCHEMA = """
CREATE TABLE IF NOT EXISTS user (
    id      TEXT PRIMARY KEY,
    name    TEXT NOT NULL,
    created TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS passkey (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id   TEXT NOT NULL REFERENCES user(id),
    name      TEXT NOT NULL,
    data      TEXT NOT NULL,
    created   TEXT NOT NULL DEFAULT (datetime('now')),
    last_used TEXT
);

CREATE INDEX IF NOT EXISTS idx_passkey_user ON passkey(user_id);

CREATE TABLE IF NOT EXISTS signing_key (
    id      INTEGER PRIMARY KEY CHECK (id = 1),
    secret  BLOB NOT NULL,
    created TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS auth_challenge (
    id         TEXT PRIMARY KEY,
    state      TEXT NOT NULL,
    kind       TEXT NOT NULL CHECK (kind IN ('registration', 'authentication')),
    created    TEXT NOT NULL DEFAULT (datetime('now')),
    expires_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_auth_challenge_expires ON auth_challenge(expires_at);
"""


class DeleteOutcome(str, enum.Enum):
    DELETED = "deleted"
    LAST_REMAINING = "last_remaining"
    NOT_FOUND = "not_found"


@dataclass
class PasskeyRow:
    id: int
    user_id: str
    name: str
    data: str
    created: str
    last_used: Optional[str]

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created": self.created,
            "last_used": self.last_used,
        }


class Database:
    """
    SQLite access for the auth core.

    One short-lived connection per operation; the invariants the service relies
    on (single-use challenges, single user, single signing key, never deleting
    the last passkey) are each a single conditional statement so SQLite's
    locking decides the winner between concurrent requests.
    """

    def __init__(self, path: Union[str, Path], timeout: float = 5.0):
        self.path = Path(path)
        self.timeout = timeout

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(str(self.path), timeout=self.timeout, isolation_level=None) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction that takes the database write lock up front."""
        async with self.connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def initialize(self):
        """Create the data directory and schema."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with self.connection() as conn:
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.executescript(SCHEMA)
        logger.info("database ready at %s", self.path)

    async def ping(self) -> bool:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1")
            row = await cursor.fetchone()
            return row is not None

    # -------------------------------------------------------------------------
    # Signing key
    # -------------------------------------------------------------------------
    async def ensure_signing_secret(self) -> bytes:
        """
        Return the process signing secret, generating it the first time.

        The insert is conditional on row 1 not existing, so concurrent starters
        converge on whichever secret landed first.
        """
        candidate = secrets.token_bytes(SIGNING_SECRET_BYTES)
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "INSERT OR IGNORE INTO signing_key (id, secret) VALUES (1, ?)",
                (candidate,),
            )
            created = cursor.rowcount == 1
            cursor = await conn.execute("SELECT secret FROM signing_key WHERE id = 1")
            row = await cursor.fetchone()

        if created:
            logger.info("generated new signing key")
        else:
            logger.info("loaded existing signing key")
        return bytes(row["secret"])

    # -------------------------------------------------------------------------
    # User (singleton)
    # -------------------------------------------------------------------------
    async def get_user(self) -> Optional[Dict[str, Any]]:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT id, name FROM user LIMIT 1")
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def get_user_name(self, user_id: str) -> Optional[str]:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT name FROM user WHERE id = ?", (user_id,))
            row = await cursor.fetchone()
            return row["name"] if row else None

    async def create_user_if_absent(self, user_id: str, name: str) -> bool:
        """Insert the user only while the table is empty. True if this call created it."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO user (id, name) SELECT ?, ? WHERE NOT EXISTS (SELECT 1 FROM user)",
                (user_id, name),
            )
            return cursor.rowcount == 1

    # -------------------------------------------------------------------------
    # Passkeys
    # -------------------------------------------------------------------------
    async def list_passkeys(self, user_id: Optional[str] = None) -> List[PasskeyRow]:
        """Passkeys of one user, or of every user when user_id is None."""
        query = "SELECT id, user_id, name, data, created, last_used FROM passkey"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY id"

        async with self.connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [PasskeyRow(**dict(r)) for r in rows]

    async def add_passkey(self, user_id: str, name: str, data: str) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO passkey (user_id, name, data) VALUES (?, ?, ?)",
                (user_id, name, data),
            )
            return cursor.lastrowid

    async def touch_passkey(self, passkey_id: int, data: Optional[str] = None):
        """Record a successful use; replaces the verifier state when given."""
        async with self.transaction() as conn:
            if data is None:
                await conn.execute(
                    "UPDATE passkey SET last_used = datetime('now') WHERE id = ?",
                    (passkey_id,),
                )
            else:
                await conn.execute(
                    "UPDATE passkey SET data = ?, last_used = datetime('now') WHERE id = ?",
                    (data, passkey_id),
                )

    async def rename_passkey(self, passkey_id: int, user_id: str, name: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE passkey SET name = ? WHERE id = ? AND user_id = ?",
                (name, passkey_id, user_id),
            )
            return cursor.rowcount > 0

    async def delete_passkey(self, passkey_id: int, user_id: str) -> DeleteOutcome:
        """Delete an owned passkey unless it is the owner's last one."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM passkey WHERE id = ? AND user_id = ? "
                "AND (SELECT COUNT(*) FROM passkey WHERE user_id = ?) > 1",
                (passkey_id, user_id, user_id),
            )
            if cursor.rowcount > 0:
                return DeleteOutcome.DELETED

            cursor = await conn.execute(
                "SELECT EXISTS(SELECT 1 FROM passkey WHERE id = ? AND user_id = ?)",
                (passkey_id, user_id),
            )
            (exists,) = await cursor.fetchone()

        return DeleteOutcome.LAST_REMAINING if exists else DeleteOutcome.NOT_FOUND
