from __future__ import annotations

import contextlib
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import aiosqlite
from pydantic import BaseModel, ConfigDict, Field


"""
SQLite-backed persistence for users and direct messages.

Tables:
1. users     -> known identities, one row per username (PRIMARY KEY keeps
                concurrent first registrations from duplicating a user).
2. messages  -> every direct message ever sent, edited in place.
"""


log = logging.getLogger("dmrelay.store")

HISTORY_LIMIT = 50

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    username      TEXT PRIMARY KEY,
    registered_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS messages(
    id        TEXT PRIMARY KEY,
    sender    TEXT NOT NULL,
    recipient TEXT NOT NULL,
    body      TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    edited    INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_recipient ON messages(recipient, timestamp);
"""


class StoreError(Exception):
    """Raised when the database rejects or cannot serve a request."""


def utc_now_iso() -> str:
    """Fixed-width ISO-8601 UTC timestamp, so text order is time order."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class User(BaseModel):
    username: str
    registered_at: str = Field(alias="registeredAt")

    model_config = ConfigDict(populate_by_name=True)


class Message(BaseModel):
    id: str
    sender: str
    recipient: str
    body: str = Field(alias="message")
    timestamp: str
    edited: bool = False

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def _message_from_row(row: Any) -> Message:
    return Message(
        id=row["id"],
        sender=row["sender"],
        recipient=row["recipient"],
        body=row["body"],
        timestamp=row["timestamp"],
        edited=bool(row["edited"]),
    )


@contextlib.contextmanager
def _translate(op: str) -> Iterator[None]:
    try:
        yield
    except aiosqlite.Error as exc:
        raise StoreError(f"{op} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Connection owner
# ---------------------------------------------------------------------------

class Database:
    """Owns the single aiosqlite connection shared by the stores."""

    def __init__(self, path: str = "chat.db") -> None:
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with _translate("open"):
            self._conn = await aiosqlite.connect(self.path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
        log.info("Database ready at %s", self.path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("database is not open")
        return self._conn


class UserDirectory:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def find(self, username: str) -> Optional[User]:
        with _translate("find user"):
            cur = await self.db.conn.execute(
                "SELECT username, registered_at FROM users WHERE username=?", (username,)
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return User(username=row["username"], registered_at=row["registered_at"])

    async def create(self, username: str) -> User:
        """Create ``username`` if absent. Safe to call twice for the same name."""

        with _translate("create user"):
            cur = await self.db.conn.execute(
                "INSERT OR IGNORE INTO users(username, registered_at) VALUES(?,?)",
                (username, utc_now_iso()),
            )
            await self.db.conn.commit()
        if cur.rowcount:
            log.info("User %s saved to the database", username)
        user = await self.find(username)
        if user is None:
            raise StoreError(f"user {username} vanished after create")
        return user


class MessageStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def insert(self, sender: str, recipient: str, body: str) -> Message:
        msg = Message(
            id=uuid.uuid4().hex,
            sender=sender,
            recipient=recipient,
            body=body,
            timestamp=utc_now_iso(),
            edited=False,
        )
        with _translate("insert message"):
            await self.db.conn.execute(
                "INSERT INTO messages(id, sender, recipient, body, timestamp, edited) VALUES(?,?,?,?,?,0)",
                (msg.id, msg.sender, msg.recipient, msg.body, msg.timestamp),
            )
            await self.db.conn.commit()
        return msg

    async def find(self, message_id: str) -> Optional[Message]:
        with _translate("find message"):
            cur = await self.db.conn.execute("SELECT * FROM messages WHERE id=?", (message_id,))
            row = await cur.fetchone()
        return _message_from_row(row) if row is not None else None

    async def update(self, message_id: str, body: str) -> Optional[Message]:
        """Replace the body and flag the message edited. None if no such id."""

        with _translate("update message"):
            cur = await self.db.conn.execute(
                "UPDATE messages SET body=?, edited=1 WHERE id=?", (body, message_id)
            )
            await self.db.conn.commit()
        if not cur.rowcount:
            return None
        return await self.find(message_id)

    async def conversation(self, username: str, limit: int = HISTORY_LIMIT) -> list[Message]:
        """Newest-first messages ``username`` sent or received."""

        limit = max(0, min(limit, HISTORY_LIMIT))
        with _translate("conversation query"):
            cur = await self.db.conn.execute(
                """SELECT * FROM messages WHERE sender=? OR recipient=?
                   ORDER BY timestamp DESC, rowid DESC LIMIT ?""",
                (username, username, limit),
            )
            rows = await cur.fetchall()
        return [_message_from_row(r) for r in rows]


__all__ = [
    "HISTORY_LIMIT",
    "StoreError",
    "User",
    "Message",
    "Database",
    "UserDirectory",
    "MessageStore",
    "utc_now_iso",
]
