# -*- coding: utf-8 -*-
"""SQLite-backed session store.

Implements the get/set/destroy/touch/clear/count contract that session
middleware expects, on the ``sessions(sid, sess, expire)`` table created by
:mod:`journalstore.schema`. ``expire`` is an absolute epoch timestamp in
milliseconds. Expired rows are filtered out on read and never swept; they
disappear only when overwritten, destroyed or cleared.

Payloads are stored as opaque JSON text; this module knows nothing about
field encryption.
"""
from __future__ import annotations

from typing import Any, Callable, Optional
import json
import logging
import time

import aiosqlite

from .config import DEFAULT_SESSION_TTL, Settings

logger = logging.getLogger("journalstore.sessions")

_GET = "SELECT sess FROM sessions WHERE sid = ? AND expire >= ?"
_SET = "INSERT OR REPLACE INTO sessions (sid, sess, expire) VALUES (?, ?, ?)"
_DESTROY = "DELETE FROM sessions WHERE sid = ?"
_CLEAR = "DELETE FROM sessions"
_COUNT = "SELECT COUNT(*) FROM sessions WHERE expire >= ?"
_TOUCH = "UPDATE sessions SET expire = ? WHERE sid = ?"


class SQLiteSessionStore:
    """Session persistence on top of the journal database.

    ``ttl`` arguments are in seconds; ``clock`` returns epoch seconds and is
    injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        default_ttl: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.default_ttl = default_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "SQLiteSessionStore":
        """Build a store on the configured database with the configured TTL."""
        settings = settings or Settings.from_env()
        return cls(settings.db_path, default_ttl=settings.session_ttl, **kwargs)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _expiry(self, ttl: Optional[float]) -> int:
        seconds = self.default_ttl if ttl is None else ttl
        return self._now_ms() + int(seconds * 1000)

    async def get(self, sid: str) -> Optional[Any]:
        """Return the stored payload, or None if missing or expired."""
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(_GET, (sid, self._now_ms()))
            row = await cur.fetchone()
            await cur.close()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, sid: str, payload: Any, ttl: Optional[float] = None) -> None:
        """Create or replace a session, expiring *ttl* seconds from now."""
        body = json.dumps(payload, separators=(",", ":"))
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(_SET, (sid, body, self._expiry(ttl)))
            await db.commit()

    async def destroy(self, sid: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(_DESTROY, (sid,))
            await db.commit()

    async def touch(self, sid: str, ttl: Optional[float] = None) -> bool:
        """Push back the expiry of *sid* without rewriting its payload.

        Returns False when no such session row exists.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(_TOUCH, (self._expiry(ttl), sid))
            await db.commit()
            return cur.rowcount > 0

    async def clear(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(_CLEAR)
            await db.commit()
        logger.info("Cleared all sessions")

    async def count(self) -> int:
        """Number of sessions that have not expired."""
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(_COUNT, (self._now_ms(),))
            row = await cur.fetchone()
            await cur.close()
        return int(row[0])
