"""Tests for the SQLite session store."""
import json

import pytest

from journalstore.config import Settings
from journalstore.sessions import SQLiteSessionStore


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(initialized_db, clock):
    return SQLiteSessionStore(initialized_db, default_ttl=3600, clock=clock)


PAYLOAD = {"userId": "u1", "cookie": {"maxAge": 3600000}, "flash": ["hi"]}


class TestGetSet:

    @pytest.mark.asyncio
    async def test_set_then_get(self, sessions):
        await sessions.set("sid-1", PAYLOAD)
        assert await sessions.get("sid-1") == PAYLOAD

    @pytest.mark.asyncio
    async def test_missing_is_none(self, sessions):
        assert await sessions.get("nope") is None

    @pytest.mark.asyncio
    async def test_expiry_is_absolute_epoch_ms(self, sessions, clock, fetch):
        await sessions.set("sid-1", PAYLOAD, ttl=60)
        assert fetch("SELECT expire FROM sessions WHERE sid = 'sid-1'") == [(int(clock.now * 1000) + 60_000,)]

    @pytest.mark.asyncio
    async def test_payload_stored_as_json_text(self, sessions, fetch):
        await sessions.set("sid-1", PAYLOAD)
        (raw,), = fetch("SELECT sess FROM sessions WHERE sid = 'sid-1'")
        assert json.loads(raw) == PAYLOAD

    @pytest.mark.asyncio
    async def test_set_replaces(self, sessions, fetch):
        await sessions.set("sid-1", {"v": 1})
        await sessions.set("sid-1", {"v": 2})
        assert await sessions.get("sid-1") == {"v": 2}
        assert fetch("SELECT COUNT(*) FROM sessions") == [(1,)]


class TestExpiry:

    @pytest.mark.asyncio
    async def test_expired_session_is_hidden_but_not_deleted(self, sessions, clock, fetch):
        await sessions.set("sid-1", PAYLOAD, ttl=10)
        clock.advance(11)
        assert await sessions.get("sid-1") is None
        assert fetch("SELECT COUNT(*) FROM sessions") == [(1,)]

    @pytest.mark.asyncio
    async def test_boundary_is_inclusive(self, sessions, clock):
        await sessions.set("sid-1", PAYLOAD, ttl=10)
        clock.advance(10)
        assert await sessions.get("sid-1") == PAYLOAD

    @pytest.mark.asyncio
    async def test_touch_extends_life_without_rewriting_payload(self, sessions, clock, fetch):
        await sessions.set("sid-1", PAYLOAD, ttl=10)
        (before,), = fetch("SELECT sess FROM sessions WHERE sid = 'sid-1'")
        clock.advance(8)
        assert await sessions.touch("sid-1", ttl=10) is True
        clock.advance(8)
        assert await sessions.get("sid-1") == PAYLOAD
        (after,), = fetch("SELECT sess FROM sessions WHERE sid = 'sid-1'")
        assert after == before

    @pytest.mark.asyncio
    async def test_touch_unknown_session(self, sessions, fetch):
        assert await sessions.touch("ghost") is False
        assert fetch("SELECT COUNT(*) FROM sessions") == [(0,)]

    @pytest.mark.asyncio
    async def test_count_ignores_expired(self, sessions, clock):
        await sessions.set("short", {}, ttl=5)
        await sessions.set("long", {}, ttl=500)
        assert await sessions.count() == 2
        clock.advance(6)
        assert await sessions.count() == 1


class TestRemoval:

    @pytest.mark.asyncio
    async def test_destroy(self, sessions):
        await sessions.set("sid-1", PAYLOAD)
        await sessions.set("sid-2", PAYLOAD)
        await sessions.destroy("sid-1")
        assert await sessions.get("sid-1") is None
        assert await sessions.get("sid-2") == PAYLOAD

    @pytest.mark.asyncio
    async def test_destroy_missing_is_quiet(self, sessions):
        await sessions.destroy("never-existed")

    @pytest.mark.asyncio
    async def test_clear_removes_expired_rows_too(self, sessions, clock, fetch):
        await sessions.set("a", {}, ttl=1)
        await sessions.set("b", {})
        clock.advance(2)
        await sessions.clear()
        assert fetch("SELECT COUNT(*) FROM sessions") == [(0,)]
        assert await sessions.count() == 0


class TestFromSettings:

    def test_uses_configured_path_and_ttl(self, monkeypatch):
        monkeypatch.setenv("JOURNAL_DB", "/data/journal.db")
        monkeypatch.setenv("JOURNAL_SESSION_TTL", "120")
        store = SQLiteSessionStore.from_settings()
        assert (store.db_path, store.default_ttl) == ("/data/journal.db", 120)

    @pytest.mark.asyncio
    async def test_configured_ttl_governs_expiry(self, initialized_db, clock, fetch):
        store = SQLiteSessionStore.from_settings(
            Settings(db_path=initialized_db, session_ttl=30), clock=clock
        )
        await store.set("sid-1", PAYLOAD)
        assert fetch("SELECT expire FROM sessions WHERE sid = 'sid-1'") == [(int(clock.now * 1000) + 30_000,)]
        clock.advance(31)
        assert await store.get("sid-1") is None
