"""Shared fixtures for journalstore tests."""
import sqlite3

import pytest
import pytest_asyncio

from journalstore import db
from journalstore.crypto import AtRestCodec, default_codec

TEST_PASSPHRASE = "unit-test-master-passphrase-0123456789"

LEGACY_SCHEMA = """
CREATE TABLE users (
    id TEXT PRIMARY KEY,
    username TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE diary_entries (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    date TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    UNIQUE(user_id, date)
);
CREATE TABLE tags (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    color TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    UNIQUE(user_id, name)
);
CREATE TABLE entry_tags (
    entry_id TEXT NOT NULL,
    tag_id TEXT NOT NULL,
    PRIMARY KEY (entry_id, tag_id),
    FOREIGN KEY (entry_id) REFERENCES diary_entries(id) ON DELETE CASCADE,
    FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
);
CREATE INDEX idx_entries_date ON diary_entries(date);

INSERT INTO users (id, username, password_hash, created_at)
VALUES ('u1', 'alice', 'hash', '2024-01-01T00:00:00');
INSERT INTO diary_entries (id, user_id, date, content, created_at, updated_at) VALUES
    ('e1', 'u1', '2024-01-01', 'first day', '2024-01-01T08:00:00', '2024-01-01T08:00:00'),
    ('e2', 'u1', '2024-01-02', 'second day', '2024-01-02T08:00:00', ''),
    ('e3', 'u1', '2024-01-03', 'third day', '', '2024-01-03T09:00:00');
INSERT INTO tags (id, user_id, name) VALUES ('t1', 'u1', 'work');
INSERT INTO entry_tags (entry_id, tag_id) VALUES ('e1', 't1'), ('e2', 't1');
"""


@pytest.fixture
def codec():
    return AtRestCodec(TEST_PASSPHRASE)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the data-access layer at a throwaway database file."""
    path = str(tmp_path / "journal.db")
    monkeypatch.setattr(db, "DB_PATH", path)
    return path


@pytest.fixture
def legacy_db_path(db_path):
    """A database created by an old release: UNIQUE(user_id, date), no mood."""
    conn = sqlite3.connect(db_path)
    conn.executescript(LEGACY_SCHEMA)
    conn.commit()
    conn.close()
    return db_path


@pytest_asyncio.fixture
async def store(db_path):
    """An open autocommit connection to an empty database."""
    conn = await db.open_store(db_path)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def legacy_store(legacy_db_path):
    conn = await db.open_store(legacy_db_path)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def initialized_db(db_path):
    await db.init_db(db_path)
    return db_path


@pytest.fixture(autouse=True)
def _restore_db_path(monkeypatch):
    """init_db(path) repoints the data-access layer; undo that after each test."""
    monkeypatch.setattr(db, "DB_PATH", db.DB_PATH)


@pytest.fixture(autouse=True)
def _reset_default_codec():
    default_codec.cache_clear()
    yield
    default_codec.cache_clear()


def query(path, sql, params=()):
    """Run a read query with the stdlib driver (independent of the code under test)."""
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


@pytest.fixture
def fetch(db_path):
    return lambda sql, params=(): query(db_path, sql, params)
