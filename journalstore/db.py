# -*- coding: utf-8 -*-
"""SQLite bootstrap and async data access for the journal store."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple
import logging
import os
import sqlite3

import aiosqlite

from .config import Settings
from .errors import StoreOpenError
from .schema import MigrationReport, apply_migrations

logger = logging.getLogger("journalstore.db")

DB_PATH = Settings.from_env().db_path

EntryRow = Tuple[str, str, str, str, Optional[str], str, str]


# ---------------------------------------------------------------------
# Connection / initialization
# ---------------------------------------------------------------------

async def open_store(path: Optional[str] = None) -> aiosqlite.Connection:
    """Open the primary database in autocommit mode.

    A directory that cannot be created is only a warning; a database that
    cannot be opened raises StoreOpenError.
    """
    path = path or DB_PATH
    if path != ":memory:":
        directory = Path(path).expanduser().resolve().parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Could not create directory %s: %s; attempting to continue", directory, exc)
        if directory.exists() and not os.access(directory, os.W_OK):
            raise StoreOpenError(f"Database directory is not writable: {directory}")
    try:
        db = await aiosqlite.connect(path, isolation_level=None)
    except (sqlite3.Error, OSError) as exc:
        raise StoreOpenError(f"Could not open database {path}: {exc}") from exc
    try:
        await db.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as exc:
        await db.close()
        raise StoreOpenError(f"Could not open database {path}: {exc}") from exc
    logger.debug("Database connection established: %s", path)
    return db


async def init_db(path: Optional[str] = None) -> MigrationReport:
    """Create tables if they don't exist and run startup migrations.

    When *path* is given, later queries in this module use it as well.
    """
    global DB_PATH
    db = await open_store(path)
    if path:
        DB_PATH = path
    try:
        report = await apply_migrations(db)
    finally:
        await db.close()
    logger.info("Database initialized successfully")
    return report


# ---------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------

async def insert_user(user_id: str, username: str, password_hash: str, created_at: str) -> None:
    """Insert a user row. *password_hash* is stored as given."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            "INSERT INTO users (id, username, password_hash, created_at) VALUES (?, ?, ?, ?)",
            (user_id, username, password_hash, created_at),
        )
        await db.commit()


async def get_user_by_username(username: str):
    """Fetch a user row by *username*; returns Row or None."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        cur = await db.execute("SELECT * FROM users WHERE username = ?", (username,))
        row = await cur.fetchone()
        await cur.close()
        return row


# ---------------------------------------------------------------------
# Diary entries
# ---------------------------------------------------------------------

_INSERT_ENTRY = """
INSERT INTO diary_entries (id, user_id, date, content, mood, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""


async def insert_entry_row(
    entry_id: str,
    user_id: str,
    date: str,
    content: str,
    mood: Optional[str],
    created_at: str,
    updated_at: str,
) -> None:
    """Insert one entry; *content* must already be encrypted."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON;")
        await db.execute(
            _INSERT_ENTRY, (entry_id, user_id, date, content, mood, created_at, updated_at)
        )
        await db.commit()


async def insert_entry_rows(rows: Sequence[EntryRow]) -> int:
    """Insert many entries in a single transaction; all or nothing."""
    if not rows:
        return 0
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON;")
        try:
            await db.executemany(_INSERT_ENTRY, list(rows))
            await db.commit()
        except sqlite3.Error:
            await db.rollback()
            raise
    return len(rows)


async def update_entry_row(
    entry_id: str,
    user_id: str,
    content: str,
    mood: Optional[str],
    updated_at: str,
) -> bool:
    """Overwrite content/mood of an entry; return False if it does not exist."""
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute(
            """
            UPDATE diary_entries
               SET content = ?, mood = ?, updated_at = ?
             WHERE id = ? AND user_id = ?
            """,
            (content, mood, updated_at, entry_id, user_id),
        )
        await db.commit()
        return cur.rowcount > 0


async def get_entry_row(user_id: str, entry_id: str):
    """Return a single entry row (or None) for this user."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        cur = await db.execute(
            "SELECT * FROM diary_entries WHERE id = ? AND user_id = ?",
            (entry_id, user_id),
        )
        row = await cur.fetchone()
        await cur.close()
        return row


async def list_entry_rows(user_id: str, date: Optional[str] = None):
    """Return a user's entries, newest date first; optionally for one *date*."""
    sql = "SELECT * FROM diary_entries WHERE user_id = ?"
    params: List[object] = [user_id]
    if date is not None:
        sql += " AND date = ?"
        params.append(date)
    sql += " ORDER BY date DESC, created_at DESC"
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        cur = await db.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return rows


async def list_entry_contents():
    """Return (id, content) for every entry, across users."""
    async with aiosqlite.connect(DB_PATH) as db:
        cur = await db.execute("SELECT id, content FROM diary_entries")
        rows = await cur.fetchall()
        await cur.close()
        return rows


async def update_entry_contents(pairs: Iterable[Tuple[str, str]]) -> None:
    """Bulk-replace content by id, as ``(content, id)`` pairs."""
    pairs = list(pairs)
    if not pairs:
        return
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executemany("UPDATE diary_entries SET content = ? WHERE id = ?", pairs)
        await db.commit()


async def delete_entry_row(entry_id: str, user_id: str) -> bool:
    """Delete an entry; tag links are removed via FK cascade."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON;")
        cur = await db.execute(
            "DELETE FROM diary_entries WHERE id = ? AND user_id = ?",
            (entry_id, user_id),
        )
        await db.commit()
        return cur.rowcount > 0
