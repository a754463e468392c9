# -*- coding: utf-8 -*-
"""Application logic that composes the DB and crypto layers.

Route handlers call into this module. Entry content is encrypted with the
at-rest codec immediately before it is written and passed through
``safe_decrypt`` immediately after it is read, so legacy plaintext rows
keep working. Export/import goes through the password-based export codec.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import logging
import uuid

from . import db
from .crypto import AtRestCodec, default_codec
from .errors import FormatError, PasswordRequired
from .exchange import (
    ExportRecord,
    csv_to_records,
    decrypt_document,
    encrypt_document,
    is_encrypted,
    json_to_records,
    records_to_csv,
    records_to_json,
)
from .schema import MigrationReport

logger = logging.getLogger("journalstore.logic")

EXPORT_FORMATS = ("csv", "json")


@dataclass
class Entry:
    id: str
    user_id: str
    date: str
    content: str
    mood: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class ImportResult:
    imported: int
    skipped: int


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _entry_from_row(row, codec: AtRestCodec) -> Entry:
    return Entry(
        id=row["id"],
        user_id=row["user_id"],
        date=row["date"],
        content=codec.safe_decrypt(row["content"]),
        mood=row["mood"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------
# DB bridge
# ---------------------------------------------------------------------

async def init_db(path: Optional[str] = None) -> MigrationReport:
    """Initialize the database and surface configuration warnings."""
    default_codec()  # warns once if the placeholder key is in use
    return await db.init_db(path)


async def create_user(username: str, password_hash: str) -> str:
    """Insert a user and return its id."""
    user_id = str(uuid.uuid4())
    await db.insert_user(user_id, username, password_hash, _now())
    return user_id


# ---------------------------------------------------------------------
# Entries (encrypted content)
# ---------------------------------------------------------------------

async def add_entry(
    user_id: str,
    date: str,
    content: str,
    mood: Optional[str] = None,
    codec: Optional[AtRestCodec] = None,
) -> str:
    """Encrypt and insert a new entry; return its id."""
    codec = codec or default_codec()
    entry_id = str(uuid.uuid4())
    now = _now()
    await db.insert_entry_row(entry_id, user_id, date, codec.encrypt(content), mood, now, now)
    return entry_id


async def update_entry(
    user_id: str,
    entry_id: str,
    content: str,
    mood: Optional[str] = None,
    codec: Optional[AtRestCodec] = None,
) -> None:
    # re-encrypt with a fresh IV; ciphertext is never patched in place
    codec = codec or default_codec()
    if not await db.update_entry_row(entry_id, user_id, codec.encrypt(content), mood, _now()):
        raise ValueError("Entry not found")


async def get_entry(user_id: str, entry_id: str, codec: Optional[AtRestCodec] = None) -> Entry:
    """Return the decrypted entry or raise ValueError."""
    row = await db.get_entry_row(user_id, entry_id)
    if not row:
        raise ValueError("Entry not found")
    return _entry_from_row(row, codec or default_codec())


async def list_entries(
    user_id: str,
    date: Optional[str] = None,
    codec: Optional[AtRestCodec] = None,
) -> List[Entry]:
    codec = codec or default_codec()
    return [_entry_from_row(r, codec) for r in await db.list_entry_rows(user_id, date)]


async def delete_entry(user_id: str, entry_id: str) -> None:
    if not await db.delete_entry_row(entry_id, user_id):
        raise ValueError("Entry not found")


# ---------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------

async def export_entries(
    user_id: str,
    fmt: str = "csv",
    password: Optional[str] = None,
    codec: Optional[AtRestCodec] = None,
) -> str:
    """Render a user's decrypted entries as CSV or JSON, sealed if *password*."""
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    entries = await list_entries(user_id, codec=codec)
    records = [
        ExportRecord(e.date, e.content, e.mood, e.created_at, e.updated_at) for e in entries
    ]
    document = records_to_csv(records) if fmt == "csv" else records_to_json(records)
    if password:
        document = encrypt_document(document, password)
        logger.info("%s export encrypted with user password", fmt.upper())
    return document


async def import_entries(
    user_id: str,
    document: str,
    fmt: str = "csv",
    password: Optional[str] = None,
    codec: Optional[AtRestCodec] = None,
) -> ImportResult:
    """Import entries from an export document.

    Encrypted documents are opened before anything is written; rows are
    inserted in one transaction, so a failure imports nothing.
    """
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported import format: {fmt}")
    if not document:
        raise FormatError("Import content is required")
    if is_encrypted(document):
        if not password:
            raise PasswordRequired("This file is encrypted. Please provide the encryption password.")
        document = decrypt_document(document, password)

    parse = csv_to_records if fmt == "csv" else json_to_records
    records, skipped = parse(document)
    codec = codec or default_codec()
    rows = [
        (
            str(uuid.uuid4()),
            user_id,
            r.date,
            codec.encrypt(r.content),
            r.mood,
            r.created_at,
            r.updated_at,
        )
        for r in records
    ]
    imported = await db.insert_entry_rows(rows)
    logger.info("Import finished: %d imported, %d skipped", imported, skipped)
    return ImportResult(imported=imported, skipped=skipped)


# ---------------------------------------------------------------------
# Legacy data
# ---------------------------------------------------------------------

async def encrypt_legacy_entries(codec: Optional[AtRestCodec] = None) -> int:
    """Encrypt every entry whose content is still plaintext; return the count.

    Not run at startup. Reads keep falling back to plaintext either way.
    """
    codec = codec or default_codec()
    pairs = [
        (codec.encrypt(content), entry_id)
        for entry_id, content in await db.list_entry_contents()
        if content and not codec.is_envelope(content)
    ]
    await db.update_entry_contents(pairs)
    if pairs:
        logger.info("Encrypted %d legacy entries", len(pairs))
    return len(pairs)
