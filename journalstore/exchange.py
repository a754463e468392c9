# -*- coding: utf-8 -*-
"""Password-protected export envelopes and CSV/JSON interchange documents.

Export files are sealed with a key derived from a user-supplied password and
a random per-file salt, so they can be opened without the server's master
passphrase. Wire format (six tokens)::

    ENCRYPTED:aes-256-gcm:b64(salt):b64(iv):b64(auth_tag):b64(ciphertext)
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
import base64
import binascii
import csv
import io
import json
import logging
import re
import secrets

from .crypto import aesgcm_decrypt, aesgcm_encrypt, scrypt_kdf
from .errors import CryptoError, FormatError

logger = logging.getLogger("journalstore.exchange")

ENVELOPE_TAG = "ENCRYPTED"
ALGORITHM = "aes-256-gcm"
ENVELOPE_PREFIX = f"{ENVELOPE_TAG}:{ALGORITHM}:"
SALT_LEN = 16

CSV_HEADERS = ["Date", "Content", "Mood", "Created At", "Updated At"]
JSON_VERSION = 1

_LEGACY_TS_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})::(\d{2}):(\d{2}):(\d{2})$")


# ---------------------------------------------------------------------
# Export envelope codec
# ---------------------------------------------------------------------

def is_encrypted(value: str) -> bool:
    """Cheap prefix check used to decide whether to ask for a password."""
    return isinstance(value, str) and value.startswith(ENVELOPE_PREFIX)

def encrypt_document(document: str, password: str) -> str:
    """Seal *document* under *password* with a fresh salt and IV."""
    if not password:
        raise ValueError("Password required")
    salt = secrets.token_bytes(SALT_LEN)
    key = scrypt_kdf(password, salt)
    iv, tag, ct = aesgcm_encrypt(key, document.encode("utf-8"))
    fields = (salt, iv, tag, ct)
    return ":".join([ENVELOPE_TAG, ALGORITHM] + [base64.b64encode(f).decode("ascii") for f in fields])

def decrypt_document(envelope: str, password: str) -> str:
    """Open an export envelope.

    Raises FormatError when the token layout is wrong. Every other failure
    (wrong password, corrupted payload) is reported as the same CryptoError.
    """
    parts = envelope.split(":")
    if len(parts) != 6 or parts[0] != ENVELOPE_TAG or parts[1] != ALGORITHM:
        raise FormatError("Invalid encrypted format")
    try:
        salt, iv, tag, ct = (base64.b64decode(p, validate=True) for p in parts[2:])
        key = scrypt_kdf(password, salt)
        plaintext = aesgcm_decrypt(key, iv, tag, ct)
        return plaintext.decode("utf-8")
    except (CryptoError, binascii.Error, ValueError) as exc:
        logger.warning("Export decryption failed")
        raise CryptoError(
            "Failed to decrypt - incorrect password or corrupted file"
        ) from exc


# ---------------------------------------------------------------------
# Interchange records
# ---------------------------------------------------------------------

@dataclass
class ExportRecord:
    """One decrypted diary entry as it appears in an export file."""

    date: str
    content: str
    mood: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def parse_timestamp(value: str) -> str:
    """Normalise an exported timestamp to ISO-8601.

    Accepts ISO strings and the legacy ``DD-MM-YYYY::HH:MM:SS`` form;
    anything else becomes the current time.
    """
    value = (value or "").strip()
    if not value:
        return _utcnow_iso()
    m = _LEGACY_TS_RE.match(value)
    if m:
        day, month, year, hh, mm, ss = (int(g) for g in m.groups())
        try:
            return datetime(year, month, day, hh, mm, ss, tzinfo=timezone.utc).isoformat()
        except ValueError:
            return _utcnow_iso()
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _utcnow_iso()
    return value


# ---------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------

def records_to_csv(records: Iterable[ExportRecord]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for r in records:
        writer.writerow([r.date, r.content, r.mood or "", r.created_at, r.updated_at])
    return buf.getvalue()

def csv_to_records(text: str) -> tuple[List[ExportRecord], int]:
    """Parse CSV text; return (records, skipped_rows).

    The header row is required. Rows with fewer than four fields or without
    a date/content are skipped. Four-column files (no Mood) are accepted.
    """
    rows = [row for row in csv.reader(io.StringIO(text)) if any(f.strip() for f in row)]
    if len(rows) < 2:
        raise FormatError("Invalid CSV format - no data rows found")

    header = [h.strip() for h in rows[0]]
    has_mood = "Mood" in header
    records: List[ExportRecord] = []
    skipped = 0
    for i, row in enumerate(rows[1:], start=1):
        if len(row) < 4:
            logger.debug("Row %d: expected at least 4 fields, got %d", i, len(row))
            skipped += 1
            continue
        if has_mood and len(row) >= 5:
            date, content, mood, created_at, updated_at = (f.strip() for f in row[:5])
        else:
            date, content, created_at, updated_at = (f.strip() for f in row[:4])
            mood = ""
        if not date or not content:
            logger.debug("Row %d: missing date or content", i)
            skipped += 1
            continue
        records.append(
            ExportRecord(
                date=date,
                content=content,
                mood=mood or None,
                created_at=parse_timestamp(created_at),
                updated_at=parse_timestamp(updated_at),
            )
        )
    return records, skipped


# ---------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------

def records_to_json(records: Iterable[ExportRecord]) -> str:
    payload: Dict[str, object] = {
        "version": JSON_VERSION,
        "exported_at": _utcnow_iso(),
        "entries": [
            {
                "date": r.date,
                "content": r.content,
                "mood": r.mood,
                "created_at": r.created_at,
                "updated_at": r.updated_at,
            }
            for r in records
        ],
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)

def json_to_records(text: str) -> tuple[List[ExportRecord], int]:
    """Parse a JSON export (object with ``entries`` or a bare list)."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FormatError("Invalid JSON export") from exc
    items = data.get("entries") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise FormatError("Invalid JSON export - no entries list")

    records: List[ExportRecord] = []
    skipped = 0
    for item in items:
        if not isinstance(item, dict):
            skipped += 1
            continue
        date = str(item.get("date") or "").strip()
        content = str(item.get("content") or "")
        if not date or not content.strip():
            skipped += 1
            continue
        records.append(
            ExportRecord(
                date=date,
                content=content,
                mood=item.get("mood") or None,
                created_at=parse_timestamp(str(item.get("created_at") or "")),
                updated_at=parse_timestamp(str(item.get("updated_at") or "")),
            )
        )
    return records, skipped
