# -*- coding: utf-8 -*-
"""Schema lifecycle for the journal SQLite store.

Three kinds of change are supported:

* ``ensure_base_schema``: ``CREATE ... IF NOT EXISTS`` for every table and
  index; safe on every start.
* ``ensure_column``: additive ``ALTER TABLE ... ADD COLUMN``; an existing
  column counts as success, other failures are logged and skipped.
* ``migrate_remove_constraint``: drops a UNIQUE constraint by rebuilding the
  table through a shadow copy inside one transaction.

All functions take an open ``aiosqlite.Connection`` that is in autocommit
mode (``isolation_level=None``); transactions are issued explicitly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import re
import sqlite3

import aiosqlite

from .errors import MigrationError

logger = logging.getLogger("journalstore.schema")

SHADOW_SUFFIX = "_new"

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


# ---------------------------------------------------------------------
# Base schema (new installs)
# ---------------------------------------------------------------------

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    username        TEXT UNIQUE NOT NULL,
    password_hash   TEXT NOT NULL,
    first_name      TEXT,
    last_name       TEXT,
    email           TEXT,
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS diary_entries (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    date            TEXT NOT NULL,
    -- envelope or legacy plaintext
    content         TEXT NOT NULL,
    mood            TEXT,
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sessions (
    sid             TEXT PRIMARY KEY,
    sess            TEXT NOT NULL,
    expire          INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    name            TEXT NOT NULL,
    color           TEXT,
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    UNIQUE(user_id, name)
);

CREATE TABLE IF NOT EXISTS entry_tags (
    entry_id        TEXT NOT NULL,
    tag_id          TEXT NOT NULL,
    PRIMARY KEY (entry_id, tag_id),
    FOREIGN KEY (entry_id) REFERENCES diary_entries(id) ON DELETE CASCADE,
    FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS reminders (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    title               TEXT NOT NULL,
    body                TEXT,
    time                TEXT NOT NULL,
    days_of_week        TEXT NOT NULL,
    notification_type   TEXT NOT NULL,
    email_address       TEXT,
    webhook_url         TEXT,
    is_enabled          INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at          TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS templates (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    name            TEXT NOT NULL,
    content         TEXT NOT NULL,
    created_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at      TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_sessions_expire ON sessions(expire);
CREATE INDEX IF NOT EXISTS idx_entries_user_date ON diary_entries(user_id, date);
CREATE INDEX IF NOT EXISTS idx_tags_user_id ON tags(user_id);
CREATE INDEX IF NOT EXISTS idx_entry_tags_entry_id ON entry_tags(entry_id);
CREATE INDEX IF NOT EXISTS idx_entry_tags_tag_id ON entry_tags(tag_id);
CREATE INDEX IF NOT EXISTS idx_reminders_user_id ON reminders(user_id);
CREATE INDEX IF NOT EXISTS idx_reminders_enabled ON reminders(is_enabled);
CREATE INDEX IF NOT EXISTS idx_templates_user_id ON templates(user_id);
"""

# Columns added after the first release; older databases lack them.
ADDITIVE_COLUMNS: Tuple[Tuple[str, str, str], ...] = (
    ("users", "first_name", "TEXT"),
    ("users", "last_name", "TEXT"),
    ("users", "email", "TEXT"),
    ("diary_entries", "mood", "TEXT"),
    ("reminders", "body", "TEXT"),
)

# One entry per day used to be enforced; it no longer is.
OBSOLETE_CONSTRAINTS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("diary_entries", ("user_id", "date")),
)


async def ensure_base_schema(db: aiosqlite.Connection) -> None:
    """Create all tables and indexes that do not exist yet."""
    await db.executescript(SCHEMA_SQL)


# ---------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------

@dataclass
class ColumnInfo:
    name: str
    type: str
    notnull: bool
    default: Optional[str]
    pk: int


@dataclass
class IndexInfo:
    name: str
    unique: bool
    origin: str  # "c" = CREATE INDEX, "u" = UNIQUE constraint, "pk"
    columns: List[str]
    sql: Optional[str] = None


@dataclass
class TableSnapshot:
    """Point-in-time view of one table's definition."""

    name: str
    sql: str
    columns: List[ColumnInfo]
    indexes: List[IndexInfo]
    triggers: List[str] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


def quote_ident(name: str) -> str:
    """Quote a table/column name after checking it is a plain identifier."""
    if not _IDENT_RE.fullmatch(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'

async def _fetchall(db: aiosqlite.Connection, sql: str, params: Sequence[object] = ()) -> list:
    cur = await db.execute(sql, params)
    rows = await cur.fetchall()
    await cur.close()
    return list(rows)

async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    """Return True if `column` is present in `table`."""
    rows = await _fetchall(db, f"PRAGMA table_info({quote_ident(table)})")
    # PRAGMA table_info columns: cid, name, type, notnull, default_value, pk
    return any(r[1] == column for r in rows)

async def table_snapshot(db: aiosqlite.Connection, table: str) -> Optional[TableSnapshot]:
    """Introspect *table*; return None if it does not exist."""
    rows = await _fetchall(
        db, "SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table,)
    )
    if not rows:
        return None
    create_sql = rows[0][0]

    columns = [
        ColumnInfo(name=r[1], type=r[2] or "", notnull=bool(r[3]), default=r[4], pk=r[5])
        for r in await _fetchall(db, f"PRAGMA table_info({quote_ident(table)})")
    ]

    indexes: List[IndexInfo] = []
    # PRAGMA index_list columns: seq, name, unique, origin, partial
    for r in await _fetchall(db, f"PRAGMA index_list({quote_ident(table)})"):
        name = r[1]
        info = await _fetchall(db, "SELECT name FROM pragma_index_info(?) ORDER BY seqno", (name,))
        sql_rows = await _fetchall(
            db, "SELECT sql FROM sqlite_master WHERE type='index' AND name = ?", (name,)
        )
        indexes.append(
            IndexInfo(
                name=name,
                unique=bool(r[2]),
                origin=r[3],
                columns=[i[0] for i in info],
                sql=sql_rows[0][0] if sql_rows else None,
            )
        )

    triggers = [
        r[0]
        for r in await _fetchall(
            db,
            "SELECT sql FROM sqlite_master WHERE type='trigger' AND tbl_name = ? AND sql IS NOT NULL",
            (table,),
        )
    ]
    return TableSnapshot(name=table, sql=create_sql, columns=columns, indexes=indexes, triggers=triggers)

def find_unique_index(snapshot: TableSnapshot, columns: Sequence[str]) -> Optional[IndexInfo]:
    """Return the UNIQUE constraint/index covering exactly *columns*, if any."""
    wanted = {c.lower() for c in columns}
    for idx in snapshot.indexes:
        if idx.unique and idx.origin in ("u", "c") and {c.lower() for c in idx.columns} == wanted:
            return idx
    return None


# ---------------------------------------------------------------------
# Additive columns
# ---------------------------------------------------------------------

class ColumnError(Enum):
    """Closed classification of ``ADD COLUMN`` failures."""

    ALREADY_EXISTS = "ColumnAlreadyExists"
    OTHER = "Other"


class ColumnStatus(Enum):
    ADDED = "added"
    EXISTS = "exists"
    FAILED = "failed"


async def classify_column_error(
    db: aiosqlite.Connection, table: str, column: str, exc: BaseException
) -> ColumnError:
    """Map an ADD COLUMN failure to a ColumnError.

    SQLite reports a duplicate column with the generic SQLITE_ERROR code, so
    the table definition is consulted instead of the message text.
    """
    if not isinstance(exc, sqlite3.OperationalError):
        return ColumnError.OTHER
    try:
        if await _column_exists(db, table, column):
            return ColumnError.ALREADY_EXISTS
    except sqlite3.Error:
        pass
    return ColumnError.OTHER

async def ensure_column(db: aiosqlite.Connection, table: str, column: str, type_: str) -> ColumnStatus:
    """Add *column* to *table* unless it is already there.

    Failures other than "already exists" are logged and reported as FAILED;
    they never propagate.
    """
    if ";" in type_:
        logger.warning("Refusing to add %s column to %s table: invalid type %r", column, table, type_)
        return ColumnStatus.FAILED
    try:
        stmt = f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(column)} {type_}"
    except ValueError as exc:
        logger.warning("Refusing to add %s column to %s table: %s", column, table, exc)
        return ColumnStatus.FAILED
    try:
        await db.execute(stmt)
    except sqlite3.Error as exc:
        if await classify_column_error(db, table, column, exc) is ColumnError.ALREADY_EXISTS:
            logger.debug("%s column already exists in %s table", column, table)
            return ColumnStatus.EXISTS
        logger.warning("Could not add %s column to %s table: %s", column, table, exc)
        return ColumnStatus.FAILED
    logger.info("Added %s column to %s table", column, table)
    return ColumnStatus.ADDED


# ---------------------------------------------------------------------
# Shadow-table rebuild
# ---------------------------------------------------------------------

class RebuildStep(Enum):
    BEGIN = "begin"
    CREATE_SHADOW = "create_shadow"
    COPY_ROWS = "copy_rows"
    DROP_ORIGINAL = "drop_original"
    RENAME_SHADOW = "rename_shadow"
    COMMIT = "commit"


# Cleanup to run when a step fails. "rollback" is a no-op when BEGIN itself
# never took effect.
UNWIND_ACTIONS: Dict[RebuildStep, Tuple[str, ...]] = {
    RebuildStep.BEGIN: ("rollback", "drop_shadow"),
    RebuildStep.CREATE_SHADOW: ("rollback", "drop_shadow"),
    RebuildStep.COPY_ROWS: ("rollback", "drop_shadow"),
    RebuildStep.DROP_ORIGINAL: ("rollback", "drop_shadow"),
    RebuildStep.RENAME_SHADOW: ("rollback", "drop_shadow"),
    RebuildStep.COMMIT: ("rollback", "drop_shadow"),
}


class MigrationOutcome(Enum):
    NOT_NEEDED = "not_needed"
    APPLIED = "applied"
    FAILED = "failed"


def _split_definitions(body: str) -> List[str]:
    """Split a CREATE TABLE body on top-level commas."""
    parts: List[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    i = 0
    while i < len(body):
        ch = body[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
        elif ch == "[":
            quote = "]"
        elif ch == "-" and body.startswith("--", i):
            nl = body.find("\n", i)
            i = len(body) if nl == -1 else nl
            continue
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(body[start:i])
            start = i + 1
        i += 1
    parts.append(body[start:])
    return [p.strip() for p in parts if p.strip()]

def _strip_comments(text: str) -> str:
    return "\n".join(line.split("--", 1)[0] for line in text.splitlines()).strip()

def _bare(name: str) -> str:
    return name.strip().strip('"`[]').lower()

_TABLE_UNIQUE_RE = re.compile(
    r"^(?:CONSTRAINT\s+\S+\s+)?UNIQUE\s*\((?P<cols>.*)\)\s*(?:ON\s+CONFLICT\s+\w+)?$",
    re.IGNORECASE | re.DOTALL,
)
_COLUMN_UNIQUE_RE = re.compile(r"\s+UNIQUE(?:\s+ON\s+CONFLICT\s+\w+)?\b", re.IGNORECASE)
_TABLE_CONSTRAINT_RE = re.compile(r"^(?:CONSTRAINT|PRIMARY|UNIQUE|CHECK|FOREIGN)\b", re.IGNORECASE)

def shadow_table_sql(create_sql: str, shadow: str, columns: Sequence[str]) -> str:
    """Rewrite *create_sql* as a CREATE TABLE for *shadow* without the UNIQUE on *columns*."""
    open_at = create_sql.index("(")
    close_at = create_sql.rindex(")")
    body = create_sql[open_at + 1:close_at]
    tail = create_sql[close_at + 1:]
    wanted = {c.lower() for c in columns}

    kept: List[str] = []
    constraints: List[str] = []
    removed = False
    for definition in _split_definitions(body):
        clean = _strip_comments(definition)
        if not clean:
            continue
        m = _TABLE_UNIQUE_RE.match(clean)
        if m:
            cols = {_bare(c.split()[0]) for c in m.group("cols").split(",") if c.strip()}
            if cols == wanted:
                removed = True
                continue
        if len(wanted) == 1 and clean and _bare(clean.split()[0]) in wanted:
            stripped = _COLUMN_UNIQUE_RE.sub("", clean)
            if stripped != clean:
                removed = True
                clean = stripped
        (constraints if _TABLE_CONSTRAINT_RE.match(clean) else kept).append(clean)

    if not removed:
        raise MigrationError(f"UNIQUE({', '.join(columns)}) not found in table definition")
    return "CREATE TABLE {} (\n    {}\n){}".format(quote_ident(shadow), ",\n    ".join(kept + constraints), tail)

def _is_timestamp(col: ColumnInfo) -> bool:
    if not col.notnull:
        return False
    if col.type.upper() in ("DATETIME", "TIMESTAMP", "DATE"):
        return True
    if col.default and "CURRENT_TIMESTAMP" in col.default.upper():
        return True
    return col.name.lower().endswith("_at")


class ShadowRebuild:
    """Removes a UNIQUE constraint by copying *snapshot.name* into a new table.

    Steps run in :class:`RebuildStep` order inside one transaction. If any
    step fails, the actions listed in :data:`UNWIND_ACTIONS` for that step
    are executed and :class:`MigrationError` is raised. *fault_hook* is
    called after every step before COMMIT with the step just performed.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        snapshot: TableSnapshot,
        columns: Sequence[str],
        fault_hook: Optional[Callable[[RebuildStep], None]] = None,
    ) -> None:
        self.db = db
        self.snapshot = snapshot
        self.columns = tuple(columns)
        self.shadow = snapshot.name + SHADOW_SUFFIX
        self.fault_hook = fault_hook
        self.state: Optional[RebuildStep] = None
        self.rows_copied = 0

    @property
    def table(self) -> str:
        return self.snapshot.name

    async def run(self) -> int:
        """Perform the rebuild; return the number of rows carried over."""
        await self.drop_shadow()
        fk_enabled = await self._foreign_keys_enabled()
        if fk_enabled:
            # Dropping the original must not cascade into child tables.
            await self.db.execute("PRAGMA foreign_keys = OFF")
        try:
            for step in RebuildStep:
                self.state = step
                await getattr(self, f"_step_{step.value}")()
                if self.fault_hook is not None and step is not RebuildStep.COMMIT:
                    self.fault_hook(step)
        except Exception as exc:
            failed = self.state
            await self._unwind(failed)
            raise MigrationError(
                f"Rebuild of {self.table} failed at {failed.value}: {exc}", step=failed
            ) from exc
        finally:
            if fk_enabled:
                await self.db.execute("PRAGMA foreign_keys = ON")
        return self.rows_copied

    async def _foreign_keys_enabled(self) -> bool:
        rows = await _fetchall(self.db, "PRAGMA foreign_keys")
        return bool(rows and rows[0][0])

    # -- steps ---------------------------------------------------------

    async def _step_begin(self) -> None:
        await self.db.execute("BEGIN")

    async def _step_create_shadow(self) -> None:
        await self.db.execute(shadow_table_sql(self.snapshot.sql, self.shadow, self.columns))

    async def _step_copy_rows(self) -> None:
        now = datetime.now(timezone.utc).isoformat()
        names = [quote_ident(c.name) for c in self.snapshot.columns]
        exprs = [
            f"COALESCE(NULLIF({quote_ident(c.name)}, ''), :now)" if _is_timestamp(c) else quote_ident(c.name)
            for c in self.snapshot.columns
        ]
        await self.db.execute(
            "INSERT INTO {} ({}) SELECT {} FROM {}".format(
                quote_ident(self.shadow), ", ".join(names), ", ".join(exprs), quote_ident(self.table)
            ),
            {"now": now},
        )
        original = await _fetchall(self.db, f"SELECT COUNT(*) FROM {quote_ident(self.table)}")
        copied = await _fetchall(self.db, f"SELECT COUNT(*) FROM {quote_ident(self.shadow)}")
        if original[0][0] != copied[0][0]:
            raise MigrationError(
                f"Copied {copied[0][0]} of {original[0][0]} rows from {self.table}"
            )
        self.rows_copied = copied[0][0]

    async def _step_drop_original(self) -> None:
        await self.db.execute(f"DROP TABLE {quote_ident(self.table)}")

    async def _step_rename_shadow(self) -> None:
        await self.db.execute(
            f"ALTER TABLE {quote_ident(self.shadow)} RENAME TO {quote_ident(self.table)}"
        )
        # Explicit indexes and triggers went away with the original table.
        for idx in self.snapshot.indexes:
            if idx.origin == "c" and idx.sql:
                await self.db.execute(idx.sql)
        for trigger_sql in self.snapshot.triggers:
            await self.db.execute(trigger_sql)
        # Orphans predating the rebuild are carried over as they were.
        violations = await _fetchall(self.db, f"PRAGMA foreign_key_check({quote_ident(self.table)})")
        if violations:
            logger.warning(
                "%d row(s) in %s reference missing parents; kept as-is", len(violations), self.table
            )

    async def _step_commit(self) -> None:
        await self.db.execute("COMMIT")

    # -- unwind --------------------------------------------------------

    async def rollback(self) -> None:
        if self.db.in_transaction:
            await self.db.execute("ROLLBACK")

    async def drop_shadow(self) -> None:
        await self.db.execute(f"DROP TABLE IF EXISTS {quote_ident(self.shadow)}")

    async def _unwind(self, step: Optional[RebuildStep]) -> None:
        for action in UNWIND_ACTIONS.get(step, ("rollback", "drop_shadow")):
            try:
                await getattr(self, action)()
            except sqlite3.Error as exc:
                logger.debug("Unwind action %s for %s failed: %s", action, self.table, exc)


async def migrate_remove_constraint(
    db: aiosqlite.Connection,
    table: str,
    columns: Sequence[str],
    fault_hook: Optional[Callable[[RebuildStep], None]] = None,
) -> MigrationOutcome:
    """Remove the UNIQUE constraint spanning *columns* from *table*.

    No-op when the table or the constraint is absent. A failed rebuild is
    rolled back, logged as a warning and reported as FAILED; it never raises.
    """
    try:
        snapshot = await table_snapshot(db, table)
    except sqlite3.Error as exc:
        logger.warning("Could not inspect %s table: %s", table, exc)
        return MigrationOutcome.FAILED
    if snapshot is None:
        logger.debug("Table %s does not exist; nothing to migrate", table)
        return MigrationOutcome.NOT_NEEDED

    idx = find_unique_index(snapshot, columns)
    if idx is None:
        logger.debug("No UNIQUE(%s) constraint on %s", ", ".join(columns), table)
        return MigrationOutcome.NOT_NEEDED

    if idx.origin == "c":
        # Standalone CREATE UNIQUE INDEX: no rebuild required.
        try:
            await db.execute(f"DROP INDEX {quote_ident(idx.name)}")
        except sqlite3.Error as exc:
            logger.warning("Could not drop unique index %s on %s: %s", idx.name, table, exc)
            return MigrationOutcome.FAILED
        logger.info("Dropped unique index %s on %s", idx.name, table)
        return MigrationOutcome.APPLIED

    logger.warning("Found UNIQUE(%s) constraint on %s, migrating table...", ", ".join(columns), table)
    rebuild = ShadowRebuild(db, snapshot, columns, fault_hook=fault_hook)
    try:
        copied = await rebuild.run()
    except (MigrationError, sqlite3.Error) as exc:
        logger.warning("Could not remove UNIQUE constraint from %s table: %s", table, exc)
        return MigrationOutcome.FAILED
    logger.info("Removed UNIQUE constraint from %s table (%d rows carried over)", table, copied)
    return MigrationOutcome.APPLIED


# ---------------------------------------------------------------------
# Startup plan
# ---------------------------------------------------------------------

@dataclass
class MigrationReport:
    """What a startup schema pass changed."""

    columns_added: List[str] = field(default_factory=list)
    columns_failed: List[str] = field(default_factory=list)
    constraints_removed: List[str] = field(default_factory=list)
    migrations_failed: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.columns_failed or self.migrations_failed)


async def apply_migrations(db: aiosqlite.Connection) -> MigrationReport:
    """Bring an open database to the current schema."""
    report = MigrationReport()
    await ensure_base_schema(db)

    for table, column, type_ in ADDITIVE_COLUMNS:
        status = await ensure_column(db, table, column, type_)
        if status is ColumnStatus.ADDED:
            report.columns_added.append(f"{table}.{column}")
        elif status is ColumnStatus.FAILED:
            report.columns_failed.append(f"{table}.{column}")

    for table, cols in OBSOLETE_CONSTRAINTS:
        label = f"{table}({', '.join(cols)})"
        outcome = await migrate_remove_constraint(db, table, cols)
        if outcome is MigrationOutcome.APPLIED:
            report.constraints_removed.append(label)
        elif outcome is MigrationOutcome.FAILED:
            report.migrations_failed.append(label)
    return report
