"""
SQLite database access for TicketDB.

This module owns the single SQLite file that holds:
- Entities (the fixed core record of every ticket)
- One value table per storage kind
- The append-only changelog
- ACLs and their group entries

Invariants:
    - Every mutation runs inside one BEGIN IMMEDIATE transaction
    - Reads use a fresh connection without an explicit transaction
    - Value rows cascade on entity delete; changelog rows never do
    - The changelog table rejects UPDATE and DELETE at the SQL level

How to change safely:
    - initialize() only creates missing tables; it never migrates data
    - Test layout changes against a copy of a production database
    - Use transaction() for all multi-statement writes

Table schema:
    entities:
        - i INTEGER PRIMARY KEY (entity id)
        - type_id INTEGER, acl_id INTEGER
        - owner_uid, created_dt, created_uid (NULL for templates)
        - lastmod_dt, lastmod_uid (NULL for templates)
        - template INTEGER (0/1), template_name TEXT
        - created_from INTEGER (template or source entity id)

    entity_<kind> (texts, ints, floats, amounts, uuids, categories, relations):
        - i INTEGER PRIMARY KEY (row id, referenced by the changelog)
        - entity_id INTEGER NULL (NULL = orphaned historical value)
        - field_id INTEGER
        - value
        - count INTEGER (array-capable kinds only)
        - UNIQUE (entity_id, field_id, value)

    changelog:
        - i INTEGER PRIMARY KEY AUTOINCREMENT
        - field_id, subject_id, actor_id, chg_dt
        - old_value_ref, new_value_ref, free_text

    acls / acl_entries:
        - aid INTEGER PRIMARY KEY, name TEXT
        - (aid, gid) -> bits
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Union

from ..config import StorageConfig
from ..errors import ConstraintViolation, NotFoundError

logger = logging.getLogger(__name__)


# (table, SQL type of value, has count column)
VALUE_TABLES = (
    ("entity_texts", "TEXT", False),
    ("entity_ints", "INTEGER", True),
    ("entity_floats", "REAL", False),
    ("entity_amounts", "TEXT", False),
    ("entity_uuids", "TEXT", False),
    ("entity_categories", "INTEGER", True),
    ("entity_relations", "INTEGER", True),
)


@contextmanager
def constraint_guard(table: str) -> Iterator[None]:
    """Translate SQLite integrity errors into ConstraintViolation."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        raise ConstraintViolation(f"Constraint violated on {table}: {e}", table=table) from e


class Database:
    """Connection factory and transaction manager for the TicketDB file.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers
        (BEGIN IMMEDIATE takes the write lock up front) and WAL mode lets
        readers proceed while a write is in flight.

    Example:
        >>> db = Database("/var/lib/ticketdb/ticketdb.db")
        >>> db.initialize()
        >>> with db.transaction() as conn:
        ...     conn.execute("INSERT INTO acls (name) VALUES ('all')")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: Union[str, Path],
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the database handle.

        Args:
            path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    @classmethod
    def from_config(cls, config: StorageConfig) -> Database:
        return cls(
            config.db_path,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def connect(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a configured connection in autocommit mode.

        Args:
            create: Whether to create the database file if it doesn't exist

        Yields:
            SQLite connection

        Raises:
            NotFoundError: If the database doesn't exist and create=False
        """
        if not create and not self.path.exists():
            raise NotFoundError(f"Database not found: {self.path}", "database", str(self.path))

        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside one write transaction.

        Commits when the block completes; rolls back on any exception,
        including cancellation, and re-raises it.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self) -> None:
        """Create the physical layout if it does not exist yet."""
        with self.connect(create=True) as conn:
            conn.executescript(self._layout_sql())
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) "
                "VALUES (?, strftime('%s', 'now') * 1000)",
                (self.SCHEMA_VERSION,),
            )
        logger.info(f"Initialized database: {self.path}")

    @staticmethod
    def _layout_sql() -> str:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS acls (
                aid INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS acl_entries (
                aid INTEGER NOT NULL REFERENCES acls(aid) ON DELETE CASCADE,
                gid INTEGER NOT NULL,
                bits INTEGER NOT NULL,
                PRIMARY KEY (aid, gid)
            );

            CREATE TABLE IF NOT EXISTS entities (
                i INTEGER PRIMARY KEY AUTOINCREMENT,
                type_id INTEGER NOT NULL,
                acl_id INTEGER NOT NULL REFERENCES acls(aid),
                owner_uid INTEGER,
                created_dt INTEGER,
                created_uid INTEGER,
                lastmod_dt INTEGER,
                lastmod_uid INTEGER,
                template INTEGER NOT NULL DEFAULT 0,
                template_name TEXT,
                created_from INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type_id, created_dt DESC);
            CREATE INDEX IF NOT EXISTS idx_entities_acl ON entities(acl_id);

            CREATE TABLE IF NOT EXISTS changelog (
                i INTEGER PRIMARY KEY AUTOINCREMENT,
                field_id INTEGER NOT NULL,
                subject_id INTEGER NOT NULL,
                actor_id INTEGER,
                chg_dt INTEGER NOT NULL,
                old_value_ref INTEGER,
                new_value_ref INTEGER,
                free_text TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_changelog_subject
                ON changelog(subject_id, field_id, i);
            CREATE INDEX IF NOT EXISTS idx_changelog_dt ON changelog(chg_dt);

            CREATE TRIGGER IF NOT EXISTS changelog_no_update
                BEFORE UPDATE ON changelog
                BEGIN SELECT RAISE(ABORT, 'changelog is append-only'); END;

            CREATE TRIGGER IF NOT EXISTS changelog_no_delete
                BEFORE DELETE ON changelog
                BEGIN SELECT RAISE(ABORT, 'changelog is append-only'); END;
            """
        ]
        for table, sql_type, has_count in VALUE_TABLES:
            count_col = "count INTEGER," if has_count else ""
            statements.append(
                f"""
            CREATE TABLE IF NOT EXISTS {table} (
                i INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id INTEGER REFERENCES entities(i) ON DELETE CASCADE,
                field_id INTEGER NOT NULL,
                value {sql_type} NOT NULL,
                {count_col}
                UNIQUE (entity_id, field_id, value)
            );

            CREATE INDEX IF NOT EXISTS idx_{table}_value ON {table}(field_id, value);
            """
            )
        return "\n".join(statements)
