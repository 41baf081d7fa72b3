"""Opening the source and shard SQLite databases and preparing shard tables."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import suppress

from .config import Config

log = logging.getLogger(__name__)

_INDEX_COLUMNS = ("ИНН", "MOBILE_NUMBER", "СНИЛС")

_SOURCE_PRAGMAS = (
    "PRAGMA cache_size = 10000",
    "PRAGMA mmap_size = 1073741824",
    "PRAGMA temp_store = MEMORY",
)

_SHARD_PRAGMAS = (
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = OFF",
    "PRAGMA journal_mode = WAL",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA cache_size = 5000",
)


def _apply_pragmas(db: sqlite3.Connection, pragmas: tuple[str, ...]) -> None:
    for pragma in pragmas:
        with suppress(sqlite3.Error):
            db.execute(pragma)


def open_source_db(conf: Config) -> sqlite3.Connection:
    """Open the source database tuned for bulk reading."""
    db = sqlite3.connect(conf.source_db, isolation_level=None)
    _apply_pragmas(db, _SOURCE_PRAGMAS)
    return db


def get_column_names(db: sqlite3.Connection, table_name: str) -> list[str]:
    """Return the column names of ``table_name`` in declaration order."""
    return [row[1] for row in db.execute(f"PRAGMA table_info({table_name})")]


def ensure_table(db: sqlite3.Connection, table_name: str, columns: list[str]) -> None:
    """Create ``table_name`` with TEXT columns and lookup indexes unless it exists."""
    (count,) = db.execute(
        "SELECT count(*) FROM sqlite_master WHERE type='table' AND name=?", (table_name,)
    ).fetchone()
    if count:
        return

    col_defs = ", ".join(f'"{col}" TEXT' for col in columns)
    try:
        db.execute(f"CREATE TABLE IF NOT EXISTS {table_name} ({col_defs})")
    except sqlite3.Error as exc:
        raise sqlite3.OperationalError(f"failed to create table: {exc}") from exc
    log.info("Created table %s, adding specific indexes...", table_name)

    for column in _INDEX_COLUMNS:
        if column not in columns:
            log.info("Column %s not found, skipping index creation", column)
            continue
        index_name = f"idx_{table_name}_{column}"
        try:
            db.execute(f'CREATE INDEX IF NOT EXISTS {index_name} ON {table_name}("{column}")')
        except sqlite3.Error as exc:
            log.warning("Failed to create index on %s: %s", column, exc)
        else:
            log.info("Created index %s on column %s", index_name, column)


def open_shard_db(shard_path: str) -> sqlite3.Connection:
    """Open a shard database tuned for bulk writing."""
    db = sqlite3.connect(shard_path, isolation_level=None)
    _apply_pragmas(db, _SHARD_PRAGMAS)
    log.info("Shard database opened with optimized settings: %s", shard_path)
    return db