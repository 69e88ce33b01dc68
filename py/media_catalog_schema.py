"""media_catalog_schema.py

SQLAlchemy Core schema for the media catalog sqlite database (v1).

Design goals:
- `media` mirrors the catalog entries the shop front reads (one row per asset).
- The raw `id` column is all the candidate scan touches; full rows are only
  hydrated chunk by chunk.
- Keep run-scoped bookkeeping (runs) and an append-only audit trail (events).
- `index_queue` collects entities that need re-indexing when a write happens
  with indexing enabled.

DB path is provided by CLI arguments.

NOTE: SQLite JSON is stored as TEXT; validate at the application layer.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Sequence

from sqlalchemy import (
    Table,
    Column,
    MetaData,
    ForeignKey,
    Integer,
    Text,
    String,
    Index,
)
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.schema import CreateIndex, CreateTable

metadata = MetaData()

media = Table(
    "media",
    metadata,
    Column("id", String(32), primary_key=True),  # uuid hex
    Column("file_name", Text, nullable=False),
    Column("mime_type", String(255), nullable=True),
    Column("file_extension", String(32), nullable=True),
    Column("file_size", Integer, nullable=True),
    Column("meta_data", Text, nullable=True),  # JSON text: {"width": .., "height": ..}
    Column("path", Text, nullable=True),  # relative to the storage root
    Column("uploaded_at", String, nullable=True),  # ISO8601
    Column("created_at", String, nullable=False),
    Column("updated_at", String, nullable=True),
    Index("idx_media_mime_type", "mime_type"),
)

runs = Table(
    "runs",
    metadata,
    Column("run_id", String, primary_key=True),  # uuid
    Column("kind", String, nullable=False),
    Column("target_root", Text, nullable=True),
    Column("started_at", String, nullable=False),  # ISO8601
    Column("finished_at", String, nullable=True),
    Column("tool_version", String, nullable=True),
    Column("notes", Text, nullable=True),
    Index("idx_runs_kind_started", "kind", "started_at"),
)

events = Table(
    "events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("run_id", String, ForeignKey("runs.run_id"), nullable=True),
    Column("ts", String, nullable=False),
    Column("kind", String, nullable=False),
    Column("media_id", String(32), ForeignKey("media.id"), nullable=True),
    Column("detail_json", Text, nullable=True),
    Column("ok", Integer, nullable=False, server_default="1"),
    Column("error", Text, nullable=True),
    Index("idx_events_run", "run_id"),
    Index("idx_events_kind_ts", "kind", "ts"),
)

index_queue = Table(
    "index_queue",
    metadata,
    Column("queue_id", Integer, primary_key=True, autoincrement=True),
    Column("entity", String, nullable=False),
    Column("entity_id", String, nullable=False),
    Column("queued_at", String, nullable=False),
    Index("idx_index_queue_entity", "entity", "entity_id"),
)


def connect_db(path: str) -> sqlite3.Connection:
    # Autocommit mode: writers open their own transaction via begin_immediate().
    con = sqlite3.connect(path, isolation_level=None)
    con.row_factory = sqlite3.Row
    return con


def create_schema_if_needed(con: sqlite3.Connection) -> None:
    dialect = sqlite_dialect.dialect()
    for table in metadata.sorted_tables:
        con.execute(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)))
        for idx in sorted(table.indexes, key=lambda i: i.name or ""):
            con.execute(str(CreateIndex(idx, if_not_exists=True).compile(dialect=dialect)))


def begin_immediate(con: sqlite3.Connection) -> None:
    con.execute("BEGIN IMMEDIATE")


def fetchone(con: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
    return con.execute(sql, tuple(params)).fetchone()


def fetchall(con: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
    return list(con.execute(sql, tuple(params)).fetchall())
