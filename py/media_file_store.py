#!/usr/bin/env python3
r"""Read and write media file bytes under a storage root.

Files live at <storage_root>/media/<id[0:2]>/<id[2:4]>/<id>/<file_name>.<ext>
and `media.path` holds that location relative to the storage root. A row
without `path`, or whose file is missing or empty, has no stored file.

Safety:
- Never overwrites or deletes an existing file.
"""

from __future__ import annotations

import json
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from media_catalog_schema import begin_immediate, fetchone
from placeholder_fetch import FetchedFile

FORB = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


class StorageError(RuntimeError):
    pass


class PersistError(StorageError):
    pass


@dataclass(frozen=True)
class ExecutionContext:
    run_id: str | None = None
    indexing_disabled: bool = True


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def safe_json(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def safe_file_name(name: str) -> str:
    s = FORB.sub("_", str(name or "").strip()).strip(". ")
    if not s:
        raise PersistError(f"invalid file name: {name!r}")
    return s


def media_relative_path(media_id: str, file_name: str, extension: str) -> str:
    mid = str(media_id).lower()
    ext = str(extension or "").strip().lstrip(".").lower()
    leaf = safe_file_name(file_name) + (f".{ext}" if ext else "")
    return f"media/{mid[0:2]}/{mid[2:4]}/{mid}/{leaf}"


def load_media_file(con: sqlite3.Connection, storage_root: Path, media_id: str) -> bytes | None:
    row = fetchone(con, "SELECT path FROM media WHERE id = ?", (media_id,))
    if row is None or not row["path"]:
        return None
    p = Path(storage_root) / str(row["path"])
    try:
        if not p.is_file():
            return None
        data = p.read_bytes()
    except OSError as e:
        raise StorageError(f"read failed: {p} :: {e}") from e
    return data or None


def _discard(p: Path) -> None:
    try:
        p.unlink(missing_ok=True)
    except OSError:
        pass


def _write_new_file(target: Path, data: bytes) -> None:
    tmp = target.with_name(target.name + ".tmp")
    try:
        if target.exists() and target.stat().st_size > 0:
            raise PersistError(f"refusing to overwrite existing file: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("wb") as f:
            f.write(data)
        os.replace(tmp, target)
    except OSError as e:
        _discard(tmp)
        raise PersistError(f"write failed: {target} :: {e}") from e


def persist_file_to_media(
    con: sqlite3.Connection,
    storage_root: Path,
    fetched: FetchedFile,
    file_name: str,
    media_id: str,
    context: ExecutionContext,
) -> str:
    if not fetched.data:
        raise PersistError(f"no data to persist for media {media_id}")
    ext = fetched.file_extension or ""
    rel = media_relative_path(media_id, file_name, ext)
    target = Path(storage_root) / rel
    _write_new_file(target, fetched.data)

    ts = now_iso()
    try:
        begin_immediate(con)
        cur = con.execute(
            """
            UPDATE media
            SET path=?, file_extension=?, file_size=?, uploaded_at=?, updated_at=?
            WHERE id=?
            """,
            (rel, ext or None, fetched.file_size, ts, ts, media_id),
        )
        if cur.rowcount != 1:
            raise PersistError(f"media row not found: {media_id}")
        detail = {
            "path": rel,
            "url": fetched.url,
            "mime_type": fetched.mime_type,
            "size_bytes": fetched.file_size,
            "indexing_disabled": context.indexing_disabled,
        }
        con.execute(
            """
            INSERT INTO events (run_id, ts, kind, media_id, detail_json, ok, error)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (context.run_id, ts, "placeholder_fill", media_id, safe_json(detail), 1, None),
        )
        if not context.indexing_disabled:
            con.execute(
                "INSERT INTO index_queue (entity, entity_id, queued_at) VALUES (?, ?, ?)",
                ("media", media_id, ts),
            )
        con.commit()
    except Exception:
        if con.in_transaction:
            con.rollback()
        _discard(target)
        raise
    return rel
