#!/usr/bin/env python3
r"""Fill missing media images with placeholders.

This script scans the media catalog for image rows whose stored file is
absent, requests a placeholder of the same size and format from the
placeholder service, and stores it so the catalog is self-consistent
without a copy of the production assets.

Usage:
  cd <media-image-filler-dir>/py
  python fill_missing_images.py --db catalog.sqlite --storage-root ./public --dry-run

Safety:
- Additive only. Existing files are never overwritten or deleted.
- --dry-run never touches the network or the storage write path.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sqlite3
import sys
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence, TextIO

from media_catalog_schema import begin_immediate, connect_db, create_schema_if_needed, fetchall
from media_file_store import ExecutionContext, StorageError, load_media_file, persist_file_to_media
from placeholder_fetch import (
    DEFAULT_MAX_BYTES,
    DEFAULT_TIMEOUT_SEC,
    DEFAULT_USER_AGENT,
    FetchError,
    FetchedFile,
    create_session,
    fetch_file_from_url,
)
from placeholder_rules import (
    PLACEHOLDER_BASE_URL,
    SUPPORTED_MIME_TYPES,
    UnsupportedMimeTypeError,
    build_placeholder_url,
    get_dimensions,
    get_extension,
)

CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 999  # sqlite host parameter limit on older builds
MAX_SUMMARY_WARNINGS = 200
DEFAULT_SETTINGS_PATH = Path(__file__).resolve().parent.parent / "rules" / "image_fill.yaml"
SETTINGS_KEYS = {"placeholder_base_url", "timeout_sec", "chunk_size", "max_bytes", "user_agent"}

STATUS_EXISTS = "exists"
STATUS_DRY_RUN = "dry_run"
STATUS_NO_DIMENSIONS = "no_dimensions"
STATUS_UNSUPPORTED = "unsupported_mime_type"
STATUS_FETCH_FAILED = "fetch_failed"
STATUS_LOAD_FAILED = "load_failed"
STATUS_PERSIST_FAILED = "persist_failed"
STATUS_UPDATED = "updated"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ts_compact(d: datetime | None = None) -> str:
    dt_obj = d or datetime.now()
    return dt_obj.strftime("%Y%m%d_%H%M%S")


def safe_json(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def strip_quotes(s: str) -> str:
    t = s.strip()
    if len(t) >= 2 and ((t[0] == t[-1] == '"') or (t[0] == t[-1] == "'")):
        return t[1:-1]
    return t


def parse_simple_settings(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(str(path))
    data: dict[str, Any] = {}
    for i, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.rstrip()
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = re.match(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*:\s*(.*?)\s*$", line)
        if not m:
            raise SystemExit(f"invalid YAML syntax at {path}:{i}: {line}")
        key = m.group(1)
        value = strip_quotes(m.group(2))
        if key not in SETTINGS_KEYS:
            raise SystemExit(f"unknown setting at {path}:{i}: {key}")
        if re.fullmatch(r"\d+", value):
            data[key] = int(value)
        elif re.fullmatch(r"\d+\.\d+", value):
            data[key] = float(value)
        else:
            data[key] = value
    return data


@dataclass
class MediaRecord:
    id: str
    file_name: str
    mime_type: str | None
    file_extension: str | None = None
    metadata: dict[str, Any] | None = None
    path: str | None = None


@dataclass
class RunStats:
    total: int = 0
    updated: int = 0


def parse_meta_data(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    try:
        md = json.loads(text)
    except ValueError:
        return None
    return md if isinstance(md, dict) else None


def list_candidate_ids(con: sqlite3.Connection, mime_types: Sequence[str], limit: int | None = 0) -> list[str]:
    # Raw id column only: the catalog can hold millions of rows.
    types = list(mime_types)
    if not types:
        return []
    sql = f"SELECT media.id FROM media WHERE media.mime_type IN ({', '.join('?' for _ in types)})"
    lim = max(0, int(limit or 0))
    if lim > 0:
        sql += f" LIMIT {lim}"
    return [str(r[0]) for r in con.execute(sql, types)]


def iter_chunks(ids: Sequence[str], size: int) -> Iterator[list[str]]:
    n = min(max(1, int(size)), MAX_CHUNK_SIZE)
    for i in range(0, len(ids), n):
        yield list(ids[i : i + n])


def fetch_media_by_ids(con: sqlite3.Connection, ids: Sequence[str]) -> list[MediaRecord]:
    if not ids:
        return []
    rows = fetchall(
        con,
        f"""
        SELECT id, file_name, mime_type, file_extension, meta_data, path
        FROM media
        WHERE id IN ({', '.join('?' for _ in ids)})
        """,
        list(ids),
    )
    return [
        MediaRecord(
            id=str(r["id"]),
            file_name=str(r["file_name"] or ""),
            mime_type=r["mime_type"],
            file_extension=r["file_extension"],
            metadata=parse_meta_data(r["meta_data"]),
            path=r["path"],
        )
        for r in rows
    ]


class ConsoleReporter:
    """Progress and advisories on stderr; the JSON summary is built by main()."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream if stream is not None else sys.stderr
        self.expected = 0
        self.done = 0
        self.warnings: list[str] = []
        self.warning_count = 0
        self.errors: list[str] = []
        self.total = 0
        self.updated = 0

    def start(self, expected: int) -> None:
        self.expected = expected
        self.done = 0

    def progress(self, increment: int) -> None:
        self.done += increment
        print(f"progress {self.done}/{self.expected}", file=self.stream)

    def advisory(self, message: str) -> None:
        self.warning_count += 1
        if len(self.warnings) < MAX_SUMMARY_WARNINGS:
            self.warnings.append(message)
        print(f"W {message}", file=self.stream)

    def error(self, message: str) -> None:
        self.errors.append(message)
        print(f"E {message}", file=self.stream)

    def summary(self, total: int, updated: int) -> None:
        self.total = total
        self.updated = updated
        print(f"OK checked {total} images, updated {updated} of them", file=self.stream)


class ImageFiller:
    def __init__(
        self,
        load_bytes: Callable[[str], bytes | None],
        fetch_bytes: Callable[[str, str], FetchedFile | None],
        save_bytes: Callable[[FetchedFile, str, str, ExecutionContext], Any],
        reporter: ConsoleReporter,
        *,
        context: ExecutionContext | None = None,
        dry_run: bool = False,
        base_url: str = PLACEHOLDER_BASE_URL,
    ):
        self.load_bytes = load_bytes
        self.fetch_bytes = fetch_bytes
        self.save_bytes = save_bytes
        self.reporter = reporter
        self.context = context or ExecutionContext()
        self.dry_run = dry_run
        self.base_url = base_url

    def handle(self, image: MediaRecord) -> str:
        try:
            data = self.load_bytes(image.id)
        except (StorageError, OSError) as e:
            self.reporter.error(f'Image "{image.file_name}" ({image.id}) could not be read: {e}')
            return STATUS_LOAD_FAILED
        if data:
            return STATUS_EXISTS

        if self.dry_run:
            self.reporter.advisory(f'Image "{image.file_name}" does not exist, would be updated now')
            return STATUS_DRY_RUN

        dimensions = get_dimensions(image.metadata)
        if dimensions is None:
            self.reporter.advisory(f'Image "{image.file_name}" has no dimensions')
            return STATUS_NO_DIMENSIONS

        try:
            ext = get_extension(image.mime_type, image.file_extension)
        except UnsupportedMimeTypeError as e:
            self.reporter.error(f'Image "{image.file_name}" ({image.id}): {e}')
            return STATUS_UNSUPPORTED

        width, height = dimensions
        url = build_placeholder_url(width, height, ext, self.base_url)
        try:
            fetched = self.fetch_bytes(url, image.file_name)
        except FetchError as e:
            self.reporter.advisory(f'Image "{image.file_name}" could not be fetched from url "{url}": {e}')
            return STATUS_FETCH_FAILED
        if fetched is None or not fetched.data:
            self.reporter.advisory(f'Image "{image.file_name}" could not be fetched from url "{url}"')
            return STATUS_FETCH_FAILED

        try:
            self.save_bytes(fetched, image.file_name, image.id, self.context)
        except (StorageError, OSError) as e:
            self.reporter.error(f'Image "{image.file_name}" ({image.id}) could not be saved: {e}')
            return STATUS_PERSIST_FAILED
        return STATUS_UPDATED

    def check_image(self, image: MediaRecord) -> bool:
        return self.handle(image) == STATUS_UPDATED


def process_candidates(
    con: sqlite3.Connection,
    ids: Sequence[str],
    filler: ImageFiller,
    reporter: ConsoleReporter,
    *,
    chunk_size: int = CHUNK_SIZE,
    statuses: Counter | None = None,
    report: TextIO | None = None,
) -> RunStats:
    stats = RunStats()
    reporter.start(len(ids))
    for chunk in iter_chunks(ids, chunk_size):
        for image in fetch_media_by_ids(con, chunk):
            stats.total += 1
            status = filler.handle(image)
            if status == STATUS_UPDATED:
                stats.updated += 1
            if statuses is not None:
                statuses[status] += 1
            if report is not None:
                report.write(
                    safe_json({"id": image.id, "file_name": image.file_name, "status": status, "ts": now_iso()})
                    + "\n"
                )
        reporter.progress(len(chunk))
    reporter.summary(stats.total, stats.updated)
    return stats


def start_run(con: sqlite3.Connection, storage_root: str) -> str:
    run_id = str(uuid.uuid4())
    try:
        begin_immediate(con)
        con.execute(
            """
            INSERT INTO runs (run_id, kind, target_root, started_at, finished_at, tool_version, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (run_id, "image_fill", storage_root, now_iso(), None, "fill_missing_images.py", None),
        )
        con.commit()
    except Exception:
        if con.in_transaction:
            con.rollback()
        raise
    return run_id


def finish_run(con: sqlite3.Connection, run_id: str, notes: str) -> None:
    try:
        begin_immediate(con)
        con.execute("UPDATE runs SET finished_at=?, notes=? WHERE run_id=?", (now_iso(), notes, run_id))
        con.commit()
    except Exception:
        if con.in_transaction:
            con.rollback()
        raise


def load_settings(settings_file: str) -> dict[str, Any]:
    path = Path(settings_file) if settings_file.strip() else DEFAULT_SETTINGS_PATH
    try:
        return parse_simple_settings(path)
    except FileNotFoundError:
        if settings_file.strip():
            raise SystemExit(f"settings file not found: {path}")
        return {}


def pick(cli_value: Any, settings: dict[str, Any], key: str, default: Any) -> Any:
    if cli_value is not None:
        return cli_value
    return settings.get(key, default)


def main(argv: Sequence[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Fill missing images")
    ap.add_argument("--db", required=True)
    ap.add_argument("--storage-root", required=True)
    ap.add_argument("--limit", type=int, default=0, help="Limit number of images to check")
    ap.add_argument("--dry-run", action="store_true", help="Dry run, only show what would be done")
    ap.add_argument("--chunk-size", type=int, default=None)
    ap.add_argument("--placeholder-base-url", default=None)
    ap.add_argument("--timeout", type=float, default=None)
    ap.add_argument("--max-bytes", type=int, default=None)
    ap.add_argument("--enable-indexing", action="store_true")
    ap.add_argument("--settings-file", default="")
    ap.add_argument("--report-dir", default="")
    args = ap.parse_args(argv)

    if not os.path.exists(args.db):
        raise SystemExit(f"DB not found: {args.db}")
    storage_root = Path(args.storage_root).resolve()
    if storage_root.exists() and not storage_root.is_dir():
        raise SystemExit(f"storage root is not a directory: {storage_root}")

    settings = load_settings(args.settings_file)
    limit = max(0, int(args.limit or 0))
    chunk_size = min(max(1, int(pick(args.chunk_size, settings, "chunk_size", CHUNK_SIZE))), MAX_CHUNK_SIZE)
    base_url = str(pick(args.placeholder_base_url, settings, "placeholder_base_url", PLACEHOLDER_BASE_URL))
    timeout = float(pick(args.timeout, settings, "timeout_sec", DEFAULT_TIMEOUT_SEC))
    max_bytes = max(1, int(pick(args.max_bytes, settings, "max_bytes", DEFAULT_MAX_BYTES)))
    user_agent = str(settings.get("user_agent") or DEFAULT_USER_AGENT)

    report_path: Path | None = None
    if args.report_dir.strip():
        report_dir = Path(args.report_dir).resolve()
        report_dir.mkdir(parents=True, exist_ok=True)
        report_path = report_dir / f"image_fill_{ts_compact()}.jsonl"

    reporter = ConsoleReporter()
    statuses: Counter = Counter()
    errors: list[str] = []
    stats = RunStats()
    ids: list[str] = []
    run_id: str | None = None

    con = connect_db(args.db)
    session = create_session(user_agent)
    try:
        try:
            ids = list_candidate_ids(con, SUPPORTED_MIME_TYPES, limit)
            if not args.dry_run:
                create_schema_if_needed(con)
                run_id = start_run(con, str(storage_root))
            context = ExecutionContext(run_id=run_id, indexing_disabled=not args.enable_indexing)
            filler = ImageFiller(
                load_bytes=lambda media_id: load_media_file(con, storage_root, media_id),
                fetch_bytes=lambda url, file_name: fetch_file_from_url(
                    session, url, file_name, timeout=timeout, max_bytes=max_bytes
                ),
                save_bytes=lambda fetched, file_name, media_id, ctx: persist_file_to_media(
                    con, storage_root, fetched, file_name, media_id, ctx
                ),
                reporter=reporter,
                context=context,
                dry_run=args.dry_run,
                base_url=base_url,
            )
            if report_path is not None:
                with report_path.open("w", encoding="utf-8") as w:
                    meta = {
                        "_meta": {
                            "kind": "image_fill",
                            "generated_at": now_iso(),
                            "db": args.db,
                            "storage_root": str(storage_root),
                            "dry_run": bool(args.dry_run),
                            "run_id": run_id,
                            "candidates": len(ids),
                        }
                    }
                    w.write(safe_json(meta) + "\n")
                    stats = process_candidates(
                        con, ids, filler, reporter, chunk_size=chunk_size, statuses=statuses, report=w
                    )
            else:
                stats = process_candidates(con, ids, filler, reporter, chunk_size=chunk_size, statuses=statuses)
            if run_id is not None:
                finish_run(con, run_id, f"candidates={len(ids)} updated={stats.updated}")
        except sqlite3.Error as e:
            errors.append(f"systemic failure: {e}")
    finally:
        session.close()
        con.close()

    warnings = reporter.warnings
    summary = {
        "ok": len(errors) == 0,
        "tool": "fill_missing_images",
        "dryRun": bool(args.dry_run),
        "db": args.db,
        "storageRoot": str(storage_root),
        "runId": run_id,
        "reportPath": str(report_path) if report_path is not None else None,
        "candidates": len(ids),
        "total": stats.total,
        "updated": stats.updated,
        "missing": sum(v for k, v in statuses.items() if k != STATUS_EXISTS),
        "skippedNoDimensions": statuses[STATUS_NO_DIMENSIONS],
        "fetchFailed": statuses[STATUS_FETCH_FAILED],
        "failed": statuses[STATUS_UNSUPPORTED] + statuses[STATUS_LOAD_FAILED] + statuses[STATUS_PERSIST_FAILED],
        "warningCount": reporter.warning_count,
        "warningsTruncated": reporter.warning_count > len(warnings),
        "warnings": warnings,
        "errors": errors + reporter.errors,
    }
    print(safe_json(summary))
    return 0 if summary["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
