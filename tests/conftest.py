from __future__ import annotations

import json
import sqlite3
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

PY_ROOT = Path(__file__).resolve().parents[1] / "py"
if str(PY_ROOT) not in sys.path:
    sys.path.insert(0, str(PY_ROOT))

from media_catalog_schema import connect_db, create_schema_if_needed  # noqa: E402
from placeholder_fetch import FetchedFile  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\nplaceholder"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "catalog.sqlite"
    con = connect_db(str(path))
    create_schema_if_needed(con)
    con.close()
    return path


@pytest.fixture()
def catalog(db_path: Path) -> sqlite3.Connection:
    con = connect_db(str(db_path))
    yield con
    con.close()


@pytest.fixture()
def storage_root(tmp_path: Path) -> Path:
    root = tmp_path / "public"
    root.mkdir()
    return root


@pytest.fixture()
def add_media(catalog: sqlite3.Connection) -> Callable[..., str]:
    def _add(
        media_id: str,
        mime_type: str | None = "image/png",
        *,
        file_name: str | None = None,
        file_extension: str | None = None,
        meta: Any = None,
        path: str | None = None,
    ) -> str:
        meta_text = meta if isinstance(meta, str) or meta is None else json.dumps(meta)
        catalog.execute(
            """
            INSERT INTO media (id, file_name, mime_type, file_extension, meta_data, path, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (media_id, file_name or f"image-{media_id}", mime_type, file_extension, meta_text, path, "2024-01-01T00:00:00+00:00"),
        )
        return media_id

    return _add


class FakeFetcher:
    def __init__(self, data: bytes | None = PNG_BYTES, error: Exception | None = None):
        self.data = data
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def __call__(self, url: str, file_name: str) -> FetchedFile | None:
        self.calls.append((url, file_name))
        if self.error is not None:
            raise self.error
        if self.data is None:
            return None
        ext = url.rstrip("/").rsplit("/", 1)[-1]
        return FetchedFile(data=self.data, file_name=file_name, mime_type=f"image/{ext}", file_extension=ext, url=url)


@pytest.fixture()
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()
