#!/usr/bin/env python3
"""Download placeholder images from the placeholder service over HTTP."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

import requests

DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_USER_AGENT = "media-image-filler"
CHUNK_BYTES = 1024 * 128


class FetchError(RuntimeError):
    pass


@dataclass
class FetchedFile:
    data: bytes
    file_name: str
    mime_type: str | None
    file_extension: str | None
    url: str

    @property
    def file_size(self) -> int:
        return len(self.data)


def create_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent, "Accept": "image/*"})
    return session


def _content_type(headers) -> str | None:
    raw = str((headers or {}).get("Content-Type") or "").strip()
    if not raw:
        return None
    return raw.split(";", 1)[0].strip().lower() or None


def _url_extension(url: str) -> str | None:
    tail = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
    return tail.lower() or None


def fetch_file_from_url(
    session: requests.Session,
    url: str,
    file_name: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> FetchedFile | None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        raise FetchError(f"unsupported url scheme: {parsed.scheme or '?'} url={url}")

    try:
        resp = session.get(url, stream=True, timeout=timeout, allow_redirects=True)
    except requests.RequestException as e:
        raise FetchError(f"request failed: url={url} :: {e}") from e

    try:
        if not resp.ok:
            raise FetchError(f"HTTP {resp.status_code} url={url}")
        buf = bytearray()
        try:
            for chunk in resp.iter_content(CHUNK_BYTES):
                if not chunk:
                    continue
                buf.extend(chunk)
                if len(buf) > max_bytes:
                    raise FetchError(f"response exceeds {max_bytes} bytes url={url}")
        except requests.RequestException as e:
            raise FetchError(f"read failed: url={url} :: {e}") from e
    finally:
        resp.close()

    if not buf:
        return None
    return FetchedFile(
        data=bytes(buf),
        file_name=file_name,
        mime_type=_content_type(resp.headers),
        file_extension=_url_extension(url),
        url=url,
    )
