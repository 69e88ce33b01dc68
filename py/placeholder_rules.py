#!/usr/bin/env python3
from __future__ import annotations

from typing import Any

PLACEHOLDER_BASE_URL = "https://placehold.co"
SUPPORTED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")


class UnsupportedMimeTypeError(ValueError):
    """A record reached extension resolution with a mime type we cannot fill."""

    def __init__(self, mime_type: str | None):
        super().__init__(f'Unknown mime type "{mime_type}"')
        self.mime_type = mime_type


def get_extension(mime_type: str | None, file_extension: str | None = None) -> str:
    if mime_type == "image/jpeg":
        ext = str(file_extension or "").strip().lstrip(".")
        return ext or "jpg"
    if mime_type == "image/png":
        return "png"
    if mime_type == "image/webp":
        return "webp"
    raise UnsupportedMimeTypeError(mime_type)


def _positive_int(v: Any) -> int | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v if v > 0 else None
    if isinstance(v, float):
        if v.is_integer() and v > 0:
            return int(v)
        return None
    if isinstance(v, str):
        s = v.strip()
        if s.isdigit() and int(s) > 0:
            return int(s)
    return None


def get_dimensions(metadata: Any) -> tuple[int, int] | None:
    if not isinstance(metadata, dict) or not metadata:
        return None
    width = _positive_int(metadata.get("width"))
    height = _positive_int(metadata.get("height"))
    if width is None or height is None:
        return None
    return width, height


def build_placeholder_url(width: int, height: int, extension: str, base_url: str = PLACEHOLDER_BASE_URL) -> str:
    # Path layout is the placehold.co contract: /{w}x{h}/{format}
    return f"{base_url.rstrip('/')}/{int(width)}x{int(height)}/{extension}"
