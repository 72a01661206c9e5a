"""Static asset handler with SPA fallback to the default document."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import BinaryIO

from config import ServerConfig
from mime_types import get_content_type, is_font_type, is_image_type
from request import HTTPRequest
from response import HTTPResponse
from utils import ResolvedPath, UnsafePathError, resolve_request_path

logger = logging.getLogger(__name__)

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
SECURITY_HEADERS: tuple[tuple[str, str], ...] = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "SAMEORIGIN"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
)
_ALWAYS_CACHED_SUFFIXES = frozenset({".css", ".js"})


class AssetReadError(OSError):
    """Raised when an existing asset cannot be opened for reading."""


def build_asset_headers(resolved: ResolvedPath, content_type: str) -> dict[str, str]:
    headers = {"Content-Type": content_type}
    headers.update(SECURITY_HEADERS)
    if (
        resolved.path.suffix.lower() in _ALWAYS_CACHED_SUFFIXES
        or is_image_type(content_type)
        or is_font_type(content_type)
    ):
        headers["Cache-Control"] = IMMUTABLE_CACHE_CONTROL
    return headers


def open_asset(path: Path) -> tuple[BinaryIO, int]:
    """Open ``path`` for streaming and return ``(file_obj, size)``."""
    try:
        file_obj = path.open("rb")
    except OSError as exc:
        raise AssetReadError(exc.errno, f"cannot open {path}: {exc.strerror}") from exc
    try:
        file_stat = os.fstat(file_obj.fileno())
    except OSError as exc:
        file_obj.close()
        raise AssetReadError(exc.errno, f"cannot stat {path}: {exc.strerror}") from exc
    if not stat.S_ISREG(file_stat.st_mode):
        file_obj.close()
        raise AssetReadError(f"not a regular file: {path}")
    return file_obj, file_stat.st_size


def serve_asset(request: HTTPRequest, config: ServerConfig) -> HTTPResponse:
    try:
        resolved = resolve_request_path(request.path, config)
    except UnsafePathError as exc:
        logger.warning("Rejected request path %r: %s", request.path, exc)
        return HTTPResponse(status_code=403, body="403 - Forbidden")

    if resolved.exists and not resolved.is_directory:
        content_type = get_content_type(resolved.path, config.mime_table)
        return _file_response(
            resolved.path,
            build_asset_headers(resolved, content_type),
        )
    return serve_fallback(config)


def serve_fallback(config: ServerConfig) -> HTTPResponse:
    """Answer a request whose path does not name a file in the tree."""
    document = config.default_document_path
    if config.spa_fallback and document.is_file():
        headers = {"Content-Type": "text/html"}
        headers.update(SECURITY_HEADERS)
        return _file_response(document, headers)
    return HTTPResponse(status_code=404, body="404 - File not found")


def _file_response(path: Path, headers: dict[str, str]) -> HTTPResponse:
    try:
        file_obj, file_size = open_asset(path)
    except AssetReadError:
        logger.exception("Failed to read %s", path)
        return HTTPResponse(status_code=500, body="500 - Internal server error")
    return HTTPResponse(
        status_code=200,
        headers=headers,
        file_obj=file_obj,
        file_size=file_size,
    )
