"""Extension to Content-Type lookup for served assets."""

from collections.abc import Mapping
from pathlib import PurePath
from types import MappingProxyType

DEFAULT_CONTENT_TYPE = "application/octet-stream"

MIME_TABLE: Mapping[str, str] = MappingProxyType(
    {
        ".html": "text/html",
        ".css": "text/css",
        ".js": "application/javascript",
        ".json": "application/json",
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".gif": "image/gif",
        ".svg": "image/svg+xml",
        ".webp": "image/webp",
        ".ico": "image/x-icon",
        ".woff": "font/woff",
        ".woff2": "font/woff2",
        ".ttf": "font/ttf",
        ".eot": "application/vnd.ms-fontobject",
    }
)

# Font formats that predate the font/* top-level type.
_LEGACY_FONT_TYPES = frozenset({"application/vnd.ms-fontobject"})


def get_content_type(
    file_path: PurePath,
    mime_table: Mapping[str, str] = MIME_TABLE,
) -> str:
    return mime_table.get(file_path.suffix.lower(), DEFAULT_CONTENT_TYPE)


def is_image_type(content_type: str) -> bool:
    return content_type.startswith("image/")


def is_font_type(content_type: str) -> bool:
    return content_type.startswith("font/") or content_type in _LEGACY_FONT_TYPES
