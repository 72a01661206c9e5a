"""Request path to filesystem path resolution."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

from config import ServerConfig


class UnsafePathError(ValueError):
    """Raised when a request path would resolve outside the served root."""


@dataclass(frozen=True, slots=True)
class ResolvedPath:
    path: Path
    exists: bool
    is_directory: bool


def resolve_request_path(request_path: str, config: ServerConfig) -> ResolvedPath:
    """Map a request path onto the served tree.

    ``/`` and directory requests are redirected to the default document.
    Every candidate is canonicalized and confined to ``config.root_dir``
    before the filesystem is consulted.
    """
    if request_path == "/":
        request_path = f"/{config.default_document}"

    decoded_path = unquote(request_path)
    if "\x00" in decoded_path:
        raise UnsafePathError("Request path contains a NUL byte")

    candidate = _confine(config.root_dir / decoded_path.lstrip("/"), config.root_dir)
    if os.path.isdir(candidate):
        candidate = _confine(candidate / config.default_document, config.root_dir)

    return ResolvedPath(
        path=candidate,
        exists=os.path.exists(candidate),
        is_directory=os.path.isdir(candidate),
    )


def _confine(candidate: Path, root: Path) -> Path:
    # root is already canonical (ServerConfig resolves it)
    resolved = candidate.resolve()
    try:
        resolved.relative_to(root)
    except ValueError as exc:
        raise UnsafePathError(f"{candidate} escapes {root}") from exc
    return resolved
