"""Configuration constants and the immutable server configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from mime_types import MIME_TABLE

HOST: str = "0.0.0.0"
PORT: int = 4321
ROOT_DIR: str = "dist"
DEFAULT_DOCUMENT: str = "index.html"
SPA_FALLBACK: bool = True
SERVER_NAME: str = "spa-static-server/1.0"
LOG_FORMAT: str = "plain"

READ_CHUNK_SIZE: int = 8192
WRITE_CHUNK_SIZE: int = 65_536
SELECT_TIMEOUT_SECS: float = 0.2
IDLE_SWEEP_INTERVAL_SECS: float = 0.5
ACCEPT_BACKOFF_SECS: float = 0.1
KEEPALIVE_TIMEOUT_SECS: int = 5
REQUEST_TIMEOUT_SECS: int = 30
DRAIN_TIMEOUT_SECS: float | None = None
MAX_ACTIVE_CONNECTIONS: int = 512
MAX_KEEPALIVE_REQUESTS: int = 100
LISTEN_BACKLOG: int = 128

MAX_REQUEST_BYTES: int = 1_048_576
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 524_288
MAX_TARGET_LENGTH: int = 2048


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Process-wide settings, fixed once the server starts."""

    host: str = HOST
    port: int = PORT
    root_dir: Path = Path(ROOT_DIR)
    default_document: str = DEFAULT_DOCUMENT
    spa_fallback: bool = SPA_FALLBACK
    keepalive_timeout_secs: float = KEEPALIVE_TIMEOUT_SECS
    request_timeout_secs: float = REQUEST_TIMEOUT_SECS
    drain_timeout_secs: float | None = DRAIN_TIMEOUT_SECS
    max_active_connections: int = MAX_ACTIVE_CONNECTIONS
    log_format: str = LOG_FORMAT
    mime_table: Mapping[str, str] = field(
        default_factory=lambda: MIME_TABLE,
        repr=False,
        compare=False,
    )

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if not self.default_document or "/" in self.default_document:
            raise ValueError("default_document must be a bare file name")
        if self.log_format not in {"plain", "json"}:
            raise ValueError(f"Unsupported log format: {self.log_format}")
        object.__setattr__(self, "root_dir", Path(self.root_dir).resolve())

    @property
    def default_document_path(self) -> Path:
        return self.root_dir / self.default_document
