"""HTTP response model and serializer."""

from __future__ import annotations

from dataclasses import dataclass, field
from email.utils import formatdate
from typing import BinaryIO

from config import SERVER_NAME

REASON_PHRASES: dict[int, str] = {
    200: "OK",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    408: "Request Timeout",
    413: "Payload Too Large",
    414: "URI Too Long",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    503: "Service Unavailable",
    505: "HTTP Version Not Supported",
}


@dataclass(slots=True)
class PreparedResponse:
    head: bytes
    body: bytes | None = None
    file_obj: BinaryIO | None = None
    file_size: int = 0


@dataclass(slots=True)
class HTTPResponse:
    """Status, headers and a body held either in memory or as an open file.

    ``file_obj`` ownership passes to whoever writes the response; call
    :meth:`close` once the body is no longer needed.
    """

    status_code: int
    reason_phrase: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | str = b""
    file_obj: BinaryIO | None = None
    file_size: int = 0
    omit_body: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if self.file_obj is not None and self.body:
            raise ValueError("Response cannot set both body and file_obj")

    @property
    def content_length(self) -> int:
        if self.file_obj is not None:
            return self.file_size
        return len(self.body)

    def close(self) -> None:
        if self.file_obj is not None:
            self.file_obj.close()
            self.file_obj = None

    def to_bytes(self) -> bytes:
        """Serialize the response into HTTP/1.1 wire format bytes."""
        prepared = prepare_response(self)
        payload = bytearray(prepared.head)
        if prepared.body is not None:
            payload.extend(prepared.body)
        elif prepared.file_obj is not None:
            payload.extend(prepared.file_obj.read(prepared.file_size))
            self.close()
        return bytes(payload)


def prepare_response(response: HTTPResponse) -> PreparedResponse:
    """Freeze the header block; nothing about the head changes after this."""
    reason = response.reason_phrase or REASON_PHRASES.get(response.status_code, "Unknown")
    normalized_headers = dict(response.headers)
    normalized_headers.setdefault(
        "Date",
        formatdate(timeval=None, localtime=False, usegmt=True),
    )
    normalized_headers.setdefault("Server", SERVER_NAME)
    normalized_headers.setdefault("Content-Type", "text/plain; charset=utf-8")
    normalized_headers["Content-Length"] = str(response.content_length)

    header_lines = [f"HTTP/1.1 {response.status_code} {reason}"]
    header_lines.extend(f"{key}: {value}" for key, value in normalized_headers.items())
    head = "\r\n".join(header_lines).encode("iso-8859-1") + b"\r\n\r\n"

    if response.omit_body:
        response.close()
        return PreparedResponse(head=head)
    if response.file_obj is not None:
        return PreparedResponse(
            head=head,
            file_obj=response.file_obj,
            file_size=response.file_size,
        )
    return PreparedResponse(head=head, body=response.body)
