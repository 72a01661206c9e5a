"""Request framing over a non-blocking socket's receive buffer."""

from __future__ import annotations

from dataclasses import dataclass

from config import MAX_BODY_BYTES, MAX_HEADER_BYTES, MAX_REQUEST_BYTES
from request import parse_header_fields


class HTTPReadError(Exception):
    """Raised when a client request cannot be safely read from the socket."""


class MalformedRequestError(HTTPReadError):
    """Raised when socket bytes do not form a valid HTTP request head."""


class HeaderTooLargeError(HTTPReadError):
    """Raised when HTTP headers exceed configured maximum size."""


class PayloadTooLargeError(HTTPReadError):
    """Raised when request body exceeds configured maximum size."""


@dataclass(slots=True)
class RequestHeadInfo:
    header_end_index: int
    expected_body_length: int
    has_transfer_encoding: bool


def inspect_http_request_head(buffer: bytes) -> RequestHeadInfo | None:
    """Inspect request headers from an in-memory buffer, if complete."""
    if len(buffer) > MAX_REQUEST_BYTES:
        raise PayloadTooLargeError("Request exceeded MAX_REQUEST_BYTES")

    header_end_index = buffer.find(b"\r\n\r\n")
    if header_end_index == -1:
        if len(buffer) > MAX_HEADER_BYTES:
            raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")
        return None

    if header_end_index + 4 > MAX_HEADER_BYTES:
        raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")

    head_lines = bytes(buffer[:header_end_index]).decode("iso-8859-1").split("\r\n")
    try:
        fields = parse_header_fields(head_lines[1:])
    except ValueError as exc:
        raise MalformedRequestError(str(exc)) from exc
    expected_body_length = 0
    raw_length = fields.get("content-length")
    if raw_length is not None:
        try:
            expected_body_length = int(raw_length)
        except ValueError as exc:
            raise MalformedRequestError("Invalid Content-Length header") from exc
        if expected_body_length < 0:
            raise MalformedRequestError("Negative Content-Length header")
        if expected_body_length > MAX_BODY_BYTES:
            raise PayloadTooLargeError("Body exceeded MAX_BODY_BYTES")

    return RequestHeadInfo(
        header_end_index=header_end_index,
        expected_body_length=expected_body_length,
        has_transfer_encoding="transfer-encoding" in fields,
    )


def extract_http_request_message(buffer: bytes) -> tuple[bytes, bytes] | None:
    """Split one complete request off the front of ``buffer``.

    Returns ``(request_bytes, leftover)`` or ``None`` when more bytes are
    needed. Requests with a Transfer-Encoding are returned head-only; the
    parser rejects them and the connection is closed.
    """
    head_info = inspect_http_request_head(buffer)
    if head_info is None:
        return None

    body_start = head_info.header_end_index + 4
    if head_info.has_transfer_encoding:
        return buffer[:body_start], b""

    request_length = body_start + head_info.expected_body_length
    if len(buffer) < request_length:
        return None
    return buffer[:request_length], buffer[request_length:]
