"""Main HTTP server entry point and connection lifecycle orchestration."""

from __future__ import annotations

import argparse
import errno
import json
import logging
import os
import selectors
import signal
import socket
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from config import (
    ACCEPT_BACKOFF_SECS,
    DEFAULT_DOCUMENT,
    DRAIN_TIMEOUT_SECS,
    HOST,
    IDLE_SWEEP_INTERVAL_SECS,
    KEEPALIVE_TIMEOUT_SECS,
    LISTEN_BACKLOG,
    LOG_FORMAT,
    MAX_ACTIVE_CONNECTIONS,
    MAX_KEEPALIVE_REQUESTS,
    PORT,
    READ_CHUNK_SIZE,
    REQUEST_TIMEOUT_SECS,
    ROOT_DIR,
    SELECT_TIMEOUT_SECS,
    WRITE_CHUNK_SIZE,
    ServerConfig,
)
from handlers.static_handlers import serve_asset
from lifecycle import BindError, LifecycleState, ServerLifecycle
from metrics import MetricsRegistry
from request import HTTPRequest, HTTPRequestParseError
from response import REASON_PHRASES, HTTPResponse, prepare_response
from socket_handler import (
    HeaderTooLargeError,
    MalformedRequestError,
    PayloadTooLargeError,
    extract_http_request_message,
)

logger = logging.getLogger(__name__)

_RESOURCE_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM})


@dataclass(slots=True)
class OutboundResponse:
    """Tracks incremental write state for a queued HTTP response."""

    response: HTTPResponse
    method: str
    path: str
    started_at: float
    request_id: int
    bytes_in: int
    close_after: bool
    metrics_started: bool
    pending_chunks: deque[memoryview] = field(default_factory=deque)
    file_obj: BinaryIO | None = None
    file_remaining: int = 0
    file_offset: int = 0
    bytes_sent: int = 0

    @classmethod
    def from_http_response(
        cls,
        *,
        response: HTTPResponse,
        method: str,
        path: str,
        started_at: float,
        request_id: int,
        bytes_in: int,
        close_after: bool,
        metrics_started: bool,
    ) -> "OutboundResponse":
        prepared = prepare_response(response)
        outbound = cls(
            response=response,
            method=method,
            path=path,
            started_at=started_at,
            request_id=request_id,
            bytes_in=bytes_in,
            close_after=close_after,
            metrics_started=metrics_started,
        )
        outbound.pending_chunks.append(memoryview(prepared.head))
        if prepared.body:
            outbound.pending_chunks.append(memoryview(prepared.body))
        elif prepared.file_obj is not None:
            outbound.file_obj = prepared.file_obj
            outbound.file_remaining = prepared.file_size
        return outbound

    def close_resources(self) -> None:
        self.file_obj = None
        self.response.close()


@dataclass(slots=True)
class ConnectionState:
    sock: socket.socket
    address: tuple[str, int]
    connection_id: int
    recv_buffer: bytearray = field(default_factory=bytearray)
    queued_responses: deque[OutboundResponse] = field(default_factory=deque)
    current_response: OutboundResponse | None = None
    requests_served: int = 0
    last_activity: float = field(default_factory=time.monotonic)
    request_started_at: float = field(default_factory=time.monotonic)
    closing: bool = False

    @property
    def busy(self) -> bool:
        return self.current_response is not None or bool(self.queued_responses)


class HTTPServer:
    """Single-threaded static file server built on a ``selectors`` loop."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        lifecycle: ServerLifecycle | None = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.host = self.config.host
        self.port = self.config.port
        self.lifecycle = lifecycle or ServerLifecycle()
        self.metrics = MetricsRegistry()

        self._server_socket: socket.socket | None = None
        self._connections: dict[int, ConnectionState] = {}
        self._next_connection_id = 0
        self._use_sendfile = hasattr(os, "sendfile")
        self._accept_resume_at: float | None = None

    def bind(self) -> None:
        """Bind and listen; raises :class:`BindError` on failure."""
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.port))
            server_socket.listen(LISTEN_BACKLOG)
        except OSError as exc:
            server_socket.close()
            raise BindError(self.host, self.port, exc) from exc
        server_socket.setblocking(False)
        self._server_socket = server_socket
        self.port = server_socket.getsockname()[1]

    def start(self) -> None:
        """Bind if needed, then serve until the lifecycle reaches STOPPED."""
        if self._server_socket is None:
            self.bind()
        self.serve_forever()

    def stop(self, *, graceful: bool = True) -> None:
        """Request shutdown; safe to call from signal handlers and other threads."""
        if graceful:
            self.lifecycle.begin_draining()
        else:
            self.lifecycle.force_stop()

    def serve_forever(self) -> None:
        if self._server_socket is None:
            raise RuntimeError("serve_forever() called before bind()")

        with selectors.DefaultSelector() as selector:
            selector.register(self._server_socket, selectors.EVENT_READ, data=None)
            self.lifecycle.mark_running()
            self.metrics.set_drain_state(self.lifecycle.state.value)
            self._log_startup()

            drain_started_at: float | None = None
            last_idle_sweep = time.monotonic()
            try:
                while True:
                    state = self.lifecycle.state
                    if state is LifecycleState.STOPPED:
                        logger.info(
                            "Forced stop: dropping %d open connection(s)",
                            len(self._connections),
                        )
                        break
                    if state is LifecycleState.DRAINING:
                        now = time.monotonic()
                        if drain_started_at is None:
                            drain_started_at = now
                            self._begin_drain(selector)
                        self.metrics.set_drain_state(
                            "draining",
                            inflight_remaining=len(self._connections),
                            elapsed_ms=(now - drain_started_at) * 1000,
                        )
                        if not self._connections:
                            break
                        drain_timeout = self.config.drain_timeout_secs
                        if drain_timeout is not None and now - drain_started_at > drain_timeout:
                            logger.warning(
                                "Drain timeout after %.1fs; dropping %d connection(s)",
                                drain_timeout,
                                len(self._connections),
                            )
                            break

                    for key, mask in selector.select(timeout=SELECT_TIMEOUT_SECS):
                        if key.data is None:
                            self._accept_clients(selector)
                            continue

                        conn: ConnectionState = key.data
                        if conn.connection_id not in self._connections:
                            continue
                        if mask & selectors.EVENT_READ:
                            self._handle_read(conn, selector)
                        if mask & selectors.EVENT_WRITE and conn.connection_id in self._connections:
                            self._handle_write(conn, selector)

                    now = time.monotonic()
                    if self._accept_resume_at is not None and now >= self._accept_resume_at:
                        self._resume_accepting(selector)
                    if now - last_idle_sweep >= IDLE_SWEEP_INTERVAL_SECS:
                        self._sweep_timeouts(selector, now)
                        last_idle_sweep = now
            finally:
                self._close_listener(selector)
                for conn in list(self._connections.values()):
                    self._close_connection(conn, selector)
                self.metrics.set_drain_state("stopped")
                self.lifecycle.mark_stopped()

    def _log_startup(self) -> None:
        logger.info("Serving %s", self.config.root_dir)
        logger.info("Local:   http://localhost:%d", self.port)
        logger.info("Network: http://%s:%d", self.host, self.port)
        if not self.config.root_dir.is_dir():
            logger.warning("Root directory %s does not exist", self.config.root_dir)
        elif not self.config.default_document_path.is_file():
            logger.warning(
                "Default document %s is missing; unknown paths will return 404",
                self.config.default_document_path,
            )

    def _begin_drain(self, selector: selectors.BaseSelector) -> None:
        logger.info("Draining: no longer accepting connections")
        self._close_listener(selector)
        for conn in list(self._connections.values()):
            if conn.busy:
                conn.closing = True
                self._update_interest(conn, selector)
            else:
                self._close_connection(conn, selector)

    def _close_listener(self, selector: selectors.BaseSelector) -> None:
        if self._server_socket is None:
            return
        try:
            selector.unregister(self._server_socket)
        except (KeyError, ValueError):
            pass
        self._server_socket.close()
        self._server_socket = None

    def _accept_clients(self, selector: selectors.BaseSelector) -> None:
        while self._server_socket is not None and self.lifecycle.accepting:
            try:
                client_socket, address = self._server_socket.accept()
            except BlockingIOError:
                return
            except OSError as exc:
                logger.warning("accept() failed: %s", exc)
                if exc.errno in _RESOURCE_ERRNOS:
                    self._pause_accepting(selector)
                return

            if len(self._connections) >= self.config.max_active_connections:
                self._reject_client(client_socket)
                continue

            client_socket.setblocking(False)
            self._next_connection_id += 1
            conn = ConnectionState(
                sock=client_socket,
                address=address,
                connection_id=self._next_connection_id,
            )
            self._connections[conn.connection_id] = conn
            selector.register(client_socket, selectors.EVENT_READ, data=conn)
            self.metrics.connection_opened()

    def _pause_accepting(self, selector: selectors.BaseSelector) -> None:
        # out of descriptors: the listener stays readable, so stop polling it for a while
        if self._server_socket is None or self._accept_resume_at is not None:
            return
        try:
            selector.unregister(self._server_socket)
        except (KeyError, ValueError):
            return
        self._accept_resume_at = time.monotonic() + ACCEPT_BACKOFF_SECS

    def _resume_accepting(self, selector: selectors.BaseSelector) -> None:
        self._accept_resume_at = None
        if self._server_socket is None or not self.lifecycle.accepting:
            return
        selector.register(self._server_socket, selectors.EVENT_READ, data=None)

    def _reject_client(self, client_socket: socket.socket) -> None:
        self.metrics.connection_rejected()
        response = HTTPResponse(
            status_code=503,
            headers={"Connection": "close", "Retry-After": "1"},
            body="Service Unavailable",
        )
        with client_socket:
            client_socket.settimeout(1.0)
            try:
                client_socket.sendall(response.to_bytes())
            except OSError as exc:
                self.metrics.record_write_error(exc.__class__.__name__)

    def _handle_read(self, conn: ConnectionState, selector: selectors.BaseSelector) -> None:
        if conn.closing:
            return
        try:
            chunk = conn.sock.recv(READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError as exc:
            self.metrics.record_read_error(exc.__class__.__name__)
            self._close_connection(conn, selector)
            return

        if not chunk:
            conn.closing = True
            self._update_interest(conn, selector)
            return

        now = time.monotonic()
        conn.last_activity = now
        if not conn.recv_buffer:
            conn.request_started_at = now
        conn.recv_buffer.extend(chunk)

        self._process_buffer(conn)
        self._update_interest(conn, selector)

    def _process_buffer(self, conn: ConnectionState) -> None:
        """Dispatch the next buffered request once the previous response is written.

        Pipelined requests wait in ``recv_buffer`` so a connection never holds
        more than one open file.
        """
        while not conn.closing and not conn.busy:
            try:
                extracted = extract_http_request_message(bytes(conn.recv_buffer))
            except HeaderTooLargeError as exc:
                self._queue_protocol_error(conn, 431, exc)
                break
            except PayloadTooLargeError as exc:
                self._queue_protocol_error(conn, 413, exc)
                break
            except MalformedRequestError as exc:
                self._queue_protocol_error(conn, 400, exc)
                break

            if extracted is None:
                break

            raw_request, leftover = extracted
            conn.recv_buffer = bytearray(leftover)
            conn.request_started_at = time.monotonic()
            started_at = time.perf_counter()

            try:
                request = HTTPRequest.from_bytes(raw_request)
            except HTTPRequestParseError as exc:
                self._queue_protocol_error(conn, exc.status_code, exc, bytes_in=len(raw_request))
                break

            conn.requests_served += 1
            connection_reused = conn.requests_served > 1
            self.metrics.request_started(connection_reused=connection_reused)

            response = self._dispatch(request)
            should_close = (
                not request.keep_alive
                or conn.requests_served >= MAX_KEEPALIVE_REQUESTS
                or not self.lifecycle.accepting
            )
            if should_close:
                response.headers.setdefault("Connection", "close")
            else:
                response.headers.setdefault("Connection", "keep-alive")
                response.headers.setdefault(
                    "Keep-Alive",
                    (
                        f"timeout={self.config.keepalive_timeout_secs:g}, "
                        f"max={MAX_KEEPALIVE_REQUESTS - conn.requests_served}"
                    ),
                )

            self._queue_response(
                conn,
                response,
                method=request.method,
                path=request.path,
                started_at=started_at,
                bytes_in=len(raw_request),
                close_after=should_close,
                metrics_started=True,
            )

    def _queue_protocol_error(
        self,
        conn: ConnectionState,
        status_code: int,
        exc: Exception,
        *,
        bytes_in: int = 0,
    ) -> None:
        self.metrics.record_read_error(exc.__class__.__name__)
        logger.debug("Protocol error from %s: %s", conn.address[0], exc)
        self._queue_response(
            conn,
            HTTPResponse(
                status_code=status_code,
                body=REASON_PHRASES.get(status_code, "Bad Request"),
            ),
            method="-",
            path="-",
            started_at=time.perf_counter(),
            bytes_in=bytes_in,
            close_after=True,
            metrics_started=False,
        )

    def _queue_response(
        self,
        conn: ConnectionState,
        response: HTTPResponse,
        *,
        method: str,
        path: str,
        started_at: float,
        bytes_in: int,
        close_after: bool,
        metrics_started: bool,
    ) -> None:
        if close_after:
            response.headers.setdefault("Connection", "close")
            conn.closing = True
        conn.queued_responses.append(
            OutboundResponse.from_http_response(
                response=response,
                method=method,
                path=path,
                started_at=started_at,
                request_id=conn.requests_served,
                bytes_in=bytes_in,
                close_after=close_after,
                metrics_started=metrics_started,
            )
        )

    def _handle_write(self, conn: ConnectionState, selector: selectors.BaseSelector) -> None:
        while True:
            if conn.current_response is None:
                if not conn.queued_responses:
                    break
                conn.current_response = conn.queued_responses.popleft()
            outbound = conn.current_response

            if outbound.pending_chunks:
                view = outbound.pending_chunks[0]
                try:
                    sent = conn.sock.send(view)
                except BlockingIOError:
                    return
                except OSError as exc:
                    self._abandon(conn, selector, exc.__class__.__name__, str(exc))
                    return

                conn.last_activity = time.monotonic()
                outbound.bytes_sent += sent
                if sent < len(view):
                    outbound.pending_chunks[0] = view[sent:]
                    return
                outbound.pending_chunks.popleft()
                continue

            if outbound.file_obj is not None and outbound.file_remaining > 0:
                if not self._pump_file(conn, outbound, selector):
                    return
                continue

            outbound.close_resources()
            conn.current_response = None
            self._finalize_response(conn, outbound, selector)
            if conn.connection_id not in self._connections:
                return
            if conn.recv_buffer:
                conn.request_started_at = time.monotonic()
                self._process_buffer(conn)

        self._update_interest(conn, selector)

    def _pump_file(
        self,
        conn: ConnectionState,
        outbound: OutboundResponse,
        selector: selectors.BaseSelector,
    ) -> bool:
        """Move one chunk of file body; False means stop writing for now."""
        if outbound.file_obj is None:
            return False
        if self._use_sendfile:
            try:
                sent = os.sendfile(
                    conn.sock.fileno(),
                    outbound.file_obj.fileno(),
                    outbound.file_offset,
                    min(WRITE_CHUNK_SIZE, outbound.file_remaining),
                )
            except BlockingIOError:
                return False
            except OSError as exc:
                self._abandon(conn, selector, exc.__class__.__name__, str(exc))
                return False
            if not sent:
                self._abandon(conn, selector, "TruncatedFile", "file shrank during transfer")
                return False
            conn.last_activity = time.monotonic()
            outbound.bytes_sent += sent
            outbound.file_offset += sent
            outbound.file_remaining -= sent
            return True

        try:
            chunk = outbound.file_obj.read(min(WRITE_CHUNK_SIZE, outbound.file_remaining))
        except OSError as exc:
            self.metrics.record_read_error(exc.__class__.__name__)
            logger.error("Read failed mid-response on %s: %s", outbound.path, exc)
            self._close_connection(conn, selector)
            return False
        if not chunk:
            self._abandon(conn, selector, "TruncatedFile", "file shrank during transfer")
            return False
        outbound.pending_chunks.append(memoryview(chunk))
        outbound.file_remaining -= len(chunk)
        return True

    def _abandon(
        self,
        conn: ConnectionState,
        selector: selectors.BaseSelector,
        error_type: str,
        detail: str,
    ) -> None:
        path = conn.current_response.path if conn.current_response is not None else "-"
        logger.warning(
            "Abandoning response to %s for %s: %s",
            conn.address[0],
            path,
            detail,
        )
        self.metrics.record_write_error(error_type)
        self._close_connection(conn, selector)

    def _finalize_response(
        self,
        conn: ConnectionState,
        outbound: OutboundResponse,
        selector: selectors.BaseSelector,
    ) -> None:
        if outbound.metrics_started:
            self.metrics.request_finished()
        self._record_and_log(conn, outbound)
        if outbound.close_after:
            self._close_connection(conn, selector)

    def _sweep_timeouts(self, selector: selectors.BaseSelector, now: float) -> None:
        for conn in list(self._connections.values()):
            if conn.busy:
                if now - conn.last_activity > self.config.request_timeout_secs:
                    self._abandon(conn, selector, "WriteTimeout", "client stopped reading")
                continue
            if conn.closing:
                continue
            if conn.recv_buffer:
                if now - conn.request_started_at > self.config.request_timeout_secs:
                    self._queue_response(
                        conn,
                        HTTPResponse(status_code=408, body="Request Timeout"),
                        method="-",
                        path="-",
                        started_at=time.perf_counter(),
                        bytes_in=len(conn.recv_buffer),
                        close_after=True,
                        metrics_started=False,
                    )
                    self._update_interest(conn, selector)
                continue
            if now - conn.last_activity > self.config.keepalive_timeout_secs:
                logger.debug("Closing idle connection %s", conn.connection_id)
                self._close_connection(conn, selector)

    def _update_interest(self, conn: ConnectionState, selector: selectors.BaseSelector) -> None:
        if conn.connection_id not in self._connections:
            return

        if conn.closing and not conn.busy:
            self._close_connection(conn, selector)
            return

        # reads pause while a response is in flight; recv_buffer stays bounded
        events = selectors.EVENT_WRITE if conn.busy or conn.closing else selectors.EVENT_READ

        try:
            selector.modify(conn.sock, events, data=conn)
        except (KeyError, ValueError, OSError):
            self._close_connection(conn, selector)

    def _close_connection(self, conn: ConnectionState, selector: selectors.BaseSelector) -> None:
        if self._connections.pop(conn.connection_id, None) is None:
            return

        try:
            selector.unregister(conn.sock)
        except (KeyError, ValueError):
            pass

        pending = list(conn.queued_responses)
        if conn.current_response is not None:
            pending.insert(0, conn.current_response)
            conn.current_response = None
        conn.queued_responses.clear()
        for outbound in pending:
            outbound.close_resources()
            if outbound.metrics_started:
                self.metrics.request_finished()

        try:
            conn.sock.close()
        except OSError:
            pass
        self.metrics.connection_closed()

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        try:
            response = serve_asset(request, self.config)
        except Exception:
            logger.exception("Unhandled error while serving %s", request.path)
            response = HTTPResponse(status_code=500, body="500 - Internal server error")
        if request.method == "HEAD":
            response.omit_body = True
        return response

    def _record_and_log(self, conn: ConnectionState, outbound: OutboundResponse) -> None:
        duration_ms = (time.perf_counter() - outbound.started_at) * 1000
        status_code = outbound.response.status_code
        self.metrics.record_request(
            status_code=status_code,
            duration_ms=duration_ms,
            bytes_sent=outbound.bytes_sent,
        )
        event = {
            "client": conn.address[0],
            "method": outbound.method,
            "path": outbound.path,
            "status": status_code,
            "connection_id": conn.connection_id,
            "request_id": outbound.request_id,
            "bytes_in": outbound.bytes_in,
            "bytes_out": outbound.bytes_sent,
            "latency_ms": round(duration_ms, 3),
        }
        if self.config.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            (
                "client=%s method=%s path=%s status=%s connection_id=%s "
                "request_id=%s bytes_in=%s bytes_out=%s duration_ms=%.2f"
            ),
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["connection_id"],
            event["request_id"],
            event["bytes_in"],
            event["bytes_out"],
            duration_ms,
        )


def install_signal_handlers(server: HTTPServer) -> None:
    """SIGINT drains then exits; a second SIGINT or SIGTERM stops at once."""

    def _on_interrupt(_signum: int, _frame: object) -> None:
        if server.lifecycle.state is LifecycleState.DRAINING:
            logger.info("Second interrupt; stopping immediately")
            server.stop(graceful=False)
            return
        logger.info("Shutting down server gracefully...")
        server.stop(graceful=True)

    def _on_terminate(_signum: int, _frame: object) -> None:
        logger.info("Server terminated.")
        server.stop(graceful=False)

    signal.signal(signal.SIGINT, _on_interrupt)
    signal.signal(signal.SIGTERM, _on_terminate)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve a pre-built static site with SPA fallback")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--root", type=Path, default=Path(ROOT_DIR))
    parser.add_argument("--default-document", default=DEFAULT_DOCUMENT)
    parser.add_argument(
        "--no-spa-fallback",
        dest="spa_fallback",
        action="store_false",
        help="return 404 for missing paths instead of the default document",
    )
    parser.add_argument("--keepalive-timeout", type=float, default=KEEPALIVE_TIMEOUT_SECS)
    parser.add_argument("--request-timeout", type=float, default=REQUEST_TIMEOUT_SECS)
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=DRAIN_TIMEOUT_SECS,
        help="bound on the graceful drain in seconds; unbounded by default",
    )
    parser.add_argument("--max-connections", type=int, default=MAX_ACTIVE_CONNECTIONS)
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )
    return parser


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return _build_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        host=args.host,
        port=args.port,
        root_dir=args.root,
        default_document=args.default_document,
        spa_fallback=args.spa_fallback,
        keepalive_timeout_secs=args.keepalive_timeout,
        request_timeout_secs=args.request_timeout,
        drain_timeout_secs=args.drain_timeout,
        max_active_connections=args.max_connections,
        log_format=args.log_format,
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = config_from_args(args)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    server = HTTPServer(config)
    try:
        server.bind()
    except BindError as exc:
        if exc.address_in_use:
            logger.error("Port %d is already in use. Try a different port.", config.port)
        else:
            logger.error("Server error: %s", exc)
        return 1

    install_signal_handlers(server)
    server.serve_forever()
    snapshot = server.metrics.snapshot()
    logger.info(
        "Server stopped successfully. requests=%s bytes_out=%s",
        snapshot["total_requests"],
        snapshot["bytes_sent_total"],
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
