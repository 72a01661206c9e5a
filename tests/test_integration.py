"""Socket-level integration tests for the static server."""

import errno
import os
import selectors
import socket
import struct
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from config import ServerConfig
from conftest import APP_JS, INDEX_HTML, fetch, parse_response, recv_http_response
from server import HTTPServer

MakeServer = Callable[..., HTTPServer]


def test_root_serves_index(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    status, headers, body = fetch(server, "/")

    assert status == b"HTTP/1.1 200 OK"
    assert headers["content-type"] == "text/html"
    assert headers["x-content-type-options"] == "nosniff"
    assert headers["x-frame-options"] == "SAMEORIGIN"
    assert headers["referrer-policy"] == "strict-origin-when-cross-origin"
    assert "cache-control" not in headers
    assert body == INDEX_HTML


def test_script_is_served_with_immutable_cache(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    status, headers, body = fetch(server, "/_astro/app.js")

    assert status == b"HTTP/1.1 200 OK"
    assert headers["content-type"] == "application/javascript"
    assert headers["cache-control"] == "public, max-age=31536000, immutable"
    assert headers["content-length"] == str(len(APP_JS))
    assert body == APP_JS


def test_unknown_route_gets_app_shell(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    status, headers, body = fetch(server, "/does-not-exist")

    assert status == b"HTTP/1.1 200 OK"
    assert headers["content-type"] == "text/html"
    assert body == INDEX_HTML


def test_missing_app_shell_returns_404(site_root: Path, make_server: MakeServer) -> None:
    (site_root / "index.html").unlink()
    server = make_server(site_root)

    status, headers, body = fetch(server, "/does-not-exist")

    assert status == b"HTTP/1.1 404 Not Found"
    assert headers["content-type"].startswith("text/plain")
    assert body == b"404 - File not found"


def test_disabled_spa_fallback_returns_404(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root, spa_fallback=False)

    status, _headers, _body = fetch(server, "/pricing")

    assert status == b"HTTP/1.1 404 Not Found"


def test_directory_request_never_lists(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    _status, _headers, docs_body = fetch(server, "/docs/")
    _status, _headers, astro_body = fetch(server, "/_astro/")

    assert docs_body == b"<h1>docs</h1>"
    assert astro_body == INDEX_HTML


def test_traversal_is_forbidden(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    status, _headers, body = fetch(server, "/../secret.txt")
    encoded_status, _headers, encoded_body = fetch(server, "/%2e%2e/secret.txt")

    assert status == b"HTTP/1.1 403 Forbidden"
    assert encoded_status == b"HTTP/1.1 403 Forbidden"
    assert b"top secret" not in body + encoded_body


def test_head_returns_headers_without_body(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"HEAD /_astro/app.js HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n")
        raw = bytearray()
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            raw.extend(chunk)

    status, headers, body = parse_response(bytes(raw))
    assert status == b"HTTP/1.1 200 OK"
    assert headers["content-length"] == str(len(APP_JS))
    assert body == b""


def test_query_string_is_ignored(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    _status, headers, body = fetch(server, "/_astro/app.js?v=42")

    assert headers["content-type"] == "application/javascript"
    assert body == APP_JS


def test_keepalive_pipelined_responses_keep_order(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(
            b"GET /_astro/app.js HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"\r\n"
            b"GET /_astro/style.css HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Connection: close\r\n"
            b"\r\n"
        )
        first = recv_http_response(sock)
        second = recv_http_response(sock)

    _status, first_headers, first_body = parse_response(first)
    _status, second_headers, second_body = parse_response(second)
    assert first_headers["connection"] == "keep-alive"
    assert first_body == APP_JS
    assert second_headers["content-type"] == "text/css"
    assert second_headers["connection"] == "close"
    assert second_body == b"body{margin:0}"


def test_malformed_request_gets_400(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"NONSENSE\r\n\r\n")
        status, _headers, _body = parse_response(recv_http_response(sock))

    assert status == b"HTTP/1.1 400 Bad Request"


def test_concurrent_requests(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root)

    with ThreadPoolExecutor(max_workers=20) as executor:
        results = list(executor.map(lambda _: fetch(server, "/_astro/app.js"), range(20)))

    assert all(body == APP_JS for _status, _headers, body in results)
    deadline = time.time() + 2
    while time.time() < deadline and server.metrics.snapshot()["total_requests"] < 20:
        time.sleep(0.02)
    assert server.metrics.snapshot()["status_counts"]["200"] == 20


def test_client_disconnect_mid_response_does_not_affect_others(
    site_root: Path,
    make_server: MakeServer,
) -> None:
    (site_root / "big.bin").write_bytes(b"\xab" * (16 * 1024 * 1024))
    server = make_server(site_root)

    rude = socket.create_connection((server.host, server.port), timeout=3)
    rude.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
    rude.sendall(b"GET /big.bin HTTP/1.1\r\nHost: localhost\r\n\r\n")
    rude.recv(1024)
    rude.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    rude.close()

    status, _headers, body = fetch(server, "/_astro/app.js")

    assert status == b"HTTP/1.1 200 OK"
    assert body == APP_JS

    deadline = time.time() + 3
    while time.time() < deadline and server.metrics.snapshot()["open_connections"]:
        time.sleep(0.05)
    assert server.metrics.snapshot()["open_connections"] == 0


def test_idle_keepalive_connection_is_closed(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root, keepalive_timeout_secs=0.3)

    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        recv_http_response(sock)
        assert sock.recv(1024) == b""


def test_stalled_request_gets_408(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root, request_timeout_secs=0.3)

    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(b"GET / HTTP/1.1\r\nHost: loc")
        status, _headers, _body = parse_response(recv_http_response(sock))

    assert status == b"HTTP/1.1 408 Request Timeout"


def test_connection_limit_returns_503(site_root: Path, make_server: MakeServer) -> None:
    server = make_server(site_root, max_active_connections=1)

    with socket.create_connection((server.host, server.port), timeout=3) as holder:
        holder.sendall(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        recv_http_response(holder)

        with socket.create_connection((server.host, server.port), timeout=3) as rejected:
            status, headers, _body = parse_response(recv_http_response(rejected))

    assert status == b"HTTP/1.1 503 Service Unavailable"
    assert headers["retry-after"] == "1"


@pytest.mark.skipif(not Path("/proc/self/fd").is_dir(), reason="needs /proc/self/fd")
def test_pipelined_requests_do_not_pin_file_descriptors(
    site_root: Path,
    make_server: MakeServer,
) -> None:
    (site_root / "big.bin").write_bytes(b"\xcd" * (16 * 1024 * 1024))
    server = make_server(site_root)
    baseline = len(os.listdir("/proc/self/fd"))

    clients: list[socket.socket] = []
    try:
        for _ in range(5):
            client = socket.create_connection((server.host, server.port), timeout=3)
            client.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
            client.sendall(b"GET /big.bin HTTP/1.1\r\nHost: localhost\r\n\r\n" * 60)
            clients.append(client)

        deadline = time.time() + 3
        while time.time() < deadline and server.metrics.snapshot()["open_connections"] < 5:
            time.sleep(0.02)
        time.sleep(0.3)
        growth = len(os.listdir("/proc/self/fd")) - baseline
    finally:
        for client in clients:
            client.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            client.close()

    # per connection: client socket, server socket, one open file
    assert growth <= 5 * 3 + 2


def test_accept_pauses_when_descriptors_run_out(
    site_root: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    server = HTTPServer(ServerConfig(host="127.0.0.1", port=0, root_dir=site_root))
    server.bind()
    server.lifecycle.mark_running()

    def _exhausted(_self: socket.socket) -> None:
        raise OSError(errno.EMFILE, "Too many open files")

    monkeypatch.setattr(socket.socket, "accept", _exhausted)
    try:
        with selectors.DefaultSelector() as selector:
            selector.register(server._server_socket, selectors.EVENT_READ, data=None)

            server._accept_clients(selector)
            assert len(selector.get_map()) == 0

            monkeypatch.undo()
            server._resume_accepting(selector)
            assert len(selector.get_map()) == 1
    finally:
        server._server_socket.close()
