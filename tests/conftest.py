"""Shared fixtures: a built site tree and a running server."""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from config import ServerConfig
from server import HTTPServer

INDEX_HTML = b"<!doctype html><html><body><div id=app></div></body></html>"
APP_JS = b"console.log('app');\n"


@pytest.fixture
def site_root(tmp_path: Path) -> Path:
    root = tmp_path / "dist"
    (root / "_astro").mkdir(parents=True)
    (root / "docs").mkdir()
    (root / "index.html").write_bytes(INDEX_HTML)
    (root / "_astro" / "app.js").write_bytes(APP_JS)
    (root / "_astro" / "style.css").write_bytes(b"body{margin:0}")
    (root / "docs" / "index.html").write_bytes(b"<h1>docs</h1>")
    (root / "logo.webp").write_bytes(b"RIFF\x00\x00\x00\x00WEBP")
    (root / "robots.txt").write_bytes(b"User-agent: *\n")
    (tmp_path / "secret.txt").write_bytes(b"top secret")
    return root


def start_server(config: ServerConfig) -> tuple[HTTPServer, threading.Thread]:
    server = HTTPServer(config)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()

    deadline = time.time() + 3
    while server.port == 0 and time.time() < deadline:
        time.sleep(0.01)

    if server.port == 0:
        raise RuntimeError("Server did not bind to a port")
    return server, thread


def stop_server(server: HTTPServer, thread: threading.Thread) -> None:
    server.stop()
    thread.join(timeout=3)


@pytest.fixture
def make_server() -> Iterator[Callable[..., HTTPServer]]:
    started: list[tuple[HTTPServer, threading.Thread]] = []

    def _make(root: Path, **overrides: object) -> HTTPServer:
        config = ServerConfig(host="127.0.0.1", port=0, root_dir=root, **overrides)
        server, thread = start_server(config)
        started.append((server, thread))
        return server

    yield _make
    for server, thread in started:
        stop_server(server, thread)


def recv_http_response(sock: socket.socket, *, expect_body: bool = True) -> bytes:
    buffer = bytearray()
    while b"\r\n\r\n" not in buffer:
        chunk = sock.recv(4096)
        if not chunk:
            break
        buffer.extend(chunk)

    header_end = buffer.find(b"\r\n\r\n")
    if header_end == -1:
        return bytes(buffer)

    head = bytes(buffer[:header_end])
    body = bytes(buffer[header_end + 4 :])
    headers = {}
    for line in head.split(b"\r\n")[1:]:
        key, value = line.split(b":", 1)
        headers[key.strip().lower()] = value.strip().lower()

    content_length = int(headers.get(b"content-length", b"0")) if expect_body else 0
    while len(body) < content_length:
        chunk = sock.recv(65536)
        if not chunk:
            break
        body += chunk

    return head + b"\r\n\r\n" + body


def parse_response(raw_response: bytes) -> tuple[bytes, dict[str, str], bytes]:
    head, body = raw_response.split(b"\r\n\r\n", 1)
    lines = head.decode("iso-8859-1").split("\r\n")
    status_line = lines[0].encode("iso-8859-1")
    headers: dict[str, str] = {}
    for line in lines[1:]:
        key, value = line.split(": ", 1)
        headers[key.lower()] = value
    return status_line, headers, body


def fetch(
    server: HTTPServer,
    target: str,
    *,
    method: str = "GET",
) -> tuple[bytes, dict[str, str], bytes]:
    with socket.create_connection((server.host, server.port), timeout=3) as sock:
        sock.sendall(
            f"{method} {target} HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n".encode()
        )
        return parse_response(recv_http_response(sock, expect_body=method != "HEAD"))
