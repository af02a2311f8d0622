import socket
import threading
from datetime import datetime, timezone

import pytest

from cacheproxy.cache import LRUCache
from cacheproxy.parser import parse_request
from cacheproxy.server import (
    ProxyServer,
    build_upstream_request,
    check_http_version,
    error_response,
    handle_client,
    main,
    read_request,
    send_error_message,
)

UPSTREAM_RESPONSE = b"HTTP/1.0 200 OK\r\nContent-Length: 5\r\n\r\nhello"


def read_all(sock):
    sock.settimeout(5)
    data = b""
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk


@pytest.fixture
def upstream():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    listener.settimeout(5)
    received = []

    def serve():
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        with conn:
            data = b""
            while b"\r\n\r\n" not in data:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
            received.append(data)
            conn.sendall(UPSTREAM_RESPONSE)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1], received
    thread.join(timeout=5)
    listener.close()


def free_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def run_client(request_bytes, cache):
    ours, theirs = socket.socketpair()
    with ours:
        ours.sendall(request_bytes)
        handle_client(theirs, cache, threading.BoundedSemaphore(1))
        return read_all(ours)


def test_error_response_format():
    now = datetime(1994, 11, 6, 8, 49, 37, tzinfo=timezone.utc)
    payload = error_response(400, now)
    assert payload.startswith(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 95\r\n")
    assert b"Date: Sun, 06 Nov 1994 08:49:37 GMT\r\n" in payload
    assert payload.endswith(b"<BODY><H1>400 Bad Rqeuest</H1>\n</BODY></HTML>")


@pytest.mark.parametrize(
    "code, status_line",
    [
        (403, b"HTTP/1.1 403 Forbidden\r\n"),
        (404, b"HTTP/1.1 404 Not Found\r\n"),
        (500, b"HTTP/1.1 500 Internal Server Error\r\n"),
        (501, b"HTTP/1.1 501 Not Implemented\r\n"),
        (505, b"HTTP/1.1 505 HTTP Version Not Supported\r\n"),
    ],
)
def test_error_response_status_lines(code, status_line):
    payload = error_response(code, datetime.now(timezone.utc))
    assert payload.startswith(status_line)
    assert b"\r\n\r\n<HTML>" in payload


def test_error_response_unknown_code():
    with pytest.raises(ValueError):
        error_response(418, datetime.now(timezone.utc))


def test_send_error_message_writes_response():
    ours, theirs = socket.socketpair()
    with ours, theirs:
        send_error_message(theirs, 404)
        theirs.shutdown(socket.SHUT_WR)
        data = read_all(ours)
    assert data.startswith(b"HTTP/1.1 404 Not Found\r\n")
    assert data.endswith(b"<BODY><H1>404 Not Found</H1>\n</BODY></HTML>")


@pytest.mark.parametrize(
    "version, expected",
    [("HTTP/1.1", True), ("HTTP/1.0", True), ("HTTP/1.1x", True), ("HTTP/2.0", False), ("HTTP/0.9", False)],
)
def test_check_http_version(version, expected):
    assert check_http_version(version) is expected


def test_build_upstream_request_adds_connection_and_host():
    request = parse_request(b"GET http://www.example.com/index.html HTTP/1.0\r\n\r\n")
    assert build_upstream_request(request) == (
        b"GET /index.html HTTP/1.0\r\nConnection: close\r\nHost: www.example.com\r\n\r\n"
    )


def test_build_upstream_request_keeps_existing_host():
    request = parse_request(
        b"GET http://www.example.com/ HTTP/1.1\r\nHost: other.example.com\r\n"
        b"Connection: keep-alive\r\n\r\n"
    )
    payload = build_upstream_request(request)
    assert payload.startswith(b"GET / HTTP/1.1\r\n")
    assert b"Host: other.example.com\r\n" in payload
    assert b"keep-alive" not in payload
    assert payload.endswith(b"Connection: close\r\n\r\n")


def test_build_upstream_request_drops_headers_that_do_not_fit():
    request = parse_request(
        b"GET http://www.example.com/ HTTP/1.0\r\nX-Big: " + b"a" * 5000 + b"\r\n\r\n"
    )
    assert build_upstream_request(request) == b"GET / HTTP/1.0\r\n"


def test_read_request_joins_pieces():
    ours, theirs = socket.socketpair()
    with ours, theirs:
        ours.sendall(b"GET http://x/ HTTP/1.0\r\n")
        ours.sendall(b"\r\n")
        assert read_request(theirs) == b"GET http://x/ HTTP/1.0\r\n\r\n"


def test_read_request_incomplete_returns_none():
    ours, theirs = socket.socketpair()
    with ours, theirs:
        ours.sendall(b"GET")
        ours.shutdown(socket.SHUT_WR)
        assert read_request(theirs) is None


def test_handle_client_fetches_and_caches(upstream):
    port, received = upstream
    cache = LRUCache()
    raw = f"GET http://127.0.0.1:{port}/page HTTP/1.1\r\nUser-Agent: test\r\n\r\n".encode()

    assert run_client(raw, cache) == UPSTREAM_RESPONSE
    assert raw in cache
    assert received[0].startswith(b"GET /page HTTP/1.1\r\n")
    assert b"Connection: close\r\n" in received[0]
    assert b"Host: 127.0.0.1\r\n" in received[0]

    # Served from the cache; the upstream only ever saw one request.
    assert run_client(raw, cache) == UPSTREAM_RESPONSE
    assert len(received) == 1


def test_handle_client_unreachable_origin_sends_500():
    cache = LRUCache()
    raw = f"GET http://127.0.0.1:{free_port()}/ HTTP/1.1\r\n\r\n".encode()
    data = run_client(raw, cache)
    assert data.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
    assert len(cache) == 0


def test_handle_client_unsupported_version_sends_500():
    data = run_client(b"GET http://www.example.com/ HTTP/2.0\r\n\r\n", LRUCache())
    assert data.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")


def test_handle_client_unparsable_request_gets_nothing():
    cache = LRUCache()
    data = run_client(b"POST http://www.example.com/ HTTP/1.1\r\n\r\n", cache)
    assert data == b""
    assert len(cache) == 0


def test_proxy_server_end_to_end(upstream):
    port, _ = upstream
    cache = LRUCache()
    server = ProxyServer(0, cache, max_clients=4)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        with socket.create_connection(("127.0.0.1", server.address[1]), timeout=5) as client:
            raw = f"GET http://127.0.0.1:{port}/ HTTP/1.0\r\n\r\n".encode()
            client.sendall(raw)
            assert read_all(client) == UPSTREAM_RESPONSE
    finally:
        server.close()
        thread.join(timeout=5)
    assert not thread.is_alive()
    assert raw in cache


@pytest.mark.parametrize("argv", [[], ["8080", "extra"]])
def test_main_requires_one_argument(argv, capsys):
    assert main(argv) == 1
    assert "Too few arguments" in capsys.readouterr().out