"""A threaded HTTP GET proxy that caches upstream responses."""

from __future__ import annotations

import logging
import re
import socket
import sys
import threading
from datetime import datetime, timezone

from cacheproxy.cache import LRUCache
from cacheproxy.parser import ParsedRequest, ParseError, parse_request

logger = logging.getLogger(__name__)

MAX_BYTES = 4096
MAX_CLIENTS = 400
DEFAULT_PORT = 8080
DEFAULT_REMOTE_PORT = 80
_ACCEPT_POLL_SECONDS = 0.5

_ERROR_TEMPLATES = {
    400: (
        "HTTP/1.1 400 Bad Request\r\nContent-Length: 95\r\nConnection: keep-alive\r\n"
        "Content-Type: text/html\r\nDate: {date}\r\nServer: cacheproxy\r\n\r\n"
        "<HTML><HEAD><TITLE>400 Bad Request</TITLE></HEAD>\n"
        "<BODY><H1>400 Bad Rqeuest</H1>\n</BODY></HTML>"
    ),
    403: (
        "HTTP/1.1 403 Forbidden\r\nContent-Length: 112\r\nContent-Type: text/html\r\n"
        "Connection: keep-alive\r\nDate: {date}\r\nServer: cacheproxy\r\n\r\n"
        "<HTML><HEAD><TITLE>403 Forbidden</TITLE></HEAD>\n"
        "<BODY><H1>403 Forbidden</H1><br>Permission Denied\n</BODY></HTML>"
    ),
    404: (
        "HTTP/1.1 404 Not Found\r\nContent-Length: 91\r\nContent-Type: text/html\r\n"
        "Connection: keep-alive\r\nDate: {date}\r\nServer: cacheproxy\r\n\r\n"
        "<HTML><HEAD><TITLE>404 Not Found</TITLE></HEAD>\n"
        "<BODY><H1>404 Not Found</H1>\n</BODY></HTML>"
    ),
    500: (
        "HTTP/1.1 500 Internal Server Error\r\nContent-Length: 115\r\nConnection: keep-alive\r\n"
        "Content-Type: text/html\r\nDate: {date}\r\nServer: cacheproxy\r\n\r\n"
        "<HTML><HEAD><TITLE>500 Internal Server Error</TITLE></HEAD>\n"
        "<BODY><H1>500 Internal Server Error</H1>\n</BODY></HTML>"
    ),
    501: (
        "HTTP/1.1 501 Not Implemented\r\nContent-Length: 103\r\nConnection: keep-alive\r\n"
        "Content-Type: text/html\r\nDate: {date}\r\nServer: cacheproxy\r\n\r\n"
        "<HTML><HEAD><TITLE>404 Not Implemented</TITLE></HEAD>\n"
        "<BODY><H1>501 Not Implemented</H1>\n</BODY></HTML>"
    ),
    505: (
        "HTTP/1.1 505 HTTP Version Not Supported\r\nContent-Length: 125\r\nConnection: keep-alive\r\n"
        "Content-Type: text/html\r\nDate: {date}\r\nServer: cacheproxy\r\n\r\n"
        "<HTML><HEAD><TITLE>505 HTTP Version Not Supported</TITLE></HEAD>\n"
        "<BODY><H1>505 HTTP Version Not Supported</H1>\n</BODY></HTML>"
    ),
}


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def error_response(status_code: int, now: datetime) -> bytes:
    """Build the canned error response for status_code dated at now (UTC).

    Raises ValueError for a status code that has no canned response.
    """
    try:
        template = _ERROR_TEMPLATES[status_code]
    except KeyError:
        raise ValueError(f"no error response for status {status_code}") from None
    date = now.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")
    return template.format(date=date).encode("latin-1")


def send_error_message(sock: socket.socket, status_code: int) -> None:
    """Send the canned error response for status_code to sock."""
    payload = error_response(status_code, datetime.now(timezone.utc))
    if status_code != 500:
        logger.info("%s", payload.split(b"\r\n", 1)[0][len(b"HTTP/1.1 "):].decode())
    sock.sendall(payload)


def check_http_version(version: str) -> bool:
    """Return True for HTTP/1.1 and HTTP/1.0, which are handled alike."""
    return version.startswith("HTTP/1.1") or version.startswith("HTTP/1.0")


def connect_remote_server(host: str, port: int) -> socket.socket:
    """Open a TCP connection to host:port over IPv4."""
    try:
        address = socket.gethostbyname(host)
    except OSError:
        logger.error("No such host exists: %s", host)
        raise
    remote = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        remote.connect((address, port))
    except OSError:
        remote.close()
        logger.error("Error in connecting to %s:%d", host, port)
        raise
    return remote


def build_upstream_request(request: ParsedRequest) -> bytes:
    """Rewrite request for the origin server, forcing Connection: close.

    Adds a Host header when there is none.  If the headers do not fit in
    the request buffer, only the request line is sent.
    """
    line = f"GET {request.path} {request.version}\r\n"
    request.set_header("Connection", "close")
    if request.get_header("Host") is None:
        request.set_header("Host", request.host)
    headers = request.unparse_headers()
    if len(line) + len(headers) > MAX_BYTES:
        logger.warning("unparse failed, sending request without headers")
        headers = ""
    return (line + headers).encode("latin-1")


def handle_request(
    client: socket.socket, request: ParsedRequest, raw_request: bytes, cache: LRUCache
) -> None:
    """Fetch request from its origin, relay the reply to client and cache it.

    Raises OSError if the origin server cannot be reached.
    """
    payload = build_upstream_request(request)
    port = _atoi(request.port) if request.port is not None else DEFAULT_REMOTE_PORT
    remote = connect_remote_server(request.host, port)
    received = bytearray()
    with remote:
        try:
            remote.sendall(payload)
        except OSError as exc:
            logger.error("Error sending request upstream: %s", exc)
        while True:
            try:
                chunk = remote.recv(MAX_BYTES - 1)
            except OSError as exc:
                logger.error("Error receiving from remote server: %s", exc)
                break
            if not chunk:
                break
            try:
                client.sendall(chunk)
            except OSError as exc:
                logger.error("Error in sending data to client socket: %s", exc)
                break
            received += chunk
    cache.add(raw_request, bytes(received))
    logger.info("Done")


def read_request(client: socket.socket) -> bytes | None:
    """Read a request up to its blank line; None if the client gave up first."""
    data = b""
    try:
        chunk = client.recv(MAX_BYTES)
        while chunk:
            data = (data + chunk).split(b"\0", 1)[0]
            if b"\r\n\r\n" in data:
                return data
            room = MAX_BYTES - len(data)
            if room <= 0:
                break
            chunk = client.recv(room)
    except OSError as exc:
        logger.error("Error in receiving from client: %s", exc)
        return None
    logger.info("Client disconnected!")
    return None


def _serve_client(client: socket.socket, cache: LRUCache) -> None:
    raw_request = read_request(client)
    if raw_request is None:
        return

    cached = cache.find(raw_request)
    if cached is not None:
        client.sendall(cached.data)
        logger.info("Data retrieved from the cache")
        return

    try:
        request = parse_request(raw_request)
    except ParseError:
        logger.info("Parsing failed")
        return

    if request.method != "GET":
        logger.info("Only GET requests are supported")
        return
    if request.host and request.path and check_http_version(request.version):
        try:
            handle_request(client, request, raw_request, cache)
        except OSError:
            send_error_message(client, 500)
    else:
        send_error_message(client, 500)


def handle_client(
    client: socket.socket, cache: LRUCache, semaphore: threading.Semaphore
) -> None:
    """Serve one client connection, then shut it down and close it."""
    with semaphore:
        try:
            _serve_client(client, cache)
        except OSError as exc:
            logger.error("Error while serving client: %s", exc)
        finally:
            try:
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            client.close()


class ProxyServer:
    """Listening socket that hands each connection to its own thread."""

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        cache: LRUCache | None = None,
        max_clients: int = MAX_CLIENTS,
    ) -> None:
        self.cache = cache if cache is not None else LRUCache()
        self.max_clients = max_clients
        self._semaphore = threading.BoundedSemaphore(max_clients)
        self._closed = False
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.socket.bind(("", port))
            self.socket.listen(max_clients)
            self.socket.settimeout(_ACCEPT_POLL_SECONDS)
        except OSError:
            self.socket.close()
            raise
        self.address = self.socket.getsockname()

    def serve_forever(self) -> None:
        """Accept connections until close() is called."""
        while not self._closed:
            try:
                client, (host, port) = self.socket.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._closed:
                    return
                raise
            logger.info("Client is connected with port number: %d and ip address: %s", port, host)
            threading.Thread(
                target=handle_client,
                args=(client, self.cache, self._semaphore),
                daemon=True,
            ).start()

    def close(self) -> None:
        """Stop accepting connections and release the listening socket."""
        self._closed = True
        self.socket.close()

    def __enter__(self) -> ProxyServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def main(argv: list[str] | None = None) -> int:
    """Run the proxy on the port given as the single argument."""
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Too few arguments")
        return 1
    logging.basicConfig(level=logging.INFO)
    port = _atoi(args[0])
    print(f"Setting Proxy Server Port : {port}")
    try:
        server = ProxyServer(port)
    except OSError as exc:
        print(f"Port is not free: {exc}", file=sys.stderr)
        return 1
    print(f"Binding on port: {port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.close()
    return 0