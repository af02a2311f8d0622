"""Parsing and re-serialising of proxied HTTP GET requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MIN_REQ_LEN = 4
MAX_REQ_LEN = 65535
ROOT_ABS_PATH = "/"


class ParseError(ValueError):
    """Raised when a request buffer cannot be parsed."""


def _strtok(text: str, delims: str) -> tuple[str | None, str | None]:
    """Split off the next token the way strtok does.

    Leading delimiter characters are skipped.  Returns the token and the
    text after the delimiter that ended it; the remainder is None when the
    token ran to the end of the text.
    """
    start = 0
    while start < len(text) and text[start] in delims:
        start += 1
    if start == len(text):
        return None, None
    end = start
    while end < len(text) and text[end] not in delims:
        end += 1
    if end == len(text):
        return text[start:], None
    return text[start:end], text[end + 1:]


def _fail(message: str) -> ParseError:
    logger.debug(message)
    return ParseError(message)


@dataclass
class ParsedRequest:
    """A parsed request line together with its ordered headers."""

    method: str
    protocol: str
    host: str
    path: str
    version: str
    port: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def set_header(self, key: str, value: str) -> None:
        """Set a header, replacing any earlier one and moving it last."""
        self.headers.pop(key, None)
        self.headers[key] = value

    def get_header(self, key: str) -> str | None:
        """Return the value of the header with exactly this key, or None."""
        return self.headers.get(key)

    def remove_header(self, key: str) -> None:
        """Remove a header; raise KeyError if it is not present."""
        if key not in self.headers:
            raise KeyError(key)
        del self.headers[key]

    def request_line(self) -> str:
        """Return the request line, including its trailing CRLF."""
        port = f":{self.port}" if self.port is not None else ""
        return (
            f"{self.method} {self.protocol}://{self.host}{port}"
            f"{self.path} {self.version}\r\n"
        )

    def unparse_headers(self) -> str:
        """Return the headers followed by the terminating blank line."""
        lines = "".join(f"{key}: {value}\r\n" for key, value in self.headers.items())
        return lines + "\r\n"

    def unparse(self) -> str:
        """Return the whole request: request line, headers and blank line."""
        return self.request_line() + self.unparse_headers()

    def headers_len(self) -> int:
        """Length of the serialised headers including the trailing CRLF."""
        return len(self.unparse_headers())

    def total_len(self) -> int:
        """Length of the whole serialised request."""
        return len(self.request_line()) + self.headers_len()


def _parse_request_line(line: str) -> ParsedRequest:
    method, rest = _strtok(line, " ")
    if method is None:
        raise _fail("invalid request line, no whitespace")
    if method != "GET":
        raise _fail(f"invalid request line, method not 'GET': {method}")

    full_addr, version = _strtok(rest or "", " ")
    if full_addr is None:
        raise _fail("invalid request line, no full address")
    if version is None:
        raise _fail("invalid request line, missing version")
    if not version.startswith("HTTP/"):
        raise _fail(f"invalid request line, unsupported version {version}")

    protocol, after_protocol = _strtok(full_addr, ":/")
    if protocol is None:
        raise _fail("invalid request line, missing host")
    abs_uri_len = len(full_addr[len(protocol) + len("://"):])

    host, after_host = _strtok(after_protocol or "", "/")
    if host is None:
        raise _fail("invalid request line, missing host")
    if len(host) == abs_uri_len:
        raise _fail("invalid request line, missing absolute path")

    path_token, _ = _strtok(after_host or "", " ")
    if path_token is None:
        path = ROOT_ABS_PATH
    elif path_token.startswith(ROOT_ABS_PATH):
        raise _fail("invalid request line, path cannot begin with two slash characters")
    else:
        path = ROOT_ABS_PATH + path_token

    host_name, host_rest = _strtok(host, ":")
    if host_name is None:
        raise _fail("invalid request line, missing host")
    port, _ = _strtok(host_rest or "", "/")

    return ParsedRequest(
        method=method,
        protocol=protocol,
        host=host_name,
        path=path,
        version=version,
        port=port,
    )


def _parse_headers(request: ParsedRequest, text: str, pos: int) -> None:
    while pos < len(text) and not text.startswith("\r\n", pos):
        colon = text.find(":", pos)
        if colon == -1:
            raise _fail("No colon found")
        value_start = colon + 2
        value_end = text.find("\r\n", value_start)
        if value_end == -1:
            raise _fail("header value has no line end")
        request.set_header(text[pos:colon], text[value_start:value_end])

        next_line = text.find("\r\n", pos)
        if next_line == -1:
            break
        pos = next_line + 2


def parse_request(data: bytes | str) -> ParsedRequest:
    """Parse a GET request buffer that ends with a blank line.

    Raises ParseError when the buffer is not an acceptable request.
    """
    if not MIN_REQ_LEN <= len(data) <= MAX_REQ_LEN:
        raise _fail(f"invalid buflen {len(data)}")
    text = data.decode("latin-1") if isinstance(data, (bytes, bytearray)) else data
    text = text.split("\0", 1)[0]

    if "\r\n\r\n" not in text:
        raise _fail("invalid request line, no end of header")

    line_end = text.index("\r\n")
    request = _parse_request_line(text[:line_end])
    _parse_headers(request, text, line_end + 2)
    return request