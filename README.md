# cacheproxy

`cacheproxy` is a small forward HTTP proxy for `GET` requests. Each client
connection runs on its own thread, and only a limited number of connections
are served at the same time. Responses are kept in an in-memory cache that
evicts the least recently used entry first. When a client sends a request
that is byte-for-byte the same as an earlier one, the proxy answers it from
the cache and does not contact the origin server.

## Installation

```
pip install .
```

## Running the proxy

Pass the port to listen on as the only argument:

```
cacheproxy 8080
```

If the argument is missing, the command prints `Too few arguments` and exits
with status 1. It also exits with status 1 if the port cannot be bound.

Send absolute-form requests through the proxy:

```
curl -x http://localhost:8080 http://example.com/
```

How requests are handled:

- Only `GET` requests in absolute form (`GET http://host[:port]/path HTTP/1.x`)
  are accepted. Any other request fails to parse, and the connection is closed
  without a response.
- The version must be `HTTP/1.0` or `HTTP/1.1`. Any other `HTTP/...` version
  gets a `500 Internal Server Error` response.
- Before a request is forwarded, its `Connection` header is set to `close`. A
  `Host` header is added if the request has none. The request line sent to
  the origin uses the path only.
- If the origin server cannot be reached, the client gets a
  `500 Internal Server Error` response.
- The origin's reply is relayed to the client as it arrives, and is then
  stored in the cache under the raw request bytes.

## The cache

`cacheproxy.cache.LRUCache` works on its own and is thread-safe:

```python
from cacheproxy.cache import LRUCache

cache = LRUCache()  # 200 MiB in total, 10 MiB per entry
cache.add(b"request bytes", b"response bytes")   # True if stored
element = cache.find(b"request bytes")           # CacheElement or None
print(element.data, len(cache), b"request bytes" in cache)
```

- `add` returns `False` and stores nothing when an entry is larger than
  `max_element_size`. Otherwise it evicts entries until the new one fits
  within `max_size`.
- Every entry records the time it was added. `find` updates that time when it
  finds the entry. `remove_oldest` evicts the entry with the oldest time and
  returns it, or returns `None` when the cache is empty.
- You can pass `max_size`, `max_element_size` and a `clock` function to the
  constructor.

## Parsing requests

`cacheproxy.parser` parses proxy-style request heads and writes them back out:

```python
from cacheproxy.parser import parse_request, ParseError

raw = (
    b"GET http://www.example.com:80/index.html HTTP/1.0\r\n"
    b"If-Modified-Since: Sat, 29 Oct 1994 19:43:31 GMT\r\n\r\n"
)
request = parse_request(raw)
print(request.host, request.port, request.path)   # www.example.com 80 /index.html

request.set_header("Connection", "close")
request.remove_header("If-Modified-Since")        # KeyError if absent
print(request.unparse())
```

A `ParsedRequest` has `method`, `protocol`, `host`, `port` (a string, or
`None`), `path`, `version` and an ordered `headers` dict. It provides these
methods: `get_header`, `set_header`, `remove_header`, `request_line`,
`unparse`, `unparse_headers`, `total_len` and `headers_len`.

`parse_request` raises `ParseError` (a `ValueError`) in these cases:

- the data is shorter than 4 or longer than 65535 characters;
- there is no blank line ending the header block;
- the method is not `GET`;
- the URL or the version is malformed, or the path begins with `//`;
- a header line has no colon.

## Running a server from code

```python
from cacheproxy.server import ProxyServer

with ProxyServer(port=8080, max_clients=50) as server:
    server.serve_forever()   # until server.close() is called from another thread
```

`ProxyServer` also accepts an `LRUCache` to use. Its `address` attribute holds
the address it is bound to.

## Limitations

- Only plain HTTP `GET` is supported. There is no `CONNECT`, so HTTPS cannot
  be tunnelled.
- Origin servers are reached over IPv4 only.
- Cached responses never expire and are not revalidated. Requests are matched
  against the cache by their exact raw bytes.