"""
Minimal HTTP/1.1 request and response handling for the gateway.

No framework: requests are framed on the blank line plus Content-Length,
parsed into a Request, and answered with a single Response written in one
piece before the connection is closed. One request per connection.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import unquote

from roku_errors import GatewayError, MalformedParameter, MalformedRequest

HEADER_END = b"\r\n\r\n"
MAX_HEAD_SIZE = 64 * 1024
MAX_BODY_SIZE = 64 * 1024

REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    500: "Internal Server Error",
    503: "Service Unavailable",
}

CONTENT_TYPES = {
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "text/javascript",
}
DEFAULT_CONTENT_TYPE = "text/plain"


def content_type_for(filename: str) -> str:
    """Content type by file extension; text/plain when unknown."""
    _, dot, ext = filename.rpartition(".")
    if not dot:
        return DEFAULT_CONTENT_TYPE
    return CONTENT_TYPES.get(ext.lower(), DEFAULT_CONTENT_TYPE)


def content_length(head: str) -> Optional[int]:
    """
    Return the Content-Length declared in an HTTP head, or None if absent.
    Raises ValueError for a non-numeric or negative value.
    """
    for line in head.split("\r\n")[1:]:
        name, sep, value = line.partition(":")
        if sep and name.strip().lower() == "content-length":
            length = int(value.strip())
            if length < 0:
                raise ValueError(f"negative Content-Length: {length}")
            return length
    return None


# -----------------------------------------------------------------------------
# Request
# -----------------------------------------------------------------------------


class Request:
    """A parsed client request. Transient: one per inbound connection."""

    def __init__(
        self,
        method: str,
        path: str,
        headers: Optional[list[tuple[str, str]]] = None,
        body: str = "",
    ) -> None:
        self.method = method
        self.path = path
        self.headers = headers or []
        self.body = body

    def header(self, name: str) -> Optional[str]:
        """First header value with this name (case-insensitive), or None."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    def __repr__(self) -> str:
        return f"Request({self.method} {self.path}, {len(self.headers)} headers, {len(self.body)} body chars)"


def _head_end(buffer: bytes) -> int:
    index = buffer.find(HEADER_END)
    if index == -1:
        if len(buffer) > MAX_HEAD_SIZE:
            raise MalformedRequest("Request head too large")
        return -1
    if index > MAX_HEAD_SIZE:
        raise MalformedRequest("Request head too large")
    return index


def _request_body_length(head: str) -> int:
    try:
        length = content_length(head) or 0
    except ValueError as e:
        raise MalformedRequest(f"Invalid Content-Length: {e}") from e
    if length > MAX_BODY_SIZE:
        raise MalformedRequest(f"Request body too large: {length} bytes")
    return length


def request_complete(buffer: bytes) -> bool:
    """
    True once the buffer holds a full head and all Content-Length body bytes.
    Raises MalformedRequest for an oversized head or body, or a bad
    Content-Length.
    """
    end = _head_end(buffer)
    if end == -1:
        return False
    head = buffer[:end].decode("latin-1")
    return len(buffer) - (end + len(HEADER_END)) >= _request_body_length(head)


def parse_request(raw: bytes) -> Request:
    """
    Parse raw request bytes into a Request.

    The body is exactly Content-Length bytes (empty when the header is absent).
    Query strings are dropped and the path is percent-decoded.
    """
    end = _head_end(raw)
    if end == -1:
        raise MalformedRequest("Incomplete request head")
    lines = raw[:end].decode("latin-1").split("\r\n")
    parts = lines[0].split()
    if len(parts) < 2:
        raise MalformedRequest(f"Malformed request line: {lines[0][:100]!r}")
    method = parts[0].upper()
    path = unquote(parts[1].split("?", 1)[0])
    if not path.startswith("/"):
        raise MalformedRequest(f"Malformed request path: {parts[1][:100]!r}")

    headers: list[tuple[str, str]] = []
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers.append((name.strip(), value.strip()))

    length = _request_body_length(raw[:end].decode("latin-1"))
    start = end + len(HEADER_END)
    body = raw[start:start + length].decode("utf-8", errors="replace")
    return Request(method, path, headers, body)


def parse_form(body: str) -> dict[str, str]:
    """
    Parse a url-encoded form body (`a=1&b=2`).

    Every non-empty pair must split into exactly two non-empty parts,
    otherwise MalformedParameter is raised with the offending pair. Values
    are percent-decoded; '+' is kept literally.
    """
    params: dict[str, str] = {}
    for pair in body.strip("\r\n").split("&"):
        if not pair:
            continue
        parts = pair.split("=")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise MalformedParameter(pair)
        params[unquote(parts[0])] = unquote(parts[1])
    return params


# -----------------------------------------------------------------------------
# Response
# -----------------------------------------------------------------------------


class Response:
    """An HTTP response, serialized in one piece by to_bytes()."""

    def __init__(
        self,
        status: int = 200,
        body: bytes | str = b"",
        content_type: str = DEFAULT_CONTENT_TYPE,
        headers: Optional[list[str]] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.status = status
        self.reason = reason or REASONS.get(status, "Error")
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.content_type = content_type
        self.headers = headers or []

    @classmethod
    def from_error(cls, error: GatewayError) -> "Response":
        return cls(error.status, error.message)

    def to_bytes(self) -> bytes:
        lines = [
            f"HTTP/1.1 {self.status} {self.reason}",
            f"Content-Type: {self.content_type}",
            f"Content-Length: {len(self.body)}",
            "Connection: close",
            *self.headers,
        ]
        return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8") + self.body

    def __repr__(self) -> str:
        return f"Response({self.status} {self.reason}, {len(self.body)} bytes)"
