"""Wire codec for the HTTP-shaped request/response protocol.

A request arrives as one buffer: a request line, header lines, a blank line
and the body. The body is taken verbatim as the rest of the buffer; there is
no chunked transfer and no ``Content-Length`` validation. Responses are
always ``Connection: close``, one per connection.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

from library_service.errors import BadRequest

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
}

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


@dataclass
class Request:
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def token(self) -> Optional[str]:
        return extract_bearer_token(self.headers)

    def json(self) -> Any:
        """Decode the body as JSON; an empty or malformed body is a BadRequest."""
        if not self.body.strip():
            raise BadRequest("Invalid request body")
        try:
            return json.loads(self.body)
        except json.JSONDecodeError as e:
            raise BadRequest("Invalid request body") from e


HEAD_TERMINATORS = ("\r\n\r\n", "\n\n")


def _split_head_and_body(text: str) -> tuple[str, str]:
    """Split at the earliest blank line, whichever line ending it uses."""
    found = [(text.find(t), t) for t in HEAD_TERMINATORS if t in text]
    if not found:
        return text, ""
    pos, separator = min(found)
    return text[:pos], text[pos + len(separator):]


def parse_query(query_string: str) -> Dict[str, str]:
    """Parse the query string into a simple key->value dict (only first value considered)."""
    params = parse_qs(query_string, keep_blank_values=True)
    return {k: v[0] for k, v in params.items() if v}


def parse_request(raw: bytes) -> Request:
    """Turn a raw request buffer into a :class:`Request`.

    Raises BadRequest for an empty buffer or a request line with fewer than
    two whitespace separated parts.
    """
    text = raw.decode("utf-8", errors="replace")
    head, body = _split_head_and_body(text)
    lines = head.splitlines()
    if not lines:
        raise BadRequest("Bad Request")

    request_line = lines[0].split()
    if len(request_line) < 2:
        raise BadRequest("Bad Request")
    method, target = request_line[0].upper(), request_line[1]

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if not line.strip():
            break
        name, sep, value = line.partition(":")
        if not sep:
            continue
        headers[name.strip().lower()] = value.strip()

    path, _, query_string = target.partition("?")
    return Request(
        method=method,
        path=path,
        query=parse_query(query_string),
        headers=headers,
        body=body,
    )


def extract_bearer_token(headers: Dict[str, str]) -> Optional[str]:
    """Return the token from an ``Authorization`` header, without any ``Bearer`` prefix."""
    value = headers.get("authorization")
    if value is None:
        return None
    scheme, _, rest = value.strip().partition(" ")
    if scheme.lower() == "bearer":
        value = rest
    return value.strip() or None


@dataclass
class Response:
    status: HTTPStatus = HTTPStatus.OK
    body: bytes = b""
    content_type: str = "application/json"
    headers: Dict[str, str] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        lines = [f"HTTP/1.1 {self.status.value} {self.status.phrase}"]
        if self.body or self.status != HTTPStatus.NO_CONTENT:
            lines.append(f"Content-Type: {self.content_type}")
        for name, value in self.headers.items():
            lines.append(f"{name}: {value}")
        lines.append(f"Content-Length: {len(self.body)}")
        lines.append("Connection: close")
        head = "\r\n".join(lines) + "\r\n\r\n"
        return head.encode("utf-8") + self.body


def json_response(payload: Any, status: HTTPStatus = HTTPStatus.OK) -> Response:
    body = json.dumps(payload).encode("utf-8")
    return Response(status=status, body=body, headers=dict(CORS_HEADERS))


def error_response(status: HTTPStatus, message: str) -> Response:
    return json_response({"error": message}, status=status)


def preflight_response() -> Response:
    return Response(status=HTTPStatus.NO_CONTENT, headers=dict(PREFLIGHT_HEADERS))
