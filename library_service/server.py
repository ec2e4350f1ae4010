"""TCP transport: one thread per accepted connection, one request per connection.

The reader gathers bytes until the blank line ending the headers and then
until ``Content-Length`` bytes of body have arrived, so a client that writes
headers and body separately still produces a single buffer. Reading stops at
``max_request_bytes`` or when the socket times out.
"""

from __future__ import annotations

import logging
import socket
import socketserver
from typing import Optional

from library_service.app import LibraryApp

logger = logging.getLogger(__name__)

HEADER_TERMINATORS = (b"\r\n\r\n", b"\n\n")


def _header_end(buffer: bytes) -> Optional[int]:
    found = [(buffer.find(t), t) for t in HEADER_TERMINATORS if t in buffer]
    if not found:
        return None
    pos, terminator = min(found)
    return pos + len(terminator)


def _content_length(head: bytes) -> int:
    for line in head.decode("latin-1").splitlines()[1:]:
        name, sep, value = line.partition(":")
        if sep and name.strip().lower() == "content-length":
            try:
                return max(int(value.strip()), 0)
            except ValueError:
                return 0
    return 0


def read_request(sock: socket.socket, max_bytes: int) -> bytes:
    """Read one request from ``sock`` into a single buffer."""
    buffer = b""
    try:
        while _header_end(buffer) is None:
            chunk = sock.recv(4096)
            if not chunk:
                return buffer
            buffer += chunk
            if len(buffer) >= max_bytes:
                return buffer[:max_bytes]
        end = _header_end(buffer)
        expected = end + _content_length(buffer[:end])
        while len(buffer) < min(expected, max_bytes):
            chunk = sock.recv(4096)
            if not chunk:
                break
            buffer += chunk
    except socket.timeout:
        logger.warning(f"Timed out reading request after {len(buffer)} bytes")
    return buffer[:max_bytes]


class ConnectionHandler(socketserver.BaseRequestHandler):
    server: "LibraryServer"

    def handle(self) -> None:
        app = self.server.app
        sock: socket.socket = self.request
        sock.settimeout(app.settings.socket_timeout)
        try:
            raw = read_request(sock, app.settings.max_request_bytes)
            if not raw:
                return
            sock.sendall(app.handle(raw))
        except OSError as e:
            logger.warning(f"Connection from {self.client_address[0]} failed: {e}")


class LibraryServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, app: LibraryApp, host: str, port: int) -> None:
        self.app = app
        super().__init__((host, port), ConnectionHandler)


def create_server(app: LibraryApp, host: Optional[str] = None, port: Optional[int] = None) -> LibraryServer:
    host = app.settings.host if host is None else host
    port = app.settings.port if port is None else port
    return LibraryServer(app, host, port)


def run(app: LibraryApp, host: Optional[str] = None, port: Optional[int] = None) -> None:
    server = create_server(app, host, port)
    bound_host, bound_port = server.server_address[:2]
    logger.info(f"Server running on http://{bound_host}:{bound_port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()
