import json
import threading
from dataclasses import replace

import pytest

from library_service.app import LibraryApp
from library_service.config import settings
from library_service.models import utcnow
from library_service import server as server_module


class FakeClock:
    """Settable clock shared by the authenticator and the lending engine."""

    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def test_settings(tmp_path, request):
    # One database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return replace(
        settings,
        db_file=db_file,
        bcrypt_rounds=4,
        frontend_dir=str(tmp_path / "frontend"),
        admin_username="admin",
        admin_email="admin@library.com",
        admin_password="admin123",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def library(test_settings, clock):
    return LibraryApp(test_settings, clock=clock).initialize()


@pytest.fixture
def gateway(library):
    return library.gateway


@pytest.fixture
def engine(library):
    return library.engine


@pytest.fixture
def authenticator(library):
    return library.authenticator


@pytest.fixture
def live_server(library):
    srv = server_module.create_server(library, "127.0.0.1", 0)
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    try:
        yield srv
    finally:
        srv.shutdown()
        srv.server_close()


class ParsedResponse:
    def __init__(self, data: bytes):
        head, _, body = data.partition(b"\r\n\r\n")
        lines = head.decode("utf-8").split("\r\n")
        self.status_line = lines[0]
        self.status_code = int(lines[0].split()[1])
        self.headers = {}
        for line in lines[1:]:
            name, _, value = line.partition(":")
            self.headers[name.strip().lower()] = value.strip()
        self.body = body

    def json(self):
        return json.loads(self.body)


def build_request(method, path, body=None, token=None, raw_body=None, headers=None):
    lines = [f"{method} {path} HTTP/1.1", "Host: localhost"]
    if token:
        lines.append(f"Authorization: Bearer {token}")
    for name, value in (headers or {}).items():
        lines.append(f"{name}: {value}")
    payload = raw_body if raw_body is not None else (json.dumps(body) if body is not None else "")
    if payload:
        lines.append("Content-Type: application/json")
        lines.append(f"Content-Length: {len(payload.encode('utf-8'))}")
    return ("\r\n".join(lines) + "\r\n\r\n" + payload).encode("utf-8")


@pytest.fixture
def call(library):
    """Send one request through the full dispatch path and parse the response."""
    def _call(method, path, body=None, token=None, raw_body=None, headers=None):
        raw = build_request(method, path, body=body, token=token, raw_body=raw_body, headers=headers)
        return ParsedResponse(library.handle(raw))
    return _call


@pytest.fixture
def admin_token(call):
    response = call("POST", "/api/auth/login", {"username": "admin", "password": "admin123"})
    assert response.status_code == 200
    return response.json()["token"]


@pytest.fixture
def login_as(call):
    """Register (if needed) and log in a lender; return its token."""
    def _login_as(username, password="secret-pass"):
        call("POST", "/api/auth/register", {"username": username, "email": f"{username}@example.com", "password": password})
        response = call("POST", "/api/auth/login", {"username": username, "password": password})
        assert response.status_code == 200
        return response.json()["token"]
    return _login_as


@pytest.fixture
def make_book(call, admin_token):
    def _make_book(isbn="9780199535675", total_copies=1, **fields):
        payload = {"title": "Ulysses", "author": "James Joyce", "isbn": isbn, "total_copies": total_copies}
        payload.update(fields)
        response = call("POST", "/api/books", payload, token=admin_token)
        assert response.status_code == 201
        return response.json()
    return _make_book
