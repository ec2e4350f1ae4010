"""Per-route business logic and the mapping from errors to responses.

Handlers authenticate (when the route requires it), validate the JSON body
with a pydantic model, call the lending engine or the gateway and serialize
the result. Every :class:`LibraryError` raised below this layer is turned
into ``{"error": message}`` with the error's status here and nowhere else.
"""

from __future__ import annotations

import logging
import os
from http import HTTPStatus
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from library_service import credentials
from library_service.config import Settings
from library_service.errors import BadRequest, LibraryError, NotFound, ServiceError
from library_service.gateway import LibraryGateway
from library_service.lending import LendingEngine
from library_service.models import ROLE_LENDER
from library_service.protocol import (
    Request,
    Response,
    error_response,
    json_response,
    parse_request,
    preflight_response,
)
from library_service.routing import MAX_INT, Router
from library_service.sessions import SessionAuthenticator

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

FRONTEND_FILES = {
    "/": ("index.html", "text/html"),
    "/lender.html": ("lender.html", "text/html"),
    "/admin.html": ("admin.html", "text/html"),
    "/app.js": ("app.js", "application/javascript"),
}


# --- Request bodies ---
class RegisterModel(BaseModel):
    username: str = Field(min_length=1)
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginModel(BaseModel):
    username: str
    password: str


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    publication_year: Optional[int] = Field(default=None, ge=-MAX_INT, le=MAX_INT)
    genre: Optional[str] = None
    total_copies: int = Field(ge=0, le=MAX_INT)


class UpdateBookModel(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    author: Optional[str] = Field(default=None, min_length=1)
    isbn: Optional[str] = Field(default=None, min_length=1)
    publication_year: Optional[int] = Field(default=None, ge=-MAX_INT, le=MAX_INT)
    genre: Optional[str] = None
    total_copies: Optional[int] = Field(default=None, ge=0, le=MAX_INT)


def parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Validate the JSON body against ``model``; any failure is a BadRequest."""
    try:
        return model.model_validate(request.json())
    except ValidationError as e:
        kinds = {err["type"] for err in e.errors()}
        if kinds & {"missing", "string_too_short"}:
            raise BadRequest("Missing required fields") from e
        raise BadRequest("Invalid request body") from e


def to_error_response(error: LibraryError) -> Response:
    return error_response(error.status, error.message)


def _dump_all(items) -> List[dict]:
    return [item.to_dict() for item in items]


class Handlers:
    def __init__(
        self,
        gateway: LibraryGateway,
        authenticator: SessionAuthenticator,
        engine: LendingEngine,
        settings: Settings,
    ) -> None:
        self.gateway = gateway
        self.auth = authenticator
        self.engine = engine
        self.settings = settings
        self.router = self.build_router()

    def build_router(self) -> Router:
        router = Router()
        for path in FRONTEND_FILES:
            router.add("GET", path, self.serve_frontend)

        router.add("POST", "/api/auth/register", self.register)
        router.add("POST", "/api/auth/login", self.login)
        router.add("POST", "/api/auth/logout", self.logout)
        router.add("GET", "/api/auth/me", self.me)

        router.add("GET", "/api/books", self.list_books)
        router.add("POST", "/api/books", self.create_book)
        router.add("GET", "/api/books/search", self.search_books, query=("q",))
        router.add("PUT", "/api/books/{book_id:int}", self.update_book)
        router.add("DELETE", "/api/books/{book_id:int}", self.delete_book)

        router.add("POST", "/api/lending/borrow/{book_id:int}", self.borrow_book)
        router.add("POST", "/api/lending/return/{record_id:int}", self.return_book)
        router.add("GET", "/api/lending/my-books", self.my_books)

        router.add("GET", "/api/admin/users", self.list_users)
        router.add("GET", "/api/admin/lending/active", self.active_lending)
        router.add("GET", "/api/admin/lending/overdue", self.overdue_lending)
        return router

    def dispatch(self, raw: bytes) -> Response:
        """Produce exactly one response for one raw request buffer."""
        try:
            request = parse_request(raw)
        except BadRequest as e:
            logger.info("Rejected malformed request")
            return to_error_response(e)

        if request.method == "OPTIONS":
            return preflight_response()

        try:
            response = self.router.dispatch(request)
        except LibraryError as e:
            response = to_error_response(e)
        except Exception:
            logger.exception(f"Unhandled error while serving {request.method} {request.path}")
            response = error_response(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error")
        logger.info(f"{request.method} {request.path} -> {response.status.value}")
        return response

    # --- Frontend ---
    def serve_frontend(self, request: Request) -> Response:
        filename, content_type = FRONTEND_FILES[request.path]
        path = os.path.join(self.settings.frontend_dir, filename)
        try:
            with open(path, "rb") as f:
                content = f.read()
        except OSError as e:
            raise NotFound("File not found") from e
        return Response(status=HTTPStatus.OK, body=content, content_type=content_type)

    # --- Auth ---
    def register(self, request: Request) -> Response:
        body = parse_body(request, RegisterModel)
        password_hash = credentials.hash_password(body.password, rounds=self.settings.bcrypt_rounds)
        user = self.gateway.create_user(body.username, body.email, password_hash, ROLE_LENDER)
        logger.info(f"Registered user '{user.username}' (id {user.id})")
        return json_response(user.to_dict(), status=HTTPStatus.CREATED)

    def login(self, request: Request) -> Response:
        body = parse_body(request, LoginModel)
        token, user = self.auth.login(body.username, body.password)
        return json_response({"token": token, "user": user.to_dict()})

    def logout(self, request: Request) -> Response:
        # Best effort: a missing, unknown or undeletable session still logs out.
        try:
            self.auth.logout(request.token)
        except ServiceError as e:
            logger.warning(f"Logout could not delete session: {e.message}")
        return json_response({"message": "Logged out successfully"})

    def me(self, request: Request) -> Response:
        user = self.auth.authenticate(request.token)
        return json_response(user.to_dict())

    # --- Books ---
    def list_books(self, request: Request) -> Response:
        return json_response(_dump_all(self.gateway.list_books()))

    def search_books(self, request: Request, q: str) -> Response:
        return json_response(_dump_all(self.gateway.search_books(q)))

    def create_book(self, request: Request) -> Response:
        self.auth.authenticate_admin(request.token)
        body = parse_body(request, BookCreateModel)
        book = self.gateway.create_book(
            title=body.title,
            author=body.author,
            isbn=body.isbn,
            total_copies=body.total_copies,
            publication_year=body.publication_year,
            genre=body.genre,
        )
        logger.info(f"Created book {book.id} '{book.title}' with {book.total_copies} copies")
        return json_response(book.to_dict(), status=HTTPStatus.CREATED)

    def update_book(self, request: Request, book_id: int) -> Response:
        self.auth.authenticate_admin(request.token)
        body = parse_body(request, UpdateBookModel)
        book = self.engine.update_book(book_id, body.model_dump(exclude_unset=True, exclude_none=True))
        return json_response(book.to_dict())

    def delete_book(self, request: Request, book_id: int) -> Response:
        self.auth.authenticate_admin(request.token)
        self.gateway.delete_book(book_id)
        logger.info(f"Deleted book {book_id}")
        return json_response({"message": "Book deleted successfully"})

    # --- Lending ---
    def borrow_book(self, request: Request, book_id: int) -> Response:
        user = self.auth.authenticate(request.token)
        record = self.engine.borrow(user.id, book_id)
        return json_response(
            {"message": "Book borrowed successfully", "record_id": record.id},
            status=HTTPStatus.CREATED,
        )

    def return_book(self, request: Request, record_id: int) -> Response:
        user = self.auth.authenticate(request.token)
        self.engine.return_book(record_id, user.id)
        return json_response({"message": "Book returned successfully"})

    def my_books(self, request: Request) -> Response:
        user = self.auth.authenticate(request.token)
        return json_response(_dump_all(self.engine.list_for_user(user.id)))

    # --- Admin ---
    def list_users(self, request: Request) -> Response:
        self.auth.authenticate_admin(request.token)
        return json_response(_dump_all(self.gateway.list_users()))

    def active_lending(self, request: Request) -> Response:
        self.auth.authenticate_admin(request.token)
        return json_response(_dump_all(self.engine.list_active()))

    def overdue_lending(self, request: Request) -> Response:
        self.auth.authenticate_admin(request.token)
        return json_response(_dump_all(self.engine.list_overdue()))
