from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

ROLE_ADMIN = "admin"
ROLE_LENDER = "lender"

STATUS_BORROWED = "borrowed"
STATUS_OVERDUE = "overdue"
STATUS_RETURNED = "returned"

# Fixed width so that SQL string comparison orders timestamps chronologically.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Render an aware (or naive UTC) datetime in the stored timestamp format."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def from_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class User:
    """A registered account. ``password_hash`` never leaves the service."""

    id: int
    username: str
    email: str
    password_hash: str
    role: str
    created_at: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row["role"],
            created_at=row["created_at"],
        )


@dataclass
class Book:
    id: int
    title: str
    author: str
    isbn: str
    publication_year: Optional[int]
    genre: Optional[str]
    total_copies: int
    available_copies: int
    created_at: str

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publication_year": self.publication_year,
            "genre": self.genre,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            publication_year=row["publication_year"],
            genre=row["genre"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            created_at=row["created_at"],
        )


@dataclass
class Session:
    id: int
    user_id: int
    token: str
    expires_at: str
    created_at: str

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Session":
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )


@dataclass
class LendingRecord:
    """One loan of one copy. Status moves borrowed -> overdue -> returned."""

    id: int
    user_id: int
    book_id: int
    borrowed_at: str
    due_date: str
    returned_at: Optional[str]
    status: str

    @property
    def is_active(self) -> bool:
        return self.status in (STATUS_BORROWED, STATUS_OVERDUE)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrowed_at": self.borrowed_at,
            "due_date": self.due_date,
            "returned_at": self.returned_at,
            "status": self.status,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "LendingRecord":
        return LendingRecord(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_at=row["borrowed_at"],
            due_date=row["due_date"],
            returned_at=row["returned_at"],
            status=row["status"],
        )


@dataclass
class LendingRecordDetails(LendingRecord):
    """A lending record joined with its borrower's name and its book."""

    username: str = ""
    title: str = ""
    author: str = ""

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"username": self.username, "title": self.title, "author": self.author})
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "LendingRecordDetails":
        return LendingRecordDetails(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_at=row["borrowed_at"],
            due_date=row["due_date"],
            returned_at=row["returned_at"],
            status=row["status"],
            username=row["username"],
            title=row["title"],
            author=row["author"],
        )
