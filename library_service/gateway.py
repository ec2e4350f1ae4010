"""Persistence gateway: every SQL statement the service runs lives here.

Methods return model objects (or ``None`` for an absent key) and translate
SQLite failures into the service error taxonomy: uniqueness violations become
:class:`Conflict`, anything else :class:`ServiceError`.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from library_service.database import Database
from library_service.errors import BadRequest, Conflict, LibraryError, NotFound, ServiceError, Unavailable
from library_service.models import (
    ROLE_LENDER,
    STATUS_BORROWED,
    STATUS_OVERDUE,
    STATUS_RETURNED,
    Book,
    LendingRecord,
    LendingRecordDetails,
    Session,
    User,
    to_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

USER_COLUMNS = "id, username, email, password_hash, role, created_at"
BOOK_COLUMNS = "id, title, author, isbn, publication_year, genre, total_copies, available_copies, created_at"
RECORD_COLUMNS = "id, user_id, book_id, borrowed_at, due_date, returned_at, status"

DETAILS_QUERY = """
    SELECT lr.id, lr.user_id, u.username, lr.book_id, b.title, b.author,
           lr.borrowed_at, lr.due_date, lr.returned_at, lr.status
    FROM lending_records lr
    INNER JOIN users u ON lr.user_id = u.id
    INNER JOIN books b ON lr.book_id = b.id
"""

UPDATABLE_BOOK_FIELDS = ("title", "author", "isbn", "publication_year", "genre", "total_copies")

RECORD_NOT_FOUND = "Lending record not found or already returned"


def _unique_violation_message(error: sqlite3.IntegrityError) -> str:
    text = str(error)
    if "users.username" in text:
        return "Username already exists"
    if "users.email" in text:
        return "Email already exists"
    if "books.isbn" in text:
        return "ISBN already exists"
    return "Duplicate value"


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Translate SQLite exceptions raised while performing ``action``."""
    try:
        yield
    except LibraryError:
        raise
    except sqlite3.IntegrityError as e:
        if "UNIQUE" in str(e):
            raise Conflict(_unique_violation_message(e)) from e
        logger.error(f"Integrity error while trying to {action}: {e}")
        raise ServiceError(f"Failed to {action}") from e
    except sqlite3.Error as e:
        logger.error(f"Database error while trying to {action}: {e}")
        raise ServiceError(f"Failed to {action}") from e


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class LibraryGateway:
    """Typed create/read/update/delete operations over the library store."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------- Users ------------------------- #
    def create_user(self, username: str, email: str, password_hash: str, role: str = ROLE_LENDER) -> User:
        with _storage_errors("create user"), self.db.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO users (username, email, password_hash, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (username, email, password_hash, role, to_timestamp(utcnow())),
            )
            row = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return User.from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with _storage_errors("fetch user"), self.db.connection() as conn:
            row = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
            return User.from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with _storage_errors("fetch user"), self.db.connection() as conn:
            row = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE username = ?", (username,)).fetchone()
            return User.from_row(row) if row else None

    def list_users(self) -> List[User]:
        with _storage_errors("fetch users"), self.db.connection() as conn:
            rows = conn.execute(f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at DESC, id DESC").fetchall()
            return [User.from_row(row) for row in rows]

    # ------------------------- Sessions ------------------------- #
    def create_session(self, user_id: int, token: str, expires_at: datetime) -> Session:
        with _storage_errors("create session"), self.db.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO sessions (user_id, token, expires_at, created_at) VALUES (?, ?, ?, ?)",
                (user_id, token, to_timestamp(expires_at), to_timestamp(utcnow())),
            )
            row = conn.execute(
                "SELECT id, user_id, token, expires_at, created_at FROM sessions WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
            return Session.from_row(row)

    def get_session(self, token: str) -> Optional[Session]:
        with _storage_errors("fetch session"), self.db.connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, token, expires_at, created_at FROM sessions WHERE token = ?",
                (token,),
            ).fetchone()
            return Session.from_row(row) if row else None

    def get_user_by_token(self, token: str, now: datetime) -> Optional[User]:
        """Return the owner of a session that is still valid at ``now``."""
        with _storage_errors("fetch session"), self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT u.id, u.username, u.email, u.password_hash, u.role, u.created_at
                FROM users u
                INNER JOIN sessions s ON u.id = s.user_id
                WHERE s.token = ? AND s.expires_at > ?
                """,
                (token, to_timestamp(now)),
            ).fetchone()
            return User.from_row(row) if row else None

    def delete_session(self, token: str) -> bool:
        with _storage_errors("delete session"), self.db.connection() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
            return cursor.rowcount > 0

    # ------------------------- Books ------------------------- #
    def create_book(
        self,
        title: str,
        author: str,
        isbn: str,
        total_copies: int,
        publication_year: Optional[int] = None,
        genre: Optional[str] = None,
    ) -> Book:
        with _storage_errors("create book"), self.db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO books (title, author, isbn, publication_year, genre,
                                   total_copies, available_copies, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (title, author, isbn, publication_year, genre, total_copies, total_copies, to_timestamp(utcnow())),
            )
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return Book.from_row(row)

    def get_book(self, book_id: int) -> Optional[Book]:
        with _storage_errors("fetch book"), self.db.connection() as conn:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_row(row) if row else None

    def list_books(self) -> List[Book]:
        with _storage_errors("fetch books"), self.db.connection() as conn:
            rows = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books ORDER BY title, id").fetchall()
            return [Book.from_row(row) for row in rows]

    def search_books(self, query: str) -> List[Book]:
        """Substring match on title, author, isbn or genre."""
        pattern = _like_pattern(query)
        with _storage_errors("search books"), self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {BOOK_COLUMNS} FROM books
                WHERE title LIKE :p ESCAPE '\\' OR author LIKE :p ESCAPE '\\'
                   OR isbn LIKE :p ESCAPE '\\' OR genre LIKE :p ESCAPE '\\'
                ORDER BY title, id
                """,
                {"p": pattern},
            ).fetchall()
            return [Book.from_row(row) for row in rows]

    def update_book(self, book_id: int, changes: Dict[str, Any]) -> Book:
        """Apply a partial update; a ``total_copies`` change shifts ``available_copies`` by the same delta.

        Raises NotFound for a missing book, BadRequest for a negative total and
        Conflict when the shift would leave fewer available copies than zero.
        """
        unknown = set(changes) - set(UPDATABLE_BOOK_FIELDS)
        if unknown:
            raise BadRequest(f"Unknown book fields: {', '.join(sorted(unknown))}")

        with _storage_errors("update book"), self.db.transaction() as conn:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFound("Book not found")
            book = Book.from_row(row)

            total = changes.get("total_copies", book.total_copies)
            if total < 0:
                raise BadRequest("Total copies cannot be negative")
            available = book.available_copies + (total - book.total_copies)
            if available < 0:
                raise Conflict(
                    f"Cannot reduce total copies to {total}: {book.borrowed_copies} copies are currently borrowed"
                )

            conn.execute(
                """
                UPDATE books
                SET title = ?, author = ?, isbn = ?, publication_year = ?, genre = ?,
                    total_copies = ?, available_copies = ?
                WHERE id = ?
                """,
                (
                    changes.get("title", book.title),
                    changes.get("author", book.author),
                    changes.get("isbn", book.isbn),
                    changes.get("publication_year", book.publication_year),
                    changes.get("genre", book.genre),
                    total,
                    available,
                    book_id,
                ),
            )
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_row(row)

    def delete_book(self, book_id: int) -> None:
        """Delete a book and its returned lending history; refuse while copies are on loan."""
        with _storage_errors("delete book"), self.db.transaction() as conn:
            row = conn.execute("SELECT id FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFound("Book not found")
            active = conn.execute(
                "SELECT COUNT(*) FROM lending_records WHERE book_id = ? AND status IN (?, ?)",
                (book_id, STATUS_BORROWED, STATUS_OVERDUE),
            ).fetchone()[0]
            if active:
                raise Conflict(f"Book has {active} active loan(s) and cannot be deleted")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))

    # ------------------------- Lending ------------------------- #
    def checkout_copy(self, user_id: int, book_id: int, borrowed_at: datetime, due_date: datetime) -> LendingRecord:
        """Take one copy off the shelf and record the loan, as one transaction.

        The decrement is conditional on a copy being available, so two
        concurrent checkouts of the last copy cannot both succeed.
        """
        with _storage_errors("borrow book"), self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1 WHERE id = ? AND available_copies > 0",
                (book_id,),
            )
            if cursor.rowcount != 1:
                exists = conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone()
                if exists is None:
                    raise NotFound("Book not found")
                raise Unavailable("Book not available")
            cursor = conn.execute(
                """
                INSERT INTO lending_records (user_id, book_id, borrowed_at, due_date, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, book_id, to_timestamp(borrowed_at), to_timestamp(due_date), STATUS_BORROWED),
            )
            row = conn.execute(
                f"SELECT {RECORD_COLUMNS} FROM lending_records WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return LendingRecord.from_row(row)

    def checkin_copy(self, record_id: int, user_id: int, returned_at: datetime) -> LendingRecord:
        """Close an active loan owned by ``user_id`` and put the copy back, as one transaction.

        A missing record, someone else's record and an already returned
        record all raise the same NotFound.
        """
        with _storage_errors("return book"), self.db.transaction() as conn:
            row = conn.execute(f"SELECT {RECORD_COLUMNS} FROM lending_records WHERE id = ?", (record_id,)).fetchone()
            record = LendingRecord.from_row(row) if row else None
            if record is None or record.user_id != user_id or not record.is_active:
                raise NotFound(RECORD_NOT_FOUND)
            cursor = conn.execute(
                "UPDATE lending_records SET returned_at = ?, status = ? WHERE id = ? AND status != ?",
                (to_timestamp(returned_at), STATUS_RETURNED, record_id, STATUS_RETURNED),
            )
            if cursor.rowcount != 1:
                raise NotFound(RECORD_NOT_FOUND)
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies + 1 "
                "WHERE id = ? AND available_copies < total_copies",
                (record.book_id,),
            )
            if cursor.rowcount != 1:
                logger.warning(f"Book {record.book_id} was already fully stocked when record {record_id} was returned")
            row = conn.execute(f"SELECT {RECORD_COLUMNS} FROM lending_records WHERE id = ?", (record_id,)).fetchone()
            return LendingRecord.from_row(row)

    def get_lending_record(self, record_id: int) -> Optional[LendingRecord]:
        with _storage_errors("fetch lending record"), self.db.connection() as conn:
            row = conn.execute(f"SELECT {RECORD_COLUMNS} FROM lending_records WHERE id = ?", (record_id,)).fetchone()
            return LendingRecord.from_row(row) if row else None

    def mark_overdue(self, now: datetime) -> int:
        """Flip every borrowed record whose due date has passed to overdue; return how many changed."""
        with _storage_errors("update overdue records"), self.db.connection() as conn:
            cursor = conn.execute(
                "UPDATE lending_records SET status = ? WHERE status = ? AND due_date < ?",
                (STATUS_OVERDUE, STATUS_BORROWED, to_timestamp(now)),
            )
            return cursor.rowcount

    def list_user_active_records(self, user_id: int) -> List[LendingRecordDetails]:
        with _storage_errors("fetch borrowed books"), self.db.connection() as conn:
            rows = conn.execute(
                DETAILS_QUERY + " WHERE lr.user_id = ? AND lr.status IN (?, ?) ORDER BY lr.borrowed_at DESC, lr.id DESC",
                (user_id, STATUS_BORROWED, STATUS_OVERDUE),
            ).fetchall()
            return [LendingRecordDetails.from_row(row) for row in rows]

    def list_active_records(self) -> List[LendingRecordDetails]:
        with _storage_errors("fetch lending records"), self.db.connection() as conn:
            rows = conn.execute(
                DETAILS_QUERY + " WHERE lr.status IN (?, ?) ORDER BY lr.borrowed_at DESC, lr.id DESC",
                (STATUS_BORROWED, STATUS_OVERDUE),
            ).fetchall()
            return [LendingRecordDetails.from_row(row) for row in rows]

    def list_overdue_records(self) -> List[LendingRecordDetails]:
        with _storage_errors("fetch overdue books"), self.db.connection() as conn:
            rows = conn.execute(
                DETAILS_QUERY + " WHERE lr.status = ? ORDER BY lr.due_date ASC, lr.id ASC",
                (STATUS_OVERDUE,),
            ).fetchall()
            return [LendingRecordDetails.from_row(row) for row in rows]
