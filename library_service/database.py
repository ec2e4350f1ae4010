"""SQLite store handle: connections, transactions, schema and admin seed.

A single :class:`Database` is created at startup and passed to every
component that needs the store. Each operation opens its own connection so
concurrent requests are serialized by SQLite itself (WAL mode plus a busy
timeout), never by locks in the service code.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from library_service import credentials
from library_service.config import Settings
from library_service.errors import ServiceError
from library_service.models import ROLE_ADMIN, to_timestamp, utcnow

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT UNIQUE NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('admin', 'lender')),
        created_at TIMESTAMP NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT UNIQUE NOT NULL,
        publication_year INTEGER,
        genre TEXT,
        total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
        available_copies INTEGER NOT NULL
            CHECK(available_copies >= 0 AND available_copies <= total_copies),
        created_at TIMESTAMP NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lending_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        book_id INTEGER NOT NULL,
        borrowed_at TIMESTAMP NOT NULL,
        due_date TIMESTAMP NOT NULL,
        returned_at TIMESTAMP,
        status TEXT NOT NULL CHECK(status IN ('borrowed', 'returned', 'overdue')),
        FOREIGN KEY (user_id) REFERENCES users(id),
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        token TEXT UNIQUE NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
        FOREIGN KEY (user_id) REFERENCES users(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_lending_user_status ON lending_records(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_lending_status_due ON lending_records(status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)",
]


class Database:
    """Process-wide handle on the SQLite file named by ``settings.db_file``."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.path = settings.db_file

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection with the service PRAGMAs applied."""
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.settings.db_busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            logger.error(f"Could not open database {self.path}: {e}")
            raise ServiceError("Database unavailable") from e
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE``; commit on success, roll back otherwise.

        The write lock is taken up front, so a check followed by an update in
        the same block cannot interleave with another writer.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def create_tables(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with self.connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def seed_admin(self) -> None:
        """Insert the configured admin account unless it already exists."""
        s = self.settings
        with self.connection() as conn:
            row = conn.execute("SELECT id FROM users WHERE username = ?", (s.admin_username,)).fetchone()
            if row is not None:
                return
            password_hash = credentials.hash_password(s.admin_password, rounds=s.bcrypt_rounds)
            conn.execute(
                "INSERT OR IGNORE INTO users (username, email, password_hash, role, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (s.admin_username, s.admin_email, password_hash, ROLE_ADMIN, to_timestamp(utcnow())),
            )
        logger.info(f"Seeded admin account '{s.admin_username}'")

    def initialize(self) -> None:
        """Create the schema if needed and seed the admin account."""
        try:
            self.create_tables()
            self.seed_admin()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Database initialization failed: {e}")
            raise ServiceError("Database initialization failed") from e
        logger.info(f"Database ready at {self.path}")
