"""Lending engine: borrow, return and the overdue transition.

Each lending record moves ``borrowed -> overdue -> returned`` (or straight
from ``borrowed`` to ``returned``). The overdue transition is never scheduled;
every listing that can show it first sweeps past-due records and then reads,
so ``overdue`` is always derived from the due date at query time.

The copy-count invariant ``0 <= available_copies <= total_copies`` is kept by
the gateway's atomic checkout/checkin transactions and by refusing total
copy edits that would strand borrowed copies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from library_service.config import Settings
from library_service.gateway import LibraryGateway
from library_service.models import Book, LendingRecord, LendingRecordDetails, utcnow

logger = logging.getLogger(__name__)


class LendingEngine:
    def __init__(
        self,
        gateway: LibraryGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    # ------------------------- Transitions ------------------------- #
    def borrow(self, user_id: int, book_id: int) -> LendingRecord:
        """Lend one copy of ``book_id`` to ``user_id`` for ``loan_days`` days.

        Raises NotFound if the book does not exist and Unavailable if no copy
        is left. No record is created on failure.
        """
        borrowed_at = self.clock()
        due_date = borrowed_at + timedelta(days=self.settings.loan_days)
        record = self.gateway.checkout_copy(user_id, book_id, borrowed_at, due_date)
        logger.info(f"User {user_id} borrowed book {book_id} (record {record.id}, due {record.due_date})")
        return record

    def return_book(self, record_id: int, user_id: int) -> LendingRecord:
        """Close ``record_id`` for its owner and put the copy back on the shelf.

        Raises NotFound for a missing record, a record owned by another user,
        or a record that was already returned.
        """
        record = self.gateway.checkin_copy(record_id, user_id, self.clock())
        logger.info(f"User {user_id} returned book {record.book_id} (record {record.id})")
        return record

    def refresh_overdue(self) -> int:
        changed = self.gateway.mark_overdue(self.clock())
        if changed:
            logger.info(f"Marked {changed} lending record(s) overdue")
        return changed

    # ------------------------- Sweep-then-query reads ------------------------- #
    def list_overdue(self) -> List[LendingRecordDetails]:
        self.refresh_overdue()
        return self.gateway.list_overdue_records()

    def list_active(self) -> List[LendingRecordDetails]:
        self.refresh_overdue()
        return self.gateway.list_active_records()

    def list_for_user(self, user_id: int) -> List[LendingRecordDetails]:
        self.refresh_overdue()
        return self.gateway.list_user_active_records(user_id)

    # ------------------------- Stock ------------------------- #
    def update_book(self, book_id: int, changes: Dict[str, Any]) -> Book:
        """Edit a book. Changing ``total_copies`` moves ``available_copies`` by the same delta."""
        book = self.gateway.update_book(book_id, changes)
        if "total_copies" in changes:
            logger.info(
                f"Book {book_id} stock set to {book.total_copies} total / {book.available_copies} available"
            )
        return book
