"""Composition root: builds the store handle and every component on top of it."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from library_service.config import Settings, settings as default_settings
from library_service.database import Database
from library_service.gateway import LibraryGateway
from library_service.handlers import Handlers
from library_service.lending import LendingEngine
from library_service.models import utcnow
from library_service.sessions import SessionAuthenticator

logger = logging.getLogger(__name__)


class LibraryApp:
    """One instance per process; ``handle`` turns a raw request into raw response bytes."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or default_settings
        self.db = Database(self.settings)
        self.gateway = LibraryGateway(self.db)
        self.authenticator = SessionAuthenticator(self.gateway, self.settings, clock)
        self.engine = LendingEngine(self.gateway, self.settings, clock)
        self.handlers = Handlers(self.gateway, self.authenticator, self.engine, self.settings)

    def initialize(self) -> "LibraryApp":
        self.db.initialize()
        return self

    def handle(self, raw: bytes) -> bytes:
        return self.handlers.dispatch(raw).to_bytes()
