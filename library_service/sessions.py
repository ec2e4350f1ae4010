"""Bearer-token session authentication.

A session row is the only credential accepted by authenticated routes.
Sessions expire ``session_ttl_hours`` after login; an expired session is
treated exactly like a missing one and is left in place rather than purged.
Authentication is read-only: there is no sliding expiry and no renewal.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from library_service import credentials
from library_service.config import Settings
from library_service.errors import Forbidden, Unauthorized
from library_service.gateway import LibraryGateway
from library_service.models import User, utcnow

logger = logging.getLogger(__name__)


def _token_hint(token: str) -> str:
    return token[:6] + "..." if len(token) > 6 else "..."


class SessionAuthenticator:
    def __init__(
        self,
        gateway: LibraryGateway,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.clock = clock

    def authenticate(self, token: Optional[str]) -> User:
        """Return the user owning ``token``; raise Unauthorized if it is missing, unknown or expired."""
        if not token:
            logger.info("Authentication failed: no token provided")
            raise Unauthorized("Unauthorized")
        user = self.gateway.get_user_by_token(token, self.clock())
        if user is None:
            logger.info(f"Authentication failed: token {_token_hint(token)} not found or expired")
            raise Unauthorized("Unauthorized")
        return user

    def authenticate_admin(self, token: Optional[str]) -> User:
        """Like :meth:`authenticate`, but a non-admin user raises Forbidden."""
        user = self.authenticate(token)
        if not user.is_admin:
            logger.info(f"Authorization failed: user '{user.username}' is not an admin")
            raise Forbidden("Forbidden")
        return user

    def login(self, username: str, password: str) -> Tuple[str, User]:
        """Verify a credential and open a new session; return ``(token, user)``."""
        user = self.gateway.get_user_by_username(username)
        if user is None or not credentials.verify_password(password, user.password_hash):
            logger.info(f"Login failed for '{username}'")
            raise Unauthorized("Invalid credentials")
        token = credentials.new_token()
        expires_at = self.clock() + timedelta(hours=self.settings.session_ttl_hours)
        self.gateway.create_session(user.id, token, expires_at)
        logger.info(f"User '{user.username}' logged in")
        return token, user

    def logout(self, token: Optional[str]) -> bool:
        """Delete the session for ``token`` if there is one. Missing tokens are a no-op."""
        if not token:
            return False
        removed = self.gateway.delete_session(token)
        if removed:
            logger.info(f"Session {_token_hint(token)} closed")
        return removed
