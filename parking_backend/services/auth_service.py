"""Bearer session authentication resolving callers to an identity and role."""

from __future__ import annotations

import secrets
from threading import Lock
from typing import Optional

from parking_backend.domain.models import Identity, Role
from parking_backend.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when provided token is invalid."""


class InvalidSessionError(AuthenticationError):
    """Raised when a bearer token maps to no session."""


def _same_secret(provided: str, expected: str) -> bool:
    # compare_digest only accepts ASCII str, so compare UTF-8 bytes
    return secrets.compare_digest(
        provided.encode("utf-8", "surrogatepass"),
        expected.encode("utf-8", "surrogatepass"),
    )


class AuthService:
    """Issues opaque session tokens and resolves them back to identities."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: dict[str, Identity] = {}
        self._lock = Lock()

    def _expected_token(self) -> str:
        if not self._settings.admin_token:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured. Set ADMIN_TOKEN in environment variables."
            )
        return self._settings.admin_token

    def login(self, provided_admin_token: str) -> str:
        expected = self._expected_token()
        if not _same_secret(provided_admin_token, expected):
            raise InvalidAdminTokenError("Invalid admin token")
        return self.issue_session(
            Identity(user_id=self._settings.admin_user_id, role=Role.ADMIN)
        )

    def issue_session(self, identity: Identity) -> str:
        """Open a session for an identity vouched for by the caller.

        An identity holds at most one session; a new one replaces the old.
        """
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions = {
                existing: holder
                for existing, holder in self._sessions.items()
                if holder != identity
            }
            self._sessions[token] = identity
        return token

    def resolve(self, bearer_token: str) -> Identity:
        with self._lock:
            for token, identity in self._sessions.items():
                if _same_secret(bearer_token, token):
                    return identity
        raise InvalidSessionError("Invalid bearer token")

    def logout(self, bearer_token: str) -> None:
        with self._lock:
            self._sessions.pop(bearer_token, None)
