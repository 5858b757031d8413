"""The process session: current credentials and authentication state.

The session is an explicit object handed to the transport and refresh gate
rather than ambient global state, so each test can work with its own.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from grocery_sync.models import Credentials
    from grocery_sync.token_store import TokenStore

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    """Authentication state of the session."""

    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    UNAUTHENTICATED = "unauthenticated"


class Session:
    """Holds the current token pair, backed by a TokenStore.

    Only the refresh gate and explicit sign-in / logout change a session.

    Args:
        store: Persistence for the token pair.
    """

    def __init__(self, store: TokenStore) -> None:
        """Initialize from whatever the store currently holds.

        Args:
            store: Persistence for the token pair.
        """
        self._store = store
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._state = SessionState.UNAUTHENTICATED
        self.reload()

    @property
    def access_token(self) -> str | None:
        """Return the current access token."""
        return self._access_token

    @property
    def refresh_token(self) -> str | None:
        """Return the current refresh token."""
        return self._refresh_token

    @property
    def state(self) -> SessionState:
        """Return the current state."""
        return self._state

    @property
    def is_authenticated(self) -> bool:
        """Check whether the session holds an access token."""
        return self._access_token is not None

    def reload(self) -> None:
        """Re-read credentials from the store.

        An unreadable store leaves the session unauthenticated.
        """
        credentials = self._store.get()
        if credentials is None:
            self._set_empty()
            return
        self._access_token = credentials.access_token
        self._refresh_token = credentials.refresh_token
        self._state = SessionState.AUTHENTICATED

    def authenticate(self, credentials: Credentials) -> None:
        """Persist and adopt a new token pair.

        The store is written first so a failed write leaves the session
        unchanged.

        Args:
            credentials: New token pair.

        Raises:
            TokenStoreError: If the store cannot persist the pair.
        """
        self._store.set(credentials)
        self._access_token = credentials.access_token
        self._refresh_token = credentials.refresh_token
        self._state = SessionState.AUTHENTICATED

    def mark_refreshing(self) -> None:
        """Record that a token refresh is in flight."""
        self._state = SessionState.REFRESHING

    def mark_settled(self) -> None:
        """Return to the state implied by the held tokens."""
        self._state = (
            SessionState.AUTHENTICATED
            if self._access_token is not None
            else SessionState.UNAUTHENTICATED
        )

    def clear(self) -> None:
        """Forget the tokens in memory and in the store."""
        self._store.clear()
        self._set_empty()
        logger.info("Session cleared")

    def _set_empty(self) -> None:
        self._access_token = None
        self._refresh_token = None
        self._state = SessionState.UNAUTHENTICATED
