"""Credential persistence for the session.

A ``TokenStore`` keeps the access / refresh token pair across process
restarts. Reads never raise: a store that cannot be read is treated as
holding no credentials, which the session reports as unauthenticated.
"""

from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from grocery_sync.models import Credentials

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"


class TokenStoreError(Exception):
    """Raised when credentials cannot be written."""


class TokenStore(Protocol):
    """Minimal interface the session needs from a credential store."""

    def get(self) -> Credentials | None:
        """Return stored credentials, or None if absent or unreadable."""
        ...  # pragma: no cover

    def set(self, credentials: Credentials) -> None:
        """Persist credentials, replacing any stored pair."""
        ...  # pragma: no cover

    def clear(self) -> None:
        """Remove stored credentials."""
        ...  # pragma: no cover


class MemoryTokenStore:
    """Process-lifetime store, used by tests and short-lived tools."""

    def __init__(self, credentials: Credentials | None = None) -> None:
        """Initialize, optionally pre-seeded.

        Args:
            credentials: Initial credentials.
        """
        self._credentials = credentials

    def get(self) -> Credentials | None:
        """Return stored credentials.

        Returns:
            The stored pair, or None.
        """
        return self._credentials

    def set(self, credentials: Credentials) -> None:
        """Store credentials.

        Args:
            credentials: Pair to store.
        """
        self._credentials = credentials

    def clear(self) -> None:
        """Forget stored credentials."""
        self._credentials = None


class FileTokenStore:
    """JSON file store readable only by the current user.

    The file holds a single object with the fixed keys ``access_token``
    and ``refresh_token``.

    Args:
        path: Location of the token file.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the store.

        Args:
            path: Location of the token file.
        """
        self._path = os.fspath(path)

    @property
    def path(self) -> str:
        """Return the token file location."""
        return self._path

    def get(self) -> Credentials | None:
        """Read credentials from disk.

        Returns:
            Stored credentials, or None if the file is missing, unreadable,
            or does not hold a valid token pair.
        """
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("Could not read token file %s", self._path)
            return None

        if not isinstance(data, dict):
            logger.warning("Token file %s has unexpected content", self._path)
            return None
        try:
            return Credentials(
                access_token=data.get(ACCESS_TOKEN_KEY, ""),
                refresh_token=data.get(REFRESH_TOKEN_KEY, ""),
            )
        except ValidationError:
            logger.warning("Token file %s has an incomplete token pair", self._path)
            return None

    def set(self, credentials: Credentials) -> None:
        """Write credentials to disk with owner-only permissions.

        Args:
            credentials: Pair to store.

        Raises:
            TokenStoreError: If the file cannot be written.
        """
        payload = {
            ACCESS_TOKEN_KEY: credentials.access_token,
            REFRESH_TOKEN_KEY: credentials.refresh_token,
        }
        try:
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
        except OSError as exc:
            raise TokenStoreError(
                f"Failed to save tokens to {self._path}: {exc}"
            ) from exc

    def clear(self) -> None:
        """Delete the token file, logging (not raising) on failure."""
        try:
            os.remove(self._path)
        except FileNotFoundError:
            return
        except OSError:
            logger.warning("Could not delete token file %s", self._path)
