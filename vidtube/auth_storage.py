"""Persistence for the only client state that survives a restart.

The token pair and the cached user snapshot are stored in the system keyring,
one small entry per value:

  - access_token
  - refresh_token (split into base64 chunks when the backend rejects it whole)
  - user           (JSON snapshot)

Everything else (collections, filters, scroll state) is rebuilt from the
backend on each view mount.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .config import KEYRING_SERVICE
from .data_models import User
from .errors import AuthStorageError

# Keep chunks small to stay under per-credential limits on Windows Credential Manager.
_CHUNK_SIZE = 1000

logger = logging.getLogger("vidtube.auth_storage")


@dataclass
class StoredSession:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[User] = None


class TokenStore(Protocol):
    def load(self) -> Optional[StoredSession]: ...
    def save(self, stored: StoredSession) -> None: ...
    def clear(self) -> None: ...


class MemoryTokenStore:
    """Process-local store; nothing survives a restart."""

    def __init__(self, stored: Optional[StoredSession] = None):
        self.stored = stored

    def load(self) -> Optional[StoredSession]:
        return self.stored

    def save(self, stored: StoredSession) -> None:
        self.stored = StoredSession(stored.access_token, stored.refresh_token, stored.user)

    def clear(self) -> None:
        self.stored = None


class KeyringTokenStore:
    """Token store backed by the system keyring."""

    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    def save(self, stored: StoredSession) -> None:
        """Write the session, replacing every entry of the previous one.

        Values that are None are deleted so a later ``load`` can't pick them up.
        """
        try:
            if stored.access_token:
                keyring.set_password(self.service, "access_token", stored.access_token)
            else:
                self._delete("access_token")
            if stored.refresh_token:
                try:
                    keyring.set_password(self.service, "refresh_token", stored.refresh_token)
                except KeyringError:
                    logger.debug("single refresh_token write failed; attempting chunked storage")
                    # load() prefers the whole entry, so an old one would shadow the chunks
                    self._delete("refresh_token")
                    self._store_chunked("refresh_token", stored.refresh_token)
                else:
                    self._delete_chunked("refresh_token")
            else:
                self._delete("refresh_token")
                self._delete_chunked("refresh_token")
            if stored.user:
                keyring.set_password(self.service, "user", json.dumps(stored.user.to_dict()))
            else:
                self._delete("user")
        except KeyringError as e:
            logger.exception("failed to write session to keyring")
            raise AuthStorageError(f"Could not save session: {e}") from e
        logger.debug("wrote session pieces to keyring")

    def load(self) -> Optional[StoredSession]:
        try:
            access = keyring.get_password(self.service, "access_token")
            refresh = keyring.get_password(self.service, "refresh_token")
            if not refresh:
                refresh = self._read_chunked("refresh_token")
            raw_user = keyring.get_password(self.service, "user")
        except KeyringError as e:
            logger.exception("failed to read session from keyring")
            raise AuthStorageError(f"Could not load session: {e}") from e

        user = None
        if raw_user:
            try:
                user = User.from_payload(json.loads(raw_user))
            except ValueError:
                logger.warning("discarding unreadable user snapshot")

        if not (access or refresh or user):
            return None
        return StoredSession(access_token=access, refresh_token=refresh, user=user)

    def clear(self) -> None:
        """Remove every stored entry. Missing entries are fine."""
        for key in ("access_token", "refresh_token", "user"):
            self._delete(key)
        self._delete_chunked("refresh_token")

    # --- chunked values ---
    def _store_chunked(self, key_base: str, value: str) -> None:
        """Split a large value into base64 chunks under {key_base}.part{i},
        with the part count at {key_base}.parts."""
        self._delete_chunked(key_base)
        data = value.encode("utf-8")
        parts = [data[i : i + _CHUNK_SIZE] for i in range(0, len(data), _CHUNK_SIZE)]
        for idx, part in enumerate(parts):
            keyring.set_password(self.service, f"{key_base}.part{idx}", base64.b64encode(part).decode("ascii"))
        keyring.set_password(self.service, f"{key_base}.parts", str(len(parts)))
        logger.debug("stored %s in %d chunk(s)", key_base, len(parts))

    def _read_chunked(self, key_base: str) -> Optional[str]:
        count_s = keyring.get_password(self.service, f"{key_base}.parts")
        if not count_s:
            return None
        try:
            count = int(count_s)
        except ValueError:
            logger.debug("invalid parts index for %s: %r", key_base, count_s)
            return None

        parts = []
        for i in range(count):
            b64 = keyring.get_password(self.service, f"{key_base}.part{i}")
            if b64 is None:
                raise AuthStorageError(f"missing chunk {key_base}.part{i}")
            parts.append(base64.b64decode(b64.encode("ascii")))
        return b"".join(parts).decode("utf-8")

    def _delete_chunked(self, key_base: str) -> None:
        try:
            count_s = keyring.get_password(self.service, f"{key_base}.parts")
        except KeyringError:
            return
        if not count_s:
            return
        if count_s.isdigit():
            for i in range(int(count_s)):
                self._delete(f"{key_base}.part{i}")
        self._delete(f"{key_base}.parts")

    def _delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            pass
        except KeyringError:
            logger.debug("could not delete %s from keyring", key)
