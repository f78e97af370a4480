"""
Secret storage for the session token pair and identity markers.

Backed by the ``keyring`` library, which picks the platform secret store
(Keychain, Secret Service, Windows Credential Locker). Exactly four entries
are kept: access token, refresh token, user id and Zuno tag.

Possession of these entries never authenticates anyone. It only tells the
caller that a biometric quick unlock may be offered.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import keyring
import keyring.errors
import structlog

logger = structlog.get_logger()

ACCESS_TOKEN_KEY = "com.zuno.accessToken"
REFRESH_TOKEN_KEY = "com.zuno.refreshToken"
USER_ID_KEY = "com.zuno.userID"
ZUNO_TAG_KEY = "com.zuno.zunoTag"

ALL_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_ID_KEY, ZUNO_TAG_KEY)


class CredentialNotFound(LookupError):
    """Raised when a requested entry is not in secret storage."""


class CredentialStoreError(RuntimeError):
    """Raised when the secret store rejects an operation."""

    def __init__(self, message: str, failed_keys: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_keys = failed_keys or []


@dataclass(frozen=True)
class SessionTokenPair:
    """Access/refresh token pair. Only valid when both tokens are present."""

    access: str
    refresh: str
    expires_in_seconds: int = 0

    @property
    def is_valid(self) -> bool:
        return bool(self.access) and bool(self.refresh)


class SessionStore:
    """
    Key/value facade over the platform secret store.

    Every operation takes the same re-entrant lock, so multi-key writes
    (save_tokens, save_identity, save_session) and clear() never interleave.
    """

    def __init__(self, service_name: str = "com.zuno.app") -> None:
        self._service = service_name
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Single entries
    # ------------------------------------------------------------------

    def save(self, value: str, key: str) -> None:
        with self._lock:
            try:
                keyring.set_password(self._service, key, value)
            except keyring.errors.KeyringError as e:
                msg = f"Failed to save {key}: {e}"
                raise CredentialStoreError(msg, [key]) from e

    def exists(self, key: str) -> bool:
        with self._lock:
            return bool(keyring.get_password(self._service, key))

    def retrieve(self, key: str) -> str:
        with self._lock:
            value = keyring.get_password(self._service, key)
        if not value:
            msg = f"No stored value for {key}"
            raise CredentialNotFound(msg)
        return value

    def delete(self, key: str) -> None:
        """Remove an entry. A missing entry is not an error."""
        with self._lock:
            if keyring.get_password(self._service, key) is None:
                return
            try:
                keyring.delete_password(self._service, key)
            except keyring.errors.PasswordDeleteError as e:
                msg = f"Failed to delete {key}: {e}"
                raise CredentialStoreError(msg, [key]) from e

    def _get(self, key: str) -> str | None:
        return keyring.get_password(self._service, key) or None

    def _restore(self, snapshot: dict[str, str | None]) -> None:
        for key, value in snapshot.items():
            try:
                if value is None:
                    self.delete(key)
                else:
                    keyring.set_password(self._service, key, value)
            except (keyring.errors.KeyringError, CredentialStoreError):
                logger.exception("credential_restore_failed", key=key)

    def _save_many(self, values: dict[str, str]) -> None:
        with self._lock:
            snapshot = {key: self._get(key) for key in values}
            try:
                for key, value in values.items():
                    self.save(value, key)
            except CredentialStoreError:
                self._restore(snapshot)
                raise

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def save_tokens(self, tokens: SessionTokenPair) -> None:
        """Persist both tokens, or neither."""
        if not tokens.is_valid:
            msg = "Refusing to store a partial token pair"
            raise ValueError(msg)
        self._save_many({ACCESS_TOKEN_KEY: tokens.access, REFRESH_TOKEN_KEY: tokens.refresh})
        logger.info("session_tokens_saved")

    def save_identity(self, user_id: str, zuno_tag: str) -> None:
        self._save_many({USER_ID_KEY: user_id, ZUNO_TAG_KEY: zuno_tag})

    def save_session(self, tokens: SessionTokenPair, user_id: str, zuno_tag: str) -> None:
        """Persist the token pair and the signed-in identity together, or none of them."""
        if not tokens.is_valid:
            msg = "Refusing to store a partial token pair"
            raise ValueError(msg)
        self._save_many(
            {
                ACCESS_TOKEN_KEY: tokens.access,
                REFRESH_TOKEN_KEY: tokens.refresh,
                USER_ID_KEY: user_id,
                ZUNO_TAG_KEY: zuno_tag,
            }
        )
        logger.info("session_saved", user_id=user_id)

    def load_tokens(self) -> SessionTokenPair | None:
        """Return the stored pair, or None when either token is missing."""
        with self._lock:
            access = self._get(ACCESS_TOKEN_KEY)
            refresh = self._get(REFRESH_TOKEN_KEY)
        if access is None or refresh is None:
            return None
        return SessionTokenPair(access=access, refresh=refresh)

    def load_identity(self) -> tuple[str, str | None] | None:
        with self._lock:
            user_id = self._get(USER_ID_KEY)
            zuno_tag = self._get(ZUNO_TAG_KEY)
        if user_id is None:
            return None
        return user_id, zuno_tag

    def access_token(self) -> str | None:
        with self._lock:
            return self._get(ACCESS_TOKEN_KEY)

    def has_stored_credentials(self) -> bool:
        return self.load_tokens() is not None

    def has_quick_unlock_identity(self) -> bool:
        with self._lock:
            return self.has_stored_credentials() and self._get(USER_ID_KEY) is not None

    def clear(self) -> None:
        """
        Remove all four entries as one logical operation.

        Every key is attempted. Keys that could not be removed are reported
        together in CredentialStoreError.failed_keys.
        """
        failed: list[str] = []
        with self._lock:
            for key in ALL_KEYS:
                try:
                    self.delete(key)
                except (CredentialStoreError, keyring.errors.KeyringError):
                    failed.append(key)
        if failed:
            logger.error("session_clear_incomplete", failed_keys=failed)
            msg = f"Could not remove: {', '.join(failed)}"
            raise CredentialStoreError(msg, failed)
        logger.info("session_cleared")
