"""
Authentication business logic.

Session-scoped orchestrator over the passkey driver, the session store and
the local mirror. ``has_credentials`` (something is stored) and
``is_authenticated`` (the user proved presence in this process) are kept
distinct: the latter is always False until register, login or quick unlock
succeeds.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from zuno.api.errors import HttpStatusError
from zuno.api.schemas import UpdateUserRequest, UserResponse
from zuno.auth.errors import (
    BiometricsNotAvailable,
    NoStoredCredentials,
    NotAuthenticated,
    TokenExpired,
)
from zuno.auth.handles import validate_handle
from zuno.logging_config import bind_session_context

if TYPE_CHECKING:
    from zuno.api.client import ZunoApiClient
    from zuno.auth.biometric import BiometricGate
    from zuno.auth.passkey import RelyingPartyClient
    from zuno.auth.session_store import SessionStore
    from zuno.db.models import LocalUser
    from zuno.sync.reconciler import Reconciler

logger = structlog.get_logger()

HTTP_UNAUTHORIZED = 401


class AuthService:
    """Register, log in, unlock and log out the device's user."""

    def __init__(
        self,
        rp_client: RelyingPartyClient,
        api: ZunoApiClient,
        session_store: SessionStore,
        reconciler: Reconciler,
        biometric: BiometricGate | None = None,
    ) -> None:
        self._rp = rp_client
        self._api = api
        self._store = session_store
        self._reconciler = reconciler
        self._biometric = biometric
        self.current_user: LocalUser | None = None
        self.is_authenticated = False

    # ---------------------------------------------------------------------------
    # Status
    # ---------------------------------------------------------------------------

    @property
    def has_credentials(self) -> bool:
        return self._store.has_stored_credentials()

    def check_status(self) -> bool:
        """
        Launch-time check.

        Returns True when a quick unlock may be offered. Never authenticates,
        regardless of what is stored.
        """
        self.is_authenticated = False
        self.current_user = None
        offer = self._store.has_quick_unlock_identity()
        logger.info("auth_status_checked", quick_unlock_available=offer)
        return offer

    def _require_auth(self) -> LocalUser:
        if not self.is_authenticated or self.current_user is None:
            msg = "Not authenticated"
            raise NotAuthenticated(msg)
        return self.current_user

    async def _sign_in(self, payload: UserResponse, method: str) -> LocalUser:
        user = await self._reconciler.upsert_user(payload)
        self.current_user = user
        self.is_authenticated = True
        bind_session_context(user.id, user.zuno_tag)
        logger.info("user_signed_in", method=method)
        return user

    # ---------------------------------------------------------------------------
    # Passkey flows
    # ---------------------------------------------------------------------------

    async def register(self, zuno_tag: str, display_name: str | None = None, email: str | None = None) -> LocalUser:
        result = await self._rp.register(zuno_tag, display_name=display_name, email=email)
        return await self._sign_in(result.user, "passkey_registration")

    async def login(self, zuno_tag: str) -> LocalUser:
        result = await self._rp.authenticate(zuno_tag)
        return await self._sign_in(result.user, "passkey_login")

    async def quick_unlock(self, reason: str = "Unlock your Zuno wallet") -> LocalUser:
        """
        Biometric re-entry using the stored session.

        Raises BiometricsNotAvailable, BiometricAuthenticationFailed,
        NoStoredCredentials, or TokenExpired when the server rejects the
        stored session. After TokenExpired the stored session is cleared and
        a full passkey login is required.
        """
        if self._biometric is None or not self._biometric.is_available():
            msg = "Biometric authentication is not available on this device"
            raise BiometricsNotAvailable(msg)

        await self._biometric.authenticate(reason)

        if not self._store.has_quick_unlock_identity():
            msg = "No stored credentials found. Please sign in with your passkey."
            raise NoStoredCredentials(msg)

        try:
            payload = await self._api.get_current_user()
        except NotAuthenticated as e:
            msg = "Stored session is incomplete"
            raise NoStoredCredentials(msg) from e
        except HttpStatusError as e:
            if e.status_code != HTTP_UNAUTHORIZED:
                raise
            logger.info("quick_unlock_token_expired")
            self.logout()
            msg = "Your session has expired. Please sign in with your passkey."
            raise TokenExpired(msg) from e

        return await self._sign_in(payload, "quick_unlock")

    def logout(self) -> None:
        """
        Drop the in-process session and remove all stored credentials.

        Raises CredentialStoreError naming the entries that could not be
        removed; the in-process session is cleared either way.
        """
        user_id = self.current_user.id if self.current_user else None
        self.current_user = None
        self.is_authenticated = False
        bind_session_context(None)
        self._store.clear()
        logger.info("user_logged_out", user_id=user_id)

    # ---------------------------------------------------------------------------
    # Profile
    # ---------------------------------------------------------------------------

    async def update_profile(
        self,
        *,
        email: str | None = None,
        display_name: str | None = None,
        default_currency: str | None = None,
        preferred_network: str | None = None,
        preferred_stablecoin: str | None = None,
    ) -> LocalUser:
        self._require_auth()
        update = UpdateUserRequest(
            email=email,
            display_name=display_name,
            default_currency=default_currency,
            preferred_network=preferred_network,
            preferred_stablecoin=preferred_stablecoin,
        )
        payload = await self._api.update_user(update)
        self.current_user = await self._reconciler.upsert_user(payload)
        logger.info("profile_updated", fields=sorted(update.model_dump(exclude_none=True)))
        return self.current_user

    async def refresh_user(self) -> LocalUser:
        self._require_auth()
        payload = await self._api.get_current_user()
        self.current_user = await self._reconciler.upsert_user(payload)
        return self.current_user

    async def check_zuno_tag_availability(self, zuno_tag: str) -> bool:
        return await self._api.check_zuno_tag_availability(validate_handle(zuno_tag))

    async def check_email_availability(self, email: str) -> bool:
        return await self._api.check_email_availability(email.strip().lower())
