"""
Service containers.

``AppContext`` lives as long as the process: settings, secure storage, the
API client, the local mirror and the auth service. ``SessionContext`` is
opened once a user is authenticated and closed on logout; it owns the
wallet and transaction services and the push/poll refresh machinery.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zuno.api.client import ZunoApiClient
from zuno.auth.credentials import CeremonyBroker, CredentialProvider, PlatformAuthenticator
from zuno.auth.errors import NotAuthenticated
from zuno.auth.passkey import RelyingPartyClient
from zuno.auth.service import AuthService
from zuno.auth.session_store import SessionStore
from zuno.config import Settings, get_settings
from zuno.database import close_db, get_session_factory, init_db
from zuno.logging_config import setup_logging
from zuno.sync.cache import CacheStore, SettingsStore
from zuno.sync.reconciler import Reconciler
from zuno.transactions.service import TransactionService
from zuno.wallets.service import WalletService
from zuno.ws.client import PushClient
from zuno.ws.refresh import RefreshCoordinator

if TYPE_CHECKING:
    import httpx

    from zuno.auth.biometric import BiometricGate
    from zuno.db.models import LocalUser

logger = structlog.get_logger()


class SessionContext:
    """Services scoped to one authenticated session."""

    def __init__(self, app: AppContext, *, push_connect: Callable[..., Any] | None = None) -> None:
        settings = app.settings
        user = app.auth.current_user
        if user is None:
            msg = "Cannot open a session without a signed-in user"
            raise NotAuthenticated(msg)
        self.user: LocalUser = user
        self.wallets = WalletService(
            app.api,
            app.reconciler,
            app.auth,
            default_network=settings.default_network,
            supported_networks=settings.supported_networks,
        )
        self.transactions = TransactionService(app.api, app.reconciler, self.wallets)

        push_kwargs: dict[str, Any] = {} if push_connect is None else {"connect": push_connect}
        self.push = PushClient(
            settings.ws_url,
            app.session_store.access_token,
            heartbeat_interval=settings.ws_heartbeat_interval_seconds,
            max_reconnect_attempts=settings.ws_max_reconnect_attempts,
            max_backoff=settings.ws_max_backoff_seconds,
            **push_kwargs,
        )
        self.refresh = RefreshCoordinator(
            self.push,
            app.reconciler,
            self.wallets,
            self.transactions,
            poll_interval=settings.poll_interval_seconds,
        )

    async def start(self) -> None:
        """Start push updates (with polling fallback)."""
        await self.refresh.start()

    async def close(self) -> None:
        await self.refresh.stop()
        self.wallets.tracker.reset()
        logger.info("session_closed", user_id=self.user.id)


class AppContext:
    """Process-lifetime services."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        provider: CredentialProvider | None = None,
        authenticator: PlatformAuthenticator | None = None,
        biometric: BiometricGate | None = None,
        session_store: SessionStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        if provider is None:
            if authenticator is None:
                msg = "Either a credential provider or a platform authenticator is required"
                raise ValueError(msg)
            provider = CeremonyBroker(authenticator, timeout=settings.webauthn_timeout_seconds)
        self.provider = provider
        self.session_store = session_store or SessionStore(settings.keychain_service)
        self.api = ZunoApiClient(
            settings.api_base_url,
            self.session_store.access_token,
            timeout=settings.api_timeout_seconds,
            transport=transport,
        )
        self.reconciler = Reconciler(session_factory)
        self.cache = CacheStore(session_factory, default_ttl=settings.cache_ttl_seconds)
        self.app_settings = SettingsStore(
            session_factory,
            default_currency=settings.default_currency,
            default_network=settings.default_network,
        )
        self.rp_client = RelyingPartyClient(
            self.api,
            provider,
            self.session_store,
            relying_party_id=settings.webauthn_relying_party_id,
        )
        self.auth = AuthService(self.rp_client, self.api, self.session_store, self.reconciler, biometric)
        self.session: SessionContext | None = None

    @classmethod
    async def create(cls, settings: Settings | None = None, **kwargs: Any) -> AppContext:
        """Initialize the local database and build the context."""
        settings = settings or get_settings()
        await init_db(settings.database_url)
        return cls(settings, get_session_factory(), **kwargs)

    def open_session(self, *, push_connect: Callable[..., Any] | None = None) -> SessionContext:
        """Return the session for the signed-in user, creating it on first use."""
        if not self.auth.is_authenticated:
            msg = "Not authenticated"
            raise NotAuthenticated(msg)
        if self.session is None:
            self.session = SessionContext(self, push_connect=push_connect)
        return self.session

    async def close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    async def logout(self) -> None:
        """Tear down the session's services, then clear stored credentials."""
        await self.close_session()
        self.auth.logout()

    async def aclose(self) -> None:
        await self.close_session()
        await self.api.aclose()
        await close_db()


@asynccontextmanager
async def open_app(settings: Settings | None = None, **kwargs: Any) -> AsyncGenerator[AppContext, None]:
    """Startup and shutdown lifecycle for the client core."""
    settings = settings or get_settings()
    setup_logging(settings)
    logger.info("app_starting", version=settings.app_version, environment=settings.environment)
    app = await AppContext.create(settings, **kwargs)
    try:
        yield app
    finally:
        await app.aclose()
