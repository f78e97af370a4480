"""
Wallet business logic.

Server writes go through the API first; the local mirror is only updated
from the server's response. Reads come from the local mirror.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from zuno.auth.handles import validate_handle
from zuno.wallets.errors import CannotDeletePrimaryWallet, NoCurrentUser, WalletNotFound
from zuno.wallets.onboarding import FirstWalletTracker

if TYPE_CHECKING:
    from zuno.api.client import ZunoApiClient
    from zuno.api.schemas import ZunoTagLookupResponse
    from zuno.auth.service import AuthService
    from zuno.db.models import LocalWallet
    from zuno.sync.reconciler import Reconciler

logger = structlog.get_logger()

DEFAULT_SUPPORTED_NETWORKS = ("ARC-TESTNET", "MATIC-AMOY", "ARB-SEPOLIA")


class WalletService:
    """List, create and manage the signed-in user's wallets."""

    def __init__(
        self,
        api: ZunoApiClient,
        reconciler: Reconciler,
        auth: AuthService,
        *,
        tracker: FirstWalletTracker | None = None,
        default_network: str = "ARC-TESTNET",
        supported_networks: tuple[str, ...] | list[str] = DEFAULT_SUPPORTED_NETWORKS,
    ) -> None:
        self._api = api
        self._reconciler = reconciler
        self._auth = auth
        self.tracker = tracker or FirstWalletTracker()
        self._default_network = default_network
        self._supported_networks = tuple(supported_networks)

    def current_user_id(self) -> str:
        user = self._auth.current_user
        if user is None:
            msg = "No current user"
            raise NoCurrentUser(msg)
        return user.id

    async def _owned_wallet(self, wallet_id: str) -> LocalWallet:
        user_id = self.current_user_id()
        wallet = await self._reconciler.get_wallet(wallet_id)
        if wallet is None or wallet.user_id != user_id:
            msg = f"Wallet {wallet_id} not found"
            raise WalletNotFound(msg)
        return wallet

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    async def list_wallets(self) -> list[LocalWallet]:
        """Local wallets, primary first."""
        return await self._reconciler.list_wallets(self.current_user_id())

    async def primary_wallet(self) -> LocalWallet | None:
        wallets = await self.list_wallets()
        return next((w for w in wallets if w.is_primary), None)

    async def get_wallet(self, wallet_id: str) -> LocalWallet:
        return await self._owned_wallet(wallet_id)

    # ---------------------------------------------------------------------------
    # Server round trips
    # ---------------------------------------------------------------------------

    async def refresh_wallets(self) -> list[LocalWallet]:
        """Fetch wallets from the server and merge them into the local mirror."""
        user_id = self.current_user_id()
        payloads = await self._api.list_wallets()
        await self._reconciler.upsert_wallets(payloads, user_id)
        self.tracker.record_fetch(len(payloads))
        logger.info("wallets_refreshed", count=len(payloads))
        return await self._reconciler.list_wallets(user_id)

    async def create_wallet(self, blockchain: str | None = None, name: str | None = None) -> LocalWallet:
        user_id = self.current_user_id()
        network = blockchain or self._default_network
        if network not in self._supported_networks:
            msg = f"Unsupported network: {network}"
            raise ValueError(msg)

        self.tracker.creation_started()
        try:
            payload = await self._api.create_wallet(network, name=name)
            wallet = await self._reconciler.upsert_wallet(payload, user_id)
            if name and wallet.name != name:
                wallet = await self._reconciler.set_wallet_name(wallet.id, name)
        except BaseException:
            self.tracker.creation_finished(succeeded=False)
            raise

        self.tracker.creation_finished(succeeded=True)
        logger.info("wallet_created", wallet_id=wallet.id, blockchain=network)
        return wallet

    async def lookup_zuno_tag(self, zuno_tag: str) -> ZunoTagLookupResponse:
        return await self._api.lookup_zuno_tag(validate_handle(zuno_tag))

    # ---------------------------------------------------------------------------
    # Local mutations
    # ---------------------------------------------------------------------------

    async def set_primary(self, wallet_id: str) -> LocalWallet:
        return await self._reconciler.set_primary(self.current_user_id(), wallet_id)

    async def rename_wallet(self, wallet_id: str, name: str | None) -> LocalWallet:
        await self._owned_wallet(wallet_id)
        return await self._reconciler.set_wallet_name(wallet_id, name)

    async def delete_wallet(self, wallet_id: str) -> None:
        wallet = await self._owned_wallet(wallet_id)
        if wallet.is_primary:
            msg = "Cannot delete primary wallet. Please set another wallet as primary first."
            raise CannotDeletePrimaryWallet(msg)
        await self._reconciler.delete_wallet(wallet_id)

    async def update_balance(
        self,
        wallet_id: str,
        amount: str,
        amount_usd: Decimal | None = None,
        token_symbol: str | None = None,
    ) -> LocalWallet:
        await self._owned_wallet(wallet_id)
        wallet = await self._reconciler.apply_balance(wallet_id, amount, amount_usd, token_symbol)
        if wallet is None:
            msg = f"Wallet {wallet_id} not found"
            raise WalletNotFound(msg)
        return wallet
