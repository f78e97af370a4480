"""
Local mirror reconciliation.

Merges server-authoritative User, Wallet and Transaction payloads into the
on-device database. Every upsert looks the record up by its server id,
overwrites server-owned fields in place (or inserts a new row attached to
its parent), bumps ``updated_at`` and commits before returning.

Local-only fields (wallet name, cached balances) survive payloads that do
not carry them. Mutations of one table are serialized by a per-table lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from decimal import Decimal

import structlog
from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zuno.api.schemas import TransactionResponse, UserResponse, WalletResponse
from zuno.db.base import utcnow
from zuno.db.models import LocalTransaction, LocalUser, LocalWallet
from zuno.sync.status import resolve_status
from zuno.wallets.errors import NoCurrentUser, WalletNotFound

logger = structlog.get_logger()

DEFAULT_CURRENCY = "USDC"
DEFAULT_NETWORK = "ARC-TESTNET"
DEFAULT_STABLECOIN = "USDC"


class Reconciler:
    """Create-or-update merge of server records into the local mirror."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory
        self._user_lock = asyncio.Lock()
        self._wallet_lock = asyncio.Lock()
        self._transaction_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, payload: UserResponse) -> LocalUser:
        async with self._user_lock, self._sessions() as db:
            user = await db.get(LocalUser, payload.id)
            created = user is None
            if user is None:
                user = LocalUser(id=payload.id)
                db.add(user)

            user.zuno_tag = payload.zuno_tag
            user.email = payload.email
            user.display_name = payload.display_name
            user.default_currency = payload.default_currency or user.default_currency or DEFAULT_CURRENCY
            user.preferred_network = payload.preferred_network or user.preferred_network or DEFAULT_NETWORK
            user.preferred_stablecoin = (
                payload.preferred_stablecoin or user.preferred_stablecoin or DEFAULT_STABLECOIN
            )
            user.is_verified = payload.is_verified
            user.created_at = payload.created_at
            user.updated_at = utcnow()
            await db.commit()

        logger.info("local_user_created" if created else "local_user_updated", user_id=payload.id)
        return user

    async def get_user(self, user_id: str) -> LocalUser | None:
        async with self._sessions() as db:
            return await db.get(LocalUser, user_id)

    async def delete_user(self, user_id: str) -> None:
        """Remove the user and, by cascade, its wallets and transactions."""
        async with self._user_lock, self._sessions() as db:
            await db.execute(delete(LocalUser).where(LocalUser.id == user_id))
            await db.commit()
        logger.info("local_user_deleted", user_id=user_id)

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def _upsert_wallet(self, db: AsyncSession, payload: WalletResponse, user_id: str) -> LocalWallet:
        now = utcnow()
        wallet = await db.get(LocalWallet, payload.id)
        if wallet is None:
            wallet = LocalWallet(id=payload.id, user_id=user_id)
            db.add(wallet)
            logger.info("local_wallet_created", wallet_id=payload.id, user_id=user_id)

        wallet.user_id = user_id
        wallet.wallet_address = payload.wallet_address
        wallet.blockchain = payload.blockchain
        wallet.account_type = payload.account_type
        wallet.is_primary = payload.is_primary
        wallet.created_at = payload.created_at
        wallet.updated_at = now
        if payload.name is not None:
            wallet.name = payload.name
        if payload.token_symbol:
            wallet.token_symbol = payload.token_symbol
        elif wallet.token_symbol is None:
            wallet.token_symbol = DEFAULT_STABLECOIN
        if payload.balance is not None:
            wallet.balance = payload.balance
            wallet.last_synced_at = now
        await db.flush()

        if payload.is_primary:
            await db.execute(
                update(LocalWallet)
                .where(LocalWallet.user_id == user_id, LocalWallet.id != payload.id, LocalWallet.is_primary.is_(True))
                .values(is_primary=False, updated_at=now)
                .execution_options(synchronize_session="fetch")
            )
        return wallet

    async def upsert_wallet(self, payload: WalletResponse, user_id: str) -> LocalWallet:
        return (await self.upsert_wallets([payload], user_id))[0]

    async def upsert_wallets(self, payloads: Iterable[WalletResponse], user_id: str) -> list[LocalWallet]:
        """Merge a batch of wallets for one user in a single commit."""
        async with self._wallet_lock, self._sessions() as db:
            if await db.get(LocalUser, user_id) is None:
                msg = f"User {user_id} is not in the local mirror"
                raise NoCurrentUser(msg)
            wallets = [await self._upsert_wallet(db, payload, user_id) for payload in payloads]
            await db.commit()
            for wallet in wallets:
                await db.refresh(wallet)
        return wallets

    async def list_wallets(self, user_id: str) -> list[LocalWallet]:
        """Wallets of a user, primary first, then oldest first."""
        async with self._sessions() as db:
            result = await db.execute(
                select(LocalWallet)
                .where(LocalWallet.user_id == user_id)
                .order_by(LocalWallet.is_primary.desc(), LocalWallet.created_at.asc())
            )
            return list(result.scalars().all())

    async def get_wallet(self, wallet_id: str) -> LocalWallet | None:
        async with self._sessions() as db:
            return await db.get(LocalWallet, wallet_id)

    async def set_primary(self, user_id: str, wallet_id: str) -> LocalWallet:
        """
        Make ``wallet_id`` the user's only primary wallet.

        One UPDATE statement sets the flag on the target and clears it on
        every sibling, so no other combination is ever committed. Raises
        WalletNotFound (changing nothing) if the wallet is not the user's.
        """
        async with self._wallet_lock, self._sessions() as db:
            target = await db.get(LocalWallet, wallet_id)
            if target is None or target.user_id != user_id:
                msg = f"Wallet {wallet_id} not found for user {user_id}"
                raise WalletNotFound(msg)

            await db.execute(
                update(LocalWallet)
                .where(LocalWallet.user_id == user_id)
                .values(
                    is_primary=case((LocalWallet.id == wallet_id, True), else_=False),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await db.refresh(target)

        logger.info("primary_wallet_set", user_id=user_id, wallet_id=wallet_id)
        return target

    async def set_wallet_name(self, wallet_id: str, name: str | None) -> LocalWallet:
        """Set the local-only display name."""
        async with self._wallet_lock, self._sessions() as db:
            wallet = await db.get(LocalWallet, wallet_id)
            if wallet is None:
                msg = f"Wallet {wallet_id} not found"
                raise WalletNotFound(msg)
            wallet.name = name
            wallet.updated_at = utcnow()
            await db.commit()
        return wallet

    async def delete_wallet(self, wallet_id: str) -> None:
        async with self._wallet_lock, self._sessions() as db:
            await db.execute(delete(LocalWallet).where(LocalWallet.id == wallet_id))
            await db.commit()
        logger.info("local_wallet_deleted", wallet_id=wallet_id)

    async def apply_balance(
        self,
        wallet_id: str,
        amount: str,
        amount_usd: Decimal | None = None,
        token_symbol: str | None = None,
    ) -> LocalWallet | None:
        """Store a pushed or polled balance. Unknown wallets are skipped."""
        async with self._wallet_lock, self._sessions() as db:
            wallet = await db.get(LocalWallet, wallet_id)
            if wallet is None:
                logger.info("balance_for_unknown_wallet", wallet_id=wallet_id)
                return None
            now = utcnow()
            wallet.balance = amount
            if amount_usd is not None:
                wallet.balance_usd = amount_usd
            if token_symbol:
                wallet.token_symbol = token_symbol
            wallet.last_synced_at = now
            wallet.updated_at = now
            await db.commit()
        return wallet

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _upsert_transaction(self, db: AsyncSession, payload: TransactionResponse) -> LocalTransaction:
        tx = await db.get(LocalTransaction, payload.id)
        if tx is None:
            tx = LocalTransaction(id=payload.id, wallet_id=payload.wallet_id)
            db.add(tx)
            logger.info("local_transaction_created", transaction_id=payload.id, wallet_id=payload.wallet_id)
            current_status = None
        else:
            current_status = tx.status

        tx.wallet_id = payload.wallet_id
        tx.transaction_type = payload.transaction_type
        tx.status = resolve_status(current_status, payload.status, payload.id)
        tx.amount = payload.amount
        tx.token_symbol = payload.token_symbol
        tx.from_address = payload.from_address
        tx.to_address = payload.to_address
        tx.to_zuno_tag = payload.to_zuno_tag
        tx.blockchain_tx_hash = payload.blockchain_tx_hash
        tx.created_at = payload.created_at
        tx.updated_at = utcnow()
        if payload.blockchain is not None:
            tx.blockchain = payload.blockchain
        if payload.description is not None:
            tx.description = payload.description
        if payload.fee is not None:
            tx.fee = payload.fee
        if payload.confirmations is not None:
            tx.confirmations = payload.confirmations
        return tx

    async def upsert_transaction(self, payload: TransactionResponse) -> LocalTransaction:
        return (await self.upsert_transactions([payload]))[0]

    async def upsert_transactions(self, payloads: Iterable[TransactionResponse]) -> list[LocalTransaction]:
        """Merge a batch of transactions in a single commit."""
        async with self._transaction_lock, self._sessions() as db:
            items = list(payloads)
            wallet_ids = {p.wallet_id for p in items}
            if wallet_ids:
                known = set(
                    (await db.execute(select(LocalWallet.id).where(LocalWallet.id.in_(wallet_ids)))).scalars()
                )
                missing = wallet_ids - known
                if missing:
                    msg = f"Wallets not in the local mirror: {', '.join(sorted(missing))}"
                    raise WalletNotFound(msg)
            transactions = [await self._upsert_transaction(db, p) for p in items]
            await db.commit()
        return transactions

    async def apply_transaction_event(self, payload: TransactionResponse) -> LocalTransaction | None:
        """Merge a pushed transaction. Events for wallets not mirrored locally are skipped."""
        if await self.get_wallet(payload.wallet_id) is None:
            logger.info("transaction_for_unknown_wallet", transaction_id=payload.id, wallet_id=payload.wallet_id)
            return None
        return await self.upsert_transaction(payload)

    async def get_transaction(self, transaction_id: str) -> LocalTransaction | None:
        async with self._sessions() as db:
            return await db.get(LocalTransaction, transaction_id)

    async def list_transactions(
        self,
        *,
        wallet_ids: Iterable[str] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[LocalTransaction]:
        """Transactions newest first, scoped to wallets or to a user's wallets."""
        stmt = select(LocalTransaction).order_by(LocalTransaction.created_at.desc())
        if wallet_ids is not None:
            stmt = stmt.where(LocalTransaction.wallet_id.in_(list(wallet_ids)))
        if user_id is not None:
            stmt = stmt.join(LocalWallet, LocalWallet.id == LocalTransaction.wallet_id).where(
                LocalWallet.user_id == user_id
            )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
