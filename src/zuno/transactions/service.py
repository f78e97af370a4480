"""
Transaction business logic.

Sends are never inserted optimistically: the local row is created only
from the server's response, so local and server ids always agree.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

import structlog

from zuno.api.schemas import SendTransactionRequest
from zuno.auth.errors import InvalidHandle
from zuno.auth.handles import validate_handle
from zuno.db.models import TransactionStatus, TransactionType
from zuno.transactions.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidRecipient,
    NoCurrentWallet,
    TransactionNotFound,
)

if TYPE_CHECKING:
    from zuno.api.client import ZunoApiClient
    from zuno.db.models import LocalTransaction, LocalWallet
    from zuno.sync.reconciler import Reconciler
    from zuno.wallets.service import WalletService

logger = structlog.get_logger()

EVM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def parse_amount(amount: str) -> Decimal:
    """Parse a decimal amount string. Raises InvalidAmount unless it is a positive number."""
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as e:
        msg = f"Invalid amount: {amount!r}"
        raise InvalidAmount(msg) from e
    if not value.is_finite() or value <= 0:
        msg = f"Amount must be greater than zero: {amount!r}"
        raise InvalidAmount(msg)
    return value


def _as_utc(value: datetime | None) -> datetime | None:
    # stored timestamps are aware UTC; naive bounds are taken to be UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TransactionService:
    """Send funds and query the transaction history."""

    def __init__(self, api: ZunoApiClient, reconciler: Reconciler, wallets: WalletService) -> None:
        self._api = api
        self._reconciler = reconciler
        self._wallets = wallets
        self.current_wallet_id: str | None = None

    def set_current_wallet(self, wallet_id: str | None) -> None:
        self.current_wallet_id = wallet_id

    async def _source_wallet(self) -> LocalWallet:
        if self.current_wallet_id is not None:
            return await self._wallets.get_wallet(self.current_wallet_id)
        wallet = await self._wallets.primary_wallet()
        if wallet is None:
            msg = "No wallet selected"
            raise NoCurrentWallet(msg)
        return wallet

    # ---------------------------------------------------------------------------
    # Sending
    # ---------------------------------------------------------------------------

    @staticmethod
    def _check_balance(wallet: LocalWallet, amount: Decimal, token_symbol: str) -> None:
        if wallet.balance is None or wallet.token_symbol != token_symbol:
            return
        try:
            available = Decimal(wallet.balance)
        except InvalidOperation:
            return
        if amount > available:
            msg = f"Insufficient balance: {available} {token_symbol} available"
            raise InsufficientBalance(msg)

    async def _send(
        self,
        *,
        to_address: str | None,
        to_zuno_tag: str | None,
        amount: str,
        token_symbol: str | None,
        blockchain: str | None,
        description: str | None,
        category: str | None,
    ) -> LocalTransaction:
        wallet = await self._source_wallet()
        value = parse_amount(amount)
        symbol = token_symbol or wallet.token_symbol
        self._check_balance(wallet, value, symbol)

        request = SendTransactionRequest(
            to_address=to_address,
            to_zuno_tag=to_zuno_tag,
            amount=amount,
            token_symbol=symbol,
            blockchain=blockchain or wallet.blockchain,
            description=description,
            category=category,
        )
        payload = await self._api.send_transaction(request)
        if description and payload.description is None:
            payload = payload.model_copy(update={"description": description})
        transaction = await self._reconciler.upsert_transaction(payload)
        logger.info(
            "transaction_sent",
            transaction_id=transaction.id,
            wallet_id=transaction.wallet_id,
            status=transaction.status,
        )
        return transaction

    async def send_to_address(
        self,
        to_address: str,
        amount: str,
        token_symbol: str | None = None,
        blockchain: str | None = None,
        description: str | None = None,
        category: str | None = None,
    ) -> LocalTransaction:
        address = to_address.strip()
        if not EVM_ADDRESS_PATTERN.fullmatch(address):
            msg = f"Invalid recipient address: {to_address!r}"
            raise InvalidRecipient(msg)
        return await self._send(
            to_address=address,
            to_zuno_tag=None,
            amount=amount,
            token_symbol=token_symbol,
            blockchain=blockchain,
            description=description,
            category=category,
        )

    async def send_to_zuno_tag(
        self,
        zuno_tag: str,
        amount: str,
        token_symbol: str | None = None,
        blockchain: str | None = None,
        description: str | None = None,
        category: str | None = None,
    ) -> LocalTransaction:
        try:
            tag = validate_handle(zuno_tag.strip())
        except InvalidHandle as e:
            raise InvalidRecipient(str(e)) from e
        return await self._send(
            to_address=None,
            to_zuno_tag=tag,
            amount=amount,
            token_symbol=token_symbol,
            blockchain=blockchain,
            description=description,
            category=category,
        )

    # ---------------------------------------------------------------------------
    # History
    # ---------------------------------------------------------------------------

    async def refresh_transactions(self, wallet_id: str | None = None) -> list[LocalTransaction]:
        """Fetch history from the server and merge rows for locally known wallets."""
        known = {w.id for w in await self._wallets.list_wallets()}
        payloads = await self._api.list_transactions(wallet_id)
        mirrored = [p for p in payloads if p.wallet_id in known]
        if len(mirrored) != len(payloads):
            logger.info("transactions_for_unknown_wallets_skipped", skipped=len(payloads) - len(mirrored))
        await self._reconciler.upsert_transactions(mirrored)
        logger.info("transactions_refreshed", count=len(mirrored), wallet_id=wallet_id)
        return await self.list_transactions(wallet_id)

    async def list_transactions(self, wallet_id: str | None = None, limit: int | None = None) -> list[LocalTransaction]:
        """Local history, newest first."""
        if wallet_id is not None:
            await self._wallets.get_wallet(wallet_id)
            return await self._reconciler.list_transactions(wallet_ids=[wallet_id], limit=limit)
        return await self._reconciler.list_transactions(user_id=self._wallets.current_user_id(), limit=limit)

    async def get_transaction(self, transaction_id: str) -> LocalTransaction:
        transaction = await self._reconciler.get_transaction(transaction_id)
        if transaction is None:
            msg = f"Transaction {transaction_id} not found"
            raise TransactionNotFound(msg)
        return transaction

    async def filter_transactions(
        self,
        *,
        status: TransactionStatus | None = None,
        transaction_type: TransactionType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LocalTransaction]:
        start = _as_utc(start)
        end = _as_utc(end)
        result = []
        for tx in await self.list_transactions():
            if status is not None and tx.status != status.value:
                continue
            if transaction_type is not None and tx.transaction_type != transaction_type.value:
                continue
            if start is not None and tx.created_at < start:
                continue
            if end is not None and tx.created_at > end:
                continue
            result.append(tx)
        return result

    async def _confirmed_total(self, transaction_type: TransactionType, token_symbol: str | None) -> Decimal:
        total = Decimal(0)
        for tx in await self.filter_transactions(status=TransactionStatus.CONFIRMED, transaction_type=transaction_type):
            if token_symbol is not None and tx.token_symbol != token_symbol:
                continue
            try:
                total += Decimal(tx.amount)
            except InvalidOperation:
                logger.warning("transaction_amount_unparseable", transaction_id=tx.id)
        return total

    async def total_sent(self, token_symbol: str | None = None) -> Decimal:
        """Sum of confirmed outgoing amounts."""
        return await self._confirmed_total(TransactionType.SEND, token_symbol)

    async def total_received(self, token_symbol: str | None = None) -> Decimal:
        """Sum of confirmed incoming amounts."""
        return await self._confirmed_total(TransactionType.RECEIVE, token_symbol)

    async def count_by_status(self, status: TransactionStatus) -> int:
        return len(await self.filter_transactions(status=status))
