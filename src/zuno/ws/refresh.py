"""
Keeps the local mirror fresh.

Push events from the WebSocket are merged as they arrive. While the socket
is not connected a poller refreshes wallets and transactions over REST on a
fixed interval instead.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from zuno.ws.client import ConnectionStatus
from zuno.ws.events import TRANSACTION_EVENTS, BalanceEventData, ErrorEventData, EventType, TransactionEventData

if TYPE_CHECKING:
    from zuno.sync.reconciler import Reconciler
    from zuno.transactions.service import TransactionService
    from zuno.wallets.service import WalletService
    from zuno.ws.client import PushClient
    from zuno.ws.events import ServerEvent

logger = structlog.get_logger()


class Poller:
    """
    Calls ``callback`` every ``interval`` seconds.

    A tick that fires while the previous run is still in flight is skipped,
    so runs never overlap. Failures are logged and the schedule continues.
    """

    def __init__(self, callback: Callable[[], Awaitable[object]], interval: float = 5.0, name: str = "poller") -> None:
        self._callback = callback
        self._interval = interval
        self._name = name
        self._task: asyncio.Task[None] | None = None
        self._inflight: asyncio.Task[None] | None = None
        self.runs = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.debug("poller_started", poller=self._name, interval=self._interval)

    def cancel(self) -> None:
        """Stop scheduling and cancel any in-flight run without waiting."""
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
        if self._task is not None:
            logger.debug("poller_stopped", poller=self._name)
        self._task = None

    async def stop(self) -> None:
        tasks = [t for t in (self._task, self._inflight) if t is not None and not t.done()]
        self.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def tick(self) -> bool:
        """Start one run now unless one is already in flight. Returns whether it started."""
        if self._inflight is not None and not self._inflight.done():
            self.skipped += 1
            logger.debug("poll_skipped_in_flight", poller=self._name)
            return False
        self._inflight = asyncio.create_task(self._run_once())
        return True

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self._callback()
        except Exception:
            logger.warning("poll_failed", poller=self._name, exc_info=True)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.tick()


class RefreshCoordinator:
    """Routes push events into the mirror and polls while the socket is down."""

    def __init__(
        self,
        push: PushClient,
        reconciler: Reconciler,
        wallets: WalletService,
        transactions: TransactionService,
        *,
        poll_interval: float = 5.0,
    ) -> None:
        self._push = push
        self._reconciler = reconciler
        self._wallets = wallets
        self._transactions = transactions
        self.poller = Poller(self.refresh, poll_interval, name="zuno-refresh")
        self._active = False
        push.on_event(self.handle_event)
        push.on_status(self._on_status)

    async def refresh(self) -> None:
        """Pull wallets and transactions over REST."""
        wallets = await self._wallets.refresh_wallets()
        new_ids = {w.id for w in wallets} - self._push.subscriptions
        if new_ids:
            await self._push.subscribe(sorted(new_ids))
        await self._transactions.refresh_transactions()

    async def start(self) -> None:
        self._active = True
        wallets = await self._wallets.list_wallets()
        if wallets:
            await self._push.subscribe([w.id for w in wallets])
        self._push.start()
        if not self._push.is_connected:
            self.poller.start()

    async def stop(self) -> None:
        self._active = False
        await self.poller.stop()
        await self._push.stop()

    def _on_status(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.CONNECTED:
            self.poller.cancel()
        elif self._active:
            self.poller.start()

    # ------------------------------------------------------------------
    # Push events
    # ------------------------------------------------------------------

    async def handle_event(self, event: ServerEvent) -> None:
        payload = event.payload
        if event.type in TRANSACTION_EVENTS and isinstance(payload, TransactionEventData):
            await self._reconciler.apply_transaction_event(payload.to_transaction())
        elif event.type == EventType.BALANCE_UPDATED.value and isinstance(payload, BalanceEventData):
            await self._apply_balance(payload)
        elif event.type == EventType.ERROR.value and isinstance(payload, ErrorEventData):
            logger.warning("ws_server_error", message=payload.message)

    async def _apply_balance(self, payload: BalanceEventData) -> None:
        wallet = await self._reconciler.get_wallet(payload.wallet_id)
        if wallet is None:
            logger.info("balance_for_unknown_wallet", wallet_id=payload.wallet_id)
            return
        entry = payload.balance_for(wallet.token_symbol) or (payload.balances[0] if payload.balances else None)
        if entry is None:
            return
        value_usd = entry.value_usd if entry.value_usd is not None else payload.total_usd
        await self._reconciler.apply_balance(wallet.id, entry.amount, value_usd, entry.token)
