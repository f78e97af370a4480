"""WebSocket push client.

Keeps one bearer-authenticated connection to the backend's ``/ws`` endpoint,
re-subscribes to wallet updates on every (re)connect, sends a heartbeat ping
and reconnects with capped exponential backoff. Decoded events are handed to
registered async handlers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from zuno.ws.events import EventType, ServerEvent, parse_event, ping_message, refresh_message, subscribe_message

logger = structlog.get_logger()

EventHandler = Callable[[ServerEvent], Awaitable[None]]
StatusListener = Callable[["ConnectionStatus"], None]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


def backoff_delay(attempt: int, cap: float = 30.0) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based): 2, 4, 8, 16, then capped."""
    return min(2.0**attempt, cap)


class PushClient:
    """Single-connection WebSocket client with reconnect and heartbeat."""

    def __init__(
        self,
        url: str,
        token_provider: Callable[[], str | None],
        *,
        heartbeat_interval: float = 30.0,
        max_reconnect_attempts: int = 5,
        max_backoff: float = 30.0,
        connect: Callable[..., Any] = ws_connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._token_provider = token_provider
        self._heartbeat_interval = heartbeat_interval
        self._max_attempts = max_reconnect_attempts
        self._max_backoff = max_backoff
        self._connect = connect
        self._sleep = sleep

        self._handlers: list[EventHandler] = []
        self._status_listeners: list[StatusListener] = []
        self._subscriptions: set[str] = set()
        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def on_status(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        logger.info("ws_status", status=status.value)
        for listener in self._status_listeners:
            listener(status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        """Start the connection loop if it is not already running."""
        if self._task is None or self._task.done():
            self.reconnect_attempts = 0
            self._task = asyncio.create_task(self._run(), name="zuno-ws")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ws = None
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.DISCONNECTED)

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def _send(self, text: str) -> bool:
        ws = self._ws
        if ws is None:
            logger.debug("ws_send_skipped_not_connected")
            return False
        try:
            await ws.send(text)
        except ConnectionClosed:
            logger.info("ws_send_on_closed_connection")
            return False
        return True

    async def subscribe(self, wallet_ids: list[str]) -> bool:
        """Subscribe to wallet updates. Remembered and replayed on reconnect."""
        self._subscriptions.update(wallet_ids)
        return await self._send(subscribe_message(sorted(self._subscriptions)))

    async def request_refresh(self, wallet_id: str | None = None) -> bool:
        return await self._send(refresh_message(wallet_id))

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await self._sleep(self._heartbeat_interval)
            try:
                await ws.send(ping_message())
            except ConnectionClosed:
                return

    async def _dispatch(self, event: ServerEvent) -> None:
        for handler in self._handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception("ws_handler_failed", type=event.type)

    async def _session(self, token: str) -> None:
        headers = {"Authorization": f"Bearer {token}"}
        async with self._connect(self._url, additional_headers=headers) as ws:
            self._ws = ws
            self._set_status(ConnectionStatus.CONNECTED)
            heartbeat = asyncio.create_task(self._heartbeat(ws))
            try:
                if self._subscriptions:
                    await ws.send(subscribe_message(sorted(self._subscriptions)))
                async for raw in ws:
                    event = parse_event(raw)
                    if event is None:
                        continue
                    if event.type == EventType.CONNECTED.value:
                        self.reconnect_attempts = 0
                    await self._dispatch(event)
            finally:
                self._ws = None
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

    async def _run(self) -> None:
        while True:
            token = self._token_provider()
            if not token:
                logger.warning("ws_no_token")
                self._set_status(ConnectionStatus.FAILED)
                return

            if self.reconnect_attempts == 0:
                self._set_status(ConnectionStatus.CONNECTING)
            try:
                await self._session(token)
                logger.info("ws_closed_by_server")
            except (OSError, TimeoutError, WebSocketException) as e:
                logger.warning("ws_connection_error", error=str(e), attempt=self.reconnect_attempts)

            if self.reconnect_attempts >= self._max_attempts:
                logger.error("ws_reconnect_gave_up", attempts=self.reconnect_attempts)
                self._set_status(ConnectionStatus.FAILED)
                return

            self.reconnect_attempts += 1
            self._set_status(ConnectionStatus.RECONNECTING)
            delay = backoff_delay(self.reconnect_attempts, self._max_backoff)
            logger.info("ws_reconnect_scheduled", delay=delay, attempt=self.reconnect_attempts)
            await self._sleep(delay)
