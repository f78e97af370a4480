"""WebSocket message schemas.

Server -> client: ``{"type": ..., "data": {...}}`` push events.
Client -> server: subscribe, refresh and ping messages.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from zuno.api.schemas import DecimalString, TransactionResponse

logger = structlog.get_logger()


class EventType(str, Enum):
    CONNECTED = "connected"
    TRANSACTION_RECEIVED = "transaction_received"
    TRANSACTION_UPDATED = "transaction_updated"
    BALANCE_UPDATED = "balance_updated"
    PONG = "pong"
    ERROR = "error"


TRANSACTION_EVENTS = frozenset({EventType.TRANSACTION_RECEIVED.value, EventType.TRANSACTION_UPDATED.value})


class _EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TransactionEventData(_EventData):
    transaction_id: str
    wallet_id: str
    transaction_type: str
    status: str
    amount: DecimalString
    token_symbol: str
    from_address: str | None = None
    to_address: str | None = None
    to_zuno_tag: str | None = None
    blockchain_tx_hash: str | None = None
    created_at: datetime

    def to_transaction(self) -> TransactionResponse:
        """The same record in the REST shape the reconciler consumes."""
        return TransactionResponse(
            id=self.transaction_id,
            wallet_id=self.wallet_id,
            transaction_type=self.transaction_type,
            status=self.status,
            amount=self.amount,
            token_symbol=self.token_symbol,
            from_address=self.from_address,
            to_address=self.to_address,
            to_zuno_tag=self.to_zuno_tag,
            blockchain_tx_hash=self.blockchain_tx_hash,
            created_at=self.created_at,
        )


class TokenBalance(_EventData):
    token: str
    amount: DecimalString
    value_usd: Decimal | None = None


class BalanceEventData(_EventData):
    wallet_id: str
    wallet_address: str | None = None
    balances: list[TokenBalance] = Field(default_factory=list)
    total_usd: Decimal | None = None

    def balance_for(self, token: str) -> TokenBalance | None:
        return next((b for b in self.balances if b.token == token), None)


class ErrorEventData(_EventData):
    message: str = "Unknown error"


@dataclass
class ServerEvent:
    """A decoded push event. ``payload`` is the typed ``data`` for known types."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    payload: TransactionEventData | BalanceEventData | ErrorEventData | None = None


_PAYLOAD_MODELS: dict[str, type[_EventData]] = {
    EventType.TRANSACTION_RECEIVED.value: TransactionEventData,
    EventType.TRANSACTION_UPDATED.value: TransactionEventData,
    EventType.BALANCE_UPDATED.value: BalanceEventData,
    EventType.ERROR.value: ErrorEventData,
}


def parse_event(raw: str | bytes) -> ServerEvent | None:
    """
    Decode one frame. Returns None for frames that are not JSON objects with
    a ``type``; known types whose ``data`` does not validate keep
    ``payload=None``.
    """
    try:
        message = json.loads(raw)
    except ValueError:
        logger.warning("ws_frame_not_json")
        return None
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        logger.warning("ws_frame_without_type")
        return None

    data = message.get("data") if isinstance(message.get("data"), dict) else {}
    event = ServerEvent(type=message["type"], data=data)
    model = _PAYLOAD_MODELS.get(event.type)
    if model is not None:
        try:
            event.payload = model.model_validate(data)
        except ValidationError as e:
            logger.warning("ws_event_invalid", type=event.type, errors=e.error_count())
    return event


# ---------------------------------------------------------------------------
# Outgoing messages
# ---------------------------------------------------------------------------


def subscribe_message(wallet_ids: list[str]) -> str:
    return json.dumps({"type": "subscribe", "wallet_ids": wallet_ids})


def refresh_message(wallet_id: str | None = None) -> str:
    message: dict[str, Any] = {"type": "refresh"}
    if wallet_id is not None:
        message["wallet_id"] = wallet_id
    return json.dumps(message)


def ping_message(timestamp_ms: int | None = None) -> str:
    return json.dumps({"type": "ping", "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)})
