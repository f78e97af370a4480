"""
Transaction status state machine.

pending -> confirming -> confirmed, and pending/confirming -> failed or
cancelled. confirmed, failed and cancelled are terminal.

Servers sometimes report a later state without the intermediate one (a
transaction seen first as already confirmed), so reconciliation accepts any
forward move. A report that would move a transaction backwards is ignored.
"""

from __future__ import annotations

import structlog

from zuno.db.models import TransactionStatus

logger = structlog.get_logger()

PENDING = TransactionStatus.PENDING.value
CONFIRMING = TransactionStatus.CONFIRMING.value
CONFIRMED = TransactionStatus.CONFIRMED.value
FAILED = TransactionStatus.FAILED.value
CANCELLED = TransactionStatus.CANCELLED.value

VALID_TRANSITIONS: dict[str, list[str]] = {
    PENDING: [CONFIRMING, FAILED, CANCELLED],
    CONFIRMING: [CONFIRMED, FAILED, CANCELLED],
    CONFIRMED: [],
    FAILED: [],
    CANCELLED: [],
}

TERMINAL_STATUSES = frozenset({CONFIRMED, FAILED, CANCELLED})

_PROGRESS = {PENDING: 0, CONFIRMING: 1, CONFIRMED: 2, FAILED: 2, CANCELLED: 2}


def validate_transition(current: str, target: str) -> None:
    """Raise ValueError if current -> target is not a single valid step."""
    if current not in VALID_TRANSITIONS:
        msg = f"Unknown transaction status: {current}"
        raise ValueError(msg)
    if target not in VALID_TRANSITIONS[current]:
        msg = f"Invalid transition: {current} -> {target}"
        raise ValueError(msg)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def resolve_status(current: str | None, incoming: str, transaction_id: str | None = None) -> str:
    """
    Pick the status to store when a server report arrives.

    Returns ``incoming`` for a new record or a forward move, otherwise keeps
    ``current``. Terminal statuses are never left.
    """
    if current is None or incoming == current:
        return incoming
    if incoming not in _PROGRESS:
        logger.warning("transaction_status_unknown", transaction_id=transaction_id, status=incoming)
        return current
    if is_terminal(current) or _PROGRESS[incoming] <= _PROGRESS.get(current, -1):
        logger.warning(
            "transaction_status_regression_ignored",
            transaction_id=transaction_id,
            stored=current,
            reported=incoming,
        )
        return current
    return incoming
