"""Transaction domain errors."""

from __future__ import annotations


class NoCurrentWallet(LookupError):
    """Raised when a send needs a source wallet and none is selected."""


class InvalidAmount(ValueError):
    """Raised when an amount is not a positive decimal."""


class InvalidRecipient(ValueError):
    """Raised when neither a valid address nor a valid Zuno tag is given."""


class InsufficientBalance(ValueError):
    """Raised when the cached balance cannot cover the amount."""


class TransactionNotFound(LookupError):
    """Raised when a transaction id is not in the local mirror."""
