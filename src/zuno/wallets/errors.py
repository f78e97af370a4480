"""Wallet domain errors."""

from __future__ import annotations


class NoCurrentUser(LookupError):
    """Raised when a wallet operation needs a signed-in user and there is none."""


class WalletNotFound(LookupError):
    """Raised when a wallet id is unknown or not owned by the user."""


class CannotDeletePrimaryWallet(ValueError):
    """Raised when trying to delete the user's primary wallet."""
