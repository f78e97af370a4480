"""
First-wallet cold-start tracking.

Right after a user's first login there are no wallets locally. Whether to
show wallet-creation onboarding depends on knowing the difference between
"not fetched yet", "fetched and empty" and "a creation call is in flight".
An empty fetch that lands while a creation is outstanding is not
authoritative: the creation's own result decides.
"""

from __future__ import annotations

from enum import Enum

import structlog

logger = structlog.get_logger()


class FirstWalletState(str, Enum):
    NOT_CHECKED = "not_checked"
    CHECKED_EMPTY = "checked_empty"
    CREATION_IN_FLIGHT = "creation_in_flight"
    READY = "ready"


class FirstWalletTracker:
    """Decides between onboarding, loading and the normal wallet view."""

    def __init__(self) -> None:
        self.state = FirstWalletState.NOT_CHECKED
        self._creations_in_flight = 0

    @property
    def should_show_onboarding(self) -> bool:
        return self.state == FirstWalletState.CHECKED_EMPTY

    @property
    def should_show_loading(self) -> bool:
        return self.state == FirstWalletState.NOT_CHECKED

    def record_fetch(self, wallet_count: int) -> FirstWalletState:
        """Apply the result of a wallet list fetch."""
        if wallet_count > 0:
            self.state = FirstWalletState.READY
        elif self._creations_in_flight:
            logger.debug("empty_wallet_fetch_ignored", creations_in_flight=self._creations_in_flight)
        else:
            self.state = FirstWalletState.CHECKED_EMPTY
        return self.state

    def creation_started(self) -> None:
        self._creations_in_flight += 1
        if self.state != FirstWalletState.READY:
            self.state = FirstWalletState.CREATION_IN_FLIGHT

    def creation_finished(self, *, succeeded: bool) -> FirstWalletState:
        """Apply the outcome of a creation call started with creation_started()."""
        self._creations_in_flight = max(0, self._creations_in_flight - 1)
        if succeeded:
            self.state = FirstWalletState.READY
        elif not self._creations_in_flight and self.state == FirstWalletState.CREATION_IN_FLIGHT:
            self.state = FirstWalletState.CHECKED_EMPTY
        return self.state

    def reset(self) -> None:
        self.state = FirstWalletState.NOT_CHECKED
        self._creations_in_flight = 0
