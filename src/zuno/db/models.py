"""ORM models for the on-device mirror of server state.

User, Wallet and Transaction rows mirror server records keyed by the
server-assigned id. CachedData and AppSettings are local-only.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from zuno.db.base import Base, UTCDateTime, utcnow


class TransactionType(str, Enum):
    """Kinds of wallet transactions reported by the backend."""

    SEND = "send"
    RECEIVE = "receive"
    SWAP = "swap"
    TAP_TO_PAY = "tap_to_pay"
    CONTRACT_INTERACTION = "contract_interaction"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    """Transaction lifecycle states."""

    PENDING = "pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class LocalUser(Base):
    """Local mirror of the signed-in user."""

    __tablename__ = "local_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    zuno_tag: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    default_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USDC")
    preferred_network: Mapped[str] = mapped_column(String(32), nullable=False, default="ARC-TESTNET")
    preferred_stablecoin: Mapped[str] = mapped_column(String(16), nullable=False, default="USDC")
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    wallets: Mapped[list[LocalWallet]] = relationship(
        "LocalWallet",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


class LocalWallet(Base):
    """Local mirror of a custodial wallet.

    ``name``, ``balance``, ``balance_usd`` and ``last_synced_at`` are local
    cache fields and survive server upserts that don't carry them.
    """

    __tablename__ = "local_wallets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("local_users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    blockchain: Mapped[str] = mapped_column(String(32), nullable=False)
    account_type: Mapped[str] = mapped_column(String(16), nullable=False, default="SCA")
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    balance: Mapped[str | None] = mapped_column(String(64), nullable=True)
    balance_usd: Mapped[Decimal | None] = mapped_column(Numeric(24, 6), nullable=True)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False, default="USDC")
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    user: Mapped[LocalUser] = relationship("LocalUser", back_populates="wallets")
    transactions: Mapped[list[LocalTransaction]] = relationship(
        "LocalTransaction",
        back_populates="wallet",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def short_address(self) -> str:
        if len(self.wallet_address) <= 10:
            return self.wallet_address
        return f"{self.wallet_address[:6]}...{self.wallet_address[-4:]}"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class LocalTransaction(Base):
    """Local mirror of a wallet transaction. Amounts are decimal strings."""

    __tablename__ = "local_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("local_wallets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TransactionStatus.PENDING.value)
    amount: Mapped[str] = mapped_column(String(64), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    blockchain: Mapped[str | None] = mapped_column(String(32), nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_zuno_tag: Mapped[str | None] = mapped_column(String(50), nullable=True)
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    fee: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confirmations: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    wallet: Mapped[LocalWallet] = relationship("LocalWallet", back_populates="transactions")

    @property
    def is_incoming(self) -> bool:
        return self.transaction_type == TransactionType.RECEIVE.value

    @property
    def is_outgoing(self) -> bool:
        return self.transaction_type == TransactionType.SEND.value

    @property
    def recipient_display(self) -> str:
        if self.to_zuno_tag:
            return f"@{self.to_zuno_tag}"
        if self.to_address:
            if len(self.to_address) > 10:
                return f"{self.to_address[:6]}...{self.to_address[-4:]}"
            return self.to_address
        return "Unknown"


# ---------------------------------------------------------------------------
# Local-only: cache entries and app settings
# ---------------------------------------------------------------------------


class CachedData(Base):
    """Opaque value cached under a unique key until ``expires_at``."""

    __tablename__ = "cached_data"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at


class AppSettings(Base):
    """Single-row device preferences (id is always 'default')."""

    __tablename__ = "app_settings"

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default="default")
    is_dark_mode: Mapped[bool] = mapped_column(Boolean, default=True)
    biometric_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    analytics_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    default_currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USDC")
    preferred_network: Mapped[str] = mapped_column(String(32), nullable=False, default="ARC-TESTNET")
    language: Mapped[str] = mapped_column(String(8), nullable=False, default="en")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
