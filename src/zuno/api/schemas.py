"""Request/response schemas for the Zuno backend API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator


def _to_decimal_string(value: Any) -> Any:
    """Accept JSON numbers for amount fields but keep them as exact strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        try:
            return format(Decimal(str(value)), "f")
        except InvalidOperation:
            return value
    return value


DecimalString = Annotated[str, BeforeValidator(_to_decimal_string)]


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Start a passkey registration."""

    zuno_tag: str = Field(..., min_length=3, max_length=50)
    email: EmailStr | None = None
    display_name: str | None = Field(None, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        return v.lower().strip() if v else v


class LoginRequest(BaseModel):
    """Start a passkey login."""

    zuno_tag: str = Field(..., min_length=3, max_length=50)


class ChallengeResponse(_Response):
    """Challenge id plus WebAuthn options (nested or flat)."""

    challenge_id: str
    options: dict[str, Any]


class CompleteRequest(BaseModel):
    """Finish a ceremony with the WebAuthn response JSON."""

    challenge_id: str
    credential: dict[str, Any]


class UserResponse(_Response):
    id: str
    zuno_tag: str
    email: str | None = None
    display_name: str | None = None
    default_currency: str | None = None
    preferred_network: str | None = None
    preferred_stablecoin: str | None = None
    is_verified: bool = False
    created_at: datetime


class AuthResponse(_Response):
    """Session issued after a successful ceremony."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: UserResponse


class ApiErrorBody(_Response):
    error: str
    message: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UpdateUserRequest(BaseModel):
    """Partial profile update. Unset fields are not sent."""

    email: EmailStr | None = None
    display_name: str | None = Field(None, max_length=128)
    default_currency: str | None = None
    preferred_network: str | None = None
    preferred_stablecoin: str | None = None


class ZunoTagLookupResponse(_Response):
    zuno_tag: str
    display_name: str | None = None
    primary_wallet_address: str | None = None


# ---------------------------------------------------------------------------
# Wallets
# ---------------------------------------------------------------------------


class CreateWalletRequest(BaseModel):
    blockchain: str
    account_type: str = "SCA"
    name: str | None = None


class WalletResponse(_Response):
    id: str
    wallet_address: str
    blockchain: str
    account_type: str = "SCA"
    is_primary: bool = False
    name: str | None = None
    balance: DecimalString | None = None
    token_symbol: str | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class SendTransactionRequest(BaseModel):
    """Send to an address or a Zuno tag."""

    to_address: str | None = None
    to_zuno_tag: str | None = None
    amount: str
    token_symbol: str
    blockchain: str
    description: str | None = None
    category: str | None = None


class TransactionResponse(_Response):
    id: str
    wallet_id: str
    transaction_type: str
    status: str
    amount: DecimalString
    token_symbol: str
    blockchain: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    to_zuno_tag: str | None = None
    blockchain_tx_hash: str | None = None
    description: str | None = None
    fee: DecimalString | None = None
    confirmations: int | None = None
    created_at: datetime
