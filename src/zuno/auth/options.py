"""
Typed parsing of server-issued WebAuthn options.

The backend returns options either nested under ``publicKey`` (the standard
``PublicKeyCredentialCreationOptions`` shape) or flat at the top level. One
parser resolves both into validated models with the binary fields decoded.
"""

from __future__ import annotations

import binascii
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from zuno.auth.encoding import b64url_decode
from zuno.auth.errors import InvalidChallenge


def _decode_b64url(value: Any) -> bytes:
    if not isinstance(value, str) or not value:
        msg = "expected a non-empty base64url string"
        raise ValueError(msg)  # noqa: TRY004
    try:
        return b64url_decode(value)
    except binascii.Error as e:
        msg = f"not valid base64url: {e}"
        raise ValueError(msg) from e


Base64UrlBytes = Annotated[bytes, BeforeValidator(_decode_b64url)]


class _OptionsModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RelyingParty(_OptionsModel):
    id: str | None = None
    name: str | None = None


class UserEntity(_OptionsModel):
    id: Base64UrlBytes
    name: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")


class CredentialDescriptor(_OptionsModel):
    type: str = "public-key"
    id: str
    transports: list[str] = Field(default_factory=list)


class CreationOptions(_OptionsModel):
    """Registration options; ``challenge`` and ``user.id`` are decoded bytes."""

    challenge: Base64UrlBytes
    user: UserEntity
    rp: RelyingParty | None = None
    timeout: int | None = None
    attestation: str | None = None
    exclude_credentials: list[CredentialDescriptor] = Field(default_factory=list, alias="excludeCredentials")


class AssertionOptions(_OptionsModel):
    """Login options; ``challenge`` is decoded bytes."""

    challenge: Base64UrlBytes
    rp_id: str | None = Field(default=None, alias="rpId")
    timeout: int | None = None
    user_verification: str | None = Field(default=None, alias="userVerification")
    allow_credentials: list[CredentialDescriptor] = Field(default_factory=list, alias="allowCredentials")


def _unwrap(options: Any) -> Any:
    if isinstance(options, dict) and isinstance(options.get("publicKey"), dict):
        return options["publicKey"]
    return options


def parse_creation_options(options: Any) -> CreationOptions:
    """
    Parse registration options from either supported shape.

    Raises InvalidChallenge if the challenge or user id is missing or undecodable.
    """
    try:
        return CreationOptions.model_validate(_unwrap(options))
    except ValidationError as e:
        msg = f"Invalid registration options: {e.error_count()} error(s)"
        raise InvalidChallenge(msg) from e


def parse_assertion_options(options: Any) -> AssertionOptions:
    """
    Parse login options from either supported shape.

    Raises InvalidChallenge if the challenge is missing or undecodable.
    """
    try:
        return AssertionOptions.model_validate(_unwrap(options))
    except ValidationError as e:
        msg = f"Invalid login options: {e.error_count()} error(s)"
        raise InvalidChallenge(msg) from e
