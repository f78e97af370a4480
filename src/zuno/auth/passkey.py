"""
Passkey (WebAuthn) registration and login driver.

Both ceremonies are two-phase: fetch a challenge from the relying party,
run the platform ceremony, then POST the WebAuthn response back to the
completion endpoint. On success the token pair is persisted before the user
payload is handed back for reconciliation.

Every flow records its state transitions. Any failure moves the flow to
FAILED and is raised as a PasskeyError subclass, so callers never see
platform codes or transport exceptions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import structlog

from zuno.api.client import HTTP_CONFLICT, ZunoApiClient
from zuno.api.errors import ApiClientError, ApiError, HttpStatusError, InvalidResponse
from zuno.api.schemas import UserResponse
from zuno.auth import credentials
from zuno.auth.credentials import CredentialProvider, PlatformAssertion, PlatformCredential
from zuno.auth.encoding import b64url_encode
from zuno.auth.errors import (
    AuthenticationFailed,
    BiometricFailed,
    NetworkError,
    PasskeyError,
    RegistrationFailed,
    ServerError,
    UnknownError,
    UnsupportedCredentialType,
    UserAlreadyExists,
    UserCancelled,
)
from zuno.auth.handles import validate_handle
from zuno.auth.options import parse_assertion_options, parse_creation_options
from zuno.auth.session_store import SessionStore, SessionTokenPair

logger = structlog.get_logger()

_T = TypeVar("_T")

HTTP_SERVER_ERROR = 500


# ---------------------------------------------------------------------------
# Flow state machine
# ---------------------------------------------------------------------------


class FlowState(str, Enum):
    IDLE = "idle"
    CHALLENGE_REQUESTED = "challenge_requested"
    CHALLENGE_RECEIVED = "challenge_received"
    CEREMONY_IN_PROGRESS = "ceremony_in_progress"
    CEREMONY_COMPLETE = "ceremony_complete"
    SERVER_CONFIRMED = "server_confirmed"
    SESSION_ESTABLISHED = "session_established"
    FAILED = "failed"


VALID_TRANSITIONS: dict[FlowState, list[FlowState]] = {
    FlowState.IDLE: [FlowState.CHALLENGE_REQUESTED, FlowState.FAILED],
    FlowState.CHALLENGE_REQUESTED: [FlowState.CHALLENGE_RECEIVED, FlowState.FAILED],
    FlowState.CHALLENGE_RECEIVED: [FlowState.CEREMONY_IN_PROGRESS, FlowState.FAILED],
    FlowState.CEREMONY_IN_PROGRESS: [FlowState.CEREMONY_COMPLETE, FlowState.FAILED],
    FlowState.CEREMONY_COMPLETE: [FlowState.SERVER_CONFIRMED, FlowState.FAILED],
    FlowState.SERVER_CONFIRMED: [FlowState.SESSION_ESTABLISHED, FlowState.FAILED],
    FlowState.SESSION_ESTABLISHED: [],
    FlowState.FAILED: [],
}


def validate_transition(current: FlowState, target: FlowState) -> None:
    """Raise ValueError if current -> target is not a valid flow transition."""
    if target not in VALID_TRANSITIONS[current]:
        msg = f"Invalid transition: {current.value} -> {target.value}"
        raise ValueError(msg)


@dataclass
class PasskeyFlow:
    """One registration or login attempt."""

    kind: str
    zuno_tag: str
    state: FlowState = FlowState.IDLE
    history: list[FlowState] = field(default_factory=lambda: [FlowState.IDLE])
    failure: BaseException | None = None

    def advance(self, target: FlowState) -> None:
        validate_transition(self.state, target)
        self.state = target
        self.history.append(target)
        logger.debug("passkey_flow_state", kind=self.kind, state=target.value)

    def fail(self, reason: BaseException) -> None:
        if self.state in (FlowState.FAILED, FlowState.SESSION_ESTABLISHED):
            return
        self.failure = reason
        self.advance(FlowState.FAILED)


@dataclass(frozen=True)
class AuthResult:
    """Established session plus the user payload to reconcile."""

    tokens: SessionTokenPair
    user: UserResponse


# ---------------------------------------------------------------------------
# WebAuthn response payloads
# ---------------------------------------------------------------------------


def registration_payload(credential: PlatformCredential) -> dict[str, Any]:
    """Build the WebAuthn registration response JSON."""
    credential_id = b64url_encode(credential.credential_id)
    return {
        "id": credential_id,
        "rawId": credential_id,
        "response": {
            "clientDataJSON": b64url_encode(credential.client_data_json),
            "attestationObject": b64url_encode(credential.attestation_object),
            "transports": [],
        },
        "type": "public-key",
        "clientExtensionResults": {},
    }


def assertion_payload(assertion: PlatformAssertion) -> dict[str, Any]:
    """
    Build the WebAuthn assertion response JSON.

    ``userHandle`` is left out entirely when the platform returned none;
    some relying parties reject an explicit null.
    """
    credential_id = b64url_encode(assertion.credential_id)
    response: dict[str, Any] = {
        "clientDataJSON": b64url_encode(assertion.client_data_json),
        "authenticatorData": b64url_encode(assertion.authenticator_data),
        "signature": b64url_encode(assertion.signature),
    }
    if assertion.user_handle:
        response["userHandle"] = b64url_encode(assertion.user_handle)
    return {
        "id": credential_id,
        "rawId": credential_id,
        "response": response,
        "type": "public-key",
        "clientExtensionResults": {},
    }


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def translate_ceremony_error(exc: credentials.CeremonyError) -> PasskeyError:
    """Map a platform ceremony failure onto the passkey taxonomy."""
    if isinstance(exc, credentials.UserCancelled):
        return UserCancelled()
    if isinstance(exc, credentials.UnsupportedCredentialType):
        return UnsupportedCredentialType(str(exc))
    if isinstance(exc, credentials.NotAvailable):
        return BiometricFailed(str(exc))
    if isinstance(exc, credentials.CeremonyFailed) and exc.code == credentials.PLATFORM_CODE_FAILED:
        return BiometricFailed()
    return UnknownError(str(exc))


def translate_api_error(
    exc: ApiClientError,
    rejected: type[RegistrationFailed] | type[AuthenticationFailed],
    *,
    conflict_is_duplicate: bool = False,
) -> PasskeyError:
    """Map a transport or status failure onto the passkey taxonomy."""
    if isinstance(exc, HttpStatusError):
        if conflict_is_duplicate and exc.status_code == HTTP_CONFLICT:
            return UserAlreadyExists()
        if isinstance(exc, ApiError) and exc.status_code < HTTP_SERVER_ERROR:
            return rejected(exc.message)
        return ServerError(exc.status_code)
    if isinstance(exc, InvalidResponse):
        return UnknownError(str(exc))
    return NetworkError(str(exc))


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class RelyingPartyClient:
    """Drives passkey registration and login against the Zuno backend."""

    def __init__(
        self,
        api: ZunoApiClient,
        provider: CredentialProvider,
        session_store: SessionStore,
        relying_party_id: str = "localhost",
    ) -> None:
        self._api = api
        self._provider = provider
        self._store = session_store
        self._rp_id = relying_party_id
        self.last_flow: PasskeyFlow | None = None

    async def _call(
        self,
        awaitable: Awaitable[_T],
        rejected: type[RegistrationFailed] | type[AuthenticationFailed],
        *,
        conflict_is_duplicate: bool = False,
    ) -> _T:
        try:
            return await awaitable
        except ApiClientError as e:
            raise translate_api_error(e, rejected, conflict_is_duplicate=conflict_is_duplicate) from e

    @staticmethod
    async def _ceremony(awaitable: Awaitable[_T]) -> _T:
        try:
            return await awaitable
        except credentials.CeremonyAlreadyPending:
            raise
        except credentials.CeremonyError as e:
            raise translate_ceremony_error(e) from e

    def _establish(self, flow: PasskeyFlow, tokens: SessionTokenPair, user: UserResponse) -> AuthResult:
        self._store.save_session(tokens, user.id, user.zuno_tag)
        flow.advance(FlowState.SESSION_ESTABLISHED)
        logger.info("passkey_session_established", kind=flow.kind, user_id=user.id)
        return AuthResult(tokens=tokens, user=user)

    async def register(
        self,
        handle: str,
        display_name: str | None = None,
        email: str | None = None,
    ) -> AuthResult:
        """
        Register a new passkey for ``handle``.

        Raises InvalidHandle before any network call if the handle is malformed,
        UserAlreadyExists if the handle is taken, and other PasskeyError
        subclasses for ceremony or transport failures.
        """
        zuno_tag = validate_handle(handle)
        flow = self.last_flow = PasskeyFlow(kind="registration", zuno_tag=zuno_tag)

        try:
            flow.advance(FlowState.CHALLENGE_REQUESTED)
            challenge = await self._call(
                self._api.begin_registration(zuno_tag, display_name=display_name, email=email),
                RegistrationFailed,
                conflict_is_duplicate=True,
            )
            options = parse_creation_options(challenge.options)
            flow.advance(FlowState.CHALLENGE_RECEIVED)

            flow.advance(FlowState.CEREMONY_IN_PROGRESS)
            credential = await self._ceremony(
                self._provider.create_registration_credential(
                    challenge=options.challenge,
                    relying_party_id=self._rp_id,
                    user_name=zuno_tag,
                    user_id=options.user.id,
                )
            )
            flow.advance(FlowState.CEREMONY_COMPLETE)

            auth = await self._call(
                self._api.complete_registration(challenge.challenge_id, registration_payload(credential)),
                RegistrationFailed,
                conflict_is_duplicate=True,
            )
            flow.advance(FlowState.SERVER_CONFIRMED)

            tokens = SessionTokenPair(
                access=auth.access_token,
                refresh=auth.refresh_token,
                expires_in_seconds=auth.expires_in,
            )
            return self._establish(flow, tokens, auth.user)
        except (Exception, asyncio.CancelledError) as e:
            flow.fail(e)
            logger.warning("passkey_registration_failed", zuno_tag=zuno_tag, error=type(e).__name__)
            raise

    async def authenticate(self, handle: str) -> AuthResult:
        """
        Log in with an existing passkey for ``handle``.

        Raises InvalidHandle before any network call if the handle is malformed,
        and PasskeyError subclasses for ceremony or transport failures.
        """
        zuno_tag = validate_handle(handle)
        flow = self.last_flow = PasskeyFlow(kind="authentication", zuno_tag=zuno_tag)

        try:
            flow.advance(FlowState.CHALLENGE_REQUESTED)
            challenge = await self._call(self._api.begin_login(zuno_tag), AuthenticationFailed)
            options = parse_assertion_options(challenge.options)
            flow.advance(FlowState.CHALLENGE_RECEIVED)

            flow.advance(FlowState.CEREMONY_IN_PROGRESS)
            assertion = await self._ceremony(
                self._provider.create_assertion_credential(
                    challenge=options.challenge,
                    relying_party_id=self._rp_id,
                )
            )
            flow.advance(FlowState.CEREMONY_COMPLETE)

            auth = await self._call(
                self._api.complete_login(challenge.challenge_id, assertion_payload(assertion)),
                AuthenticationFailed,
            )
            flow.advance(FlowState.SERVER_CONFIRMED)

            tokens = SessionTokenPair(
                access=auth.access_token,
                refresh=auth.refresh_token,
                expires_in_seconds=auth.expires_in,
            )
            return self._establish(flow, tokens, auth.user)
        except (Exception, asyncio.CancelledError) as e:
            flow.fail(e)
            logger.warning("passkey_login_failed", zuno_tag=zuno_tag, error=type(e).__name__)
            raise
