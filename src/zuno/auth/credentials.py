"""
Platform public-key credential ceremonies.

CredentialProvider is the seam the relying-party driver talks to. The
platform itself is callback driven: a ceremony is started, and some time
later the platform reports a credential or an error code. CeremonyBroker
bridges that into awaitable single-shot futures keyed by a request id, and
refuses to start a second ceremony while one is still outstanding.

No network I/O happens here.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TypeVar

import structlog

logger = structlog.get_logger()

# Platform authorization error codes
PLATFORM_CODE_UNKNOWN = 1000
PLATFORM_CODE_CANCELED = 1001
PLATFORM_CODE_FAILED = 1004


# ---------------------------------------------------------------------------
# Credentials and requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlatformCredential:
    """Registration result: the attestation produced by the authenticator."""

    credential_id: bytes
    client_data_json: bytes
    attestation_object: bytes


@dataclass(frozen=True)
class PlatformAssertion:
    """Login result: the assertion produced by the authenticator."""

    credential_id: bytes
    client_data_json: bytes
    authenticator_data: bytes
    signature: bytes
    user_handle: bytes = b""


@dataclass(frozen=True)
class RegistrationRequest:
    challenge: bytes
    relying_party_id: str
    user_name: str
    user_id: bytes


@dataclass(frozen=True)
class AssertionRequest:
    challenge: bytes
    relying_party_id: str


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CeremonyError(RuntimeError):
    """Base class for platform ceremony failures."""


class UserCancelled(CeremonyError):
    """The user dismissed the platform prompt."""


class NotAvailable(CeremonyError):
    """No platform authenticator is available on this device."""


class CeremonyFailed(CeremonyError):
    """Any other platform-reported failure, with the raw code when known."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class UnsupportedCredentialType(CeremonyError):
    """The platform returned a credential of the wrong kind."""


class CeremonyAlreadyPending(CeremonyError):
    """A ceremony was started while another one is still outstanding."""


def ceremony_error_from_code(code: int, detail: str | None = None) -> CeremonyError:
    """
    Translate a platform error code into a ceremony error.

    Only cancellation and generic failure have a known meaning. Every other
    code, including the platform's own "unknown", is reported as an
    unclassified CeremonyFailed.
    """
    if code == PLATFORM_CODE_CANCELED:
        return UserCancelled(detail or "Ceremony cancelled by user")
    if code == PLATFORM_CODE_FAILED:
        return CeremonyFailed(detail or "Ceremony failed", code=code)
    return CeremonyFailed(detail or f"Unrecognized platform error code {code}", code=code)


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class CredentialProvider(ABC):
    """Produces platform credentials for a server-issued challenge."""

    @abstractmethod
    async def create_registration_credential(
        self,
        challenge: bytes,
        relying_party_id: str,
        user_name: str,
        user_id: bytes,
    ) -> PlatformCredential:
        """Run a registration ceremony and return the new credential."""

    @abstractmethod
    async def create_assertion_credential(self, challenge: bytes, relying_party_id: str) -> PlatformAssertion:
        """Run a login ceremony and return the assertion."""


class PlatformAuthenticator(ABC):
    """
    Callback-style platform authenticator.

    ``begin`` starts the OS prompt and returns immediately. The outcome is
    delivered later through CeremonyBroker.resolve / CeremonyBroker.reject
    with the same request id.
    """

    def is_available(self) -> bool:
        return True

    @abstractmethod
    def begin(self, request_id: str, request: RegistrationRequest | AssertionRequest) -> None:
        """Start the platform ceremony for ``request``."""

    def cancel(self, request_id: str) -> None:  # noqa: B027
        """Dismiss an outstanding ceremony. Optional."""


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------

_C = TypeVar("_C", PlatformCredential, PlatformAssertion)


@dataclass
class _PendingCeremony:
    request_id: str
    future: asyncio.Future[PlatformCredential | PlatformAssertion]
    expected: type[PlatformCredential] | type[PlatformAssertion]


class CeremonyBroker(CredentialProvider):
    """CredentialProvider over a callback-style PlatformAuthenticator."""

    def __init__(self, authenticator: PlatformAuthenticator, timeout: float | None = 60.0) -> None:
        self._authenticator = authenticator
        self._timeout = timeout
        self._pending: _PendingCeremony | None = None

    @property
    def pending_request_id(self) -> str | None:
        return self._pending.request_id if self._pending else None

    async def create_registration_credential(
        self,
        challenge: bytes,
        relying_party_id: str,
        user_name: str,
        user_id: bytes,
    ) -> PlatformCredential:
        request = RegistrationRequest(
            challenge=challenge,
            relying_party_id=relying_party_id,
            user_name=user_name,
            user_id=user_id,
        )
        return await self._run(request, PlatformCredential)

    async def create_assertion_credential(self, challenge: bytes, relying_party_id: str) -> PlatformAssertion:
        request = AssertionRequest(challenge=challenge, relying_party_id=relying_party_id)
        return await self._run(request, PlatformAssertion)

    async def _run(self, request: RegistrationRequest | AssertionRequest, expected: type[_C]) -> _C:
        if self._pending is not None:
            msg = f"Ceremony {self._pending.request_id} is still pending"
            raise CeremonyAlreadyPending(msg)
        if not self._authenticator.is_available():
            msg = "No platform authenticator available"
            raise NotAvailable(msg)

        request_id = uuid.uuid4().hex
        future: asyncio.Future[PlatformCredential | PlatformAssertion] = asyncio.get_running_loop().create_future()
        self._pending = _PendingCeremony(request_id=request_id, future=future, expected=expected)
        logger.info("ceremony_started", request_id=request_id, kind=expected.__name__)

        try:
            self._authenticator.begin(request_id, request)
            result = await asyncio.wait_for(future, timeout=self._timeout)
        except TimeoutError:
            self._authenticator.cancel(request_id)
            logger.warning("ceremony_timed_out", request_id=request_id, timeout=self._timeout)
            msg = f"Ceremony timed out after {self._timeout}s"
            raise CeremonyFailed(msg) from None
        except asyncio.CancelledError:
            self._authenticator.cancel(request_id)
            logger.info("ceremony_abandoned", request_id=request_id)
            raise
        finally:
            if self._pending is not None and self._pending.request_id == request_id:
                self._pending = None

        return result  # type: ignore[return-value]

    def _take(self, request_id: str) -> _PendingCeremony | None:
        pending = self._pending
        if pending is None or pending.request_id != request_id or pending.future.done():
            logger.warning("ceremony_result_dropped", request_id=request_id)
            return None
        return pending

    def resolve(self, request_id: str, credential: PlatformCredential | PlatformAssertion) -> bool:
        """Deliver a platform credential. Returns False if the request is unknown or stale."""
        pending = self._take(request_id)
        if pending is None:
            return False
        if isinstance(credential, pending.expected):
            pending.future.set_result(credential)
        else:
            msg = f"Expected {pending.expected.__name__}, got {type(credential).__name__}"
            pending.future.set_exception(UnsupportedCredentialType(msg))
        return True

    def reject(self, request_id: str, code: int, detail: str | None = None) -> bool:
        """Deliver a platform error code. Returns False if the request is unknown or stale."""
        pending = self._take(request_id)
        if pending is None:
            return False
        logger.info("ceremony_rejected", request_id=request_id, code=code)
        pending.future.set_exception(ceremony_error_from_code(code, detail))
        return True
