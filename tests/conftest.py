"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
import keyring
import keyring.errors
import pytest
import pytest_asyncio
from keyring.backend import KeyringBackend
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zuno.api.client import ZunoApiClient
from zuno.auth.credentials import (
    CredentialProvider,
    PlatformAssertion,
    PlatformAuthenticator,
    PlatformCredential,
)
from zuno.auth.encoding import b64url_encode
from zuno.auth.passkey import RelyingPartyClient
from zuno.auth.session_store import SessionStore
from zuno.database import close_db, get_session_factory, init_db
from zuno.sync.reconciler import Reconciler

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Secret storage
# ---------------------------------------------------------------------------


class MemoryKeyring(KeyringBackend):
    """In-memory keyring backend with switchable failures per entry."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}
        self.fail_on_set: set[str] = set()
        self.fail_on_delete: set[str] = set()

    def get_password(self, service: str, username: str) -> str | None:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if username in self.fail_on_set:
            msg = f"locked: {username}"
            raise keyring.errors.PasswordSetError(msg)
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if username in self.fail_on_delete:
            msg = f"locked: {username}"
            raise keyring.errors.PasswordDeleteError(msg)
        if (service, username) not in self.entries:
            msg = f"not found: {username}"
            raise keyring.errors.PasswordDeleteError(msg)
        del self.entries[(service, username)]


@pytest.fixture(autouse=True)
def memory_keyring() -> Generator[MemoryKeyring, None, None]:
    """Route every keyring call to a fresh in-memory backend."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def store() -> SessionStore:
    return SessionStore("com.zuno.test")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database per test."""
    await init_db(TEST_DB_URL)
    yield get_session_factory()
    await close_db()


@pytest.fixture
def reconciler(session_factory: async_sessionmaker[AsyncSession]) -> Reconciler:
    return Reconciler(session_factory)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class Payloads:
    """JSON-shaped server payloads with sensible defaults."""

    @staticmethod
    def user(user_id: str = "user-1", zuno_tag: str = "alice", **overrides: Any) -> dict[str, Any]:
        data = {
            "id": user_id,
            "zuno_tag": zuno_tag,
            "email": f"{zuno_tag}@example.com",
            "display_name": zuno_tag.title(),
            "default_currency": "USDC",
            "preferred_network": "ARC-TESTNET",
            "preferred_stablecoin": "USDC",
            "is_verified": True,
            "created_at": BASE_TIME.isoformat(),
        }
        data.update(overrides)
        return data

    @staticmethod
    def wallet(
        wallet_id: str = "wallet-1",
        *,
        is_primary: bool = False,
        created_at: datetime = BASE_TIME,
        **overrides: Any,
    ) -> dict[str, Any]:
        data = {
            "id": wallet_id,
            "wallet_address": "0x" + wallet_id.encode().hex().ljust(40, "0")[:40],
            "blockchain": "ARC-TESTNET",
            "account_type": "SCA",
            "is_primary": is_primary,
            "created_at": created_at.isoformat(),
        }
        data.update(overrides)
        return data

    @staticmethod
    def transaction(
        tx_id: str = "tx-1",
        wallet_id: str = "wallet-1",
        *,
        status: str = "pending",
        transaction_type: str = "send",
        amount: str = "10.50",
        created_at: datetime = BASE_TIME,
        **overrides: Any,
    ) -> dict[str, Any]:
        data = {
            "id": tx_id,
            "wallet_id": wallet_id,
            "transaction_type": transaction_type,
            "status": status,
            "amount": amount,
            "token_symbol": "USDC",
            "from_address": "0x" + "a" * 40,
            "to_address": "0x" + "b" * 40,
            "created_at": created_at.isoformat(),
        }
        data.update(overrides)
        return data

    @classmethod
    def auth(cls, user: dict[str, Any] | None = None, access: str = "access-1", refresh: str = "refresh-1") -> dict:
        return {
            "access_token": access,
            "refresh_token": refresh,
            "expires_in": 3600,
            "user": user or cls.user(),
        }

    @staticmethod
    def creation_options(
        *,
        nested: bool = True,
        challenge: bytes = b"registration-challenge",
        user_id: bytes = b"user-handle-1",
    ) -> dict[str, Any]:
        options = {
            "challenge": b64url_encode(challenge),
            "rp": {"id": "localhost", "name": "Zuno"},
            "user": {"id": b64url_encode(user_id), "name": "alice", "displayName": "Alice"},
            "timeout": 60000,
            "attestation": "none",
        }
        return {"publicKey": options} if nested else options

    @staticmethod
    def assertion_options(*, nested: bool = True, challenge: bytes = b"login-challenge") -> dict[str, Any]:
        options = {"challenge": b64url_encode(challenge), "rpId": "localhost", "userVerification": "required"}
        return {"publicKey": options} if nested else options


@pytest.fixture
def payloads() -> type[Payloads]:
    return Payloads


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


Responder = httpx.Response | Exception | Callable[[httpx.Request], httpx.Response]


class FakeBackend:
    """
    httpx.MockTransport handler.

    Responses queued for a route are served in order; the last one keeps
    being served. Unrouted requests get a 404 error body.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Responder]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        status: int = 200,
        json: Any = None,
        *,
        exc: Exception | None = None,
    ) -> None:
        responder: Responder = exc if exc is not None else httpx.Response(status, json=json)
        self.routes.setdefault((method, path), []).append(responder)

    def replace(self, method: str, path: str, status: int = 200, json: Any = None) -> None:
        """Drop anything queued for the route, then serve this response."""
        self.routes.pop((method, path), None)
        self.add(method, path, status, json)

    def error(self, method: str, path: str, status: int, error: str = "error", message: str = "failed") -> None:
        self.add(method, path, status, {"error": error, "message": message})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "not_found", "message": request.url.path})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, Exception):
            raise responder
        if callable(responder) and not isinstance(responder, httpx.Response):
            return responder(request)
        return responder

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> Any:
        return json.loads(request.content)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def api(backend: FakeBackend, store: SessionStore) -> AsyncGenerator[ZunoApiClient, None]:
    client = ZunoApiClient("http://zuno.test", store.access_token, transport=httpx.MockTransport(backend))
    yield client
    await client.aclose()


# ---------------------------------------------------------------------------
# Platform authenticator
# ---------------------------------------------------------------------------


def make_credential(credential_id: bytes = b"cred-1") -> PlatformCredential:
    return PlatformCredential(
        credential_id=credential_id,
        client_data_json=b'{"type":"webauthn.create"}',
        attestation_object=b"attestation",
    )


def make_assertion(credential_id: bytes = b"cred-1", user_handle: bytes = b"user-handle-1") -> PlatformAssertion:
    return PlatformAssertion(
        credential_id=credential_id,
        client_data_json=b'{"type":"webauthn.get"}',
        authenticator_data=b"authenticator-data",
        signature=b"signature",
        user_handle=user_handle,
    )


class FakeAuthenticator(PlatformAuthenticator):
    """Records started and cancelled ceremonies; results are delivered by the test."""

    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.started: list[tuple[str, Any]] = []
        self.cancelled: list[str] = []

    def is_available(self) -> bool:
        return self.available

    def begin(self, request_id: str, request: Any) -> None:
        self.started.append((request_id, request))

    def cancel(self, request_id: str) -> None:
        self.cancelled.append(request_id)


class FakeProvider(CredentialProvider):
    """Returns canned credentials, or raises ``error`` when set."""

    def __init__(self) -> None:
        self.credential = make_credential()
        self.assertion = make_assertion()
        self.error: BaseException | None = None
        self.registration_calls: list[dict[str, Any]] = []
        self.assertion_calls: list[dict[str, Any]] = []

    async def create_registration_credential(
        self,
        challenge: bytes,
        relying_party_id: str,
        user_name: str,
        user_id: bytes,
    ) -> PlatformCredential:
        self.registration_calls.append(
            {"challenge": challenge, "relying_party_id": relying_party_id, "user_name": user_name, "user_id": user_id}
        )
        if self.error is not None:
            raise self.error
        return self.credential

    async def create_assertion_credential(self, challenge: bytes, relying_party_id: str) -> PlatformAssertion:
        self.assertion_calls.append({"challenge": challenge, "relying_party_id": relying_party_id})
        if self.error is not None:
            raise self.error
        return self.assertion


@pytest.fixture
def authenticator() -> FakeAuthenticator:
    return FakeAuthenticator()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def rp_client(api: ZunoApiClient, provider: FakeProvider, store: SessionStore) -> RelyingPartyClient:
    return RelyingPartyClient(api, provider, store, relying_party_id="localhost")


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class FakeSocket:
    """Server side of one connection: frames are pushed by the test."""

    def __init__(self, *frames: str) -> None:
        self.sent: list[str] = []
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, frame: str | dict[str, Any]) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def close(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, text: str) -> None:
        self.sent.append(text)

    def sent_messages(self) -> list[dict[str, Any]]:
        return [json.loads(s) for s in self.sent]

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str:
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class FakeConnector:
    """
    Stand-in for ``websockets.asyncio.client.connect``.

    Queued sockets are handed out in order; ``fail_next`` connection
    attempts raise OSError first. With nothing queued every attempt fails.
    """

    def __init__(self) -> None:
        self.queued: list[FakeSocket] = []
        self.opened: list[FakeSocket] = []
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.fail_next = 0

    def queue(self, socket: FakeSocket | None = None) -> FakeSocket:
        socket = socket or FakeSocket()
        self.queued.append(socket)
        return socket

    def __call__(self, url: str, additional_headers: dict[str, str] | None = None) -> Any:
        self.calls.append((url, dict(additional_headers or {})))
        return self._open()

    @asynccontextmanager
    async def _open(self) -> AsyncGenerator[FakeSocket, None]:
        if self.fail_next > 0 or not self.queued:
            self.fail_next = max(0, self.fail_next - 1)
            msg = "connection refused"
            raise OSError(msg)
        socket = self.queued.pop(0)
        self.opened.append(socket)
        yield socket


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            msg = "condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.005)


@pytest.fixture
def eventually() -> Callable[..., Any]:
    """Await until a predicate holds, failing after a timeout."""
    return _eventually
