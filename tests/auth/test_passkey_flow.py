"""Tests for the passkey registration and login driver."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from zuno.auth import credentials
from zuno.auth.encoding import b64url_encode
from zuno.auth.errors import (
    AuthenticationFailed,
    BiometricFailed,
    InvalidChallenge,
    InvalidHandle,
    NetworkError,
    RegistrationFailed,
    ServerError,
    UnknownError,
    UnsupportedCredentialType,
    UserAlreadyExists,
    UserCancelled,
)
from zuno.auth.passkey import (
    FlowState,
    PasskeyFlow,
    assertion_payload,
    translate_ceremony_error,
    validate_transition,
)
from zuno.auth.session_store import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    USER_ID_KEY,
    ZUNO_TAG_KEY,
    CredentialStoreError,
)

HAPPY_PATH = [
    FlowState.IDLE,
    FlowState.CHALLENGE_REQUESTED,
    FlowState.CHALLENGE_RECEIVED,
    FlowState.CEREMONY_IN_PROGRESS,
    FlowState.CEREMONY_COMPLETE,
    FlowState.SERVER_CONFIRMED,
    FlowState.SESSION_ESTABLISHED,
]


def _route_registration(backend, payloads, *, nested: bool = True) -> None:
    backend.add(
        "POST",
        "/auth/register",
        json={"challenge_id": "chal-1", "options": payloads.creation_options(nested=nested)},
    )
    backend.add("POST", "/auth/register/complete", json=payloads.auth())


def _route_login(backend, payloads, *, nested: bool = True) -> None:
    backend.add(
        "POST",
        "/auth/login",
        json={"challenge_id": "chal-2", "options": payloads.assertion_options(nested=nested)},
    )
    backend.add("POST", "/auth/login/complete", json=payloads.auth())


class TestFlowStateMachine:
    def test_happy_path_transitions_are_valid(self):
        for current, target in zip(HAPPY_PATH, HAPPY_PATH[1:]):
            validate_transition(current, target)

    def test_skipping_a_step_is_invalid(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(FlowState.CHALLENGE_REQUESTED, FlowState.CEREMONY_IN_PROGRESS)

    def test_terminal_states_have_no_exits(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(FlowState.FAILED, FlowState.IDLE)
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(FlowState.SESSION_ESTABLISHED, FlowState.FAILED)

    def test_fail_after_established_is_ignored(self):
        flow = PasskeyFlow(kind="registration", zuno_tag="alice")
        for state in HAPPY_PATH[1:]:
            flow.advance(state)
        flow.fail(RuntimeError("late"))
        assert flow.state == FlowState.SESSION_ESTABLISHED
        assert flow.failure is None


class TestRegistration:
    @pytest.mark.asyncio
    async def test_successful_registration(self, rp_client, backend, payloads, provider, store):
        """Scenario: a new handle registers and the session is persisted."""
        _route_registration(backend, payloads)

        result = await rp_client.register("@alice", display_name="Alice", email="Alice@Example.com")

        assert result.user.zuno_tag == "alice"
        assert result.tokens.access == "access-1"
        assert store.retrieve(ACCESS_TOKEN_KEY) == "access-1"
        assert store.retrieve(REFRESH_TOKEN_KEY) == "refresh-1"
        assert store.retrieve(USER_ID_KEY) == "user-1"
        assert store.retrieve(ZUNO_TAG_KEY) == "alice"
        assert rp_client.last_flow.history == HAPPY_PATH

        begin = backend.body(backend.calls("POST", "/auth/register")[0])
        assert begin == {"zuno_tag": "alice", "display_name": "Alice", "email": "alice@example.com"}

        ceremony = provider.registration_calls[0]
        assert ceremony["challenge"] == b"registration-challenge"
        assert ceremony["user_id"] == b"user-handle-1"
        assert ceremony["user_name"] == "alice"
        assert ceremony["relying_party_id"] == "localhost"

    @pytest.mark.asyncio
    async def test_completion_payload_shape(self, rp_client, backend, payloads):
        _route_registration(backend, payloads)
        await rp_client.register("alice")

        body = backend.body(backend.calls("POST", "/auth/register/complete")[0])
        assert body["challenge_id"] == "chal-1"
        credential = body["credential"]
        assert credential["id"] == credential["rawId"] == b64url_encode(b"cred-1")
        assert credential["type"] == "public-key"
        assert credential["clientExtensionResults"] == {}
        assert credential["response"]["attestationObject"] == b64url_encode(b"attestation")
        assert credential["response"]["transports"] == []

    @pytest.mark.asyncio
    async def test_flat_options_shape(self, rp_client, backend, payloads, provider):
        _route_registration(backend, payloads, nested=False)
        await rp_client.register("alice")
        assert provider.registration_calls[0]["challenge"] == b"registration-challenge"

    @pytest.mark.asyncio
    async def test_invalid_handle_makes_no_request(self, rp_client, backend):
        with pytest.raises(InvalidHandle):
            await rp_client.register("Al")
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_taken_handle_at_begin(self, rp_client, backend, store, provider):
        """Scenario: 409 on the first call is a duplicate user."""
        backend.error("POST", "/auth/register", 409, "conflict", "Zuno tag already taken")

        with pytest.raises(UserAlreadyExists) as exc_info:
            await rp_client.register("alice")

        assert "Login" in exc_info.value.recovery_suggestion
        assert provider.registration_calls == []
        assert not store.has_stored_credentials()
        assert rp_client.last_flow.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_taken_handle_at_completion(self, rp_client, backend, payloads, store):
        backend.add("POST", "/auth/register", json={"challenge_id": "c", "options": payloads.creation_options()})
        backend.error("POST", "/auth/register/complete", 409, "conflict", "taken")

        with pytest.raises(UserAlreadyExists):
            await rp_client.register("alice")
        assert not store.has_stored_credentials()

    @pytest.mark.asyncio
    async def test_rejected_by_server(self, rp_client, backend):
        backend.error("POST", "/auth/register", 400, "bad_request", "Email is invalid")
        with pytest.raises(RegistrationFailed, match="Email is invalid"):
            await rp_client.register("alice")

    @pytest.mark.asyncio
    async def test_server_error(self, rp_client, backend):
        backend.add("POST", "/auth/register", 503, json={"unexpected": True})
        with pytest.raises(ServerError) as exc_info:
            await rp_client.register("alice")
        assert exc_info.value.http_status == 503

    @pytest.mark.asyncio
    async def test_network_error(self, rp_client, backend):
        backend.add("POST", "/auth/register", exc=httpx.ConnectError("connection refused"))
        with pytest.raises(NetworkError, match="connection refused"):
            await rp_client.register("alice")

    @pytest.mark.asyncio
    async def test_malformed_completion_body_is_unknown(self, rp_client, backend, payloads, store):
        _route_registration(backend, payloads)
        backend.replace("POST", "/auth/register/complete", json={"access_token": "only-one"})

        with pytest.raises(UnknownError, match="AuthResponse"):
            await rp_client.register("alice")

        assert rp_client.last_flow.state == FlowState.FAILED
        assert not store.has_stored_credentials()

    @pytest.mark.asyncio
    async def test_bad_challenge(self, rp_client, backend, provider):
        backend.add("POST", "/auth/register", json={"challenge_id": "c", "options": {"publicKey": {"user": {}}}})
        with pytest.raises(InvalidChallenge):
            await rp_client.register("alice")
        assert provider.registration_calls == []
        assert rp_client.last_flow.history[-2:] == [FlowState.CHALLENGE_REQUESTED, FlowState.FAILED]

    @pytest.mark.asyncio
    async def test_user_cancels_ceremony(self, rp_client, backend, payloads, provider, store):
        _route_registration(backend, payloads)
        provider.error = credentials.UserCancelled("dismissed")

        with pytest.raises(UserCancelled):
            await rp_client.register("alice")

        assert backend.calls("POST", "/auth/register/complete") == []
        assert not store.has_stored_credentials()
        assert rp_client.last_flow.history[-2:] == [FlowState.CEREMONY_IN_PROGRESS, FlowState.FAILED]

    @pytest.mark.asyncio
    async def test_pending_ceremony_is_not_translated(self, rp_client, backend, payloads, provider):
        _route_registration(backend, payloads)
        provider.error = credentials.CeremonyAlreadyPending("busy")
        with pytest.raises(credentials.CeremonyAlreadyPending):
            await rp_client.register("alice")

    @pytest.mark.asyncio
    async def test_cancelled_flow_persists_nothing(self, rp_client, backend, payloads, provider, store):
        _route_registration(backend, payloads)
        provider.error = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await rp_client.register("alice")

        assert not store.has_stored_credentials()
        assert rp_client.last_flow.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_token_persistence_failure_leaves_no_partial_pair(
        self, rp_client, backend, payloads, store, memory_keyring
    ):
        _route_registration(backend, payloads)
        memory_keyring.fail_on_set.add(REFRESH_TOKEN_KEY)

        with pytest.raises(CredentialStoreError):
            await rp_client.register("alice")

        assert not store.exists(ACCESS_TOKEN_KEY)
        assert not store.exists(REFRESH_TOKEN_KEY)
        assert rp_client.last_flow.state == FlowState.FAILED

    @pytest.mark.asyncio
    async def test_identity_persistence_failure_rolls_back_tokens(
        self, rp_client, backend, payloads, store, memory_keyring
    ):
        _route_registration(backend, payloads)
        memory_keyring.fail_on_set.add(USER_ID_KEY)

        with pytest.raises(CredentialStoreError):
            await rp_client.register("alice")

        assert rp_client.last_flow.state == FlowState.FAILED
        assert not store.has_stored_credentials()
        assert not store.has_quick_unlock_identity()
        assert not store.exists(ACCESS_TOKEN_KEY)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_successful_login(self, rp_client, backend, payloads, provider, store):
        """Scenario: an existing user logs in with a passkey."""
        _route_login(backend, payloads)

        result = await rp_client.authenticate("alice")

        assert result.user.id == "user-1"
        assert store.load_tokens().access == "access-1"
        assert provider.assertion_calls[0]["challenge"] == b"login-challenge"
        assert rp_client.last_flow.history == HAPPY_PATH

        body = backend.body(backend.calls("POST", "/auth/login/complete")[0])
        assert body["challenge_id"] == "chal-2"
        response = body["credential"]["response"]
        assert response["userHandle"] == b64url_encode(b"user-handle-1")
        assert response["signature"] == b64url_encode(b"signature")

    @pytest.mark.asyncio
    async def test_flat_options_shape(self, rp_client, backend, payloads, provider):
        _route_login(backend, payloads, nested=False)
        await rp_client.authenticate("alice")
        assert provider.assertion_calls[0]["challenge"] == b"login-challenge"

    @pytest.mark.asyncio
    async def test_unknown_user(self, rp_client, backend):
        backend.error("POST", "/auth/login", 404, "not_found", "User not found")
        with pytest.raises(AuthenticationFailed, match="User not found"):
            await rp_client.authenticate("alice")

    @pytest.mark.asyncio
    async def test_conflict_is_not_a_duplicate_on_login(self, rp_client, backend):
        backend.error("POST", "/auth/login", 409, "conflict", "Challenge in use")
        with pytest.raises(AuthenticationFailed):
            await rp_client.authenticate("alice")

    @pytest.mark.asyncio
    async def test_completion_rejected(self, rp_client, backend, payloads, store):
        backend.add("POST", "/auth/login", json={"challenge_id": "c", "options": payloads.assertion_options()})
        backend.error("POST", "/auth/login/complete", 401, "unauthorized", "Signature invalid")
        with pytest.raises(AuthenticationFailed, match="Signature invalid"):
            await rp_client.authenticate("alice")
        assert not store.has_stored_credentials()

    @pytest.mark.asyncio
    async def test_timeout(self, rp_client, backend):
        backend.add("POST", "/auth/login", exc=httpx.ReadTimeout("slow"))
        with pytest.raises(NetworkError):
            await rp_client.authenticate("alice")

    @pytest.mark.asyncio
    async def test_unmapped_platform_code(self, rp_client, backend, payloads, provider):
        _route_login(backend, payloads)
        provider.error = credentials.ceremony_error_from_code(1006)
        with pytest.raises(UnknownError):
            await rp_client.authenticate("alice")

    @pytest.mark.asyncio
    async def test_biometric_failure_code(self, rp_client, backend, payloads, provider):
        _route_login(backend, payloads)
        provider.error = credentials.ceremony_error_from_code(credentials.PLATFORM_CODE_FAILED)
        with pytest.raises(BiometricFailed):
            await rp_client.authenticate("alice")


class TestAssertionPayload:
    def test_empty_user_handle_is_omitted(self, provider):
        assertion = credentials.PlatformAssertion(
            credential_id=b"cred",
            client_data_json=b"{}",
            authenticator_data=b"auth",
            signature=b"sig",
        )
        payload = assertion_payload(assertion)
        assert "userHandle" not in payload["response"]

    def test_user_handle_included_when_present(self, provider):
        payload = assertion_payload(provider.assertion)
        assert payload["response"]["userHandle"] == b64url_encode(b"user-handle-1")


class TestCeremonyTranslation:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (credentials.UserCancelled("x"), UserCancelled),
            (credentials.NotAvailable("x"), BiometricFailed),
            (credentials.UnsupportedCredentialType("x"), UnsupportedCredentialType),
            (credentials.CeremonyFailed("x", code=credentials.PLATFORM_CODE_FAILED), BiometricFailed),
            (credentials.CeremonyFailed("x", code=credentials.PLATFORM_CODE_UNKNOWN), UnknownError),
            (credentials.CeremonyFailed("timed out"), UnknownError),
        ],
    )
    def test_mapping(self, error, expected):
        assert isinstance(translate_ceremony_error(error), expected)
