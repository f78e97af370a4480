"""Unit tests for WebAuthn options parsing."""

import pytest

from zuno.auth.encoding import b64url_encode
from zuno.auth.errors import InvalidChallenge
from zuno.auth.options import parse_assertion_options, parse_creation_options


class TestCreationOptions:
    def test_nested_public_key_shape(self, payloads):
        options = parse_creation_options(payloads.creation_options(nested=True))
        assert options.challenge == b"registration-challenge"
        assert options.user.id == b"user-handle-1"
        assert options.user.display_name == "Alice"
        assert options.rp is not None and options.rp.id == "localhost"

    def test_flat_shape(self, payloads):
        options = parse_creation_options(payloads.creation_options(nested=False))
        assert options.challenge == b"registration-challenge"
        assert options.user.id == b"user-handle-1"

    def test_both_shapes_parse_identically(self, payloads):
        nested = parse_creation_options(payloads.creation_options(nested=True))
        flat = parse_creation_options(payloads.creation_options(nested=False))
        assert nested == flat

    def test_padded_challenge_accepted(self):
        raw = {"challenge": "YQ==", "user": {"id": b64url_encode(b"u")}}
        assert parse_creation_options(raw).challenge == b"a"

    def test_missing_challenge(self, payloads):
        raw = payloads.creation_options(nested=False)
        del raw["challenge"]
        with pytest.raises(InvalidChallenge):
            parse_creation_options(raw)

    def test_empty_challenge(self, payloads):
        raw = payloads.creation_options(nested=False)
        raw["challenge"] = ""
        with pytest.raises(InvalidChallenge):
            parse_creation_options(raw)

    def test_undecodable_challenge(self, payloads):
        raw = payloads.creation_options(nested=False)
        raw["challenge"] = "%%%"
        with pytest.raises(InvalidChallenge):
            parse_creation_options(raw)

    def test_missing_user_id(self, payloads):
        raw = payloads.creation_options(nested=False)
        del raw["user"]["id"]
        with pytest.raises(InvalidChallenge):
            parse_creation_options(raw)

    def test_non_dict_public_key_falls_back_to_flat(self, payloads):
        raw = payloads.creation_options(nested=False)
        raw["publicKey"] = "ignored"
        assert parse_creation_options(raw).challenge == b"registration-challenge"

    def test_not_a_mapping(self):
        with pytest.raises(InvalidChallenge):
            parse_creation_options(["challenge"])


class TestAssertionOptions:
    def test_nested_shape(self, payloads):
        options = parse_assertion_options(payloads.assertion_options(nested=True))
        assert options.challenge == b"login-challenge"
        assert options.rp_id == "localhost"
        assert options.user_verification == "required"

    def test_flat_shape(self, payloads):
        options = parse_assertion_options(payloads.assertion_options(nested=False))
        assert options.challenge == b"login-challenge"
        assert options.allow_credentials == []

    def test_allow_credentials(self, payloads):
        raw = payloads.assertion_options(nested=False)
        raw["allowCredentials"] = [{"type": "public-key", "id": "Y3JlZA", "transports": ["internal"]}]
        options = parse_assertion_options(raw)
        assert options.allow_credentials[0].id == "Y3JlZA"
        assert options.allow_credentials[0].transports == ["internal"]

    def test_missing_challenge(self):
        with pytest.raises(InvalidChallenge, match="Invalid login options"):
            parse_assertion_options({"publicKey": {"rpId": "localhost"}})
