"""Tests for bearer token issuing and verification."""

import base64
import json
import time

import pytest

from vib3sales.config import Settings
from vib3sales.service.tokens import ACCESS, REFRESH, TokenService, generate_secure_token
from vib3sales.storage.models import User


@pytest.fixture
def settings():
    return Settings(jwt_secret="Token-Test-Secret-Key_for-Automation-Only-123456")


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


@pytest.fixture
def user():
    return User(id="user-1", email="ann@example.com", name="Ann", password_hash="x")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssueAndVerify:
    def test_access_token_round_trip(self, tokens, user):
        issued = tokens.issue_access_token(user)
        payload = tokens.verify(issued.token)
        assert payload is not None
        assert payload.user_id == user.id
        assert payload.email == user.email
        assert payload.name == "Ann"
        assert payload.type == ACCESS
        assert payload.expires_at == int(issued.expires_at.timestamp())

    def test_refresh_token_is_typed(self, tokens, user):
        payload = tokens.verify(tokens.issue_refresh_token(user).token)
        assert payload.type == REFRESH

    def test_tokens_minted_together_differ(self, tokens, user):
        first = tokens.issue_access_token(user)
        second = tokens.issue_access_token(user)
        assert first.token != second.token

    def test_refresh_outlives_access(self, tokens, user):
        access = tokens.issue_access_token(user)
        refresh = tokens.issue_refresh_token(user)
        assert refresh.expires_at > access.expires_at


class TestRejection:
    """verify() fails closed and returns None."""

    def test_empty_and_malformed(self, tokens):
        assert tokens.verify(None) is None
        assert tokens.verify("") is None
        assert tokens.verify("not-a-jwt") is None
        assert tokens.verify("a.b.c") is None

    def test_tampered_payload(self, tokens, user):
        header, _, signature = tokens.issue_access_token(user).token.split(".")
        forged = _b64(
            {
                "userId": "someone-else",
                "email": "x@example.com",
                "type": ACCESS,
                "iss": tokens.settings.jwt_issuer,
                "aud": tokens.settings.jwt_audience,
                "exp": int(time.time()) + 3600,
            }
        )
        assert tokens.verify(f"{header}.{forged}.{signature}") is None

    def test_other_secret(self, user):
        mine = TokenService(Settings(jwt_secret="first-secret-value-that-is-long-enough-000"))
        theirs = TokenService(Settings(jwt_secret="second-secret-value-that-is-long-enough-11"))
        assert theirs.verify(mine.issue_access_token(user).token) is None

    def test_non_hs256_header(self, tokens, user):
        _, payload, signature = tokens.issue_access_token(user).token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        assert tokens.verify(f"{header}.{payload}.{signature}") is None

    def test_expired(self, tokens):
        payload = {
            "userId": "user-1",
            "email": "ann@example.com",
            "type": ACCESS,
            "iss": tokens.settings.jwt_issuer,
            "aud": tokens.settings.jwt_audience,
            "iat": int(time.time()) - 120,
            "exp": int(time.time()) - 60,
        }
        assert tokens.verify(tokens._encode_jwt(payload)) is None

    def test_wrong_audience(self, tokens):
        payload = {
            "userId": "user-1",
            "email": "ann@example.com",
            "type": ACCESS,
            "iss": tokens.settings.jwt_issuer,
            "aud": "someone-else",
            "exp": int(time.time()) + 60,
        }
        assert tokens.verify(tokens._encode_jwt(payload)) is None

    def test_missing_claims(self, tokens):
        payload = {
            "iss": tokens.settings.jwt_issuer,
            "aud": tokens.settings.jwt_audience,
            "exp": int(time.time()) + 60,
        }
        assert tokens.verify(tokens._encode_jwt(payload)) is None


def test_generate_secure_token_is_64_hex_chars():
    token = generate_secure_token()
    assert len(token) == 64
    int(token, 16)
    assert generate_secure_token() != token
