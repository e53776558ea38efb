"""Unit tests for the token service.

Covers issuance, signature and claim checks, expiry with clock skew, and
type enforcement.
"""

import base64
import json

import pytest

from conftest import TEST_SECRET, FrozenClock
from tokenward.config import Settings
from tokenward.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenTypeMismatchError,
)
from tokenward.service.tokens import ACCESS, REFRESH, TokenService, hash_token
from tokenward.storage.models import ClientMetadata


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


class TestIssue:
    """Tests for token issuance."""

    def test_access_token_round_trips_claims(self, tokens, clock):
        token, expires_at = tokens.issue_access_token("user-1", 3)
        claims = tokens.verify(token, ACCESS)

        assert claims.sub == "user-1"
        assert claims.token_version == 3
        assert claims.token_type == ACCESS
        assert claims.expires_at == expires_at
        assert expires_at == clock.now.replace(microsecond=0) + tokens._access_ttl

    def test_refresh_token_uses_refresh_lifetime(self, tokens, clock):
        token, expires_at, jti = tokens.issue_refresh_token("user-1", 0)
        claims = tokens.verify(token, REFRESH)

        assert claims.jti == jti
        assert expires_at - clock.now.replace(microsecond=0) == tokens._refresh_ttl

    def test_tokens_issued_in_same_instant_differ(self, tokens):
        first, _ = tokens.issue_access_token("user-1", 0)
        second, _ = tokens.issue_access_token("user-1", 0)

        assert first != second

    def test_client_metadata_is_embedded_when_present(self, tokens):
        metadata = ClientMetadata(ip_address="10.0.0.1", user_agent="pytest")
        token, _ = tokens.issue_access_token("user-1", 0, metadata)
        claims = tokens.verify(token)

        assert claims.ip_address == "10.0.0.1"
        assert claims.user_agent == "pytest"

    def test_missing_metadata_is_omitted(self, tokens):
        token, _ = tokens.issue_access_token("user-1", 0)
        payload = _payload(token)

        assert "ip_address" not in payload
        assert "user_agent" not in payload
        assert payload["iss"] == "tokenward"
        assert payload["aud"] == "tokenward-clients"


class TestVerify:
    """Tests for token verification failures."""

    def test_expired_token_rejected(self, tokens, clock):
        token, _ = tokens.issue_access_token("user-1", 0)
        clock.advance(hours=2)

        with pytest.raises(TokenExpiredError):
            tokens.verify(token)

    def test_token_valid_one_second_before_expiry(self, tokens, clock):
        token, _ = tokens.issue_access_token("user-1", 0)
        clock.advance(hours=2, seconds=-1)

        assert tokens.verify(token).sub == "user-1"

    def test_clock_skew_extends_acceptance(self, clock):
        skewed = TokenService(
            Settings(jwt_secret=TEST_SECRET, token_clock_skew_seconds=30), clock=clock
        )
        token, _ = skewed.issue_access_token("user-1", 0)
        clock.advance(hours=2, seconds=10)

        assert skewed.verify(token).sub == "user-1"
        clock.advance(seconds=30)
        with pytest.raises(TokenExpiredError):
            skewed.verify(token)

    def test_tampered_payload_rejected(self, tokens):
        token, _ = tokens.issue_access_token("user-1", 0)
        header, _, signature = token.split(".")
        payload = _payload(token)
        payload["sub"] = "someone-else"
        forged = f"{header}.{_b64(payload)}.{signature}"

        with pytest.raises(InvalidTokenError):
            tokens.verify(forged)

    def test_other_secret_rejected(self, tokens, clock):
        other = TokenService(Settings(jwt_secret="x" * 40), clock=clock)
        token, _ = other.issue_access_token("user-1", 0)

        with pytest.raises(InvalidTokenError):
            tokens.verify(token)

    def test_alg_none_rejected(self, tokens):
        token, _ = tokens.issue_access_token("user-1", 0)
        _, payload, _ = token.split(".")
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(InvalidTokenError):
            tokens.verify(unsigned)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
    def test_malformed_tokens_rejected(self, tokens, garbage):
        with pytest.raises(InvalidTokenError):
            tokens.verify(garbage)

    def test_non_ascii_signature_rejected(self, tokens):
        token, _ = tokens.issue_access_token("user-1", 0)
        header, payload, _ = token.split(".")

        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{payload}.sigé")
        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{payload}.\ud800")

    def test_wrong_audience_rejected(self, clock):
        issuer = TokenService(
            Settings(jwt_secret=TEST_SECRET, jwt_audience="someone-else"), clock=clock
        )
        verifier = TokenService(Settings(jwt_secret=TEST_SECRET), clock=clock)
        token, _ = issuer.issue_access_token("user-1", 0)

        with pytest.raises(InvalidTokenError):
            verifier.verify(token)

    def test_refresh_token_rejected_where_access_expected(self, tokens):
        token, _, _ = tokens.issue_refresh_token("user-1", 0)

        with pytest.raises(TokenTypeMismatchError) as excinfo:
            tokens.verify(token, ACCESS)
        assert excinfo.value.error_code == "token_type_mismatch"
        assert excinfo.value.status_code == 401

    def test_access_token_rejected_where_refresh_expected(self, tokens):
        token, _ = tokens.issue_access_token("user-1", 0)

        with pytest.raises(TokenTypeMismatchError):
            tokens.verify(token, REFRESH)

    def test_verify_is_independent_of_wall_clock(self):
        past = FrozenClock()
        service = TokenService(Settings(jwt_secret=TEST_SECRET), clock=past)
        token, _ = service.issue_access_token("user-1", 0)
        past.advance(minutes=119)

        assert service.verify(token).sub == "user-1"


def test_hash_token_is_stable_and_opaque():
    digest = hash_token("abc.def.ghi")

    assert digest == hash_token("abc.def.ghi")
    assert digest != hash_token("abc.def.ghj")
    assert len(digest) == 64
