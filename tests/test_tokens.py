"""Tests for JWT issuing, verification and lifetime parsing."""

import base64
import json

import pytest

from eventauth.config import get_settings
from eventauth.service.errors import TokenExpiredError, TokenInvalidError
from eventauth.service.tokens import (
    ACCESS,
    REFRESH,
    TokenClaims,
    TokenService,
    parse_lifetime,
)
from eventauth.storage.models import User


class _Clock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def tokens(clock):
    return TokenService(get_settings(), clock=clock)


@pytest.fixture
def user():
    return User(id="user-1", email="alice@example.com", username="alice", role="ORGANIZER")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestParseLifetime:
    """Lifetime strings from configuration."""

    @pytest.mark.parametrize(
        "value,expected",
        [("30s", 30), ("15m", 900), ("1h", 3600), ("7d", 604800), (" 2h ", 7200), (45, 45)],
    )
    def test_known_units(self, value, expected):
        assert parse_lifetime(value) == expected

    def test_unknown_unit_falls_back_to_a_day(self):
        assert parse_lifetime("3w") == 86400
        assert parse_lifetime("") == 86400


class TestIssueAndVerify:
    """Round trips and claim contents."""

    def test_access_token_round_trip(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1", ip="10.0.0.1", user_agent="pytest")
        claims = tokens.verify_access_token(pair.access_token)
        assert claims.user_id == "user-1"
        assert claims.email == "alice@example.com"
        assert claims.role == "ORGANIZER"
        assert claims.session_id == "sess-1"
        assert claims.token_type == ACCESS
        assert claims.ip == "10.0.0.1"
        assert claims.user_agent == "pytest"
        assert claims.version == 1

    def test_refresh_token_round_trip(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1")
        claims = tokens.verify_refresh_token(pair.refresh_token)
        assert claims.token_type == REFRESH
        assert claims.session_id == "sess-1"
        assert claims.expires_at - claims.issued_at == tokens.refresh_ttl

    def test_remember_me_extends_refresh_lifetime(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1", remember_me=True)
        claims = pair.refresh_claims
        assert claims.expires_at - claims.issued_at == tokens.remember_me_ttl

    def test_each_token_has_unique_jti(self, tokens, user):
        first = tokens.issue_pair(user, "sess-1")
        second = tokens.issue_pair(user, "sess-1")
        assert first.access_claims.jti != second.access_claims.jti
        assert first.refresh_token != second.refresh_token

    def test_pair_serialization(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1")
        data = pair.as_dict()
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == tokens.access_ttl

    def test_issue_rejects_wrong_claim_type(self, tokens, user):
        claims = tokens.new_claims(user, "sess-1", REFRESH)
        with pytest.raises(ValueError):
            tokens.issue_access_token(claims)


class TestRejection:
    """Tokens that must not verify."""

    def test_refresh_token_is_not_an_access_token(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1")
        with pytest.raises(TokenInvalidError):
            tokens.verify_access_token(pair.refresh_token)
        with pytest.raises(TokenInvalidError):
            tokens.verify_refresh_token(pair.access_token)

    def test_tampered_payload_rejected(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1")
        header, payload, signature = pair.access_token.split(".")
        claims = pair.access_claims.to_payload(
            get_settings().jwt_issuer, get_settings().jwt_audience
        )
        claims["role"] = "ADMIN"
        forged = ".".join([header, _b64(claims), signature])
        with pytest.raises(TokenInvalidError):
            tokens.verify_access_token(forged)

    def test_alg_none_rejected(self, tokens, user):
        pair = tokens.issue_pair(user, "sess-1")
        _, payload, _ = pair.access_token.split(".")
        forged = ".".join([_b64({"alg": "none", "typ": "JWT"}), payload, ""])
        with pytest.raises(TokenInvalidError):
            tokens.verify_access_token(forged)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_malformed_tokens_rejected(self, tokens, garbage):
        with pytest.raises(TokenInvalidError):
            tokens.verify_access_token(garbage)

    def test_wrong_secret_rejected(self, clock, user):
        settings = get_settings().model_copy(update={"jwt_secret": "x" * 40})
        other = TokenService(settings, clock=clock)
        token = other.issue_pair(user, "sess-1").access_token
        with pytest.raises(TokenInvalidError):
            TokenService(get_settings(), clock=clock).verify_access_token(token)

    def test_wrong_audience_rejected(self, clock, user):
        settings = get_settings().model_copy(update={"jwt_audience": "someone-else"})
        token = TokenService(settings, clock=clock).issue_pair(user, "sess-1").access_token
        with pytest.raises(TokenInvalidError):
            TokenService(get_settings(), clock=clock).verify_access_token(token)

    def test_wrong_issuer_rejected(self, clock, user):
        settings = get_settings().model_copy(update={"jwt_issuer": "rogue"})
        token = TokenService(settings, clock=clock).issue_pair(user, "sess-1").access_token
        with pytest.raises(TokenInvalidError):
            TokenService(get_settings(), clock=clock).verify_access_token(token)

    def test_missing_claims_rejected(self):
        with pytest.raises(TokenInvalidError):
            TokenClaims.from_payload({"sub": "user-1"})


class TestExpiry:
    """Lifetime boundaries."""

    def test_valid_before_lifetime_elapses(self, tokens, clock, user):
        pair = tokens.issue_pair(user, "sess-1")
        clock.now += tokens.access_ttl - 1
        assert tokens.verify_access_token(pair.access_token).user_id == "user-1"

    def test_expired_after_lifetime(self, tokens, clock, user):
        pair = tokens.issue_pair(user, "sess-1")
        clock.now += tokens.access_ttl + 1
        with pytest.raises(TokenExpiredError):
            tokens.verify_access_token(pair.access_token)

    def test_leeway_extends_validity(self, clock, user):
        settings = get_settings().model_copy(update={"jwt_clock_skew_seconds": 30})
        tokens = TokenService(settings, clock=clock)
        pair = tokens.issue_pair(user, "sess-1")
        clock.now += tokens.access_ttl + 10
        assert tokens.verify_access_token(pair.access_token).session_id == "sess-1"


class TestHeaderExtraction:
    """Bearer header parsing."""

    def test_bearer_header(self):
        assert TokenService.extract_from_header("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "bearer abc", "Bearer ", "Token abc"])
    def test_other_headers_yield_none(self, header):
        assert TokenService.extract_from_header(header) is None

    def test_refresh_digest_is_stable(self):
        digest = TokenService.hash_refresh_token("token")
        assert digest == TokenService.hash_refresh_token("token")
        assert len(digest) == 64
        assert digest != "token"
