"""Unit tests for the access token issuer."""

import base64
import json

import pytest

from sessionguard.config import Settings
from sessionguard.service.errors import InvalidTokenError, TokenExpiredError
from sessionguard.service.tokens import TokenIssuer


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_pair_shape(self, issuer):
        pair = issuer.issue("acct-1")

        assert pair.access_token.count(".") == 2
        assert pair.refresh_token and "." not in pair.refresh_token
        assert pair.expires_in_ms == 15 * 60 * 1000
        assert pair.to_public() == {
            "accessToken": pair.access_token,
            "refreshToken": pair.refresh_token,
            "expiresIn": 15 * 60 * 1000,
        }

    def test_refresh_tokens_are_unique(self, issuer):
        assert issuer.new_refresh_token() != issuer.new_refresh_token()

    def test_verify_returns_subject(self, issuer):
        pair = issuer.issue("acct-1")
        assert issuer.verify_access(pair.access_token) == "acct-1"


class TestVerify:
    def test_expired_token_reports_expiry(self, issuer, clock):
        pair = issuer.issue("acct-1")
        clock.advance(minutes=15, seconds=1)

        with pytest.raises(TokenExpiredError) as exc_info:
            issuer.verify_access(pair.access_token)
        assert exc_info.value.error_code == "TOKEN_EXPIRED"
        assert exc_info.value.status_code == 401

    def test_token_valid_until_exp(self, issuer, clock):
        pair = issuer.issue("acct-1")
        clock.advance(minutes=15)
        assert issuer.verify_access(pair.access_token) == "acct-1"

    def test_tampered_signature_is_invalid(self, issuer):
        token = issuer.issue("acct-1").access_token
        header, payload, sig = token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        forged = _b64({**claims, "sub": "admin"})

        with pytest.raises(InvalidTokenError) as exc_info:
            issuer.verify_access(f"{header}.{forged}.{sig}")
        assert exc_info.value.error_code == "INVALID_TOKEN"

    def test_alg_none_is_rejected(self, issuer):
        token = issuer.issue("acct-1").access_token
        _, payload, _ = token.split(".")
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "ä.ö.ü"])
    def test_malformed_tokens_are_invalid(self, issuer, token):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(token)

    def test_other_secret_is_invalid(self, issuer, clock):
        other = TokenIssuer(
            Settings(jwt_secret="a-completely-different-secret-value-0123456789"), clock=clock
        )
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(other.issue("acct-1").access_token)

    def test_other_audience_is_invalid(self, settings, issuer, clock):
        foreign = TokenIssuer(
            settings.model_copy(update={"jwt_audience": "someone-else"}), clock=clock
        )
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(foreign.issue("acct-1").access_token)

    def test_expired_forgery_is_invalid_not_expired(self, issuer, clock):
        token = issuer.issue("acct-1").access_token
        clock.advance(hours=1)
        header, payload, sig = token.split(".")
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(f"{header}.{payload}.{sig[:-2]}xx")
