"""Tests for the compact token codec and the typed issuer/verifier."""

import base64
import json

import pytest

from klearkarma.service.tokens import (
    InvalidClaimsError,
    MalformedTokenError,
    SignatureInvalidError,
    TokenConfig,
    TokenError,
    TokenExpiredError,
    TokenKind,
    TokenNotYetValidError,
    TokenService,
    WrongTokenKindError,
    decode,
    encode,
    verify_signature,
)

SECRET = "unit-test-signing-secret"
T0 = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(clock):
    return TokenService(TokenConfig(secret=SECRET), clock=clock)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestCodec:
    """Encoding, unverified decoding and signature checks."""

    def test_roundtrip_preserves_header_and_payload(self):
        header = {"alg": "HS256", "typ": "JWT"}
        payload = {"sub": "u1", "n": 3, "nested": {"a": [1, 2]}}
        token = encode(header, payload, SECRET)

        decoded = decode(token)
        assert decoded.header == header
        assert decoded.payload == payload
        assert verify_signature(token, SECRET) is True

    def test_segments_have_no_padding(self):
        token = encode({"alg": "HS256"}, {"sub": "x"}, SECRET)
        assert token.count(".") == 2
        assert "=" not in token

    def test_wrong_secret_fails_signature(self):
        token = encode({"alg": "HS256"}, {"sub": "u1"}, SECRET)
        assert verify_signature(token, "other-secret") is False

    def test_tampered_payload_fails_signature(self):
        token = encode({"alg": "HS256"}, {"sub": "u1"}, SECRET)
        header, _, sig = token.split(".")
        forged = f"{header}.{_b64({'sub': 'admin'})}.{sig}"
        assert verify_signature(forged, SECRET) is False

    @pytest.mark.parametrize("bad", ["", "abc", "a.b", "a.b.c.d"])
    def test_wrong_segment_count_is_malformed(self, bad):
        with pytest.raises(MalformedTokenError):
            verify_signature(bad, SECRET)
        with pytest.raises(MalformedTokenError):
            decode(bad)

    def test_non_json_segment_is_malformed(self):
        junk = base64.urlsafe_b64encode(b"not json").decode().rstrip("=")
        with pytest.raises(MalformedTokenError):
            decode(f"{junk}.{junk}.sig")

    def test_decode_does_not_check_signature(self):
        token = encode({"alg": "HS256"}, {"sub": "u1"}, SECRET)
        header, payload, _ = token.split(".")
        assert decode(f"{header}.{payload}.garbage").payload == {"sub": "u1"}


class TestTokenConfig:
    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenConfig(secret="")

    def test_default_lifetimes(self):
        config = TokenConfig(secret=SECRET)
        assert config.ttl_seconds[TokenKind.ACCESS] == 24 * 60 * 60
        assert config.ttl_seconds[TokenKind.REFRESH] == 30 * 24 * 60 * 60
        assert config.ttl_seconds[TokenKind.PASSWORD_RESET] == 60 * 60
        assert config.ttl_seconds[TokenKind.EMAIL_VERIFICATION] == 24 * 60 * 60


class TestIssueAndVerify:
    """Issued tokens carry the registered claims and verify in order."""

    def test_issue_sets_registered_claims(self, tokens):
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1", "role": "user"})
        payload = tokens.verify(token, expected_kind=TokenKind.ACCESS)

        assert payload["sub"] == "u1"
        assert payload["kind"] == "access"
        assert payload["iat"] == T0
        assert payload["exp"] == T0 + 24 * 60 * 60
        assert payload["iss"] == "klear-karma-api"
        assert payload["aud"] == "klear-karma-app"
        assert payload["jti"]

    def test_each_token_gets_unique_jti(self, tokens):
        first = tokens.verify(tokens.issue(TokenKind.REFRESH, {"sub": "u1"}))
        second = tokens.verify(tokens.issue(TokenKind.REFRESH, {"sub": "u1"}))
        assert first["jti"] != second["jti"]

    def test_issue_requires_subject(self, tokens):
        with pytest.raises(ValueError):
            tokens.issue(TokenKind.ACCESS, {"role": "user"})

    def test_issue_rejects_claims_foreign_to_kind(self, tokens):
        with pytest.raises(ValueError):
            tokens.issue(TokenKind.REFRESH, {"sub": "u1", "role": "admin"})

    def test_valid_one_second_before_expiry(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1"}, ttl_seconds=100)
        clock.now = T0 + 99
        assert tokens.verify(token)["sub"] == "u1"

    def test_valid_exactly_at_expiry(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1"}, ttl_seconds=100)
        clock.now = T0 + 100
        assert tokens.verify(token)["sub"] == "u1"

    def test_expired_one_second_after(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1"}, ttl_seconds=100)
        clock.now = T0 + 101
        with pytest.raises(TokenExpiredError):
            tokens.verify(token)

    def test_future_iat_within_skew_accepted(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1"})
        clock.now = T0 - 60
        assert tokens.verify(token)["sub"] == "u1"

    def test_future_iat_beyond_skew_rejected(self, tokens, clock):
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1"})
        clock.now = T0 - 61
        with pytest.raises(TokenNotYetValidError):
            tokens.verify(token)

    def test_wrong_secret_rejected(self, tokens, clock):
        other = TokenService(TokenConfig(secret="different-secret"), clock=clock)
        token = other.issue(TokenKind.ACCESS, {"sub": "u1"})
        with pytest.raises(SignatureInvalidError):
            tokens.verify(token)

    def test_malformed_is_distinct_from_bad_signature(self, tokens):
        with pytest.raises(MalformedTokenError):
            tokens.verify("only.two")
        token = tokens.issue(TokenKind.ACCESS, {"sub": "u1"})
        with pytest.raises(SignatureInvalidError):
            tokens.verify(token[:-2] + ("AA" if not token.endswith("AA") else "BB"))

    def test_alg_none_rejected(self, tokens):
        payload = {
            "sub": "u1",
            "kind": "access",
            "iat": T0,
            "exp": T0 + 60,
            "iss": "klear-karma-api",
            "aud": "klear-karma-app",
        }
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        with pytest.raises(SignatureInvalidError):
            tokens.verify(token)

    def test_issuer_mismatch_rejected(self, clock):
        issuer = TokenService(TokenConfig(secret=SECRET, issuer="someone-else"), clock=clock)
        verifier = TokenService(TokenConfig(secret=SECRET), clock=clock)
        with pytest.raises(InvalidClaimsError):
            verifier.verify(issuer.issue(TokenKind.ACCESS, {"sub": "u1"}))

    def test_audience_mismatch_rejected(self, clock):
        issuer = TokenService(TokenConfig(secret=SECRET, audience="other-app"), clock=clock)
        verifier = TokenService(TokenConfig(secret=SECRET), clock=clock)
        with pytest.raises(InvalidClaimsError):
            verifier.verify(issuer.issue(TokenKind.ACCESS, {"sub": "u1"}))

    def test_non_numeric_exp_rejected(self, tokens):
        payload = {
            "sub": "u1",
            "kind": "access",
            "iat": T0,
            "exp": "tomorrow",
            "iss": "klear-karma-api",
            "aud": "klear-karma-app",
        }
        token = encode({"alg": "HS256", "typ": "JWT"}, payload, SECRET)
        with pytest.raises(InvalidClaimsError):
            tokens.verify(token)

    def test_missing_subject_rejected(self, tokens):
        payload = {
            "kind": "access",
            "iat": T0,
            "exp": T0 + 60,
            "iss": "klear-karma-api",
            "aud": "klear-karma-app",
        }
        token = encode({"alg": "HS256", "typ": "JWT"}, payload, SECRET)
        with pytest.raises(InvalidClaimsError):
            tokens.verify(token)


class TestTokenKinds:
    """A token of one kind is never accepted where another is expected."""

    def test_refresh_token_rejected_as_access(self, tokens):
        refresh = tokens.issue(TokenKind.REFRESH, {"sub": "u1"})
        with pytest.raises(WrongTokenKindError):
            tokens.verify(refresh, expected_kind=TokenKind.ACCESS)

    def test_password_reset_rejected_as_access(self, tokens):
        reset = tokens.issue_password_reset("u1")
        with pytest.raises(WrongTokenKindError):
            tokens.verify(reset, expected_kind=TokenKind.ACCESS)

    def test_token_without_kind_rejected_when_kind_expected(self, tokens):
        payload = {
            "sub": "u1",
            "iat": T0,
            "exp": T0 + 60,
            "iss": "klear-karma-api",
            "aud": "klear-karma-app",
        }
        token = encode({"alg": "HS256", "typ": "JWT"}, payload, SECRET)
        with pytest.raises(WrongTokenKindError):
            tokens.verify(token, expected_kind=TokenKind.ACCESS)

    def test_email_verification_carries_email(self, tokens):
        token = tokens.issue_email_verification("u1", "a@x.com")
        payload = tokens.verify(token, expected_kind=TokenKind.EMAIL_VERIFICATION)
        assert payload["email"] == "a@x.com"
        assert payload["exp"] - payload["iat"] == 24 * 60 * 60

    def test_password_reset_lifetime_is_one_hour(self, tokens):
        payload = tokens.verify(tokens.issue_password_reset("u1"))
        assert payload["exp"] - payload["iat"] == 60 * 60

    def test_every_failure_is_a_token_error(self, tokens):
        for bad in ("x", "a.b.c"):
            with pytest.raises(TokenError):
                tokens.verify(bad)
