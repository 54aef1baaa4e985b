"""Unit tests for the token codec: round-trip, secret separation, header/claim checks, expiry, startup invariant."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from sessionguard.core.tokens import (
    AlgorithmMismatch,
    InsecureSecretError,
    InvalidSignature,
    IssuerMismatch,
    TokenCodec,
    TokenExpired,
    TokenMalformed,
    seconds_until_expiry,
)

ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "r" * 40


def _codec(**kwargs) -> TokenCodec:
    params = {"issuer": "sessionguard-api", "audience": "sessionguard-client"}
    params.update(kwargs)
    return TokenCodec(ACCESS_SECRET, REFRESH_SECRET, **params)


def test_access_token_roundtrip():
    codec = _codec()
    token = codec.issue_access_token(42, "u@example.com", "user")
    assert isinstance(token, str)
    claims = codec.verify_access(token)
    assert claims.subject_id == 42
    assert claims.email == "u@example.com"
    assert claims.role == "user"
    assert claims.expires_at - claims.issued_at == 15 * 60


def test_refresh_token_roundtrip():
    codec = _codec()
    claims = codec.verify_refresh(codec.issue_refresh_token(7))
    assert claims.subject_id == 7
    assert claims.expires_at - claims.issued_at == 7 * 24 * 60 * 60


def test_tokens_issued_in_same_second_differ():
    codec = _codec()
    now = datetime.now(timezone.utc)
    assert codec.issue_refresh_token(1, now=now) != codec.issue_refresh_token(1, now=now)


def test_access_token_rejected_as_refresh_and_vice_versa():
    codec = _codec()
    with pytest.raises(InvalidSignature):
        codec.verify_refresh(codec.issue_access_token(1, "a@b.com", "user"))
    with pytest.raises(InvalidSignature):
        codec.verify_access(codec.issue_refresh_token(1))


def test_tampered_signature_raises():
    codec = _codec()
    token = codec.issue_access_token(1, "a@b.com", "user")
    head, payload, sig = token.split(".")
    bad_sig = ("A" if sig[0] != "A" else "B") + sig[1:]
    with pytest.raises(TokenMalformed):
        codec.verify_access(f"{head}.{payload}.{bad_sig}")


def test_wrong_algorithm_header_rejected():
    codec = _codec()
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "sub": "1",
            "email": "a@b.com",
            "role": "user",
            "typ": "access",
            "iat": now,
            "exp": now + timedelta(minutes=5),
            "iss": "sessionguard-api",
            "aud": "sessionguard-client",
            "jti": "x",
        },
        ACCESS_SECRET,
        algorithm="HS512",
    )
    with pytest.raises(AlgorithmMismatch):
        codec.verify_access(token)


def test_issuer_and_audience_mismatch():
    token = _codec(issuer="someone-else").issue_access_token(1, "a@b.com", "user")
    with pytest.raises(IssuerMismatch):
        _codec().verify_access(token)
    token = _codec(audience="other-client").issue_access_token(1, "a@b.com", "user")
    with pytest.raises(IssuerMismatch):
        _codec().verify_access(token)


def test_expired_token_raises():
    codec = _codec()
    token = codec.issue_access_token(1, "a@b.com", "user", now=datetime.now(timezone.utc) - timedelta(hours=1))
    with pytest.raises(TokenExpired):
        codec.verify_access(token)


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_garbage_is_malformed(token):
    with pytest.raises(TokenMalformed):
        _codec().verify_access(token)


@pytest.mark.parametrize(
    "access,refresh",
    [
        ("", REFRESH_SECRET),
        (ACCESS_SECRET, ""),
        ("short", REFRESH_SECRET),
        (ACCESS_SECRET, ACCESS_SECRET),
    ],
)
def test_insecure_secrets_refused_at_construction(access, refresh):
    with pytest.raises(InsecureSecretError):
        TokenCodec(access, refresh, issuer="i", audience="a")


def test_seconds_until_expiry():
    codec = _codec()
    now = datetime.now(timezone.utc)
    claims = codec.verify_access(codec.issue_access_token(1, "a@b.com", "user", now=now))
    remaining = seconds_until_expiry(claims, now=now)
    assert 15 * 60 - 1 <= remaining <= 15 * 60
    assert seconds_until_expiry(claims, now=now + timedelta(minutes=20)) < 0


def test_app_refuses_to_start_with_shared_secret():
    from conftest import make_settings
    from sessionguard.main import create_app

    with pytest.raises(InsecureSecretError):
        create_app(make_settings(jwt_access_secret=ACCESS_SECRET, jwt_refresh_secret=ACCESS_SECRET, cache_enabled=False))
