"""Unit tests for the double-submit CSRF guard."""

import pytest
from starlette.datastructures import Headers

from sessionguard.core.csrf import CsrfError, CsrfGuard, generate_secret, is_well_formed, tokens_match


@pytest.fixture
def guard():
    return CsrfGuard(
        webhook_prefixes=["/api/v1/webhooks/"],
        exempt_paths=["/api/v1/auth/login", "/api/v1/auth/register", "/api/v1/auth/refresh"],
    )


def test_generated_secret_is_64_hex_chars():
    secret = generate_secret()
    assert len(secret) == 64
    assert is_well_formed(secret)
    assert generate_secret() != secret


@pytest.mark.parametrize("value", [None, "", "abc", "G" * 64, "A" * 64, "a" * 63, "a" * 65])
def test_malformed_secrets(value):
    assert not is_well_formed(value)


def test_tokens_match_is_length_safe():
    assert tokens_match("a" * 64, "a" * 64)
    assert not tokens_match("a" * 64, "a" * 10)


@pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
def test_safe_methods_skip_check(guard, method):
    assert not guard.requires_check(method, "/api/v1/auth/logout")


def test_state_changing_methods_require_check(guard):
    for method in ("POST", "PUT", "PATCH", "DELETE"):
        assert guard.requires_check(method, "/api/v1/auth/logout")


def test_webhooks_and_pre_auth_paths_exempt(guard):
    assert not guard.requires_check("POST", "/api/v1/webhooks/stripe")
    assert not guard.requires_check("POST", "/api/v1/auth/login")
    assert not guard.requires_check("POST", "/api/v1/auth/refresh")


def test_verify_accepts_matching_pair(guard):
    secret = generate_secret()
    guard.verify(secret, secret)


def test_verify_missing_cookie(guard):
    with pytest.raises(CsrfError) as exc:
        guard.verify(None, generate_secret())
    assert exc.value.status_code == 403
    assert exc.value.error == "CSRF token missing"


def test_verify_malformed_header(guard):
    with pytest.raises(CsrfError) as exc:
        guard.verify(generate_secret(), "not-hex")
    assert exc.value.error == "CSRF token missing"


def test_verify_mismatch(guard):
    with pytest.raises(CsrfError) as exc:
        guard.verify(generate_secret(), generate_secret())
    assert exc.value.error == "CSRF token invalid"


def test_header_value_prefers_canonical_and_accepts_legacy():
    assert CsrfGuard.header_value(Headers({"X-CSRF-Token": "one", "X-XSRF-Token": "two"})) == "one"
    assert CsrfGuard.header_value(Headers({"X-XSRF-Token": "two"})) == "two"
    assert CsrfGuard.header_value(Headers({})) is None


def test_verify_rejects_single_character_difference(guard):
    secret = generate_secret()
    for i in (0, 31, 63):
        flipped = secret[:i] + ("0" if secret[i] != "0" else "1") + secret[i + 1:]
        with pytest.raises(CsrfError) as exc:
            guard.verify(secret, flipped)
        assert exc.value.error == "CSRF token invalid"
