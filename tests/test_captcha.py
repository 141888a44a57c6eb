"""
tests/test_captcha.py -- Unit tests for auth/captcha.py.

The verification endpoint is never contacted: a MagicMock stands in for the
requests.Session. Every failure mode must come back False (fail closed).
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from auth.captcha import CaptchaVerifier
from auth.ratelimit import LimitsCounterStore, RateLimiter


def _session(body=None, exc: Exception | None = None, status_exc: Exception | None = None) -> MagicMock:
    session = MagicMock()
    if exc is not None:
        session.post.side_effect = exc
        return session
    resp = MagicMock()
    if status_exc is not None:
        resp.raise_for_status.side_effect = status_exc
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    session.post.return_value = resp
    return session


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(LimitsCounterStore("memory://"), captcha_exempt_attempts=2)


def _verifier(limiter: RateLimiter, session: MagicMock, **kwargs) -> CaptchaVerifier:
    kwargs.setdefault("secret_key", "captcha-secret")
    return CaptchaVerifier(limiter, site_key="site", session=session, **kwargs)


class TestVerify:
    def test_success_passes(self, limiter: RateLimiter) -> None:
        session = _session({"success": True})
        assert _verifier(limiter, session).verify("tok", "203.0.113.7")
        _, kwargs = session.post.call_args
        assert kwargs["data"] == {"secret": "captcha-secret", "response": "tok", "remoteip": "203.0.113.7"}

    def test_rejection_fails(self, limiter: RateLimiter) -> None:
        session = _session({"success": False, "error-codes": ["invalid-input-response"]})
        assert not _verifier(limiter, session).verify("tok")

    @pytest.mark.parametrize("token", [None, ""])
    def test_empty_token_fails_without_request(self, limiter: RateLimiter, token) -> None:
        session = _session({"success": True})
        assert not _verifier(limiter, session).verify(token)
        session.post.assert_not_called()

    def test_missing_secret_fails_without_request(self, limiter: RateLimiter) -> None:
        session = _session({"success": True})
        assert not _verifier(limiter, session, secret_key="").verify("tok")
        session.post.assert_not_called()

    def test_transport_error_fails_closed(self, limiter: RateLimiter) -> None:
        session = _session(exc=requests.ConnectionError("unreachable"))
        assert not _verifier(limiter, session).verify("tok")

    def test_timeout_fails_closed(self, limiter: RateLimiter) -> None:
        session = _session(exc=requests.Timeout("slow"))
        assert not _verifier(limiter, session).verify("tok")

    def test_http_error_fails_closed(self, limiter: RateLimiter) -> None:
        session = _session({"success": True}, status_exc=requests.HTTPError("502"))
        assert not _verifier(limiter, session).verify("tok")

    def test_non_json_body_fails_closed(self, limiter: RateLimiter) -> None:
        session = _session(ValueError("no json"))
        assert not _verifier(limiter, session).verify("tok")

    @pytest.mark.parametrize("body", [[], "true", {"success": "true"}, {}])
    def test_unexpected_body_fails_closed(self, limiter: RateLimiter, body) -> None:
        assert not _verifier(limiter, _session(body)).verify("tok")

    def test_score_below_minimum_fails(self, limiter: RateLimiter) -> None:
        session = _session({"success": True, "score": 0.3})
        assert not _verifier(limiter, session, min_score=0.5).verify("tok")

    def test_score_above_minimum_passes(self, limiter: RateLimiter) -> None:
        session = _session({"success": True, "score": 0.9})
        assert _verifier(limiter, session, min_score=0.5).verify("tok")


class TestExempt:
    def test_exempt_follows_rate_limiter(self, limiter: RateLimiter) -> None:
        verifier = _verifier(limiter, _session({"success": True}))
        assert verifier.exempt("a@x.com")
        limiter.inc("a@x.com")
        limiter.inc("a@x.com")
        assert not verifier.exempt("a@x.com")
        limiter.forget("a@x.com")
        assert verifier.exempt("a@x.com")
