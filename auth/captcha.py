"""
auth/captcha.py -- Server-side captcha verification (reCAPTCHA siteverify).

verify() fails closed: an empty token, a missing secret, a transport error,
a non-2xx answer or a body that is not the expected JSON all mean "not
verified". Only an explicit success from the verification service passes.

exempt() is the other half of the captcha gate: identities with few recent
failures skip the widget entirely. The decision belongs to the RateLimiter;
this class only asks it.
"""

from __future__ import annotations

import logging

import requests

from auth.ratelimit import RateLimiter

logger = logging.getLogger("authgate.auth.captcha")

DEFAULT_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


def _new_session() -> requests.Session:
    # Bounded redirects for the verification endpoint.
    session = requests.Session()
    session.max_redirects = 3
    return session


class CaptchaVerifier:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        secret_key: str,
        site_key: str = "",
        verify_url: str = DEFAULT_VERIFY_URL,
        timeout: float = 5.0,
        min_score: float = 0.0,
        session: requests.Session | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.site_key = site_key
        self.verify_url = verify_url
        self.timeout = timeout
        self.min_score = min_score
        self._secret_key = secret_key
        self._session = session or _new_session()
        if not secret_key:
            logger.warning("Captcha secret key not configured -- every captcha check will fail")

    def exempt(self, identity: str) -> bool:
        """True while identity has too few recent failures to need a captcha."""
        return self.rate_limiter.allowed_without_captcha(identity)

    def verify(self, token: str | None, remote_ip: str | None = None) -> bool:
        """Ask the verification service whether token is a solved captcha."""
        if not token or not self._secret_key:
            return False
        data = {"secret": self._secret_key, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip
        try:
            resp = self._session.post(self.verify_url, data=data, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            logger.warning("Captcha verification request failed: %s", e)
            return False
        except ValueError:
            logger.warning("Captcha verification returned a non-JSON body")
            return False

        if not isinstance(body, dict) or body.get("success") is not True:
            logger.info("Captcha rejected: %s", body.get("error-codes") if isinstance(body, dict) else body)
            return False
        if self.min_score > 0:
            try:
                score = float(body.get("score", 0.0))
            except (TypeError, ValueError):
                return False
            if score < self.min_score:
                logger.info("Captcha score %.2f below threshold %.2f", score, self.min_score)
                return False
        return True
