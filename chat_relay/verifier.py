"""Cloudflare Turnstile siteverify client."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from .errors import InternalError
from .types import CaptchaResult

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class CaptchaVerifier(Protocol):
    async def verify(self, token: str, remote_ip: str) -> CaptchaResult: ...


class TurnstileVerifier:
    """Checks a client-supplied Turnstile token with one form POST."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        secret: str,
        verify_url: str = TURNSTILE_VERIFY_URL,
        timeout: float = 10.0,
    ) -> None:
        self.client = client
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout

    async def verify(self, token: str, remote_ip: str) -> CaptchaResult:
        form = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            resp = await self.client.post(self.verify_url, data=form, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise InternalError(f"captcha verification request failed: {e}") from e
        except ValueError as e:
            raise InternalError("captcha verification returned invalid JSON") from e

        if not isinstance(data, dict):
            raise InternalError("captcha verification returned a non-object")
        codes = data.get("error-codes") or []
        if not isinstance(codes, list):
            codes = [codes]
        result = CaptchaResult(
            success=bool(data.get("success", False)),
            error_codes=[str(c) for c in codes],
        )
        if not result.success:
            logger.info("Captcha rejected for %s: %s", remote_ip, result.error_codes)
        return result
