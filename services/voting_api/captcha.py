"""reCAPTCHA verification client."""
import logging
from typing import Optional

import httpx

from .config import Settings
from .errors import InternalError

logger = logging.getLogger(__name__)


class CaptchaVerifier:
    """Async client for the captcha `siteverify` endpoint."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def initialize(self):
        """Open the HTTP client."""
        self.client = httpx.AsyncClient(
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            transport=self._transport
        )
        logger.info("Captcha verifier initialized")

    async def verify(self, secret: str, response: str, remote_ip: str) -> bool:
        """
        Verify a captcha token.

        Args:
            secret: Shared secret issued by the captcha provider
            response: Token submitted by the client
            remote_ip: Address of the voter

        Returns:
            True if the provider accepted the token, False otherwise

        Raises:
            InternalError: If the provider could not be reached or
                answered with a non-200 status
        """
        try:
            res = await self.client.post(
                self.settings.RECAPTCHA_VERIFY_URL,
                data={
                    "secret": secret,
                    "response": response,
                    "remoteip": remote_ip,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Captcha request failed: {e}")
            raise InternalError("Error validating captcha.") from e

        if res.status_code != 200:
            logger.error(f"Captcha service answered with status {res.status_code}")
            raise InternalError("Error validating captcha.")

        success = res.json().get("success") is True
        if not success:
            logger.warning(f"Captcha rejected for ip={remote_ip}")
        return success

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            logger.info("Captcha verifier closed")
