from __future__ import annotations

from typing import Optional

import httpx

from peaceverse.logging import get_logger

logger = get_logger(__name__)


class SmsService:
    """Sends one-time codes through a TextSMS-compatible HTTP endpoint.

    Delivery failures are logged and reported as ``False``; they never raise,
    so a flaky provider cannot abort a signup that has already been stored.
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        partner_id: Optional[str] = None,
        shortcode: str = "TextSMS",
        country: str = "KE",
        timeout_seconds: float = 10.0,
        otp_ttl_minutes: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.partner_id = partner_id
        self.shortcode = shortcode
        self.country = country
        self.timeout_seconds = timeout_seconds
        self.otp_ttl_minutes = otp_ttl_minutes
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key and self.partner_id)

    @staticmethod
    def _redact_number(phone_number: str) -> str:
        return f"***{phone_number[-3:]}" if len(phone_number) > 3 else "***"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
                transport=self._transport,
            )
        return self._client

    def _message(self, code: str) -> str:
        return (
            f"Your Peace-Verse OTP is: {code} "
            f"it expires in {self.otp_ttl_minutes} minutes"
        )

    async def send_otp(self, phone_number: str, code: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", recipient=self._redact_number(phone_number))
            return True

        payload = {
            "apikey": self.api_key,
            "partnerID": self.partner_id,
            "message": self._message(code),
            "shortcode": self.shortcode,
            "mobile": phone_number,
            "country": self.country,
            "route": "transactional",
            "encoding": "unicode",
        }
        try:
            client = await self._get_client()
            response = await client.post(self.api_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_api_error",
                recipient=self._redact_number(phone_number),
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException as e:
            logger.error(
                "sms_timeout",
                recipient=self._redact_number(phone_number),
                error=str(e),
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                recipient=self._redact_number(phone_number),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("sms_sent", recipient=self._redact_number(phone_number))
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
