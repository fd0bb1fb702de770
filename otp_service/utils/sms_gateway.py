import asyncio
import logging
from typing import Optional

import aiohttp

from otp_service.config import settings
from otp_service.utils.exceptions import SmsDeliveryError
from otp_service.utils.phone import mask_phone_number

logger = logging.getLogger(__name__)


class SmsGateway:
    """
    Delivers a fully rendered text message to a phone number.

    send() returns True when the provider accepted the message and False when
    it refused it. Transport problems (connection errors, timeouts, malformed
    responses) raise SmsDeliveryError.
    """

    async def send(self, phone_number: str, message: str) -> bool:
        raise NotImplementedError


class ConsoleSmsGateway(SmsGateway):
    """Development gateway, writes the message to the log instead of sending it"""

    async def send(self, phone_number: str, message: str) -> bool:
        logger.info("[CONSOLE SMS] to %s: %s", mask_phone_number(phone_number), message)
        return True


class TwilioSmsGateway(SmsGateway):
    """Client for the Twilio Messages REST API"""

    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.account_sid = account_sid if account_sid is not None else settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number if from_number is not None else settings.TWILIO_FROM_NUMBER
        self.timeout = aiohttp.ClientTimeout(
            total=timeout_seconds if timeout_seconds is not None else settings.SMS_TIMEOUT_SECONDS
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _auth_headers(self) -> dict:
        credentials = aiohttp.BasicAuth(self.account_sid, self.auth_token)
        return {"Authorization": credentials.encode()}

    async def send(self, phone_number: str, message: str) -> bool:
        if not self.is_configured:
            logger.error("Twilio credentials or sender number are not configured")
            return False

        url = f"{self.BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        payload = {
            "To": phone_number,
            "From": self.from_number,
            "Body": message,
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, data=payload, headers=self._auth_headers()) as response:
                    result = await response.json(content_type=None)
                    if response.status >= 400:
                        logger.error(
                            "Twilio refused SMS to %s: %s (code %s)",
                            mask_phone_number(phone_number),
                            result.get("message", "Unknown error"),
                            result.get("code"),
                        )
                        return False

                    logger.info("SMS sent to %s, sid %s", mask_phone_number(phone_number), result.get("sid"))
                    return True

        except asyncio.TimeoutError as e:
            raise SmsDeliveryError("Timed out talking to Twilio") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise SmsDeliveryError(f"Twilio request failed: {e}") from e


def build_sms_gateway(provider: Optional[str] = None) -> SmsGateway:
    """Pick the gateway named by SMS_PROVIDER"""
    provider = (provider or settings.SMS_PROVIDER).strip().lower()
    if provider == "twilio":
        return TwilioSmsGateway()
    if provider == "console":
        logger.warning("Console SMS gateway is active, codes are logged and never delivered")
        return ConsoleSmsGateway()
    raise ValueError(f"Unknown SMS provider: {provider}")
