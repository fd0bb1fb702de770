import asyncio
import hmac
import logging
import math
import secrets
import string
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from otp_service.config import OtpPolicy, settings
from otp_service.models.otp import OtpRequest, OtpRateLimit
from otp_service.schemas.otp import OtpError, OtpResponse, OtpVerifyResponse
from otp_service.utils.clock import system_clock
from otp_service.utils.exceptions import OtpStoreError, SmsDeliveryError
from otp_service.utils.phone import mask_phone_number
from otp_service.utils.sms_gateway import SmsGateway, build_sms_gateway

logger = logging.getLogger(__name__)

# Raised when another transaction touched the same phone number's rows first
_WRITE_CONFLICTS = (StaleDataError, IntegrityError)


class OtpService:
    """
    Issues, throttles and verifies SMS one-time passcodes.

    Every mutation sequence commits as one transaction. Rows are versioned, so
    a transaction that lost a race against another request for the same phone
    number is rolled back and replayed from a fresh read.
    """

    def __init__(
        self,
        db: AsyncSession,
        sms_gateway: Optional[SmsGateway] = None,
        policy: Optional[OtpPolicy] = None,
        clock=None,
    ):
        self.db = db
        self.sms_gateway = sms_gateway or build_sms_gateway()
        self.policy = policy or OtpPolicy.from_settings()
        self.clock = clock or system_clock

    def _generate_otp(self) -> str:
        """Generate a random OTP code from a CSPRNG"""
        return ''.join(secrets.choice(string.digits) for _ in range(self.policy.code_length))

    def _render_message(self, otp_code: str) -> str:
        return (
            f"Your {settings.APP_NAME} verification code is: {otp_code}. "
            f"It expires in {self.policy.otp_ttl_minutes} minutes."
        )

    async def _run_with_retries(self, operation, *args):
        for attempt in range(1, self.policy.conflict_retries + 1):
            try:
                return await operation(*args)
            except _WRITE_CONFLICTS as e:
                await self.db.rollback()
                logger.info("Concurrent OTP update detected, retrying (attempt %s): %s", attempt, type(e).__name__)
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise OtpStoreError("OTP store is unavailable") from e
        raise OtpStoreError("OTP store kept conflicting with concurrent requests")

    async def _load_rate_limit(self, phone_number: str, lock: bool = False) -> Optional[OtpRateLimit]:
        query = select(OtpRateLimit).where(
            OtpRateLimit.phone_number == phone_number
        ).execution_options(populate_existing=True)
        if lock:
            query = query.with_for_update()

        result = await self.db.execute(query)
        return result.scalars().first()

    async def _issue_code(self, phone_number: str) -> Tuple[Optional[str], Optional[datetime]]:
        """
        Count the request against the phone's window and persist a new code.
        Returns (code, None) on success or (None, blocked_until) when throttled.
        """
        now = self.clock.now()
        window = self.policy.rate_limit_window

        rate_limit = await self._load_rate_limit(phone_number, lock=True)
        if rate_limit is None:
            rate_limit = OtpRateLimit(phone_number=phone_number, request_count=0, window_start=now)
            self.db.add(rate_limit)

        if rate_limit.blocked_until is not None and rate_limit.blocked_until > now:
            blocked_until = rate_limit.blocked_until
            await self.db.commit()
            return None, blocked_until

        # A lapsed block or an elapsed window starts a fresh window
        if rate_limit.blocked_until is not None or now - rate_limit.window_start > window:
            rate_limit.request_count = 0
            rate_limit.window_start = now
            rate_limit.blocked_until = None

        if rate_limit.request_count >= self.policy.rate_limit_max_requests:
            rate_limit.blocked_until = now + window
            blocked_until = rate_limit.blocked_until
            await self.db.commit()
            return None, blocked_until

        rate_limit.request_count += 1

        # Only the newest code stays eligible for verification
        pending = await self.db.execute(
            select(OtpRequest).where(
                OtpRequest.phone_number == phone_number,
                OtpRequest.is_used == False,  # noqa: E712
                OtpRequest.expires_at > now
            ).execution_options(populate_existing=True)
        )
        for previous in pending.scalars().all():
            previous.is_used = True

        otp_code = self._generate_otp()
        self.db.add(OtpRequest(
            phone_number=phone_number,
            code=otp_code,
            created_at=now,
            expires_at=now + self.policy.otp_ttl,
            is_used=False,
            attempt_count=0
        ))

        await self.db.commit()
        return otp_code, None

    async def request_code(self, phone_number: str) -> OtpResponse:
        """Throttle, generate, store and text a new code to phone_number"""
        otp_code, blocked_until = await self._run_with_retries(self._issue_code, phone_number)

        if otp_code is None:
            retry_after = max(0, math.ceil((blocked_until - self.clock.now()).total_seconds()))
            minutes = max(1, math.ceil(retry_after / 60))
            logger.warning("OTP requests for %s are blocked for %ss", mask_phone_number(phone_number), retry_after)
            return OtpResponse(
                success=False,
                message=f"Too many code requests. Please try again in {minutes} minute{'s' if minutes != 1 else ''}.",
                error=OtpError.RATE_LIMITED,
                retry_after=retry_after
            )

        try:
            delivered = await asyncio.wait_for(
                self.sms_gateway.send(phone_number, self._render_message(otp_code)),
                timeout=self.policy.sms_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error("SMS gateway timed out sending OTP to %s", mask_phone_number(phone_number))
            delivered = False
        except SmsDeliveryError as e:
            logger.error("SMS gateway failed sending OTP to %s: %s", mask_phone_number(phone_number), e)
            delivered = False

        if not delivered:
            return OtpResponse(
                success=False,
                message="Failed to send the verification code. Please try again.",
                error=OtpError.DELIVERY_FAILED
            )

        logger.info("OTP sent to %s", mask_phone_number(phone_number))
        return OtpResponse(
            success=True,
            message="Verification code sent.",
            expires_in=int(self.policy.otp_ttl.total_seconds())
        )

    async def _verify_once(self, phone_number: str, otp_code: str) -> OtpVerifyResponse:
        now = self.clock.now()

        # Find the latest unused OTP for this phone number
        query = select(OtpRequest).where(
            OtpRequest.phone_number == phone_number,
            OtpRequest.is_used == False  # noqa: E712
        ).order_by(OtpRequest.created_at.desc()).execution_options(populate_existing=True)

        result = await self.db.execute(query)
        otp = result.scalars().first()

        if otp is None:
            return OtpVerifyResponse(
                verified=False,
                message="No pending code for this phone number. Please request a new code.",
                error=OtpError.NOT_FOUND
            )

        if now > otp.expires_at:
            return OtpVerifyResponse(
                verified=False,
                message="This code has expired. Please request a new code.",
                error=OtpError.EXPIRED
            )

        # Exhausted codes are never compared again
        if otp.attempt_count >= self.policy.max_verify_attempts:
            return OtpVerifyResponse(
                verified=False,
                message="Too many incorrect attempts. Please request a new code.",
                error=OtpError.TOO_MANY_ATTEMPTS
            )

        if not hmac.compare_digest(otp_code.encode(), otp.code.encode()):
            otp.attempt_count += 1
            await self.db.commit()
            logger.info("Invalid OTP submitted for %s", mask_phone_number(phone_number))
            return OtpVerifyResponse(
                verified=False,
                message="Invalid code.",
                error=OtpError.INVALID_CODE
            )

        otp.is_used = True
        otp.verified_at = now
        await self.db.commit()

        logger.info("OTP verified for %s", mask_phone_number(phone_number))
        return OtpVerifyResponse(verified=True, message="Code verified successfully.")

    async def verify_code(self, phone_number: str, otp_code: str) -> OtpVerifyResponse:
        """Check a submitted code and consume it on success"""
        return await self._run_with_retries(self._verify_once, phone_number, otp_code)

    async def _check_rate_limit(self, phone_number: str) -> bool:
        now = self.clock.now()
        rate_limit = await self._load_rate_limit(phone_number)
        if rate_limit is None:
            return False
        if rate_limit.blocked_until is not None:
            return rate_limit.blocked_until > now
        if now - rate_limit.window_start > self.policy.rate_limit_window:
            return False
        return rate_limit.request_count >= self.policy.rate_limit_max_requests

    async def is_rate_limited(self, phone_number: str) -> bool:
        """Whether the next request for phone_number would be refused. Read only."""
        return await self._run_with_retries(self._check_rate_limit, phone_number)
