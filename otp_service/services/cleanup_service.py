import logging
from typing import Optional
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from otp_service.config import OtpPolicy
from otp_service.models.otp import OtpRequest, OtpRateLimit
from otp_service.schemas.otp import CleanupReport
from otp_service.utils.clock import system_clock
from otp_service.utils.exceptions import OtpStoreError

logger = logging.getLogger(__name__)

class CleanupService:
    def __init__(self, db: AsyncSession, policy: Optional[OtpPolicy] = None, clock=None):
        self.db = db
        self.policy = policy or OtpPolicy.from_settings()
        self.clock = clock or system_clock

    async def cleanup_expired_otps(self) -> int:
        """Remove codes that expired before the retention window, used or not"""
        cutoff = self.clock.now() - self.policy.cleanup_retention
        query = delete(OtpRequest).where(
            OtpRequest.expires_at < cutoff
        ).execution_options(synchronize_session=False)

        result = await self.db.execute(query)
        return result.rowcount

    async def reset_rate_limits(self) -> int:
        """Open a fresh window for phones whose window has elapsed"""
        now = self.clock.now()
        cutoff = now - self.policy.rate_limit_window
        # Bumping the version makes in-flight requests on these rows retry
        query = update(OtpRateLimit).where(
            OtpRateLimit.window_start < cutoff
        ).values(
            request_count=0,
            window_start=now,
            blocked_until=None,
            version=OtpRateLimit.version + 1
        ).execution_options(synchronize_session=False)

        result = await self.db.execute(query)
        return result.rowcount

    async def run_cleanup(self) -> CleanupReport:
        try:
            report = CleanupReport(
                deleted_requests=await self.cleanup_expired_otps(),
                reset_rate_limits=await self.reset_rate_limits()
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise OtpStoreError("OTP cleanup failed") from e

        logger.info(
            "OTP cleanup removed %s expired codes and reset %s rate limits",
            report.deleted_requests,
            report.reset_rate_limits
        )
        return report
