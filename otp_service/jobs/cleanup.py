"""
One OTP cleanup sweep. Run from cron or any external scheduler:

    otp-cleanup
"""

import asyncio
import logging
import sys

from otp_service.database import async_session, engine
from otp_service.logging_config import setup_logging
from otp_service.schemas.otp import CleanupReport
from otp_service.services.cleanup_service import CleanupService
from otp_service.utils.exceptions import OtpStoreError

logger = logging.getLogger(__name__)

async def run_cleanup_once() -> CleanupReport:
    async with async_session() as session:
        return await CleanupService(session).run_cleanup()

async def _run_and_dispose() -> None:
    try:
        await run_cleanup_once()
    finally:
        await engine.dispose()

def main() -> None:
    setup_logging()
    try:
        asyncio.run(_run_and_dispose())
    except OtpStoreError:
        logger.exception("OTP cleanup failed")
        sys.exit(1)

if __name__ == "__main__":
    main()
