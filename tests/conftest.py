import asyncio
import os
import re
from datetime import datetime, timedelta

# Must be set before otp_service.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-otp-service-tests")
os.environ.setdefault("SMS_PROVIDER", "console")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from otp_service.config import OtpPolicy
from otp_service.database import Base
from otp_service.models import otp as otp_models  # noqa: F401
from otp_service.services.cleanup_service import CleanupService
from otp_service.services.otp_service import OtpService
from otp_service.utils.sms_gateway import SmsGateway

PHONE = "+15551234567"


class FrozenClock:
    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingSmsGateway(SmsGateway):
    """Keeps every message instead of sending it"""

    def __init__(self, result: bool = True, error: Exception = None, delay: float = 0):
        self.result = result
        self.error = error
        self.delay = delay
        self.sent = []

    async def send(self, phone_number: str, message: str) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append((phone_number, message))
        return self.result

    def last_code(self) -> str:
        return re.search(r"code is: (\d+)", self.sent[-1][1]).group(1)


def wrong_code_for(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
async def engine(tmp_path):
    # A file database so concurrent sessions get their own connections
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sms_gateway():
    return RecordingSmsGateway()


@pytest.fixture
def policy():
    return OtpPolicy()


@pytest.fixture
def otp_service(db, sms_gateway, policy, clock):
    return OtpService(db, sms_gateway=sms_gateway, policy=policy, clock=clock)


@pytest.fixture
def cleanup_service(db, policy, clock):
    return CleanupService(db, policy=policy, clock=clock)
