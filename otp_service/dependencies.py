from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from otp_service.config import OtpPolicy
from otp_service.database import get_db
from otp_service.services.otp_service import OtpService
from otp_service.utils.clock import system_clock
from otp_service.utils.sms_gateway import SmsGateway, build_sms_gateway

_sms_gateway = None

async def get_sms_gateway() -> SmsGateway:
    global _sms_gateway
    if _sms_gateway is None:
        _sms_gateway = build_sms_gateway()
    return _sms_gateway

async def get_otp_policy() -> OtpPolicy:
    return OtpPolicy.from_settings()

async def get_clock():
    return system_clock

async def get_otp_service(
    db: AsyncSession = Depends(get_db),
    sms_gateway: SmsGateway = Depends(get_sms_gateway),
    policy: OtpPolicy = Depends(get_otp_policy),
    clock=Depends(get_clock)
) -> OtpService:
    return OtpService(db, sms_gateway=sms_gateway, policy=policy, clock=clock)
