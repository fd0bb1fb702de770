from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from otp_service.dependencies import get_otp_service
from otp_service.schemas.otp import (
    OtpError,
    OtpSendRequest,
    OtpVerify,
    OtpResponse,
    OtpVerifyResponse,
    OtpStatusResponse,
    PhoneNumberMixin,
)
from otp_service.services.otp_service import OtpService
from otp_service.utils.auth import create_verification_token

router = APIRouter()

_ERROR_STATUS = {
    OtpError.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    OtpError.DELIVERY_FAILED: status.HTTP_502_BAD_GATEWAY,
}

def _raise_for_error(error: OtpError, message: str, retry_after: Optional[int] = None):
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    raise HTTPException(
        status_code=_ERROR_STATUS.get(error, status.HTTP_400_BAD_REQUEST),
        detail={"error": error.value, "message": message},
        headers=headers
    )

async def _send(otp_request: OtpSendRequest, otp_service: OtpService) -> OtpResponse:
    result = await otp_service.request_code(otp_request.phone_number)
    if not result.success:
        _raise_for_error(result.error, result.message, result.retry_after)
    return result

@router.post("/send", response_model=OtpResponse)
async def send_otp(
    otp_request: OtpSendRequest,
    otp_service: OtpService = Depends(get_otp_service)
):
    """
    Send a verification code to the phone number
    """
    return await _send(otp_request, otp_service)

@router.post("/resend", response_model=OtpResponse)
async def resend_otp(
    otp_request: OtpSendRequest,
    otp_service: OtpService = Depends(get_otp_service)
):
    """
    Send a fresh code, replacing the pending one. Counts against the rate limit.
    """
    return await _send(otp_request, otp_service)

@router.post("/verify", response_model=OtpVerifyResponse)
async def verify_otp(
    verify_data: OtpVerify,
    otp_service: OtpService = Depends(get_otp_service)
):
    """
    Verify the code entered by the user and return a phone verification token
    """
    result = await otp_service.verify_code(verify_data.phone_number, verify_data.code)
    if not result.verified:
        _raise_for_error(result.error, result.message)

    result.token = create_verification_token(verify_data.phone_number)
    return result

@router.get("/status", response_model=OtpStatusResponse)
async def otp_status(
    phone_number: str = Query(..., min_length=8, max_length=25),
    otp_service: OtpService = Depends(get_otp_service)
):
    """
    Tell whether new codes can currently be requested for the phone number
    """
    try:
        normalized = PhoneNumberMixin(phone_number=phone_number).phone_number
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    return OtpStatusResponse(
        phone_number=normalized,
        rate_limited=await otp_service.is_rate_limited(normalized)
    )
