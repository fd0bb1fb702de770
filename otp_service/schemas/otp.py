import enum
from typing import Optional
from pydantic import BaseModel, constr, field_validator

from otp_service.utils.phone import normalize_phone_number

class OtpError(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    DELIVERY_FAILED = "delivery_failed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_CODE = "invalid_code"


class PhoneNumberMixin(BaseModel):
    phone_number: constr(min_length=8, max_length=25)  # type: ignore

    @field_validator("phone_number")
    @classmethod
    def normalize_phone(cls, value: str) -> str:
        normalized = normalize_phone_number(value)
        digits = len(normalized) - 1
        if digits < 8 or digits > 15:
            raise ValueError("Phone number must contain 8 to 15 digits")
        return normalized

class OtpSendRequest(PhoneNumberMixin):
    pass

class OtpVerify(PhoneNumberMixin):
    code: constr(pattern=r"^\d{4,8}$")  # type: ignore

class OtpResponse(BaseModel):
    success: bool
    message: str
    error: Optional[OtpError] = None
    expires_in: Optional[int] = None  # seconds until the sent code expires
    retry_after: Optional[int] = None  # seconds until requests are accepted again

class OtpVerifyResponse(BaseModel):
    verified: bool
    message: str
    error: Optional[OtpError] = None
    token: Optional[str] = None

class OtpStatusResponse(BaseModel):
    phone_number: str
    rate_limited: bool

class CleanupReport(BaseModel):
    deleted_requests: int = 0
    reset_rate_limits: int = 0
