import jwt
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import HTTPException, status
from otp_service.config import settings

PHONE_VERIFICATION_PURPOSE = "phone_verification"

def create_verification_token(phone_number: str, expires_minutes: Optional[int] = None) -> str:
    """
    Sign proof that phone_number passed OTP verification. Login, registration,
    password reset and phone linking flows accept it instead of the raw code.
    """
    minutes = expires_minutes if expires_minutes is not None else settings.VERIFICATION_TOKEN_EXPIRE_MINUTES
    payload = {
        "sub": phone_number,
        "purpose": PHONE_VERIFICATION_PURPOSE,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes)
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm="HS256")

def decode_verification_token(token: str) -> str:
    """Return the verified phone number carried by token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired verification token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=["HS256"])
    except jwt.PyJWTError:
        raise credentials_exception

    phone_number = payload.get("sub")
    if phone_number is None or payload.get("purpose") != PHONE_VERIFICATION_PURPOSE:
        raise credentials_exception
    return phone_number
