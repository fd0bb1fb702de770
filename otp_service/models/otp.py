import uuid
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Uuid
from otp_service.database import Base

class OtpRequest(Base):
    __tablename__ = "otp_requests"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number = Column(String(20), nullable=False, index=True)
    code = Column(String(10), nullable=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    is_used = Column(Boolean, nullable=False, default=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    verified_at = Column(DateTime, nullable=True)
    # Every UPDATE is guarded by the version it was read at
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<OtpRequest {self.id} used={self.is_used}>"


class OtpRateLimit(Base):
    __tablename__ = "otp_rate_limits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number = Column(String(20), unique=True, nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime, nullable=False)
    blocked_until = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<OtpRateLimit {self.phone_number} count={self.request_count}>"
