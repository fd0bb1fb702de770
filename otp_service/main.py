import logging
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_utils.tasks import repeat_every

from otp_service.config import settings
from otp_service.database import create_tables
from otp_service.jobs.cleanup import run_cleanup_once
from otp_service.logging_config import setup_logging
from otp_service.routers import otp
from otp_service.utils.exceptions import OtpStoreError

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="OTP Service API",
    description="API for phone OTP issuance, rate limiting and verification",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact domains
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(otp.router, prefix="/otp", tags=["otp"])

@app.exception_handler(OtpStoreError)
async def otp_store_error_handler(request: Request, exc: OtpStoreError):
    logger.error("OTP store failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable. Please retry."}
    )

@app.on_event("startup")
async def startup():
    await create_tables()

if settings.CLEANUP_INTERVAL_MINUTES > 0:
    @app.on_event("startup")
    @repeat_every(seconds=settings.CLEANUP_INTERVAL_MINUTES * 60, logger=logger)
    async def cleanup_expired_otps():
        await run_cleanup_once()

@app.get("/health")
def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("otp_service.main:app", host="0.0.0.0", port=8001, reload=True)
