import pytest
from httpx import ASGITransport, AsyncClient

from otp_service.database import get_db
from otp_service.dependencies import get_clock, get_otp_policy, get_otp_service, get_sms_gateway
from otp_service.main import app
from otp_service.utils.auth import decode_verification_token
from otp_service.utils.exceptions import OtpStoreError

from conftest import PHONE, RecordingSmsGateway, wrong_code_for


@pytest.fixture
async def client(session_factory, sms_gateway, policy, clock):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_sms_gateway():
        return sms_gateway

    async def override_get_otp_policy():
        return policy

    async def override_get_clock():
        return clock

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sms_gateway] = override_get_sms_gateway
    app.dependency_overrides[get_otp_policy] = override_get_otp_policy
    app.dependency_overrides[get_clock] = override_get_clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_send_normalizes_phone_number(client, sms_gateway):
    response = await client.post("/otp/send", json={"phone_number": "+1 (555) 123-4567"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["expires_in"] == 300
    assert sms_gateway.sent[0][0] == PHONE


async def test_verify_flow_returns_token(client, sms_gateway):
    await client.post("/otp/send", json={"phone_number": PHONE})
    code = sms_gateway.last_code()

    wrong = await client.post("/otp/verify", json={"phone_number": PHONE, "code": wrong_code_for(code)})
    assert wrong.status_code == 400
    assert wrong.json()["detail"]["error"] == "invalid_code"

    right = await client.post("/otp/verify", json={"phone_number": PHONE, "code": code})
    assert right.status_code == 200
    body = right.json()
    assert body["verified"] is True
    assert decode_verification_token(body["token"]) == PHONE

    replay = await client.post("/otp/verify", json={"phone_number": PHONE, "code": code})
    assert replay.status_code == 400
    assert replay.json()["detail"]["error"] == "not_found"


async def test_expired_code(client, sms_gateway, clock):
    await client.post("/otp/send", json={"phone_number": PHONE})
    clock.advance(minutes=6)

    response = await client.post("/otp/verify", json={"phone_number": PHONE, "code": sms_gateway.last_code()})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "expired"


async def test_rate_limited_send(client):
    for _ in range(5):
        assert (await client.post("/otp/send", json={"phone_number": PHONE})).status_code == 200

    response = await client.post("/otp/resend", json={"phone_number": PHONE})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "900"
    assert response.json()["detail"]["error"] == "rate_limited"

    status_response = await client.get("/otp/status", params={"phone_number": PHONE})
    assert status_response.json() == {"phone_number": PHONE, "rate_limited": True}


async def test_delivery_failure(client):
    async def failing_gateway():
        return RecordingSmsGateway(result=False)

    app.dependency_overrides[get_sms_gateway] = failing_gateway

    response = await client.post("/otp/send", json={"phone_number": PHONE})

    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "delivery_failed"
    assert "Retry-After" not in response.headers


@pytest.mark.parametrize("payload", [
    {"phone_number": PHONE, "code": "12ab56"},
    {"phone_number": PHONE, "code": "12"},
    {"phone_number": "12345", "code": "123456"},
    {"phone_number": "+1 555 123 4567 8901 2345", "code": "123456"},
])
async def test_verify_rejects_malformed_payloads(client, payload):
    response = await client.post("/otp/verify", json=payload)

    assert response.status_code == 422


async def test_status_for_unknown_phone(client):
    response = await client.get("/otp/status", params={"phone_number": "555-123-4567-0"})

    assert response.status_code == 200
    assert response.json() == {"phone_number": "+55512345670", "rate_limited": False}


async def test_store_failure_is_service_unavailable(client):
    class BrokenOtpService:
        async def request_code(self, phone_number):
            raise OtpStoreError("database unreachable")

    async def broken_service():
        return BrokenOtpService()

    app.dependency_overrides[get_otp_service] = broken_service

    response = await client.post("/otp/send", json={"phone_number": PHONE})

    assert response.status_code == 503
