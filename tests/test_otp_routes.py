import re

import httpx
import pytest
import pytest_asyncio

from app.api.routers import otp as otp_router
from app.domain.otp import StorageError
from app.main import app
from app.services.otp_service import OtpService
from tests.conftest import CapturingNotifier, PASSWORD_RESET, SIGNUP

pytestmark = pytest.mark.asyncio


class FakeAccountVerifier:
    def __init__(self, found: bool = True, fail: bool = False):
        self.found = found
        self.fail = fail
        self.calls: list[str] = []

    async def __call__(self, user_id: str) -> bool:
        self.calls.append(user_id)
        if self.fail:
            raise StorageError("users collection unavailable")
        return self.found


@pytest.fixture
def accounts():
    return FakeAccountVerifier()


@pytest_asyncio.fixture
async def client(svc, notifier, accounts):
    app.dependency_overrides[otp_router.get_otp_service] = lambda: svc
    app.dependency_overrides[otp_router.get_notifier] = lambda: notifier
    app.dependency_overrides[otp_router.get_account_verifier] = lambda: accounts
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _sent_code(notifier: CapturingNotifier) -> str:
    return re.search(r"\b([0-9]{6})\b", notifier.sent[-1]["text"]).group(1)


async def test_send_otp_mails_code_and_never_returns_it(client, notifier, store):
    r = await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})

    assert r.status_code == 200
    assert r.json() == {"message": "OTP sent successfully"}
    code = _sent_code(notifier)
    assert code not in r.text
    assert notifier.sent[0]["to"] == "u1@example.com"
    assert store.only(code).owner_id == "u1"


async def test_send_otp_invalid_purpose_is_client_error(client, notifier):
    r = await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": "login"})
    assert r.status_code == 400
    assert notifier.sent == []


async def test_send_otp_missing_fields_is_client_error(client):
    r = await client.post("/send-otp", json={"email": "u1@example.com", "purpose": SIGNUP})
    assert r.status_code == 422

    r = await client.post("/send-otp", json={"email": "not-an-email", "user_id": "u1", "purpose": SIGNUP})
    assert r.status_code == 422


async def test_send_otp_storage_failure_is_server_error(client, store, notifier):
    store.fail_create = True
    r = await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    assert r.status_code == 500
    assert r.json()["detail"] == "Failed to generate OTP"
    assert notifier.sent == []


async def test_send_otp_dispatch_failure_keeps_code_valid(client, notifier, store):
    notifier.ok = False
    r = await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": PASSWORD_RESET})
    assert r.status_code == 500
    assert r.json()["detail"] == "Failed to send OTP email"

    code = _sent_code(notifier)
    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": PASSWORD_RESET})
    assert r.status_code == 200


async def test_verify_signup_marks_user_verified_once(client, notifier, accounts):
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    code = _sent_code(notifier)

    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    assert r.status_code == 200
    assert r.json() == {"message": "OTP verified successfully"}
    assert accounts.calls == ["u1"]

    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid or expired OTP"
    assert accounts.calls == ["u1"]


async def test_verify_other_purposes_leave_user_alone(client, notifier, accounts):
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": PASSWORD_RESET})
    code = _sent_code(notifier)

    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": PASSWORD_RESET})
    assert r.status_code == 200
    assert accounts.calls == []


async def test_verify_failures_are_indistinguishable(client, notifier, clock):
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    code = _sent_code(notifier)
    wrong = f"{(int(code) - 100000 + 1) % 900000 + 100000:06d}"

    bodies = []
    for payload in (
        {"user_id": "u1", "otp_code": wrong, "purpose": SIGNUP},
        {"user_id": "u2", "otp_code": code, "purpose": SIGNUP},
        {"user_id": "u1", "otp_code": code, "purpose": PASSWORD_RESET},
        {"user_id": "u1", "otp_code": code, "purpose": "nope"},
        {"user_id": "u1", "otp_code": "12", "purpose": SIGNUP},
    ):
        r = await client.post("/verify-otp", json=payload)
        bodies.append((r.status_code, r.json()))

    clock.advance(minutes=11)
    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    bodies.append((r.status_code, r.json()))

    assert all(b == (400, {"detail": "Invalid or expired OTP"}) for b in bodies)


async def test_verify_storage_failure_is_server_error(client, notifier, store, accounts):
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    code = _sent_code(notifier)
    store.fail_mark_used = True

    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    assert r.status_code == 500
    assert accounts.calls == []


async def test_user_update_failure_is_reported_distinctly(client, notifier, accounts):
    accounts.fail = True
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    code = _sent_code(notifier)

    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    assert r.status_code == 500
    assert r.json()["detail"] == "Failed to verify user"


async def test_unknown_user_on_signup_is_server_error(client, notifier, accounts):
    accounts.found = False
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    code = _sent_code(notifier)

    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    assert r.status_code == 500
    assert r.json()["detail"] == "User not found"


async def test_live_code_cap_maps_to_429(store, clock, notifier, accounts):
    capped = OtpService(store, clock=clock, max_active=1)
    app.dependency_overrides[otp_router.get_otp_service] = lambda: capped
    app.dependency_overrides[otp_router.get_notifier] = lambda: notifier
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            body = {"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP}
            assert (await c.post("/send-otp", json=body)).status_code == 200
            assert (await c.post("/send-otp", json=body)).status_code == 429
    finally:
        app.dependency_overrides.clear()


async def test_request_id_header_is_echoed(client):
    r = await client.get("/health/liveness", headers={"X-Request-ID": "abc123"})
    assert r.status_code == 200
    assert r.headers["X-Request-ID"] == "abc123"


@pytest.mark.parametrize("bad", ["", "1" * 100])
async def test_oversized_or_empty_code_gets_the_uniform_400(client, bad):
    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": bad, "purpose": SIGNUP})
    assert r.status_code == 400
    assert r.json() == {"detail": "Invalid or expired OTP"}


async def test_lookup_failure_gets_the_uniform_400(client, notifier, store, accounts, monkeypatch):
    await client.post("/send-otp", json={"email": "u1@example.com", "user_id": "u1", "purpose": SIGNUP})
    code = _sent_code(notifier)

    async def broken_lookup(**kw):
        raise StorageError("read failed")

    monkeypatch.setattr(store, "find_active", broken_lookup)
    r = await client.post("/verify-otp", json={"user_id": "u1", "otp_code": code, "purpose": SIGNUP})
    assert r.status_code == 400
    assert r.json() == {"detail": "Invalid or expired OTP"}
    assert accounts.calls == []
