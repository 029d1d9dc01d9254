import os
import sys

from fastapi import FastAPI
from fastapi.testclient import TestClient
import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from conftest import RecordingNotifier, make_session_factory, make_settings  # noqa: E402
from ledgerly.api import auth, deps, sessions, users  # noqa: E402
from ledgerly.api.errors import register_exception_handlers  # noqa: E402
from ledgerly.clock import FrozenClock  # noqa: E402
from ledgerly.models.auth import UserSession  # noqa: E402
from ledgerly.models.user import User, Wallet  # noqa: E402

PHONE = "+15551234567"


class Harness:
    def __init__(self, **setting_overrides):
        self.settings = make_settings(**setting_overrides)
        self.clock = FrozenClock()
        self.notifier = RecordingNotifier()
        self.session_factory = make_session_factory()

        app = FastAPI()
        register_exception_handlers(app)
        app.include_router(auth.router, prefix="/api")
        app.include_router(sessions.router, prefix="/api")
        app.include_router(users.router, prefix="/api")

        def override_get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[deps.get_db] = override_get_db
        app.dependency_overrides[deps.get_settings] = lambda: self.settings
        app.dependency_overrides[deps.get_clock] = lambda: self.clock
        app.dependency_overrides[deps.get_notifier] = lambda: self.notifier
        self.client = TestClient(app)

    def login(self, target: str = PHONE, channel: str = "PHONE", headers: dict | None = None):
        sent = self.client.post("/api/auth/otp/send", json={"channel": channel, "target": target})
        assert sent.status_code == 200
        response = self.client.post(
            "/api/auth/otp/verify",
            json={"channel": channel, "target": target, "code": self.notifier.last_code},
            headers=headers or {},
        )
        assert response.status_code == 200, response.text
        return response

    def refresh(self, refresh_token: str):
        return self.client.post("/api/session/refresh", headers={"X-Refresh-Token": refresh_token})

    def me(self, access_token: str):
        return self.client.get("/api/users/me", headers={"Authorization": f"Bearer {access_token}"})


def _set_cookies(response) -> dict[str, str]:
    cookies = {}
    for header in response.headers.get_list("set-cookie"):
        name, value = header.split(";", 1)[0].split("=", 1)
        cookies[name] = value.strip('"')
    return cookies


def _cookie_header(refresh_token: str, csrf_token: str) -> str:
    return f"refresh_token={refresh_token}; csrf_token={csrf_token}"


@pytest.fixture
def harness():
    return Harness()


def test_phone_login_rotation_and_reuse(harness):
    login = harness.login()
    data = login.json()
    assert data["success"] is True
    assert data["token_type"] == "bearer"
    first_refresh = data["refresh_token"]
    first_access = data["access_token"]

    me = harness.me(first_access)
    assert me.status_code == 200
    assert me.json()["phone_number"] == PHONE
    assert me.json()["is_verified"] is True

    db = harness.session_factory()
    try:
        user = db.query(User).filter(User.phone_number == PHONE).one()
        assert user.user_id.startswith("IND")
        assert db.query(Wallet).filter(Wallet.user_id == user.user_id).count() == 1
    finally:
        db.close()

    rotated = harness.refresh(first_refresh)
    assert rotated.status_code == 200
    second_refresh = rotated.json()["refresh_token"]
    second_access = rotated.json()["access_token"]
    assert second_refresh != first_refresh

    replay = harness.refresh(first_refresh)
    assert replay.status_code == 401
    assert replay.json() == {
        "success": False,
        "code": "TOKEN_REUSE_DETECTED",
        "message": "Suspicious activity detected. Sessions revoked. Please log in again.",
    }

    after_reuse = harness.refresh(second_refresh)
    assert after_reuse.status_code == 401
    assert after_reuse.json()["code"] == "INVALID_REFRESH_TOKEN"

    assert harness.me(second_access).status_code == 401


def test_second_login_reuses_account(harness):
    first = harness.login().json()
    second = harness.login().json()

    assert first["user_id"] == second["user_id"]
    assert first["session_id"] != second["session_id"]


def test_web_login_uses_cookies(harness):
    login = harness.login(headers={"X-Client": "web"})

    assert "refresh_token" not in login.json()
    headers = login.headers.get_list("set-cookie")
    refresh_header = next(h for h in headers if h.startswith("refresh_token="))
    csrf_header = next(h for h in headers if h.startswith("csrf_token="))
    assert "HttpOnly" in refresh_header
    assert "Secure" in refresh_header
    assert "samesite=lax" in refresh_header.lower()
    assert "Path=/api/session" in refresh_header
    assert "HttpOnly" not in csrf_header


def test_cookie_refresh_requires_matching_csrf_header(harness):
    cookies = _set_cookies(harness.login(headers={"X-Client": "web"}))
    cookie_header = _cookie_header(cookies["refresh_token"], cookies["csrf_token"])

    missing = harness.client.post("/api/session/refresh", headers={"Cookie": cookie_header})
    assert missing.status_code == 403
    assert missing.json()["code"] == "CSRF_MISMATCH"

    wrong = harness.client.post(
        "/api/session/refresh",
        headers={"Cookie": cookie_header, "X-CSRF-Token": "not-the-cookie"},
    )
    assert wrong.status_code == 403

    # The rejected attempts did not rotate anything.
    ok = harness.client.post(
        "/api/session/refresh",
        headers={"Cookie": cookie_header, "X-XSRF-Token": cookies["csrf_token"]},
    )
    assert ok.status_code == 200
    assert "refresh_token" not in ok.json()
    rotated = _set_cookies(ok)
    assert rotated["refresh_token"] != cookies["refresh_token"]
    assert rotated["csrf_token"] != cookies["csrf_token"]


def test_cookie_refresh_failure_clears_cookies(harness):
    csrf_token = "csrf-value"
    response = harness.client.post(
        "/api/session/refresh",
        headers={"Cookie": _cookie_header("x" * 43, csrf_token), "X-CSRF-Token": csrf_token},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_REFRESH_TOKEN"
    cleared = response.headers.get_list("set-cookie")
    assert any(h.startswith("refresh_token=") and "Max-Age=0" in h for h in cleared)
    assert any(h.startswith("csrf_token=") and "Max-Age=0" in h for h in cleared)


def test_refresh_without_token_is_rejected(harness):
    response = harness.client.post("/api/session/refresh")

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_REFRESH_TOKEN"


def test_body_refresh_token_disabled_by_default(harness):
    refresh_token = harness.login().json()["refresh_token"]

    response = harness.client.post("/api/session/refresh", json={"refresh_token": refresh_token})

    assert response.status_code == 401


def test_body_refresh_token_when_enabled():
    harness = Harness(allow_body_refresh_token=True)
    refresh_token = harness.login().json()["refresh_token"]

    response = harness.client.post("/api/session/refresh", json={"refresh_token": refresh_token})

    assert response.status_code == 200
    assert response.json()["refresh_token"] != refresh_token


def test_logout_is_idempotent(harness):
    data = harness.login().json()
    headers = {"X-Refresh-Token": data["refresh_token"]}

    first = harness.client.post("/api/session/logout", headers=headers)
    second = harness.client.post("/api/session/logout", headers=headers)
    anonymous = harness.client.post("/api/session/logout")

    assert first.status_code == 200
    assert first.json() == {"success": True, "message": "Logged out"}
    assert second.json() == {"success": True, "message": "No active session"}
    assert anonymous.status_code == 200
    assert harness.refresh(data["refresh_token"]).status_code == 401
    assert harness.me(data["access_token"]).status_code == 401


def test_cookie_logout_requires_csrf(harness):
    cookies = _set_cookies(harness.login(headers={"X-Client": "web"}))
    cookie_header = _cookie_header(cookies["refresh_token"], cookies["csrf_token"])

    rejected = harness.client.post("/api/session/logout", headers={"Cookie": cookie_header})
    assert rejected.status_code == 403

    accepted = harness.client.post(
        "/api/session/logout",
        headers={"Cookie": cookie_header, "X-CSRF-Token": cookies["csrf_token"]},
    )
    assert accepted.json()["message"] == "Logged out"


def test_list_and_revoke_sessions(harness):
    first = harness.login().json()
    harness.clock.advance(minutes=1)
    second = harness.login().json()
    auth_header = {"Authorization": f"Bearer {second['access_token']}"}

    listing = harness.client.get("/api/session", headers=auth_header)
    assert listing.status_code == 200
    listed = listing.json()["sessions"]
    assert [s["id"] for s in listed] == [second["session_id"], first["session_id"]]
    assert [s["current"] for s in listed] == [True, False]
    assert all("refresh_token_hash" not in s for s in listed)

    revoked = harness.client.delete(f"/api/session/{first['session_id']}", headers=auth_header)
    assert revoked.status_code == 200
    assert harness.me(first["access_token"]).status_code == 401

    remaining = harness.client.get("/api/session", headers=auth_header).json()["sessions"]
    assert [s["id"] for s in remaining] == [second["session_id"]]

    history = harness.client.get("/api/session?include_revoked=true", headers=auth_header).json()["sessions"]
    assert {s["revoke_reason"] for s in history if not s["active"]} == {"manual_revoke"}


def test_cannot_revoke_another_users_session(harness):
    mine = harness.login().json()
    theirs = harness.login(target="+15557654321").json()

    response = harness.client.delete(
        f"/api/session/{theirs['session_id']}",
        headers={"Authorization": f"Bearer {mine['access_token']}"},
    )

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
    assert harness.me(theirs["access_token"]).status_code == 200


def test_revoke_others_keeps_current_session(harness):
    first = harness.login().json()
    second = harness.login().json()
    current = harness.login().json()

    response = harness.client.post(
        "/api/session/revoke-others",
        headers={"Authorization": f"Bearer {current['access_token']}"},
    )

    assert response.status_code == 200
    assert response.json()["revoked"] == 2
    assert harness.me(current["access_token"]).status_code == 200
    assert harness.me(first["access_token"]).status_code == 401
    assert harness.refresh(second["refresh_token"]).status_code == 401

    db = harness.session_factory()
    try:
        active = db.query(UserSession).filter(UserSession.revoked_at.is_(None)).all()
        assert [s.id for s in active] == [current["session_id"]]
    finally:
        db.close()


def test_revoke_all_ends_every_session(harness):
    first = harness.login().json()
    current = harness.login().json()

    response = harness.client.post(
        "/api/session/revoke-all",
        headers={"Authorization": f"Bearer {current['access_token']}"},
    )

    assert response.json()["revoked"] == 2
    assert harness.me(current["access_token"]).status_code == 401
    assert harness.refresh(first["refresh_token"]).status_code == 401


def test_access_token_expires_with_clock(harness):
    access_token = harness.login().json()["access_token"]

    harness.clock.advance(minutes=16)

    response = harness.me(access_token)
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


def test_missing_bearer_token(harness):
    response = harness.client.get("/api/users/me")

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_validation_errors_use_envelope(harness):
    response = harness.client.post("/api/auth/otp/send", json={"channel": "PHONE"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "code": "INVALID_INPUT", "message": "Invalid request data"}

    bad_channel = harness.client.post("/api/auth/otp/send", json={"channel": "FAX", "target": PHONE})
    assert bad_channel.status_code == 400
    assert bad_channel.json()["code"] == "INVALID_INPUT"


def test_otp_send_hides_code_unless_exposed(harness):
    response = harness.client.post("/api/auth/otp/send", json={"channel": "PHONE", "target": PHONE})

    assert response.status_code == 200
    assert "otp" not in response.json()
    assert response.json()["challenge_id"]

    exposed = Harness(expose_otp_codes=True)
    response = exposed.client.post("/api/auth/otp/send", json={"channel": "PHONE", "target": PHONE})
    assert response.json()["otp"] == exposed.notifier.last_code


def test_wrong_codes_until_locked(harness):
    harness.client.post("/api/auth/otp/send", json={"channel": "PHONE", "target": PHONE})
    real = harness.notifier.last_code
    wrong = "000000" if real != "000000" else "111111"
    payload = {"channel": "PHONE", "target": PHONE, "code": wrong}

    codes = [harness.client.post("/api/auth/otp/verify", json=payload).json()["code"] for _ in range(5)]
    assert codes == ["INVALID_OTP"] * 4 + ["TOO_MANY_ATTEMPTS"]

    locked = harness.client.post("/api/auth/otp/verify", json={**payload, "code": real})
    assert locked.status_code == 400
    assert locked.json()["code"] == "OTP_NOT_FOUND_OR_EXPIRED"


def test_user_from_header_sets_id_prefix(harness):
    data = harness.login(headers={"X-User-From": "nri"}).json()

    assert data["user_id"].startswith("NRI")
