"""End-to-end authentication flows over HTTP against the in-memory runtime."""

import pytest
from fastapi.testclient import TestClient

from coursegate import app as app_module

PASSWORD = "CorrectHorse9!"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def outbox(runtime, monkeypatch):
    """Capture one-time tokens that would otherwise go out by email."""
    sent = {"verify": [], "reset": [], "linked": []}
    monkeypatch.setattr(
        runtime.email, "send_email_verification", lambda to, token: sent["verify"].append((to, token))
    )
    monkeypatch.setattr(
        runtime.email, "send_password_reset", lambda to, token: sent["reset"].append((to, token))
    )
    monkeypatch.setattr(
        runtime.email, "send_institution_linked", lambda to, org: sent["linked"].append((to, org))
    )
    return sent


def _login(client, email, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def test_register_verify_login_refresh_logout(client, outbox):
    resp = client.post(
        "/v1/auth/register",
        json={"email": "Priya@Example.com", "password": PASSWORD, "name": "Priya"},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["user"]["email"] == "priya@example.com"
    assert body["data"]["verification_required"] is True

    blocked = _login(client, "priya@example.com")
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "email_not_verified"

    assert [to for to, _ in outbox["verify"]] == ["priya@example.com"]
    token = outbox["verify"][0][1]
    verified = client.post("/v1/auth/verify-email", json={"token": token})
    assert verified.json()["data"] == {"status": "verified"}
    # single use
    assert client.post("/v1/auth/verify-email", json={"token": token}).status_code == 400

    login = _login(client, "priya@example.com")
    assert login.status_code == 200
    data = login.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["requires_institution_verification"] is False
    assert client.cookies.get("access_token")
    first_refresh = client.cookies.get("refresh_token")
    assert first_refresh == data["refresh_token"]

    me = client.get("/v1/me")
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "priya@example.com"

    rotated = client.post("/v1/auth/refresh")
    assert rotated.status_code == 200
    second_refresh = rotated.json()["data"]["refresh_token"]
    assert second_refresh != first_refresh
    assert client.cookies.get("refresh_token") == second_refresh

    out = client.post("/v1/auth/logout")
    assert out.json()["data"] == {"revoked": True}
    assert client.cookies.get("refresh_token") is None

    after = client.post("/v1/auth/refresh", json={"refresh_token": second_refresh})
    assert after.status_code == 401


def test_refresh_reuse_revokes_family_and_clears_cookies(client, make_user):
    make_user("ravi@example.com")
    original = _login(client, "ravi@example.com").json()["data"]["refresh_token"]

    rotated = client.post("/v1/auth/refresh", json={"refresh_token": original})
    assert rotated.status_code == 200
    current = rotated.json()["data"]["refresh_token"]

    replay = client.post("/v1/auth/refresh", json={"refresh_token": original})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "unauthorized"
    assert client.cookies.get("refresh_token") is None
    assert client.cookies.get("access_token") is None

    # the legitimately rotated token died with the family
    assert client.post("/v1/auth/refresh", json={"refresh_token": current}).status_code == 401


def test_login_hints_institution_verification(client, make_user, campus):
    make_user("ravi@ncu.edu")
    data = _login(client, "ravi@ncu.edu").json()["data"]
    assert data["requires_institution_verification"] is True
    assert data["organization_slug"] == "north-campus"


def test_login_failures_are_indistinguishable(client, make_user):
    make_user("ravi@example.com")
    wrong_password = _login(client, "ravi@example.com", "WrongHorse9!")
    unknown = _login(client, "nobody@example.com")
    assert wrong_password.status_code == unknown.status_code == 401
    assert wrong_password.json()["error"] == unknown.json()["error"]


def test_deactivated_account_cannot_log_in(client, make_user):
    make_user("gone@example.com", is_active=False)
    resp = _login(client, "gone@example.com")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "account_deactivated"


def test_duplicate_registration_conflicts(client, make_user, outbox):
    make_user("taken@example.com")
    resp = client.post(
        "/v1/auth/register", json={"email": "taken@example.com", "password": PASSWORD}
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_password_reset_revokes_sessions(client, make_user, outbox):
    make_user("meena@example.com")
    old_refresh = _login(client, "meena@example.com").json()["data"]["refresh_token"]

    for email in ("meena@example.com", "nobody@example.com"):
        resp = client.post("/v1/auth/reset/request", json={"email": email})
        assert resp.json()["data"] == {"status": "sent"}
    assert [to for to, _ in outbox["reset"]] == ["meena@example.com"]

    token = outbox["reset"][0][1]
    confirm = client.post(
        "/v1/auth/reset/confirm", json={"token": token, "new_password": "BatteryStaple7?"}
    )
    assert confirm.json()["data"] == {"status": "password_reset"}

    assert client.post("/v1/auth/refresh", json={"refresh_token": old_refresh}).status_code == 401
    assert _login(client, "meena@example.com").status_code == 401
    assert _login(client, "meena@example.com", "BatteryStaple7?").status_code == 200

    reused = client.post(
        "/v1/auth/reset/confirm", json={"token": token, "new_password": "Another12345!"}
    )
    assert reused.status_code == 400


def test_logout_all_revokes_every_device(client, make_user):
    make_user("ravi@example.com")
    laptop = _login(client, "ravi@example.com").json()["data"]
    phone = _login(client, "ravi@example.com").json()["data"]

    resp = client.post(
        "/v1/auth/logout-all", headers={"Authorization": f"Bearer {phone['access_token']}"}
    )
    assert resp.json()["data"] == {"revoked": 2}
    for session in (laptop, phone):
        stale = client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
        assert stale.status_code == 401


def test_me_requires_credentials(client):
    client.cookies.clear()
    resp = client.get("/v1/me")
    assert resp.status_code == 401
    garbage = client.get("/v1/me", headers={"Authorization": "Bearer not.a.jwt"})
    assert garbage.status_code == 401


def test_register_is_rate_limited_per_ip(client, runtime, outbox):
    limit = runtime.settings.register_rate_limit_per_minute
    for i in range(limit):
        resp = client.post(
            "/v1/auth/register", json={"email": f"user{i}@example.com", "password": PASSWORD}
        )
        assert resp.status_code == 201
        assert resp.headers["X-RateLimit-Limit"] == str(limit)
    blocked = client.post(
        "/v1/auth/register", json={"email": "late@example.com", "password": PASSWORD}
    )
    assert blocked.status_code == 429
    assert blocked.json()["error"]["code"] == "rate_limited"
