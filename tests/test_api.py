from __future__ import annotations

import pytest

from accounts.api import routes

REGISTRATION = {
    "email": "test@example.com",
    "firstname": "John",
    "lastname": "Doe",
    "password": "test12345678",
    "conf_password": "test12345678",
    "company": "test company",
}


def _login(client, username="test@example.com", password="test12345678", path="/api/authenticate"):
    return client.post(path, json={"username": username, "password": password})


@pytest.fixture
def admin_token(api_client, account_factory):
    client, _ = api_client
    account_factory("root@example.com", password="rootpassword1", active=True, is_admin=True)
    response = _login(client, "root@example.com", "rootpassword1", path="/api/authenticate/admin")
    assert response.status_code == 200
    return response.json()["token"]


def test_register_activate_login_flow(api_client, mailer):
    client, _ = api_client

    response = client.post("/api/register", json=REGISTRATION)
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "User created!"
    assert body["user"]["active"] is False
    assert "password" not in body["user"]
    assert "tokens" not in body["user"]

    inactive = _login(client)
    assert inactive.status_code == 403
    assert "verified" in inactive.json()["message"]

    _, bearer = mailer.activations[0]
    activated = client.post("/api/activate", json={"token": bearer})
    assert activated.status_code == 200
    assert activated.json() == {"message": "User successfully activated"}

    login = _login(client)
    assert login.status_code == 200
    assert login.json()["token"]


def test_register_duplicate_email(api_client):
    client, _ = api_client
    assert client.post("/api/register", json=REGISTRATION).status_code == 200
    duplicate = client.post("/api/register", json=REGISTRATION)
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "A user with that email already exists"


@pytest.mark.parametrize("missing", ["email", "password", "firstname", "lastname"])
def test_register_missing_fields(api_client, missing):
    client, _ = api_client
    payload = {k: v for k, v in REGISTRATION.items() if k != missing}
    response = client.post("/api/register", json=payload)
    assert response.status_code == 400
    assert response.json()["message"]


def test_activate_rejects_bad_token(api_client):
    client, _ = api_client
    assert client.post("/api/activate", json={"token": "abc"}).status_code == 400
    missing = client.post("/api/activate", json={})
    assert missing.status_code == 400
    assert missing.json()["message"] == "No token has been passed"


def test_wrong_credentials(api_client):
    client, _ = api_client
    response = _login(client, "nobody@example.com", "whatever")
    assert response.status_code == 401
    assert response.json()["message"] == "Sorry. The details you entered are incorrect"


def test_password_forgot_and_reset(api_client, account_factory, mailer, repository):
    client, _ = api_client
    account = account_factory("test@example.com", password="test12345678", active=True)

    missing = client.post("/api/password/forgot", json={"email": "missing@example.com"})
    assert missing.status_code == 404

    sent = client.post("/api/password/forgot", json={"email": "test@example.com"})
    assert sent.status_code == 200
    assert sent.json() == {"message": "Reset password email sent"}

    _, bearer = mailer.resets[0]
    reset = client.post(
        "/api/password/reset",
        json={"token": bearer, "new_password": "brandnew1234", "conf_new_password": "brandnew1234"},
    )
    assert reset.status_code == 200
    assert repository.find_by_id(account.account_id).check_password("brandnew1234")
    assert _login(client, password="brandnew1234").status_code == 200


def test_authenticated_routes_require_token(api_client):
    client, _ = api_client
    assert client.get("/api/me").status_code == 403
    assert client.get("/api/me", headers={"Authorization": "garbage"}).status_code == 403
    assert client.get("/api/logout").status_code == 403


def test_token_transports_are_interchangeable(api_client, account_factory):
    client, _ = api_client
    account_factory("test@example.com", password="test12345678", active=True)
    token = _login(client).json()["token"]

    for kwargs in (
        {"headers": {"Authorization": token}},
        {"headers": {"Authorization": f"Bearer {token}"}},
        {"params": {"token": token}},
    ):
        response = client.get("/api/me", **kwargs)
        assert response.status_code == 200
        assert response.json()["email"] == "test@example.com"
        assert "last_login" not in response.json()
        assert "registration_date" not in response.json()

    body = client.post("/api/verifytoken", json={"token": token})
    assert body.status_code == 200
    assert body.json()["id"] == "test-at-example.com"
    assert client.get("/api/verifytoken").status_code == 404


def test_me_patch_and_password_update(api_client, account_factory, repository):
    client, _ = api_client
    account = account_factory("test@example.com", password="test12345678", active=True)
    headers = {"Authorization": _login(client).json()["token"]}

    patched = client.patch(
        "/api/me",
        json={"firstname": "Jack", "is_admin": True, "active": False, "user_settings": {"lang": "en"}},
        headers=headers,
    )
    assert patched.status_code == 200
    stored = repository.find_by_id(account.account_id)
    assert stored.firstname == "Jack"
    assert stored.is_admin is False
    assert stored.active is True
    assert stored.user_settings == {"lang": "en"}

    wrong = client.patch(
        "/api/me/updatepwd",
        json={"old_password": "nope", "password": "another123", "conf_password": "another123"},
        headers=headers,
    )
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "The current password is not correct"

    ok = client.patch(
        "/api/me/updatepwd",
        json={"old_password": "test12345678", "password": "another123", "conf_password": "another123"},
        headers=headers,
    )
    assert ok.status_code == 200
    assert repository.find_by_id(account.account_id).check_password("another123")


def test_users_endpoints_require_admin(api_client, account_factory):
    client, _ = api_client
    account_factory("test@example.com", password="test12345678", active=True)
    headers = {"Authorization": _login(client).json()["token"]}

    response = client.get("/api/users", headers=headers)
    assert response.status_code == 403
    assert _login(client, path="/api/authenticate/admin").status_code == 401


def test_admin_user_management(api_client, admin_token, account_factory):
    client, _ = api_client
    headers = {"Authorization": admin_token}
    for idx in range(24):
        account_factory(f"user{idx:02d}@example.com")

    listing = client.get("/api/users", params={"page": 2, "limit": 10}, headers=headers)
    assert listing.status_code == 200
    body = listing.json()
    assert len(body["list"]) == 10
    assert body["count"] == 25
    assert body["pages"] == 3
    assert body["page"] == 2

    created = client.post(
        "/api/users",
        json={
            "email": "new@example.com",
            "firstname": "New",
            "lastname": "User",
            "password": "newuserpass12",
            "conf_password": "newuserpass12",
            "active": True,
            "isAdmin": True,
        },
        headers=headers,
    )
    assert created.status_code == 200
    user_id = created.json()["id"]
    assert created.json()["is_admin"] is True

    patched = client.patch(f"/api/users/{user_id}", json={"lastname": "Changed"}, headers=headers)
    assert patched.status_code == 200
    assert client.get(f"/api/users/{user_id}", headers=headers).json()["lastname"] == "Changed"

    deleted = client.delete(f"/api/users/{user_id}", headers=headers)
    assert deleted.json() == {"message": "User deleted successfully"}
    assert client.get(f"/api/users/{user_id}", headers=headers).status_code == 404


def test_authenticate_rate_limited(api_client):
    client, _ = api_client
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    assert _login(client, "x@example.com", "a").status_code == 401
    assert _login(client, "x@example.com", "a").status_code == 401
    third = _login(client, "x@example.com", "a")
    assert third.status_code == 429
    assert third.json() == {"message": "Too many requests, please try again later"}


def test_activation_link_is_not_an_api_credential(api_client, mailer, repository):
    client, _ = api_client
    client.post("/api/register", json=REGISTRATION)
    _, bearer = mailer.activations[0]
    headers = {"Authorization": bearer}

    unactivated = client.patch("/api/me", json={"firstname": "Mallory"}, headers=headers)
    assert unactivated.status_code == 403
    assert unactivated.json()["message"] == "Failed to authenticate token"

    assert client.post("/api/activate", json={"token": bearer}).status_code == 200
    assert client.patch("/api/me", json={"firstname": "Mallory"}, headers=headers).status_code == 403
    assert client.post("/api/verifytoken", json={"token": bearer}).status_code == 400
    assert repository.find_one({"email": "test@example.com"}).firstname == "John"


def test_successful_login_clears_attempt_counter(api_client, account_factory):
    client, _ = api_client
    account_factory("test@example.com", password="test12345678", active=True)
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=2, window_seconds=60)

    assert _login(client, password="wrong").status_code == 401
    assert _login(client).status_code == 200
    assert _login(client, password="wrong").status_code == 401
    assert _login(client).status_code == 200


def test_listing_parameters_fall_back_and_errors_keep_envelope(api_client, admin_token, account_factory):
    client, _ = api_client
    headers = {"Authorization": admin_token}
    account_factory("a@example.com")

    defaulted = client.get("/api/users", params={"page": 0, "limit": 0}, headers=headers)
    assert defaulted.status_code == 200
    assert defaulted.json()["page"] == 1
    assert defaulted.json()["limit"] == 20

    capped = client.get("/api/users", params={"limit": 500}, headers=headers)
    assert capped.json()["limit"] == 100

    malformed = client.get("/api/users", params={"page": "abc"}, headers=headers)
    assert malformed.status_code == 400
    assert malformed.json()["message"] == "Invalid request"
    assert "detail" not in malformed.json()
