from datetime import timedelta

from conftest import PASSWORD, auth
from security import create_access_token


def test_login_returns_user_and_token(client, admin, db):
    res = client.post("/api/auth/login", json={"email": admin["email"], "password": PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["message"] == "Login successful"
    assert body["data"]["token"]
    assert body["data"]["user"]["email"] == admin["email"]
    assert "password" not in body["data"]["user"]
    assert db["user"].find_one({"_id": admin["_id"]})["lastLogin"] is not None


def test_login_rejects_wrong_password(client, admin):
    res = client.post("/api/auth/login", json={"email": admin["email"], "password": "Wrong123"})
    assert res.status_code == 401
    assert res.json() == {"success": False, "message": "Invalid credentials"}


def test_login_rejects_unknown_email(client):
    res = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
    assert res.status_code == 401


def test_deactivated_account_cannot_log_in(client, make_user):
    user = make_user("Teacher", isActive=False)
    res = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 401
    assert "deactivated" in res.json()["message"]


def test_me_requires_token(client):
    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert res.json()["message"] == "Access denied. No token provided."


def test_me_with_token(client, parent):
    res = client.get("/api/auth/me", headers=auth(parent))
    assert res.status_code == 200
    assert res.json()["data"]["user"]["role"] == "Parent"


def test_garbage_and_expired_tokens_rejected(client, admin):
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    expired = create_access_token(admin["_id"], expires_delta=timedelta(seconds=-1))
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 401


def test_register_is_admin_only(client, admin, teacher):
    payload = {"firstName": "Nina", "lastName": "Patel", "email": "Nina.Patel@example.com",
               "password": "Secret12", "role": "Teacher"}
    res = client.post("/api/auth/register", json=payload, headers=auth(teacher))
    assert res.status_code == 403

    res = client.post("/api/auth/register", json=payload, headers=auth(admin))
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["user"]["email"] == "nina.patel@example.com"
    assert "verificationToken" in data

    res = client.post("/api/auth/register", json=payload, headers=auth(admin))
    assert res.status_code == 400
    assert res.json()["message"] == "User already exists with this email"


def test_register_validates_password_strength(client, admin):
    payload = {"firstName": "Weak", "lastName": "Password", "email": "weak@example.com",
               "password": "alllowercase", "role": "Student"}
    res = client.post("/api/auth/register", json=payload, headers=auth(admin))
    assert res.status_code == 400
    body = res.json()
    assert body["message"] == "Validation failed"
    assert body["errors"][0]["field"] == "password"


def test_change_password(client, teacher):
    res = client.put("/api/auth/change-password", headers=auth(teacher),
                     json={"currentPassword": "Wrong123", "newPassword": "Newpass1"})
    assert res.status_code == 400
    assert res.json()["message"] == "Current password is incorrect"

    res = client.put("/api/auth/change-password", headers=auth(teacher),
                     json={"currentPassword": PASSWORD, "newPassword": "Newpass1"})
    assert res.status_code == 200
    res = client.post("/api/auth/login", json={"email": teacher["email"], "password": "Newpass1"})
    assert res.status_code == 200


def test_forgot_and_reset_password(client, parent):
    res = client.post("/api/auth/forgot-password", json={"email": parent["email"]})
    assert res.status_code == 200
    token = res.json()["data"]["resetToken"]

    res = client.post(f"/api/auth/reset-password/{token}", json={"password": "Reset123"})
    assert res.status_code == 200
    assert res.json()["data"]["token"]

    res = client.post(f"/api/auth/reset-password/{token}", json={"password": "Reset123"})
    assert res.status_code == 400
    res = client.post("/api/auth/login", json={"email": parent["email"], "password": "Reset123"})
    assert res.status_code == 200


def test_forgot_password_does_not_reveal_unknown_email(client):
    res = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert res.status_code == 200
    assert "data" not in res.json()


def test_verify_email(client, admin, db):
    payload = {"firstName": "Vera", "lastName": "Lynn", "email": "vera@example.com",
               "password": "Secret12", "role": "Parent"}
    token = client.post("/api/auth/register", json=payload, headers=auth(admin)).json()["data"]["verificationToken"]
    res = client.get(f"/api/auth/verify-email/{token}")
    assert res.status_code == 200
    assert db["user"].find_one({"email": "vera@example.com"})["isEmailVerified"] is True
    assert client.get(f"/api/auth/verify-email/{token}").status_code == 400
