"""
Tests for authentication endpoints: registration, verification, login,
logout and password recovery.
"""

import re

import pytest
from httpx import AsyncClient

from conftest import PASSWORD


def token_from(mail: dict) -> str:
    return re.search(r"token=([A-Za-z0-9_\-]+)", mail["text"]).group(1)


REGISTRATION = {
    "email": "new@example.com",
    "password": PASSWORD,
    "confirm_password": PASSWORD,
    "first_name": "New",
    "last_name": "User",
}


@pytest.mark.asyncio
async def test_register_user(client: AsyncClient, outbox):
    """Successful registration returns user data and sends a verification email."""
    response = await client.post("/api/v1/auth/register", json=REGISTRATION)
    assert response.status_code == 201
    data = response.json()
    assert data["email"] == "new@example.com"
    assert data["email_verified"] is False
    assert "password_hash" not in data  # Never expose password hash
    assert outbox[0]["to"] == "new@example.com"


@pytest.mark.asyncio
async def test_register_duplicate_email(client: AsyncClient, test_user):
    """Duplicate email returns 409."""
    response = await client.post("/api/v1/auth/register", json={**REGISTRATION, "email": test_user.email})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_register_weak_password(client: AsyncClient):
    """Password policy violations return 400 with the failed rule."""
    response = await client.post(
        "/api/v1/auth/register",
        json={**REGISTRATION, "password": "Weak1!", "confirm_password": "Weak1!"},
    )
    assert response.status_code == 400
    assert response.json()["reason"] == "min_length"


@pytest.mark.asyncio
async def test_register_invalid_email(client: AsyncClient):
    response = await client.post("/api/v1/auth/register", json={**REGISTRATION, "email": "not-an-email"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_verify_then_login(client: AsyncClient, outbox):
    await client.post("/api/v1/auth/register", json=REGISTRATION)

    before = await client.post("/api/v1/auth/login", json={"email": "new@example.com", "password": PASSWORD})
    assert before.status_code == 401

    verified = await client.post("/api/v1/auth/verify-email", json={"token": token_from(outbox[0])})
    assert verified.status_code == 200

    after = await client.post("/api/v1/auth/login", json={"email": "new@example.com", "password": PASSWORD})
    assert after.status_code == 200
    assert after.json()["user"]["email_verified"] is True


@pytest.mark.asyncio
async def test_verify_with_bad_token(client: AsyncClient):
    response = await client.post("/api/v1/auth/verify-email", json={"token": "nope"})
    assert response.status_code == 400
    assert response.json()["reason"] == "invalid_token"


@pytest.mark.asyncio
async def test_login_success(client: AsyncClient, test_user):
    """Valid credentials return a bearer token."""
    response = await client.post("/api/v1/auth/login", json={
        "email": test_user.email,
        "password": PASSWORD,
    })
    assert response.status_code == 200
    data = response.json()
    assert "access_token" in data
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 3600
    assert data["user"]["id"] == test_user.id


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, test_user):
    """Wrong password returns 401."""
    response = await client.post("/api/v1/auth/login", json={
        "email": test_user.email,
        "password": "WrongPass123!",
    })
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_login_records_client(client: AsyncClient, test_user):
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": test_user.email, "password": PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1", "User-Agent": "TicketApp/2.0"},
    )
    token = response.json()["access_token"]

    session = await client.get("/api/v1/auth/session", headers={"Authorization": f"Bearer {token}"})
    assert session.status_code == 200
    assert session.json()["ip_address"] == "198.51.100.4"
    assert session.json()["device_info"] == "IP: 198.51.100.4, User-Agent: TicketApp/2.0"


@pytest.mark.asyncio
async def test_get_me(client: AsyncClient, auth_headers, test_user):
    """Authenticated user can fetch their profile."""
    response = await client.get("/api/v1/auth/me", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["email"] == test_user.email


@pytest.mark.asyncio
async def test_get_me_unauthorized(client: AsyncClient):
    """No token returns 401."""
    response = await client.get("/api/v1/auth/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_me_with_garbage_token(client: AsyncClient):
    response = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_logout_revokes_token(client: AsyncClient, auth_headers):
    response = await client.post("/api/v1/auth/logout", headers=auth_headers)
    assert response.status_code == 200

    assert (await client.get("/api/v1/auth/me", headers=auth_headers)).status_code == 401
    # Logging out again is harmless
    assert (await client.post("/api/v1/auth/logout", headers=auth_headers)).status_code == 200


@pytest.mark.asyncio
async def test_forgot_password_response_is_uniform(client: AsyncClient, test_user, outbox):
    known = await client.post("/api/v1/auth/forgot-password", json={"email": test_user.email})
    unknown = await client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert [mail["to"] for mail in outbox] == [test_user.email]


@pytest.mark.asyncio
async def test_forgot_password_rate_limit(client: AsyncClient, test_user):
    for _ in range(3):
        response = await client.post("/api/v1/auth/forgot-password", json={"email": test_user.email})
        assert response.status_code == 200

    response = await client.post("/api/v1/auth/forgot-password", json={"email": test_user.email})
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_reset_password_signs_out_sessions(client: AsyncClient, test_user, auth_headers, outbox):
    await client.post("/api/v1/auth/forgot-password", json={"email": test_user.email})
    new_password = "BrandNewPass456$"

    response = await client.post("/api/v1/auth/reset-password", json={
        "token": token_from(outbox[-1]),
        "new_password": new_password,
        "confirm_password": new_password,
    })
    assert response.status_code == 200

    assert (await client.get("/api/v1/auth/me", headers=auth_headers)).status_code == 401
    login = await client.post("/api/v1/auth/login", json={"email": test_user.email, "password": new_password})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
