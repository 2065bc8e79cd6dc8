"""Integration tests for the authentication flow.

Tests the complete auth flow through the HTTP API:
- Registration and duplicate emails
- Login
- Token refresh with rotation
- Logout
- Email verification
- Password reset and change
- Access control on user profiles and admin routes
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from klearkarma import app as app_module
from klearkarma.service.runtime import get_runtime
from klearkarma.storage.models import Role

PASSWORD = "Aa1!aaaa"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="a@x.com", password=PASSWORD, role="user", full_name="Alice"):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "full_name": full_name, "role": role},
    )


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _staff(client, email: str, role: Role) -> dict:
    runtime = get_runtime()
    asyncio.run(
        runtime.auth.create_staff_user(
            email=email, password=PASSWORD, full_name="Staff", role=role
        )
    )
    response = client.post("/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]


class TestRegistration:
    """Tests for user registration."""

    def test_register_returns_token_pair(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["role"] == "user"
        assert data["verified"] is False
        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 24 * 60 * 60
        assert data["email_verification_token"]

    def test_duplicate_email_conflicts(self, client):
        assert _register(client).status_code == 201
        response = _register(client, email="A@X.com")

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert "already exists" in body["error"]["message"]

    def test_practitioner_can_register(self, client):
        response = _register(client, email="p@x.com", role="practitioner")
        assert response.status_code == 201
        assert response.json()["data"]["role"] == "practitioner"

    def test_staff_role_rejected(self, client):
        response = _register(client, role="admin")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    @pytest.mark.parametrize("password", ["short1!", "alllower1!", "ALLUPPER1!", "NoDigits!!", "NoSpecial11"])
    def test_weak_password_rejected(self, client, password):
        response = _register(client, password=password)
        assert response.status_code == 400

    def test_invalid_email_rejected(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400


class TestLoginAndSession:
    """Tests for login, /auth/me and token kinds."""

    def test_login_then_me(self, client):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": "a@x.com", "password": PASSWORD})
        assert response.status_code == 200
        tokens = response.json()["data"]

        me = client.get("/v1/auth/me", headers=_auth(tokens["access_token"]))
        assert me.status_code == 200
        data = me.json()["data"]
        assert data["email"] == "a@x.com"
        assert "password_hash" not in data

    def test_login_wrong_password(self, client):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": "a@x.com", "password": "Wrong1!x"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_without_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "authentication required"

    def test_refresh_token_rejected_on_protected_route(self, client):
        tokens = _register(client).json()["data"]
        response = client.get("/v1/auth/me", headers=_auth(tokens["refresh_token"]))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired token"

    def test_garbage_token_gets_same_message(self, client):
        response = client.get("/v1/auth/me", headers=_auth("not.a.token"))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired token"

    def test_cookie_authentication(self, client):
        tokens = _register(client).json()["data"]
        client.cookies.clear()
        response = client.get(
            "/v1/auth/me", headers={"Cookie": f"token={tokens['access_token']}"}
        )
        assert response.status_code == 200

    def test_deactivated_user_rejected(self, client):
        tokens = _register(client).json()["data"]
        admin = _staff(client, "admin@x.com", Role.ADMIN)

        response = client.post(
            f"/v1/admin/users/{tokens['user_id']}/active",
            json={"active": False},
            headers=_auth(admin["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["active"] is False

        me = client.get("/v1/auth/me", headers=_auth(tokens["access_token"]))
        assert me.status_code == 401
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401


class TestRefreshAndLogout:
    def test_refresh_rotates(self, client):
        first = _register(client).json()["data"]

        response = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert response.status_code == 200
        second = response.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401

        again = client.post("/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert again.status_code == 200

    def test_logout_revokes_refresh(self, client):
        tokens = _register(client).json()["data"]
        response = client.post("/v1/auth/logout", headers=_auth(tokens["access_token"]))
        assert response.status_code == 200

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401


class TestEmailVerification:
    def test_verify_email(self, client):
        data = _register(client).json()["data"]
        response = client.post(
            "/v1/auth/verify-email", json={"token": data["email_verification_token"]}
        )
        assert response.status_code == 200
        assert response.json()["data"]["verified"] is True

        again = client.post(
            "/v1/auth/verify-email", json={"token": data["email_verification_token"]}
        )
        assert again.status_code == 409

    def test_request_new_verification_token(self, client):
        data = _register(client).json()["data"]
        response = client.post(
            "/v1/auth/request-email-verification", headers=_auth(data["access_token"])
        )
        assert response.status_code == 200
        token = response.json()["data"]["email_verification_token"]
        verify = client.post("/v1/auth/verify-email", json={"token": token})
        assert verify.status_code == 200

    def test_access_token_is_not_a_verification_token(self, client):
        data = _register(client).json()["data"]
        response = client.post("/v1/auth/verify-email", json={"token": data["access_token"]})
        assert response.status_code == 401


class TestPasswordFlows:
    def test_forgot_password_does_not_enumerate(self, client):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "a@x.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "nobody@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == unknown.json()["data"]["message"]
        assert "reset_token" in known.json()["data"]
        assert "reset_token" not in unknown.json()["data"]

    def test_reset_password(self, client):
        tokens = _register(client).json()["data"]
        reset = client.post("/v1/auth/forgot-password", json={"email": "a@x.com"}).json()[
            "data"
        ]["reset_token"]

        response = client.post(
            "/v1/auth/reset-password", json={"token": reset, "new_password": "Nn3#nnnn"}
        )
        assert response.status_code == 200

        old = client.post("/v1/auth/login", json={"email": "a@x.com", "password": PASSWORD})
        assert old.status_code == 401
        new = client.post("/v1/auth/login", json={"email": "a@x.com", "password": "Nn3#nnnn"})
        assert new.status_code == 200

        reuse = client.post(
            "/v1/auth/reset-password", json={"token": reset, "new_password": "Zz9$zzzz"}
        )
        assert reuse.status_code == 401
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_change_password(self, client):
        tokens = _register(client).json()["data"]
        wrong = client.post(
            "/v1/auth/password/change",
            json={"current_password": "Wrong1!x", "new_password": "Nn3#nnnn"},
            headers=_auth(tokens["access_token"]),
        )
        assert wrong.status_code == 400

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "Nn3#nnnn"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["access_token"]


class TestProfilesAndAdmin:
    """Ownership and permission gates on user resources."""

    def test_update_own_profile(self, client):
        tokens = _register(client).json()["data"]
        response = client.patch(
            "/v1/users/me",
            json={"full_name": "Alice B", "bio": "Sound healer"},
            headers=_auth(tokens["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["full_name"] == "Alice B"

    def test_profile_update_rejects_role(self, client):
        tokens = _register(client).json()["data"]
        response = client.patch(
            "/v1/users/me", json={"role": "superadmin"}, headers=_auth(tokens["access_token"])
        )
        assert response.status_code == 400

    def test_user_profile_ownership(self, client):
        alice = _register(client).json()["data"]
        bob = _register(client, email="b@x.com", full_name="Bob").json()["data"]

        own = client.get(f"/v1/users/{alice['user_id']}", headers=_auth(alice["access_token"]))
        assert own.status_code == 200
        other = client.get(f"/v1/users/{alice['user_id']}", headers=_auth(bob["access_token"]))
        assert other.status_code == 403
        assert other.json()["error"]["code"] == "forbidden"

        support = _staff(client, "support@x.com", Role.SUPPORT)
        staff_view = client.get(
            f"/v1/users/{alice['user_id']}", headers=_auth(support["access_token"])
        )
        assert staff_view.status_code == 200

    def test_admin_list_requires_permission(self, client):
        alice = _register(client).json()["data"]
        denied = client.get("/v1/admin/users", headers=_auth(alice["access_token"]))
        assert denied.status_code == 403

        admin = _staff(client, "admin@x.com", Role.ADMIN)
        response = client.get(
            "/v1/admin/users", params={"role": "user"}, headers=_auth(admin["access_token"])
        )
        assert response.status_code == 200
        assert [u["id"] for u in response.json()["data"]["items"]] == [alice["user_id"]]

    def test_set_role_is_superadmin_only(self, client):
        alice = _register(client).json()["data"]
        admin = _staff(client, "admin@x.com", Role.ADMIN)
        denied = client.post(
            f"/v1/admin/users/{alice['user_id']}/role",
            json={"role": "moderator"},
            headers=_auth(admin["access_token"]),
        )
        assert denied.status_code == 403

        root = _staff(client, "root@x.com", Role.SUPERADMIN)
        response = client.post(
            f"/v1/admin/users/{alice['user_id']}/role",
            json={"role": "moderator"},
            headers=_auth(root["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "moderator"
        assert "content:moderate" in response.json()["data"]["permissions"]

    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Request-ID"]


class TestMalformedInput:
    """Refused profile and id values leave the account usable."""

    def test_null_full_name_rejected(self, client):
        tokens = _register(client).json()["data"]
        headers = _auth(tokens["access_token"])
        response = client.patch("/v1/users/me", json={"full_name": None}, headers=headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

        me = client.get("/v1/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["data"]["full_name"] == "Alice"

    def test_optional_profile_fields_can_be_cleared(self, client):
        tokens = _register(client).json()["data"]
        headers = _auth(tokens["access_token"])
        client.patch("/v1/users/me", json={"bio": "Sound healer"}, headers=headers)
        response = client.patch("/v1/users/me", json={"bio": None}, headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["bio"] is None
        assert client.get("/v1/auth/me", headers=headers).status_code == 200

    def test_blank_full_name_rejected(self, client):
        tokens = _register(client).json()["data"]
        headers = _auth(tokens["access_token"])
        response = client.patch("/v1/users/me", json={"full_name": ""}, headers=headers)
        assert response.status_code == 400
        assert client.get("/v1/auth/me", headers=headers).json()["data"]["full_name"] == "Alice"

    @pytest.mark.parametrize("user_id", ["a:b", "user:1", "x" * 65])
    def test_malformed_user_id(self, client, user_id):
        alice = _register(client).json()["data"]
        support = _staff(client, "support@x.com", Role.SUPPORT)
        response = client.get(
            f"/v1/users/{user_id}", headers=_auth(support["access_token"])
        )
        assert response.status_code == 400
        own = client.get(f"/v1/users/{alice['user_id']}", headers=_auth(alice["access_token"]))
        assert own.status_code == 200

    def test_malformed_admin_target(self, client):
        admin = _staff(client, "admin@x.com", Role.ADMIN)
        response = client.post(
            "/v1/admin/users/a:b/active",
            json={"active": False},
            headers=_auth(admin["access_token"]),
        )
        assert response.status_code == 400
