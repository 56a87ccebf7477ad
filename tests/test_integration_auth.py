"""HTTP-level tests for the auth endpoints."""

import pytest
from fastapi.testclient import TestClient

from idprovider import app as app_module
from idprovider.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def signed_up(client):
    response = client.post(
        "/api/auth/signup",
        json={
            "username": "alice",
            "email": "Alice@Acme.test",
            "password": "correct-horse-battery",
            "tenant_name": "Acme Corp",
            "first_name": "Alice",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestSignup:
    def test_signup_returns_tokens_for_new_tenant(self, signed_up):
        assert signed_up["tenant_id"] == "acme-corp"
        assert signed_up["roles"] == ["ADMIN"]
        assert signed_up["token_type"] == "Bearer"
        assert signed_up["expires_in"] == 900

    def test_signup_duplicate_tenant(self, client, signed_up):
        response = client.post(
            "/api/auth/signup",
            json={
                "username": "bob",
                "email": "bob@acme.test",
                "password": "another-password",
                "tenant_name": "ACME corp",
            },
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_validates_password(self, client):
        response = client.post(
            "/api/auth/signup",
            json={
                "username": "bob",
                "email": "bob@acme.test",
                "password": "short",
                "tenant_name": "Bobs Shop",
            },
        )
        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_signup_can_be_disabled(self, client):
        get_runtime().auth.allow_signup = False
        response = client.post(
            "/api/auth/signup",
            json={
                "username": "bob",
                "email": "bob@acme.test",
                "password": "another-password",
                "tenant_name": "Bobs Shop",
            },
        )
        assert response.status_code == 403


class TestSignin:
    def test_signin_success(self, client, signed_up):
        response = client.post(
            "/api/auth/signin",
            json={"username": "alice", "password": "correct-horse-battery", "tenant_id": "acme-corp"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "alice"
        assert data["refresh_token"] != signed_up["refresh_token"]

    def test_failures_are_indistinguishable(self, client, signed_up):
        attempts = [
            {"username": "alice", "password": "wrong-password", "tenant_id": "acme-corp"},
            {"username": "nobody", "password": "correct-horse-battery", "tenant_id": "acme-corp"},
            {"username": "alice", "password": "correct-horse-battery", "tenant_id": "nowhere"},
        ]
        bodies = []
        for payload in attempts:
            response = client.post("/api/auth/signin", json=payload)
            assert response.status_code == 401
            body = response.json()
            body.pop("request_id")
            bodies.append(body)

        assert bodies[0] == bodies[1] == bodies[2]
        assert bodies[0]["error"] == {
            "code": "unauthorized",
            "message": "authentication failed",
            "details": None,
        }


class TestSession:
    def test_me_and_permissions(self, client, signed_up):
        response = client.get("/api/auth/me", headers=_auth(signed_up["access_token"]))
        assert response.status_code == 200
        me = response.json()["data"]
        assert me["email"] == "alice@acme.test"
        assert me["roles"] == ["ADMIN"]
        assert me["current_tenant_id"] == "acme-corp"
        assert "password_hash" not in me

        response = client.get(
            "/api/auth/me/permissions", headers=_auth(signed_up["access_token"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["tenant_id"] == "acme-corp"

    def test_missing_or_bad_token(self, client):
        assert client.get("/api/auth/me").status_code == 401
        response = client.get("/api/auth/me", headers=_auth("garbage"))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "authentication failed"

    def test_tenant_header_must_match_token(self, client, signed_up):
        headers = {**_auth(signed_up["access_token"]), "X-Tenant-ID": "globex"}
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_refresh_rotates_tokens(self, client, signed_up):
        response = client.post(
            "/api/auth/refresh/acme-corp",
            json={"refresh_token": signed_up["refresh_token"]},
        )
        assert response.status_code == 200
        rotated = response.json()["data"]

        reused = client.post(
            "/api/auth/refresh/acme-corp",
            json={"refresh_token": signed_up["refresh_token"]},
        )
        assert reused.status_code == 401
        assert rotated["refresh_token"] != signed_up["refresh_token"]

    def test_refresh_into_other_tenant_fails(self, client, signed_up):
        response = client.post(
            "/api/auth/refresh/globex",
            json={"refresh_token": signed_up["refresh_token"]},
        )
        assert response.status_code == 401

    def test_signout_blocks_access_and_refresh(self, client, signed_up):
        headers = _auth(signed_up["access_token"])
        response = client.post("/api/auth/signout", headers=headers)
        assert response.status_code == 200

        assert client.get("/api/auth/me", headers=headers).status_code == 401
        response = client.post(
            "/api/auth/refresh/acme-corp",
            json={"refresh_token": signed_up["refresh_token"]},
        )
        assert response.status_code == 401

    def test_user_tenants_and_switch(self, client, signed_up):
        runtime = get_runtime()
        runtime.tenants.create_tenant("Globex Inc", tenant_id="globex")
        runtime.roles.assign_roles_to_user(signed_up["user_id"], "globex", ["USER"])
        headers = _auth(signed_up["access_token"])

        response = client.get("/api/auth/user-tenants", headers=headers)
        assert [t["tenant_id"] for t in response.json()["data"]["items"]] == [
            "acme-corp",
            "globex",
        ]

        response = client.post(
            "/api/auth/switch-tenant", json={"tenant_id": "globex"}, headers=headers
        )
        assert response.status_code == 200
        switched = response.json()["data"]
        assert switched["tenant_id"] == "globex"
        assert switched["roles"] == ["USER"]

        response = client.get("/api/auth/me", headers=_auth(switched["access_token"]))
        assert response.json()["data"]["current_tenant_id"] == "globex"

    def test_switch_to_foreign_tenant_fails(self, client, signed_up):
        get_runtime().tenants.create_tenant("Globex Inc", tenant_id="globex")
        response = client.post(
            "/api/auth/switch-tenant",
            json={"tenant_id": "globex"},
            headers=_auth(signed_up["access_token"]),
        )
        assert response.status_code == 401


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["status"] == "healthy"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
