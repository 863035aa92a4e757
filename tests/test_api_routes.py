"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

Covers:
  - login -> /me -> refresh -> logout happy path over HTTP
  - identical 401 body for unknown user and wrong password
  - account status failures map to 403 with the reason code
  - bearer handling: missing, malformed, refresh token used as access token
  - introspection of active, revoked and garbage tokens
  - admin-only user management and its self-lockout guards
  - Cache-Control: no-store on token responses

All tests share the module-scoped api_client, so each test creates users
with names unique to that test.
"""

from __future__ import annotations

import uuid

API = "/api/v1/auth"


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _new_user(client, admin_token, password="secret123", roles=None) -> dict:
    name = f"user_{uuid.uuid4().hex[:10]}"
    body = {"username": name, "email": f"{name}@example.com", "password": password}
    if roles is not None:
        body["roles"] = roles
    resp = client.post(f"{API}/users", json=body, headers=_auth(admin_token))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _login(client, identifier, password="secret123"):
    return client.post(f"{API}/login", json={"identifier": identifier, "password": password})


# ---------------------------------------------------------------------------
# Login and session lifecycle
# ---------------------------------------------------------------------------


def test_login_me_refresh_logout(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)

    resp = _login(client, user["username"])
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    pair = resp.json()
    assert pair["token_type"] == "bearer"
    assert pair["expires_in"] > 0
    assert pair["refresh_expires_in"] > pair["expires_in"]

    me = client.get(f"{API}/me", headers=_auth(pair["access_token"]))
    assert me.status_code == 200
    assert me.json()["username"] == user["username"]
    assert me.json()["last_login_at"] is not None

    rotated = client.post(f"{API}/refresh", json={"refresh_token": pair["refresh_token"]})
    assert rotated.status_code == 200
    new_pair = rotated.json()
    reused = client.post(f"{API}/refresh", json={"refresh_token": pair["refresh_token"]})
    assert reused.status_code == 401

    out = client.post(
        f"{API}/logout",
        json={"refresh_token": new_pair["refresh_token"]},
        headers=_auth(new_pair["access_token"]),
    )
    assert out.status_code == 200
    assert client.get(f"{API}/me", headers=_auth(new_pair["access_token"])).status_code == 401
    assert client.post(f"{API}/refresh", json={"refresh_token": new_pair["refresh_token"]}).status_code == 401


def test_login_by_email(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    assert _login(client, user["email"].upper()).status_code == 200


def test_unknown_user_and_wrong_password_look_identical(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)

    unknown = _login(client, "nobody_here")
    wrong = _login(client, user["username"], "wrong-password")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()
    assert unknown.json()["error"]["message"] == "Invalid credentials."
    assert unknown.headers["www-authenticate"] == "Bearer"


def test_disabled_account_is_403(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    patch = client.patch(f"{API}/users/{user['id']}", json={"enabled": False}, headers=_auth(admin_token))
    assert patch.status_code == 200
    assert patch.json()["enabled"] is False

    resp = _login(client, user["username"])
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "account_disabled"


def test_locked_account_is_403(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    client.patch(f"{API}/users/{user['id']}", json={"account_non_locked": False}, headers=_auth(admin_token))
    resp = _login(client, user["username"])
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "account_locked"


def test_validation_error_does_not_echo_password(api_client):
    client, _, _ = api_client
    resp = client.post(f"{API}/login", json={"identifier": "", "password": "leaky-secret"})
    assert resp.status_code == 422
    assert "leaky-secret" not in resp.text


# ---------------------------------------------------------------------------
# Bearer handling
# ---------------------------------------------------------------------------


def test_me_requires_bearer(api_client):
    client, _, _ = api_client
    resp = client.get(f"{API}/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_garbage_bearer_is_invalid_token(api_client):
    client, _, _ = api_client
    resp = client.get(f"{API}/me", headers=_auth("not.a.token"))
    assert resp.status_code == 401
    assert resp.json()["error"] == {"code": "invalid_token", "message": "Invalid token."}


def test_refresh_token_cannot_be_used_as_bearer(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    pair = _login(client, user["username"]).json()
    resp = client.get(f"{API}/me", headers=_auth(pair["refresh_token"]))
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


def test_introspect_active_and_revoked(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token, roles=["user", "auditor"])
    pair = _login(client, user["username"]).json()

    active = client.post(f"{API}/introspect", json={"token": pair["access_token"]}).json()
    assert active["active"] is True
    assert active["sub"] == user["id"]
    assert active["roles"] == ["auditor", "user"]
    assert active["token_type"] == "access"
    assert active["remaining_seconds"] > 0

    client.post(f"{API}/logout", headers=_auth(pair["access_token"]))
    revoked = client.post(f"{API}/introspect", json={"token": pair["access_token"]}).json()
    assert revoked == {
        "active": False,
        "sub": None,
        "roles": None,
        "token_type": None,
        "exp": None,
        "remaining_seconds": None,
    }


def test_introspect_garbage(api_client):
    client, _, _ = api_client
    resp = client.post(f"{API}/introspect", json={"token": "garbage"})
    assert resp.status_code == 200
    assert resp.json()["active"] is False


# ---------------------------------------------------------------------------
# Registration and user management
# ---------------------------------------------------------------------------


def test_self_registration_gets_default_roles(api_client):
    client, _, _ = api_client
    name = f"self_{uuid.uuid4().hex[:10]}"
    resp = client.post(
        f"{API}/register",
        json={"username": name, "email": f"{name}@example.com", "password": "secret123"},
    )
    assert resp.status_code == 201
    assert resp.json()["roles"] == ["user"]
    assert "hashed_password" not in resp.json()


def test_registration_password_over_72_bytes_is_422(api_client):
    client, _, _ = api_client
    name = f"self_{uuid.uuid4().hex[:10]}"
    password = "\u00e9" * 40
    resp = client.post(
        f"{API}/register",
        json={"username": name, "email": f"{name}@example.com", "password": password},
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"
    assert password not in resp.text


def test_duplicate_registration_is_409(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    resp = client.post(
        f"{API}/register",
        json={"username": user["username"], "email": "fresh@example.com", "password": "secret123"},
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_user_management_requires_admin(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    pair = _login(client, user["username"]).json()
    resp = client.get(f"{API}/users", headers=_auth(pair["access_token"]))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_admin_lists_users(api_client):
    client, admin_token, _ = api_client
    resp = client.get(f"{API}/users", headers=_auth(admin_token))
    assert resp.status_code == 200
    assert "testadmin" in [u["username"] for u in resp.json()]


def test_grant_and_revoke_role(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)

    granted = client.post(f"{API}/users/{user['id']}/roles", json={"role": "auditor"}, headers=_auth(admin_token))
    assert granted.status_code == 200
    assert granted.json()["roles"] == ["auditor", "user"]

    removed = client.delete(f"{API}/users/{user['id']}/roles/auditor", headers=_auth(admin_token))
    assert removed.status_code == 204
    again = client.delete(f"{API}/users/{user['id']}/roles/auditor", headers=_auth(admin_token))
    assert again.status_code == 404


def test_grant_role_unknown_user_is_404(api_client):
    client, admin_token, _ = api_client
    resp = client.post(f"{API}/users/missing/roles", json={"role": "auditor"}, headers=_auth(admin_token))
    assert resp.status_code == 404


def test_admin_cannot_lock_out_self(api_client):
    client, admin_token, admin_id = api_client
    disable = client.patch(f"{API}/users/{admin_id}", json={"enabled": False}, headers=_auth(admin_token))
    assert disable.status_code == 400
    assert disable.json()["error"]["code"] == "self_deactivation"

    demote = client.delete(f"{API}/users/{admin_id}/roles/admin", headers=_auth(admin_token))
    assert demote.status_code == 400
    assert demote.json()["error"]["code"] == "self_demotion"


def test_empty_patch_is_400(api_client):
    client, admin_token, _ = api_client
    user = _new_user(client, admin_token)
    resp = client.patch(f"{API}/users/{user['id']}", json={}, headers=_auth(admin_token))
    assert resp.status_code == 400


def test_admin_create_carries_bucket_id(api_client):
    client, admin_token, _ = api_client
    name = f"user_{uuid.uuid4().hex[:10]}"
    body = {"username": name, "email": f"{name}@example.com", "password": "secret123", "bucket_id": "bucket-42"}
    resp = client.post(f"{API}/users", json=body, headers=_auth(admin_token))
    assert resp.status_code == 201, resp.text
    assert resp.json()["bucket_id"] == "bucket-42"
    assert _new_user(client, admin_token)["bucket_id"] is None
