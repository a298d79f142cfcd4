"""Integration tests for role-gated routes and admin user management."""

import pytest
from fastapi.testclient import TestClient

from peaceverse import app as app_module
from peaceverse.service.runtime import get_runtime
from peaceverse.storage.models import Role

PASSWORD = "pw123456"
PHONE = "+15550001111"


def _client_for(email, role):
    runtime = get_runtime()
    user, _ = runtime.auth.provision_account(email, PHONE, PASSWORD, role)
    client = TestClient(app_module.app)
    response = client.post("/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    return client, user


@pytest.fixture
def admin():
    return _client_for("boss@x.com", Role.ADMIN)


@pytest.fixture
def editor():
    return _client_for("ed@x.com", Role.EDITOR)


@pytest.fixture
def member():
    return _client_for("member@x.com", Role.USER)


class TestRoleGate:
    """Tests for require_role on profile routes."""

    def test_profile_for_any_role(self, member):
        client, user = member
        response = client.get("/v1/profile")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == user.email
        assert data["role"] == "user"
        assert data["last_login"] is not None

    def test_editor_area(self, editor, member, admin):
        assert editor[0].get("/v1/profile/editor").status_code == 200
        assert admin[0].get("/v1/profile/editor").status_code == 200
        response = member[0].get("/v1/profile/editor")
        assert response.status_code == 403
        assert response.json()["error"]["details"]["kind"] == "insufficient_role"

    def test_admin_routes_closed_to_editors(self, editor):
        response = editor[0].get("/v1/admin/users")
        assert response.status_code == 403

    def test_anonymous_is_401_not_403(self):
        response = TestClient(app_module.app).get("/v1/admin/users")
        assert response.status_code == 401

    def test_deactivated_account_is_403(self, admin, member):
        client, user = member
        admin[0].patch(f"/v1/admin/users/{user.id}", json={"is_active": False})
        response = client.get("/v1/profile")
        assert response.status_code == 403
        assert response.json()["error"]["details"]["kind"] == "not_active"


class TestAdminUsers:
    """Tests for /v1/admin/users."""

    def test_list_and_search(self, admin, editor, member):
        client, _ = admin
        response = client.get("/v1/admin/users", params={"limit": 2})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"] == {"total": 3, "page": 1, "limit": 2, "total_pages": 2}
        assert len(data["items"]) == 2
        assert all("password_hash" not in item for item in data["items"])

        response = client.get("/v1/admin/users", params={"search": "editor"})
        emails = [item["email"] for item in response.json()["data"]["items"]]
        assert emails == ["ed@x.com"]

    def test_update_role(self, admin, member):
        client, _ = admin
        _, user = member
        response = client.patch(f"/v1/admin/users/{user.id}", json={"role": "editor"})
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "editor"
        assert get_runtime().store.get_user(user.id).role is Role.EDITOR

    def test_role_change_ends_sessions(self, admin, member):
        member_client, user = member
        admin[0].patch(f"/v1/admin/users/{user.id}", json={"role": "editor"})
        response = member_client.post("/v1/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["details"]["kind"] == "refresh_revoked"

    def test_admin_target_is_immutable(self, admin):
        client, boss = admin
        other_admin, _ = get_runtime().auth.provision_account(
            "boss2@x.com", PHONE, PASSWORD, Role.ADMIN
        )
        for target in (boss.id, other_admin.id):
            response = client.patch(f"/v1/admin/users/{target}", json={"role": "user"})
            assert response.status_code == 403
            assert response.json()["error"]["details"]["kind"] == "admin_immutable"
            response = client.patch(f"/v1/admin/users/{target}", json={"is_active": False})
            assert response.status_code == 403
            assert client.delete(f"/v1/admin/users/{target}").status_code == 403
            stored = get_runtime().store.get_user(target)
            assert stored.role is Role.ADMIN and stored.is_active

    def test_invalid_role_rejected(self, admin, member):
        _, user = member
        response = admin[0].patch(f"/v1/admin/users/{user.id}", json={"role": "owner"})
        assert response.status_code == 422

    def test_empty_patch_rejected(self, admin, member):
        _, user = member
        response = admin[0].patch(f"/v1/admin/users/{user.id}", json={})
        assert response.status_code == 400

    def test_unknown_user(self, admin):
        response = admin[0].patch("/v1/admin/users/missing", json={"role": "editor"})
        assert response.status_code == 404

    def test_delete_user(self, admin, member):
        member_client, user = member
        response = admin[0].delete(f"/v1/admin/users/{user.id}")
        assert response.status_code == 200
        assert get_runtime().store.get_user(user.id) is None
        assert member_client.get("/v1/profile").status_code == 401

    def test_batch_delete(self, admin, editor, member):
        client, boss = admin
        ids = [editor[1].id, member[1].id]

        response = client.post("/v1/admin/users/batch-delete", json={"ids": ids + [boss.id]})
        assert response.status_code == 403
        assert response.json()["error"]["details"]["admin_ids"] == [boss.id]
        assert get_runtime().store.get_user(editor[1].id) is not None

        response = client.post("/v1/admin/users/batch-delete", json={"ids": ids})
        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": 2}

    def test_batch_delete_requires_ids(self, admin):
        response = admin[0].post("/v1/admin/users/batch-delete", json={"ids": []})
        assert response.status_code == 422
