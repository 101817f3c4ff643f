"""
tests/test_api_admin.py -- Tenant / account administration and the policy endpoint.

Covers:
  - Tenant CRUD is admin-only; members see only their own tenant
  - Cross-tenant reads are the generic 403, never a revealing 404
  - Tenant deactivation: login refused, sessions suspended at next refresh
  - Account management under the role x tenant policy, escalation guards
  - Deactivation and session revocation take effect immediately
  - POST /authorize allow / deny
  - Store failures on admin routes are the 503 envelope
  - The configured password minimum applies to API-created accounts
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from api.models import AccountCreate
from core.config import get_settings
from conftest import PASSWORD

FORBIDDEN = {"error": {"code": "forbidden", "message": "Access denied."}}


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client, email: str) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TestTenants:
    def test_admin_creates_tenant_with_owner(self, api_client):
        resp = api_client.client.post(
            "/api/v1/tenants",
            json={
                "name": "  Umbrella  ",
                "contact_email": "Ops@Umbrella.test",
                "owner": {"email": "chief@umbrella.test", "display_name": "Chief", "password": PASSWORD},
            },
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 201
        tenant = resp.json()
        assert tenant["name"] == "Umbrella"
        assert tenant["status"] == "active"
        assert tenant["contact_email"] == "ops@umbrella.test"

        identity = _login(api_client.client, "chief@umbrella.test")["identity"]
        assert identity["role"] == "client_owner"
        assert identity["tenant_id"] == tenant["id"]

    def test_duplicate_owner_email_rolls_back_tenant(self, api_client):
        admin = api_client.headers("admin")
        before = len(api_client.client.get("/api/v1/tenants", headers=admin).json())
        resp = api_client.client.post(
            "/api/v1/tenants",
            json={
                "name": "Clash",
                "owner": {"email": api_client.seed.emails["alice"], "display_name": "Dup", "password": PASSWORD},
            },
            headers=admin,
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        assert len(api_client.client.get("/api/v1/tenants", headers=admin).json()) == before

    @pytest.mark.parametrize("name", ["owner", "alice"])
    def test_non_admin_cannot_create(self, api_client, name):
        resp = api_client.client.post("/api/v1/tenants", json={"name": "Nope"}, headers=api_client.headers(name))
        assert resp.status_code == 403
        assert resp.json() == FORBIDDEN

    def test_members_list_only_their_tenant(self, api_client):
        for name in ("owner", "alice"):
            tenants = api_client.client.get("/api/v1/tenants", headers=api_client.headers(name)).json()
            assert [t["id"] for t in tenants] == [api_client.seed.tenants["acme"]]

    def test_admin_lists_every_tenant(self, api_client):
        tenants = api_client.client.get("/api/v1/tenants", headers=api_client.headers("admin")).json()
        assert set(api_client.seed.tenants.values()) <= {t["id"] for t in tenants}

    def test_cross_tenant_read_is_forbidden(self, api_client):
        headers = api_client.headers("owner")
        other = api_client.client.get(f"/api/v1/tenants/{api_client.seed.tenants['globex']}", headers=headers)
        missing = api_client.client.get("/api/v1/tenants/does-not-exist", headers=headers)
        assert other.status_code == missing.status_code == 403
        assert other.json() == missing.json() == FORBIDDEN

    def test_own_tenant_read(self, api_client):
        resp = api_client.client.get(
            f"/api/v1/tenants/{api_client.seed.tenants['acme']}", headers=api_client.headers("alice")
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "Acme"

    def test_admin_gets_404_for_unknown_tenant(self, api_client):
        resp = api_client.client.get("/api/v1/tenants/does-not-exist", headers=api_client.headers("admin"))
        assert resp.status_code == 404

    def test_patch_requires_changes(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/tenants/{api_client.seed.tenants['acme']}", json={}, headers=api_client.headers("admin")
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_patch_unknown_tenant(self, api_client):
        resp = api_client.client.patch(
            "/api/v1/tenants/does-not-exist", json={"name": "X"}, headers=api_client.headers("admin")
        )
        assert resp.status_code == 404

    def test_deactivation_suspends_members(self, api_client):
        client = api_client.client
        admin = api_client.headers("admin")
        tenant = client.post(
            "/api/v1/tenants",
            json={
                "name": "Soylent",
                "owner": {"email": "boss@soylent.test", "display_name": "Boss", "password": PASSWORD},
            },
            headers=admin,
        ).json()
        session = _login(client, "boss@soylent.test")

        resp = client.patch(f"/api/v1/tenants/{tenant['id']}", json={"status": "inactive"}, headers=admin)
        assert resp.status_code == 200
        assert resp.json()["status"] == "inactive"

        # New logins are refused with the generic 401.
        assert client.post(
            "/api/v1/auth/login", json={"email": "boss@soylent.test", "password": PASSWORD}
        ).status_code == 401

        # The next refresh carries the suspension; tenant-scoped access is then denied.
        refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": session["refresh_token"]}).json()
        assert refreshed["identity"]["tenant_active"] is False
        denied = client.get(f"/api/v1/tenants/{tenant['id']}", headers=_bearer(refreshed["access_token"]))
        assert denied.status_code == 403

        # Reactivation restores access after the next refresh.
        client.patch(f"/api/v1/tenants/{tenant['id']}", json={"status": "active"}, headers=admin)
        again = client.post("/api/v1/auth/refresh", json={"refresh_token": refreshed["refresh_token"]}).json()
        assert again["identity"]["tenant_active"] is True
        assert client.get(f"/api/v1/tenants/{tenant['id']}", headers=_bearer(again["access_token"])).status_code == 200

    def test_delete_tenant_removes_accounts(self, api_client):
        client = api_client.client
        admin = api_client.headers("admin")
        tenant = client.post(
            "/api/v1/tenants",
            json={
                "name": "Tyrell",
                "owner": {"email": "eldon@tyrell.test", "display_name": "Eldon", "password": PASSWORD},
            },
            headers=admin,
        ).json()
        session = _login(client, "eldon@tyrell.test")

        resp = client.delete(f"/api/v1/tenants/{tenant['id']}", headers=admin)
        assert resp.status_code == 200
        assert resp.json() == {"id": tenant["id"], "deleted_accounts": 1}
        assert client.get("/api/v1/auth/me", headers=_bearer(session["access_token"])).status_code == 401
        assert client.delete(f"/api/v1/tenants/{tenant['id']}", headers=admin).status_code == 404


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def _new_account(email: str, **extra) -> dict:
    return {"email": email, "display_name": email.split("@")[0].title(), "password": PASSWORD, **extra}


class TestAccountCreate:
    def test_owner_adds_user_to_own_tenant(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts", json=_new_account("newbie@acme.test"), headers=api_client.headers("owner")
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["role"] == "user"
        assert data["tenant_id"] == api_client.seed.tenants["acme"]
        assert "hashed_password" not in data
        assert _login(api_client.client, "newbie@acme.test")["identity"]["role"] == "user"

    def test_owner_cannot_create_client_owner(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts",
            json=_new_account("deputy@acme.test", role="client_owner"),
            headers=api_client.headers("owner"),
        )
        assert resp.status_code == 403

    def test_owner_cannot_create_in_other_tenant(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts",
            json=_new_account("mole@globex.test", tenant_id=api_client.seed.tenants["globex"]),
            headers=api_client.headers("owner"),
        )
        assert resp.status_code == 403

    def test_user_cannot_create(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts", json=_new_account("friend@acme.test"), headers=api_client.headers("alice")
        )
        assert resp.status_code == 403

    def test_admin_must_name_tenant(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts", json=_new_account("floating@portal.test"), headers=api_client.headers("admin")
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "tenant_required"

    def test_admin_creates_client_owner(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts",
            json=_new_account("vp@globex.test", role="client_owner", tenant_id=api_client.seed.tenants["globex"]),
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 201
        assert resp.json()["role"] == "client_owner"

    def test_admin_role_cannot_be_created_over_http(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts",
            json=_new_account("root@portal.test", role="admin", tenant_id=api_client.seed.tenants["acme"]),
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 422

    def test_unknown_tenant(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts",
            json=_new_account("lost@portal.test", tenant_id="no-such-tenant"),
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 404

    def test_duplicate_email(self, api_client):
        resp = api_client.client.post(
            "/api/v1/accounts",
            json=_new_account(api_client.seed.emails["alice"].upper()),
            headers=api_client.headers("owner"),
        )
        assert resp.status_code == 409

    def test_weak_password(self, api_client):
        body = _new_account("weakling@acme.test")
        body["password"] = "password"
        resp = api_client.client.post("/api/v1/accounts", json=body, headers=api_client.headers("owner"))
        assert resp.status_code == 422
        assert "password" not in resp.json()["error"]["message"]


@pytest.fixture
def longer_passwords(monkeypatch):
    monkeypatch.setenv("PASSWORD_MIN_LENGTH", "20")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestConfiguredPasswordLength:
    def test_model_uses_configured_minimum(self, longer_passwords):
        with pytest.raises(ValidationError):
            AccountCreate(email="long.test", display_name="Long", password=PASSWORD)
        AccountCreate(email="long.test", display_name="Long", password="Correct-Horse-Battery-9!")

    def test_create_account_rejects_short_password(self, api_client, longer_passwords):
        resp = api_client.client.post(
            "/api/v1/accounts", json=_new_account("shorty@acme.test"), headers=api_client.headers("owner")
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["detail"] == "password"


class TestAccountRead:
    def test_user_sees_only_self(self, api_client):
        accounts = api_client.client.get("/api/v1/accounts", headers=api_client.headers("alice")).json()
        assert [a["id"] for a in accounts] == [api_client.seed.accounts["alice"]]

    def test_owner_sees_own_tenant(self, api_client):
        accounts = api_client.client.get("/api/v1/accounts", headers=api_client.headers("owner")).json()
        assert accounts
        assert {a["tenant_id"] for a in accounts} == {api_client.seed.tenants["acme"]}

    def test_owner_cannot_widen_scope(self, api_client):
        accounts = api_client.client.get(
            "/api/v1/accounts",
            params={"tenant_id": api_client.seed.tenants["globex"]},
            headers=api_client.headers("owner"),
        ).json()
        assert {a["tenant_id"] for a in accounts} == {api_client.seed.tenants["acme"]}

    def test_admin_filters_by_tenant(self, api_client):
        accounts = api_client.client.get(
            "/api/v1/accounts",
            params={"tenant_id": api_client.seed.tenants["globex"]},
            headers=api_client.headers("admin"),
        ).json()
        assert {a["tenant_id"] for a in accounts} == {api_client.seed.tenants["globex"]}

    def test_cross_tenant_and_unknown_ids_are_the_same_403(self, api_client):
        headers = api_client.headers("owner")
        other = api_client.client.get(f"/api/v1/accounts/{api_client.seed.accounts['gina']}", headers=headers)
        missing = api_client.client.get("/api/v1/accounts/does-not-exist", headers=headers)
        assert other.status_code == missing.status_code == 403
        assert other.json() == missing.json() == FORBIDDEN

    def test_user_cannot_read_teammate(self, api_client):
        resp = api_client.client.get(
            f"/api/v1/accounts/{api_client.seed.accounts['bob']}", headers=api_client.headers("alice")
        )
        assert resp.status_code == 403

    def test_admin_gets_404(self, api_client):
        resp = api_client.client.get("/api/v1/accounts/does-not-exist", headers=api_client.headers("admin"))
        assert resp.status_code == 404


class TestAccountUpdate:
    def test_user_renames_self(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['alice']}",
            json={"display_name": "Alice A."},
            headers=api_client.headers("alice"),
        )
        assert resp.status_code == 200
        assert resp.json()["display_name"] == "Alice A."

    def test_nobody_changes_own_role(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['alice']}",
            json={"role": "client_owner"},
            headers=api_client.headers("alice"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_role_change"

    def test_owner_cannot_promote(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['bob']}",
            json={"role": "client_owner"},
            headers=api_client.headers("owner"),
        )
        assert resp.status_code == 403

    def test_admin_promotion_applies_at_next_refresh(self, api_client):
        client = api_client.client
        session = _login(client, api_client.seed.emails["bob"])
        resp = client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['bob']}",
            json={"role": "client_owner"},
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "client_owner"

        assert client.get("/api/v1/auth/me", headers=_bearer(session["access_token"])).json()["role"] == "user"
        refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": session["refresh_token"]}).json()
        assert refreshed["identity"]["role"] == "client_owner"

    def test_admin_role_cannot_be_assigned(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['gina']}",
            json={"role": "admin"},
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 422

    def test_no_changes(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['gina']}",
            json={"role": "user"},
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_self_deactivation_is_refused(self, api_client):
        resp = api_client.client.patch(
            f"/api/v1/accounts/{api_client.seed.accounts['admin']}",
            json={"is_active": False},
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

    def test_deactivation_revokes_sessions_immediately(self, api_client):
        client = api_client.client
        created = client.post(
            "/api/v1/accounts", json=_new_account("temp@acme.test"), headers=api_client.headers("owner")
        ).json()
        session = _login(client, "temp@acme.test")

        resp = client.patch(
            f"/api/v1/accounts/{created['id']}", json={"is_active": False}, headers=api_client.headers("owner")
        )
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert client.get("/api/v1/auth/me", headers=_bearer(session["access_token"])).status_code == 401
        assert client.post(
            "/api/v1/auth/login", json={"email": "temp@acme.test", "password": PASSWORD}
        ).status_code == 401


class TestAccountDelete:
    def test_owner_deletes_user(self, api_client):
        client = api_client.client
        created = client.post(
            "/api/v1/accounts", json=_new_account("leaver@acme.test"), headers=api_client.headers("owner")
        ).json()
        session = _login(client, "leaver@acme.test")

        assert client.delete(f"/api/v1/accounts/{created['id']}", headers=api_client.headers("owner")).status_code == 204
        assert client.get("/api/v1/auth/me", headers=_bearer(session["access_token"])).status_code == 401
        assert client.get(f"/api/v1/accounts/{created['id']}", headers=api_client.headers("admin")).status_code == 404

    def test_self_deletion_is_refused(self, api_client):
        resp = api_client.client.delete(
            f"/api/v1/accounts/{api_client.seed.accounts['gowner']}", headers=api_client.headers("gowner")
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deletion"

    def test_owner_cannot_delete_peer_owner(self, api_client):
        resp = api_client.client.delete(
            f"/api/v1/accounts/{api_client.seed.accounts['owner']}", headers=api_client.headers("gowner")
        )
        assert resp.status_code == 403


def test_owner_revokes_member_sessions(api_client):
    client = api_client.client
    created = client.post(
        "/api/v1/accounts", json=_new_account("roamer@acme.test"), headers=api_client.headers("owner")
    ).json()
    session = _login(client, "roamer@acme.test")
    resp = client.post(f"/api/v1/accounts/{created['id']}/sessions/revoke", headers=api_client.headers("owner"))
    assert resp.status_code == 200
    assert client.get("/api/v1/auth/me", headers=_bearer(session["access_token"])).status_code == 401
    # The account itself stays usable.
    assert _login(client, "roamer@acme.test")


# ---------------------------------------------------------------------------
# POST /authorize
# ---------------------------------------------------------------------------


class TestAuthorizeEndpoint:
    def test_user_reads_tenant_wide_news(self, api_client):
        resp = api_client.client.post(
            "/api/v1/authorize",
            json={
                "action": "read",
                "resource": {"kind": "news", "tenant_id": api_client.seed.tenants["acme"], "tenant_wide": True},
            },
            headers=api_client.headers("alice"),
        )
        assert resp.status_code == 200
        assert resp.json() == {"allowed": True}

    def test_user_denied_message_for_someone_else(self, api_client):
        resp = api_client.client.post(
            "/api/v1/authorize",
            json={
                "action": "read",
                "resource": {
                    "kind": "message",
                    "tenant_id": api_client.seed.tenants["acme"],
                    "owner_id": api_client.seed.accounts["owner"],
                    "addressee_ids": [api_client.seed.accounts["bob"]],
                },
            },
            headers=api_client.headers("alice"),
        )
        assert resp.status_code == 403
        assert resp.json() == FORBIDDEN

    def test_admin_reaches_any_tenant(self, api_client):
        resp = api_client.client.post(
            "/api/v1/authorize",
            json={"action": "delete", "resource": {"kind": "file", "tenant_id": api_client.seed.tenants["globex"]}},
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 200

    def test_unknown_action_is_422(self, api_client):
        resp = api_client.client.post(
            "/api/v1/authorize",
            json={"action": "launch", "resource": {"kind": "file"}},
            headers=api_client.headers("admin"),
        )
        assert resp.status_code == 422

    def test_requires_authentication(self, api_client):
        resp = api_client.client.post(
            "/api/v1/authorize", json={"action": "read", "resource": {"kind": "file"}}
        )
        assert resp.status_code == 401


class TestStoreUnavailable:
    def test_account_read_is_503(self, api_client):
        headers = api_client.headers("admin")
        down = OperationalError("SELECT 1", {}, Exception("store down"))
        with patch.object(api_client.store, "get_account", side_effect=down):
            resp = api_client.client.get(f"/api/v1/accounts/{api_client.seed.accounts['alice']}", headers=headers)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "unavailable"
        assert resp.headers["retry-after"] == "1"

    def test_tenant_list_is_503(self, api_client):
        headers = api_client.headers("admin")
        down = OperationalError("SELECT 1", {}, Exception("store down"))
        with patch.object(api_client.store, "list_tenants", side_effect=down):
            resp = api_client.client.get("/api/v1/tenants", headers=headers)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "unavailable"
