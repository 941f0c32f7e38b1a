"""
HTTP-level tests for the entitlement server.
"""

import datetime as dt
from datetime import timezone

import pytest
from sqlmodel import select

from models import APKInfo, Token
from registry import DeviceRegistry


def _setup_acme(client, headers, bind=True):
    assert client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=headers).status_code == 201
    assert client.post("/devices", json={"code": "dev-42", "model": "Pixel 8"}, headers=headers).status_code == 201
    if bind:
        r = client.post("/bindings", json={"customerKey": "ck-1", "deviceCode": "dev-42"}, headers=headers)
        assert r.status_code == 204
    r = client.post("/tokens", json={"customerKey": "ck-1"}, headers=headers)
    assert r.status_code == 201
    return r.json()["tokenValue"]


def _entitlement(client, device, token, package="MainApp", version="1.2.0"):
    return client.get("/entitlement", params={"device": device, "token": token,
                                              "package": package, "version": version})


class TestAdminAuth:

    def test_admin_routes_require_token(self, client):
        assert client.post("/customers", json={"key": "ck-1", "name": "Acme"}).status_code == 401
        bad = {"Authorization": "Bearer wrong"}
        assert client.get("/customers", headers=bad).status_code == 401

    def test_x_admin_token_header(self, client):
        r = client.post("/customers", json={"key": "ck-1", "name": "Acme"},
                        headers={"X-Admin-Token": "test-admin-token"})
        assert r.status_code == 201

    def test_admin_ui_is_guarded(self, client):
        assert client.get("/admin/").status_code == 401


class TestAdminViews:

    def test_entitlement_rows_cannot_be_deleted_from_admin_ui(self, client, admin_headers, session):
        token = _setup_acme(client, admin_headers)
        _entitlement(client, "dev-42", token)
        row_id = session.exec(select(APKInfo.id)).one()

        r = client.delete("/admin/apk-info/delete", params={"pks": str(row_id)}, headers=admin_headers)

        assert r.status_code >= 400
        assert session.exec(select(APKInfo.id)).all() == [row_id]

    def test_tokens_cannot_be_created_from_admin_ui(self, client, admin_headers):
        r = client.get("/admin/token/create", headers=admin_headers)
        assert r.status_code >= 400


class TestHealth:

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["ok"] is True
        assert data["kid"]


class TestCustomersAndDevices:

    def test_create_customer(self, client, admin_headers):
        r = client.post("/customers", json={"key": "ck-1", "name": "Acme", "note": "vip"}, headers=admin_headers)
        assert r.status_code == 201
        assert isinstance(r.json()["customerId"], int)

        detail = client.get("/customers/ck-1", headers=admin_headers).json()
        assert detail["name"] == "Acme"
        assert detail["note"] == "vip"

    def test_duplicate_customer_is_409(self, client, admin_headers):
        client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=admin_headers)
        r = client.post("/customers", json={"key": "ck-1", "name": "Again"}, headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["code"] == "DuplicateKey"

    def test_customer_key_cannot_change(self, client, admin_headers):
        client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=admin_headers)
        r = client.patch("/customers/ck-1", json={"key": "ck-2"}, headers=admin_headers)
        assert r.status_code == 422

        r = client.patch("/customers/ck-1", json={"name": "Acme Corp"}, headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["key"] == "ck-1"
        assert r.json()["name"] == "Acme Corp"

    def test_duplicate_device_is_409(self, client, admin_headers):
        client.post("/devices", json={"code": "dev-42"}, headers=admin_headers)
        r = client.post("/devices", json={"code": "dev-42"}, headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["code"] == "DuplicateCode"

    def test_list_customers_paginates(self, client, admin_headers):
        for i in range(3):
            client.post("/customers", json={"key": f"ck-{i}", "name": f"C{i}"}, headers=admin_headers)
        data = client.get("/customers", params={"page": 1, "page_size": 2}, headers=admin_headers).json()
        assert data["total"] == 3
        assert data["pages"] == 2
        assert len(data["items"]) == 2


class TestBindings:

    def test_bind_unknown_parties_is_404(self, client, admin_headers):
        client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=admin_headers)
        r = client.post("/bindings", json={"customerKey": "ck-1", "deviceCode": "dev-404"}, headers=admin_headers)
        assert r.status_code == 404
        assert r.json()["code"] == "DeviceNotFound"

    def test_bind_twice_is_409(self, client, admin_headers):
        _setup_acme(client, admin_headers)
        r = client.post("/bindings", json={"customerKey": "ck-1", "deviceCode": "dev-42"}, headers=admin_headers)
        assert r.status_code == 409
        assert r.json()["code"] == "AlreadyBound"

    def test_listing_and_unbind(self, client, admin_headers):
        _setup_acme(client, admin_headers)
        devices = client.get("/customers/ck-1/devices", headers=admin_headers).json()
        assert [d["code"] for d in devices] == ["dev-42"]
        customers = client.get("/devices/dev-42/customers", headers=admin_headers).json()
        assert [c["key"] for c in customers] == ["ck-1"]

        body = {"customerKey": "ck-1", "deviceCode": "dev-42"}
        assert client.request("DELETE", "/bindings", json=body, headers=admin_headers).status_code == 204
        r = client.request("DELETE", "/bindings", json=body, headers=admin_headers)
        assert r.status_code == 404
        assert r.json()["code"] == "NotBound"


class TestTokens:

    def test_issue_with_ttl(self, client, admin_headers):
        client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=admin_headers)
        r = client.post("/tokens", json={"customerKey": "ck-1", "ttlSeconds": 3600}, headers=admin_headers)
        assert r.status_code == 201
        expiry = dt.datetime.fromisoformat(r.json()["expiry"].replace("Z", "+00:00"))
        assert expiry > dt.datetime.now(timezone.utc)

    def test_issue_for_unknown_customer(self, client, admin_headers):
        r = client.post("/tokens", json={"customerKey": "ck-404"}, headers=admin_headers)
        assert r.status_code == 404
        assert r.json()["code"] == "CustomerNotFound"

    def test_ttl_and_expiry_together_rejected(self, client, admin_headers):
        client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=admin_headers)
        r = client.post("/tokens", json={"customerKey": "ck-1", "ttlSeconds": 5,
                                         "expiry": "2030-01-01T00:00:00Z"}, headers=admin_headers)
        assert r.status_code == 422

    def test_tokens_listing_flags_expired(self, client, admin_headers, session):
        client.post("/customers", json={"key": "ck-1", "name": "Acme"}, headers=admin_headers)
        past = dt.datetime(2020, 1, 1, tzinfo=timezone.utc)
        session.add(Token(token_value="JKT-OLD", customer_key="ck-1",
                          token_init_date=past, token_expiry=past + dt.timedelta(days=1)))
        session.commit()
        client.post("/tokens", json={"customerKey": "ck-1"}, headers=admin_headers)

        tokens = client.get("/customers/ck-1/tokens", headers=admin_headers).json()
        flags = {t["tokenValue"] == "JKT-OLD": t["expired"] for t in tokens}
        assert flags == {True: True, False: False}


class TestEntitlement:

    def test_scenario(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)

        first = _entitlement(client, "dev-42", token)
        assert first.status_code == 200
        body = first.json()
        assert body["apkPath"] == "/srv/apk/MainApp/1.2.0/MainApp-1.2.0.apk"
        assert body["apkVersion"] == "1.2.0"

        second = _entitlement(client, "dev-42", token).json()
        assert second["apkPath"] == body["apkPath"]
        rows = client.get("/devices/dev-42/entitlements", headers=admin_headers).json()
        assert len(rows) == 1

    def test_unbound_device_is_403(self, client, admin_headers, session):
        token = _setup_acme(client, admin_headers)
        DeviceRegistry(session).register("dev-99")

        r = _entitlement(client, "dev-99", token)
        assert r.status_code == 403
        assert r.json()["code"] == "DeviceNotEntitled"

    @pytest.mark.parametrize("device,token,code", [
        ("dev-404", None, "UnknownDevice"),
        ("dev-42", "JKT-NOPE", "UnknownToken"),
    ])
    def test_unknown_is_404(self, client, admin_headers, device, token, code):
        real = _setup_acme(client, admin_headers)
        r = _entitlement(client, device, token or real)
        assert r.status_code == 404
        assert r.json()["code"] == code

    def test_expired_token_is_401(self, client, admin_headers, session):
        _setup_acme(client, admin_headers)
        past = dt.datetime(2020, 1, 1, tzinfo=timezone.utc)
        session.add(Token(token_value="JKT-OLD", customer_key="ck-1",
                          token_init_date=past, token_expiry=past + dt.timedelta(days=1)))
        session.commit()

        r = _entitlement(client, "dev-42", "JKT-OLD")
        assert r.status_code == 401
        assert r.json()["code"] == "TokenExpired"

    def test_bad_package_is_422(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)
        r = _entitlement(client, "dev-42", token, package="../../etc/passwd")
        assert r.status_code == 422

    def test_grant_verifies(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)
        grant = _entitlement(client, "dev-42", token).json()["grant"]

        r = client.post("/grants/verify", json={"grant": grant})
        assert r.status_code == 200
        claims = r.json()["claims"]
        assert claims["d"] == "dev-42"
        assert claims["n"] == "MainApp"
        assert claims["v"] == "1.2.0"
        assert token not in str(claims)

    def test_tampered_grant_rejected(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)
        grant = _entitlement(client, "dev-42", token).json()["grant"]
        body, sig = grant.split(".")
        swapped = "A" if body[5] != "A" else "B"
        forged = body[:5] + swapped + body[6:] + "." + sig

        assert client.post("/grants/verify", json={"grant": forged}).status_code == 401


class TestDeletes:

    def test_delete_customer_cascades(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)
        _entitlement(client, "dev-42", token)

        assert client.delete("/customers/ck-1", headers=admin_headers).status_code == 204
        assert client.get("/customers/ck-1", headers=admin_headers).status_code == 404
        assert client.get("/devices/dev-42/entitlements", headers=admin_headers).json() == []
        assert _entitlement(client, "dev-42", token).json()["code"] == "UnknownToken"
        assert client.delete("/customers/ck-1", headers=admin_headers).status_code == 404

    def test_delete_device_cascades(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)
        _entitlement(client, "dev-42", token)

        assert client.delete("/devices/dev-42", headers=admin_headers).status_code == 204
        assert client.get("/customers/ck-1/devices", headers=admin_headers).json() == []
        assert client.delete("/devices/dev-42", headers=admin_headers).status_code == 404

    def test_revoke_token(self, client, admin_headers):
        token = _setup_acme(client, admin_headers)
        _entitlement(client, "dev-42", token)

        assert client.delete(f"/tokens/{token}", headers=admin_headers).status_code == 204
        assert client.get("/devices/dev-42/entitlements", headers=admin_headers).json() == []
        assert client.get("/customers/ck-1", headers=admin_headers).status_code == 200
        assert client.delete(f"/tokens/{token}", headers=admin_headers).status_code == 404
