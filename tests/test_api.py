"""Tests for the HTTP surface."""

import time
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import WebhookRecorder
from wagateway.errors import StoreUnavailable
from wagateway.gateway import build_gateway
from wagateway.main import create_app
from wagateway.services.event_router import EventRouter
from wagateway.services.session_manager import SessionState
from wagateway.services.tenant_store import MemoryTenantStore

ADMIN = {"Authorization": "admin-secret"}


@pytest.fixture
def gateway(factory):
    router = EventRouter(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(WebhookRecorder())),
        retry_base_delay=0.01,
    )
    gateway = build_gateway(
        store=MemoryTenantStore(),
        client_factory=factory,
        router=router,
        admin_token="admin-secret",
        connect_timeout=1,
        pairing_timeout=1,
        stop_timeout=0.5,
    )
    return gateway


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway)) as client:
        yield client


def create_user(client, name="acme", token="acme-token", **fields):
    response = client.post("/admin/users", json={"name": name, "token": token, **fields}, headers=ADMIN)
    assert response.status_code == 201, response.text
    return response.json()["user"]


def auth(token="acme-token"):
    return {"token": token}


class TestHealth:
    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["sessions"] == {"status": "ok", "total": 0, "connected": 0}

    def test_health_reports_store_failure(self, client, gateway) -> None:
        gateway.store.get_by_id = AsyncMock(side_effect=StoreUnavailable("down"))

        body = client.get("/health").json()

        assert body["ok"] is False
        assert body["checks"]["database"]["status"] == "error"


class TestAdmin:
    def test_requires_admin_token(self, client) -> None:
        assert client.get("/admin/users").status_code == 401
        assert client.get("/admin/users", headers={"Authorization": "wrong"}).status_code == 401
        assert client.get("/admin/users", headers={"Authorization": "Bearer admin-secret"}).status_code == 200

    def test_create_and_list(self, client) -> None:
        user = create_user(client, webhook="https://hooks.example.com", events=["Message"])

        listed = client.get("/admin/users", headers=ADMIN).json()["users"]

        assert user["events"] == ["Message"]
        assert [u["id"] for u in listed] == [user["id"]]
        assert listed[0]["session_state"] == "absent"

    def test_duplicate_token(self, client) -> None:
        create_user(client)

        response = client.post("/admin/users", json={"name": "other", "token": "acme-token"}, headers=ADMIN)

        assert response.status_code == 409
        assert response.json() == {
            "ok": False,
            "error": "Token is already assigned to another tenant",
            "code": "duplicate_token",
        }

    def test_unknown_event_is_rejected(self, client) -> None:
        response = client.post(
            "/admin/users", json={"name": "a", "token": "t", "events": ["Typing"]}, headers=ADMIN
        )

        assert response.status_code == 422

    def test_delete_stops_session_and_revokes_token(self, client, gateway) -> None:
        user = create_user(client)
        client.post("/session/connect", json={}, headers=auth())

        response = client.delete(f"/admin/users/{user['id']}", headers=ADMIN)

        assert response.json() == {"ok": True, "deleted": user["id"]}
        assert gateway.manager.status(user["id"]) is SessionState.ABSENT
        assert client.get("/session/status", headers=auth()).status_code == 401

    def test_delete_unknown(self, client) -> None:
        response = client.delete("/admin/users/404", headers=ADMIN)

        assert response.status_code == 404
        assert response.json()["code"] == "tenant_not_found"


class TestTenantAuth:
    def test_missing_and_invalid_token(self, client) -> None:
        assert client.get("/session/status").status_code == 401
        assert client.get("/session/status", headers=auth("nope")).status_code == 401

    def test_bearer_token(self, client) -> None:
        create_user(client)

        response = client.get("/session/status", headers={"Authorization": "Bearer acme-token"})

        assert response.status_code == 200

    def test_expired_account(self, client) -> None:
        create_user(client, expiration=int(time.time()) - 10)

        assert client.get("/session/status", headers=auth()).status_code == 401

    def test_store_failure_fails_closed(self, client, gateway) -> None:
        create_user(client)
        gateway.store.get_by_token = AsyncMock(side_effect=StoreUnavailable("down"))

        assert client.get("/events/recent", headers=auth()).status_code == 401

    def test_cached_token_skips_store(self, client, gateway) -> None:
        create_user(client)
        assert client.get("/events/recent", headers=auth()).status_code == 200

        gateway.store.get_by_token = AsyncMock(side_effect=StoreUnavailable("down"))

        assert client.get("/events/recent", headers=auth()).status_code == 200
        gateway.store.get_by_token.assert_not_awaited()


class TestSession:
    def test_connect_status_disconnect(self, client, gateway) -> None:
        user = create_user(client)

        connect = client.post("/session/connect", json={"subscribe": ["Message"]}, headers=auth())
        status = client.get("/session/status", headers=auth()).json()

        assert connect.json() == {"ok": True, "state": "connected"}
        assert status["state"] == "connected"
        assert status["connected"] is True
        assert status["logged_in"] is True
        assert status["jid"].endswith("@s.whatsapp.net")
        assert gateway.router.get_route(user["id"]).events == ("Message",)

        assert client.post("/session/disconnect", headers=auth()).json() == {"ok": True, "state": "absent"}
        assert client.get("/session/status", headers=auth()).json()["connected"] is False

    def test_connect_twice(self, client) -> None:
        create_user(client)
        client.post("/session/connect", json={}, headers=auth())

        response = client.post("/session/connect", json={}, headers=auth())

        assert response.status_code == 409
        assert response.json()["code"] == "already_active"

    def test_disconnect_without_session(self, client) -> None:
        create_user(client)

        response = client.post("/session/disconnect", headers=auth())

        assert response.status_code == 409
        assert response.json()["code"] == "not_active"

    def test_immediate_connect(self, client, gateway) -> None:
        user = create_user(client)

        response = client.post("/session/connect", json={"immediate": True}, headers=auth())

        assert response.json()["state"] in ("connecting", "connected")
        for _ in range(100):
            if client.get("/session/status", headers=auth()).json()["connected"]:
                break
            time.sleep(0.01)
        assert gateway.manager.status(user["id"]) is SessionState.CONNECTED

    def test_connect_failure_status(self, client, factory) -> None:
        create_user(client)
        factory.prepare = lambda c: c.connect_errors.append(RuntimeError("evolution down"))

        response = client.post("/session/connect", json={}, headers=auth())

        assert response.status_code == 502
        assert response.json()["code"] == "pairing_failed"

    def test_logout(self, client, factory) -> None:
        user = create_user(client)
        client.post("/session/connect", json={}, headers=auth())

        assert client.post("/session/logout", headers=auth()).json() == {"ok": True, "state": "absent"}

        assert factory.last(user["id"]).logout_calls == 1
        status = client.get("/session/status", headers=auth()).json()
        assert status["logged_in"] is False
        assert status["jid"] is None

    def test_qr_requires_session(self, client) -> None:
        create_user(client)

        assert client.get("/session/qr", headers=auth()).status_code == 409


class TestWebhook:
    def test_set_get_delete(self, client) -> None:
        create_user(client)

        set_response = client.post(
            "/webhook",
            json={"webhook": "https://hooks.example.com/acme", "events": ["Message", "QR"]},
            headers=auth(),
        )
        get_response = client.get("/webhook", headers=auth())
        delete_response = client.delete("/webhook", headers=auth())

        assert set_response.json()["events"] == ["Message", "QR"]
        assert get_response.json() == {
            "ok": True,
            "webhook": "https://hooks.example.com/acme",
            "events": ["Message", "QR"],
        }
        assert delete_response.json()["webhook"] == ""
        assert delete_response.json()["events"] == ["Message", "QR"]

    def test_invalid_event(self, client) -> None:
        create_user(client)

        response = client.post("/webhook", json={"webhook": "", "events": ["Nope"]}, headers=auth())

        assert response.status_code == 422

    def test_running_session_picks_up_change(self, client, gateway) -> None:
        user = create_user(client)
        client.post("/session/connect", json={}, headers=auth())

        client.post("/webhook", json={"webhook": "https://hooks.example.com/new"}, headers=auth())

        assert gateway.router.get_route(user["id"]).webhook == "https://hooks.example.com/new"

    def test_recent_events(self, client) -> None:
        create_user(client)
        client.post("/session/connect", json={}, headers=auth())

        body = client.get("/events/recent", headers=auth()).json()

        assert [e["type"] for e in body["events"]] == ["PairSuccess", "Connected"]
        assert body["count"] == 2


class TestChat:
    def test_send_requires_connected_session(self, client) -> None:
        create_user(client)

        response = client.post("/chat/send/text", json={"phone": "5511999999999", "body": "hi"}, headers=auth())

        assert response.status_code == 409

    def test_data_plane(self, client, factory) -> None:
        user = create_user(client)
        client.post("/session/connect", json={}, headers=auth())

        sent = client.post("/chat/send/text", json={"phone": "5511999999999", "body": "hi"}, headers=auth())
        presence = client.post("/chat/presence", json={"phone": "5511999999999"}, headers=auth())
        read = client.post("/chat/markread", json={"chat": "5511999999999", "ids": ["M1"]}, headers=auth())
        media = client.post("/chat/downloadmedia", json={"message": {"key": {"id": "M1"}}}, headers=auth())

        assert sent.json()["result"]["key"]["id"] == "3EB0MSG"
        assert presence.status_code == 200
        assert read.status_code == 200
        assert media.json()["result"]["mimetype"] == "image/jpeg"
        assert factory.last(user["id"]).sent == [
            ("text", "5511999999999", "hi"),
            ("presence", "5511999999999", "composing"),
            ("read", "5511999999999", ["M1"]),
        ]

    def test_empty_body_is_rejected(self, client) -> None:
        create_user(client)

        response = client.post("/chat/send/text", json={"phone": "5511", "body": ""}, headers=auth())

        assert response.status_code == 422
