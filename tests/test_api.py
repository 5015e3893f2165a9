from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from config.config import AppConfig, PushConfig, RemindersConfig, ServerConfig, StorageConfig
from nudge.api.server import create_app
from nudge.app.engine_app import EngineApp


def build_test_client(vapid_public_key: str = "") -> TestClient:
    config = AppConfig(
        reminders=RemindersConfig(enabled=False),
        storage=StorageConfig(backend="memory"),
        push=PushConfig(enabled=False, vapid_public_key=vapid_public_key),
    )
    app = create_app(EngineApp(config=config))
    return TestClient(app)


def create_due_reminder(client: TestClient, text: str = "stretch") -> dict:
    due_at = (datetime.now() - timedelta(minutes=1)).isoformat()
    response = client.post("/reminders", json={"text": text, "dueAt": due_at})
    assert response.status_code == 201
    return response.json()


def test_create_reminder_from_sentence() -> None:
    with build_test_client() as client:
        response = client.post("/reminders", json={"text": "remind me in 20 minutes to call mom 3 times"})
        assert response.status_code == 201
        payload = response.json()
        assert payload["text"] == "call mom"
        assert payload["status"] == "pending"
        assert payload["repeat_count"] == 3
        assert payload["original_input"] == "remind me in 20 minutes to call mom 3 times"

        fetched = client.get(f"/reminders/{payload['id']}")
        assert fetched.status_code == 200
        assert fetched.json() == payload


def test_unparseable_sentence_is_rejected() -> None:
    with build_test_client() as client:
        response = client.post("/reminders", json={"text": "buy milk"})
        assert response.status_code == 422
        assert response.json()["input"] == "buy milk"


def test_invalid_input_returns_400() -> None:
    with build_test_client() as client:
        blank = client.post("/reminders", json={"text": "  ", "dueAt": datetime.now().isoformat()})
        assert blank.status_code == 400

        missing = client.post("/reminders", json={})
        assert missing.status_code == 400

        bad_filter = client.get("/reminders", params={"filter": "someday"})
        assert bad_filter.status_code == 400

        reminder = create_due_reminder(client)
        snooze = client.put(f"/reminders/{reminder['id']}/snooze", json={"minutes": 0})
        assert snooze.status_code == 400


def test_unknown_reminder_returns_404() -> None:
    with build_test_client() as client:
        assert client.get("/reminders/nope").status_code == 404
        assert client.put("/reminders/nope", json={"text": "x"}).status_code == 404
        assert client.put("/reminders/nope/dismiss").status_code == 404
        assert client.put("/reminders/nope/snooze").status_code == 404
        assert client.delete("/reminders/nope").status_code == 404


def test_update_dismiss_and_list() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)
        other = create_due_reminder(client, "water plants")

        updated = client.put(f"/reminders/{reminder['id']}", json={"text": "stretch properly", "voiceEnabled": False})
        assert updated.status_code == 200
        assert updated.json()["text"] == "stretch properly"
        assert updated.json()["voice_enabled"] is False

        dismissed = client.put(f"/reminders/{other['id']}/dismiss", json={"method": "voice"})
        assert dismissed.status_code == 200
        assert dismissed.json()["status"] == "completed"
        assert dismissed.json()["dismissed_by"] == "voice"

        again = client.put(f"/reminders/{other['id']}/dismiss")
        assert again.json() == dismissed.json()

        pending = client.get("/reminders", params={"filter": "pending"}).json()
        assert pending["count"] == 1
        assert pending["reminders"][0]["id"] == reminder["id"]

        everything = client.get("/reminders").json()
        assert everything["count"] == 2


def test_snooze_defaults_to_configured_minutes() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)

        response = client.put(f"/reminders/{reminder['id']}/snooze")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "pending"
        assert payload["snooze_count"] == 1
        due_at = datetime.fromisoformat(payload["due_at"])
        assert due_at > datetime.now() + timedelta(minutes=9)


def test_delete_reminder() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)

        assert client.delete(f"/reminders/{reminder['id']}").status_code == 204
        assert client.get(f"/reminders/{reminder['id']}").status_code == 404


def test_push_subscription_endpoints() -> None:
    subscription = {
        "endpoint": "https://push.example/device-1",
        "keys": {"p256dh": "p256dh-key", "auth": "auth-secret"},
        "userAgent": "Firefox",
    }
    with build_test_client() as client:
        assert client.get("/push/vapid-public-key").status_code == 503

        response = client.post("/push/subscribe", json=subscription)
        assert response.status_code == 201
        assert response.json() == {"success": True, "endpoint": subscription["endpoint"]}

        # Push is disabled in this configuration, so nothing is sent
        test = client.post("/push/test")
        assert test.json() == {"success": False, "sent": 0, "failed": 0}

        removed = client.post("/push/unsubscribe", json={"endpoint": subscription["endpoint"]})
        assert removed.json() == {"success": True}
        missing = client.post("/push/unsubscribe", json={"endpoint": "https://push.example/other"})
        assert missing.json() == {"success": False}


def test_vapid_public_key_is_served_when_configured() -> None:
    with build_test_client(vapid_public_key="BPublicKey") as client:
        response = client.get("/push/vapid-public-key")
        assert response.status_code == 200
        assert response.json() == {"publicKey": "BPublicKey"}


def test_manual_check_and_notifications() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)

        response = client.post("/monitor/check")
        assert response.status_code == 200
        payload = response.json()
        assert payload["success"] is True
        assert payload["notified"] == [reminder["id"]]

        assert client.get(f"/reminders/{reminder['id']}").json()["status"] == "notified"

        notifications = client.get("/notifications").json()["notifications"]
        assert len(notifications) == 1
        assert notifications[0]["type"] == "reminder_alert"
        assert notifications[0]["reminder"]["id"] == reminder["id"]
        assert "created_at" in notifications[0]


def test_health_and_stats() -> None:
    with build_test_client() as client:
        health = client.get("/health")
        assert health.status_code == 200
        payload = health.json()
        assert payload["status"] == "ok"
        assert payload["is_started"] is True
        assert payload["reminders"]["store"]["backend"] == "fallback"

        stats = client.get("/stats").json()
        assert stats["is_started"] is True
        assert stats["monitor"]["is_running"] is False
        assert stats["dispatcher"]["push_enabled"] is False


def test_websocket_greeting_and_ping() -> None:
    with build_test_client() as client:
        with client.websocket_connect("/ws") as websocket:
            greeting = websocket.receive_json()
            assert greeting["type"] == "connection"
            assert greeting["clientId"]

            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"

            websocket.send_json({"type": "bogus"})
            assert websocket.receive_json()["type"] == "error"

            stats = client.get("/stats").json()
            assert stats["dispatcher"]["connected_clients"] == 1


def test_websocket_receives_alert_on_manual_check() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)

        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
            websocket.send_json({"type": "manual_check"})

            alert = websocket.receive_json()
            assert alert["type"] == "reminder_alert"
            assert alert["reminder"]["id"] == reminder["id"]
            assert alert["reminder"]["text"] == "stretch"

            complete = websocket.receive_json()
            assert complete["type"] == "manual_check_complete"
            assert complete["data"]["notified"] == [reminder["id"]]


def test_aware_due_time_from_browser_is_accepted() -> None:
    with build_test_client() as client:
        healthy = create_due_reminder(client)
        aware_due = (datetime.now() - timedelta(minutes=1)).astimezone().isoformat()
        response = client.post("/reminders", json={"text": "call mom", "dueAt": aware_due})
        assert response.status_code == 201
        browser = response.json()

        utc_due = (datetime.now(timezone.utc) - timedelta(minutes=2)).isoformat().replace("+00:00", "Z")
        updated = client.put(f"/reminders/{browser['id']}", json={"dueAt": utc_due})
        assert updated.status_code == 200
        assert datetime.fromisoformat(updated.json()["due_at"]).tzinfo is None

        check = client.post("/monitor/check").json()
        assert sorted(check["notified"]) == sorted([healthy["id"], browser["id"]])


def test_null_fields_are_rejected_on_update() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)

        assert client.put(f"/reminders/{reminder['id']}", json={"dueAt": None}).status_code == 400
        assert client.put(f"/reminders/{reminder['id']}", json={"text": None}).status_code == 400
        assert client.put(f"/reminders/{reminder['id']}", json={"text": "  "}).status_code == 400

        assert client.get(f"/reminders/{reminder['id']}").json() == reminder
        assert client.post("/monitor/check").json()["notified"] == [reminder["id"]]


def test_update_ignores_lifecycle_fields() -> None:
    with build_test_client() as client:
        reminder = create_due_reminder(client)
        client.put(f"/reminders/{reminder['id']}/dismiss")

        response = client.put(f"/reminders/{reminder['id']}", json={"status": "pending"})
        assert response.status_code == 200
        assert response.json()["status"] == "completed"


def test_push_action_endpoint() -> None:
    with build_test_client() as client:
        dismissed = create_due_reminder(client)
        snoozed = create_due_reminder(client, "water plants")

        done = client.post("/push/action", json={"reminderId": dismissed["id"], "action": "dismiss"})
        assert done.status_code == 200
        assert done.json()["success"] is True
        assert done.json()["reminder"]["status"] == "completed"
        assert done.json()["reminder"]["dismissed_by"] == "push"

        later = client.post("/push/action", json={"reminderId": snoozed["id"], "action": "snooze"})
        assert later.status_code == 200
        assert later.json()["reminder"]["snooze_count"] == 1
        assert datetime.fromisoformat(later.json()["reminder"]["due_at"]) > datetime.now() + timedelta(minutes=9)

        invalid = client.post("/push/action", json={"reminderId": snoozed["id"], "action": "archive"})
        assert invalid.status_code == 400
        missing = client.post("/push/action", json={"reminderId": "nope", "action": "dismiss"})
        assert missing.status_code == 404
        incomplete = client.post("/push/action", json={"action": "dismiss"})
        assert incomplete.status_code == 400


def test_push_status_endpoint() -> None:
    subscription = {
        "endpoint": "https://push.example/device-1",
        "keys": {"p256dh": "p256dh-key", "auth": "auth-secret"},
        "userAgent": "Firefox",
    }
    with build_test_client(vapid_public_key="BPublicKey") as client:
        client.post("/push/subscribe", json=subscription)

        response = client.get("/push/status")
        assert response.status_code == 200
        payload = response.json()
        assert payload["enabled"] is False
        assert payload["configured"] is True
        assert payload["activeSubscriptions"] == 1
        assert payload["subscriptions"][0]["endpoint"] == subscription["endpoint"]
        assert payload["subscriptions"][0]["userAgent"] == "Firefox"
        assert payload["subscriptions"][0]["isActive"] is True


def test_silent_websocket_client_is_closed() -> None:
    config = AppConfig(
        reminders=RemindersConfig(enabled=False),
        storage=StorageConfig(backend="memory"),
        push=PushConfig(enabled=False),
        server=ServerConfig(heartbeat_timeout_seconds=0.2),
    )
    with TestClient(create_app(EngineApp(config=config))) as client:
        with client.websocket_connect("/ws") as websocket:
            assert websocket.receive_json()["type"] == "connection"

            with pytest.raises(WebSocketDisconnect):
                for _ in range(20):
                    assert websocket.receive_json()["type"] == "heartbeat"

            stats = client.get("/stats").json()
            assert stats["dispatcher"]["connected_clients"] == 0
