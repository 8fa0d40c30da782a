"""
Tests for the administrative routes: channels, contacts, sessions, the
automated-reply switch, health and metrics.
"""

import pytest

from conftest import CANNED_REPLY, CHANNEL_NUMBER, REMOTE_NUMBER, ScriptedGenerator, sms_form


CHANNEL = {"name": "Support line", "phone_number": CHANNEL_NUMBER, "country_code": "+1", "type": "sms"}


@pytest.fixture
def channel(client) -> dict:
    return client.post("/channels", json=CHANNEL).json()


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client, store):
        store.drop_all()

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_exposed(self, client):
        client.get("/health/live")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "auto_reply_total" in response.text

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert response.headers["X-Request-ID"]

    def test_request_id_propagated(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"


class TestChannels:
    def test_create_and_get(self, client):
        response = client.post("/channels", json=CHANNEL)

        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "active"
        assert client.get(f"/channels/{created['id']}").json() == created

    def test_list(self, client, channel):
        assert [c["id"] for c in client.get("/channels").json()] == [channel["id"]]

    def test_update(self, client, channel):
        response = client.put(f"/channels/{channel['id']}", json={"status": "suspended"})

        assert response.status_code == 200
        assert response.json()["status"] == "suspended"
        assert response.json()["name"] == channel["name"]

    def test_delete(self, client, channel):
        assert client.delete(f"/channels/{channel['id']}").status_code == 200
        assert client.get(f"/channels/{channel['id']}").status_code == 404

    def test_invalid_phone_number(self, client):
        response = client.post("/channels", json={**CHANNEL, "phone_number": "4155550100"})

        assert response.status_code == 422

    def test_missing_channel(self, client):
        response = client.get("/channels/nope")

        assert response.status_code == 404
        assert response.json() == {"detail": "Channel not found"}


class TestContacts:
    CONTACT = {"name": "Ana", "phone_number": REMOTE_NUMBER, "email": "Ana@Example.com"}

    def test_create_normalizes_email(self, client):
        response = client.post("/contacts", json=self.CONTACT)

        assert response.status_code == 201
        assert response.json()["email"] == "ana@example.com"

    def test_duplicate_phone_conflicts(self, client):
        client.post("/contacts", json=self.CONTACT)

        response = client.post("/contacts", json={**self.CONTACT, "name": "Other"})

        assert response.status_code == 409

    def test_list_sorted_by_name(self, client):
        client.post("/contacts", json={"name": "Zoe", "phone_number": "+15550000001"})
        client.post("/contacts", json={"name": "Bob", "phone_number": "+15550000002"})

        assert [c["name"] for c in client.get("/contacts").json()] == ["Bob", "Zoe"]

    def test_update_and_delete(self, client):
        contact = client.post("/contacts", json=self.CONTACT).json()

        updated = client.put(f"/contacts/{contact['id']}", json={"name": "Ana Maria"}).json()
        assert updated["name"] == "Ana Maria"
        assert updated["phone_number"] == REMOTE_NUMBER

        assert client.delete(f"/contacts/{contact['id']}").status_code == 200
        assert client.get(f"/contacts/{contact['id']}").status_code == 404


class TestSessions:
    def test_create_with_default_title(self, client, channel):
        response = client.post("/sessions", json={"channel_id": channel["id"], "communication_type": "voice"})

        assert response.status_code == 201
        session = response.json()
        assert session["title"].startswith("Voice Session ")
        assert session["status"] == "active"
        assert session["message_count"] == 0

    def test_create_for_unknown_channel(self, client):
        response = client.post("/sessions", json={"channel_id": "nope", "communication_type": "sms"})

        assert response.status_code == 404

    def test_filters(self, client, channel):
        client.post("/sessions", json={"channel_id": channel["id"], "communication_type": "sms"})
        whatsapp = client.post(
            "/sessions", json={"channel_id": channel["id"], "communication_type": "whatsapp"}
        ).json()
        client.post(f"/sessions/{whatsapp['id']}/archive")

        assert len(client.get("/sessions", params={"channel_id": channel["id"]}).json()) == 2
        archived = client.get("/sessions", params={"status": "archived"}).json()
        assert [s["id"] for s in archived] == [whatsapp["id"]]
        sms = client.get("/sessions", params={"communication_type": "sms"}).json()
        assert [s["communication_type"] for s in sms] == ["sms"]

    def test_update(self, client, channel):
        session = client.post("/sessions", json={"channel_id": channel["id"], "communication_type": "sms"}).json()

        response = client.put(f"/sessions/{session['id']}", json={"title": "VIP", "description": "priority"})

        assert response.json()["title"] == "VIP"
        assert response.json()["description"] == "priority"

    def test_archive(self, client, channel):
        session = client.post("/sessions", json={"channel_id": channel["id"], "communication_type": "sms"}).json()

        response = client.post(f"/sessions/{session['id']}/archive")

        assert response.status_code == 200
        assert response.json()["session"]["status"] == "archived"

    def test_archived_session_not_reused_by_webhook(self, client, channel):
        client.post("/webhooks/sms", data=sms_form("first"))
        first = client.get("/sessions").json()[0]
        client.post(f"/sessions/{first['id']}/archive")

        client.post("/webhooks/sms", data=sms_form("second"))

        active = client.get("/sessions", params={"status": "active"}).json()
        assert len(active) == 1
        assert active[0]["id"] != first["id"]

    def test_messages_oldest_first(self, client, channel):
        client.post("/webhooks/sms", data=sms_form("Hello"))
        session = client.get("/sessions").json()[0]

        messages = client.get(f"/sessions/{session['id']}/messages").json()

        assert [m["content"] for m in messages] == ["Hello", CANNED_REPLY]

    def test_delete_keeps_messages_by_default(self, client, channel):
        client.post("/webhooks/sms", data=sms_form())
        session = client.get("/sessions").json()[0]

        response = client.delete(f"/sessions/{session['id']}")

        assert response.json() == {
            "message": "Session deleted successfully",
            "messages_deleted": False,
            "deleted_count": 0,
        }
        assert len(client.get(f"/messages/channel/{channel['id']}").json()) == 2

    def test_delete_with_messages(self, client, channel):
        client.post("/webhooks/sms", data=sms_form())
        session = client.get("/sessions").json()[0]

        response = client.delete(f"/sessions/{session['id']}", params={"delete_messages": True})

        assert response.json()["deleted_count"] == 2
        assert client.get(f"/messages/channel/{channel['id']}").json() == []
        assert client.get(f"/sessions/{session['id']}").status_code == 404

    def test_delete_missing(self, client):
        assert client.delete("/sessions/nope").status_code == 404


class TestAutoReplySwitch:
    def test_status_reflects_settings(self, client):
        response = client.get("/ai/status")

        assert response.json() == {
            "enabled": True,
            "provider": "scripted",
            "delay_ms": 0,
            "timeout_seconds": 1.0,
        }

    def test_disable_and_enable(self, client):
        assert client.post("/ai/disable").json()["enabled"] is False
        assert client.get("/ai/status").json()["enabled"] is False
        assert client.post("/ai/enable").json()["enabled"] is True

    def test_try_generator(self, client, generator):
        response = client.post("/ai/test", json={"message": "hello"})

        assert response.json() == {"user_message": "hello", "ai_response": CANNED_REPLY, "enabled": True}
        assert generator.calls[0][1] == "hello"

    def test_try_generator_when_disabled(self, client, generator):
        client.post("/ai/disable")

        response = client.post("/ai/test", json={"message": "hello"})

        assert response.json()["ai_response"] is None
        assert generator.calls == []

    def test_try_generator_timeout(self, make_client, settings):
        client = make_client(
            settings=settings.model_copy(update={"AUTO_REPLY_TIMEOUT_SECONDS": 0.05}),
            generator=ScriptedGenerator(delay=1.0),
        )

        response = client.post("/ai/test", json={"message": "hello"})

        assert response.status_code == 502
