"""HTTP surface tests: health, QR, outbound send, Evolution webhook."""

from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from ares_bridge.api.factory import create_app
from ares_bridge.api.routes.session import QR_HINT
from ares_bridge.config import EvolutionSettings
from ares_bridge.observability.correlation import CORRELATION_ID_HEADER
from ares_bridge.session.manager import SessionSnapshot, SessionStatus
from ares_bridge.whatsapp.evolution_transport import EvolutionClient, EvolutionGateway
from ares_bridge.whatsapp.transport import (
    ConnectionUpdate,
    MessagesReceived,
    NotConnectedError,
    TransportError,
)

from helpers import GROUP_JID, OWN_JID, LogRecorder, make_raw_message


class StubManager:
    """Stands in for SessionLifecycleManager behind the routes."""

    def __init__(self, snapshot: SessionSnapshot, send_error: Exception | None = None):
        self._snapshot = snapshot
        self.send_error = send_error
        self.sent = []
        self.started = False
        self.stopped_with: bool | None = None

    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    async def send(self, command) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(command)

    async def start(self) -> None:
        self.started = True

    async def stop(self, logout: bool = False) -> None:
        self.stopped_with = logout


OPEN = SessionSnapshot(status=SessionStatus.OPEN, user_id=OWN_JID)


def _client(manager, gateway=None) -> TestClient:
    return TestClient(create_app(manager, gateway=gateway))


class TestHealth:
    def test_open_session(self):
        response = _client(StubManager(OPEN)).get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "connected": True,
            "numero": OWN_JID,
            "session": "open",
        }

    def test_awaiting_scan(self):
        manager = StubManager(SessionSnapshot(status=SessionStatus.AWAITING_SCAN, qr="2@qr"))

        body = _client(manager).get("/health").json()

        assert body["connected"] is False
        assert body["numero"] is None
        assert body["session"] == "awaiting_scan"

    def test_correlation_id_is_echoed(self):
        response = _client(StubManager(OPEN)).get(
            "/health", headers={CORRELATION_ID_HEADER: "req-123"}
        )

        assert response.headers[CORRELATION_ID_HEADER] == "req-123"

    def test_correlation_id_generated_when_absent(self):
        response = _client(StubManager(OPEN)).get("/health")

        assert response.headers[CORRELATION_ID_HEADER]


class TestQr:
    def test_pending_qr(self):
        manager = StubManager(SessionSnapshot(status=SessionStatus.AWAITING_SCAN, qr="2@qr"))

        response = _client(manager).get("/qr")

        assert response.status_code == 200
        assert response.json() == {"qr": "2@qr", "message": QR_HINT}

    def test_no_qr_when_open(self):
        response = _client(StubManager(OPEN)).get("/qr")

        assert response.status_code == 404
        assert response.json()["error"] == "No hay QR disponible"
        assert "message" in response.json()

    def test_no_qr_before_first_challenge(self):
        manager = StubManager(SessionSnapshot(status=SessionStatus.CONNECTING))

        assert _client(manager).get("/qr").status_code == 404


class TestSendMessage:
    def test_success(self):
        manager = StubManager(OPEN)

        response = _client(manager).post(
            "/send-message", json={"chatId": GROUP_JID, "message": "Ticket #42 creado"}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert manager.sent[0].chat_id == GROUP_JID
        assert manager.sent[0].text == "Ticket #42 creado"

    def test_missing_fields(self):
        manager = StubManager(OPEN)
        client = _client(manager)

        for body in ({"chatId": GROUP_JID}, {"message": "hola"}, {}, {"chatId": "", "message": "x"}):
            response = client.post("/send-message", json=body)
            assert response.status_code == 400
            assert response.json() == {"error": "chatId and message are required"}
        assert manager.sent == []

    def test_invalid_json(self):
        response = _client(StubManager(OPEN)).post(
            "/send-message", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_validation_comes_before_session_check(self):
        manager = StubManager(OPEN, send_error=NotConnectedError("not connected"))

        response = _client(manager).post("/send-message", json={"chatId": GROUP_JID})

        assert response.status_code == 400

    def test_not_connected(self):
        manager = StubManager(OPEN, send_error=NotConnectedError("not connected"))

        response = _client(manager).post(
            "/send-message", json={"chatId": GROUP_JID, "message": "hola"}
        )

        assert response.status_code == 503
        assert response.json() == {"error": "WhatsApp not connected"}

    def test_transport_failure(self):
        manager = StubManager(OPEN, send_error=TransportError("send failed"))

        response = _client(manager).post(
            "/send-message", json={"chatId": GROUP_JID, "message": "hola"}
        )

        assert response.status_code == 500
        assert response.json() == {"error": "send failed"}

    def test_logs_contain_no_chat_id_or_text(self):
        recorder = LogRecorder()
        manager = StubManager(OPEN, send_error=TransportError("send failed"))

        with patch("ares_bridge.api.routes.session.logger", recorder):
            _client(manager).post(
                "/send-message", json={"chatId": GROUP_JID, "message": "secreto del cliente"}
            )

        logged = recorder.get_all_logged_content()
        assert recorder.calls
        assert GROUP_JID not in logged
        assert "secreto del cliente" not in logged
        assert recorder.has_extra_field("to_hash")
        assert recorder.has_extra_field("text_len")


def test_lifespan_starts_and_stops_manager():
    manager = StubManager(OPEN)
    app = create_app(manager, logout_on_shutdown=True)

    with TestClient(app) as client:
        assert manager.started
        assert client.get("/health").status_code == 200

    assert manager.stopped_with is True


SETTINGS = EvolutionSettings(
    base_url="http://evolution:8080",
    instance="ares",
    api_key="key",
    webhook_secret="hook-secret",
)


def _gateway(settings: EvolutionSettings = SETTINGS) -> EvolutionGateway:
    return EvolutionGateway(settings, client=MagicMock(spec=EvolutionClient))


def _post_webhook(client: TestClient, payload, secret: str | None = "hook-secret"):
    headers = {"X-Webhook-Secret": secret} if secret is not None else {}
    return client.post("/webhooks/evolution", json=payload, headers=headers)


class TestEvolutionWebhook:
    def test_not_mounted_without_gateway(self):
        response = _client(StubManager(OPEN)).post("/webhooks/evolution", json={})

        assert response.status_code == 404

    def test_message_reaches_transport(self):
        gateway = _gateway()
        events = []
        gateway.transport_factory(None, events.append)
        payload = {
            "event": "messages.upsert",
            "instance": "ares",
            "data": make_raw_message({"conversation": "/Acme | RX | falla"}),
        }

        response = _post_webhook(_client(StubManager(OPEN), gateway), payload)

        assert response.status_code == 200
        assert response.text == "ok"
        assert isinstance(events[0], MessagesReceived)
        assert events[0].messages[0].text == "/Acme | RX | falla"

    def test_qr_event(self):
        gateway = _gateway()
        events = []
        gateway.transport_factory(None, events.append)

        _post_webhook(
            _client(StubManager(OPEN), gateway),
            {"event": "QRCODE_UPDATED", "data": {"qrcode": {"code": "2@qr"}}},
        )

        assert events == [ConnectionUpdate(qr="2@qr")]

    def test_wrong_secret(self):
        gateway = _gateway()
        events = []
        gateway.transport_factory(None, events.append)
        client = _client(StubManager(OPEN), gateway)
        payload = {"event": "qrcode.updated", "data": {"qrcode": {"code": "2@qr"}}}

        assert _post_webhook(client, payload, secret="wrong").status_code == 401
        assert _post_webhook(client, payload, secret=None).status_code == 401
        assert events == []

    def test_secret_not_required_when_unset(self):
        gateway = _gateway(
            EvolutionSettings(base_url="http://evolution:8080", instance="ares", api_key="key")
        )
        gateway.transport_factory(None, lambda event: None)

        response = _post_webhook(
            _client(StubManager(OPEN), gateway),
            {"event": "qrcode.updated", "data": {"qrcode": {"code": "2@qr"}}},
            secret=None,
        )

        assert response.status_code == 200

    def test_invalid_json(self):
        client = _client(StubManager(OPEN), _gateway())

        response = client.post(
            "/webhooks/evolution",
            content=b"{not json",
            headers={"X-Webhook-Secret": "hook-secret", "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.text == "invalid json"

    def test_invalid_payload_shape(self):
        gateway = _gateway()
        gateway.transport_factory(None, lambda event: None)
        client = _client(StubManager(OPEN), gateway)

        response = _post_webhook(client, {"event": "messages.upsert", "data": {"key": {}}})
        assert response.status_code == 400

        response = _post_webhook(client, [1, 2, 3])
        assert response.status_code == 400

    def test_ignored_without_transport(self):
        client = _client(StubManager(OPEN), _gateway())

        response = _post_webhook(
            client, {"event": "qrcode.updated", "data": {"qrcode": {"code": "2@qr"}}}
        )

        assert response.status_code == 200
        assert response.text == "ignored"


def test_lifespan_asks_logout_decision_at_shutdown():
    manager = StubManager(OPEN)
    decision = {"logout": False}
    app = create_app(manager, logout_on_shutdown=lambda: decision["logout"])

    with TestClient(app):
        decision["logout"] = True

    assert manager.stopped_with is True
