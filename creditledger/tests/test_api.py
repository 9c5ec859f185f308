"""
Tests for the HTTP surface.
"""

import json

import pytest
from fastapi.testclient import TestClient

from creditledger.api import create_app
from creditledger.config import Settings
from creditledger.errors import ProviderFailure
from creditledger.providers import ProviderRegistry, VoiceCatalog
from creditledger.service import ChargeEngine
from creditledger.storage import InMemoryStorage
from creditledger.webhook import WebhookCreditApplier

from conftest import NOW, TOKEN, USER_ID, WEBHOOK_SECRET, FakeAction, FixedClock, sign

AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def ledger():
    storage = InMemoryStorage()
    storage.add_user(USER_ID, TOKEN, stripe_customer_id="cus_5", basis=100, premium=0)
    engine = ChargeEngine(storage, clock=FixedClock(), provider_timeout=2)
    yield engine
    engine.close()


@pytest.fixture
def client(ledger):
    registry = ProviderRegistry(
        tts={"fake": FakeAction(), "broken": FakeAction(error=ProviderFailure("upstream 500", provider="broken"))},
        ai={"fake": FakeAction()},
    )
    catalog = VoiceCatalog({"elevenlabs": lambda: [{"id": "elevenlabs:abc"}]}, clock=ledger.clock)
    applier = WebhookCreditApplier(ledger.storage, WEBHOOK_SECRET, clock=ledger.clock)
    app = create_app(engine=ledger, applier=applier, registry=registry, catalog=catalog, config=Settings())
    return TestClient(app)


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "credit-ledger"}


class TestChargeEndpoint:
    """Tests for POST /api/charge."""

    def test_charge_and_insufficient(self, client):
        response = client.post("/api/charge", json={"userId": USER_ID, "charCount": 30}, headers=AUTH)
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["remaining"] == 70
        assert "deductionId" in body

        response = client.post("/api/charge", json={"userId": USER_ID, "charCount": 80}, headers=AUTH)
        assert response.status_code == 402
        assert response.json() == {"ok": False, "reason": "insufficient_credits", "balance": 70}

    def test_charge_with_bearer_token_only(self, client):
        response = client.post("/api/charge", json={"charCount": 10}, headers=AUTH)
        assert response.status_code == 200
        assert response.json()["remaining"] == 90

    @pytest.mark.parametrize("payload", [
        {"userId": USER_ID, "charCount": 60},
        {"token": TOKEN, "charCount": 60},
        {"charCount": 60},
    ])
    def test_charge_without_credential(self, client, ledger, payload):
        response = client.post("/api/charge", json=payload)
        assert response.status_code == 401
        assert ledger.get_balances(USER_ID).basis == 100

    def test_charge_for_another_user(self, client, ledger):
        ledger.storage.add_user(6, "tok-6", basis=100)
        response = client.post("/api/charge", json={"userId": 6, "charCount": 10}, headers=AUTH)
        assert response.status_code == 401
        assert ledger.get_balances(6).basis == 100

    def test_service_token_charges_named_user(self, ledger):
        ledger.service_token = "svc-secret"
        client = TestClient(create_app(engine=ledger, registry=ProviderRegistry({}, {}), config=Settings()))
        response = client.post(
            "/api/charge",
            json={"userId": USER_ID, "charCount": 10},
            headers={"Authorization": "Bearer svc-secret"},
        )
        assert response.status_code == 200
        assert response.json()["remaining"] == 90

        unknown = client.post(
            "/api/charge",
            json={"userId": 999, "charCount": 10},
            headers={"Authorization": "Bearer svc-secret"},
        )
        assert unknown.status_code == 404

    def test_idempotent_retry(self, client):
        payload = {"charCount": 10, "referenceTxId": "retry-9"}
        first = client.post("/api/charge", json=payload, headers=AUTH).json()
        second = client.post("/api/charge", json=payload, headers=AUTH).json()
        assert second["existing"] is True
        assert second["deductionId"] == first["deductionId"]

    def test_reference_conflict(self, client):
        client.post("/api/charge", json={"charCount": 10, "referenceTxId": "ref-x"}, headers=AUTH)
        response = client.post("/api/charge", json={"charCount": 20, "referenceTxId": "ref-x"}, headers=AUTH)
        assert response.status_code == 409

    @pytest.mark.parametrize("payload,headers,status_code", [
        ({"charCount": 10}, {"Authorization": "Bearer bogus"}, 401),
        ({"charCount": 0}, AUTH, 400),
    ])
    def test_rejections(self, client, payload, headers, status_code):
        assert client.post("/api/charge", json=payload, headers=headers).status_code == status_code


class TestPaidEndpoints:
    """Tests for the TTS and AI endpoints."""

    def test_tts_returns_audio(self, client, ledger):
        response = client.post("/api/tts/generate", json={"provider": "fake", "text": "hello", "voiceId": "v"}, headers=AUTH)
        assert response.status_code == 200
        assert response.content == b"ID3hello"
        assert response.headers["content-type"] == "audio/mpeg"
        assert ledger.get_balances(USER_ID).basis == 95

    def test_tts_requires_auth(self, client):
        response = client.post("/api/tts/generate", json={"provider": "fake", "text": "hello", "voiceId": "v"})
        assert response.status_code == 401

    def test_tts_missing_voice(self, client):
        response = client.post("/api/tts/generate", json={"provider": "fake", "text": "hello"}, headers=AUTH)
        assert response.status_code == 400

    def test_tts_insufficient(self, client):
        response = client.post("/api/tts/generate", json={"provider": "fake", "text": "x" * 150, "voiceId": "v"}, headers=AUTH)
        assert response.status_code == 402
        assert response.json()["balance"] == 100

    def test_tts_provider_failure_refunded(self, client, ledger):
        response = client.post("/api/tts/generate", json={"provider": "broken", "text": "hello", "voiceId": "v"}, headers=AUTH)
        assert response.status_code == 502
        assert response.json()["refunded"] is True
        assert ledger.get_balances(USER_ID).basis == 100

    def test_tts_unsupported_provider(self, client, ledger):
        response = client.post("/api/tts/generate", json={"provider": "nope", "text": "hello", "voiceId": "v"}, headers=AUTH)
        assert response.status_code == 400
        assert response.json()["refunded"] is True
        assert ledger.get_balances(USER_ID).basis == 100

    def test_tts_retry_with_same_reference(self, client, ledger):
        payload = {"provider": "fake", "text": "hello", "voiceId": "v", "referenceTxId": "tts-1"}
        assert client.post("/api/tts/generate", json=payload, headers=AUTH).status_code == 200
        assert client.post("/api/tts/generate", json=payload, headers=AUTH).status_code == 409
        assert ledger.get_balances(USER_ID).basis == 95

    def test_ai_process(self, client, ledger):
        response = client.post(
            "/api/ai/process",
            json={"provider": "fake", "text": "abc", "prompt": "shout"},
            headers=AUTH,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["processedText"] == "ABC"
        assert body["deductedCredits"] == 3
        assert body["deductionId"] is not None
        assert ledger.get_balances(USER_ID).basis == 97


class TestWebhookEndpoint:
    """Tests for POST /api/stripe/webhook."""

    def _event(self, event_id="evt_api"):
        return json.dumps({
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"user_id": "5", "char_quantity": "1000", "char_type": "basis"}}},
        })

    def _post(self, client, payload, header):
        return client.post("/api/stripe/webhook", content=payload, headers={"Stripe-Signature": header})

    def test_applied_then_duplicate(self, client, ledger):
        payload = self._event()
        header = sign(payload, int(NOW.timestamp()))

        first = self._post(client, payload, header)
        assert first.status_code == 200
        assert first.json() == {"received": True, "state": "APPLIED", "eventId": "evt_api"}

        second = self._post(client, payload, header)
        assert second.status_code == 200
        assert second.json()["state"] == "IGNORED_DUPLICATE"
        assert ledger.get_balances(USER_ID).basis == 1100

    def test_bad_signature(self, client):
        payload = self._event()
        response = self._post(client, payload, sign(payload, int(NOW.timestamp()), secret="whsec_wrong"))
        assert response.status_code == 400

    def test_unknown_user(self, client):
        payload = self._event().replace('"user_id": "5"', '"user_id": "404"')
        response = self._post(client, payload, sign(payload, int(NOW.timestamp())))
        assert response.status_code == 404

    def test_non_utf8_body_rejected(self, client):
        response = self._post(client, b"\xff\xfe{", sign("{", int(NOW.timestamp())))
        assert response.status_code == 400


class TestAccountEndpoints:
    """Tests for balances, history, token validation and voices."""

    def test_balances(self, client):
        response = client.get("/api/db/user", headers=AUTH)
        assert response.json() == {"user_id": USER_ID, "basis": 100, "premium": 0}

    def test_history(self, client):
        client.post("/api/charge", json={"charCount": 10}, headers=AUTH)
        client.post("/api/charge", json={"charCount": 20}, headers=AUTH)

        body = client.get("/api/ledger", params={"limit": 1}, headers=AUTH).json()
        assert body["total_count"] == 2
        assert [e["amount"] for e in body["entries"]] == [20]
        assert body["balances"]["basis"] == 70

    def test_validate_token(self, client):
        assert client.get("/api/auth/validate", headers=AUTH).json() == {"ok": True, "user": {"id": USER_ID}}
        assert client.get("/api/auth/validate", params={"token": TOKEN}).status_code == 200
        assert client.get("/api/auth/validate", params={"token": "bogus"}).status_code == 401
        assert client.get("/api/auth/validate").status_code == 400

    def test_voices(self, client):
        assert client.get("/api/voices").json() == {"ok": True, "items": [{"id": "elevenlabs:abc"}]}
        assert client.get("/api/voices", params={"provider": "polly"}).status_code == 400
