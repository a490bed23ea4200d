"""
Tests for engagesync/api/webhooks.py - provider webhook ingress.
The accumulator is mocked; CRM write-back never happens in the request path.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from engagesync.api.router import api_router
from engagesync.schemas.event_envelope import EventType


def _settings(key: str = "", dedup: bool = False) -> MagicMock:
    return MagicMock(webhook_verification_key=key, event_dedup_enabled=dedup)


@pytest.fixture
def accumulator():
    return MagicMock()


@pytest.fixture
def settings():
    settings = _settings()
    with patch("engagesync.api.webhooks.get_settings", return_value=settings):
        yield settings


@pytest.fixture
def client(accumulator, settings):
    app = FastAPI()
    app.include_router(api_router)
    app.state.accumulator = accumulator
    return TestClient(app)


def _queued(accumulator) -> list:
    accumulator.extend.assert_called_once()
    return list(accumulator.extend.call_args.args[0])


class TestSendgridWebhook:
    def test_accepts_event_array(self, client, accumulator, sample_sendgrid_payload):
        response = client.post("/webhook/sendgrid", json=sample_sendgrid_payload)

        assert response.status_code == 200
        assert response.json() == {"status": "accepted", "received": 3, "queued": 3}
        events = _queued(accumulator)
        assert [e.event_type for e in events] == [EventType.OPEN, EventType.CLICK, EventType.BOUNCE]
        assert events[2].reason.startswith("550")

    def test_provider_name_case_insensitive(self, client, accumulator):
        response = client.post("/webhook/SendGrid", json=[])
        assert response.status_code == 200
        assert response.json()["received"] == 0

    def test_object_body_rejected(self, client, accumulator):
        response = client.post("/webhook/sendgrid", json={"event": "open"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payload"
        accumulator.extend.assert_not_called()

    def test_malformed_json_rejected(self, client, accumulator):
        response = client.post(
            "/webhook/sendgrid",
            content=b"[{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        accumulator.extend.assert_not_called()

    def test_non_object_item_rejects_whole_payload(self, client, accumulator):
        response = client.post("/webhook/sendgrid", json=[{"event": "open"}, 7])
        assert response.status_code == 400
        accumulator.extend.assert_not_called()

    def test_unknown_provider(self, client, accumulator):
        response = client.post("/webhook/mailgun", json=[])
        assert response.status_code == 404
        accumulator.extend.assert_not_called()

    def test_accumulator_failure_returns_500(self, client, accumulator):
        accumulator.extend.side_effect = RuntimeError("loop closed")

        response = client.post("/webhook/sendgrid", json=[{"event": "open", "timestamp": 1}])

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal error"

    def test_missing_accumulator_returns_500(self, settings):
        app = FastAPI()
        app.include_router(api_router)
        app.state.accumulator = None

        response = TestClient(app).post("/webhook/sendgrid", json=[])

        assert response.status_code == 500


class TestWebhookToken:
    def test_rejects_missing_token_when_key_set(self, client, accumulator, settings):
        settings.webhook_verification_key = "s3cret"

        response = client.post("/webhook/sendgrid", json=[])

        assert response.status_code == 403
        accumulator.extend.assert_not_called()

    def test_rejects_wrong_token(self, client, settings):
        settings.webhook_verification_key = "s3cret"
        response = client.post("/webhook/sendgrid?token=guess", json=[])
        assert response.status_code == 403

    def test_accepts_query_token(self, client, settings):
        settings.webhook_verification_key = "s3cret"
        response = client.post("/webhook/sendgrid?token=s3cret", json=[])
        assert response.status_code == 200

    def test_accepts_header_token(self, client, settings):
        settings.webhook_verification_key = "s3cret"
        response = client.post("/webhook/sendgrid", json=[], headers={"X-Webhook-Token": "s3cret"})
        assert response.status_code == 200


class TestEventDedupe:
    def test_duplicates_skipped_when_enabled(self, client, accumulator, settings, sample_sendgrid_payload):
        settings.event_dedup_enabled = True

        async def seen_before(event_id):
            return event_id == "sg_event_open_1"

        with patch("engagesync.api.webhooks.is_duplicate_event", side_effect=seen_before):
            response = client.post("/webhook/sendgrid", json=sample_sendgrid_payload)

        assert response.json() == {"status": "accepted", "received": 3, "queued": 2}
        assert [e.event_id for e in _queued(accumulator)] == ["sg_event_click_1", "sg_event_bounce_1"]

    def test_dedupe_not_consulted_when_disabled(self, client, sample_sendgrid_payload):
        with patch("engagesync.api.webhooks.is_duplicate_event", new_callable=AsyncMock) as mock_dup:
            client.post("/webhook/sendgrid", json=sample_sendgrid_payload)
        mock_dup.assert_not_called()

    def test_failed_accept_does_not_mark_events_seen(self, client, accumulator, settings):
        """A 500 leaves no seen-marker behind, so the provider's retry is queued."""
        settings.event_dedup_enabled = True
        fake_redis = FakeRedis()
        outcomes = iter([RuntimeError("event loop closed")])

        def extend_once_failing(events):
            error = next(outcomes, None)
            if error:
                raise error

        accumulator.extend.side_effect = extend_once_failing
        payload = [{"event": "open", "timestamp": 1, "sg_event_id": "e1", "email": "a@x.com"}]

        with patch("engagesync.utils.dedup.get_redis", AsyncMock(return_value=fake_redis)):
            first = client.post("/webhook/sendgrid", json=payload)
            retry = client.post("/webhook/sendgrid", json=payload)
            again = client.post("/webhook/sendgrid", json=payload)

        assert first.status_code == 500
        assert retry.status_code == 200
        assert retry.json() == {"status": "accepted", "received": 1, "queued": 1}
        assert again.json()["queued"] == 0
        assert [e.event_id for e in accumulator.extend.call_args_list[1].args[0]] == ["e1"]


class FakeRedis:
    """Dict-backed stand-in for the SET NX / DELETE calls the dedupe makes."""

    def __init__(self):
        self.store = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0
