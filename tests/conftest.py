"""
Test configuration and fixtures.
Mocks all external services (Salesforce, Redis, alert webhooks).
"""
from unittest.mock import AsyncMock, patch

import pytest


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("engagesync.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_alert():
    """Mock send_alert in the batch processor - no alert side effects."""
    with patch("engagesync.workers.batch_processor.send_alert", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def sample_sendgrid_payload():
    """A realistic SendGrid Event Webhook body."""
    return [
        {
            "email": "jane@acme.com",
            "event": "open",
            "timestamp": 1773576000,
            "sg_message_id": "14c5d75ce93.dfd.64b469.filter0001.16648.5515E0B88.0",
            "sg_event_id": "sg_event_open_1",
        },
        {
            "email": "jane@acme.com",
            "event": "click",
            "timestamp": 1773576060,
            "url": "https://acme.example/pricing",
            "sg_message_id": "14c5d75ce93.dfd.64b469.filter0001.16648.5515E0B88.0",
            "sg_event_id": "sg_event_click_1",
        },
        {
            "email": "bob@other.com",
            "event": "bounce",
            "timestamp": 1773576120,
            "reason": "550 5.1.1 The email account does not exist",
            "sg_event_id": "sg_event_bounce_1",
        },
    ]
