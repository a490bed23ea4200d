"""
Send a sample SendGrid Event Webhook batch to a running EngageSync server.

Usage:
    python scripts/send_sample_events.py
    python scripts/send_sample_events.py --email jane@acme.com --message-id abc123.filter001
    python scripts/send_sample_events.py --count 150 --token <WEBHOOK_VERIFICATION_KEY>
"""
import argparse
import asyncio
import logging
import time
import uuid

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:3000"


def build_events(email: str, message_id: str, count: int) -> list[dict]:
    """Open / click / bounce cycle for one recipient, repeated up to count events."""
    now = int(time.time())
    cycle = [
        {"event": "open"},
        {"event": "click", "url": "https://example.com/pricing"},
        {"event": "click", "url": "https://example.com/demo"},
        {"event": "processed"},
        {"event": "bounce", "reason": "550 5.1.1 mailbox unavailable"},
    ]
    events = []
    for i in range(count):
        event = dict(cycle[i % len(cycle)])
        event.update({
            "email": email,
            "timestamp": now - (count - i),
            "sg_message_id": message_id,
            "sg_event_id": uuid.uuid4().hex,
        })
        events.append(event)
    return events


async def send_events(base_url: str, events: list[dict], token: str = ""):
    params = {"token": token} if token else None
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{base_url}/webhook/sendgrid", json=events, params=params)
        logger.info("Webhook response: %s %s", resp.status_code, resp.text)
        return resp


def main():
    parser = argparse.ArgumentParser(description="Send sample SendGrid events")
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--email", default="test.lead@example.com")
    parser.add_argument("--message-id", default=f"{uuid.uuid4().hex[:22]}.filter0001")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    events = build_events(args.email, args.message_id, args.count)
    asyncio.run(send_events(args.base_url, events, args.token))


if __name__ == "__main__":
    main()
