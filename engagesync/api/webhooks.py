"""
Webhook endpoints - receive engagement events from email providers.
Each webhook normalizes its payload into CanonicalEvents and appends them to
the batch accumulator. The response never waits for CRM write-back.

Security / processing layers (in order):
1. Provider check
2. Token verification (when WEBHOOK_VERIFICATION_KEY is set)
3. Payload validation (must be a JSON array of objects)
4. Event dedupe (when EVENT_DEDUP_ENABLED)
5. Accumulation
"""
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from engagesync.config import get_settings
from engagesync.schemas.api_responses import WebhookAckResponse
from engagesync.services.batching import BatchAccumulator
from engagesync.services.normalizer import InvalidPayload, normalize_payload
from engagesync.utils.dedup import forget_event, is_duplicate_event

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])

SUPPORTED_PROVIDERS = frozenset({"sendgrid"})


def get_accumulator(request: Request) -> BatchAccumulator:
    """The process-wide accumulator owned by the app lifespan."""
    accumulator = getattr(request.app.state, "accumulator", None)
    if accumulator is None:
        logger.error("Webhook received before the batch accumulator was started")
        raise HTTPException(status_code=500, detail="Internal error")
    return accumulator


def _verify_webhook_token(request: Request) -> bool:
    """
    Verify the shared secret token, passed as ?token=<key> or X-Webhook-Token.
    Returns True when no verification key is configured.
    """
    verification_key = get_settings().webhook_verification_key
    if not verification_key:
        return True

    token = request.query_params.get("token", "")
    if not token:
        token = request.headers.get("X-Webhook-Token", "")

    if not token:
        logger.warning("Webhook missing verification token")
        return False

    return hmac.compare_digest(token, verification_key)


@router.post("/webhook/{provider}", response_model=WebhookAckResponse)
async def provider_webhook(
    provider: str,
    request: Request,
    accumulator: BatchAccumulator = Depends(get_accumulator),
):
    """
    Email provider Event Webhook - opens, clicks, bounces, drops.
    200 once events are queued, 400 when the body is not an array of events.
    """
    provider = provider.lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    if not _verify_webhook_token(request):
        logger.warning("Rejected %s webhook: invalid token", provider, extra={"provider": provider})
        raise HTTPException(status_code=403, detail="Invalid webhook token")

    try:
        body = await request.json()
        events = normalize_payload(body)
    except (InvalidPayload, ValueError) as e:
        logger.warning("Rejected %s webhook payload: %s", provider, str(e), extra={"provider": provider})
        raise HTTPException(status_code=400, detail="Invalid payload")

    marked: list[str] = []
    try:
        logger.info("Received %d events from %s", len(events), provider, extra={"provider": provider})

        if get_settings().event_dedup_enabled:
            fresh = []
            for event in events:
                if not await is_duplicate_event(event.event_id):
                    fresh.append(event)
                    if event.event_id:
                        marked.append(event.event_id)
            if len(fresh) != len(events):
                logger.info("Skipped %d duplicate events", len(events) - len(fresh))
            events = fresh

        accumulator.extend(events)
    except Exception as e:
        logger.exception("Webhook error: %s", str(e), extra={"provider": provider})
        # Nothing was queued, so the provider's retry must not look like a duplicate
        for event_id in marked:
            await forget_event(event_id)
        raise HTTPException(status_code=500, detail="Internal error")

    return WebhookAckResponse(received=len(body), queued=len(events))
