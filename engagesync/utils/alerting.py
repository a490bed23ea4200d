"""
Operator alerts for batch write-back problems.

Every alert is logged at ERROR (or CRITICAL). When ALERT_WEBHOOK_URL is set
it is also posted to that Discord/Slack incoming webhook. Each alert type has
a cooldown, so a persistent failure produces one alert per window instead of
one per batch. Cooldowns live in Redis when REDIS_URL is set, otherwise in
this process.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class AlertType:
    CRM_AUTH_FAILED = "crm_auth_failed"
    CRM_UPDATE_PARTIAL_FAILURE = "crm_update_partial_failure"
    BATCH_PROCESSING_FAILED = "batch_processing_failed"


DEFAULT_COOLDOWN_SECONDS = 300

COOLDOWN_SECONDS: dict[str, int] = {
    # Field/validation errors repeat on every batch until the org is fixed
    AlertType.CRM_UPDATE_PARTIAL_FAILURE: 900,
}

SEVERITY_ICONS = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}

# alert_type -> monotonic expiry, used when Redis is unavailable
_local_cooldowns: dict[str, float] = {}


def cooldown_for(alert_type: str) -> int:
    return COOLDOWN_SECONDS.get(alert_type, DEFAULT_COOLDOWN_SECONDS)


def format_alert(
    alert_type: str,
    message: str,
    severity: str = "error",
    correlation_id: Optional[str] = None,
    extra: Optional[dict] = None,
) -> str:
    """Markdown body understood by both Discord and Slack."""
    lines = [f"{SEVERITY_ICONS.get(severity, chr(0x2139))} **{alert_type}**", message]
    if correlation_id:
        lines.append(f"`correlation_id: {correlation_id}`")
    lines.extend(f"`{key}: {value}`" for key, value in (extra or {}).items())
    return "\n".join(lines)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """Log and forward one alert unless its type is cooling down. Never raises."""
    if not await _acquire_cooldown(alert_type):
        logger.debug("Alert %s suppressed by cooldown", alert_type)
        return

    from engagesync.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    level = logging.CRITICAL if severity == "critical" else logging.ERROR
    suffix = f" (correlation_id={cid})" if cid else ""
    logger.log(level, "ALERT [%s]: %s%s", alert_type, message, suffix)

    await _post_webhook(format_alert(alert_type, message, severity, cid, extra))


async def _acquire_cooldown(alert_type: str) -> bool:
    """True when the caller may send. Marks the type as cooling down."""
    cooldown = cooldown_for(alert_type)
    try:
        from engagesync.utils.dedup import get_redis
        redis = await get_redis()
        acquired = await redis.set(f"engagesync:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Redis unavailable for alert cooldown, using process memory: %s", str(e))

    now = time.monotonic()
    if _local_cooldowns.get(alert_type, 0.0) > now:
        return False
    _local_cooldowns[alert_type] = now + cooldown
    return True


async def _post_webhook(content: str) -> None:
    """POST to ALERT_WEBHOOK_URL. "content" is read by Discord, "text" by Slack."""
    try:
        from engagesync.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json={"content": content, "text": content})
            response.raise_for_status()
    except Exception as e:
        logger.warning("Failed to send webhook alert: %s", str(e))
