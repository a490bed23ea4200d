"""
EngageSync - email engagement webhooks reconciled onto Salesforce records.
Main FastAPI application entry point.

The lifespan owns the single BatchAccumulator: created at startup, drained at
shutdown so buffered events get one last flush.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from engagesync.api.router import api_router
from engagesync.config import Settings, get_settings
from engagesync.services.batching import BatchAccumulator
from engagesync.utils.dedup import close_redis
from engagesync.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from engagesync.workers.batch_processor import process_batch

logger = logging.getLogger("engagesync")

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tags each request's log lines with the caller's correlation id, or a fresh one."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response


def _warn_on_missing_config(settings: Settings) -> None:
    if not settings.sf_username or not settings.sf_password:
        logger.warning(
            "SF_USERNAME / SF_PASSWORD not set - every batch flush will fail to log in "
            "and its events will be dropped."
        )
    if not settings.webhook_verification_key:
        logger.warning(
            "WEBHOOK_VERIFICATION_KEY not set - accepting webhooks without verification. "
            "Set it and append ?token=<key> to the provider webhook URL."
        )


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.app_env,
            traces_sample_rate=0.1,
        )
        logger.info("Sentry error reporting enabled")
    except Exception as e:
        logger.warning("Sentry setup failed, continuing without it: %s", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "EngageSync starting (env=%s, policy=%s, batch_size=%d, batch_timeout_ms=%d)",
        settings.app_env, settings.resolution_policy,
        settings.batch_size, settings.batch_timeout_ms,
    )
    _warn_on_missing_config(settings)
    _init_sentry(settings)

    accumulator = BatchAccumulator(
        on_flush=process_batch,
        size_threshold=settings.batch_size,
        timeout_seconds=settings.batch_timeout_seconds,
    )
    app.state.accumulator = accumulator

    yield

    logger.info(
        "EngageSync stopping: %d buffered events, %d flushes in flight",
        accumulator.pending_count, accumulator.inflight_count,
    )
    await accumulator.drain(timeout=settings.shutdown_drain_seconds)
    app.state.accumulator = None
    await close_redis()
    logger.info("EngageSync stopped")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="EngageSync",
        description="Email engagement webhooks reconciled onto CRM records",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn on APP_HOST:PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "engagesync.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
