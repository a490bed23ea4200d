"""
Batch processor - the accumulator's flush handler.
CRITICAL: This runs AFTER the webhook has been acknowledged. Never in the request path.

One flush = one best-effort pass:
- log in to the CRM (auth failure drops the batch)
- aggregate the batch
- reconcile message-level and person-level records
- any other error drops the batch with a critical alert
No retries, no dead-letter queue: failures are logged and alerted only.
"""
import logging
from typing import Callable, Optional

from engagesync.config import get_settings
from engagesync.integrations.crm_base import CRMAuthError, CRMBase
from engagesync.integrations.salesforce import SalesforceCRM
from engagesync.services.aggregation import aggregate_batch
from engagesync.services.batching import Batch
from engagesync.services.reconciliation import ReconciliationReport, reconcile_batch
from engagesync.utils.alerting import AlertType, send_alert
from engagesync.utils.logging import set_correlation_id

logger = logging.getLogger(__name__)


def get_crm() -> CRMBase:
    """Build a CRM client from settings. A fresh session is used per batch."""
    settings = get_settings()
    return SalesforceCRM(
        login_url=settings.sf_login_url,
        username=settings.sf_username,
        password=settings.sf_password,
        security_token=settings.sf_security_token,
        api_version=settings.sf_api_version,
    )


async def process_batch(
    batch: Batch,
    crm_factory: Callable[[], CRMBase] = get_crm,
    policy: Optional[str] = None,
) -> Optional[ReconciliationReport]:
    """
    Reconcile one flushed batch onto the CRM.
    Returns the report, or None when the batch was dropped or had nothing to write.
    """
    # Each flush runs in its own task, so this only tags this batch's log lines
    set_correlation_id(batch.batch_id)
    try:
        return await _reconcile(batch, crm_factory, policy)
    except Exception as e:
        logger.exception(
            "Batch processing failed, dropping batch of %d events: %s", len(batch), str(e),
            extra={"batch_id": batch.batch_id},
        )
        await send_alert(
            AlertType.BATCH_PROCESSING_FAILED,
            f"Batch of {len(batch)} events failed: {type(e).__name__}: {e}",
            severity="critical",
            extra={"batch_id": batch.batch_id},
        )
        return None


async def _reconcile(
    batch: Batch,
    crm_factory: Callable[[], CRMBase],
    policy: Optional[str],
) -> Optional[ReconciliationReport]:
    policy = policy or get_settings().resolution_policy

    aggregates = aggregate_batch(batch.events)
    if aggregates.is_empty:
        logger.info("Batch of %d events has no engagement to reconcile", len(batch))
        return None

    logger.info(
        "Processing batch: %d events, %d message ids, %d emails",
        len(batch), len(aggregates.by_message_id), len(aggregates.by_email),
        extra={"batch_id": batch.batch_id},
    )

    crm = crm_factory()
    try:
        await crm.login()
    except CRMAuthError as e:
        logger.error(
            "CRM login failed, dropping batch of %d events: %s", len(batch), str(e),
            extra={"batch_id": batch.batch_id, "error_code": "auth_failed"},
        )
        await send_alert(
            AlertType.CRM_AUTH_FAILED,
            f"CRM login failed; batch of {len(batch)} events dropped: {e}",
            extra={"batch_id": batch.batch_id},
        )
        return None

    report = await reconcile_batch(crm, aggregates, policy=policy)

    logger.info(
        "Batch processing complete: %d records updated, %d failed, %d emails unmatched",
        report.updated_records, report.failed_records, len(report.unmatched_emails),
        extra={"batch_id": batch.batch_id},
    )

    if report.has_failures:
        details = [
            f"{s.sobject}: {s.failed}/{s.attempted} failed"
            for s in report.objects.values() if s.failed
        ] + report.flow_errors
        await send_alert(
            AlertType.CRM_UPDATE_PARTIAL_FAILURE,
            f"Batch write-back incomplete: {'; '.join(details)}",
            extra={"batch_id": batch.batch_id},
        )

    return report
