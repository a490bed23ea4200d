"""
Resolution & reconciliation - applies batch aggregates onto CRM records.

Two independent flows per batch, run in order, each failing on its own:

1. Message level: EmailMessage records matched by MessageIdentifier.
2. Person level: each email resolves to Lead / Contact / Account records
   according to the deployment's resolution policy:

   - lead_only: unconverted Leads only.
   - precedence: Account (email domain == normalized Account website domain),
     else Contact (email match), else unconverted Lead. An email matched to an
     Account or Contact never touches a Lead.
   - lead_with_account_rollup: unconverted Leads, plus an additive rollup of
     Contact engagement onto each Contact's parent Account.

Every update is read-then-write: current counters are fetched right before
merging, counters only ever increase, and "last" timestamps only move forward.
There is no locking across concurrent batches, so two flushes touching the
same record can still lose an update.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from engagesync.integrations import salesforce_fields as sf
from engagesync.integrations.crm_base import CRMBase, RecordResult
from engagesync.services.aggregation import BatchAggregates, EmailAggregate, MessageAggregate
from engagesync.utils.domains import email_domain, normalize_email, website_domain

logger = logging.getLogger(__name__)

POLICY_LEAD_ONLY = "lead_only"
POLICY_PRECEDENCE = "precedence"
POLICY_LEAD_WITH_ACCOUNT_ROLLUP = "lead_with_account_rollup"

SOQL_IN_CHUNK_SIZE = 200


# === REPORTING ===

@dataclass
class ObjectUpdateSummary:
    sobject: str
    attempted: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ReconciliationReport:
    """What one batch's reconciliation did. Used for logging and alerting."""
    policy: str
    objects: dict[str, ObjectUpdateSummary] = field(default_factory=dict)
    unmatched_emails: list[str] = field(default_factory=list)
    flow_errors: list[str] = field(default_factory=list)

    def record_results(self, sobject: str, results: list[RecordResult]) -> ObjectUpdateSummary:
        summary = self.objects.setdefault(sobject, ObjectUpdateSummary(sobject=sobject))
        summary.attempted += len(results)
        for result in results:
            if result.success:
                summary.updated += 1
            else:
                summary.failed += 1
                summary.errors.append(f"{result.record_id}: {'; '.join(result.errors)}")
        return summary

    @property
    def failed_records(self) -> int:
        return sum(s.failed for s in self.objects.values())

    @property
    def updated_records(self) -> int:
        return sum(s.updated for s in self.objects.values())

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_records or self.flow_errors)


# === MERGE RULES ===

def _is_newer(candidate: Optional[datetime], current: Optional[datetime]) -> bool:
    return candidate is not None and (current is None or candidate > current)


def _count(value) -> int:
    """Remote numeric fields come back as None, int or float."""
    try:
        return int(float(value)) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def merge_clicked_urls(existing: Optional[str], new_urls: Iterable[str]) -> str:
    """
    Deduplicated union of stored and new URLs, stored ones first, joined with
    "; " and cut at the field length. Trailing URLs may be lost to truncation.

    Stored values are split on "; " so a ";" inside a URL survives. Values
    written without the space fall back to a bare ";" split.
    """
    stored = existing or ""
    separator = sf.LINKS_CLICKED_SEPARATOR if sf.LINKS_CLICKED_SEPARATOR in stored else ";"
    merged: list[str] = []
    for url in stored.split(separator):
        url = url.strip()
        if url and url not in merged:
            merged.append(url)
    for url in new_urls:
        url = (url or "").strip()
        if url and url not in merged:
            merged.append(url)
    return sf.LINKS_CLICKED_SEPARATOR.join(merged)[:sf.LINKS_CLICKED_MAX_LENGTH]


def build_message_update(record: dict, aggregate: MessageAggregate) -> Optional[dict]:
    """Changes for one EmailMessage record, or None when nothing changes."""
    update: dict = {}

    if aggregate.opens:
        update[sf.OPEN_COUNT] = _count(record.get(sf.OPEN_COUNT)) + len(aggregate.opens)
        if not record.get(sf.FIRST_OPENED_DATE):
            update[sf.FIRST_OPENED_DATE] = sf.format_sf_datetime(aggregate.first_open)

    if aggregate.clicks:
        update[sf.CLICK_COUNT] = _count(record.get(sf.CLICK_COUNT)) + len(aggregate.clicks)
        last_click = aggregate.last_click
        if _is_newer(last_click.occurred_at, sf.parse_sf_datetime(record.get(sf.LAST_CLICKED_DATE))):
            update[sf.LAST_CLICKED_DATE] = sf.format_sf_datetime(last_click.occurred_at)
        links = merge_clicked_urls(record.get(sf.LINKS_CLICKED), aggregate.clicked_urls)
        if links != (record.get(sf.LINKS_CLICKED) or ""):
            update[sf.LINKS_CLICKED] = links

    # Bounce overwrites whatever is stored; no comparison against the remote value
    bounce = aggregate.latest_bounce
    if bounce is not None:
        update[sf.BOUNCE_DATE] = sf.format_sf_datetime(bounce.occurred_at)
        update[sf.BOUNCE_REASON] = bounce.reason

    if not update:
        return None
    return {"Id": record["Id"], **update}


def build_person_update(record: dict, aggregate: EmailAggregate) -> Optional[dict]:
    """Changes for one Lead/Contact/Account record, or None when nothing changes."""
    update: dict = {}

    if aggregate.total_opens:
        update[sf.EMAIL_OPEN_COUNT] = _count(record.get(sf.EMAIL_OPEN_COUNT)) + aggregate.total_opens
        if _is_newer(aggregate.last_open_at, sf.parse_sf_datetime(record.get(sf.LAST_EMAIL_OPENED_DATE))):
            update[sf.LAST_EMAIL_OPENED_DATE] = sf.format_sf_datetime(aggregate.last_open_at)

    if aggregate.total_clicks:
        update[sf.EMAIL_CLICK_COUNT] = _count(record.get(sf.EMAIL_CLICK_COUNT)) + aggregate.total_clicks
        if _is_newer(aggregate.last_click_at, sf.parse_sf_datetime(record.get(sf.LAST_EMAIL_CLICKED_DATE))):
            update[sf.LAST_EMAIL_CLICKED_DATE] = sf.format_sf_datetime(aggregate.last_click_at)
            if aggregate.last_click_url:
                update[sf.LAST_URL_CLICKED] = aggregate.last_click_url

    if _is_newer(aggregate.last_bounce_at, sf.parse_sf_datetime(record.get(sf.LAST_EMAIL_BOUNCE))):
        update[sf.LAST_EMAIL_BOUNCE] = sf.format_sf_datetime(aggregate.last_bounce_at)
        update[sf.EMAIL_BOUNCE_REASON] = aggregate.bounce_reason

    if not update:
        return None
    return {"Id": record["Id"], **update}


# === REMOTE HELPERS ===

def _chunks(values: list[str], size: int = SOQL_IN_CHUNK_SIZE) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


async def _query_in(
    crm: CRMBase,
    sobject: str,
    fields: Iterable[str],
    match_field: str,
    values: Iterable[str],
    extra_where: str = "",
) -> list[dict]:
    """SELECT fields FROM sobject WHERE match_field IN (...), chunked."""
    unique = list(dict.fromkeys(v for v in values if v))
    if not unique:
        return []
    select = ", ".join(dict.fromkeys(fields))
    records: list[dict] = []
    for chunk in _chunks(unique):
        soql = f"SELECT {select} FROM {sobject} WHERE {match_field} IN {sf.soql_in(chunk)}"
        if extra_where:
            soql += f" AND {extra_where}"
        records.extend(await crm.query(soql))
    return records


@dataclass
class _Target:
    """One remote record and the engagement to add to it."""
    record: dict
    aggregate: EmailAggregate
    emails: set[str] = field(default_factory=set)


def _add_target(targets: dict[str, _Target], record: dict, email: str, aggregate: EmailAggregate) -> None:
    """Attach an email's aggregate to a record; each email counts once per record."""
    target = targets.get(record["Id"])
    if target is None:
        targets[record["Id"]] = _Target(
            record=record,
            aggregate=EmailAggregate.combine(email, [aggregate]),
            emails={email},
        )
    elif email not in target.emails:
        target.aggregate.merge(aggregate)
        target.emails.add(email)


async def _apply_person_updates(
    crm: CRMBase,
    sobject: str,
    targets: dict[str, _Target],
    report: ReconciliationReport,
    refetch: bool = False,
) -> None:
    """Merge aggregates onto the targets' current counters and bulk update."""
    if not targets:
        return

    if refetch:
        # Targets found only by reference carry no counters; merge onto fresh rows only
        current = await _query_in(crm, sobject, sf.PERSON_FIELDS, "Id", list(targets))
        fetched: dict[str, _Target] = {}
        for record in current:
            target = targets.get(record.get("Id"))
            if target is not None:
                target.record = record
                fetched[record["Id"]] = target
        missing = set(targets) - set(fetched)
        if missing:
            logger.warning(
                "%d %s record(s) vanished before update: %s",
                len(missing), sobject, ", ".join(sorted(missing)),
            )
        targets = fetched

    updates = []
    for target in targets.values():
        update = build_person_update(target.record, target.aggregate)
        if update:
            updates.append(update)

    if not updates:
        logger.info("No %s changes to write", sobject)
        return

    results = await crm.update(sobject, updates)
    summary = report.record_results(sobject, results)
    _log_summary(summary)


def _log_summary(summary: ObjectUpdateSummary) -> None:
    if summary.failed:
        logger.error(
            "%s bulk update: %d updated, %d failed: %s",
            summary.sobject, summary.updated, summary.failed, " | ".join(summary.errors),
            extra={"sobject": summary.sobject},
        )
    else:
        logger.info(
            "Updated %d %s records", summary.updated, summary.sobject,
            extra={"sobject": summary.sobject},
        )


def _group_by_email(by_email: dict[str, EmailAggregate]) -> dict[str, EmailAggregate]:
    """Key aggregates by normalized email, combining case variants."""
    grouped: dict[str, list[EmailAggregate]] = {}
    for email, aggregate in by_email.items():
        key = normalize_email(email)
        if key:
            grouped.setdefault(key, []).append(aggregate)
    return {key: EmailAggregate.combine(key, aggs) for key, aggs in grouped.items()}


async def _find_unconverted_leads(crm: CRMBase, emails: Iterable[str]) -> list[dict]:
    return await _query_in(
        crm, sf.LEAD, ("Email",) + sf.PERSON_FIELDS, "Email", emails,
        extra_where="IsConverted = false",
    )


def _report_unmatched(report: ReconciliationReport, emails: Iterable[str], matched: set[str]) -> None:
    unmatched = sorted(e for e in emails if e not in matched)
    report.unmatched_emails.extend(unmatched)
    if unmatched:
        logger.warning(
            "%d email(s) not matched to any %s target: %s",
            len(unmatched), report.policy, ", ".join(unmatched),
        )


# === MESSAGE-LEVEL FLOW ===

async def reconcile_messages(
    crm: CRMBase,
    by_message_id: dict[str, MessageAggregate],
    report: ReconciliationReport,
) -> None:
    """Add batch engagement onto EmailMessage records matched by message id."""
    if not by_message_id:
        return

    records = await _query_in(
        crm, sf.EMAIL_MESSAGE, sf.MESSAGE_FIELDS, sf.MESSAGE_IDENTIFIER, list(by_message_id),
    )

    updates = []
    for record in records:
        aggregate = by_message_id.get(record.get(sf.MESSAGE_IDENTIFIER))
        if aggregate is None:
            continue
        update = build_message_update(record, aggregate)
        if update:
            updates.append(update)

    logger.info(
        "Matched %d of %d message ids to %s records",
        len(records), len(by_message_id), sf.EMAIL_MESSAGE,
    )
    if not updates:
        return

    results = await crm.update(sf.EMAIL_MESSAGE, updates)
    _log_summary(report.record_results(sf.EMAIL_MESSAGE, results))


# === PERSON-LEVEL FLOW ===

async def _reconcile_lead_only(crm: CRMBase, by_email: dict[str, EmailAggregate], report: ReconciliationReport) -> None:
    leads: dict[str, _Target] = {}
    matched: set[str] = set()
    for record in await _find_unconverted_leads(crm, by_email):
        email = normalize_email(record.get("Email"))
        if email in by_email:
            _add_target(leads, record, email, by_email[email])
            matched.add(email)

    _report_unmatched(report, by_email, matched)
    await _apply_person_updates(crm, sf.LEAD, leads, report)


async def _reconcile_precedence(crm: CRMBase, by_email: dict[str, EmailAggregate], report: ReconciliationReport) -> None:
    # Step 1: Account by website domain
    accounts_by_domain: dict[str, dict] = {}
    account_records = await crm.query(
        f"SELECT Id, Website FROM {sf.ACCOUNT} WHERE Website != null "
        f"LIMIT {sf.ACCOUNT_DOMAIN_SCAN_LIMIT}"
    )
    for record in account_records:
        domain = website_domain(record.get("Website"))
        if domain and domain not in accounts_by_domain:
            accounts_by_domain[domain] = record

    accounts: dict[str, _Target] = {}
    remaining: list[str] = []
    for email, aggregate in by_email.items():
        account = accounts_by_domain.get(email_domain(email) or "")
        if account is not None:
            logger.info("Email %s belongs to Account %s (domain match)", email, account["Id"])
            _add_target(accounts, account, email, aggregate)
        else:
            remaining.append(email)

    # Step 2: Contact by email, for emails not claimed by an Account
    contacts: dict[str, _Target] = {}
    contact_emails: set[str] = set()
    for record in await _query_in(crm, sf.CONTACT, ("Email",) + sf.PERSON_FIELDS, "Email", remaining):
        email = normalize_email(record.get("Email"))
        if email in by_email and email in remaining:
            _add_target(contacts, record, email, by_email[email])
            contact_emails.add(email)

    # Step 3: Lead for whatever is left
    lead_candidates = [e for e in remaining if e not in contact_emails]
    leads: dict[str, _Target] = {}
    lead_emails: set[str] = set()
    for record in await _find_unconverted_leads(crm, lead_candidates):
        email = normalize_email(record.get("Email"))
        if email in lead_candidates:
            _add_target(leads, record, email, by_email[email])
            lead_emails.add(email)

    account_emails = set(by_email) - set(remaining)
    _report_unmatched(report, by_email, account_emails | contact_emails | lead_emails)

    await _apply_person_updates(crm, sf.ACCOUNT, accounts, report, refetch=True)
    await _apply_person_updates(crm, sf.CONTACT, contacts, report)
    await _apply_person_updates(crm, sf.LEAD, leads, report)


async def _reconcile_lead_with_account_rollup(
    crm: CRMBase, by_email: dict[str, EmailAggregate], report: ReconciliationReport,
) -> None:
    leads: dict[str, _Target] = {}
    matched: set[str] = set()
    for record in await _find_unconverted_leads(crm, by_email):
        email = normalize_email(record.get("Email"))
        if email in by_email:
            _add_target(leads, record, email, by_email[email])
            matched.add(email)

    # Contacts roll their engagement up to the parent Account, independent of Leads
    accounts: dict[str, _Target] = {}
    for record in await _query_in(crm, sf.CONTACT, ("Id", "Email", "AccountId"), "Email", by_email):
        email = normalize_email(record.get("Email"))
        account_id = record.get("AccountId")
        if account_id and email in by_email:
            _add_target(accounts, {"Id": account_id}, email, by_email[email])
            matched.add(email)

    _report_unmatched(report, by_email, matched)
    await _apply_person_updates(crm, sf.ACCOUNT, accounts, report, refetch=True)
    await _apply_person_updates(crm, sf.LEAD, leads, report)


_POLICIES = {
    POLICY_LEAD_ONLY: _reconcile_lead_only,
    POLICY_PRECEDENCE: _reconcile_precedence,
    POLICY_LEAD_WITH_ACCOUNT_ROLLUP: _reconcile_lead_with_account_rollup,
}


async def reconcile_people(
    crm: CRMBase,
    by_email: dict[str, EmailAggregate],
    report: ReconciliationReport,
) -> None:
    """Resolve emails to person-level records per report.policy and update them."""
    grouped = _group_by_email(by_email)
    if not grouped:
        return
    await _POLICIES[report.policy](crm, grouped, report)


# === ENTRY POINT ===

async def reconcile_batch(
    crm: CRMBase,
    aggregates: BatchAggregates,
    policy: str = POLICY_PRECEDENCE,
) -> ReconciliationReport:
    """
    Run both flows for one batch. A failure in one flow is logged and
    recorded in the report; it does not stop or roll back the other.
    """
    if policy not in _POLICIES:
        raise ValueError(f"Unknown resolution policy: {policy}")

    report = ReconciliationReport(policy=policy)

    try:
        await reconcile_messages(crm, aggregates.by_message_id, report)
    except Exception as e:
        logger.error("EmailMessage reconciliation failed: %s", str(e), exc_info=True)
        report.flow_errors.append(f"message: {e}")

    try:
        await reconcile_people(crm, aggregates.by_email, report)
    except Exception as e:
        logger.error("Person-level reconciliation failed: %s", str(e), exc_info=True)
        report.flow_errors.append(f"person: {e}")

    return report
