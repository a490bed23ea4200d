"""
Salesforce object and field names used by reconciliation, plus the SOQL and
datetime helpers that go with them. Custom fields (__c) must exist in the org.
"""
from datetime import datetime, timezone
from typing import Iterable, Optional

EMAIL_MESSAGE = "EmailMessage"
LEAD = "Lead"
CONTACT = "Contact"
ACCOUNT = "Account"

# EmailMessage engagement fields
MESSAGE_IDENTIFIER = "MessageIdentifier"
OPEN_COUNT = "Open_Count__c"
CLICK_COUNT = "Click_Count__c"
FIRST_OPENED_DATE = "First_Opened_Date__c"
LAST_CLICKED_DATE = "Last_Clicked_Date__c"
LINKS_CLICKED = "Links_Clicked__c"
BOUNCE_DATE = "Bounce_Date__c"
BOUNCE_REASON = "Bounce_Reason__c"

LINKS_CLICKED_MAX_LENGTH = 255
LINKS_CLICKED_SEPARATOR = "; "

# Person-level (Lead / Contact / Account) engagement fields
EMAIL_OPEN_COUNT = "Email_Open_Count__c"
EMAIL_CLICK_COUNT = "Email_Click_Count__c"
LAST_EMAIL_OPENED_DATE = "Last_Email_Opened_Date__c"
LAST_EMAIL_CLICKED_DATE = "Last_Email_Clicked_Date__c"
LAST_URL_CLICKED = "Last_URL_Clicked__c"
LAST_EMAIL_BOUNCE = "Last_Email_Bounce__c"
EMAIL_BOUNCE_REASON = "Email_Bounce_Reason__c"

MESSAGE_FIELDS = (
    "Id", MESSAGE_IDENTIFIER, OPEN_COUNT, CLICK_COUNT, FIRST_OPENED_DATE,
    LAST_CLICKED_DATE, LINKS_CLICKED, BOUNCE_DATE, BOUNCE_REASON,
)

PERSON_FIELDS = (
    "Id", EMAIL_OPEN_COUNT, EMAIL_CLICK_COUNT, LAST_EMAIL_OPENED_DATE,
    LAST_EMAIL_CLICKED_DATE, LAST_URL_CLICKED, LAST_EMAIL_BOUNCE, EMAIL_BOUNCE_REASON,
)

# Upper bound on Accounts scanned for website domains
ACCOUNT_DOMAIN_SCAN_LIMIT = 10000


def soql_quote(value: str) -> str:
    """Quote a string literal for SOQL."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def soql_in(values: Iterable[str]) -> str:
    """Render a SOQL IN list: ('a', 'b')."""
    return "(" + ", ".join(soql_quote(v) for v in values) + ")"


def parse_sf_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a Salesforce datetime ("2024-05-01T10:00:00.000+0000") to aware UTC.
    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    elif len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_sf_datetime(value: datetime) -> str:
    """Render an aware datetime the way Salesforce accepts it (ISO 8601, UTC, ms)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"
