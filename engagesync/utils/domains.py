"""
Email / website domain normalization for matching emails to Accounts.
"""
import re
from typing import Optional

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*://")


def normalize_email(raw: Optional[str]) -> str:
    """Normalize a raw email-ish string to lowercase without surrounding spaces."""
    return str(raw or "").strip().lower()


def email_domain(email: Optional[str]) -> Optional[str]:
    """Domain part of an email address, lowercased. None if there isn't one."""
    normalized = normalize_email(email)
    if "@" not in normalized:
        return None
    domain = normalized.rsplit("@", 1)[1]
    return domain or None


def website_domain(website: Optional[str]) -> Optional[str]:
    """
    Reduce an Account website to a bare domain:
    "https://www.Example.com/about" -> "example.com"
    """
    text = str(website or "").strip().lower()
    if not text:
        return None
    text = _SCHEME_RE.sub("", text)
    if text.startswith("www."):
        text = text[4:]
    host = re.split(r"[/?#]", text, maxsplit=1)[0]
    host = host.split(":", 1)[0].rstrip(".")
    return host or None
