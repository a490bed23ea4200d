"""
Salesforce CRM integration - SOAP partner login + REST API.

Auth: username + (password + security token) against the SOAP login endpoint.
The returned session id is used as a Bearer token on the REST API.
Bulk updates use sObject Collections with allOrNone=false so each record
succeeds or fails on its own.
All calls have a 10-second timeout.
"""
import logging
from typing import Optional
from urllib.parse import urlsplit
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import httpx

from engagesync.integrations.crm_base import CRMAuthError, CRMBase, CRMError, RecordResult

logger = logging.getLogger(__name__)

TIMEOUT = 10.0
COLLECTION_CHUNK_SIZE = 200  # sObject Collections hard limit per call

_PARTNER_NS = "urn:partner.soap.sforce.com"

_LOGIN_ENVELOPE = """<?xml version="1.0" encoding="utf-8" ?>
<env:Envelope xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xmlns:env="http://schemas.xmlsoap.org/soap/envelope/"
    xmlns:urn="urn:partner.soap.sforce.com">
  <env:Body>
    <urn:login>
      <urn:username>{username}</urn:username>
      <urn:password>{password}</urn:password>
    </urn:login>
  </env:Body>
</env:Envelope>"""


def _parse_login_response(body: str) -> tuple[str, str]:
    """Extract (session_id, instance_url) from a SOAP login response."""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as e:
        raise CRMAuthError(f"Unreadable login response: {e}") from e

    fault = root.find(".//faultstring")
    if fault is not None:
        raise CRMAuthError(f"Salesforce login rejected: {fault.text}")

    session_id = root.findtext(f".//{{{_PARTNER_NS}}}sessionId")
    server_url = root.findtext(f".//{{{_PARTNER_NS}}}serverUrl")
    if not session_id or not server_url:
        raise CRMAuthError("Salesforce login response missing sessionId/serverUrl")

    parts = urlsplit(server_url)
    return session_id, f"{parts.scheme}://{parts.netloc}"


class SalesforceCRM(CRMBase):
    """Salesforce REST API integration."""

    def __init__(
        self,
        login_url: str,
        username: str,
        password: str,
        security_token: str = "",
        api_version: str = "59.0",
    ):
        self.login_url = login_url.rstrip("/")
        self.username = username
        self.password = password
        self.security_token = security_token
        self.api_version = api_version
        self._session_id: Optional[str] = None
        self._instance_url: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self._session_id is not None

    async def login(self) -> None:
        """Log in via the SOAP partner endpoint (password + security token)."""
        if not self.username or not self.password:
            raise CRMAuthError("Salesforce credentials not configured")

        envelope = _LOGIN_ENVELOPE.format(
            username=escape(self.username),
            password=escape(self.password + self.security_token),
        )
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.post(
                    f"{self.login_url}/services/Soap/u/{self.api_version}",
                    content=envelope.encode("utf-8"),
                    headers={
                        "Content-Type": "text/xml; charset=UTF-8",
                        "SOAPAction": "login",
                    },
                )
        except httpx.HTTPError as e:
            raise CRMAuthError(f"Salesforce login request failed: {e}") from e

        # Faults come back as HTTP 500 with a SOAP body, so parse before checking status
        self._session_id, self._instance_url = _parse_login_response(response.text)
        logger.info("Connected to Salesforce (%s)", self._instance_url)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ):
        """Make an authenticated request to the Salesforce REST API."""
        if not self.is_authenticated:
            raise CRMAuthError("Not logged in to Salesforce")

        url = path if path.startswith("http") else f"{self._instance_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.request(
                    method,
                    url,
                    headers={
                        "Authorization": f"Bearer {self._session_id}",
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                    json=json,
                    params=params,
                )
                if response.status_code == 401:
                    raise CRMAuthError("Salesforce session rejected (401)")
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise CRMError(f"Salesforce {method} {path} failed: {e}") from e
        except ValueError as e:
            raise CRMError(f"Salesforce {method} {path} returned invalid JSON") from e

    async def query(self, soql: str) -> list[dict]:
        """Run a SOQL query, following nextRecordsUrl until done."""
        data = await self._request(
            "GET",
            f"/services/data/v{self.api_version}/query",
            params={"q": soql},
        )
        records = list(data.get("records", []))
        while not data.get("done", True) and data.get("nextRecordsUrl"):
            data = await self._request("GET", data["nextRecordsUrl"])
            records.extend(data.get("records", []))

        for record in records:
            record.pop("attributes", None)
        return records

    async def update(self, sobject: str, records: list[dict]) -> list[RecordResult]:
        """Update records via sObject Collections, 200 per call, allOrNone=false."""
        results: list[RecordResult] = []
        for start in range(0, len(records), COLLECTION_CHUNK_SIZE):
            chunk = records[start:start + COLLECTION_CHUNK_SIZE]
            payload = {
                "allOrNone": False,
                "records": [{"attributes": {"type": sobject}, **record} for record in chunk],
            }
            data = await self._request(
                "PATCH",
                f"/services/data/v{self.api_version}/composite/sobjects",
                json=payload,
            )
            if not isinstance(data, list) or len(data) != len(chunk):
                raise CRMError(f"Unexpected {sobject} bulk update response")

            for record, item in zip(chunk, data):
                errors = [
                    f"{err.get('statusCode', 'ERROR')}: {err.get('message', '')}".strip()
                    for err in item.get("errors") or []
                ]
                results.append(RecordResult(
                    record_id=item.get("id") or record.get("Id"),
                    success=bool(item.get("success")),
                    errors=errors,
                ))
        return results
