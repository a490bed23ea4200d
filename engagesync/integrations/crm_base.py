"""
Abstract CRM interface - the remote object store engagement is written back to.
CRITICAL: CRM operations NEVER run in the webhook response path.
They happen asynchronously when a batch is flushed.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


class CRMError(Exception):
    """A remote call failed as a whole (transport, HTTP status, bad response)."""


class CRMAuthError(CRMError):
    """Login was rejected or the session could not be established."""


@dataclass(frozen=True)
class RecordResult:
    """Outcome of one record inside a bulk update."""
    record_id: Optional[str]
    success: bool
    errors: list[str] = field(default_factory=list)


class CRMBase(ABC):
    """Abstract base class for CRM integrations."""

    @abstractmethod
    async def login(self) -> None:
        """
        Establish a session. Must be called before query/update.
        Raises CRMAuthError on rejected credentials.
        """
        ...

    @abstractmethod
    async def query(self, soql: str) -> list[dict]:
        """
        Run a query and return every matching record as a plain dict.
        Raises CRMError on failure.
        """
        ...

    @abstractmethod
    async def update(self, sobject: str, records: list[dict]) -> list[RecordResult]:
        """
        Bulk-update records of one object type. Each record carries its "Id".
        Returns one RecordResult per input record, in input order.
        Raises CRMError only when the call itself fails.
        """
        ...
