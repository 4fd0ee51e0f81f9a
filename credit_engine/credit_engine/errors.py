"""Exception hierarchy shared by the ledger, compliance gate and dispatcher.

Expected business outcomes (insufficient credits, a denied send, a failed
provider call) are returned as values.  These exceptions cover the cases a
caller cannot treat as an ordinary result.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base exception for all credit-engine errors."""


class TenantNotFoundError(LedgerError):
    """The referenced tenant does not exist."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class BalanceUnavailableError(LedgerError):
    """The balance could not be read from the state store."""


class UpdateConflictError(LedgerError):
    """A balance write failed or collided with a concurrent writer."""


class InvalidPhoneNumberError(LedgerError):
    """A phone number has fewer than ten digits."""

    def __init__(self, phone_number: str) -> None:
        super().__init__("Phone number must contain at least 10 digits")
        self.phone_number = phone_number


class ProviderSendError(LedgerError):
    """The messaging provider rejected or failed to accept a message."""


class RunAbortedError(LedgerError):
    """A scheduler run lost connectivity to the state store."""

    def __init__(self, job: str, cause: BaseException, summary: Any = None) -> None:
        super().__init__(f"Job {job!r} aborted: {cause}")
        self.job = job
        self.summary = summary
