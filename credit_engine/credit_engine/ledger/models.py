"""Return types of the credit ledger."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class DeductStatus(str, Enum):
    SUCCESS = "success"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    TENANT_NOT_FOUND = "tenant_not_found"


class Balance(BaseModel):
    """Snapshot of a tenant's two credit pools."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    monthly: int
    purchased: int
    used_this_month: int
    reset_date: date | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.monthly + self.purchased


class DeductResult(BaseModel):
    """Outcome of :meth:`CreditLedger.deduct`.

    ``remaining`` is the total balance after a successful deduction, or the
    unchanged total when the tenant could not cover the amount.
    """

    model_config = ConfigDict(frozen=True)

    status: DeductStatus
    amount: int
    remaining: int = 0
    balance: Balance | None = None

    @property
    def success(self) -> bool:
        return self.status is DeductStatus.SUCCESS


class CreditTransaction(BaseModel):
    """Read-only view of a ``credit_transactions`` row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    tenant_id: str
    amount: int
    operation: str
    feature: str
    balance_after: int
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime
