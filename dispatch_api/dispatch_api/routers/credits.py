"""Credit balance, history and pack-grant endpoints.

Thin wrappers over :class:`CreditLedger`.  The pack route receives the
payment processor's payment-completed event after checkout.
"""

from __future__ import annotations

import logging
from typing import Any

from credit_engine.audit.sink import DatabaseAuditSink
from credit_engine.errors import BalanceUnavailableError, TenantNotFoundError
from credit_engine.ledger import Balance, CreditLedger
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from dispatch_api.dependencies import TenantSessionDep, require_internal_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"], dependencies=[Depends(require_internal_token)])


class PackGrantRequest(BaseModel):
    """Request body for ``POST /credits/{tenant_id}/packs``."""

    pack_id: str = Field(..., description="Credit pack identifier, e.g. ``pack_medium``.")
    payment_ref: str | None = Field(default=None, max_length=256, description="Payment processor reference.")


@router.get("/{tenant_id}/balance", response_model=Balance)
async def get_balance(tenant_id: str, session: TenantSessionDep) -> Balance:
    """Return the tenant's monthly and purchased pools."""
    try:
        return await CreditLedger(session).get_balance(tenant_id)
    except TenantNotFoundError:
        raise HTTPException(status_code=404, detail="Tenant not found") from None
    except BalanceUnavailableError:
        raise HTTPException(status_code=503, detail="Balance temporarily unavailable") from None


@router.get("/{tenant_id}/transactions")
async def list_transactions(
    tenant_id: str,
    session: TenantSessionDep,
    limit: int = Query(default=50, ge=1, le=500, description="Maximum transactions to return"),
) -> dict[str, Any]:
    """Return the tenant's most recent credit transactions, newest first."""
    transactions = await CreditLedger(session).get_transaction_history(tenant_id, limit=limit)
    return {
        "tenant_id": tenant_id,
        "transactions": [t.model_dump(mode="json") for t in transactions],
    }


@router.post("/{tenant_id}/packs", response_model=Balance)
async def grant_pack(tenant_id: str, body: PackGrantRequest, session: TenantSessionDep) -> Balance:
    """Add a purchased credit pack to the tenant's purchased pool."""
    ledger = CreditLedger(session, audit_sink=DatabaseAuditSink(session), actor="payment_webhook")
    try:
        balance = await ledger.add_pack(tenant_id, body.pack_id, payment_ref=body.payment_ref)
    except TenantNotFoundError:
        raise HTTPException(status_code=404, detail="Tenant not found") from None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    logger.info("Granted %s to tenant %s", body.pack_id, tenant_id)
    return balance
