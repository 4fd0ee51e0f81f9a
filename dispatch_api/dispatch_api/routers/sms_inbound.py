"""Inbound SMS webhook: STOP / START / HELP keyword handling.

The messaging gateway posts form fields ``From`` and ``Body``.  STOP
keywords opt the number out of every tenant; START keywords lift the
opt-out and reactivate consent for the tenant named by the ``tenant`` query
parameter.  Replies are returned as TwiML.  Any other body is acknowledged
with an empty response.
"""

from __future__ import annotations

import logging
from typing import Annotated
from xml.sax.saxutils import escape

from credit_engine.audit.sink import DatabaseAuditSink
from credit_engine.compliance import ComplianceGate, ConsentMethod
from credit_engine.compliance.phone import mask_phone
from credit_engine.state.repository import TenantRepository
from fastapi import APIRouter, Form, Query
from fastapi.responses import Response

from dispatch_api.dependencies import ServiceSessionDep, SettingsDep
from dispatch_api.services.templates import HELP_REPLY, OPT_IN_REPLY, OPT_OUT_REPLY

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])

STOP_KEYWORDS: frozenset[str] = frozenset({"stop", "stopall", "unsubscribe", "end", "quit"})
START_KEYWORDS: frozenset[str] = frozenset({"start", "unstop"})
HELP_KEYWORDS: frozenset[str] = frozenset({"help"})


def twiml(message: str | None = None) -> Response:
    """Wrap *message* in a TwiML ``<Response>``; ``None`` yields an empty acknowledgement."""
    inner = f"\n  <Message>{escape(message)}</Message>\n" if message else ""
    body = f'<?xml version="1.0" encoding="UTF-8"?>\n<Response>{inner}</Response>'
    return Response(content=body, media_type="text/xml")


@router.post("/inbound")
async def inbound_sms(
    session: ServiceSessionDep,
    settings: SettingsDep,
    from_number: Annotated[str, Form(alias="From")],
    body: Annotated[str, Form(alias="Body")] = "",
    tenant: Annotated[str | None, Query(max_length=64)] = None,
) -> Response:
    """Handle an inbound message and reply according to its keyword."""
    keyword = body.strip().lower()
    if keyword not in STOP_KEYWORDS | START_KEYWORDS | HELP_KEYWORDS:
        return twiml()

    tenant_row = await TenantRepository(session).get(tenant) if tenant else None
    business_name = tenant_row.name if tenant_row is not None and tenant_row.name else "us"
    gate = ComplianceGate(
        session,
        failure_policy=settings.compliance_failure_policy,
        audit_sink=DatabaseAuditSink(session),
    )

    if keyword in STOP_KEYWORDS:
        deactivated = await gate.process_opt_out(from_number, "user_request", tenant_id=tenant)
        logger.info("Opt-out from %s (%d consent record(s) deactivated)", mask_phone(from_number), deactivated)
        return twiml(OPT_OUT_REPLY)

    if keyword in START_KEYWORDS:
        if tenant_row is None:
            logger.warning("START from %s without a known tenant; ignoring", mask_phone(from_number))
            return twiml()
        await gate.process_opt_in(from_number, tenant_row.id, ConsentMethod.SMS_REPLY.value)
        return twiml(OPT_IN_REPLY.format(business_name=business_name))

    return twiml(HELP_REPLY.format(business_name=business_name))
