"""Value types for send-eligibility decisions and consent records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class FailurePolicy(str, Enum):
    """What :meth:`ComplianceGate.can_send` answers when a lookup fails."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class MessageType(str, Enum):
    TRANSACTIONAL = "transactional"
    PROMOTIONAL = "promotional"


class ConsentType(str, Enum):
    EXPRESS_WRITTEN = "express_written"
    EXPRESS_ORAL = "express_oral"
    IMPLIED = "implied"


class ConsentMethod(str, Enum):
    WEB_FORM = "web_form"
    PHONE = "phone"
    IN_PERSON = "in_person"
    SMS_REPLY = "sms_reply"


class DecisionReason:
    """Reason codes written to the compliance log."""

    PASSED = "passed_all_checks"
    OPTED_OUT = "opted_out"
    NO_CONSENT = "no_consent"
    QUIET_HOURS = "quiet_hours"
    INVALID_PHONE = "invalid_phone"
    LOOKUP_FAILED = "compliance_lookup_failed"


@dataclass(frozen=True)
class ComplianceDecision:
    """Outcome of a send-eligibility check."""

    allowed: bool
    reason: str = DecisionReason.PASSED

    @classmethod
    def allow(cls) -> ComplianceDecision:
        return cls(allowed=True, reason=DecisionReason.PASSED)

    @classmethod
    def deny(cls, reason: str) -> ComplianceDecision:
        return cls(allowed=False, reason=reason)


class ConsentRecord(BaseModel):
    """Consent captured by a web form, phone call, in person or SMS reply."""

    phone_number: str
    tenant_id: str
    consent_type: ConsentType
    consent_method: ConsentMethod
    purpose: list[str] = Field(default_factory=list)
    customer_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    consented_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
