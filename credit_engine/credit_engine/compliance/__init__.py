"""Send-eligibility checks: opt-outs, consent and quiet hours."""

from credit_engine.compliance.gate import ComplianceGate, consent_disclosure, short_consent_text
from credit_engine.compliance.policy import (
    ComplianceDecision,
    ConsentMethod,
    ConsentRecord,
    ConsentType,
    DecisionReason,
    FailurePolicy,
    MessageType,
)

__all__ = [
    "ComplianceDecision",
    "ComplianceGate",
    "ConsentMethod",
    "ConsentRecord",
    "ConsentType",
    "DecisionReason",
    "FailurePolicy",
    "MessageType",
    "consent_disclosure",
    "short_consent_text",
]
