"""State persistence layer using PostgreSQL (SQLite in local mode)."""

from credit_engine.state.database import get_engine, get_session, get_session_factory
from credit_engine.state.repository import (
    AuditRepository,
    CandidateRepository,
    ComplianceLogRepository,
    ConsentRepository,
    CreditTransactionRepository,
    OptOutRepository,
    TenantRepository,
)

__all__ = [
    "AuditRepository",
    "CandidateRepository",
    "ComplianceLogRepository",
    "ConsentRepository",
    "CreditTransactionRepository",
    "OptOutRepository",
    "TenantRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
