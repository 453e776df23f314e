"""
Data Models Package

This package contains all Pydantic models used in PulseKeeper.
All data flowing through the system must conform to these schemas.
"""

from pulsekeeper.models.grant import (
    BPS_DENOMINATOR,
    NATIVE_ASSET,
    ZERO_ADDRESS,
    Allowance,
    AllowanceSummary,
    AllowanceView,
    AssetOutcome,
    BackupAllocation,
    Distribution,
    DistributionRunReport,
    Grant,
    GrantRequest,
    OutcomeStatus,
    PendingSubmission,
    RedemptionRecord,
    RedemptionResult,
    Settlement,
    SettlementStatus,
    TransferInstruction,
    UserStatus,
    ensure_utc,
    normalize_address,
    utc_now,
)
from pulsekeeper.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Constants and helpers
    "BPS_DENOMINATOR",
    "NATIVE_ASSET",
    "ZERO_ADDRESS",
    "ensure_utc",
    "normalize_address",
    "utc_now",
    # Grant and redemption models
    "Allowance",
    "AllowanceSummary",
    "AllowanceView",
    "AssetOutcome",
    "BackupAllocation",
    "Distribution",
    "DistributionRunReport",
    "Grant",
    "GrantRequest",
    "OutcomeStatus",
    "PendingSubmission",
    "RedemptionRecord",
    "RedemptionResult",
    "Settlement",
    "SettlementStatus",
    "TransferInstruction",
    "UserStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
