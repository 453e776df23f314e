"""
Audit Models for PulseKeeper

Every significant action in the system is logged for audit purposes.
Moving user funds on a missed deadline is irreversible, so we need to be
able to reconstruct exactly why and when every transfer happened.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Grants
    GRANT_STORED = "grant_stored"
    GRANT_DEACTIVATED = "grant_deactivated"

    # Eligibility
    STATUS_READ_FAILED = "status_read_failed"

    # Redemption
    REDEMPTION_SKIPPED = "redemption_skipped"
    REDEMPTION_SUBMITTED = "redemption_submitted"
    REDEMPTION_SETTLED = "redemption_settled"
    REDEMPTION_FAILED = "redemption_failed"
    DISTRIBUTION_NOTIFY_FAILED = "distribution_notify_failed"

    # Batch runs
    DISTRIBUTION_RUN_STARTED = "distribution_run_started"
    DISTRIBUTION_RUN_COMPLETED = "distribution_run_completed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Who and what this is about
    user: Optional[str] = Field(
        default=None,
        description="User address the event relates to"
    )
    asset: Optional[str] = Field(
        default=None,
        description="Asset address the event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one distribution run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user": self.user,
            "asset": self.asset,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, user, asset,
         correlation_id, description, details_json, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.user or "",
            self.asset or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details) if self.details else "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.grant_stored(user, asset, cap, period)
        event = AuditEventBuilder.redemption_settled(user, asset, ...)
    """

    @staticmethod
    def grant_stored(
        user: str,
        asset: str,
        period_cap: int,
        period_length_seconds: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GRANT_STORED,
            user=user,
            asset=asset,
            description=f"Grant stored for {asset}",
            details={
                "period_cap": str(period_cap),
                "period_length_seconds": period_length_seconds,
            },
        )

    @staticmethod
    def grant_deactivated(user: str, asset: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GRANT_DEACTIVATED,
            user=user,
            asset=asset,
            description=f"Grant deactivated for {asset}",
        )

    @staticmethod
    def status_read_failed(user: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STATUS_READ_FAILED,
            severity=AuditSeverity.WARNING,
            user=user,
            description="Registry read failed; treating user as not distributing",
            error_message=error_message,
        )

    @staticmethod
    def redemption_skipped(
        user: str,
        reason: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REDEMPTION_SKIPPED,
            user=user,
            correlation_id=correlation_id,
            description=f"Redemption skipped: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def redemption_submitted(
        user: str,
        asset: str,
        amount: int,
        recipients: int,
        handle: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REDEMPTION_SUBMITTED,
            user=user,
            asset=asset,
            correlation_id=correlation_id,
            description=f"Redemption batch submitted to {recipients} recipients",
            details={
                "amount": str(amount),
                "recipients": recipients,
                "handle": handle,
            },
        )

    @staticmethod
    def redemption_settled(
        user: str,
        asset: str,
        amount: int,
        settlement_ref: str,
        period_start: datetime,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REDEMPTION_SETTLED,
            user=user,
            asset=asset,
            correlation_id=correlation_id,
            description=f"Redemption settled in {settlement_ref}",
            details={
                "amount": str(amount),
                "settlement_ref": settlement_ref,
                "period_start": period_start.isoformat(),
            },
        )

    @staticmethod
    def redemption_failed(
        user: str,
        asset: str,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REDEMPTION_FAILED,
            severity=AuditSeverity.ERROR,
            user=user,
            asset=asset,
            correlation_id=correlation_id,
            description=f"Redemption failed for {asset}; period stays pending",
            error_message=error_message,
        )

    @staticmethod
    def distribution_notify_failed(
        user: str,
        asset: str,
        error_message: str,
        correlation_id: Optional[UUID],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DISTRIBUTION_NOTIFY_FAILED,
            severity=AuditSeverity.WARNING,
            user=user,
            asset=asset,
            correlation_id=correlation_id,
            description="Registry distribution record could not be written",
            error_message=error_message,
        )

    @staticmethod
    def distribution_run_started(
        users: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DISTRIBUTION_RUN_STARTED,
            correlation_id=correlation_id,
            description=f"Distribution run started over {users} users",
            details={"users": users},
        )

    @staticmethod
    def distribution_run_completed(
        users_checked: int,
        users_distributing: int,
        errors: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DISTRIBUTION_RUN_COMPLETED,
            severity=AuditSeverity.WARNING if errors else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=(
                f"Distribution run completed: {users_distributing}/{users_checked} "
                f"users distributing, {errors} errors"
            ),
            details={
                "users_checked": users_checked,
                "users_distributing": users_distributing,
                "errors": errors,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
        user: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            user=user,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
