"""
Audit Logger

DESIGN DECISION: Every significant action in the system is logged.
This provides:
1. Complete traceability of every fund movement
2. Debugging capability
3. Operators can see why a user was (or wasn't) redeemed

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash a redemption if logging fails)
- Supports correlation IDs to trace related events
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from pulsekeeper.models.audit import AuditEvent, AuditEventBuilder
from pulsekeeper.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def get_logger(name: str):
    """Structured logger for a module."""
    return structlog.get_logger(name)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and operator visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("pulsekeeper.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_grant_stored(
        self,
        user: str,
        asset: str,
        period_cap: int,
        period_length_seconds: int,
    ) -> None:
        await self.log(AuditEventBuilder.grant_stored(
            user=user,
            asset=asset,
            period_cap=period_cap,
            period_length_seconds=period_length_seconds,
        ))

    async def log_grant_deactivated(self, user: str, asset: str) -> None:
        await self.log(AuditEventBuilder.grant_deactivated(user=user, asset=asset))

    async def log_status_read_failed(self, user: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.status_read_failed(
            user=user,
            error_message=error_message,
        ))

    async def log_redemption_skipped(
        self,
        user: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.redemption_skipped(
            user=user,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_redemption_submitted(
        self,
        user: str,
        asset: str,
        amount: int,
        recipients: int,
        handle: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.redemption_submitted(
            user=user,
            asset=asset,
            amount=amount,
            recipients=recipients,
            handle=handle,
            correlation_id=correlation_id,
        ))

    async def log_redemption_settled(
        self,
        user: str,
        asset: str,
        amount: int,
        settlement_ref: str,
        period_start: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.redemption_settled(
            user=user,
            asset=asset,
            amount=amount,
            settlement_ref=settlement_ref,
            period_start=period_start,
            correlation_id=correlation_id,
        ))

    async def log_redemption_failed(
        self,
        user: str,
        asset: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.redemption_failed(
            user=user,
            asset=asset,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_distribution_notify_failed(
        self,
        user: str,
        asset: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.distribution_notify_failed(
            user=user,
            asset=asset,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_run_started(self, users: int, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.distribution_run_started(
            users=users,
            correlation_id=correlation_id,
        ))

    async def log_run_completed(
        self,
        users_checked: int,
        users_distributing: int,
        errors: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.distribution_run_completed(
            users_checked=users_checked,
            users_distributing=users_distributing,
            errors=errors,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
        user: Optional[str] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
            user=user,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a distribution run or a manual redemption.
    Pass it through all subsequent operations.
    """
    return uuid4()
