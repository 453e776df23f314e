"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the accounting logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just the operations the accounting engine needs.

CRITICAL: `record_redemption` is the only write that can break the
per-period cap, so every backend must implement it as one atomic
"re-sum the period, then append" step.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pulsekeeper.models.audit import AuditEvent
from pulsekeeper.models.grant import Grant, PendingSubmission, RedemptionRecord


class GrantStorageInterface(ABC):
    """
    Abstract interface for grant storage.

    Grants are keyed by (user, asset) and never hard-deleted.
    """

    @abstractmethod
    async def upsert_grant(self, grant: Grant) -> Grant:
        """
        Insert a grant, or update the existing (user, asset) row in place.

        On update the stored row keeps its id and created_at; every other
        field (including granted_at and active) is taken from `grant`.

        Returns:
            The grant as stored
        """
        pass

    @abstractmethod
    async def get_grant(self, user: str, asset: str) -> Optional[Grant]:
        """
        Get the grant for (user, asset), active or not.

        Returns:
            The grant if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_active_grants(self, user: str) -> list[Grant]:
        """List all active grants of a user."""
        pass

    @abstractmethod
    async def list_users_with_active_grants(self) -> list[str]:
        """List every user that has at least one active grant."""
        pass

    @abstractmethod
    async def deactivate_grant(self, user: str, asset: str) -> bool:
        """
        Soft-delete one grant.

        Returns:
            True if a grant was found (whether or not it was active)
        """
        pass

    @abstractmethod
    async def deactivate_all_grants(self, user: str) -> int:
        """
        Soft-delete every grant of a user.

        Returns:
            Number of grants that were active before the call
        """
        pass


class RedemptionStorageInterface(ABC):
    """
    Abstract interface for redemption records.

    Records are append-only - we never delete or modify them. Pending
    submissions are the exception: they live only between broadcast and
    a known settlement.
    """

    @abstractmethod
    async def record_redemption(
        self,
        record: RedemptionRecord,
        period_cap: int,
    ) -> RedemptionRecord:
        """
        Atomically append a record unless it would exceed the period cap.

        Args:
            record: The settled redemption
            period_cap: The grant's cap at the time of redemption

        Returns:
            The stored record

        Raises:
            CapExceededError: If the period's existing records plus this
                one would exceed `period_cap`
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get_redeemed_amount(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> int:
        """Sum of amounts recorded for (user, asset, period_start)."""
        pass

    @abstractmethod
    async def list_redemptions(self, user: str) -> list[RedemptionRecord]:
        """All records of a user, newest first."""
        pass

    @abstractmethod
    async def list_redemptions_in_period(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> list[RedemptionRecord]:
        """Records for (user, asset, period_start), newest first."""
        pass

    @abstractmethod
    async def save_pending(self, pending: PendingSubmission) -> PendingSubmission:
        """
        Remember a broadcast batch until its settlement is known.

        Replaces any pending submission with the same
        (user, asset, period_start).
        """
        pass

    @abstractmethod
    async def get_pending(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> Optional[PendingSubmission]:
        """The unresolved submission for (user, asset, period_start), if any."""
        pass

    @abstractmethod
    async def clear_pending(self, user: str, asset: str, period_start: datetime) -> bool:
        """
        Forget the pending submission for (user, asset, period_start).

        Returns:
            True if one was removed
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class CapExceededError(StorageError):
    """A redemption record would push a period over its cap."""

    def __init__(self, user: str, asset: str, period_start: datetime,
                 already_redeemed: int, amount: int, period_cap: int):
        self.user = user
        self.asset = asset
        self.period_start = period_start
        self.already_redeemed = already_redeemed
        self.amount = amount
        self.period_cap = period_cap
        super().__init__(
            f"Redeeming {amount} of {asset} for {user} would exceed the period cap "
            f"({already_redeemed} already redeemed of {period_cap} "
            f"in period starting {period_start.isoformat()})"
        )


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


def ensure_within_cap(record: RedemptionRecord, already_redeemed: int, period_cap: int) -> None:
    """Raise CapExceededError if `record` would push its period over `period_cap`."""
    if already_redeemed + record.amount > period_cap:
        raise CapExceededError(
            user=record.user,
            asset=record.asset,
            period_start=record.period_start,
            already_redeemed=already_redeemed,
            amount=record.amount,
            period_cap=period_cap,
        )
