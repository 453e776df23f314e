"""
Eligibility Monitor

Classifies a user as not registered, active (deadline in the future) or
distributing (deadline passed) by reading the registry.

CRITICAL: A failed read NEVER raises. It returns the conservative status
(not registered, not distributing) with the error attached, so a batch
run skips that user instead of failing for everyone.
"""

import asyncio
from datetime import datetime
from typing import Callable, Iterable, Optional

from pulsekeeper.audit import AuditLogger, get_logger
from pulsekeeper.models.grant import UserStatus, ensure_utc, normalize_address, utc_now
from pulsekeeper.services.chain.registry import RegistryInterface


logger = get_logger("pulsekeeper.eligibility")


class EligibilityMonitor:
    """
    Read-only deadline queries against the registry.

    `distributing` is the registry's own verdict; `deadline_passed` is
    the same question answered locally from the deadline, kept so the two
    can be compared when the registry's clock and ours disagree.
    """

    def __init__(
        self,
        registry: RegistryInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._registry = registry
        self._audit = audit_logger or AuditLogger()
        self._clock = clock

    async def status(self, user: str) -> UserStatus:
        """Deadline status of one user."""
        user = normalize_address(user)
        now = ensure_utc(self._clock())

        try:
            registered, distributing, deadline = await asyncio.gather(
                self._registry.is_registered(user),
                self._registry.is_distributing(user),
                self._registry.get_deadline(user),
            )
        except Exception as e:
            logger.warning("status_read_failed", user=user, error=str(e))
            await self._audit.log_status_read_failed(user=user, error_message=str(e))
            return UserStatus(user=user, checked_at=now, error=str(e))

        deadline = int(deadline)
        return UserStatus(
            user=user,
            registered=bool(registered),
            distributing=bool(distributing),
            deadline=deadline,
            deadline_passed=deadline > 0 and now.timestamp() > deadline,
            checked_at=now,
        )

    async def statuses(self, users: Iterable[str]) -> list[UserStatus]:
        """Statuses of many users, one at a time, in input order."""
        return [await self.status(user) for user in users]
