"""
In-Memory Storage Implementation

Used by the test-suite and for local runs without a spreadsheet.
Every method takes the same asyncio lock, so the conditional append in
`record_redemption` is atomic with respect to every other coroutine in
the process.
"""

import asyncio
from datetime import datetime
from typing import Optional

from pulsekeeper.models.audit import AuditEvent
from pulsekeeper.models.grant import (
    Grant,
    PendingSubmission,
    RedemptionRecord,
    ensure_utc,
    normalize_address,
    utc_now,
)
from pulsekeeper.services.storage.interface import (
    AuditStorageInterface,
    GrantStorageInterface,
    RedemptionStorageInterface,
    ensure_within_cap,
)


class InMemoryGrantStorage(GrantStorageInterface):
    """Grants held in a dict keyed by (user, asset)."""

    def __init__(self):
        self._grants: dict[tuple[str, str], Grant] = {}
        self._lock = asyncio.Lock()

    async def upsert_grant(self, grant: Grant) -> Grant:
        async with self._lock:
            key = (grant.user, grant.asset)
            existing = self._grants.get(key)
            if existing is not None:
                grant = grant.model_copy(
                    update={"id": existing.id, "created_at": existing.created_at}
                )
            self._grants[key] = grant
            return grant

    async def get_grant(self, user: str, asset: str) -> Optional[Grant]:
        key = (normalize_address(user), normalize_address(asset))
        async with self._lock:
            return self._grants.get(key)

    async def list_active_grants(self, user: str) -> list[Grant]:
        user = normalize_address(user)
        async with self._lock:
            return [
                g for (u, _), g in sorted(self._grants.items())
                if u == user and g.active
            ]

    async def list_users_with_active_grants(self) -> list[str]:
        async with self._lock:
            return sorted({g.user for g in self._grants.values() if g.active})

    async def deactivate_grant(self, user: str, asset: str) -> bool:
        key = (normalize_address(user), normalize_address(asset))
        async with self._lock:
            grant = self._grants.get(key)
            if grant is None:
                return False
            self._grants[key] = grant.model_copy(
                update={"active": False, "updated_at": utc_now()}
            )
            return True

    async def deactivate_all_grants(self, user: str) -> int:
        user = normalize_address(user)
        count = 0
        async with self._lock:
            for key, grant in self._grants.items():
                if grant.user == user and grant.active:
                    self._grants[key] = grant.model_copy(
                        update={"active": False, "updated_at": utc_now()}
                    )
                    count += 1
        return count


class InMemoryRedemptionStorage(RedemptionStorageInterface):
    """Append-only list of redemption records."""

    def __init__(self):
        self._records: list[RedemptionRecord] = []
        self._pending: dict[tuple[str, str, datetime], PendingSubmission] = {}
        self._lock = asyncio.Lock()

    def _period_records(self, user: str, asset: str, period_start: datetime) -> list[RedemptionRecord]:
        return [
            r for r in self._records
            if r.user == user and r.asset == asset and r.period_start == period_start
        ]

    async def record_redemption(
        self,
        record: RedemptionRecord,
        period_cap: int,
    ) -> RedemptionRecord:
        async with self._lock:
            already = sum(
                r.amount for r in self._period_records(record.user, record.asset, record.period_start)
            )
            ensure_within_cap(record, already, period_cap)
            self._records.append(record)
            return record

    async def get_redeemed_amount(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> int:
        user, asset = normalize_address(user), normalize_address(asset)
        async with self._lock:
            return sum(r.amount for r in self._period_records(user, asset, ensure_utc(period_start)))

    async def list_redemptions(self, user: str) -> list[RedemptionRecord]:
        user = normalize_address(user)
        async with self._lock:
            records = [r for r in self._records if r.user == user]
        return sorted(records, key=lambda r: r.redeemed_at, reverse=True)

    async def list_redemptions_in_period(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> list[RedemptionRecord]:
        user, asset = normalize_address(user), normalize_address(asset)
        async with self._lock:
            records = self._period_records(user, asset, ensure_utc(period_start))
        return sorted(records, key=lambda r: r.redeemed_at, reverse=True)

    async def save_pending(self, pending: PendingSubmission) -> PendingSubmission:
        async with self._lock:
            self._pending[(pending.user, pending.asset, pending.period_start)] = pending
            return pending

    async def get_pending(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> Optional[PendingSubmission]:
        key = (normalize_address(user), normalize_address(asset), ensure_utc(period_start))
        async with self._lock:
            return self._pending.get(key)

    async def clear_pending(self, user: str, asset: str, period_start: datetime) -> bool:
        key = (normalize_address(user), normalize_address(asset), ensure_utc(period_start))
        async with self._lock:
            return self._pending.pop(key, None) is not None


class InMemoryAuditStorage(AuditStorageInterface):
    """Audit events kept in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
