"""
Shared fixtures for PulseKeeper tests.

No network in tests: the registry and the execution adapter are replaced
by in-process fakes, storage is the in-memory backend, and time comes
from a settable clock.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from pulsekeeper.audit import AuditLogger
from pulsekeeper.models import (
    BackupAllocation,
    Grant,
    Settlement,
    SettlementStatus,
    TransferInstruction,
)
from pulsekeeper.service import PulseKeeperService
from pulsekeeper.services.chain import (
    ExecutionInterface,
    RegistryError,
    RegistryInterface,
    SettlementError,
    SubmissionError,
)
from pulsekeeper.services.storage import (
    InMemoryAuditStorage,
    InMemoryGrantStorage,
    InMemoryRedemptionStorage,
)


T0 = datetime(2026, 1, 1, 14, 37, 12, tzinfo=timezone.utc)
DAY = 86400

USER = "0x" + "11" * 20
OTHER_USER = "0x" + "22" * 20
TOKEN_A = "0x" + "aa" * 20
TOKEN_B = "0x" + "bb" * 20
NATIVE = "0x" + "ee" * 20
BACKUP_1 = "0x" + "b1" * 20
BACKUP_2 = "0x" + "b2" * 20
MANAGER = "0x" + "dd" * 20
CONTEXT = "0x" + "c0ffee" * 4


class FakeClock:
    """Settable clock; call it to get the current time."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeRegistry(RegistryInterface):
    """In-memory registry. Users are unregistered unless configured."""

    def __init__(self):
        self.registered: set[str] = set()
        self.distributing: set[str] = set()
        self.deadlines: dict[str, int] = {}
        self.backups: dict[str, list[BackupAllocation]] = {}
        self.unreachable: set[str] = set()
        self.fail_notify = False
        self.recorded: list[tuple[str, str, list[str], list[int]]] = []

    def set_user(
        self,
        user: str,
        distributing: bool,
        backups: Optional[list[tuple[str, int]]] = None,
        deadline: int = 1_700_000_000,
    ) -> None:
        self.registered.add(user)
        if distributing:
            self.distributing.add(user)
        else:
            self.distributing.discard(user)
        self.deadlines[user] = deadline
        self.backups[user] = [
            BackupAllocation(recipient=r, share_bps=bps) for r, bps in (backups or [])
        ]

    def _check(self, user: str) -> None:
        if user in self.unreachable:
            raise RegistryError(f"timeout reading {user}")

    async def is_registered(self, user: str) -> bool:
        self._check(user)
        return user in self.registered

    async def is_distributing(self, user: str) -> bool:
        self._check(user)
        return user in self.distributing

    async def get_deadline(self, user: str) -> int:
        self._check(user)
        return self.deadlines.get(user, 0)

    async def get_backups(self, user: str) -> list[BackupAllocation]:
        self._check(user)
        return list(self.backups.get(user, []))

    async def record_distribution(self, user, asset, recipients, amounts):
        if self.fail_notify:
            raise RegistryError("recordDistribution reverted")
        self.recorded.append((user, asset, list(recipients), list(amounts)))
        return "0x" + "ab" * 32


class FakeExecutor(ExecutionInterface):
    """
    Records submitted batches and settles them.

    Assets in `reject_assets` fail at submission; assets in
    `revert_assets` are accepted but their receipt says reverted. The
    next `settlement_timeouts` receipt waits time out.
    """

    def __init__(self):
        self.reject_assets: set[str] = set()
        self.revert_assets: set[str] = set()
        self.settlement_timeouts = 0
        self.batches: list[list[TransferInstruction]] = []
        self.awaited: list[str] = []
        self._handles: dict[str, str] = {}

    async def submit_batch(self, auth_context, auth_manager, transfers):
        # Yield so concurrent callers interleave here
        await asyncio.sleep(0)
        asset = transfers[0].asset
        if asset in self.reject_assets:
            raise SubmissionError(f"execution rejected for {asset}")
        self.batches.append(list(transfers))
        handle = "0x" + f"{len(self.batches):064x}"
        self._handles[handle] = asset
        return handle

    async def await_settlement(self, handle: str) -> Settlement:
        await asyncio.sleep(0)
        self.awaited.append(handle)
        if self.settlement_timeouts:
            self.settlement_timeouts -= 1
            raise SettlementError(f"no receipt for {handle}")
        asset = self._handles[handle]
        status = SettlementStatus.REVERTED if asset in self.revert_assets else SettlementStatus.SUCCESS
        return Settlement(settlement_ref=handle, status=status, block_number=1)


def make_grant(
    asset: str = TOKEN_A,
    user: str = USER,
    period_cap: int = 1_000_000,
    period_length_seconds: int = DAY,
    granted_at: datetime = T0,
    **overrides,
) -> Grant:
    return Grant(
        user=user,
        asset=asset,
        auth_context=CONTEXT,
        auth_manager=MANAGER,
        period_cap=period_cap,
        period_length_seconds=period_length_seconds,
        granted_at=granted_at,
        **overrides,
    )


@pytest.fixture
def clock():
    return FakeClock(T0 + timedelta(seconds=DAY // 2))


@pytest.fixture
def grant_storage():
    return InMemoryGrantStorage()


@pytest.fixture
def redemption_storage():
    return InMemoryRedemptionStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def service(grant_storage, redemption_storage, registry, executor, audit_logger, clock):
    return PulseKeeperService(
        grant_storage=grant_storage,
        redemption_storage=redemption_storage,
        registry=registry,
        executor=executor,
        audit_logger=audit_logger,
        clock=clock,
    )
