"""
Redemption Orchestrator for PulseKeeper

This module ties together accounting, the registry and execution, and
defines the two end-to-end flows:
1. Redemption (deadline check → available amounts → split → submit →
   settle → record → notify) for one user
2. Distribution run (every user with an active grant → redemption)

DESIGN DECISION: Expected failure modes never raise. Not past deadline,
nothing available, no backups and per-asset submission failures all land
in the RedemptionResult. Only configuration faults and truly unexpected
errors propagate, and the distribution run isolates those per user.

CRITICAL: For one (user, asset) the sequence "read available, submit,
record" runs under a keyed lock, and the record write itself is a
conditional append that re-checks the period cap. Two concurrent
redemptions for the same user can never record more than the cap.

A broadcast batch is remembered as a pending submission for its period
until its settlement is known. A later run waits on that same batch
instead of signing a second one.
"""

import asyncio
import weakref
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from pulsekeeper.accounting import PeriodAccountant, split_allocation
from pulsekeeper.audit import AuditLogger, create_correlation_id, get_logger
from pulsekeeper.config import ConfigurationError
from pulsekeeper.models.grant import (
    Allowance,
    AssetOutcome,
    BackupAllocation,
    Distribution,
    DistributionRunReport,
    Grant,
    OutcomeStatus,
    PendingSubmission,
    RedemptionRecord,
    RedemptionResult,
    SettlementStatus,
    TransferInstruction,
    UserStatus,
    ensure_utc,
    normalize_address,
    utc_now,
)
from pulsekeeper.monitoring import EligibilityMonitor
from pulsekeeper.services.chain.execution import ExecutionInterface
from pulsekeeper.services.chain.registry import RegistryInterface
from pulsekeeper.services.storage import (
    CapExceededError,
    GrantStorageInterface,
    RedemptionStorageInterface,
    StorageError,
)


logger = get_logger("pulsekeeper.orchestrator")

REASON_NOT_PAST_DEADLINE = "not past deadline"
REASON_NOTHING_AVAILABLE = "nothing available this period"
REASON_NO_BACKUPS = "no backups configured"


class RedemptionOrchestrator:
    """
    Redeems everything currently available for one user.

    Flow:
    1. Eligibility → must be distributing
    2. Accounting → active grants with available > 0
    3. Registry → backup allocations
    4. Per asset, independently: resolve a pending batch or split →
       submit one batch → await settlement → record → notify registry
       (best-effort)

    A failed asset leaves its period Pending; the next run retries it.
    """

    def __init__(
        self,
        accountant: PeriodAccountant,
        monitor: EligibilityMonitor,
        registry: RegistryInterface,
        executor: ExecutionInterface,
        redemption_storage: RedemptionStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._accountant = accountant
        self._monitor = monitor
        self._registry = registry
        self._executor = executor
        self._redemptions = redemption_storage
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock
        # An entry lives only while some coroutine holds or waits on it
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user: str, asset: str) -> asyncio.Lock:
        key = (user, asset)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _skip(self, result: RedemptionResult, reason: str) -> RedemptionResult:
        result.reason = reason
        result.errors.append(reason)
        await self._audit_logger.log_redemption_skipped(
            user=result.user,
            reason=reason,
            correlation_id=result.correlation_id,
        )
        return result

    async def _fail(
        self,
        user: str,
        outcome: AssetOutcome,
        message: str,
        correlation_id: UUID,
    ) -> AssetOutcome:
        outcome.error = message
        await self._audit_logger.log_redemption_failed(
            user=user,
            asset=outcome.asset,
            error_message=message,
            correlation_id=correlation_id,
        )
        return outcome

    async def redeem(
        self,
        user: str,
        correlation_id: Optional[UUID] = None,
        status: Optional[UserStatus] = None,
    ) -> RedemptionResult:
        """
        Redeem all available allowance of a user to their backups.

        Args:
            user: The user's address
            correlation_id: Ties the redemption's audit events together
            status: An already-read status, to save a registry round trip

        Returns:
            RedemptionResult; success only if every asset settled

        Raises:
            ConfigurationError: If the session account is missing
        """
        user = normalize_address(user)
        correlation_id = correlation_id or create_correlation_id()
        result = RedemptionResult(user=user, correlation_id=correlation_id)

        # Step 1: Deadline
        status = status or await self._monitor.status(user)
        if not status.distributing:
            return await self._skip(result, REASON_NOT_PAST_DEADLINE)

        # Step 2: Available amounts
        try:
            allowances = [
                a for a in await self._accountant.get_allowances(user)
                if a.available > 0
            ]
        except StorageError as e:
            message = f"allowance read failed: {e}"
            result.reason = message
            result.errors.append(message)
            await self._audit_logger.log_error(
                error_type="allowance_read_failed",
                error_message=str(e),
                correlation_id=correlation_id,
                user=user,
            )
            return result
        if not allowances:
            return await self._skip(result, REASON_NOTHING_AVAILABLE)

        # Step 3: Backups
        try:
            backups = await self._registry.get_backups(user)
        except Exception as e:
            message = f"backup read failed: {e}"
            result.reason = message
            result.errors.append(message)
            await self._audit_logger.log_error(
                error_type="backup_read_failed",
                error_message=str(e),
                correlation_id=correlation_id,
                user=user,
            )
            return result
        if not backups:
            return await self._skip(result, REASON_NO_BACKUPS)

        # Step 4: Each asset on its own
        for allowance in allowances:
            try:
                outcome = await self._redeem_asset(user, allowance.asset, backups, correlation_id)
            except StorageError as e:
                result.errors.append(f"{allowance.asset}: {e}")
                await self._audit_logger.log_redemption_failed(
                    user=user,
                    asset=allowance.asset,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
                continue
            if outcome is None:
                continue
            result.outcomes.append(outcome)
            if outcome.error:
                result.errors.append(f"{outcome.asset}: {outcome.error}")

        if not result.outcomes and not result.errors:
            # Every asset was drained by a concurrent redemption
            result.reason = REASON_NOTHING_AVAILABLE

        result.success = not result.errors
        logger.info(
            "redemption_finished",
            user=user,
            success=result.success,
            settled=len(result.settled_assets),
            failed=len(result.failed_assets),
            correlation_id=str(correlation_id),
        )
        return result

    async def _redeem_asset(
        self,
        user: str,
        asset: str,
        backups: list[BackupAllocation],
        correlation_id: UUID,
    ) -> Optional[AssetOutcome]:
        """
        Redeem one asset. Returns None if nothing was left to redeem.
        """
        async with self._lock_for(user, asset):
            # Re-read under the lock; the grant may have been revoked or re-granted
            grant = await self._accountant.active_grant(user, asset)
            if grant is None:
                return None
            now = ensure_utc(self._clock())
            allowance = await self._accountant.allowance_for(grant, now)
            if allowance.available == 0:
                return None

            pending = await self._redemptions.get_pending(user, asset, allowance.period_start)
            if pending is not None:
                logger.info(
                    "resuming_pending_submission",
                    user=user,
                    asset=asset,
                    handle=pending.handle,
                    correlation_id=str(correlation_id),
                )
                outcome = AssetOutcome(
                    asset=asset,
                    period_start=allowance.period_start,
                    amount=pending.amount,
                    status=OutcomeStatus.FAILED,
                    distributions=pending.distributions,
                    settlement_ref=pending.handle,
                )
            else:
                outcome = await self._submit(user, grant, allowance, backups, correlation_id)
                if outcome.error:
                    return outcome

            settled = await self._settle(user, grant, outcome, now, correlation_id)

        if settled:
            # Best-effort, outside the lock
            outcome.notified = await self._notify(user, asset, outcome.distributions, correlation_id)
        return outcome

    async def _submit(
        self,
        user: str,
        grant: Grant,
        allowance: Allowance,
        backups: list[BackupAllocation],
        correlation_id: UUID,
    ) -> AssetOutcome:
        """Split the available amount and broadcast one batch for it."""
        available = allowance.available
        amounts = split_allocation(available, backups)
        outcome = AssetOutcome(
            asset=grant.asset,
            period_start=allowance.period_start,
            amount=available,
            status=OutcomeStatus.FAILED,
            distributions=[
                Distribution(recipient=recipient, amount=amount)
                for recipient, amount in amounts.items()
            ],
        )
        if not outcome.distributions:
            return await self._fail(user, outcome, "allocation produced no transfers", correlation_id)

        transfers = [
            TransferInstruction(
                asset=grant.asset,
                recipient=d.recipient,
                amount=d.amount,
                auth_context=grant.auth_context,
                auth_manager=grant.auth_manager,
            )
            for d in outcome.distributions
        ]

        try:
            handle = await self._executor.submit_batch(
                grant.auth_context,
                grant.auth_manager,
                transfers,
            )
        except ConfigurationError:
            raise
        except Exception as e:
            return await self._fail(user, outcome, str(e), correlation_id)

        outcome.settlement_ref = handle
        await self._audit_logger.log_redemption_submitted(
            user=user,
            asset=grant.asset,
            amount=available,
            recipients=len(transfers),
            handle=handle,
            correlation_id=correlation_id,
        )

        try:
            await self._redemptions.save_pending(PendingSubmission(
                user=user,
                asset=grant.asset,
                period_start=allowance.period_start,
                amount=available,
                handle=handle,
                distributions=outcome.distributions,
            ))
        except StorageError as e:
            # The batch is out; waiting on it below still resolves this run
            await self._audit_logger.log_error(
                error_type="pending_save_failed",
                error_message=str(e),
                details={"asset": grant.asset, "handle": handle},
                correlation_id=correlation_id,
                user=user,
            )
        return outcome

    async def _settle(
        self,
        user: str,
        grant: Grant,
        outcome: AssetOutcome,
        now: datetime,
        correlation_id: UUID,
    ) -> bool:
        """
        Wait on the batch in `outcome` and record it.

        Returns True once the settlement is recorded.
        """
        handle = outcome.settlement_ref
        try:
            settlement = await self._executor.await_settlement(handle)
        except ConfigurationError:
            raise
        except Exception as e:
            # Pending stays; the next run waits on the same handle
            await self._fail(user, outcome, f"settlement unknown for {handle}: {e}", correlation_id)
            return False

        outcome.settlement_ref = settlement.settlement_ref
        if settlement.status != SettlementStatus.SUCCESS:
            await self._clear_pending(user, outcome, correlation_id)
            await self._fail(user, outcome, f"batch reverted: {settlement.settlement_ref}", correlation_id)
            return False

        # Settled → record the full amount for the period
        record = RedemptionRecord(
            user=user,
            asset=outcome.asset,
            amount=outcome.amount,
            settlement_ref=settlement.settlement_ref,
            redeemed_at=now,
            period_start=outcome.period_start,
        )
        outcome.status = OutcomeStatus.SETTLED
        try:
            await self._redemptions.record_redemption(record, grant.period_cap)
        except StorageError as e:
            if isinstance(e, CapExceededError):
                # The period is already full; there is nothing left to record
                await self._clear_pending(user, outcome, correlation_id)
            # Otherwise pending stays and the next run records this settlement
            outcome.error = f"settled but not recorded: {e}"
            await self._audit_logger.log_error(
                error_type="redemption_record_failed",
                error_message=str(e),
                details={
                    "asset": outcome.asset,
                    "settlement_ref": settlement.settlement_ref,
                    "amount": str(outcome.amount),
                },
                correlation_id=correlation_id,
                user=user,
            )
            return False

        await self._clear_pending(user, outcome, correlation_id)
        await self._audit_logger.log_redemption_settled(
            user=user,
            asset=outcome.asset,
            amount=outcome.amount,
            settlement_ref=settlement.settlement_ref,
            period_start=outcome.period_start,
            correlation_id=correlation_id,
        )
        return True

    async def _clear_pending(self, user: str, outcome: AssetOutcome, correlation_id: UUID) -> None:
        try:
            await self._redemptions.clear_pending(user, outcome.asset, outcome.period_start)
        except StorageError as e:
            await self._audit_logger.log_error(
                error_type="pending_clear_failed",
                error_message=str(e),
                details={"asset": outcome.asset, "handle": outcome.settlement_ref},
                correlation_id=correlation_id,
                user=user,
            )

    async def _notify(
        self,
        user: str,
        asset: str,
        distributions: list[Distribution],
        correlation_id: UUID,
    ) -> bool:
        try:
            await self._registry.record_distribution(
                user,
                asset,
                [d.recipient for d in distributions],
                [d.amount for d in distributions],
            )
            return True
        except Exception as e:
            await self._audit_logger.log_distribution_notify_failed(
                user=user,
                asset=asset,
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return False


class DistributionRun:
    """
    Batch entry point: one pass over every user with an active grant.

    Users are processed one at a time. A user whose processing raises is
    recorded in the report's errors and the pass moves on. The pass always
    returns a report, even when the user list cannot be read.
    """

    def __init__(
        self,
        grant_storage: GrantStorageInterface,
        monitor: EligibilityMonitor,
        orchestrator: RedemptionOrchestrator,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._grants = grant_storage
        self._monitor = monitor
        self._orchestrator = orchestrator
        self._audit_logger = audit_logger or AuditLogger()

    async def run(self) -> DistributionRunReport:
        correlation_id = create_correlation_id()
        report = DistributionRunReport(run_id=correlation_id)

        try:
            users = await self._grants.list_users_with_active_grants()
        except Exception as e:
            users = []
            report.errors.append(f"listing users failed: {e}")
            await self._audit_logger.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                correlation_id=correlation_id,
            )
        await self._audit_logger.log_run_started(users=len(users), correlation_id=correlation_id)

        for user in users:
            try:
                status = await self._monitor.status(user)
                report.users_checked += 1
                if not status.registered or not status.distributing:
                    continue

                report.users_distributing += 1
                result = await self._orchestrator.redeem(
                    user,
                    correlation_id=correlation_id,
                    status=status,
                )
                report.results.append(result)
            except Exception as e:
                report.errors.append(f"{user}: {e}")
                await self._audit_logger.log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    correlation_id=correlation_id,
                    user=user,
                )

        report.completed_at = utc_now()
        await self._audit_logger.log_run_completed(
            users_checked=report.users_checked,
            users_distributing=report.users_distributing,
            errors=len(report.errors),
            correlation_id=correlation_id,
        )
        return report
