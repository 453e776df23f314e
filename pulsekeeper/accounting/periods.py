"""
Period Accounting

DESIGN DECISION: Periods are anchored to the grant instant, not to the
calendar. A grant made at 14:37:12 with a one-day period has periods that
start at 14:37:12 every day, forever, with no drift and no dependence on
wall-clock day boundaries. Re-granting resets the anchor.

Allowance never rolls over: whatever was not redeemed in a previous period
is gone. Only records whose period_start equals the CURRENT period start
are summed.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from pulsekeeper.config import ConfigurationError
from pulsekeeper.models.grant import (
    Allowance,
    AllowanceSummary,
    AllowanceView,
    Grant,
    ensure_utc,
    normalize_address,
    utc_now,
)
from pulsekeeper.services.storage import (
    GrantStorageInterface,
    RedemptionStorageInterface,
)


class PeriodConfigurationError(ConfigurationError):
    """Period length is zero or negative."""
    pass


def current_period_start(
    granted_at: datetime,
    period_length_seconds: int,
    now: datetime,
) -> datetime:
    """
    Start of the period containing `now`.

    completed = floor((now - granted_at) / period_length)
    period_start = granted_at + completed * period_length

    timedelta floor-division is exact integer arithmetic on microseconds,
    so boundaries never drift. Before `granted_at` the result is the start
    of the (negative) period containing `now`.

    Raises:
        PeriodConfigurationError: If period_length_seconds <= 0
    """
    if period_length_seconds <= 0:
        raise PeriodConfigurationError(
            f"Period length must be positive, got {period_length_seconds}"
        )

    granted_at = ensure_utc(granted_at)
    period = timedelta(seconds=period_length_seconds)
    completed_periods = (ensure_utc(now) - granted_at) // period
    return granted_at + completed_periods * period


class PeriodAccountant:
    """
    Computes how much of each grant is spendable right now.

    Reads grants and redemption records; never writes anything.
    """

    def __init__(
        self,
        grant_storage: GrantStorageInterface,
        redemption_storage: RedemptionStorageInterface,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._grants = grant_storage
        self._redemptions = redemption_storage
        self._clock = clock

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    async def active_grant(self, user: str, asset: str) -> Optional[Grant]:
        """The stored grant for (user, asset), or None if missing or inactive."""
        grant = await self._grants.get_grant(user, asset)
        if grant is None or not grant.active:
            return None
        return grant

    async def allowance_for(self, grant: Grant, now: Optional[datetime] = None) -> Allowance:
        """Full accounting view of one grant at `now`."""
        now = now or self.now()
        period_start = current_period_start(grant.granted_at, grant.period_length_seconds, now)

        if not grant.active or grant.is_expired(now):
            already_redeemed = 0
            available = 0
        else:
            already_redeemed = await self._redemptions.get_redeemed_amount(
                grant.user, grant.asset, period_start
            )
            available = max(0, grant.period_cap - already_redeemed)

        return Allowance(
            asset=grant.asset,
            period_cap=grant.period_cap,
            period_length_seconds=grant.period_length_seconds,
            already_redeemed=already_redeemed,
            available=available,
            period_start=period_start,
            grant=grant,
        )

    async def available_to_redeem(self, grant: Grant, now: Optional[datetime] = None) -> int:
        """
        max(0, period_cap - redeemed in the current period).

        Inactive and expired grants have nothing available.
        """
        allowance = await self.allowance_for(grant, now)
        return allowance.available

    async def get_allowances(self, user: str, now: Optional[datetime] = None) -> list[Allowance]:
        """Allowances for every active grant of a user."""
        now = now or self.now()
        grants = await self._grants.list_active_grants(user)
        return [await self.allowance_for(grant, now) for grant in grants]

    async def get_allowance_summary(
        self,
        user: str,
        now: Optional[datetime] = None,
    ) -> AllowanceSummary:
        """String-serialized allowances for display and API responses."""
        user = normalize_address(user)
        allowances = await self.get_allowances(user, now)
        return AllowanceSummary(
            user=user,
            total_assets=len(allowances),
            allowances=[
                AllowanceView(
                    asset=a.asset,
                    period_cap=str(a.period_cap),
                    already_redeemed=str(a.already_redeemed),
                    available_to_redeem=str(a.available),
                    period_starts_at=a.period_start.isoformat(),
                    period_ends_at=a.period_end.isoformat(),
                )
                for a in allowances
            ],
        )

    async def can_redeem_amount(
        self,
        user: str,
        asset: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> tuple[bool, int, Optional[str]]:
        """
        Check whether `amount` fits in the current period.

        Returns:
            (can_redeem, available, reason)
        """
        asset = normalize_address(asset)
        allowances = await self.get_allowances(user, now)
        allowance = next((a for a in allowances if a.asset == asset), None)

        if allowance is None:
            return False, 0, "No active grant found for this asset"

        if amount > allowance.available:
            return (
                False,
                allowance.available,
                f"Requested {amount} but only {allowance.available} available in current period",
            )

        return True, allowance.available, None
