"""
Core Data Models for PulseKeeper

These models define the strict schemas for all data flowing through the
allowance accounting and redemption engine. They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: All token amounts are Python ints in the asset's smallest
unit. Nothing in the engine ever touches floats or Decimals for amounts, so
there is no rounding anywhere except the explicit basis-point truncation
in the allocation splitter.
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# Sentinel used by wallets for the chain's native asset (ETH)
NATIVE_ASSET = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

# The registry contract records native-asset distributions under address(0)
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

BPS_DENOMINATOR = 10_000

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_address(value: str) -> str:
    """
    Validate a 20-byte hex address and lower-case it.

    Addresses arrive checksummed from wallets and lower-cased from the
    registry; storing one canonical form keeps (user, asset) lookups exact.
    """
    value = value.strip()
    if not _ADDRESS_RE.match(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class SettlementStatus(str, Enum):
    """Final state of a submitted transfer batch."""
    SUCCESS = "success"
    REVERTED = "reverted"


class OutcomeStatus(str, Enum):
    """
    Per-asset outcome of one redemption attempt.

    Only SETTLED is ever persisted (as a RedemptionRecord). A FAILED
    outcome leaves the period Pending, so the next run retries it.
    """
    SETTLED = "settled"
    FAILED = "failed"


# =============================================================================
# GRANTS
# =============================================================================

class GrantRequest(BaseModel):
    """
    A grant submission as received from the wallet front-end.

    The front-end sends the period cap as a decimal string because token
    amounts routinely exceed 2**53; pydantic parses it into an int.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    user: str
    asset: str
    auth_context: str = Field(
        ...,
        min_length=1,
        description="Opaque permission context issued by the wallet"
    )
    auth_manager: str = Field(
        ...,
        description="Address of the delegation manager that enforces the grant"
    )
    period_cap: int = Field(
        ...,
        ge=0,
        description="Maximum amount spendable per period, smallest unit"
    )
    period_length_seconds: int = Field(
        ...,
        gt=0,
        description="Length of one period in seconds"
    )
    expires_at: Optional[datetime] = None

    @field_validator('user', 'asset', 'auth_manager')
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator('expires_at')
    @classmethod
    def validate_expires_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


class Grant(BaseModel):
    """
    A stored authorization to redeem up to `period_cap` of one asset for
    one user in every period.

    Keyed by (user, asset). Re-granting updates the row in place and
    resets `granted_at`, which re-anchors every period boundary.
    Grants are never hard-deleted; `active=False` is the only removal.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user: str
    asset: str
    auth_context: str = Field(..., min_length=1)
    auth_manager: str
    period_cap: int = Field(..., ge=0)
    period_length_seconds: int = Field(..., gt=0)
    granted_at: datetime = Field(
        default_factory=utc_now,
        description="Anchor instant for period boundaries"
    )
    expires_at: Optional[datetime] = None
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('user', 'asset', 'auth_manager')
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator('granted_at', 'created_at', 'updated_at')
    @classmethod
    def validate_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator('expires_at')
    @classmethod
    def validate_expires_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode='after')
    def validate_expiry_after_grant(self) -> 'Grant':
        if self.expires_at is not None and self.expires_at <= self.granted_at:
            raise ValueError("Grant expiry must be after the grant instant")
        return self

    @classmethod
    def from_request(cls, request: GrantRequest, granted_at: datetime) -> 'Grant':
        """Build a fresh grant from a submission."""
        return cls(
            user=request.user,
            asset=request.asset,
            auth_context=request.auth_context,
            auth_manager=request.auth_manager,
            period_cap=request.period_cap,
            period_length_seconds=request.period_length_seconds,
            granted_at=granted_at,
            expires_at=request.expires_at,
            created_at=granted_at,
            updated_at=granted_at,
        )

    @property
    def is_native(self) -> bool:
        return self.asset == NATIVE_ASSET

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and ensure_utc(now) >= self.expires_at


# =============================================================================
# REDEMPTION RECORDS
# =============================================================================

class RedemptionRecord(BaseModel):
    """
    One settled redemption for (user, asset, period_start).

    Append-only. `amount` is the full redeemed total for the batch,
    not a per-recipient amount.
    """

    id: UUID = Field(default_factory=uuid4)
    user: str
    asset: str
    amount: int = Field(..., gt=0)
    settlement_ref: str = Field(
        ...,
        min_length=1,
        description="Transaction hash of the settled batch"
    )
    redeemed_at: datetime = Field(default_factory=utc_now)
    period_start: datetime

    @field_validator('user', 'asset')
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator('redeemed_at', 'period_start')
    @classmethod
    def validate_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# =============================================================================
# REGISTRY VIEWS (read-only, owned by the registry contract)
# =============================================================================

class BackupAllocation(BaseModel):
    """A weighted backup recipient as configured in the registry."""

    recipient: str
    share_bps: int = Field(..., ge=0, le=BPS_DENOMINATOR)

    @field_validator('recipient')
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        return normalize_address(v)


class UserStatus(BaseModel):
    """
    Deadline status of one user as read from the registry.

    A failed read yields registered=False, distributing=False and the
    error text, so a batch run simply skips the user.
    """

    user: str
    registered: bool = False
    distributing: bool = False
    deadline: int = Field(
        default=0,
        ge=0,
        description="Check-in deadline as a unix timestamp"
    )
    deadline_passed: bool = False
    checked_at: datetime = Field(default_factory=utc_now)
    error: Optional[str] = None


# =============================================================================
# ALLOWANCE ACCOUNTING
# =============================================================================

class Allowance(BaseModel):
    """How much of one grant is spendable in its current period."""

    asset: str
    period_cap: int
    period_length_seconds: int
    already_redeemed: int
    available: int = Field(..., ge=0)
    period_start: datetime
    grant: Grant

    @property
    def period_end(self) -> datetime:
        return self.period_start + timedelta(seconds=self.period_length_seconds)


class AllowanceView(BaseModel):
    """
    String-serialized allowance for API consumers.

    Amounts are strings so JavaScript clients don't lose precision.
    """

    asset: str
    period_cap: str
    already_redeemed: str
    available_to_redeem: str
    period_starts_at: str
    period_ends_at: str


class AllowanceSummary(BaseModel):
    """All allowances of one user."""

    user: str
    total_assets: int
    allowances: list[AllowanceView] = Field(default_factory=list)


# =============================================================================
# TRANSFERS AND SETTLEMENT
# =============================================================================

class TransferInstruction(BaseModel):
    """One transfer to one backup recipient, redeemed under a grant."""

    asset: str
    recipient: str
    amount: int = Field(..., gt=0)
    auth_context: str
    auth_manager: str

    @property
    def is_native(self) -> bool:
        return self.asset == NATIVE_ASSET


class Settlement(BaseModel):
    """Receipt of a submitted batch."""

    settlement_ref: str
    status: SettlementStatus
    block_number: Optional[int] = None


# =============================================================================
# RESULTS
# =============================================================================

class Distribution(BaseModel):
    """Amount sent (or attempted) to one recipient."""

    recipient: str
    amount: int


class PendingSubmission(BaseModel):
    """
    A broadcast batch whose settlement is not known yet.

    Keyed by (user, asset, period_start). While one exists, the period is
    resolved by waiting on `handle` again, never by signing a new batch.
    """

    user: str
    asset: str
    period_start: datetime
    amount: int = Field(..., gt=0)
    handle: str = Field(..., min_length=1)
    distributions: list[Distribution] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=utc_now)

    @field_validator('user', 'asset')
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator('period_start', 'submitted_at')
    @classmethod
    def validate_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AssetOutcome(BaseModel):
    """What happened to one asset during a redemption."""

    asset: str
    period_start: datetime
    amount: int = Field(
        ...,
        ge=0,
        description="Available amount that was redeemed (or attempted)"
    )
    status: OutcomeStatus
    distributions: list[Distribution] = Field(default_factory=list)
    settlement_ref: Optional[str] = None
    error: Optional[str] = None
    notified: bool = Field(
        default=False,
        description="Did the best-effort registry notification succeed?"
    )


class RedemptionResult(BaseModel):
    """
    Result of redeeming everything currently available for one user.

    Expected failure modes (not past deadline, nothing available, no
    backups, per-asset submission failures) land here, never as exceptions.
    """

    user: str
    success: bool = False
    reason: Optional[str] = Field(
        default=None,
        description="Why the redemption stopped early, if it did"
    )
    outcomes: list[AssetOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    correlation_id: Optional[UUID] = None

    @property
    def settled_assets(self) -> list[str]:
        return [o.asset for o in self.outcomes if o.status == OutcomeStatus.SETTLED]

    @property
    def failed_assets(self) -> list[str]:
        return [o.asset for o in self.outcomes if o.status == OutcomeStatus.FAILED]


class DistributionRunReport(BaseModel):
    """Aggregated result of one batch pass over all known users."""

    run_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    users_checked: int = 0
    users_distributing: int = 0
    results: list[RedemptionResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
