"""
PulseKeeper Service

The request-level surface of the engine. The Streamlit console and the
cron trigger both talk to this class and nothing below it.

Everything is wired by `create_app_components()`: storage backend chosen
from settings, one session account created at startup and injected into
the chain adapters, one audit logger shared by every component.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union

from pulsekeeper.accounting import PeriodAccountant
from pulsekeeper.audit import AuditLogger, get_logger
from pulsekeeper.config import ConfigurationError, get_settings
from pulsekeeper.models.grant import (
    AllowanceSummary,
    DistributionRunReport,
    Grant,
    GrantRequest,
    RedemptionRecord,
    RedemptionResult,
    UserStatus,
    ensure_utc,
    normalize_address,
    utc_now,
)
from pulsekeeper.monitoring import EligibilityMonitor
from pulsekeeper.orchestrator import DistributionRun, RedemptionOrchestrator
from pulsekeeper.services.chain import (
    DelegationExecutionClient,
    ExecutionInterface,
    RegistryInterface,
    SessionAccount,
    Web3RegistryClient,
    build_web3,
)
from pulsekeeper.services.storage import (
    AuditStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsGrantStorage,
    GoogleSheetsRedemptionStorage,
    GrantStorageInterface,
    InMemoryAuditStorage,
    InMemoryGrantStorage,
    InMemoryRedemptionStorage,
    NotFoundError,
    RedemptionStorageInterface,
)


logger = get_logger("pulsekeeper.service")


class PulseKeeperService:
    """
    Grant management, allowance views, status queries and redemptions.

    Usage:
        service, _ = create_app_components()
        await service.store_grant(request)
        report = await service.run_distribution()
    """

    def __init__(
        self,
        grant_storage: GrantStorageInterface,
        redemption_storage: RedemptionStorageInterface,
        registry: RegistryInterface,
        executor: ExecutionInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._grants = grant_storage
        self._redemptions = redemption_storage
        self._audit_logger = audit_logger or AuditLogger()
        self._clock = clock

        self.accountant = PeriodAccountant(grant_storage, redemption_storage, clock)
        self.monitor = EligibilityMonitor(registry, self._audit_logger, clock)
        self.orchestrator = RedemptionOrchestrator(
            accountant=self.accountant,
            monitor=self.monitor,
            registry=registry,
            executor=executor,
            redemption_storage=redemption_storage,
            audit_logger=self._audit_logger,
            clock=clock,
        )
        self.distribution_run = DistributionRun(
            grant_storage=grant_storage,
            monitor=self.monitor,
            orchestrator=self.orchestrator,
            audit_logger=self._audit_logger,
        )

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def store_grant(self, request: Union[GrantRequest, dict[str, Any]]) -> Grant:
        """
        Store (or replace) the grant for (user, asset).

        Re-granting re-anchors the period boundaries at the current time.
        Past redemption records are kept; they simply belong to old periods.
        """
        if not isinstance(request, GrantRequest):
            request = GrantRequest.model_validate(request)

        grant = Grant.from_request(request, granted_at=ensure_utc(self._clock()))
        stored = await self._grants.upsert_grant(grant)

        await self._audit_logger.log_grant_stored(
            user=stored.user,
            asset=stored.asset,
            period_cap=stored.period_cap,
            period_length_seconds=stored.period_length_seconds,
        )
        return stored

    async def get_grants(self, user: str) -> list[Grant]:
        return await self._grants.list_active_grants(normalize_address(user))

    async def deactivate_grant(self, user: str, asset: str) -> None:
        """
        Soft-delete one grant.

        Raises:
            NotFoundError: If the user never had a grant for the asset
        """
        user = normalize_address(user)
        asset = normalize_address(asset)
        if not await self._grants.deactivate_grant(user, asset):
            raise NotFoundError(f"No grant for user {user} and asset {asset}")
        await self._audit_logger.log_grant_deactivated(user=user, asset=asset)

    async def deactivate_all_grants(self, user: str) -> int:
        """Soft-delete every grant of a user. Returns how many were active."""
        user = normalize_address(user)
        grants = await self._grants.list_active_grants(user)
        count = await self._grants.deactivate_all_grants(user)
        for grant in grants:
            await self._audit_logger.log_grant_deactivated(user=user, asset=grant.asset)
        return count

    # -------------------------------------------------------------------------
    # Accounting views
    # -------------------------------------------------------------------------

    async def get_allowance_summary(self, user: str) -> AllowanceSummary:
        return await self.accountant.get_allowance_summary(normalize_address(user))

    async def get_redemptions(self, user: str) -> list[RedemptionRecord]:
        """Redemption history of a user, newest first."""
        return await self._redemptions.list_redemptions(normalize_address(user))

    # -------------------------------------------------------------------------
    # Status and redemption
    # -------------------------------------------------------------------------

    async def get_status(self, user: str) -> UserStatus:
        return await self.monitor.status(user)

    async def get_all_statuses(self) -> list[UserStatus]:
        """Status of every user the engine holds an active grant for."""
        users = await self._grants.list_users_with_active_grants()
        return await self.monitor.statuses(users)

    async def redeem_now(self, user: str) -> RedemptionResult:
        """Manual trigger: redeem one user immediately."""
        return await self.orchestrator.redeem(user)

    async def run_distribution(self) -> DistributionRunReport:
        return await self.distribution_run.run()

    async def health(self) -> dict[str, Any]:
        """Liveness summary for the console and the trigger script."""
        users = await self._grants.list_users_with_active_grants()
        return {
            "status": "ok",
            "timestamp": ensure_utc(self._clock()).isoformat(),
            "users_with_active_grants": len(users),
        }


def _create_storage(
    backend: str,
) -> tuple[
    GrantStorageInterface,
    RedemptionStorageInterface,
    AuditStorageInterface,
    Optional[GoogleSheetsClient],
]:
    if backend == "memory":
        return InMemoryGrantStorage(), InMemoryRedemptionStorage(), InMemoryAuditStorage(), None

    sheets_client = GoogleSheetsClient()
    return (
        GoogleSheetsGrantStorage(sheets_client),
        GoogleSheetsRedemptionStorage(sheets_client),
        GoogleSheetsAuditStorage(sheets_client),
        sheets_client,
    )


def create_app_components(
    storage_backend: Optional[str] = None,
) -> tuple[PulseKeeperService, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        storage_backend: "memory" or "sheets". Defaults to the
                         configured STORAGE_BACKEND.

    Returns:
        (service, sheets_client)

    The session account is optional at startup: without one, reads work
    and any operation that must sign raises ConfigurationError.
    """
    backend = storage_backend or get_settings().app.storage_backend
    grant_storage, redemption_storage, audit_storage, sheets_client = _create_storage(backend)
    audit_logger = AuditLogger(audit_storage)

    try:
        session = SessionAccount.from_settings()
    except ConfigurationError as e:
        logger.warning("session_account_unavailable", error=str(e))
        session = None

    chain_settings = get_settings().chain
    w3 = build_web3(chain_settings)
    registry = Web3RegistryClient(w3=w3, session=session, settings=chain_settings)
    executor = DelegationExecutionClient(session=session, w3=w3, settings=chain_settings)

    service = PulseKeeperService(
        grant_storage=grant_storage,
        redemption_storage=redemption_storage,
        registry=registry,
        executor=executor,
        audit_logger=audit_logger,
    )
    logger.info(
        "app_components_created",
        storage_backend=backend,
        session_address=session.address if session else None,
    )
    return service, sheets_client
