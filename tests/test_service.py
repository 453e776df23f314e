"""Tests for the request-level service surface."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from pulsekeeper.models import AuditEventType, GrantRequest
from pulsekeeper.services.storage import NotFoundError
from tests.conftest import BACKUP_1, CONTEXT, DAY, MANAGER, OTHER_USER, TOKEN_A, TOKEN_B, USER


def grant_request(asset: str = TOKEN_A, period_cap="1000", user: str = USER) -> dict:
    return {
        "user": user,
        "asset": asset,
        "auth_context": CONTEXT,
        "auth_manager": MANAGER,
        "period_cap": period_cap,
        "period_length_seconds": DAY,
    }


class TestGrants:
    """Tests for storing and removing grants."""

    @pytest.mark.asyncio
    async def test_store_grant_anchors_at_now(self, service, clock, audit_storage):
        grant = await service.store_grant(grant_request())

        assert grant.granted_at == clock()
        assert grant.period_cap == 1000
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.GRANT_STORED

    @pytest.mark.asyncio
    async def test_store_grant_accepts_model(self, service):
        grant = await service.store_grant(GrantRequest(**grant_request()))
        assert [g.id for g in await service.get_grants(USER)] == [grant.id]

    @pytest.mark.asyncio
    async def test_store_grant_validates(self, service):
        with pytest.raises(ValidationError):
            await service.store_grant(grant_request(period_cap="-5"))

    @pytest.mark.asyncio
    async def test_regrant_resets_period(self, service, clock):
        await service.store_grant(grant_request())
        clock.advance(3600)
        regranted = await service.store_grant(grant_request(period_cap="2000"))

        [grant] = await service.get_grants(USER)
        assert grant.id == regranted.id
        assert grant.granted_at == clock()
        assert grant.period_cap == 2000

    @pytest.mark.asyncio
    async def test_deactivate_grant(self, service, audit_storage):
        await service.store_grant(grant_request())

        await service.deactivate_grant(USER, TOKEN_A)

        assert await service.get_grants(USER) == []
        events = await audit_storage.get_recent_events()
        assert AuditEventType.GRANT_DEACTIVATED in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_deactivate_unknown_grant(self, service):
        with pytest.raises(NotFoundError):
            await service.deactivate_grant(USER, TOKEN_A)

    @pytest.mark.asyncio
    async def test_deactivate_all_grants(self, service):
        await service.store_grant(grant_request(asset=TOKEN_A))
        await service.store_grant(grant_request(asset=TOKEN_B))

        assert await service.deactivate_all_grants(USER) == 2
        assert await service.get_grants(USER) == []


class TestViews:
    """Tests for read projections."""

    @pytest.mark.asyncio
    async def test_allowance_summary_after_redemption(self, service, registry):
        registry.set_user(USER, distributing=True, backups=[(BACKUP_1, 10_000)])
        await service.store_grant(grant_request(period_cap="1000"))

        await service.redeem_now(USER)
        summary = await service.get_allowance_summary(USER)

        assert summary.total_assets == 1
        assert summary.allowances[0].already_redeemed == "1000"
        assert summary.allowances[0].available_to_redeem == "0"

    @pytest.mark.asyncio
    async def test_redemption_history(self, service, registry, clock):
        registry.set_user(USER, distributing=True, backups=[(BACKUP_1, 10_000)])
        await service.store_grant(grant_request(period_cap="1000"))

        await service.redeem_now(USER)
        clock.advance(DAY)
        await service.redeem_now(USER)

        history = await service.get_redemptions(USER)
        assert len(history) == 2
        assert history[0].redeemed_at - history[1].redeemed_at == timedelta(seconds=DAY)

    @pytest.mark.asyncio
    async def test_all_statuses_cover_known_users(self, service, registry):
        registry.set_user(USER, distributing=True)
        await service.store_grant(grant_request(user=USER))
        await service.store_grant(grant_request(user=OTHER_USER))

        statuses = await service.get_all_statuses()

        assert {s.user: s.distributing for s in statuses} == {USER: True, OTHER_USER: False}

    @pytest.mark.asyncio
    async def test_get_status(self, service, registry):
        registry.set_user(USER, distributing=False)
        status = await service.get_status(USER)
        assert status.registered is True

    @pytest.mark.asyncio
    async def test_health(self, service):
        await service.store_grant(grant_request())

        health = await service.health()

        assert health["status"] == "ok"
        assert health["users_with_active_grants"] == 1
