"""
Tests for storage backends.

The in-memory backend is exercised directly. The Google Sheets backend
runs against a fake worksheet that mimics the parts of gspread we use.
"""

import asyncio
from datetime import timedelta

import pytest

from pulsekeeper.models import AuditEventBuilder, Distribution, PendingSubmission, RedemptionRecord
from pulsekeeper.services.storage import (
    CapExceededError,
    GoogleSheetsAuditStorage,
    GoogleSheetsGrantStorage,
    GoogleSheetsRedemptionStorage,
    StorageError,
)
from pulsekeeper.services.storage.google_sheets import (
    AUDIT_COLUMNS,
    GRANT_COLUMNS,
    PENDING_COLUMNS,
    REDEMPTION_COLUMNS,
)
from tests.conftest import BACKUP_1, DAY, OTHER_USER, T0, TOKEN_A, TOKEN_B, USER, make_grant


def record(amount: int, period_start=T0, asset=TOKEN_A, redeemed_at=None, user=USER) -> RedemptionRecord:
    return RedemptionRecord(
        user=user,
        asset=asset,
        amount=amount,
        settlement_ref="0x" + "12" * 32,
        redeemed_at=redeemed_at or T0 + timedelta(hours=1),
        period_start=period_start,
    )


def pending(handle: str = "0x" + "34" * 32, amount: int = 1_000, period_start=T0) -> PendingSubmission:
    return PendingSubmission(
        user=USER,
        asset=TOKEN_A,
        period_start=period_start,
        amount=amount,
        handle=handle,
        distributions=[Distribution(recipient=BACKUP_1, amount=amount)],
    )


class FakeWorksheet:
    """Holds rows as lists of strings, like gspread's get_all_values."""

    def __init__(self, header: list[str]):
        self.rows = [list(header)]

    def get_all_values(self):
        return [list(r) for r in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append([str(v) for v in values])

    def update(self, range_name, values, value_input_option=None):
        idx = int(range_name[1:]) - 1
        self.rows[idx] = [str(v) for v in values[0]]

    def delete_rows(self, start_index, end_index=None):
        del self.rows[start_index - 1:(end_index or start_index)]


class FakeSheetsClient:
    def __init__(self):
        self.grants = FakeWorksheet(GRANT_COLUMNS)
        self.redemptions = FakeWorksheet(REDEMPTION_COLUMNS)
        self.pending = FakeWorksheet(PENDING_COLUMNS)
        self.audit = FakeWorksheet(AUDIT_COLUMNS)

    def get_grants_sheet(self):
        return self.grants

    def get_redemptions_sheet(self):
        return self.redemptions

    def get_pending_sheet(self):
        return self.pending

    def get_audit_sheet(self):
        return self.audit


class TestInMemoryGrantStorage:
    """Tests for grant upserts and soft deletes."""

    @pytest.mark.asyncio
    async def test_upsert_keeps_identity_and_reanchors(self, grant_storage):
        first = await grant_storage.upsert_grant(make_grant(period_cap=10))
        second = await grant_storage.upsert_grant(
            make_grant(period_cap=20, granted_at=T0 + timedelta(days=3))
        )

        assert second.id == first.id
        assert second.created_at == first.created_at
        stored = await grant_storage.get_grant(USER, TOKEN_A)
        assert stored.period_cap == 20
        assert stored.granted_at == T0 + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_deactivate_is_soft(self, grant_storage):
        await grant_storage.upsert_grant(make_grant())

        assert await grant_storage.deactivate_grant(USER, TOKEN_A) is True
        assert await grant_storage.list_active_grants(USER) == []
        assert (await grant_storage.get_grant(USER, TOKEN_A)).active is False

    @pytest.mark.asyncio
    async def test_deactivate_unknown_grant(self, grant_storage):
        assert await grant_storage.deactivate_grant(USER, TOKEN_A) is False

    @pytest.mark.asyncio
    async def test_deactivate_all(self, grant_storage):
        await grant_storage.upsert_grant(make_grant(asset=TOKEN_A))
        await grant_storage.upsert_grant(make_grant(asset=TOKEN_B))
        await grant_storage.upsert_grant(make_grant(user=OTHER_USER))

        assert await grant_storage.deactivate_all_grants(USER) == 2
        assert await grant_storage.list_users_with_active_grants() == [OTHER_USER]

    @pytest.mark.asyncio
    async def test_regrant_reactivates(self, grant_storage):
        await grant_storage.upsert_grant(make_grant())
        await grant_storage.deactivate_grant(USER, TOKEN_A)
        await grant_storage.upsert_grant(make_grant())

        assert await grant_storage.list_users_with_active_grants() == [USER]


class TestInMemoryRedemptionStorage:
    """Tests for the conditional append."""

    @pytest.mark.asyncio
    async def test_sums_only_the_given_period(self, redemption_storage):
        await redemption_storage.record_redemption(record(300), period_cap=1_000)
        await redemption_storage.record_redemption(
            record(900, period_start=T0 + timedelta(seconds=DAY)), period_cap=1_000
        )

        assert await redemption_storage.get_redeemed_amount(USER, TOKEN_A, T0) == 300
        assert await redemption_storage.get_redeemed_amount(USER, TOKEN_B, T0) == 0

    @pytest.mark.asyncio
    async def test_write_over_cap_is_rejected(self, redemption_storage):
        await redemption_storage.record_redemption(record(600), period_cap=1_000)

        with pytest.raises(CapExceededError) as exc_info:
            await redemption_storage.record_redemption(record(401), period_cap=1_000)

        assert exc_info.value.already_redeemed == 600
        assert isinstance(exc_info.value, StorageError)
        assert await redemption_storage.get_redeemed_amount(USER, TOKEN_A, T0) == 600

    @pytest.mark.asyncio
    async def test_concurrent_writes_never_exceed_cap(self, redemption_storage):
        results = await asyncio.gather(
            *[redemption_storage.record_redemption(record(400), period_cap=1_000) for _ in range(5)],
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, CapExceededError)) == 3
        assert await redemption_storage.get_redeemed_amount(USER, TOKEN_A, T0) == 800

    @pytest.mark.asyncio
    async def test_list_newest_first(self, redemption_storage):
        older = record(1, redeemed_at=T0 + timedelta(minutes=1))
        newer = record(2, redeemed_at=T0 + timedelta(minutes=2))
        await redemption_storage.record_redemption(older, period_cap=10)
        await redemption_storage.record_redemption(newer, period_cap=10)

        listed = await redemption_storage.list_redemptions(USER)
        assert [r.amount for r in listed] == [2, 1]
        in_period = await redemption_storage.list_redemptions_in_period(USER, TOKEN_A, T0)
        assert [r.id for r in in_period] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_pending_is_keyed_by_period(self, redemption_storage):
        await redemption_storage.save_pending(pending(handle="0x01"))
        await redemption_storage.save_pending(pending(handle="0x02"))
        await redemption_storage.save_pending(
            pending(handle="0x03", period_start=T0 + timedelta(seconds=DAY))
        )

        assert (await redemption_storage.get_pending(USER, TOKEN_A, T0)).handle == "0x02"
        assert await redemption_storage.clear_pending(USER, TOKEN_A, T0) is True
        assert await redemption_storage.get_pending(USER, TOKEN_A, T0) is None
        assert await redemption_storage.clear_pending(USER, TOKEN_A, T0) is False
        later = await redemption_storage.get_pending(USER, TOKEN_A, T0 + timedelta(seconds=DAY))
        assert later.handle == "0x03"


class TestGoogleSheetsStorage:
    """Tests for the Google Sheets backend against a fake worksheet."""

    @pytest.fixture
    def sheets(self):
        return FakeSheetsClient()

    @pytest.mark.asyncio
    async def test_grant_roundtrip_and_update_in_place(self, sheets):
        storage = GoogleSheetsGrantStorage(sheets)
        first = await storage.upsert_grant(make_grant(period_cap=10**30))
        await storage.upsert_grant(make_grant(period_cap=5))

        # Header plus exactly one grant row
        assert len(sheets.grants.rows) == 2
        stored = await storage.get_grant(USER, TOKEN_A)
        assert stored.id == first.id
        assert stored.period_cap == 5
        assert stored.granted_at == T0

    @pytest.mark.asyncio
    async def test_large_cap_survives_as_text(self, sheets):
        storage = GoogleSheetsGrantStorage(sheets)
        await storage.upsert_grant(make_grant(period_cap=10**30 + 1))

        assert sheets.grants.rows[1][5] == str(10**30 + 1)
        assert (await storage.get_grant(USER, TOKEN_A)).period_cap == 10**30 + 1

    @pytest.mark.asyncio
    async def test_grant_deactivation(self, sheets):
        storage = GoogleSheetsGrantStorage(sheets)
        await storage.upsert_grant(make_grant(asset=TOKEN_A))
        await storage.upsert_grant(make_grant(asset=TOKEN_B))

        assert await storage.deactivate_grant(USER, TOKEN_A) is True
        assert [g.asset for g in await storage.list_active_grants(USER)] == [TOKEN_B]
        assert await storage.deactivate_all_grants(USER) == 1
        assert await storage.list_users_with_active_grants() == []

    @pytest.mark.asyncio
    async def test_malformed_rows_are_skipped(self, sheets):
        storage = GoogleSheetsGrantStorage(sheets)
        sheets.grants.rows.append(["not-a-uuid", "garbage"])
        await storage.upsert_grant(make_grant())

        assert len(await storage.list_active_grants(USER)) == 1

    @pytest.mark.asyncio
    async def test_redemption_cap_is_enforced(self, sheets):
        storage = GoogleSheetsRedemptionStorage(sheets)
        await storage.record_redemption(record(700), period_cap=1_000)

        with pytest.raises(CapExceededError):
            await storage.record_redemption(record(301), period_cap=1_000)

        assert await storage.get_redeemed_amount(USER, TOKEN_A, T0) == 700
        assert len(sheets.redemptions.rows) == 2

    @pytest.mark.asyncio
    async def test_malformed_redemption_row_blocks_cap_check(self, sheets):
        """An unreadable amount must not count as zero against the cap."""
        storage = GoogleSheetsRedemptionStorage(sheets)
        await storage.record_redemption(record(700), period_cap=1_000)
        sheets.redemptions.rows[1][3] = "7e2"

        with pytest.raises(StorageError):
            await storage.get_redeemed_amount(USER, TOKEN_A, T0)
        with pytest.raises(StorageError) as exc_info:
            await storage.record_redemption(record(1_000), period_cap=1_000)

        assert not isinstance(exc_info.value, CapExceededError)
        assert len(sheets.redemptions.rows) == 2

    @pytest.mark.asyncio
    async def test_pending_roundtrip_update_and_clear(self, sheets):
        storage = GoogleSheetsRedemptionStorage(sheets)
        await storage.save_pending(pending(handle="0x01", amount=10**30))
        await storage.save_pending(pending(handle="0x02", amount=10**30))

        # Header plus exactly one pending row
        assert len(sheets.pending.rows) == 2
        stored = await storage.get_pending(USER, TOKEN_A, T0)
        assert stored.handle == "0x02"
        assert stored.amount == 10**30
        assert stored.distributions == [Distribution(recipient=BACKUP_1, amount=10**30)]

        assert await storage.clear_pending(USER, TOKEN_A, T0) is True
        assert await storage.get_pending(USER, TOKEN_A, T0) is None
        assert len(sheets.pending.rows) == 1

    @pytest.mark.asyncio
    async def test_malformed_pending_row_is_an_error(self, sheets):
        storage = GoogleSheetsRedemptionStorage(sheets)
        sheets.pending.rows.append([USER, TOKEN_A, "not-a-date", "1", "0x01", "", ""])

        with pytest.raises(StorageError):
            await storage.get_pending(USER, TOKEN_A, T0)

    @pytest.mark.asyncio
    async def test_audit_events_roundtrip(self, sheets):
        storage = GoogleSheetsAuditStorage(sheets)
        event = AuditEventBuilder.redemption_failed(USER, TOKEN_A, "reverted", None)

        assert await storage.append_event(event) is True
        events = await storage.get_recent_events()

        assert len(events) == 1
        assert events[0].event_id == event.event_id
        assert events[0].error_message == "reverted"
