"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is the default storage backend because:
1. Operators can inspect grants and redemptions directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (a few hundred users is fine)
- No transactions: the conditional redemption append is serialized by a
  process-wide lock, so only ONE engine process may write to a spreadsheet
- Limited query capabilities (we filter in Python)

The implementation follows the abstract interfaces, so we can swap
to PostgreSQL/SQLite later without changing the accounting logic.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from pulsekeeper.config import get_settings
from pulsekeeper.models.audit import AuditEvent, AuditEventType, AuditSeverity
from pulsekeeper.models.grant import (
    Distribution,
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
    StorageConnectionError,
    StorageError,
    ensure_within_cap,
)


# Column mappings for Grants sheet
GRANT_COLUMNS = [
    "id",
    "user",
    "asset",
    "auth_context",
    "auth_manager",
    "period_cap",
    "period_length_seconds",
    "granted_at",
    "expires_at",
    "active",
    "created_at",
    "updated_at",
]

# Column mappings for Redemptions sheet
REDEMPTION_COLUMNS = [
    "id",
    "user",
    "asset",
    "amount",
    "settlement_ref",
    "redeemed_at",
    "period_start",
]

# Column mappings for PendingSubmissions sheet
PENDING_COLUMNS = [
    "user",
    "asset",
    "period_start",
    "amount",
    "handle",
    "distributions_json",
    "submitted_at",
]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "user",
    "asset",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
]


def _safe_getter(row: list):
    """Handle missing trailing columns gracefully."""
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default
    return safe_get


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_grants_sheet(self) -> gspread.Worksheet:
        """Get or create the Grants worksheet."""
        return self._get_or_create_sheet(
            self._settings.grants_sheet_name, GRANT_COLUMNS, rows=1000
        )

    def get_redemptions_sheet(self) -> gspread.Worksheet:
        """Get or create the Redemptions worksheet."""
        return self._get_or_create_sheet(
            self._settings.redemptions_sheet_name, REDEMPTION_COLUMNS, rows=5000
        )

    def get_pending_sheet(self) -> gspread.Worksheet:
        """Get or create the PendingSubmissions worksheet."""
        return self._get_or_create_sheet(
            self._settings.pending_sheet_name, PENDING_COLUMNS, rows=1000
        )

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create_sheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )


class GoogleSheetsGrantStorage(GrantStorageInterface):
    """
    Google Sheets implementation of grant storage.

    One grant per row. Amounts are stored as decimal strings with RAW
    input so Sheets never turns them into lossy floats.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._lock = asyncio.Lock()

    def _grant_to_row(self, grant: Grant) -> list:
        """Convert a Grant to a spreadsheet row."""
        return [
            str(grant.id),
            grant.user,
            grant.asset,
            grant.auth_context,
            grant.auth_manager,
            str(grant.period_cap),
            str(grant.period_length_seconds),
            grant.granted_at.isoformat(),
            grant.expires_at.isoformat() if grant.expires_at else "",
            str(grant.active),
            grant.created_at.isoformat(),
            grant.updated_at.isoformat(),
        ]

    def _row_to_grant(self, row: list) -> Grant:
        """Convert a spreadsheet row to a Grant."""
        safe_get = _safe_getter(row)
        return Grant(
            id=UUID(safe_get(0)),
            user=safe_get(1),
            asset=safe_get(2),
            auth_context=safe_get(3),
            auth_manager=safe_get(4),
            period_cap=int(safe_get(5)),
            period_length_seconds=int(safe_get(6)),
            granted_at=datetime.fromisoformat(safe_get(7)),
            expires_at=datetime.fromisoformat(safe_get(8)) if safe_get(8) else None,
            active=safe_get(9).lower() == "true",
            created_at=datetime.fromisoformat(safe_get(10)),
            updated_at=datetime.fromisoformat(safe_get(11)),
        )

    def _load_all(self) -> list[tuple[int, Grant]]:
        """Load (sheet_row_index, grant) pairs, skipping malformed rows."""
        sheet = self._client.get_grants_sheet()
        loaded = []
        # Row 1 is the header
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:
                continue
            try:
                loaded.append((idx, self._row_to_grant(row)))
            except Exception:
                continue
        return loaded

    def _write_row(self, idx: int, grant: Grant) -> None:
        sheet = self._client.get_grants_sheet()
        sheet.update(
            range_name=f"A{idx}",
            values=[self._grant_to_row(grant)],
            value_input_option="RAW",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def upsert_grant(self, grant: Grant) -> Grant:
        async with self._lock:
            try:
                for idx, existing in self._load_all():
                    if existing.user == grant.user and existing.asset == grant.asset:
                        grant = grant.model_copy(
                            update={"id": existing.id, "created_at": existing.created_at}
                        )
                        self._write_row(idx, grant)
                        return grant

                sheet = self._client.get_grants_sheet()
                sheet.append_row(self._grant_to_row(grant), value_input_option="RAW")
                return grant
            except Exception as e:
                raise StorageError(f"Failed to store grant: {e}")

    async def get_grant(self, user: str, asset: str) -> Optional[Grant]:
        user, asset = normalize_address(user), normalize_address(asset)
        try:
            for _, grant in self._load_all():
                if grant.user == user and grant.asset == asset:
                    return grant
            return None
        except Exception as e:
            raise StorageError(f"Failed to get grant: {e}")

    async def list_active_grants(self, user: str) -> list[Grant]:
        user = normalize_address(user)
        try:
            return [g for _, g in self._load_all() if g.user == user and g.active]
        except Exception as e:
            raise StorageError(f"Failed to list grants: {e}")

    async def list_users_with_active_grants(self) -> list[str]:
        try:
            return sorted({g.user for _, g in self._load_all() if g.active})
        except Exception as e:
            raise StorageError(f"Failed to list users: {e}")

    async def deactivate_grant(self, user: str, asset: str) -> bool:
        user, asset = normalize_address(user), normalize_address(asset)
        async with self._lock:
            try:
                for idx, grant in self._load_all():
                    if grant.user == user and grant.asset == asset:
                        self._write_row(
                            idx,
                            grant.model_copy(update={"active": False, "updated_at": utc_now()}),
                        )
                        return True
                return False
            except Exception as e:
                raise StorageError(f"Failed to deactivate grant: {e}")

    async def deactivate_all_grants(self, user: str) -> int:
        user = normalize_address(user)
        count = 0
        async with self._lock:
            try:
                for idx, grant in self._load_all():
                    if grant.user == user and grant.active:
                        self._write_row(
                            idx,
                            grant.model_copy(update={"active": False, "updated_at": utc_now()}),
                        )
                        count += 1
            except Exception as e:
                raise StorageError(f"Failed to deactivate grants: {e}")
        return count


class GoogleSheetsRedemptionStorage(RedemptionStorageInterface):
    """
    Google Sheets implementation of redemption records.

    Records are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._lock = asyncio.Lock()

    def _record_to_row(self, record: RedemptionRecord) -> list:
        return [
            str(record.id),
            record.user,
            record.asset,
            str(record.amount),
            record.settlement_ref,
            record.redeemed_at.isoformat(),
            record.period_start.isoformat(),
        ]

    def _row_to_record(self, row: list) -> RedemptionRecord:
        safe_get = _safe_getter(row)
        return RedemptionRecord(
            id=UUID(safe_get(0)),
            user=safe_get(1),
            asset=safe_get(2),
            amount=int(safe_get(3)),
            settlement_ref=safe_get(4),
            redeemed_at=datetime.fromisoformat(safe_get(5)),
            period_start=datetime.fromisoformat(safe_get(6)),
        )

    def _load_all(self) -> list[RedemptionRecord]:
        """
        Load every record.

        Unlike grants, a malformed row is an error: these rows are summed
        against the period cap, and skipping one would under-count it.
        """
        sheet = self._client.get_redemptions_sheet()
        records = []
        # Row 1 is the header
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:
                continue
            try:
                records.append(self._row_to_record(row))
            except Exception as e:
                raise StorageError(f"Malformed redemption row {idx}: {e}")
        return records

    def _in_period(self, user: str, asset: str, period_start: datetime) -> list[RedemptionRecord]:
        return [
            r for r in self._load_all()
            if r.user == user and r.asset == asset and r.period_start == period_start
        ]

    async def record_redemption(
        self,
        record: RedemptionRecord,
        period_cap: int,
    ) -> RedemptionRecord:
        async with self._lock:
            try:
                already = sum(
                    r.amount for r in self._in_period(record.user, record.asset, record.period_start)
                )
            except Exception as e:
                raise StorageError(f"Failed to read period total: {e}")

            ensure_within_cap(record, already, period_cap)
            self._append(record)
            return record

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _append(self, record: RedemptionRecord) -> None:
        try:
            sheet = self._client.get_redemptions_sheet()
            sheet.append_row(self._record_to_row(record), value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to save redemption: {e}")

    async def get_redeemed_amount(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> int:
        user, asset = normalize_address(user), normalize_address(asset)
        try:
            return sum(r.amount for r in self._in_period(user, asset, ensure_utc(period_start)))
        except Exception as e:
            raise StorageError(f"Failed to sum redemptions: {e}")

    async def list_redemptions(self, user: str) -> list[RedemptionRecord]:
        user = normalize_address(user)
        try:
            records = [r for r in self._load_all() if r.user == user]
        except Exception as e:
            raise StorageError(f"Failed to list redemptions: {e}")
        # Newest first
        records.sort(key=lambda r: r.redeemed_at, reverse=True)
        return records

    async def list_redemptions_in_period(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> list[RedemptionRecord]:
        user, asset = normalize_address(user), normalize_address(asset)
        try:
            records = self._in_period(user, asset, ensure_utc(period_start))
        except Exception as e:
            raise StorageError(f"Failed to list redemptions: {e}")
        records.sort(key=lambda r: r.redeemed_at, reverse=True)
        return records

    # -------------------------------------------------------------------------
    # Pending submissions
    # -------------------------------------------------------------------------

    def _pending_to_row(self, pending: PendingSubmission) -> list:
        return [
            pending.user,
            pending.asset,
            pending.period_start.isoformat(),
            str(pending.amount),
            pending.handle,
            json.dumps([
                {"recipient": d.recipient, "amount": str(d.amount)}
                for d in pending.distributions
            ]),
            pending.submitted_at.isoformat(),
        ]

    def _row_to_pending(self, row: list) -> PendingSubmission:
        safe_get = _safe_getter(row)
        distributions = json.loads(safe_get(5)) if safe_get(5) else []
        return PendingSubmission(
            user=safe_get(0),
            asset=safe_get(1),
            period_start=datetime.fromisoformat(safe_get(2)),
            amount=int(safe_get(3)),
            handle=safe_get(4),
            distributions=[
                Distribution(recipient=d["recipient"], amount=int(d["amount"]))
                for d in distributions
            ],
            submitted_at=datetime.fromisoformat(safe_get(6)),
        )

    def _find_pending(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> tuple[Optional[int], Optional[PendingSubmission]]:
        """
        Locate the pending row for a period.

        A malformed row is an error: treating it as absent would let the
        period be submitted a second time.
        """
        sheet = self._client.get_pending_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:
                continue
            try:
                pending = self._row_to_pending(row)
            except Exception as e:
                raise StorageError(f"Malformed pending submission row {idx}: {e}")
            if pending.user == user and pending.asset == asset and pending.period_start == period_start:
                return idx, pending
        return None, None

    async def save_pending(self, pending: PendingSubmission) -> PendingSubmission:
        async with self._lock:
            try:
                idx, _ = self._find_pending(pending.user, pending.asset, pending.period_start)
                sheet = self._client.get_pending_sheet()
                if idx is None:
                    sheet.append_row(self._pending_to_row(pending), value_input_option="RAW")
                else:
                    sheet.update(
                        range_name=f"A{idx}",
                        values=[self._pending_to_row(pending)],
                        value_input_option="RAW",
                    )
                return pending
            except Exception as e:
                raise StorageError(f"Failed to save pending submission: {e}")

    async def get_pending(
        self,
        user: str,
        asset: str,
        period_start: datetime,
    ) -> Optional[PendingSubmission]:
        user, asset = normalize_address(user), normalize_address(asset)
        try:
            _, pending = self._find_pending(user, asset, ensure_utc(period_start))
            return pending
        except Exception as e:
            raise StorageError(f"Failed to read pending submission: {e}")

    async def clear_pending(self, user: str, asset: str, period_start: datetime) -> bool:
        user, asset = normalize_address(user), normalize_address(asset)
        async with self._lock:
            try:
                idx, _ = self._find_pending(user, asset, ensure_utc(period_start))
                if idx is None:
                    return False
                self._client.get_pending_sheet().delete_rows(idx)
                return True
            except Exception as e:
                raise StorageError(f"Failed to clear pending submission: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        safe_get = _safe_getter(row)
        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            user=safe_get(4) or None,
            asset=safe_get(5) or None,
            correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
            description=safe_get(7),
            details=json.loads(safe_get(8)) if safe_get(8) else {},
            error_message=safe_get(9) or None,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        try:
            sheet = self._client.get_audit_sheet()
            all_rows = sheet.get_all_values()[1:]

            events = []
            for row in all_rows:
                if row and row[0]:
                    try:
                        events.append(self._row_to_event(row))
                    except Exception:
                        continue

            # Sort newest first
            events.sort(key=lambda e: e.timestamp, reverse=True)
            return events[:limit]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
