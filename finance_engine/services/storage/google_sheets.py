"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is offered as a backend because:
1. Users can view their ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions across worksheets. We write the collections first and
  the meta sheet (with the revision) last, and the ledger re-derives every
  cached aggregate on load anyway
- One row per entity, payload stored as JSON in the second column

The implementation follows the abstract interface, so the ledger does not
know which backend it is talking to.
"""

import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from pydantic import ValidationError as PydanticValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from finance_engine.config import get_settings
from finance_engine.models.audit import AuditEvent, AuditEventType, AuditSeverity
from finance_engine.models.finance import (
    Account,
    Budget,
    Debt,
    LedgerSnapshot,
    Transaction,
)
from finance_engine.services.storage.interface import (
    AuditStorageInterface,
    LedgerStorageInterface,
    SnapshotCorruptedError,
    StorageConnectionError,
    StorageError,
)


ENTITY_COLUMNS = ["id", "payload_json"]
META_COLUMNS = ["key", "value"]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "revision",
    "description",
    "details_json",
    "error_message",
]

# snapshot attribute -> (worksheet suffix, model)
COLLECTIONS = {
    "accounts": ("Accounts", Account),
    "transactions": ("Transactions", Transaction),
    "budgets": ("Budgets", Budget),
    "debts": ("Debts", Debt),
}


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @property
    def sheet_prefix(self) -> str:
        return self._settings.sheet_prefix

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
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with a header row."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet

    def get_audit_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000)


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of ledger storage.

    Each collection lives in its own worksheet, one entity per row.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _sheet(self, suffix: str, columns: list[str]) -> gspread.Worksheet:
        return self._client.get_worksheet(f"{self._client.sheet_prefix}{suffix}", columns)

    def _write_rows(self, sheet: gspread.Worksheet, header: list[str], rows: list[list]) -> None:
        sheet.clear()
        sheet.update(range_name="A1", values=[header] + rows)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def save(self, snapshot: LedgerSnapshot) -> bool:
        """Replace every worksheet with the snapshot contents."""
        try:
            for attribute, (suffix, _) in COLLECTIONS.items():
                entities = getattr(snapshot, attribute)
                rows = [[str(entity.id), entity.model_dump_json()] for entity in entities]
                self._write_rows(self._sheet(suffix, ENTITY_COLUMNS), ENTITY_COLUMNS, rows)

            meta_rows = [
                ["revision", str(snapshot.revision)],
                ["saved_at", snapshot.saved_at.isoformat()],
                ["base_currency", snapshot.base_currency],
                ["next_sequence", str(snapshot.next_sequence)],
            ]
            self._write_rows(self._sheet("Meta", META_COLUMNS), META_COLUMNS, meta_rows)
            return True
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save ledger: {e}")

    def load(self) -> Optional[LedgerSnapshot]:
        try:
            meta_rows = self._sheet("Meta", META_COLUMNS).get_all_values()[1:]
            meta = {row[0]: row[1] for row in meta_rows if len(row) >= 2 and row[0]}
            if "revision" not in meta:
                return None

            collections = {}
            for attribute, (suffix, _) in COLLECTIONS.items():
                rows = self._sheet(suffix, ENTITY_COLUMNS).get_all_values()[1:]
                collections[attribute] = [
                    json.loads(row[1]) for row in rows if len(row) >= 2 and row[1]
                ]
        except StorageError:
            raise
        except json.JSONDecodeError as e:
            raise SnapshotCorruptedError(f"Malformed entity row in Google Sheets: {e}")
        except Exception as e:
            raise StorageError(f"Failed to load ledger: {e}")

        try:
            return LedgerSnapshot(
                revision=int(meta["revision"]),
                saved_at=datetime.fromisoformat(meta["saved_at"]),
                base_currency=meta.get("base_currency", "USD"),
                next_sequence=int(meta.get("next_sequence", 0)),
                **collections,
            )
        except (KeyError, ValueError, PydanticValidationError) as e:
            raise SnapshotCorruptedError(f"Google Sheets ledger is not a valid snapshot: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit storage.

    Append-only: we never modify or delete audit rows.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        details_json = safe_get(8)
        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3, "info")),
            entity_type=safe_get(4) or None,
            entity_id=UUID(safe_get(5)) if safe_get(5) else None,
            revision=int(safe_get(6)) if safe_get(6) else None,
            description=safe_get(7),
            details=json.loads(details_json) if details_json else {},
            error_message=safe_get(9) or None,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event to the sheet."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to append audit event: {e}")

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        try:
            sheet = self._client.get_audit_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to read audit events: {e}")

        events = []
        for row in reversed(all_rows):
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, json.JSONDecodeError):
                continue  # Skip malformed rows
            if len(events) >= limit:
                break
        return events
