"""
Tests for persistence: backends, the ordered writer and load-time repair.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import gspread
import pytest

from finance_engine.ledger import LedgerStore
from finance_engine.models.audit import AuditEvent, AuditEventType
from finance_engine.models.finance import (
    Account,
    Debt,
    LedgerSnapshot,
    Transaction,
    TransactionType,
)
from finance_engine.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryLedgerStorage,
    JsonFileLedgerStorage,
    SnapshotCorruptedError,
    SnapshotWriter,
    StorageError,
)
from finance_engine.services.storage.google_sheets import AUDIT_COLUMNS


@pytest.fixture
def make_store(normalizer, audit_logger, today):
    def factory(storage):
        return LedgerStore(
            storage=storage,
            normalizer=normalizer,
            audit_logger=audit_logger,
            clock=lambda: today,
        )
    return factory


def populate(store):
    wallet = store.create_account({"name": "Wallet", "currency": "USD", "opening_balance": "100"})
    store.create_transaction({"type": "expense", "amount": "30", "account_id": wallet.id, "category": "food"})
    store.create_budget({"name": "Food", "amount": "200", "category": "food"})
    store.upsert_debt({"direction": "owed_to_me", "person": "Lola", "amount": "15"})
    return wallet


class TestJsonRoundTrip:
    """What is saved is what comes back."""

    def test_round_trip(self, tmp_path, make_store):
        storage = JsonFileLedgerStorage(tmp_path / "ledger.json")
        original = make_store(storage)
        wallet = populate(original)
        original.close()

        reloaded = make_store(storage)
        result = reloaded.load()

        assert result.loaded
        assert not result.degraded
        assert result.revision == original.revision
        assert result.transactions == 1
        assert result.repaired_caches == 0
        assert reloaded.get_account_balance(wallet.id) == Decimal("70")
        assert reloaded.list_transactions() == original.list_transactions()
        assert reloaded.list_budgets()[0].spent == Decimal("30")
        assert len(reloaded.list_debts()) == 1

    def test_sequence_continues_after_load(self, tmp_path, make_store):
        storage = JsonFileLedgerStorage(tmp_path / "ledger.json")
        original = make_store(storage)
        wallet = populate(original)
        original.close()

        reloaded = make_store(storage)
        reloaded.load()
        txn = reloaded.create_transaction({"type": "income", "amount": "5", "account_id": wallet.id})
        assert txn.sequence > reloaded.list_transactions()[0].sequence
        assert reloaded.revision == original.revision + 1
        reloaded.close()

    def test_missing_file_is_empty_ledger(self, tmp_path, make_store):
        store = make_store(JsonFileLedgerStorage(tmp_path / "absent.json"))
        result = store.load()
        assert not result.loaded
        assert not result.degraded
        assert store.list_accounts() == []

    def test_garbage_file(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(SnapshotCorruptedError):
            JsonFileLedgerStorage(path).load()

    def test_no_temp_files_left(self, tmp_path, make_store):
        store = make_store(JsonFileLedgerStorage(tmp_path / "ledger.json"))
        populate(store)
        store.close()
        assert [p.name for p in tmp_path.iterdir()] == ["ledger.json"]


class TestLoadRepair:
    """Caches are re-derived; broken invariants degrade the load."""

    def test_tampered_balance_repaired(self, make_store):
        storage = InMemoryLedgerStorage()
        original = make_store(storage)
        wallet = populate(original)
        original.close()

        snapshot = storage.load()
        tampered = snapshot.model_copy(update={
            "accounts": [a.model_copy(update={"balance": Decimal("999")}) for a in snapshot.accounts],
        })
        storage.save(tampered)

        reloaded = make_store(storage)
        result = reloaded.load()
        assert result.loaded
        assert result.repaired_caches == 1
        assert reloaded.get_account_balance(wallet.id) == Decimal("70")
        reloaded.verify()

    def test_tampered_budget_spent_repaired(self, make_store):
        storage = InMemoryLedgerStorage()
        original = make_store(storage)
        populate(original)
        original.close()

        snapshot = storage.load()
        storage.save(snapshot.model_copy(update={
            "budgets": [b.model_copy(update={"spent": Decimal("0")}) for b in snapshot.budgets],
        }))

        reloaded = make_store(storage)
        assert reloaded.load().repaired_caches == 1
        assert reloaded.list_budgets()[0].spent == Decimal("30")

    def test_corrupted_file_keeps_state(self, tmp_path, make_store):
        path = tmp_path / "ledger.json"
        store = make_store(JsonFileLedgerStorage(path))
        wallet = store.create_account({"name": "Wallet", "currency": "USD"})
        store.flush()
        path.write_text("[]", encoding="utf-8")

        result = store.load()
        assert result.degraded
        assert not result.loaded
        assert result.warnings
        assert store.get_account(wallet.id).name == "Wallet"
        store.close()

    def test_missing_account_reference(self, make_store, audit_storage):
        txn = Transaction(
            type=TransactionType.EXPENSE,
            amount=Decimal("5"),
            currency="USD",
            account_id=uuid4(),
            date=date(2024, 1, 1),
        )
        storage = InMemoryLedgerStorage(LedgerSnapshot(revision=4, transactions=[txn]))
        store = make_store(storage)

        result = store.load()
        assert result.degraded
        assert "missing account" in result.warnings[0]
        assert store.revision == 0
        latest = audit_storage.get_recent_events(limit=1)[0]
        assert latest.event_type == AuditEventType.CONSISTENCY_WARNING

    def test_currency_mismatch_degrades(self, make_store):
        account = Account(name="Wallet", currency="USD")
        txn = Transaction(
            type=TransactionType.INCOME,
            amount=Decimal("5"),
            currency="EUR",
            account_id=account.id,
            date=date(2024, 1, 1),
        )
        storage = InMemoryLedgerStorage(LedgerSnapshot(revision=1, accounts=[account], transactions=[txn]))
        assert make_store(storage).load().degraded

    def test_overpaid_debt_degrades(self, make_store):
        account = Account(name="Wallet", currency="USD")
        debt = Debt(direction="owed_by_me", person="Aziz", amount=Decimal("10"), currency="USD")
        txn = Transaction(
            type=TransactionType.EXPENSE,
            amount=Decimal("25"),
            currency="USD",
            account_id=account.id,
            date=date(2024, 1, 1),
            debt_id=debt.id,
        )
        storage = InMemoryLedgerStorage(LedgerSnapshot(
            revision=2, accounts=[account], transactions=[txn], debts=[debt],
        ))
        result = make_store(storage).load()
        assert result.degraded
        assert "exceed" in result.warnings[0]

    def test_load_notifies_subscribers(self, make_store):
        storage = InMemoryLedgerStorage()
        original = make_store(storage)
        populate(original)
        original.close()

        reloaded = make_store(storage)
        seen = []
        reloaded.subscribe(seen.append)
        reloaded.load()
        assert [snapshot.revision for snapshot in seen] == [original.revision]


class TestWriter:
    """Writes land in commit order and failures are reported, not raised."""

    class RecordingStorage(InMemoryLedgerStorage):
        def __init__(self):
            super().__init__()
            self.revisions = []

        def save(self, snapshot):
            self.revisions.append(snapshot.revision)
            return super().save(snapshot)

    class FailingStorage(InMemoryLedgerStorage):
        def __init__(self):
            super().__init__()
            self.attempts = 0

        def save(self, snapshot):
            self.attempts += 1
            raise StorageError("disk full")

    def test_commit_order(self):
        storage = self.RecordingStorage()
        writer = SnapshotWriter(storage, backoff_seconds=0)
        for revision in (1, 2, 3):
            writer.submit(LedgerSnapshot(revision=revision))
        assert writer.flush(timeout=5)
        writer.close()
        assert storage.revisions == [1, 2, 3]
        assert writer.last_written_revision == 3

    def test_stale_snapshot_skipped(self):
        storage = self.RecordingStorage()
        writer = SnapshotWriter(storage, backoff_seconds=0)
        writer.submit(LedgerSnapshot(revision=2))
        stale = writer.submit(LedgerSnapshot(revision=1))
        writer.flush(timeout=5)
        writer.close()
        assert stale.result() is False
        assert storage.revisions == [2]

    def test_failure_reported(self):
        storage = self.FailingStorage()
        failures = []
        writer = SnapshotWriter(
            storage,
            retry_attempts=2,
            on_failure=lambda snapshot, error: failures.append((snapshot.revision, str(error))),
            backoff_seconds=0,
        )
        future = writer.submit(LedgerSnapshot(revision=1))
        writer.flush(timeout=5)
        writer.close()
        assert future.result() is False
        assert storage.attempts == 2
        assert failures == [(1, "disk full")]
        assert writer.last_written_revision == -1

    def test_store_audits_failed_save(self, make_store, audit_storage):
        store = make_store(self.FailingStorage())
        account = store.create_account({"name": "Wallet", "currency": "USD"})
        store.flush()
        # The commit stands even though the write failed
        assert store.get_account(account.id).name == "Wallet"
        latest = audit_storage.get_recent_events(limit=1)[0]
        assert latest.event_type == AuditEventType.SNAPSHOT_SAVE_FAILED
        assert latest.revision == 1
        store.close()

    def test_atomic_block_saves_once(self, make_store):
        storage = InMemoryLedgerStorage()
        store = make_store(storage)
        with store.atomic():
            wallet = store.create_account({"name": "Wallet", "currency": "USD"})
            store.create_transaction({"type": "income", "amount": "10", "account_id": wallet.id})
        store.close()
        assert storage.save_count == 1
        assert storage.load().revision == 1


# =============================================================================
# GOOGLE SHEETS - exercised against in-memory worksheets
# =============================================================================

class FakeWorksheet:
    def __init__(self, title):
        self.title = title
        self.rows = []

    def clear(self):
        self.rows = []

    def update(self, range_name=None, values=None):
        assert range_name == "A1"
        self.rows = [list(row) for row in values]

    def append_row(self, values, value_input_option=None):
        self.rows.append(list(values))

    def get_all_values(self):
        return [list(row) for row in self.rows]


class FakeSheetsClient:
    sheet_prefix = "Ledger"

    def __init__(self):
        self.sheets = {}

    def get_worksheet(self, title, columns, rows=1000):
        if title not in self.sheets:
            sheet = FakeWorksheet(title)
            sheet.append_row(columns)
            self.sheets[title] = sheet
        return self.sheets[title]

    def get_audit_sheet(self):
        return self.get_worksheet("AuditLog", AUDIT_COLUMNS, rows=5000)


class TestGoogleSheetsClient:
    """Worksheets are created on first use."""

    @pytest.fixture
    def client(self, monkeypatch, tmp_path):
        credentials = tmp_path / "service.json"
        credentials.write_text("{}", encoding="utf-8")
        monkeypatch.setenv("GOOGLE_SHEETS_CREDENTIALS_PATH", str(credentials))
        monkeypatch.setenv("GOOGLE_SHEETS_SPREADSHEET_ID", "sheet-id")
        client = GoogleSheetsClient()
        client._spreadsheet = MagicMock()
        return client

    def test_existing_worksheet(self, client):
        sheet = client.get_worksheet("LedgerMeta", ["key", "value"])
        client._spreadsheet.worksheet.assert_called_once_with("LedgerMeta")
        client._spreadsheet.add_worksheet.assert_not_called()
        assert sheet is client._spreadsheet.worksheet.return_value

    def test_missing_worksheet_created_with_header(self, client):
        client._spreadsheet.worksheet.side_effect = gspread.WorksheetNotFound("LedgerMeta")
        sheet = client.get_worksheet("LedgerMeta", ["key", "value"])
        client._spreadsheet.add_worksheet.assert_called_once_with(title="LedgerMeta", rows=1000, cols=2)
        sheet.append_row.assert_called_once_with(["key", "value"])

    def test_audit_sheet(self, client):
        client._spreadsheet.worksheet.side_effect = gspread.WorksheetNotFound("AuditLog")
        client.get_audit_sheet()
        client._spreadsheet.add_worksheet.assert_called_once_with(
            title="AuditLog", rows=5000, cols=len(AUDIT_COLUMNS),
        )
        assert client.sheet_prefix == "Ledger"


class TestGoogleSheetsLedgerStorage:
    """One worksheet per collection plus a meta sheet."""

    def test_empty_spreadsheet_loads_nothing(self):
        assert GoogleSheetsLedgerStorage(client=FakeSheetsClient()).load() is None

    def test_round_trip_through_store(self, make_store):
        client = FakeSheetsClient()
        storage = GoogleSheetsLedgerStorage(client=client)
        original = make_store(storage)
        wallet = populate(original)
        original.close()

        assert set(client.sheets) == {
            "LedgerAccounts", "LedgerTransactions", "LedgerBudgets", "LedgerDebts", "LedgerMeta",
        }
        assert client.sheets["LedgerTransactions"].rows[0] == ["id", "payload_json"]
        assert len(client.sheets["LedgerTransactions"].rows) == 2

        reloaded = make_store(storage)
        result = reloaded.load()
        assert result.loaded
        assert result.revision == original.revision
        assert reloaded.get_account_balance(wallet.id) == Decimal("70")
        assert reloaded.list_transactions() == original.list_transactions()

    def test_malformed_row(self):
        client = FakeSheetsClient()
        storage = GoogleSheetsLedgerStorage(client=client)
        storage.save(LedgerSnapshot(revision=1))
        client.sheets["LedgerAccounts"].append_row([str(uuid4()), "{broken"])
        with pytest.raises(SnapshotCorruptedError):
            storage.load()

    def test_invalid_entity(self):
        client = FakeSheetsClient()
        storage = GoogleSheetsLedgerStorage(client=client)
        storage.save(LedgerSnapshot(revision=1))
        client.sheets["LedgerAccounts"].append_row([str(uuid4()), '{"name": "No currency"}'])
        with pytest.raises(SnapshotCorruptedError):
            storage.load()


class TestGoogleSheetsAuditStorage:
    """Append-only audit rows."""

    def test_newest_first(self):
        storage = GoogleSheetsAuditStorage(client=FakeSheetsClient())
        first = AuditEvent(event_type=AuditEventType.ACCOUNT_CREATED, description="first", revision=1)
        second = AuditEvent(
            event_type=AuditEventType.DEBT_SETTLED,
            description="second",
            details={"amount": "5"},
        )
        storage.append_event(first)
        storage.append_event(second)

        events = storage.get_recent_events()
        assert [event.event_id for event in events] == [second.event_id, first.event_id]
        assert events[0].details == {"amount": "5"}
        assert events[1].revision == 1

    def test_malformed_rows_skipped(self):
        client = FakeSheetsClient()
        storage = GoogleSheetsAuditStorage(client=client)
        storage.append_event(AuditEvent(event_type=AuditEventType.ACCOUNT_CREATED, description="ok"))
        client.get_audit_sheet().append_row(["not-a-uuid", "yesterday"])
        client.get_audit_sheet().append_row([])

        events = storage.get_recent_events()
        assert len(events) == 1
        assert events[0].description == "ok"

    def test_limit(self):
        storage = GoogleSheetsAuditStorage(client=FakeSheetsClient())
        for index in range(5):
            storage.append_event(AuditEvent(event_type=AuditEventType.BUDGET_UPDATED, description=str(index)))
        assert [event.description for event in storage.get_recent_events(limit=2)] == ["4", "3"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
