"""
Tests for debt tracking and settlement.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from finance_engine.ledger import NotFoundError, ValidationError
from finance_engine.models.audit import AuditEventType
from finance_engine.models.finance import DebtDirection, DebtStatus, TransactionType


def owed_by_me(amount="100", **extra):
    return {"direction": "owed_by_me", "person": "Aziz", "amount": amount, **extra}


class TestUpsert:
    """Creating and editing debts."""

    def test_create_debt(self, store):
        debt = store.upsert_debt(owed_by_me())
        assert debt.status == DebtStatus.OPEN
        assert debt.currency == "USD"
        assert store.get_debt(debt.id) == debt

    def test_currency_from_funding_account(self, store, som_cash):
        debt = store.upsert_debt(owed_by_me("500000", account_id=som_cash.id))
        assert debt.currency == "UZS"

    def test_edit_open_debt(self, store):
        debt = store.upsert_debt(owed_by_me())
        edited = store.upsert_debt(owed_by_me("80", id=debt.id))
        assert edited.id == debt.id
        assert edited.amount == Decimal("80")
        assert edited.created_at == debt.created_at
        assert len(store.list_debts()) == 1

    def test_settled_debt_is_read_only(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        store.settle_debt(debt.id)
        with pytest.raises(ValidationError):
            store.upsert_debt(owed_by_me("10", id=debt.id))

    def test_bad_amount(self, store):
        with pytest.raises(ValidationError):
            store.upsert_debt(owed_by_me("0"))

    def test_missing_person(self, store):
        with pytest.raises(ValidationError):
            store.upsert_debt({"direction": "owed_to_me", "person": "", "amount": "5"})

    def test_missing_funding_account(self, store):
        with pytest.raises(NotFoundError):
            store.upsert_debt(owed_by_me(account_id=uuid4()))


class TestSettlement:
    """Settlement is one-way and posts at most once."""

    def test_settle_twice_posts_once(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        first = store.settle_debt(debt.id, post_transaction=True)
        second = store.settle_debt(debt.id, post_transaction=True)

        linked = [txn for txn in store.list_transactions() if txn.debt_id == debt.id]
        assert len(linked) == 1
        assert first.settlement_transaction_id == linked[0].id
        assert second == first
        assert store.get_account_balance(wallet.id) == Decimal("-100")

    def test_owed_by_me_posts_expense(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        settled = store.settle_debt(debt.id, post_transaction=True)
        txn = store.get_transaction(settled.settlement_transaction_id)
        assert txn.type == TransactionType.EXPENSE
        assert txn.category == "debt"

    def test_owed_to_me_posts_income(self, store, wallet):
        debt = store.upsert_debt({"direction": "owed_to_me", "person": "Lola", "amount": "40"})
        store.settle_debt(debt.id, post_transaction=True)
        assert store.get_account_balance(wallet.id) == Decimal("40")

    def test_settle_without_posting(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        settled = store.settle_debt(debt.id)
        assert settled.status == DebtStatus.SETTLED
        assert settled.settlement_transaction_id is None
        assert store.list_transactions() == []

    def test_settle_uses_funding_account(self, store, wallet, card):
        debt = store.upsert_debt(owed_by_me(account_id=card.id))
        store.settle_debt(debt.id, post_transaction=True)
        assert store.get_account_balance(card.id) == Decimal("-100")
        assert store.get_account_balance(wallet.id) == Decimal("0")

    def test_settle_picks_matching_currency(self, store, wallet, som_cash):
        debt = store.upsert_debt(owed_by_me("50000", currency="UZS"))
        store.settle_debt(debt.id, post_transaction=True)
        assert store.get_account_balance(som_cash.id) == Decimal("-50000")

    def test_settle_without_accounts(self, store):
        debt = store.upsert_debt(owed_by_me())
        with pytest.raises(NotFoundError):
            store.settle_debt(debt.id, post_transaction=True)
        assert store.get_debt(debt.id).status == DebtStatus.OPEN

    def test_settle_missing_debt(self, store):
        with pytest.raises(NotFoundError):
            store.settle_debt(uuid4())

    def test_deleting_settlement_reopens_debt(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        settled = store.settle_debt(debt.id, post_transaction=True)
        store.delete_transaction(settled.settlement_transaction_id)

        reopened = store.get_debt(debt.id)
        assert reopened.status == DebtStatus.OPEN
        assert reopened.settlement_transaction_id is None
        assert store.get_account_balance(wallet.id) == Decimal("0")

    def test_restoring_settlement_settles_again(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        settled = store.settle_debt(debt.id, post_transaction=True)
        removed = store.delete_transaction(settled.settlement_transaction_id)
        store.restore_transaction(removed)

        assert store.get_debt(debt.id).settlement_transaction_id == removed.id
        assert store.get_account_balance(wallet.id) == Decimal("-100")


class TestPartialPayments:
    """Repayments in instalments."""

    def test_payment_reduces_remaining(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        payment = store.add_debt_payment(debt.id, "30")

        txn = store.get_transaction(payment.transaction_id)
        assert txn.type == TransactionType.EXPENSE
        assert txn.debt_id == debt.id
        assert txn.category == "debt"
        assert payment.remaining_after == Decimal("70")
        assert store.get_debt_remaining(debt.id) == Decimal("70")
        assert store.get_debt(debt.id).status == DebtStatus.OPEN
        assert store.get_account_balance(wallet.id) == Decimal("-30")

    def test_owed_to_me_payment_is_income(self, store, wallet):
        debt = store.upsert_debt({"direction": "owed_to_me", "person": "Lola", "amount": "40"})
        store.add_debt_payment(debt.id, "15")
        assert store.get_account_balance(wallet.id) == Decimal("15")

    def test_last_payment_settles(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        store.add_debt_payment(debt.id, "60")
        final = store.add_debt_payment(debt.id, "40")

        settled = store.get_debt(debt.id)
        assert settled.status == DebtStatus.SETTLED
        assert settled.settlement_transaction_id == final.transaction_id
        assert store.get_debt_remaining(debt.id) == Decimal("0")

    def test_payment_and_settlement_are_one_commit(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("50"))
        revision = store.revision
        store.add_debt_payment(debt.id, "50")
        assert store.revision == revision + 1

    def test_overpayment_rejected(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        store.add_debt_payment(debt.id, "80")
        with pytest.raises(ValidationError) as exc_info:
            store.add_debt_payment(debt.id, "30")
        assert exc_info.value.issues[0].issue_type == "overpayment"
        assert store.get_debt_remaining(debt.id) == Decimal("20")
        assert store.get_account_balance(wallet.id) == Decimal("-80")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "NaN"])
    def test_bad_payment_amount(self, store, wallet, amount):
        debt = store.upsert_debt(owed_by_me())
        with pytest.raises(ValidationError):
            store.add_debt_payment(debt.id, amount)
        assert store.list_transactions() == []

    def test_payment_on_settled_debt_rejected(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        store.settle_debt(debt.id)
        with pytest.raises(ValidationError):
            store.add_debt_payment(debt.id, "10")

    def test_payment_date_and_note(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        payment = store.add_debt_payment(debt.id, "10", date=date(2024, 5, 2), note="first half")
        assert payment.date == date(2024, 5, 2)
        assert payment.note == "first half"

    def test_payment_uses_funding_account(self, store, wallet, card):
        debt = store.upsert_debt(owed_by_me(account_id=card.id))
        payment = store.add_debt_payment(debt.id, "10")
        assert payment.account_id == card.id

    def test_payment_is_audited(self, store, wallet, audit_storage):
        debt = store.upsert_debt(owed_by_me())
        store.add_debt_payment(debt.id, "10")
        events = audit_storage.get_recent_events(limit=5)
        assert AuditEventType.DEBT_PAYMENT_ADDED in [event.event_type for event in events]

    def test_deleting_payment_restores_remaining(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        first = store.add_debt_payment(debt.id, "30")
        store.add_debt_payment(debt.id, "20")

        store.delete_transaction(first.transaction_id)
        assert store.get_debt_remaining(debt.id) == Decimal("80")
        assert [payment.amount for payment in store.list_debt_payments(debt.id)] == [Decimal("20")]
        assert store.get_account_balance(wallet.id) == Decimal("-20")

    def test_deleting_payment_reopens_paid_off_debt(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        first = store.add_debt_payment(debt.id, "70")
        store.add_debt_payment(debt.id, "30")

        store.delete_transaction(first.transaction_id)
        reopened = store.get_debt(debt.id)
        assert reopened.status == DebtStatus.OPEN
        assert reopened.settlement_transaction_id is None
        assert store.get_debt_remaining(debt.id) == Decimal("70")

    def test_restoring_payment_settles_again(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        first = store.add_debt_payment(debt.id, "70")
        store.add_debt_payment(debt.id, "30")
        removed = store.delete_transaction(first.transaction_id)

        store.restore_transaction(removed)
        assert store.get_debt(debt.id).status == DebtStatus.SETTLED
        assert store.get_debt_remaining(debt.id) == Decimal("0")

    def test_settle_posts_only_what_remains(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        store.add_debt_payment(debt.id, "40")
        settled = store.settle_debt(debt.id, post_transaction=True)

        assert store.get_transaction(settled.settlement_transaction_id).amount == Decimal("60")
        assert store.get_account_balance(wallet.id) == Decimal("-100")
        assert len(store.list_debt_payments(debt.id)) == 2

    def test_editing_payment_above_debt_rejected(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        payment = store.add_debt_payment(debt.id, "40")
        with pytest.raises(ValidationError):
            store.edit_transaction(payment.transaction_id, {"amount": "150"})
        assert store.get_transaction(payment.transaction_id).amount == Decimal("40")

    def test_editing_payment_to_full_amount_settles(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        payment = store.add_debt_payment(debt.id, "40")
        store.edit_transaction(payment.transaction_id, {"amount": "100"})
        assert store.get_debt(debt.id).settlement_transaction_id == payment.transaction_id

    def test_amount_edit_below_repaid_rejected(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        store.add_debt_payment(debt.id, "60")
        with pytest.raises(ValidationError):
            store.upsert_debt(owed_by_me("50", id=debt.id))
        assert store.get_debt(debt.id).amount == Decimal("100")

    def test_payments_survive_verify(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        store.add_debt_payment(debt.id, "25")
        store.add_debt_payment(debt.id, "25")
        store.verify()


class TestFunding:
    """The money that changed hands when the debt was made."""

    def test_lending_posts_expense(self, store, wallet):
        debt = store.upsert_debt(
            {"direction": "owed_to_me", "person": "Lola", "amount": "40"}, post_funding=True,
        )
        funding = store.get_transaction(debt.funding_transaction_id)
        assert funding.type == TransactionType.EXPENSE
        assert funding.debt_id is None
        assert store.get_account_balance(wallet.id) == Decimal("-40")
        assert store.get_debt_remaining(debt.id) == Decimal("40")

    def test_borrowing_posts_income(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"), post_funding=True)
        assert store.get_transaction(debt.funding_transaction_id).type == TransactionType.INCOME
        assert store.get_account_balance(wallet.id) == Decimal("100")

    def test_full_cycle_nets_to_zero(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"), post_funding=True)
        store.add_debt_payment(debt.id, "100")
        assert store.get_account_balance(wallet.id) == Decimal("0")
        assert store.get_debt(debt.id).status == DebtStatus.SETTLED

    def test_edit_keeps_funding_link(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"), post_funding=True)
        edited = store.upsert_debt(owed_by_me("100", id=debt.id, description="rent share"))
        assert edited.funding_transaction_id == debt.funding_transaction_id

    def test_deleting_funding_clears_link(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"), post_funding=True)
        store.delete_transaction(debt.funding_transaction_id)
        assert store.get_debt(debt.id).funding_transaction_id is None

    def test_funding_without_accounts(self, store):
        with pytest.raises(NotFoundError):
            store.upsert_debt(owed_by_me(), post_funding=True)
        assert store.list_debts() == []


class TestDeleteAndTotals:
    """Deletion policy and per-currency totals."""

    def test_delete_blocked_while_linked(self, store, wallet):
        debt = store.upsert_debt(owed_by_me())
        store.settle_debt(debt.id, post_transaction=True)
        with pytest.raises(ValidationError):
            store.delete_debt(debt.id)

    def test_delete_unlinked_debt(self, store):
        debt = store.upsert_debt(owed_by_me())
        store.delete_debt(debt.id)
        with pytest.raises(NotFoundError):
            store.get_debt(debt.id)

    def test_totals_grouped_by_currency(self, store):
        store.upsert_debt(owed_by_me("100"))
        store.upsert_debt(owed_by_me("50"))
        store.upsert_debt(owed_by_me("20000", currency="UZS"))
        store.upsert_debt({"direction": "owed_to_me", "person": "Lola", "amount": "7"})

        totals = store.get_debt_totals(DebtDirection.OWED_BY_ME)
        assert totals.totals == {"USD": Decimal("150"), "UZS": Decimal("20000")}
        assert totals.count == 3

    def test_settled_debts_excluded_from_totals(self, store):
        debt = store.upsert_debt(owed_by_me("100"))
        store.upsert_debt(owed_by_me("30"))
        store.settle_debt(debt.id)
        totals = store.get_debt_totals("owed_by_me")
        assert totals.totals == {"USD": Decimal("30")}
        assert totals.count == 1

    def test_totals_report_remaining(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"))
        store.upsert_debt(owed_by_me("50"))
        store.add_debt_payment(debt.id, "30")

        totals = store.get_debt_totals(DebtDirection.OWED_BY_ME)
        assert totals.totals == {"USD": Decimal("150")}
        assert totals.remaining == {"USD": Decimal("120")}

    def test_cascade_delete_removes_payments_and_funding(self, store, wallet):
        debt = store.upsert_debt(owed_by_me("100"), post_funding=True)
        store.add_debt_payment(debt.id, "30")
        store.delete_debt(debt.id, cascade=True)

        assert store.list_transactions() == []
        assert store.get_account_balance(wallet.id) == Decimal("0")
        with pytest.raises(NotFoundError):
            store.get_debt(debt.id)

    def test_account_delete_clears_funding_link(self, store, wallet):
        debt = store.upsert_debt(owed_by_me(account_id=wallet.id))
        store.delete_account(wallet.id)
        assert store.get_debt(debt.id).account_id is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
