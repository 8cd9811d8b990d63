"""Shared fixtures for the finance engine tests."""

from datetime import date

import pytest

from finance_engine.audit import AuditLogger
from finance_engine.currency import CurrencyNormalizer
from finance_engine.ledger import LedgerStore
from finance_engine.services.storage import InMemoryAuditStorage

SUPPORTED = ["UZS", "USD", "EUR", "GBP", "TRY", "SAR", "AED", "USDT", "RUB"]

# A fixed day mid-month, away from any period boundary
TODAY = date(2024, 5, 15)


@pytest.fixture
def normalizer():
    return CurrencyNormalizer(SUPPORTED, "USD")


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def store(normalizer, audit_logger):
    """A store without persistence."""
    return LedgerStore(normalizer=normalizer, audit_logger=audit_logger, clock=lambda: TODAY)


@pytest.fixture
def wallet(store):
    return store.create_account({"name": "Wallet", "currency": "USD"})


@pytest.fixture
def card(store):
    return store.create_account({"name": "Card", "type": "card", "currency": "USD"})


@pytest.fixture
def som_cash(store):
    return store.create_account({"name": "Som Cash", "currency": "UZS"})


@pytest.fixture
def today():
    return TODAY
