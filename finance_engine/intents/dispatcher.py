"""
Intent Dispatcher

Applies parsed voice intents to the ledger.

DESIGN DECISION: The dispatcher is the boundary between untrusted parser
output and the store. It:
1. Parses the free-text amount and currency
2. Resolves spoken account names (case-insensitive)
3. Calls the same store operations a form would

It never guesses: an unknown account name or an unparseable amount is a
ValidationError, and `custom` intents are always rejected for manual entry.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from finance_engine.audit import AuditLogger
from finance_engine.ledger import LedgerStore, NotFoundError, ValidationError
from finance_engine.models.audit import AuditEventBuilder
from finance_engine.models.finance import (
    Account,
    Debt,
    DebtDirection,
    Transaction,
    TransactionType,
    ValidationIssue,
)
from finance_engine.models.intents import (
    CustomIntent,
    DebtGivenIntent,
    ExpenseIntent,
    IncomeIntent,
    ParsedIntent,
    TransferIntent,
    parse_intent,
)

logger = structlog.get_logger(__name__)

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "₽": "RUB",
    "₺": "TRY",
}

_CODE_PATTERN = re.compile(r"[A-Za-z]{3,4}")
_NUMBER_PATTERN = re.compile(r"\d[\d,\s]*(?:\.\d+)?")


def parse_amount_text(text: Optional[str], supported: frozenset) -> tuple[Decimal, Optional[str]]:
    """
    Split "$50" / "5,000 UZS" / "12.5" into (amount, currency or None).

    Commas and spaces inside the number are thousands separators.
    """
    if not text or not text.strip():
        raise ValidationError.single("amount", "missing", "Amount is required")

    currency = None
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            currency = code
            break
    if currency is None:
        for token in _CODE_PATTERN.findall(text):
            if token.upper() in supported:
                currency = token.upper()
                break

    match = _NUMBER_PATTERN.search(text)
    if match is None:
        raise ValidationError.single("amount", "invalid_value", f"No number in amount {text!r}")
    digits = re.sub(r"[,\s]", "", match.group(0))
    try:
        amount = Decimal(digits)
    except InvalidOperation:
        raise ValidationError.single("amount", "invalid_value", f"Invalid amount {text!r}")
    return amount, currency


class IntentDispatcher:
    """Turns ParsedIntent records into ledger operations."""

    def __init__(self, store: LedgerStore, audit_logger: Optional[AuditLogger] = None):
        self._store = store
        self._audit = audit_logger or AuditLogger()

    def _find_account(self, name: str) -> Account:
        wanted = name.strip().casefold()
        matches = [
            account for account in self._store.list_accounts()
            if account.name.casefold() == wanted
        ]
        if not matches:
            raise ValidationError.single("account", "not_found", f"No account named {name!r}")
        visible = [account for account in matches if not account.is_hidden]
        return (visible or matches)[0]

    def _account_for(self, name: Optional[str], currency: Optional[str]) -> Account:
        if name:
            return self._find_account(name)
        return self._store.resolve_account(currency=currency)

    def _post(self, intent: Union[ExpenseIntent, IncomeIntent], txn_type: TransactionType) -> Transaction:
        amount, currency = parse_amount_text(intent.amount, self._store.normalizer.supported)
        account = self._account_for(intent.account, currency)
        return self._store.create_transaction({
            "type": txn_type,
            "amount": amount,
            "currency": currency,
            "category": intent.category,
            "description": intent.description or "",
            "account_id": account.id,
        })

    def _transfer(self, intent: TransferIntent) -> Transaction:
        issues = []
        if not intent.from_account:
            issues.append(ValidationIssue(
                field="from", issue_type="missing", message="Transfer source is required", severity="error",
            ))
        if not intent.to_account:
            issues.append(ValidationIssue(
                field="to", issue_type="missing", message="Transfer destination is required", severity="error",
            ))
        if issues:
            raise ValidationError.from_issues(issues)
        amount, currency = parse_amount_text(intent.amount, self._store.normalizer.supported)
        source = self._find_account(intent.from_account)
        destination = self._find_account(intent.to_account)
        return self._store.create_transaction({
            "type": TransactionType.TRANSFER,
            "amount": amount,
            "currency": currency,
            "description": intent.description or "",
            "account_id": source.id,
            "to_account_id": destination.id,
        })

    def _debt_given(self, intent: DebtGivenIntent) -> Debt:
        if not intent.person:
            raise ValidationError.single("person", "missing", "Who received the money?")
        amount, currency = parse_amount_text(intent.amount, self._store.normalizer.supported)
        account = self._find_account(intent.account) if intent.account else None
        return self._store.upsert_debt({
            "direction": DebtDirection.OWED_TO_ME,
            "person": intent.person,
            "amount": amount,
            "currency": currency,
            "description": intent.description or "",
            "account_id": account.id if account is not None else None,
        })

    def dispatch(self, intent: Union[ParsedIntent, dict]) -> Union[Transaction, Debt]:
        """
        Apply one intent.

        Returns the created transaction or debt.

        Raises:
            ValidationError: malformed or unsupported intent
            NotFoundError: no account to post to
        """
        intent_type = intent.get("type", "unknown") if isinstance(intent, dict) else intent.type
        try:
            if isinstance(intent, dict):
                try:
                    intent = parse_intent(intent)
                except PydanticValidationError as e:
                    raise ValidationError(f"Unrecognized intent: {e.error_count()} error(s)")

            if isinstance(intent, ExpenseIntent):
                result = self._post(intent, TransactionType.EXPENSE)
            elif isinstance(intent, IncomeIntent):
                result = self._post(intent, TransactionType.INCOME)
            elif isinstance(intent, TransferIntent):
                result = self._transfer(intent)
            elif isinstance(intent, DebtGivenIntent):
                result = self._debt_given(intent)
            elif isinstance(intent, CustomIntent):
                raise ValidationError.single(
                    "type", "unsupported", "Custom intents must be entered manually",
                )
            else:
                raise ValidationError.single("type", "unsupported", f"Unknown intent {intent!r}")
        except (ValidationError, NotFoundError) as e:
            self._audit.log(AuditEventBuilder.intent_rejected(str(intent_type), str(e)))
            raise

        if intent.extensions:
            logger.info(
                "intent_extensions_ignored",
                intent_type=intent.type,
                keys=sorted(intent.extensions),
            )
        entity_type = "debt" if isinstance(result, Debt) else "transaction"
        self._audit.log(AuditEventBuilder.intent_dispatched(intent.type, entity_type, result.id))
        return result
