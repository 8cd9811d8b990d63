"""
Parsed Intent Models

Records produced by the voice/AI parser and consumed by the engine.

DESIGN DECISION: The parser may add any field it likes. We do NOT trust
that as typed data. Each intent type is a closed model; keys the model
does not declare are moved into `extensions`, where they are kept for
display and debugging but never read by the dispatcher.

Amounts arrive as free text ("$50", "5,000 UZS") and are only parsed by
the dispatcher.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class _IntentBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        extra="forbid",
        populate_by_name=True,
    )

    amount: Optional[str] = Field(default=None, description="Raw amount text, e.g. '$50'")
    description: Optional[str] = None
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Fields the parser sent that this intent type does not define",
    )

    @model_validator(mode="before")
    @classmethod
    def route_unknown_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set()
        for name, info in cls.model_fields.items():
            known.add(name)
            if info.alias:
                known.add(info.alias)
        routed = {}
        extensions = dict(data.get("extensions") or {})
        for key, value in data.items():
            if key == "extensions":
                continue
            if key in known:
                routed[key] = value
            else:
                extensions[key] = value
        routed["extensions"] = extensions
        return routed


class ExpenseIntent(_IntentBase):
    type: Literal["expense"] = "expense"
    category: Optional[str] = None
    account: Optional[str] = Field(default=None, description="Account name as spoken")


class IncomeIntent(_IntentBase):
    type: Literal["income"] = "income"
    category: Optional[str] = None
    account: Optional[str] = None


class TransferIntent(_IntentBase):
    type: Literal["transfer"] = "transfer"
    from_account: Optional[str] = Field(default=None, alias="from")
    to_account: Optional[str] = Field(default=None, alias="to")


class DebtGivenIntent(_IntentBase):
    """Money lent to someone: they owe it back."""
    type: Literal["debt_given"] = "debt_given"
    person: Optional[str] = None
    account: Optional[str] = None


class CustomIntent(_IntentBase):
    """Anything the parser could not classify. Never applied automatically."""
    type: Literal["custom"] = "custom"


ParsedIntent = Annotated[
    Union[ExpenseIntent, IncomeIntent, TransferIntent, DebtGivenIntent, CustomIntent],
    Field(discriminator="type"),
]

_INTENT_ADAPTER = TypeAdapter(ParsedIntent)


def parse_intent(data: dict) -> ParsedIntent:
    """
    Build the typed intent for a raw parser record.

    Raises pydantic.ValidationError for a missing or unknown `type`.
    """
    return _INTENT_ADAPTER.validate_python(data)
