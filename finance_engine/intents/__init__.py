"""Voice intent dispatch."""

from finance_engine.intents.dispatcher import IntentDispatcher, parse_amount_text

__all__ = ["IntentDispatcher", "parse_amount_text"]
