"""Currency normalization package."""

from finance_engine.currency.normalizer import (
    CurrencyNormalizer,
    default_normalizer,
    is_supported,
    normalize,
)

__all__ = ["CurrencyNormalizer", "default_normalizer", "is_supported", "normalize"]
