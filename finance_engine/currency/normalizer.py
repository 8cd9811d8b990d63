"""
Currency Normalizer

Canonicalizes currency codes against a fixed allow-list.

DESIGN DECISION: normalize() is total. Unsupported or missing input
degrades to a fallback instead of raising, because it feeds forms that
must always render a valid selection. Engine operations that need a
hard guarantee call is_supported() and raise themselves.
"""

from typing import Iterable, Optional

from finance_engine.config import get_settings


def _sanitize(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class CurrencyNormalizer:
    """Allow-list of currency codes plus a designated base currency."""

    def __init__(self, supported: Iterable[str], base_currency: str = "USD"):
        self._supported = frozenset(_sanitize(code) for code in supported if _sanitize(code))
        self._base_currency = _sanitize(base_currency)
        if self._base_currency not in self._supported:
            raise ValueError(
                f"Base currency {self._base_currency!r} is not in the supported set"
            )

    @property
    def base_currency(self) -> str:
        return self._base_currency

    @property
    def supported(self) -> frozenset[str]:
        return self._supported

    def is_supported(self, code: Optional[str]) -> bool:
        """Case-insensitive, whitespace-trimmed membership test."""
        if not code:
            return False
        return _sanitize(code) in self._supported

    def normalize(self, code: Optional[str], fallback: Optional[str] = None) -> str:
        """
        Uppercase and trim a code.

        Returns `fallback` (or the base currency) when the code is
        absent or unsupported.
        """
        upper = _sanitize(code)
        if upper in self._supported:
            return upper
        return _sanitize(fallback) if fallback else self._base_currency

    def with_base(self, base_currency: str) -> "CurrencyNormalizer":
        return CurrencyNormalizer(self._supported, base_currency)


def default_normalizer() -> CurrencyNormalizer:
    """Build a normalizer from the configured allow-list."""
    engine = get_settings().engine
    return CurrencyNormalizer(engine.supported_currencies_list, engine.base_currency)


def is_supported(code: Optional[str]) -> bool:
    return default_normalizer().is_supported(code)


def normalize(code: Optional[str], fallback: Optional[str] = None) -> str:
    return default_normalizer().normalize(code, fallback)
