"""
Tests for currency code normalization.
"""

import pytest

from finance_engine.currency import CurrencyNormalizer


class TestNormalize:
    """normalize() always returns a supported code."""

    def test_case_and_whitespace(self, normalizer):
        assert normalizer.normalize("usd ") == "USD"
        assert normalizer.normalize(" uzs") == "UZS"

    def test_unsupported_uses_fallback(self, normalizer):
        assert normalizer.normalize("zzz", "EUR") == "EUR"

    def test_unsupported_without_fallback_uses_base(self, normalizer):
        assert normalizer.normalize("zzz") == "USD"
        assert normalizer.normalize(None) == "USD"
        assert normalizer.normalize("") == "USD"

    def test_fallback_is_sanitized(self, normalizer):
        assert normalizer.normalize("zzz", " gbp") == "GBP"


class TestSupported:
    """Membership checks against the allow-list."""

    @pytest.mark.parametrize("code", ["RUB", "rub", " usdt ", "AED"])
    def test_supported(self, normalizer, code):
        assert normalizer.is_supported(code)

    @pytest.mark.parametrize("code", ["JPY", "", None, "US D"])
    def test_not_supported(self, normalizer, code):
        assert not normalizer.is_supported(code)


class TestBaseCurrency:
    """The base currency must be in the allow-list."""

    def test_base_must_be_supported(self):
        with pytest.raises(ValueError):
            CurrencyNormalizer(["USD", "EUR"], "JPY")

    def test_base_is_sanitized(self):
        assert CurrencyNormalizer(["usd", "eur"], " eur ").base_currency == "EUR"

    def test_with_base(self, normalizer):
        switched = normalizer.with_base("uzs")
        assert switched.base_currency == "UZS"
        assert switched.supported == normalizer.supported
        assert normalizer.base_currency == "USD"
        assert switched.normalize("nope") == "UZS"

    def test_with_unsupported_base(self, normalizer):
        with pytest.raises(ValueError):
            normalizer.with_base("JPY")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
