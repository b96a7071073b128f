import unittest
from decimal import Decimal

from cashbook.currency_conversion import (
    FxRate,
    StaticRateResolver,
    StoredRateResolver,
    convert,
    convert_amount,
)
from cashbook.errors import InvalidRate, NoConversionPath


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.static = StaticRateResolver()

    def test_same_currency_returns_original_amount(self) -> None:
        result = convert(Decimal("12.50"), "USD", "USD", self.static)

        self.assertEqual(result.amount, Decimal("12.50"))
        self.assertEqual(result.path, "identity")
        self.assertFalse(result.approximate)

    def test_identity_holds_for_currencies_without_rates(self) -> None:
        amount = convert_amount(Decimal("7.25"), "EUR", "EUR", self.static)

        self.assertEqual(amount, Decimal("7.25"))

    def test_static_usd_to_ssp(self) -> None:
        result = convert(Decimal("10"), "USD", "SSP", self.static)

        self.assertEqual(result.amount, Decimal("60000"))
        self.assertEqual(result.path, "direct")

    def test_static_ssp_to_usd_uses_inverse_rate(self) -> None:
        result = convert(Decimal("60000"), "SSP", "USD", self.static)

        self.assertEqual(result.amount, Decimal("10"))
        self.assertEqual(result.path, "inverse")

    def test_triangulates_through_ssp(self) -> None:
        result = convert(Decimal("100"), "USD", "KES", self.static)

        self.assertEqual(result.path, "triangulated")
        self.assertEqual(result.amount.quantize(Decimal("0.01")), Decimal("12903.23"))

    def test_normalizes_currency_codes(self) -> None:
        amount = convert_amount(Decimal("2"), " usd ", "ssp", self.static)

        self.assertEqual(amount, Decimal("12000"))

    def test_stored_direct_rate_takes_precedence(self) -> None:
        resolver = StoredRateResolver(rates={("USD", "SSP"): Decimal("5000")})

        self.assertEqual(convert_amount(Decimal("2"), "USD", "SSP", resolver), Decimal("10000"))

    def test_round_trip_with_direct_rate(self) -> None:
        resolver = StoredRateResolver(rates={("EUR", "USD"): Decimal("1.0937")})
        original = Decimal("123.45")

        there = convert_amount(original, "EUR", "USD", resolver)
        back = convert_amount(there, "USD", "EUR", resolver)

        self.assertLess(abs(back - original), Decimal("0.0001"))

    def test_missing_leg_falls_back_to_static_constants(self) -> None:
        resolver = StoredRateResolver(rates={("EUR", "SSP"): Decimal("7200")})

        result = convert(Decimal("1"), "EUR", "USD", resolver)

        self.assertEqual(result.path, "static")
        self.assertEqual(result.amount, Decimal("1.2"))
        self.assertFalse(result.approximate)

    def test_no_path_returns_unconverted_amount_with_warning(self) -> None:
        with self.assertLogs("cashbook.currency_conversion", level="WARNING"):
            result = convert(Decimal("5"), "EUR", "JPY", self.static)

        self.assertEqual(result.amount, Decimal("5"))
        self.assertTrue(result.approximate)
        self.assertEqual(result.path, "none")
        self.assertIsInstance(result.warning, NoConversionPath)

    def test_base_pair_constructor(self) -> None:
        resolver = StoredRateResolver.from_base_pair(Decimal("5000"), Decimal("40"))

        self.assertEqual(convert_amount(Decimal("1"), "KES", "SSP", resolver), Decimal("40"))
        self.assertEqual(convert_amount(Decimal("2"), "USD", "SSP", resolver), Decimal("10000"))

    def test_from_rates_keeps_last_row_per_pair(self) -> None:
        resolver = StoredRateResolver.from_rates(
            [
                FxRate(base="USD", target="SSP", rate=Decimal("5000")),
                FxRate(base="USD", target="SSP", rate=Decimal("5500")),
            ]
        )

        self.assertEqual(resolver.get_rate("USD", "SSP"), Decimal("5500"))

    def test_rejects_non_positive_rates(self) -> None:
        with self.assertRaises(InvalidRate):
            StoredRateResolver(rates={("USD", "SSP"): Decimal("0")})
        with self.assertRaises(InvalidRate):
            FxRate(base="USD", target="SSP", rate=Decimal("-1"))


if __name__ == "__main__":
    unittest.main()
