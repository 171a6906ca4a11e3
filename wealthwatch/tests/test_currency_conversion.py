import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from wealthwatch.currency_conversion import (
    ConversionFailed,
    ConversionService,
    InvalidRequest,
    coerce_amount,
    normalize_currency,
)
from wealthwatch.rate_cache import FRESHNESS_WINDOW, RateCache
from wealthwatch.rate_providers import ProviderPermanent, ProviderTransient


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class CountingProvider:
    def __init__(self, rates: dict[tuple[str, str], float] | None = None) -> None:
        self.rates = rates or {("EUR", "USD"): 1.1, ("USD", "EUR"): 0.9}
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.delay = 0.0

    async def fetch(self, from_currency: str, to_currency: str) -> float:
        self.calls.append((from_currency, to_currency))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.rates[(from_currency, to_currency)]


class ConversionServiceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.cache = RateCache()
        self.provider = CountingProvider()
        self.clock = FakeClock()
        self.service = ConversionService(self.cache, self.provider, clock=self.clock)

    async def test_same_currency_returns_original_amount(self) -> None:
        result = await self.service.convert("USD", "USD", 12.5)

        self.assertEqual(result.rate, 1)
        self.assertEqual(result.converted_amount, 12.5)
        self.assertEqual(self.provider.calls, [])
        self.assertEqual(len(self.cache), 0)

    async def test_same_currency_after_normalization_is_identity(self) -> None:
        result = await self.service.convert(" usd ", "USD")

        self.assertEqual(result.rate, 1)
        self.assertIsNone(result.converted_amount)
        self.assertEqual(self.provider.calls, [])

    async def test_miss_fetches_and_stores_rate(self) -> None:
        result = await self.service.convert("eur", "usd", 100)

        self.assertEqual(result.from_currency, "EUR")
        self.assertEqual(result.to_currency, "USD")
        self.assertEqual(result.rate, 1.1)
        self.assertAlmostEqual(result.converted_amount, 110.0)
        self.assertEqual(result.resolved_at, self.clock.now)
        self.assertEqual(self.cache.get(("EUR", "USD")).rate, 1.1)

    async def test_rate_only_lookup_leaves_amounts_empty(self) -> None:
        result = await self.service.convert("EUR", "USD")

        self.assertIsNone(result.amount)
        self.assertIsNone(result.converted_amount)

    async def test_second_call_inside_window_uses_cache(self) -> None:
        first = await self.service.convert("EUR", "USD", 10)
        self.clock.advance(FRESHNESS_WINDOW - timedelta(seconds=1))
        second = await self.service.convert("EUR", "USD", 20)

        self.assertEqual(self.provider.calls, [("EUR", "USD")])
        self.assertAlmostEqual(second.converted_amount, 22.0)
        self.assertEqual(second.resolved_at, first.resolved_at)

    async def test_expired_entry_triggers_one_more_fetch(self) -> None:
        await self.service.convert("EUR", "USD", 10)
        self.clock.advance(FRESHNESS_WINDOW)
        self.provider.rates[("EUR", "USD")] = 1.2

        result = await self.service.convert("EUR", "USD", 10)

        self.assertEqual(len(self.provider.calls), 2)
        self.assertAlmostEqual(result.converted_amount, 12.0)
        self.assertEqual(self.cache.get(("EUR", "USD")).fetched_at, self.clock.now)

    async def test_inverse_direction_is_fetched_separately(self) -> None:
        await self.service.convert("EUR", "USD", 10)
        result = await self.service.convert("USD", "EUR", 10)

        self.assertEqual(self.provider.calls, [("EUR", "USD"), ("USD", "EUR")])
        self.assertEqual(result.rate, 0.9)

    async def test_provider_failure_raises_without_touching_cache(self) -> None:
        self.provider.error = ProviderTransient("down", pair=("EUR", "USD"), status_code=503)

        with self.assertRaises(ConversionFailed) as ctx:
            await self.service.convert("EUR", "USD", 10)

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertFalse(ctx.exception.permanent)
        self.assertEqual(ctx.exception.details()["from"], "EUR")
        self.assertIsNone(self.cache.get(("EUR", "USD")))

    async def test_stale_entry_is_not_used_when_refresh_fails(self) -> None:
        await self.service.convert("EUR", "USD", 10)
        self.clock.advance(FRESHNESS_WINDOW + timedelta(minutes=1))
        self.provider.error = ProviderTransient("down")

        with self.assertRaises(ConversionFailed):
            await self.service.convert("EUR", "USD", 10)

        self.assertEqual(self.cache.get(("EUR", "USD")).rate, 1.1)

    async def test_permanent_failure_is_flagged(self) -> None:
        self.provider.error = ProviderPermanent("unknown code", status_code=400)

        with self.assertRaises(ConversionFailed) as ctx:
            await self.service.convert("EUR", "ZZZ", 10)

        self.assertTrue(ctx.exception.permanent)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_timeout_is_reported_as_transient_failure(self) -> None:
        self.provider.delay = 1.0
        service = ConversionService(self.cache, self.provider, timeout=0.01, clock=self.clock)

        with self.assertRaises(ConversionFailed) as ctx:
            await service.convert("EUR", "USD", 10)

        self.assertFalse(ctx.exception.permanent)
        self.assertIsNone(ctx.exception.status_code)
        self.assertEqual(len(self.cache), 0)

    async def test_socket_error_is_reported_as_transient_failure(self) -> None:
        self.provider.error = ConnectionResetError("socket closed")

        with self.assertRaises(ConversionFailed) as ctx:
            await self.service.convert("EUR", "USD", 10)

        self.assertFalse(ctx.exception.permanent)
        self.assertEqual(len(self.cache), 0)

    async def test_programming_errors_are_not_masked(self) -> None:
        self.provider.error = KeyError("bug")

        with self.assertRaises(KeyError):
            await self.service.convert("EUR", "USD", 10)

    async def test_invalid_codes_rejected_before_provider(self) -> None:
        with self.assertRaises(InvalidRequest):
            await self.service.convert("EURO", "USD", 10)
        with self.assertRaises(InvalidRequest):
            await self.service.convert("EUR", None, 10)

        self.assertEqual(self.provider.calls, [])

    async def test_invalid_amount_rejected_before_provider(self) -> None:
        with self.assertRaises(InvalidRequest):
            await self.service.convert("EUR", "USD", "ten")

        self.assertEqual(self.provider.calls, [])

    async def test_payload_uses_endpoint_field_names(self) -> None:
        result = await self.service.convert("EUR", "USD", "5")

        payload = result.to_payload()

        self.assertEqual(
            set(payload),
            {"from", "to", "rate", "amount", "convertedAmount", "timestamp"},
        )
        self.assertEqual(payload["amount"], 5.0)
        self.assertEqual(payload["timestamp"], self.clock.now.isoformat())


class NormalizationTests(unittest.TestCase):
    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")

    def test_rejects_bad_codes(self) -> None:
        for value in ("", "EU", "EURO", "12A", "ÉUR"):
            with self.assertRaises(InvalidRequest):
                normalize_currency(value)

    def test_invalid_request_is_a_value_error(self) -> None:
        self.assertTrue(issubclass(InvalidRequest, ValueError))

    def test_coerce_amount(self) -> None:
        self.assertIsNone(coerce_amount(None))
        self.assertEqual(coerce_amount("12.50"), 12.5)
        self.assertEqual(coerce_amount(3), 3.0)
        for value in ("nan", "inf", True, "abc"):
            with self.assertRaises(InvalidRequest):
                coerce_amount(value)


if __name__ == "__main__":
    unittest.main()
