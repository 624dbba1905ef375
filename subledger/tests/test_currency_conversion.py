import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx

from subledger.currency_conversion import (
    CompositeRateProvider,
    CurrencyConversionCache,
    ExchangeRateApiProvider,
    RateProviderUnavailable,
    RatesNotLoadedError,
    RateSnapshot,
    StaticRateProvider,
    normalize_currency,
)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class ScriptedProvider:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls = 0

    async def fetch_rates(self, base_currency: str):
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class StalledProvider:
    async def fetch_rates(self, base_currency: str):
        await asyncio.sleep(10)
        return {"EUR": Decimal("2")}


START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
EUR_RATES = {"USD": Decimal("1"), "EUR": Decimal("1.08"), "ARS": Decimal("0.001")}


class RateSnapshotTests(unittest.TestCase):
    def setUp(self) -> None:
        self.snapshot = RateSnapshot(rates=EUR_RATES, fetched_at=START, ttl=timedelta(hours=24))

    def test_converts_with_rate_multiplier(self) -> None:
        self.assertEqual(self.snapshot.convert_to_usd(Decimal("30"), "EUR"), Decimal("32.40"))

    def test_same_currency_returns_original_amount(self) -> None:
        self.assertEqual(self.snapshot.convert_to_usd(Decimal("12.50"), "USD"), Decimal("12.50"))

    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(self.snapshot.convert_to_usd(Decimal("10"), " eur "), Decimal("10.80"))

    def test_unknown_currency_converts_at_identity(self) -> None:
        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            amount = self.snapshot.convert_to_usd(Decimal("7"), "JPY")

        self.assertEqual(amount, Decimal("7"))

    def test_missing_currency_means_usd(self) -> None:
        self.assertEqual(self.snapshot.convert_to_usd(Decimal("5"), None), Decimal("5"))

    def test_snapshot_rates_are_read_only(self) -> None:
        with self.assertRaises(TypeError):
            self.snapshot.rates["EUR"] = Decimal("9")

    def test_expiry_follows_ttl(self) -> None:
        self.assertFalse(self.snapshot.is_expired(START + timedelta(hours=24)))
        self.assertTrue(self.snapshot.is_expired(START + timedelta(hours=24, seconds=1)))

    def test_identity_snapshot_never_scales(self) -> None:
        snapshot = RateSnapshot.identity(START, timedelta(minutes=5))

        self.assertEqual(snapshot.convert_to_usd(Decimal("3"), "EUR"), Decimal("3"))
        self.assertTrue(snapshot.is_identity)

    def test_normalize_currency_rejects_malformed_codes(self) -> None:
        with self.assertRaises(ValueError):
            normalize_currency("EURO")


class CurrencyConversionCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(START)

    def make_cache(self, provider, **kwargs) -> CurrencyConversionCache:
        return CurrencyConversionCache(
            provider=provider,
            ttl=timedelta(hours=24),
            grace_period=timedelta(hours=72),
            retry_interval=timedelta(minutes=5),
            clock=self.clock,
            **kwargs,
        )

    async def test_loads_once_within_ttl(self) -> None:
        provider = ScriptedProvider(EUR_RATES)
        cache = self.make_cache(provider)

        first = await cache.ensure_rates_loaded()
        self.clock.advance(timedelta(hours=23))
        second = await cache.ensure_rates_loaded()

        self.assertIs(first, second)
        self.assertEqual(provider.calls, 1)

    async def test_refresh_replaces_snapshot_instead_of_mutating(self) -> None:
        provider = ScriptedProvider(EUR_RATES, {"EUR": Decimal("1.10")})
        cache = self.make_cache(provider)

        first = await cache.ensure_rates_loaded()
        self.clock.advance(timedelta(hours=25))
        second = await cache.ensure_rates_loaded()

        self.assertIsNot(first, second)
        self.assertEqual(first.rates["EUR"], Decimal("1.08"))
        self.assertEqual(second.rates["EUR"], Decimal("1.10"))
        self.assertEqual(provider.calls, 2)

    async def test_sync_conversion_requires_loaded_snapshot(self) -> None:
        cache = self.make_cache(ScriptedProvider(EUR_RATES))

        with self.assertRaises(RatesNotLoadedError):
            cache.convert_to_usd_sync(Decimal("1"), "EUR")

    async def test_sync_conversion_matches_snapshot_rates(self) -> None:
        cache = self.make_cache(ScriptedProvider(EUR_RATES))
        await cache.ensure_rates_loaded()

        self.assertEqual(cache.convert_to_usd_sync(Decimal("30"), "EUR"), Decimal("30") * Decimal("1.08"))
        self.assertEqual(cache.convert_to_usd_sync(Decimal("2000"), "ARS"), Decimal("2.000"))
        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            self.assertEqual(cache.convert_to_usd_sync(Decimal("4"), "GBP"), Decimal("4"))

    async def test_async_conversion_loads_rates_first(self) -> None:
        provider = ScriptedProvider(EUR_RATES)
        cache = self.make_cache(provider)

        amount = await cache.convert_to_usd(Decimal("10"), "EUR")

        self.assertEqual(amount, Decimal("10.80"))
        self.assertEqual(provider.calls, 1)

    async def test_keeps_last_good_snapshot_within_grace_period(self) -> None:
        provider = ScriptedProvider(EUR_RATES, RateProviderUnavailable("down"))
        cache = self.make_cache(provider)
        first = await cache.ensure_rates_loaded()

        self.clock.advance(timedelta(hours=30))
        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            degraded = await cache.ensure_rates_loaded()

        self.assertIs(degraded, first)
        self.assertEqual(cache.convert_to_usd_sync(Decimal("10"), "EUR"), Decimal("10.80"))

    async def test_falls_back_to_identity_beyond_grace_period(self) -> None:
        provider = ScriptedProvider(EUR_RATES, RateProviderUnavailable("down"))
        cache = self.make_cache(provider)
        await cache.ensure_rates_loaded()

        self.clock.advance(timedelta(hours=97))
        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            snapshot = await cache.ensure_rates_loaded()

        self.assertTrue(snapshot.is_identity)
        self.assertEqual(cache.convert_to_usd_sync(Decimal("10"), "EUR"), Decimal("10"))

    async def test_identity_when_provider_never_answered(self) -> None:
        cache = self.make_cache(ScriptedProvider(RateProviderUnavailable("down")))

        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            snapshot = await cache.ensure_rates_loaded()

        self.assertTrue(snapshot.is_identity)

    async def test_does_not_retry_provider_before_retry_interval(self) -> None:
        provider = ScriptedProvider(RateProviderUnavailable("down"), EUR_RATES)
        cache = self.make_cache(provider)

        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            await cache.ensure_rates_loaded()
        self.clock.advance(timedelta(minutes=1))
        await cache.ensure_rates_loaded()
        self.assertEqual(provider.calls, 1)

        self.clock.advance(timedelta(minutes=5))
        snapshot = await cache.ensure_rates_loaded()
        self.assertEqual(provider.calls, 2)
        self.assertFalse(snapshot.is_identity)

    async def test_stalled_provider_times_out_to_fallback(self) -> None:
        cache = self.make_cache(StalledProvider(), fetch_timeout=0.01)

        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            snapshot = await cache.ensure_rates_loaded()

        self.assertTrue(snapshot.is_identity)

    async def test_unexpected_provider_error_degrades_to_identity(self) -> None:
        cache = self.make_cache(ScriptedProvider(ConnectionError("socket reset")))

        with self.assertLogs("subledger.currency_conversion", level="WARNING") as logs:
            snapshot = await cache.ensure_rates_loaded()

        self.assertTrue(snapshot.is_identity)
        self.assertIn("socket reset", logs.output[0])
        self.assertEqual(cache.convert_to_usd_sync(Decimal("10"), "EUR"), Decimal("10"))

    async def test_unexpected_provider_error_keeps_last_good_snapshot(self) -> None:
        provider = ScriptedProvider(EUR_RATES, OSError("network unreachable"))
        cache = self.make_cache(provider)
        first = await cache.ensure_rates_loaded()

        self.clock.advance(timedelta(hours=25))
        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            degraded = await cache.ensure_rates_loaded()

        self.assertIs(degraded, first)

    async def test_invalidate_forces_refetch(self) -> None:
        provider = ScriptedProvider(EUR_RATES)
        cache = self.make_cache(provider)
        await cache.ensure_rates_loaded()

        cache.invalidate()
        await cache.ensure_rates_loaded()

        self.assertEqual(provider.calls, 2)


class RateProviderTests(unittest.IsolatedAsyncioTestCase):
    async def test_static_provider_returns_table(self) -> None:
        provider = StaticRateProvider(rates={"USD": Decimal("1"), "EUR": Decimal("2")})

        rates = await provider.fetch_rates("usd")

        self.assertEqual(rates, {"USD": Decimal("1"), "EUR": Decimal("2")})

    async def test_composite_falls_back_when_primary_unavailable(self) -> None:
        provider = CompositeRateProvider(
            primary=ScriptedProvider(RateProviderUnavailable("down")),
            fallback=StaticRateProvider(rates={"EUR": Decimal("2")}),
        )

        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            rates = await provider.fetch_rates("USD")

        self.assertEqual(rates, {"EUR": Decimal("2")})

    async def test_composite_falls_back_on_unexpected_primary_error(self) -> None:
        provider = CompositeRateProvider(
            primary=ScriptedProvider(ConnectionError("socket reset")),
            fallback=StaticRateProvider(rates={"EUR": Decimal("2")}),
        )

        with self.assertLogs("subledger.currency_conversion", level="WARNING"):
            rates = await provider.fetch_rates("USD")

        self.assertEqual(rates, {"EUR": Decimal("2")})

    async def test_exchange_rate_api_skips_non_finite_quotes(self) -> None:
        body = b'{"result": "success", "conversion_rates": {"USD": 1, "EUR": NaN, "GBP": Infinity, "ARS": 1000}}'
        provider = ExchangeRateApiProvider(
            api_key="secret",
            base_url="https://rates.test/v6",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(
                    200, content=body, headers={"content-type": "application/json"}
                )
            ),
        )

        rates = await provider.fetch_rates("USD")

        self.assertNotIn("EUR", rates)
        self.assertNotIn("GBP", rates)
        self.assertEqual(rates["ARS"], Decimal("0.001"))
        self.assertEqual(rates["USD"], Decimal("1"))

    async def test_exchange_rate_api_inverts_quotes(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/v6/secret/latest/USD")
            return httpx.Response(
                200,
                json={
                    "result": "success",
                    "base_code": "USD",
                    "conversion_rates": {"USD": 1, "EUR": 0.5, "ARS": 1000},
                },
            )

        provider = ExchangeRateApiProvider(
            api_key="secret",
            base_url="https://rates.test/v6",
            transport=httpx.MockTransport(handler),
        )

        rates = await provider.fetch_rates("USD")

        self.assertEqual(rates["EUR"], Decimal("2"))
        self.assertEqual(rates["ARS"], Decimal("0.001"))
        self.assertEqual(rates["USD"], Decimal("1"))

    async def test_exchange_rate_api_errors_are_unavailable(self) -> None:
        provider = ExchangeRateApiProvider(
            api_key="secret",
            base_url="https://rates.test/v6",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )

        with self.assertRaises(RateProviderUnavailable):
            await provider.fetch_rates("USD")

    async def test_exchange_rate_api_rejects_error_payload(self) -> None:
        provider = ExchangeRateApiProvider(
            api_key="secret",
            base_url="https://rates.test/v6",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"result": "error"})
            ),
        )

        with self.assertRaises(RateProviderUnavailable):
            await provider.fetch_rates("USD")

    async def test_exchange_rate_api_requires_key(self) -> None:
        with self.assertRaises(RateProviderUnavailable):
            await ExchangeRateApiProvider(api_key="").fetch_rates("USD")


if __name__ == "__main__":
    unittest.main()
