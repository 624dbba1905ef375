from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Callable, Mapping, Protocol

import httpx

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"

# USD value of one unit of each currency.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("1.08"),
    "GBP": Decimal("1.27"),
    "CAD": Decimal("0.74"),
    "MXN": Decimal("0.058"),
    "ARS": Decimal("0.0011"),
    "TRY": Decimal("0.031"),
    "COP": Decimal("0.00025"),
    "PEN": Decimal("0.27"),
    "BRL": Decimal("0.18"),
}

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RatesNotLoadedError(RuntimeError):
    """Raised when a synchronous conversion runs before any snapshot was loaded."""


class RateProvider(Protocol):
    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class RateSnapshot:
    """Immutable currency -> USD rate table.

    A refresh builds a new snapshot; an existing one is never mutated, so a
    forecast run holding a reference keeps converting with the same rates.
    """

    rates: Mapping[str, Decimal]
    fetched_at: datetime
    ttl: timedelta
    base_currency: str = BASE_CURRENCY
    source: str = "provider"
    is_identity: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    @classmethod
    def identity(cls, fetched_at: datetime, ttl: timedelta) -> "RateSnapshot":
        return cls(
            rates={BASE_CURRENCY: Decimal("1")},
            fetched_at=fetched_at,
            ttl=ttl,
            source="identity",
            is_identity=True,
        )

    def age(self, now: datetime) -> timedelta:
        return now - self.fetched_at

    def is_expired(self, now: datetime) -> bool:
        return self.age(now) > self.ttl

    def rate_for(self, currency: str) -> Decimal | None:
        if currency == self.base_currency:
            return Decimal("1")
        return self.rates.get(currency)

    def convert_to_usd(self, amount: Decimal | int | float | str, currency: str | None) -> Decimal:
        coerced_amount = _coerce_amount(amount)
        if self.is_identity:
            return coerced_amount
        try:
            normalized = normalize_currency(currency or BASE_CURRENCY)
        except ValueError:
            logger.warning("Malformed currency code %r; converting at 1.0", currency)
            return coerced_amount
        rate = self.rate_for(normalized)
        if rate is None:
            logger.warning("No USD rate for %s; converting at 1.0", normalized)
            return coerced_amount
        return coerced_amount * rate


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates expressed as USD per unit."""

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        if normalize_currency(base_currency) != BASE_CURRENCY:
            raise RateProviderUnavailable("Static rates are only available against USD")
        return dict(self.rates)


@dataclass
class ExchangeRateApiProvider:
    """exchangerate-api.com v6 client.

    The API quotes units of each currency per one unit of the base currency,
    so quotes are inverted into base-currency value per unit.
    """

    api_key: str
    base_url: str = "https://v6.exchangerate-api.com/v6"
    timeout_seconds: float = 8.0
    transport: httpx.AsyncBaseTransport | None = None

    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        if not self.api_key:
            raise RateProviderUnavailable("Exchange rate API key not configured")
        base = normalize_currency(base_currency)
        url = f"{self.base_url}/{self.api_key}/latest/{base}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        if not isinstance(payload, dict):
            raise RateProviderUnavailable("Exchange rate API returned a non-object payload")
        if payload.get("result") != "success":
            raise RateProviderUnavailable(f"Exchange rate API returned {payload.get('result')!r}")
        quotes = payload.get("conversion_rates")
        if not isinstance(quotes, dict):
            raise RateProviderUnavailable("Exchange rate API response missing conversion_rates")

        parsed: dict[str, Decimal] = {}
        for code, value in quotes.items():
            try:
                quote = Decimal(str(value))
                normalized = normalize_currency(code)
                if not quote.is_finite() or quote <= 0:
                    logger.debug("Ignoring unusable quote %r for %s", value, code)
                    continue
            except (InvalidOperation, ValueError):
                continue
            parsed[normalized] = Decimal("1") / quote
        parsed[base] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: RateProvider

    async def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        try:
            return await self.primary.fetch_rates(base_currency)
        except Exception as exc:
            logger.warning(
                "Primary rate provider unavailable (%s); using fallback",
                str(exc) or type(exc).__name__,
            )
            return await self.fallback.fetch_rates(base_currency)


@dataclass
class CurrencyConversionCache:
    """Owns the current RateSnapshot, its TTL and the clock used to age it.

    Call ``ensure_rates_loaded`` once, then use ``convert_to_usd_sync`` in
    loops; the synchronous path never touches the provider.
    """

    provider: RateProvider
    ttl: timedelta = timedelta(hours=24)
    grace_period: timedelta = timedelta(hours=72)
    retry_interval: timedelta = timedelta(minutes=5)
    fetch_timeout: float = 8.0
    clock: Clock = utc_now
    _snapshot: RateSnapshot | None = field(default=None, init=False, repr=False)
    _last_good: RateSnapshot | None = field(default=None, init=False, repr=False)
    _retry_after: datetime | None = field(default=None, init=False, repr=False)

    @property
    def snapshot(self) -> RateSnapshot | None:
        return self._snapshot

    def invalidate(self) -> None:
        self._snapshot = None
        self._retry_after = None

    async def ensure_rates_loaded(self) -> RateSnapshot:
        now = self.clock()
        current = self._snapshot
        if current is not None and not current.is_expired(now):
            return current
        if current is not None and self._retry_after is not None and now < self._retry_after:
            return current

        try:
            rates = await asyncio.wait_for(
                self.provider.fetch_rates(BASE_CURRENCY), timeout=self.fetch_timeout
            )
            snapshot = RateSnapshot(rates=rates, fetched_at=now, ttl=self.ttl)
        except Exception as exc:
            return self._degrade(now, exc)

        self._snapshot = snapshot
        self._last_good = snapshot
        self._retry_after = None
        logger.info("Loaded %d exchange rates, valid until %s", len(rates), now + self.ttl)
        return snapshot

    async def convert_to_usd(self, amount: Decimal | int | float | str, currency: str | None) -> Decimal:
        snapshot = await self.ensure_rates_loaded()
        return snapshot.convert_to_usd(amount, currency)

    def convert_to_usd_sync(self, amount: Decimal | int | float | str, currency: str | None) -> Decimal:
        snapshot = self._snapshot
        if snapshot is None:
            raise RatesNotLoadedError("ensure_rates_loaded() must run before synchronous conversion")
        return snapshot.convert_to_usd(amount, currency)

    def _degrade(self, now: datetime, error: BaseException) -> RateSnapshot:
        self._retry_after = now + self.retry_interval
        last_good = self._last_good
        if last_good is not None and last_good.age(now) <= self.ttl + self.grace_period:
            logger.warning(
                "Rate refresh failed (%s); using stale rates from %s",
                str(error) or type(error).__name__,
                last_good.fetched_at.isoformat(),
            )
            self._snapshot = last_good
            return last_good

        logger.warning(
            "Rate refresh failed (%s) and no usable rates remain; converting at 1.0",
            str(error) or type(error).__name__,
        )
        snapshot = RateSnapshot.identity(now, self.retry_interval)
        self._snapshot = snapshot
        return snapshot


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
