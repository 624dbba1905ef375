from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Sequence, TypeVar

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from subledger.currency_conversion import (
    Clock,
    CurrencyConversionCache,
    RateSnapshot,
    utc_now,
)
from subledger.document_store import Document, DocumentStore, DocumentTransaction
from subledger.forecast_engine import HORIZON_MONTHS, ForecastEngine, ForecastMonth, project_forecast
from subledger.obligations import (
    CATEGORIES_COLLECTION,
    ObligationKind,
    RecurringObligation,
    load_active_obligations,
)
from subledger.recurring_projection import day_key, month_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_COLLECTION = "config"
STATS_DOC_ID = "dashboard_stats"
MONTHS_KEPT = 12
ZERO = Decimal("0")
CENTS = Decimal("0.01")


class StatsRebuildError(RuntimeError):
    """Raised when the stats document cannot be read or written."""


class UserKind(str, Enum):
    CUSTOMER = "customer"
    RESELLER = "reseller"


@dataclass(frozen=True)
class MonthlyTotals:
    month_key: str
    income_usd: Decimal = ZERO
    expense_usd: Decimal = ZERO


@dataclass(frozen=True)
class DailyTotals:
    day_key: str
    income_usd: Decimal = ZERO
    expense_usd: Decimal = ZERO


@dataclass(frozen=True)
class CategoryIncome:
    category_id: str
    name: str
    total_usd: Decimal = ZERO


@dataclass(frozen=True)
class UserGrowth:
    month_key: str
    customers: int = 0
    resellers: int = 0


@dataclass(frozen=True)
class DailyUserGrowth:
    day_key: str
    customers: int = 0
    resellers: int = 0


@dataclass(frozen=True)
class AggregateStats:
    total_income_usd: Decimal = ZERO
    total_expense_usd: Decimal = ZERO
    expected_monthly_income_usd: Decimal = ZERO
    expected_monthly_expense_usd: Decimal = ZERO
    active_income_count: int = 0
    active_expense_count: int = 0
    income_by_month: tuple[MonthlyTotals, ...] = ()
    # Current calendar month only.
    income_by_day: tuple[DailyTotals, ...] = ()
    income_by_category: tuple[CategoryIncome, ...] = ()
    users_by_month: tuple[UserGrowth, ...] = ()
    users_by_day: tuple[DailyUserGrowth, ...] = ()
    forecast: tuple[ForecastMonth, ...] = ()
    forecast_sources: tuple[RecurringObligation, ...] = ()
    last_rebuilt_at: datetime | None = None
    forecast_updated_at: datetime | None = None
    rates_fetched_at: datetime | None = None

    @property
    def total_profit_usd(self) -> Decimal:
        return self.total_income_usd - self.total_expense_usd


STATS_ADAPTER = TypeAdapter(AggregateStats)
FORECAST_ADAPTER = TypeAdapter(tuple[ForecastMonth, ...])
SOURCES_ADAPTER = TypeAdapter(tuple[RecurringObligation, ...])

MonthEntry = TypeVar("MonthEntry", MonthlyTotals, UserGrowth)
DayEntry = TypeVar("DayEntry", DailyTotals, DailyUserGrowth)


def build_stats(
    obligations: Iterable[RecurringObligation],
    categories: Iterable[Document],
    snapshot: RateSnapshot,
    now: datetime,
    horizon_months: int = HORIZON_MONTHS,
) -> AggregateStats:
    """Recompute every obligation-derived aggregate from one rate snapshot.

    User growth is not derived from obligations and is left empty here.
    """
    usable = sorted(
        (o for o in obligations if o.active and o.is_well_formed()),
        key=lambda o: (o.kind.value, o.id),
    )
    category_names = {doc.id: str(doc.data.get("nombre") or doc.id) for doc in categories}
    convert = snapshot.convert_to_usd
    current_month = month_key(now)

    totals: Dict[ObligationKind, Decimal] = defaultdict(lambda: ZERO)
    monthly: Dict[ObligationKind, Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[ObligationKind, int] = defaultdict(int)
    by_month: Dict[str, Dict[ObligationKind, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    by_day: Dict[str, Dict[ObligationKind, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
    by_category: Dict[str, Decimal] = defaultdict(lambda: ZERO)

    for obligation in usable:
        amount_usd = convert(obligation.amount.amount, obligation.amount.currency_code)
        totals[obligation.kind] += amount_usd
        monthly[obligation.kind] += convert(
            obligation.monthly_amount, obligation.amount.currency_code
        )
        counts[obligation.kind] += 1
        due_month = month_key(obligation.due_date)
        by_month[due_month][obligation.kind] += amount_usd
        if due_month == current_month:
            by_day[day_key(obligation.due_date)][obligation.kind] += amount_usd
        if obligation.kind == ObligationKind.INCOME and obligation.category_id:
            by_category[obligation.category_id] += amount_usd

    income_by_month = [
        MonthlyTotals(
            month_key=key,
            income_usd=_cents(values[ObligationKind.INCOME]),
            expense_usd=_cents(values[ObligationKind.EXPENSE]),
        )
        for key, values in by_month.items()
    ]
    income_by_day = [
        DailyTotals(
            day_key=key,
            income_usd=_cents(values[ObligationKind.INCOME]),
            expense_usd=_cents(values[ObligationKind.EXPENSE]),
        )
        for key, values in by_day.items()
    ]
    income_by_category = sorted(
        (
            CategoryIncome(
                category_id=category_id,
                name=category_names.get(category_id, category_id),
                total_usd=_cents(total),
            )
            for category_id, total in by_category.items()
        ),
        key=lambda entry: (-entry.total_usd, entry.category_id),
    )
    forecast = project_forecast(usable, now, convert, horizon_months)

    return AggregateStats(
        total_income_usd=_cents(totals[ObligationKind.INCOME]),
        total_expense_usd=_cents(totals[ObligationKind.EXPENSE]),
        expected_monthly_income_usd=_cents(monthly[ObligationKind.INCOME]),
        expected_monthly_expense_usd=_cents(monthly[ObligationKind.EXPENSE]),
        active_income_count=counts[ObligationKind.INCOME],
        active_expense_count=counts[ObligationKind.EXPENSE],
        income_by_month=tuple(keep_last_months(income_by_month)),
        income_by_day=tuple(sorted(income_by_day, key=lambda entry: entry.day_key)),
        income_by_category=tuple(income_by_category),
        forecast=tuple(forecast),
        forecast_sources=tuple(sorted(usable, key=lambda o: o.id)),
        last_rebuilt_at=now,
        forecast_updated_at=now,
        rates_fetched_at=snapshot.fetched_at,
    )


def keep_last_months(entries: Iterable[MonthEntry], limit: int = MONTHS_KEPT) -> List[MonthEntry]:
    return sorted(entries, key=lambda entry: entry.month_key)[-limit:]


def keep_current_month(entries: Iterable[DayEntry], current_month: str) -> List[DayEntry]:
    return sorted(
        (entry for entry in entries if entry.day_key.startswith(current_month)),
        key=lambda entry: entry.day_key,
    )


def encode_stats(stats: AggregateStats) -> dict[str, Any]:
    return STATS_ADAPTER.dump_python(stats, mode="json")


def decode_stats(data: Mapping[str, Any]) -> AggregateStats:
    return STATS_ADAPTER.validate_python(dict(data))


class AggregateStatsStore:
    """Denormalized dashboard summary kept in a single document.

    Reads may be stale between a mutation and the next ``rebuild`` or
    ``merge_forecast``; callers that need fresh figures call ``rebuild``.
    """

    def __init__(
        self,
        store: DocumentStore,
        rates: CurrencyConversionCache,
        clock: Clock = utc_now,
        horizon_months: int = HORIZON_MONTHS,
    ) -> None:
        self.store = store
        self.rates = rates
        self.clock = clock
        self.horizon_months = horizon_months
        self.forecast_engine = ForecastEngine(rates)

    async def get_stats(self) -> AggregateStats:
        stats = await self._read_stats()
        if stats is None or stats.last_rebuilt_at is None:
            return await self.rebuild()
        return stats

    async def rebuild(self) -> AggregateStats:
        snapshot = await self.rates.ensure_rates_loaded()
        now = self.clock()

        async def _rebuild(txn: DocumentTransaction) -> AggregateStats:
            current = self._decode(await txn.get_by_id(CONFIG_COLLECTION, STATS_DOC_ID))
            obligations = await load_active_obligations(txn)
            categories = await txn.get_all(CATEGORIES_COLLECTION)
            stats = build_stats(obligations, categories, snapshot, now, self.horizon_months)
            if current is not None:
                stats = replace(
                    stats,
                    users_by_month=tuple(keep_last_months(current.users_by_month)),
                    users_by_day=tuple(keep_current_month(current.users_by_day, month_key(now))),
                )
            await txn.put(CONFIG_COLLECTION, STATS_DOC_ID, encode_stats(stats))
            return stats

        stats = await self._run(_rebuild, "rebuild")
        logger.info(
            "Rebuilt stats from %d income and %d expense obligations",
            stats.active_income_count,
            stats.active_expense_count,
        )
        return stats

    async def merge_forecast(
        self, forecast: Sequence[ForecastMonth], now: datetime | None = None
    ) -> None:
        fields = {
            "forecast": FORECAST_ADAPTER.dump_python(tuple(forecast), mode="json"),
            "forecast_updated_at": now or self.clock(),
        }
        await self._run(
            lambda txn: txn.merge(CONFIG_COLLECTION, STATS_DOC_ID, fields), "merge forecast"
        )

    async def recompute_forecast(
        self, obligations: Iterable[RecurringObligation], now: date | datetime | None = None
    ) -> List[ForecastMonth]:
        forecast = await self.forecast_engine.compute_forecast(
            obligations, now or self.clock(), self.horizon_months
        )
        await self.merge_forecast(forecast)
        return forecast

    async def refresh_forecast(self, now: date | datetime | None = None) -> List[ForecastMonth]:
        stats = await self._read_stats()
        if stats is None or stats.last_rebuilt_at is None:
            return list((await self.rebuild()).forecast)
        return await self.recompute_forecast(stats.forecast_sources, now)

    async def upsert_forecast_source(self, obligation: RecurringObligation) -> None:
        def _update(sources: List[RecurringObligation]) -> List[RecurringObligation]:
            kept = [source for source in sources if source.id != obligation.id]
            if obligation.active and obligation.is_well_formed():
                kept.append(obligation)
            return kept

        await self._update_sources(_update)

    async def remove_forecast_source(self, obligation_id: str) -> None:
        await self._update_sources(
            lambda sources: [source for source in sources if source.id != obligation_id]
        )

    async def adjust_totals(
        self,
        kind: ObligationKind,
        delta: Decimal,
        currency: str | None,
        month: str,
        category_id: str | None = None,
        category_name: str | None = None,
        day: str | None = None,
    ) -> AggregateStats:
        """Apply one sale or service amount change without a full rebuild.

        ``day`` (``YYYY-MM-DD``) feeds the per-day series, which only holds
        the current calendar month.
        """
        _check_day(day, month)
        delta_usd = await self.rates.convert_to_usd(abs(delta), currency)
        signed = -delta_usd if delta < 0 else delta_usd
        current_month = month_key(self.clock())

        async def _adjust(txn: DocumentTransaction) -> AggregateStats:
            existing = await txn.get_by_id(CONFIG_COLLECTION, STATS_DOC_ID)
            stats = self._decode(existing) or AggregateStats()
            stats = _apply_delta(
                stats, kind, signed, month, category_id, category_name, day, current_month
            )
            await txn.put(CONFIG_COLLECTION, STATS_DOC_ID, encode_stats(stats))
            return stats

        return await self._run(_adjust, "adjust totals")

    async def adjust_user_counts(
        self,
        kind: UserKind | str,
        delta: int,
        month: str,
        day: str | None = None,
    ) -> AggregateStats:
        """Count a customer or reseller joining (+1) or leaving (-1)."""
        user_kind = UserKind(kind)
        _check_day(day, month)
        current_month = month_key(self.clock())

        async def _adjust(txn: DocumentTransaction) -> AggregateStats:
            existing = await txn.get_by_id(CONFIG_COLLECTION, STATS_DOC_ID)
            stats = self._decode(existing) or AggregateStats()
            stats = _apply_user_delta(stats, user_kind, delta, month, day, current_month)
            await txn.put(CONFIG_COLLECTION, STATS_DOC_ID, encode_stats(stats))
            return stats

        return await self._run(_adjust, "adjust user counts")

    async def _update_sources(
        self, update: Callable[[List[RecurringObligation]], List[RecurringObligation]]
    ) -> None:
        async def _write(txn: DocumentTransaction) -> None:
            existing = await txn.get_by_id(CONFIG_COLLECTION, STATS_DOC_ID)
            stats = self._decode(existing)
            sources = list(stats.forecast_sources) if stats else []
            updated = tuple(sorted(update(sources), key=lambda o: o.id))
            await txn.merge(
                CONFIG_COLLECTION,
                STATS_DOC_ID,
                {"forecast_sources": SOURCES_ADAPTER.dump_python(updated, mode="json")},
            )

        await self._run(_write, "update forecast sources")

    async def _read_stats(self) -> AggregateStats | None:
        try:
            doc = await self.store.get_by_id(CONFIG_COLLECTION, STATS_DOC_ID)
        except SQLAlchemyError as exc:
            raise StatsRebuildError("Stats document could not be read") from exc
        return self._decode(doc)

    def _decode(self, doc: Document | None) -> AggregateStats | None:
        if doc is None:
            return None
        try:
            return decode_stats(doc.data)
        except ValidationError as exc:
            logger.warning("Discarding unreadable stats document: %s", exc)
            return None

    async def _run(self, fn: Callable[[DocumentTransaction], Awaitable[T]], action: str) -> T:
        try:
            return await self.store.transactional_read_write(fn)
        except SQLAlchemyError as exc:
            logger.error("Stats %s failed: %s", action, exc)
            raise StatsRebuildError(f"Stats {action} failed") from exc


def _apply_delta(
    stats: AggregateStats,
    kind: ObligationKind,
    delta_usd: Decimal,
    month: str,
    category_id: str | None,
    category_name: str | None,
    day: str | None,
    current_month: str,
) -> AggregateStats:
    field_name = "income_usd" if kind == ObligationKind.INCOME else "expense_usd"

    months = {entry.month_key: entry for entry in stats.income_by_month}
    entry = months.get(month, MonthlyTotals(month_key=month))
    months[month] = replace(entry, **{field_name: _clamp(getattr(entry, field_name) + delta_usd)})

    days = {entry.day_key: entry for entry in keep_current_month(stats.income_by_day, current_month)}
    if day is not None and month == current_month:
        day_entry = days.get(day, DailyTotals(day_key=day))
        days[day] = replace(
            day_entry, **{field_name: _clamp(getattr(day_entry, field_name) + delta_usd)}
        )

    changes: dict[str, Any] = {
        "income_by_month": tuple(keep_last_months(months.values())),
        "income_by_day": tuple(keep_current_month(days.values(), current_month)),
    }
    if kind == ObligationKind.INCOME:
        changes["total_income_usd"] = _clamp(stats.total_income_usd + delta_usd)
        if category_id:
            categories = {c.category_id: c for c in stats.income_by_category}
            current = categories.get(
                category_id, CategoryIncome(category_id=category_id, name=category_name or category_id)
            )
            categories[category_id] = replace(
                current,
                name=category_name or current.name,
                total_usd=_clamp(current.total_usd + delta_usd),
            )
            changes["income_by_category"] = tuple(
                sorted(categories.values(), key=lambda c: (-c.total_usd, c.category_id))
            )
    else:
        changes["total_expense_usd"] = _clamp(stats.total_expense_usd + delta_usd)
    return replace(stats, **changes)


def _apply_user_delta(
    stats: AggregateStats,
    kind: UserKind,
    delta: int,
    month: str,
    day: str | None,
    current_month: str,
) -> AggregateStats:
    field_name = "customers" if kind == UserKind.CUSTOMER else "resellers"

    months = {entry.month_key: entry for entry in stats.users_by_month}
    entry = months.get(month, UserGrowth(month_key=month))
    months[month] = replace(entry, **{field_name: max(getattr(entry, field_name) + delta, 0)})

    days = {entry.day_key: entry for entry in keep_current_month(stats.users_by_day, current_month)}
    if day is not None and month == current_month:
        day_entry = days.get(day, DailyUserGrowth(day_key=day))
        days[day] = replace(
            day_entry, **{field_name: max(getattr(day_entry, field_name) + delta, 0)}
        )

    return replace(
        stats,
        users_by_month=tuple(keep_last_months(months.values())),
        users_by_day=tuple(keep_current_month(days.values(), current_month)),
    )


def _check_day(day: str | None, month: str) -> None:
    if day is not None and not day.startswith(f"{month}-"):
        raise ValueError(f"Day {day!r} does not fall in month {month!r}.")


def _clamp(value: Decimal) -> Decimal:
    return _cents(max(value, ZERO))


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)
