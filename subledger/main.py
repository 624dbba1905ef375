from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Literal

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from subledger.activity_log import detect_changes, summarize
from subledger.aggregate_stats import AggregateStats, AggregateStatsStore, StatsRebuildError
from subledger.currency_conversion import (
    CompositeRateProvider,
    CurrencyConversionCache,
    ExchangeRateApiProvider,
    RateProvider,
    StaticRateProvider,
)
from subledger.document_store import SqlDocumentStore
from subledger.forecast_engine import ForecastEngine
from subledger.obligations import MonetaryAmount, ObligationKind, RecurringObligation
from subledger.recurring_projection import parse_billing_cycle
from subledger.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: SqlDocumentStore
    rates: CurrencyConversionCache
    stats: AggregateStatsStore
    forecast: ForecastEngine
    horizon_months: int = 4


def build_rate_provider(settings: Settings) -> RateProvider:
    fallback = StaticRateProvider()
    if not settings.exchange_rate_api_key:
        logger.warning("EXCHANGE_RATE_API_KEY not set; using static exchange rates")
        return fallback
    return CompositeRateProvider(
        primary=ExchangeRateApiProvider(
            api_key=settings.exchange_rate_api_key,
            base_url=settings.exchange_rate_api_url,
            timeout_seconds=settings.rates_fetch_timeout_seconds,
        ),
        fallback=fallback,
    )


def build_services(settings: Settings, provider: RateProvider | None = None) -> Services:
    store = SqlDocumentStore.from_url(settings.database_url)
    rates = CurrencyConversionCache(
        provider=provider or build_rate_provider(settings),
        ttl=settings.rates_ttl,
        grace_period=settings.rates_grace_period,
        retry_interval=settings.rates_retry_interval,
        fetch_timeout=settings.rates_fetch_timeout_seconds,
    )
    return Services(
        store=store,
        rates=rates,
        stats=AggregateStatsStore(store, rates, horizon_months=settings.forecast_horizon_months),
        forecast=ForecastEngine(rates),
        horizon_months=settings.forecast_horizon_months,
    )


class ObligationPayload(BaseModel):
    id: str
    kind: Literal["income", "expense"]
    amount: Decimal | None = None
    currency: str = "USD"
    cycle: str | int | None = None
    due_date: date | None = None
    active: bool = True
    category_id: str | None = None

    def to_obligation(self) -> RecurringObligation:
        cycle = parse_billing_cycle(self.cycle) if self.cycle is not None else None
        amount = None
        if self.amount is not None:
            amount = MonetaryAmount(amount=self.amount, currency_code=self.currency.strip().upper())
        return RecurringObligation(
            id=self.id,
            kind=ObligationKind(self.kind),
            amount=amount,
            cycle=cycle,
            due_date=self.due_date,
            active=self.active,
            category_id=self.category_id,
        )


class ForecastPayload(BaseModel):
    obligations: list[ObligationPayload]
    today: date | None = None


class ForecastMonthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month_label: str
    month_key: str
    income_usd: Decimal
    expense_usd: Decimal
    profit_usd: Decimal
    income_count: int
    expense_count: int


class MonthlyTotalsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month_key: str
    income_usd: Decimal
    expense_usd: Decimal


class DailyTotalsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_key: str
    income_usd: Decimal
    expense_usd: Decimal


class UserGrowthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month_key: str
    customers: int
    resellers: int


class DailyUserGrowthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_key: str
    customers: int
    resellers: int


class CategoryIncomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: str
    name: str
    total_usd: Decimal


class StatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_income_usd: Decimal
    total_expense_usd: Decimal
    total_profit_usd: Decimal
    expected_monthly_income_usd: Decimal
    expected_monthly_expense_usd: Decimal
    active_income_count: int
    active_expense_count: int
    income_by_month: list[MonthlyTotalsResponse]
    income_by_day: list[DailyTotalsResponse]
    income_by_category: list[CategoryIncomeResponse]
    users_by_month: list[UserGrowthResponse]
    users_by_day: list[DailyUserGrowthResponse]
    forecast: list[ForecastMonthResponse]
    last_rebuilt_at: datetime | None = None
    forecast_updated_at: datetime | None = None
    rates_fetched_at: datetime | None = None


class ActivityChangesPayload(BaseModel):
    kind: str
    before: dict[str, Any]
    after: dict[str, Any]


class ChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field_key: str
    label: str
    old_value: Any = None
    new_value: Any = None
    value_type: str


class ActivityChangesResponse(BaseModel):
    changes: list[ChangeResponse]
    summary: str


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.store.create_schema()
        yield
        await services.store.dispose()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/stats", response_model=StatsResponse)
    async def get_stats() -> StatsResponse:
        try:
            stats = await services.stats.get_stats()
        except StatsRebuildError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return _stats_response(stats)

    @app.post("/stats/rebuild", response_model=StatsResponse)
    async def rebuild_stats() -> StatsResponse:
        try:
            stats = await services.stats.rebuild()
        except StatsRebuildError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return _stats_response(stats)

    @app.post("/forecast", response_model=list[ForecastMonthResponse])
    async def compute_forecast(payload: ForecastPayload) -> list[ForecastMonthResponse]:
        try:
            obligations = [item.to_obligation() for item in payload.obligations]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        forecast = await services.forecast.compute_forecast(
            obligations,
            payload.today or services.stats.clock(),
            services.horizon_months,
        )
        return [ForecastMonthResponse.model_validate(month) for month in forecast]

    @app.post("/activity/changes", response_model=ActivityChangesResponse)
    async def activity_changes(payload: ActivityChangesPayload) -> ActivityChangesResponse:
        changes = detect_changes(payload.kind, payload.before, payload.after)
        return ActivityChangesResponse(
            changes=[
                ChangeResponse(
                    field_key=change.field_key,
                    label=change.label,
                    old_value=change.old_value,
                    new_value=change.new_value,
                    value_type=change.value_type.value,
                )
                for change in changes
            ],
            summary=summarize(changes),
        )

    return app


def _stats_response(stats: AggregateStats) -> StatsResponse:
    return StatsResponse.model_validate(stats)


app = create_app()
