from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, List

from subledger.currency_conversion import CurrencyConversionCache
from subledger.obligations import ObligationKind, RecurringObligation
from subledger.recurring_projection import is_due_in_month, month_key, month_label, month_window

logger = logging.getLogger(__name__)

HORIZON_MONTHS = 4
CENTS = Decimal("0.01")

Converter = Callable[[Decimal, str], Decimal]


@dataclass(frozen=True)
class ForecastMonth:
    month_label: str
    month_key: str
    income_usd: Decimal
    expense_usd: Decimal
    profit_usd: Decimal
    income_count: int = 0
    expense_count: int = 0


class ForecastEngine:
    def __init__(self, rates: CurrencyConversionCache) -> None:
        self.rates = rates

    async def compute_forecast(
        self,
        obligations: Iterable[RecurringObligation],
        now: date | datetime,
        horizon_months: int = HORIZON_MONTHS,
    ) -> List[ForecastMonth]:
        snapshot = await self.rates.ensure_rates_loaded()
        return project_forecast(obligations, now, snapshot.convert_to_usd, horizon_months)


def project_forecast(
    obligations: Iterable[RecurringObligation],
    now: date | datetime,
    convert: Converter,
    horizon_months: int = HORIZON_MONTHS,
) -> List[ForecastMonth]:
    if horizon_months <= 0:
        raise ValueError("horizon_months must be greater than zero.")
    today = now.date() if isinstance(now, datetime) else now

    incomes: List[RecurringObligation] = []
    expenses: List[RecurringObligation] = []
    for obligation in obligations:
        if not obligation.active:
            continue
        if not obligation.is_well_formed():
            logger.debug("Skipping malformed obligation %s", obligation.id)
            continue
        if obligation.kind == ObligationKind.INCOME:
            incomes.append(obligation)
        else:
            expenses.append(obligation)

    months: List[ForecastMonth] = []
    for offset in range(horizon_months):
        month_start, month_end = month_window(today, offset)
        catch_up = offset == 0
        income_due = _due_in_month(incomes, month_start, month_end, catch_up)
        expense_due = _due_in_month(expenses, month_start, month_end, catch_up)
        income = _sum_in_usd(income_due, convert)
        expense = _sum_in_usd(expense_due, convert)
        months.append(
            ForecastMonth(
                month_label=month_label(month_start),
                month_key=month_key(month_start),
                income_usd=income,
                expense_usd=expense,
                profit_usd=income - expense,
                income_count=len(income_due),
                expense_count=len(expense_due),
            )
        )
    return months


def _due_in_month(
    obligations: Iterable[RecurringObligation],
    month_start: date,
    month_end: date,
    catch_up: bool,
) -> List[RecurringObligation]:
    return [
        obligation
        for obligation in obligations
        if is_due_in_month(
            obligation.due_date, int(obligation.cycle), month_start, month_end, catch_up=catch_up
        )
    ]


def _sum_in_usd(obligations: Iterable[RecurringObligation], convert: Converter) -> Decimal:
    total = sum(
        (convert(o.amount.amount, o.amount.currency_code) for o in obligations),
        Decimal("0"),
    )
    return total.quantize(CENTS, rounding=ROUND_HALF_UP)
