from __future__ import annotations

from calendar import monthrange
from datetime import date
from enum import IntEnum

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class BillingCycle(IntEnum):
    MONTHLY = 1
    QUARTERLY = 3
    SEMIANNUAL = 6
    ANNUAL = 12


CYCLE_ALIASES: dict[str, BillingCycle] = {
    "monthly": BillingCycle.MONTHLY,
    "mensual": BillingCycle.MONTHLY,
    "quarterly": BillingCycle.QUARTERLY,
    "trimestral": BillingCycle.QUARTERLY,
    "semiannual": BillingCycle.SEMIANNUAL,
    "semestral": BillingCycle.SEMIANNUAL,
    "annual": BillingCycle.ANNUAL,
    "yearly": BillingCycle.ANNUAL,
    "anual": BillingCycle.ANNUAL,
}


def parse_billing_cycle(value: BillingCycle | int | str) -> BillingCycle:
    if isinstance(value, BillingCycle):
        return value
    if isinstance(value, bool):
        raise ValueError("Billing cycle must be monthly, quarterly, semiannual or annual.")
    if isinstance(value, int):
        try:
            return BillingCycle(value)
        except ValueError as exc:
            raise ValueError(f"Unsupported billing cycle: {value} months.") from exc
    normalized = _normalize_cycle(str(value))
    try:
        return CYCLE_ALIASES[normalized]
    except KeyError as exc:
        raise ValueError(
            "Billing cycle must be monthly, quarterly, semiannual or annual."
        ) from exc


def find_occurrence(
    due_date: date,
    cycle_months: int,
    window_start: date,
    window_end: date,
) -> date | None:
    """Return the recurrence of ``due_date`` inside the inclusive window, if any."""
    if window_start > window_end:
        raise ValueError("window_start must be on or before window_end.")
    if cycle_months <= 0:
        raise ValueError("cycle_months must be greater than zero.")
    if due_date > window_end:
        return None

    max_steps = -(-months_between(due_date, window_start) // cycle_months) + 1
    month_offset = 0
    current_date = due_date
    for _ in range(max_steps):
        if current_date >= window_start:
            break
        month_offset += cycle_months
        current_date = add_months(due_date, month_offset, due_date.day)

    if window_start <= current_date <= window_end:
        return current_date
    return None


def occurs_in_window(
    due_date: date,
    cycle_months: int,
    window_start: date,
    window_end: date,
) -> bool:
    return find_occurrence(due_date, cycle_months, window_start, window_end) is not None


def is_due_in_month(
    due_date: date,
    cycle_months: int,
    month_start: date,
    month_end: date,
    catch_up: bool = False,
) -> bool:
    """Whether an obligation lands in the given month.

    With ``catch_up`` an obligation already overdue at ``month_start`` is
    counted in this month instead of being advanced to a later one.
    """
    if catch_up and due_date < month_start:
        return True
    return occurs_in_window(due_date, cycle_months, month_start, month_end)


def next_due_date(due_date: date, cycle_months: int) -> date:
    if cycle_months <= 0:
        raise ValueError("cycle_months must be greater than zero.")
    return add_months(due_date, cycle_months, due_date.day)


def month_window(anchor: date, offset: int = 0) -> tuple[date, date]:
    first_day = add_months(anchor.replace(day=1), offset, 1)
    last_day = first_day.replace(day=monthrange(first_day.year, first_day.month)[1])
    return first_day, last_day


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def day_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def month_label(value: date) -> str:
    return f"{MONTH_NAMES[value.month - 1]} {value.year}"


def months_between(start_date: date, end_date: date) -> int:
    months = (end_date.year - start_date.year) * 12 + (end_date.month - start_date.month)
    return max(months, 0)


def add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _normalize_cycle(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())
