from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, List, Mapping

from subledger.document_store import DocumentReader
from subledger.recurring_projection import BillingCycle, next_due_date, parse_billing_cycle

logger = logging.getLogger(__name__)

SALES_COLLECTION = "sales"
SERVICES_COLLECTION = "services"
CATEGORIES_COLLECTION = "categories"


class ObligationKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


@dataclass(frozen=True)
class MonetaryAmount:
    amount: Decimal
    currency_code: str = "USD"


@dataclass(frozen=True)
class RecurringObligation:
    id: str
    kind: ObligationKind
    amount: MonetaryAmount | None
    cycle: BillingCycle | None
    due_date: date | None
    active: bool = True
    category_id: str | None = None

    def is_well_formed(self) -> bool:
        return (
            self.amount is not None
            and self.amount.amount > 0
            and self.cycle is not None
            and self.due_date is not None
        )

    @property
    def monthly_amount(self) -> Decimal | None:
        if not self.is_well_formed():
            return None
        return self.amount.amount / int(self.cycle)


def renew(obligation: RecurringObligation) -> RecurringObligation:
    if obligation.due_date is None or obligation.cycle is None:
        raise ValueError("Only obligations with a due date and cycle can be renewed.")
    return replace(obligation, due_date=next_due_date(obligation.due_date, int(obligation.cycle)))


def obligation_from_sale(doc_id: str, doc: Mapping[str, Any]) -> RecurringObligation:
    price = doc.get("precioFinal")
    if price is None:
        price = doc.get("precio")
    return RecurringObligation(
        id=doc_id,
        kind=ObligationKind.INCOME,
        amount=_parse_amount(price, doc.get("moneda")),
        cycle=_parse_cycle(doc.get("cicloPago")),
        due_date=_parse_date(doc.get("fechaFin")),
        active=doc.get("estado") != "inactivo",
        category_id=doc.get("categoriaId"),
    )


def obligation_from_service(doc_id: str, doc: Mapping[str, Any]) -> RecurringObligation:
    return RecurringObligation(
        id=doc_id,
        kind=ObligationKind.EXPENSE,
        amount=_parse_amount(doc.get("costoServicio"), doc.get("moneda")),
        cycle=_parse_cycle(doc.get("cicloPago")),
        due_date=_parse_date(doc.get("fechaVencimiento")),
        active=bool(doc.get("activo", False)),
        category_id=doc.get("categoriaId"),
    )


async def load_active_obligations(reader: DocumentReader) -> List[RecurringObligation]:
    sales = await reader.get_all(SALES_COLLECTION)
    services = await reader.get_all(SERVICES_COLLECTION)
    return active_obligations(
        [obligation_from_sale(doc.id, doc.data) for doc in sales]
        + [obligation_from_service(doc.id, doc.data) for doc in services]
    )


def active_obligations(obligations: Iterable[RecurringObligation]) -> List[RecurringObligation]:
    return [obligation for obligation in obligations if obligation.active]


def _parse_amount(value: Any, currency: Any) -> MonetaryAmount | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        logger.debug("Unparseable amount %r", value)
        return None
    if not amount.is_finite():
        return None
    code = currency.strip().upper() if isinstance(currency, str) and currency.strip() else "USD"
    return MonetaryAmount(amount=amount, currency_code=code)


def _parse_cycle(value: Any) -> BillingCycle | None:
    if value is None:
        return None
    try:
        return parse_billing_cycle(value)
    except ValueError:
        logger.debug("Unparseable billing cycle %r", value)
        return None


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            logger.debug("Unparseable date %r", value)
            return None
    return None
