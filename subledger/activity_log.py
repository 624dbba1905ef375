from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Mapping, Sequence

logger = logging.getLogger(__name__)

SUMMARY_LABEL_LIMIT = 3


class EntityKind(str, Enum):
    SALE = "sale"
    SERVICE = "service"
    USER = "user"
    CUSTOMER = "customer"
    RESELLER = "reseller"
    CATEGORY = "category"
    PAYMENT_METHOD = "payment-method"
    TEMPLATE = "template"


class ValueType(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    NUMBER = "number"
    DATE = "date"
    MONEY = "money"


@dataclass(frozen=True)
class TrackedField:
    key: str
    label: str
    value_type: ValueType


@dataclass(frozen=True)
class ChangeRecord:
    field_key: str
    label: str
    old_value: Any
    new_value: Any
    value_type: ValueType


@dataclass(frozen=True)
class ActivityEntry:
    kind: EntityKind
    entity_id: str
    entity_name: str
    action: str
    details: str
    changes: tuple[ChangeRecord, ...] = ()
    user: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_USER_FIELDS = (
    TrackedField("nombre", "Name", ValueType.STRING),
    TrackedField("email", "Email", ValueType.STRING),
    TrackedField("telefono", "Phone", ValueType.STRING),
    TrackedField("montoSinConsumir", "Unused Balance", ValueType.MONEY),
    TrackedField("serviciosActivos", "Active Services", ValueType.NUMBER),
)

TRACKED_FIELDS: dict[EntityKind, tuple[TrackedField, ...]] = {
    EntityKind.SERVICE: (
        TrackedField("nombre", "Name", ValueType.STRING),
        TrackedField("activo", "Status", ValueType.BOOLEAN),
        TrackedField("perfilesDisponibles", "Available Profiles", ValueType.NUMBER),
        TrackedField("perfilesOcupados", "Occupied Profiles", ValueType.NUMBER),
        TrackedField("fechaVencimiento", "Due Date", ValueType.DATE),
        TrackedField("costoServicio", "Cost", ValueType.MONEY),
        TrackedField("categoriaNombre", "Category", ValueType.STRING),
        TrackedField("metodoPagoNombre", "Payment Method", ValueType.STRING),
    ),
    EntityKind.SALE: (
        TrackedField("estado", "Status", ValueType.STRING),
        TrackedField("precioFinal", "Final Price", ValueType.MONEY),
        TrackedField("fechaFin", "End Date", ValueType.DATE),
        TrackedField("perfilNombre", "Profile", ValueType.STRING),
        TrackedField("cicloPago", "Billing Cycle", ValueType.STRING),
    ),
    EntityKind.USER: _USER_FIELDS,
    EntityKind.CUSTOMER: _USER_FIELDS,
    EntityKind.RESELLER: _USER_FIELDS,
    EntityKind.CATEGORY: (
        TrackedField("nombre", "Name", ValueType.STRING),
        TrackedField("descripcion", "Description", ValueType.STRING),
        TrackedField("tipoCategoria", "Type", ValueType.STRING),
    ),
    EntityKind.PAYMENT_METHOD: (
        TrackedField("nombre", "Name", ValueType.STRING),
        TrackedField("tipo", "Type", ValueType.STRING),
        TrackedField("activo", "Status", ValueType.BOOLEAN),
    ),
    EntityKind.TEMPLATE: (
        TrackedField("nombre", "Name", ValueType.STRING),
        TrackedField("tipo", "Type", ValueType.STRING),
        TrackedField("contenido", "Content", ValueType.STRING),
        TrackedField("activo", "Status", ValueType.BOOLEAN),
    ),
}

_missing = set(EntityKind) - set(TRACKED_FIELDS)
if _missing:
    raise RuntimeError(f"Tracked fields missing for: {sorted(kind.value for kind in _missing)}")


def parse_entity_kind(kind: EntityKind | str) -> EntityKind | None:
    if isinstance(kind, EntityKind):
        return kind
    try:
        return EntityKind(kind.strip().lower())
    except (AttributeError, ValueError):
        return None


def detect_changes(
    kind: EntityKind | str,
    before: Mapping[str, Any],
    after: Mapping[str, Any],
) -> List[ChangeRecord]:
    entity_kind = parse_entity_kind(kind)
    if entity_kind is None:
        logger.debug("No tracked fields for entity kind %r", kind)
        return []

    changes: List[ChangeRecord] = []
    for tracked in TRACKED_FIELDS[entity_kind]:
        old_value = before.get(tracked.key)
        new_value = after.get(tracked.key)
        if not values_equal(old_value, new_value, tracked.value_type):
            changes.append(
                ChangeRecord(
                    field_key=tracked.key,
                    label=tracked.label,
                    old_value=old_value,
                    new_value=new_value,
                    value_type=tracked.value_type,
                )
            )
    return changes


def values_equal(a: Any, b: Any, value_type: ValueType = ValueType.STRING) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    if value_type == ValueType.DATE or (_is_temporal(a) and _is_temporal(b)):
        left, right = _as_instant(a), _as_instant(b)
        if left is not None and right is not None:
            return left == right
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def summarize(changes: Sequence[ChangeRecord]) -> str:
    if not changes:
        return "no changes"
    if len(changes) == 1:
        return f"1 change: {changes[0].label}"
    labels = ", ".join(change.label for change in changes[:SUMMARY_LABEL_LIMIT])
    if len(changes) <= SUMMARY_LABEL_LIMIT:
        return f"{len(changes)} changes: {labels}"
    return f"{len(changes)} changes: {labels}..."


def build_activity_entry(
    kind: EntityKind | str,
    entity_id: str,
    entity_name: str,
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    user: str | None = None,
    now: datetime | None = None,
) -> ActivityEntry | None:
    entity_kind = parse_entity_kind(kind)
    if entity_kind is None:
        return None
    changes = detect_changes(entity_kind, before, after)
    if not changes:
        return None
    return ActivityEntry(
        kind=entity_kind,
        entity_id=entity_id,
        entity_name=entity_name,
        action="update",
        details=summarize(changes),
        changes=tuple(changes),
        user=user,
        timestamp=now or datetime.now(timezone.utc),
    )


def _is_temporal(value: Any) -> bool:
    return isinstance(value, (date, datetime))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_instant(value: Any) -> datetime | None:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None
