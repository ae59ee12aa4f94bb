from __future__ import annotations

import math
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from manifest_billing.core.errors import NotFoundError, ValidationError
from manifest_billing.core.models import new_id
from manifest_billing.modules.billing.expressions import evaluate
from manifest_billing.modules.billing.schemas import (
    BillingConfig,
    BillingRow,
    ItemType,
    ParcelCharge,
    SlabSummary,
)

SLAB1_LIMIT_KG = 10
SLAB2_LIMIT_KG = 100


def format_number(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def billable_weight(weight: float) -> int:
    """Any fractional weight rounds up: 5.01kg bills as 6kg. Non-finite weights bill nothing."""
    if not math.isfinite(weight) or weight <= 0:
        return 0
    return math.ceil(weight)


def compute_parcel(weight: float, config: BillingConfig) -> ParcelCharge:
    remaining = billable_weight(weight)
    total = 0.0
    terms: list[str] = []

    s1w = min(remaining, SLAB1_LIMIT_KG)
    if s1w > 0:
        total += s1w * config.parcel_slab1_rate
        terms.append(f"{s1w}kg*{format_number(config.parcel_slab1_rate)}")
        remaining -= s1w

    s2w = min(remaining, SLAB2_LIMIT_KG)
    if s2w > 0:
        total += s2w * config.parcel_slab2_rate
        terms.append(f"{s2w}kg*{format_number(config.parcel_slab2_rate)}")
        remaining -= s2w

    s3w = remaining
    if s3w > 0:
        total += s3w * config.parcel_slab3_rate
        terms.append(f"{s3w}kg*{format_number(config.parcel_slab3_rate)}")

    return ParcelCharge(
        total=total,
        breakdown=" + ".join(terms),
        slab1_weight=s1w,
        slab2_weight=s2w,
        slab3_weight=s3w,
    )


def compute_row(row: BillingRow, config: BillingConfig) -> BillingRow:
    rate = row.rate or 0.0
    bw = billable_weight(row.weight)

    if row.type == ItemType.DOCUMENT:
        if not row.is_manual_rate:
            rate = config.document_rate
        amount = rate
        breakdown = f"Flat: {format_number(rate)}"
    elif row.is_manual_rate:
        amount = rate * bw
        breakdown = f"{bw}kg * {format_number(rate)} (Manual)"
    else:
        charge = compute_parcel(row.weight, config)
        # Per-kg rate is display only; amount always comes from the slabs.
        rate = charge.total / bw if bw > 0 else config.parcel_slab1_rate
        amount = charge.total
        breakdown = charge.breakdown

    return row.model_copy(update={"rate": rate, "amount": amount, "breakdown": breakdown})


def recalculate_rows(rows: list[BillingRow], config: BillingConfig) -> list[BillingRow]:
    return [compute_row(r, config) for r in rows]


def total_amount(rows: list[BillingRow]) -> float:
    return sum(r.amount for r in rows)


def new_row(rows: list[BillingRow], config: BillingConfig) -> list[BillingRow]:
    row = BillingRow(id=new_id(), sl_no=len(rows) + 1)
    return [*rows, compute_row(row, config)]


_FIELD_BY_ALIAS = {info.alias: name for name, info in BillingRow.model_fields.items() if info.alias}
_DERIVED_FIELDS = {"id", "amount", "breakdown"}


def _coerce_number(value: Any) -> Any:
    if isinstance(value, str):
        return evaluate(value)
    if value is None:
        return 0.0
    return value


def update_row(
    rows: list[BillingRow], row_id: str, config: BillingConfig, /, **changes: Any
) -> list[BillingRow]:
    """
    Apply field edits to one row and re-derive it.

    `weight` and `rate` may be given as formulas ("12+15+30").
    """
    target = next((r for r in rows if r.id == row_id), None)
    if target is None:
        raise NotFoundError(f"Row {row_id} not found")

    updates: dict[str, Any] = {}
    for key, value in changes.items():
        field = _FIELD_BY_ALIAS.get(key, key)
        if field not in BillingRow.model_fields or field in _DERIVED_FIELDS:
            continue
        if field in {"weight", "rate"}:
            value = _coerce_number(value)
        updates[field] = value

    try:
        edited = BillingRow.model_validate({**target.model_dump(), **updates})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid row edit: {e.error_count()} field(s) rejected") from e

    edited = compute_row(edited, config)
    return [edited if r.id == row_id else r for r in rows]


def delete_row(rows: list[BillingRow], row_id: str) -> list[BillingRow]:
    kept = [r for r in rows if r.id != row_id]
    return [r.model_copy(update={"sl_no": i + 1}) for i, r in enumerate(kept)]


def apply_type(rows: list[BillingRow], item_type: ItemType, config: BillingConfig) -> list[BillingRow]:
    return [compute_row(r.model_copy(update={"type": item_type}), config) for r in rows]


def summarize_rows(rows: list[BillingRow], config: BillingConfig) -> SlabSummary:
    s = SlabSummary()
    for row in rows:
        if row.type == ItemType.DOCUMENT:
            s.doc_count += 1
            s.doc_total += row.amount
        else:
            s.parcel_count += 1
            bw = billable_weight(row.weight)
            s.total_billable_weight += bw
            charge = compute_parcel(row.weight, config)
            s.slab1_weight += charge.slab1_weight
            s.slab2_weight += charge.slab2_weight
            s.slab3_weight += charge.slab3_weight
            if bw <= SLAB1_LIMIT_KG:
                s.parcel_count_s1 += 1
                s.light_parcels_total_weight += bw
            else:
                s.parcel_count_s2_plus += 1
                s.heavy_parcels_total_weight += bw
                s.heavy_parcel_weights_list.append(bw)
        s.total_amount += row.amount
    return s
