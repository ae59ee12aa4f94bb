from __future__ import annotations

import math
from enum import StrEnum
from typing import Annotated, Any

from pydantic import AfterValidator, BeforeValidator, Field

from manifest_billing.core.models import CamelModel, new_id


def _finite_or_zero(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return 0.0
    return value


# Overflowing inputs such as 1e400 bill as 0, like a formula that does not evaluate.
FiniteFloat = Annotated[float, BeforeValidator(_finite_or_zero), AfterValidator(_finite_or_zero)]


class ItemType(StrEnum):
    PARCEL = "Parcel"
    DOCUMENT = "Document"


class BillingConfig(CamelModel):
    parcel_slab1_rate: FiniteFloat = Field(default=3, ge=0)  # first 10kg
    parcel_slab2_rate: FiniteFloat = Field(default=2, ge=0)  # next 100kg
    parcel_slab3_rate: FiniteFloat = Field(default=1, ge=0)  # remainder above 110kg
    document_rate: FiniteFloat = Field(default=5, ge=0)


class BillingRow(CamelModel):
    id: str = Field(default_factory=new_id)
    sl_no: int = 1
    serial_no: str = ""
    description: str = ""
    type: ItemType = ItemType.PARCEL
    weight: FiniteFloat = 0
    rate: FiniteFloat = 0
    is_manual_rate: bool = False
    amount: float = 0
    breakdown: str = ""


class ParcelCharge(CamelModel):
    total: float
    breakdown: str
    slab1_weight: int
    slab2_weight: int
    slab3_weight: int


class SlabSummary(CamelModel):
    slab1_weight: int = 0
    slab2_weight: int = 0
    slab3_weight: int = 0
    parcel_count: int = 0
    parcel_count_s1: int = 0
    parcel_count_s2_plus: int = 0
    light_parcels_total_weight: int = 0
    heavy_parcels_total_weight: int = 0
    heavy_parcel_weights_list: list[int] = Field(default_factory=list)
    doc_count: int = 0
    doc_total: float = 0
    total_billable_weight: int = 0
    total_amount: float = 0


class EvaluateIn(CamelModel):
    expression: str = ""


class EvaluateOut(CamelModel):
    expression: str
    value: float


class RowsIn(CamelModel):
    rows: list[BillingRow]
    config: BillingConfig | None = None


class RowsOut(CamelModel):
    rows: list[BillingRow]
    total_amount: float


class RowUpdateIn(RowsIn):
    # Row fields by wire or attribute name; weight and rate may be formulas.
    changes: dict[str, Any] = Field(default_factory=dict)


class RowTypeIn(RowsIn):
    type: ItemType
