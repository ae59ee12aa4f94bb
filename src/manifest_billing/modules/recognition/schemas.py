from __future__ import annotations

import math
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from manifest_billing.core.models import CamelModel
from manifest_billing.modules.billing.schemas import ItemType


class RecognitionTier(StrEnum):
    FAST = "fast"
    ACCURATE = "accurate"
    FALLBACK = "fallback"


class AiMode(StrEnum):
    DEFAULT = "default"
    HYBRID = "hybrid"
    AUTO = "auto"


class InlineImage(CamelModel):
    data: str  # base64, no data: URL prefix
    mime_type: str = "image/jpeg"


class RecognizedItem(CamelModel):
    sl_no: int | None = None
    serial_no: str | None = None
    description: str | None = None
    type: ItemType = ItemType.PARCEL
    weight: float | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _only_exact_document(cls, v: Any) -> ItemType:
        return ItemType.DOCUMENT if v == "Document" else ItemType.PARCEL

    @field_validator("sl_no", mode="before")
    @classmethod
    def _whole_sl_no(cls, v: Any) -> int | None:
        if isinstance(v, int | float) and not isinstance(v, bool) and math.isfinite(v) and v > 0:
            return int(v)
        return None

    @field_validator("weight", mode="before")
    @classmethod
    def _finite_weight(cls, v: Any) -> Any:
        if isinstance(v, float) and not math.isfinite(v):
            return None
        return v


class RecognitionIssue(CamelModel):
    type: str | None = None
    message: str | None = None


class RecognitionResult(CamelModel):
    manifest_no: str | None = None
    manifest_date: str | None = None
    items: list[RecognizedItem] = Field(default_factory=list)
    errors: list[RecognitionIssue] = Field(default_factory=list)
