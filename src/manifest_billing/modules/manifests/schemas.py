from __future__ import annotations

from enum import StrEnum

from pydantic import Field, model_validator

from manifest_billing.core.models import CamelModel, new_id, now_ms
from manifest_billing.modules.billing.schemas import BillingConfig, BillingRow


class Theme(StrEnum):
    LIGHT = "light"
    DARK = "dark"
    READING = "reading"


class Manifest(CamelModel):
    id: str = Field(default_factory=new_id)
    manifest_no: str
    manifest_date: str
    rows: list[BillingRow] = Field(default_factory=list)
    config: BillingConfig = Field(default_factory=BillingConfig)
    total_amount: float = 0
    item_count: int = 0
    created_at: int = Field(default_factory=now_ms)
    folder_id: str | None = None

    @model_validator(mode="after")
    def _derive_totals(self) -> Manifest:
        self.total_amount = sum(r.amount for r in self.rows)
        self.item_count = len(self.rows)
        return self


class Folder(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    created_at: int = Field(default_factory=now_ms)


class UserPreferences(CamelModel):
    theme: Theme = Theme.LIGHT
    scale: int = Field(default=100, ge=50, le=200)


class GlobalSettings(CamelModel):
    config: BillingConfig
    preferences: UserPreferences


class ManifestSave(CamelModel):
    id: str | None = None
    manifest_no: str
    manifest_date: str
    rows: list[BillingRow] = Field(default_factory=list)
    config: BillingConfig | None = None
    folder_id: str | None = None


class ManifestMove(CamelModel):
    folder_id: str | None = None


class FolderCreate(CamelModel):
    name: str = Field(min_length=1)


class FolderRename(CamelModel):
    name: str = Field(min_length=1)
