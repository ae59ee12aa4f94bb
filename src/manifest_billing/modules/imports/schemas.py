from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import Field

from manifest_billing.core.models import CamelModel
from manifest_billing.modules.billing.schemas import BillingConfig, BillingRow
from manifest_billing.modules.manifests.schemas import Manifest
from manifest_billing.modules.recognition.schemas import AiMode, InlineImage


class ValidPayload(CamelModel):
    kind: Literal["valid"] = "valid"
    manifest_no: str | None = None
    manifest_date: str | None = None
    rows: list[BillingRow]
    config: BillingConfig


class InvalidPayload(CamelModel):
    kind: Literal["invalid"] = "invalid"
    reason: str


class Imported(CamelModel):
    kind: Literal["imported"] = "imported"
    manifest: Manifest


class Conflict(CamelModel):
    kind: Literal["conflict"] = "conflict"
    existing: Manifest
    candidate: Manifest


class Rejected(CamelModel):
    kind: Literal["rejected"] = "rejected"
    reason: str


ImportOutcome = Annotated[Imported | Conflict | Rejected, Field(discriminator="kind")]


class ImportConflict(CamelModel):
    existing: Manifest
    candidate: Manifest


class ConflictAction(StrEnum):
    KEEP_BOTH = "keep_both"
    OVERRIDE = "override"
    DISCARD = "discard"


class ItemStatus(StrEnum):
    SUCCESS = "success"
    WARNING = "warning"  # duplicate skipped
    ERROR = "error"


class BulkImportStatus(CamelModel):
    file_name: str
    status: ItemStatus
    message: str


class BulkImportResult(CamelModel):
    folder_id: str | None = None
    results: list[BulkImportStatus] = Field(default_factory=list)
    imported: list[Manifest] = Field(default_factory=list)


class ResolveConflictIn(CamelModel):
    action: ConflictAction


class ResolveConflictOut(CamelModel):
    action: ConflictAction
    manifest: Manifest | None = None


class ImageImportIn(CamelModel):
    images: list[InlineImage]
    instruction: str = "Extract billing data from these images. Treat them as sequential pages of one manifest."
    mode: AiMode = AiMode.DEFAULT
