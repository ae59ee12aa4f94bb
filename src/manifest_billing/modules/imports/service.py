from __future__ import annotations

import json
import math
import random
import re
from datetime import date, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from manifest_billing.core.archive import pack, unpack
from manifest_billing.core.errors import NotFoundError, ValidationError
from manifest_billing.core.logging import get_logger, log_event
from manifest_billing.core.models import new_id, now_ms
from manifest_billing.modules.billing.expressions import evaluate
from manifest_billing.modules.billing.schemas import BillingConfig, BillingRow, ItemType
from manifest_billing.modules.billing.service import compute_row
from manifest_billing.modules.imports.schemas import (
    BulkImportResult,
    BulkImportStatus,
    Conflict,
    ConflictAction,
    ImportConflict,
    Imported,
    InvalidPayload,
    ItemStatus,
    Rejected,
    ValidPayload,
)
from manifest_billing.modules.manifests.schemas import Folder, Manifest
from manifest_billing.modules.manifests.service import ManifestRepository
from manifest_billing.modules.recognition.client import Recognizer
from manifest_billing.modules.recognition.schemas import AiMode, InlineImage, RecognitionResult
from manifest_billing.modules.recognition.service import recognize_with_strategy

logger = get_logger(__name__)

MAX_BULK_FILES = 30
MAX_IMAGES_PER_MANIFEST = 5
FOLDER_INFO_NAME = "folder_info.json"
EXPORT_FORMAT_VERSION = "2.0"


def today_iso() -> str:
    return date.today().isoformat()


def _pick(raw: dict, camel: str, snake: str) -> Any:
    value = raw.get(camel)
    return raw.get(snake) if value is None else value


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        value = float(value)
        return value if math.isfinite(value) else 0.0
    if isinstance(value, str):
        return evaluate(value)
    return 0.0


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_row(raw: dict, index: int, config: BillingConfig) -> BillingRow:
    sl_no = _pick(raw, "slNo", "sl_no")
    try:
        sl_no = int(sl_no) if sl_no else index + 1
    except (TypeError, ValueError, OverflowError):
        sl_no = index + 1
    row = BillingRow(
        id=_text(raw.get("id")) or new_id(),
        sl_no=sl_no,
        serial_no=_text(_pick(raw, "serialNo", "serial_no")) or f"AWB-{1000 + index}",
        description=_text(raw.get("description")) or "Item",
        type=ItemType.DOCUMENT if raw.get("type") == "Document" else ItemType.PARCEL,
        weight=_number(raw.get("weight")),
        rate=_number(raw.get("rate")),
        is_manual_rate=bool(_pick(raw, "isManualRate", "is_manual_rate")),
    )
    return compute_row(row, config)


def validate_payload(raw: Any, default_config: BillingConfig) -> ValidPayload | InvalidPayload:
    """
    Check the shape of an externally sourced manifest before any field is trusted.

    Stored `amount`/`breakdown` values are ignored; every row is recomputed with
    the embedded config, or `default_config` when the payload has none.
    """
    if not isinstance(raw, dict):
        return InvalidPayload(reason="invalid structure")
    rows = raw.get("rows")
    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        return InvalidPayload(reason="invalid structure")

    config = default_config
    if raw.get("config") is not None:
        try:
            config = BillingConfig.model_validate(raw["config"])
        except PydanticValidationError:
            return InvalidPayload(reason="invalid structure")

    return ValidPayload(
        manifest_no=_text(_pick(raw, "manifestNo", "manifest_no")),
        manifest_date=_text(_pick(raw, "manifestDate", "manifest_date")),
        rows=[normalize_row(r, i, config) for i, r in enumerate(rows)],
        config=config,
    )


def manifest_from_payload(
    payload: ValidPayload, *, fallback_no: str, folder_id: str | None
) -> Manifest:
    return Manifest(
        manifest_no=payload.manifest_no or fallback_no,
        manifest_date=payload.manifest_date or today_iso(),
        rows=payload.rows,
        config=payload.config,
        folder_id=folder_id,
    )


def manifest_from_recognition(
    result: RecognitionResult,
    config: BillingConfig,
    *,
    folder_id: str | None,
    fallback_no: str,
) -> Manifest:
    rows = [
        compute_row(
            BillingRow(
                sl_no=item.sl_no or index + 1,
                serial_no=item.serial_no or f"AWB-{1000 + index}",
                description=item.description or "Item",
                type=item.type,
                weight=item.weight or 0,
                is_manual_rate=False,
            ),
            config,
        )
        for index, item in enumerate(result.items)
    ]
    return Manifest(
        manifest_no=_text(result.manifest_no) or fallback_no,
        manifest_date=_text(result.manifest_date) or today_iso(),
        rows=rows,
        config=config,
        folder_id=folder_id,
    )


def sanitize_manifest_no(manifest_no: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", manifest_no, flags=re.I).lower() or "manifest"


def _parse_json(body: bytes) -> Any:
    return json.loads(body.decode("utf-8-sig"))


class ImportService:
    def __init__(self, repository: ManifestRepository, recognizer: Recognizer | None = None):
        self.repository = repository
        self.recognizer = recognizer
        self.pending_conflict: ImportConflict | None = None

    # Interactive path

    def _offer(self, candidate: Manifest) -> Imported | Conflict:
        existing = self.repository.find_by_manifest_no(candidate.manifest_no)
        if existing is not None:
            self.pending_conflict = ImportConflict(existing=existing, candidate=candidate)
            log_event(
                logger,
                "imports.conflict.detected",
                manifest_no=candidate.manifest_no,
                existing_id=existing.id,
            )
            return Conflict(existing=existing, candidate=candidate)
        saved = self.repository.save_manifest(candidate)
        self.repository.set_active(saved.id)
        log_event(logger, "imports.single.success", manifest_id=saved.id, manifest_no=saved.manifest_no)
        return Imported(manifest=saved)

    def import_candidate(
        self, raw: Any, target_folder_id: str | None = None
    ) -> Imported | Conflict | Rejected:
        if target_folder_id is not None:
            self.repository.get_folder(target_folder_id)
        payload = validate_payload(raw, self.repository.global_config)
        if isinstance(payload, InvalidPayload):
            log_event(logger, "imports.single.rejected", reason=payload.reason)
            return Rejected(reason=payload.reason)
        candidate = manifest_from_payload(
            payload, fallback_no=f"MF-{str(now_ms())[-6:]}", folder_id=target_folder_id
        )
        return self._offer(candidate)

    def resolve_conflict(self, action: ConflictAction) -> Manifest | None:
        conflict = self.pending_conflict
        if conflict is None:
            raise NotFoundError("No import conflict is pending")
        self.pending_conflict = None

        if action == ConflictAction.DISCARD:
            log_event(logger, "imports.conflict.discarded", manifest_no=conflict.candidate.manifest_no)
            return None
        if action == ConflictAction.OVERRIDE:
            if any(m.id == conflict.existing.id for m in self.repository.history):
                self.repository.remove_manifest(conflict.existing.id)

        candidate = conflict.candidate.model_copy(update={"id": new_id()})
        saved = self.repository.save_manifest(candidate)
        self.repository.set_active(saved.id)
        log_event(
            logger,
            "imports.conflict.resolved",
            action=action.value,
            manifest_id=saved.id,
            manifest_no=saved.manifest_no,
        )
        return saved

    async def import_from_images(
        self,
        images: list[InlineImage],
        instruction: str,
        mode: AiMode = AiMode.DEFAULT,
    ) -> Imported | Conflict:
        if not images:
            raise ValidationError("At least one image is required")
        if len(images) > MAX_IMAGES_PER_MANIFEST:
            raise ValidationError(f"Maximum {MAX_IMAGES_PER_MANIFEST} images allowed")
        if self.recognizer is None:
            raise ValidationError("Recognition is not available")

        result = await recognize_with_strategy(self.recognizer, images, instruction, mode)
        candidate = manifest_from_recognition(
            result,
            self.repository.global_config,
            folder_id=None,
            fallback_no=f"MF-{random.randint(10000, 99999)}",
        )
        return self._offer(candidate)

    # Batch paths: duplicates are skipped and reported, never escalated.

    def _collect(
        self,
        entries: list[tuple[str, bytes]],
        *,
        folder_id: str | None,
    ) -> BulkImportResult:
        result = BulkImportResult(folder_id=folder_id)
        batch: list[Manifest] = []
        batch_numbers: set[str] = set()

        for index, (name, body) in enumerate(entries):
            try:
                raw = _parse_json(body)
            except (UnicodeDecodeError, json.JSONDecodeError):
                result.results.append(
                    BulkImportStatus(file_name=name, status=ItemStatus.ERROR, message="JSON parse error")
                )
                continue

            payload = validate_payload(raw, self.repository.global_config)
            if isinstance(payload, InvalidPayload):
                result.results.append(
                    BulkImportStatus(file_name=name, status=ItemStatus.ERROR, message="Invalid structure")
                )
                continue

            number = payload.manifest_no
            if number and (
                number in batch_numbers or self.repository.find_by_manifest_no(number) is not None
            ):
                result.results.append(
                    BulkImportStatus(file_name=name, status=ItemStatus.WARNING, message="Duplicate skipped")
                )
                continue

            manifest = manifest_from_payload(
                payload, fallback_no=f"IMP-{now_ms()}-{index}", folder_id=folder_id
            )
            batch.append(manifest)
            batch_numbers.add(manifest.manifest_no)
            result.results.append(
                BulkImportStatus(file_name=name, status=ItemStatus.SUCCESS, message="Imported")
            )

        result.imported = batch
        return result

    def bulk_import(
        self,
        files: list[tuple[str, bytes]],
        *,
        folder_id: str | None = None,
        new_folder_name: str | None = None,
    ) -> BulkImportResult:
        if len(files) > MAX_BULK_FILES:
            raise ValidationError(f"Maximum {MAX_BULK_FILES} files allowed at once.")

        if new_folder_name is not None:
            folder_id = self.repository.create_folder(new_folder_name).id
        elif folder_id is not None:
            self.repository.get_folder(folder_id)

        result = self._collect(files, folder_id=folder_id)
        result.imported = self.repository.add_manifests(result.imported)
        log_event(
            logger,
            "imports.bulk.success",
            folder_id=folder_id,
            files=len(files),
            imported=len(result.imported),
        )
        return result

    def import_folder_archive(self, archive_name: str, body: bytes) -> BulkImportResult:
        entries = unpack(body)

        folder_name = re.sub(r"\.zip$", "", archive_name or "", flags=re.I).strip() or "Imported"
        info = next((b for n, b in entries if n == FOLDER_INFO_NAME), None)
        if info is not None:
            try:
                meta = _parse_json(info)
            except (UnicodeDecodeError, json.JSONDecodeError):
                meta = None
            if isinstance(meta, dict) and _text(meta.get("folderName")):
                folder_name = _text(meta.get("folderName"))

        manifests = [
            (n, b) for n, b in entries if n.lower().endswith(".json") and n != FOLDER_INFO_NAME
        ]
        folder = Folder(name=folder_name)
        result = self._collect(manifests, folder_id=folder.id)

        if result.imported:
            self.repository.add_folder(folder)
            result.imported = self.repository.add_manifests(result.imported)
        else:
            result.folder_id = None

        log_event(
            logger,
            "imports.archive.success",
            folder_id=result.folder_id,
            entries=len(manifests),
            imported=len(result.imported),
        )
        return result

    # Exports

    def export_folder_archive(self, folder_id: str) -> tuple[str, bytes]:
        folder = self.repository.get_folder(folder_id)
        manifests = self.repository.list_manifests(folder_id)
        if not manifests:
            raise ValidationError("Folder is empty. Nothing to export.")

        now = datetime.now()
        metadata = {
            "folderName": folder.name,
            "createdDate": now.date().isoformat(),
            "createdTime": now.strftime("%H:%M"),
            "totalManifests": len(manifests),
            "version": EXPORT_FORMAT_VERSION,
        }
        files: list[tuple[str, bytes]] = [
            (FOLDER_INFO_NAME, json.dumps(metadata, indent=2).encode("utf-8"))
        ]
        used: set[str] = set()
        for manifest in manifests:
            stem = sanitize_manifest_no(manifest.manifest_no)
            name = f"{stem}.json"
            n = 2
            while name in used:
                name = f"{stem}_{n}.json"
                n += 1
            used.add(name)
            files.append((name, json.dumps(manifest.to_wire(), indent=2).encode("utf-8")))

        log_event(logger, "exports.folder.success", folder_id=folder_id, manifests=len(manifests))
        return f"{folder.name}_export.zip", pack(files)

    def export_manifest(self, manifest_id: str) -> tuple[str, bytes]:
        manifest = self.repository.get_manifest(manifest_id)
        body = {
            "manifestNo": manifest.manifest_no,
            "manifestDate": manifest.manifest_date,
            "rows": [r.to_wire() for r in manifest.rows],
            "config": manifest.config.to_wire(),
        }
        filename = f"{manifest.manifest_no or 'manifest'}.json"
        return filename, json.dumps(body, indent=2).encode("utf-8")


_import_service: ImportService | None = None


def get_import_service() -> ImportService:
    global _import_service  # noqa: PLW0603
    if _import_service is None:
        from manifest_billing.modules.manifests.service import get_repository
        from manifest_billing.modules.recognition.service import get_recognizer

        _import_service = ImportService(get_repository(), get_recognizer())
    return _import_service
