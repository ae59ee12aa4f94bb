from __future__ import annotations

import logging

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from manifest_billing.core.errors import NotFoundError, ValidationError
from manifest_billing.core.logging import get_logger, log_event, log_exception
from manifest_billing.core.models import new_id
from manifest_billing.core.storage import BlobStore, StorageError, StorageWriteFailure, get_storage
from manifest_billing.modules.billing.schemas import BillingConfig
from manifest_billing.modules.billing.service import recalculate_rows
from manifest_billing.modules.manifests.schemas import (
    Folder,
    Manifest,
    ManifestSave,
    UserPreferences,
)

logger = get_logger(__name__)

HISTORY_KEY = "smart_billing_manifest_history_v2"
RECYCLE_BIN_KEY = "smart_billing_recycle_bin_v2"
FOLDERS_KEY = "smart_billing_folders_v2"
GLOBAL_CONFIG_KEY = "smart_billing_global_config"
PREFS_KEY = "smart_billing_user_prefs"

_manifests_adapter = TypeAdapter(list[Manifest])
_folders_adapter = TypeAdapter(list[Folder])


def with_totals(manifest: Manifest) -> Manifest:
    return manifest.model_copy(
        update={
            "total_amount": sum(r.amount for r in manifest.rows),
            "item_count": len(manifest.rows),
        }
    )


class ManifestRepository:
    """
    In-memory manifest history, recycle bin, folders and global settings.

    Every mutation writes the affected collection back to the blob store as one
    JSON snapshot. A failed write keeps the in-memory change and records the key
    in `unsynced_keys` until a later write of that key succeeds.
    """

    def __init__(self, storage: BlobStore):
        self._storage = storage
        self.history: list[Manifest] = []
        self.recycle_bin: list[Manifest] = []
        self.folders: list[Folder] = []
        self.global_config = BillingConfig()
        self.preferences = UserPreferences()
        self.active_manifest_id: str | None = None
        self.unsynced_keys: set[str] = set()

    # Persistence

    def _read(self, key: str, adapter: TypeAdapter):
        try:
            body = self._storage.get(key=key)
        except StorageError:
            # An unreadable snapshot must never load as empty.
            log_exception(logger, "manifests.load.failure", storage_key=key)
            raise
        if body is None:
            return None
        try:
            return adapter.validate_json(body)
        except PydanticValidationError:
            log_exception(logger, "manifests.load.corrupt", storage_key=key)
            return None

    def load(self) -> None:
        """Read every snapshot, then swap them in; a read failure leaves state untouched."""
        history = self._read(HISTORY_KEY, _manifests_adapter) or []
        recycle_bin = self._read(RECYCLE_BIN_KEY, _manifests_adapter) or []
        folders = self._read(FOLDERS_KEY, _folders_adapter) or []
        global_config = self._read(GLOBAL_CONFIG_KEY, TypeAdapter(BillingConfig)) or BillingConfig()
        preferences = self._read(PREFS_KEY, TypeAdapter(UserPreferences)) or UserPreferences()

        self.history = history
        self.recycle_bin = recycle_bin
        self.folders = folders
        self.global_config = global_config
        self.preferences = preferences
        log_event(
            logger,
            "manifests.load.success",
            history=len(self.history),
            recycle_bin=len(self.recycle_bin),
            folders=len(self.folders),
        )

    def _write(self, key: str, value: list | BaseModel) -> None:
        if isinstance(value, BaseModel):
            body = value.model_dump_json(by_alias=True).encode("utf-8")
        elif key == FOLDERS_KEY:
            body = _folders_adapter.dump_json(value, by_alias=True)
        else:
            body = _manifests_adapter.dump_json(value, by_alias=True)
        try:
            self._storage.set(key=key, body=body)
        except StorageWriteFailure:
            self.unsynced_keys.add(key)
            log_event(logger, "manifests.persist.failure", level=logging.WARNING, storage_key=key)
            return
        self.unsynced_keys.discard(key)

    def _save_history(self) -> None:
        self._write(HISTORY_KEY, self.history)

    def _save_recycle_bin(self) -> None:
        self._write(RECYCLE_BIN_KEY, self.recycle_bin)

    def _save_folders(self) -> None:
        self._write(FOLDERS_KEY, self.folders)

    # Manifests

    def list_manifests(self, folder_id: str | None = None) -> list[Manifest]:
        return [m for m in self.history if m.folder_id == folder_id]

    def get_manifest(self, manifest_id: str) -> Manifest:
        for m in self.history:
            if m.id == manifest_id:
                return m
        raise NotFoundError(f"Manifest {manifest_id} not found")

    def find_by_manifest_no(self, manifest_no: str) -> Manifest | None:
        return next((m for m in self.history if m.manifest_no == manifest_no), None)

    def save_manifest(self, manifest: Manifest) -> Manifest:
        manifest = with_totals(manifest)
        if any(m.id == manifest.id for m in self.history):
            self.history = [manifest if m.id == manifest.id else m for m in self.history]
        else:
            self.history = [manifest, *self.history]
        self._save_history()
        log_event(
            logger,
            "manifests.save.success",
            manifest_id=manifest.id,
            manifest_no=manifest.manifest_no,
            item_count=manifest.item_count,
        )
        return manifest

    def add_manifests(self, manifests: list[Manifest]) -> list[Manifest]:
        if not manifests:
            return []
        added = [with_totals(m) for m in manifests]
        self.history = [*added, *self.history]
        self._save_history()
        log_event(logger, "manifests.batch_add.success", count=len(added))
        return added

    def remove_manifest(self, manifest_id: str) -> Manifest:
        manifest = self.get_manifest(manifest_id)
        self.history = [m for m in self.history if m.id != manifest_id]
        if self.active_manifest_id == manifest_id:
            self.active_manifest_id = None
        self._save_history()
        return manifest

    def move_manifest(self, manifest_id: str, folder_id: str | None) -> Manifest:
        manifest = self.get_manifest(manifest_id)
        if folder_id is not None:
            self.get_folder(folder_id)
        moved = manifest.model_copy(update={"folder_id": folder_id})
        self.history = [moved if m.id == manifest_id else m for m in self.history]
        self._save_history()
        return moved

    def reconfigure_manifest(self, manifest_id: str, config: BillingConfig) -> Manifest:
        manifest = self.get_manifest(manifest_id)
        updated = manifest.model_copy(
            update={"config": config, "rows": recalculate_rows(manifest.rows, config)}
        )
        return self.save_manifest(updated)

    # Recycle bin

    def soft_delete(self, manifest_id: str) -> Manifest:
        manifest = self.remove_manifest(manifest_id)
        self.recycle_bin = [manifest, *self.recycle_bin]
        self._save_recycle_bin()
        log_event(logger, "manifests.soft_delete.success", manifest_id=manifest_id)
        return manifest

    def restore(self, manifest_id: str) -> Manifest:
        # Duplicate manifest numbers are not re-checked here.
        manifest = next((m for m in self.recycle_bin if m.id == manifest_id), None)
        if manifest is None:
            raise NotFoundError(f"Manifest {manifest_id} not in recycle bin")
        self.recycle_bin = [m for m in self.recycle_bin if m.id != manifest_id]
        self._save_recycle_bin()
        self.history = [manifest, *self.history]
        self._save_history()
        log_event(logger, "manifests.restore.success", manifest_id=manifest_id)
        return manifest

    def permanent_delete(self, manifest_id: str) -> None:
        if not any(m.id == manifest_id for m in self.recycle_bin):
            raise NotFoundError(f"Manifest {manifest_id} not in recycle bin")
        self.recycle_bin = [m for m in self.recycle_bin if m.id != manifest_id]
        self._save_recycle_bin()

    def empty_recycle_bin(self) -> int:
        count = len(self.recycle_bin)
        self.recycle_bin = []
        self._save_recycle_bin()
        log_event(logger, "manifests.recycle_bin.emptied", count=count)
        return count

    # Folders

    def get_folder(self, folder_id: str) -> Folder:
        for f in self.folders:
            if f.id == folder_id:
                return f
        raise NotFoundError(f"Folder {folder_id} not found")

    def create_folder(self, name: str) -> Folder:
        name = name.strip()
        if not name:
            raise ValidationError("Folder name is required")
        return self.add_folder(Folder(name=name))

    def add_folder(self, folder: Folder) -> Folder:
        self.folders = [*self.folders, folder]
        self._save_folders()
        return folder

    def rename_folder(self, folder_id: str, name: str) -> Folder:
        name = name.strip()
        if not name:
            raise ValidationError("Folder name is required")
        folder = self.get_folder(folder_id).model_copy(update={"name": name})
        self.folders = [folder if f.id == folder_id else f for f in self.folders]
        self._save_folders()
        return folder

    def delete_folder(self, folder_id: str) -> None:
        self.get_folder(folder_id)
        self.folders = [f for f in self.folders if f.id != folder_id]
        self._save_folders()
        self.history = [
            m.model_copy(update={"folder_id": None}) if m.folder_id == folder_id else m
            for m in self.history
        ]
        self._save_history()

    # Settings and the active manifest

    def update_global_settings(
        self,
        *,
        config: BillingConfig | None = None,
        preferences: UserPreferences | None = None,
    ) -> None:
        if config is not None:
            self.global_config = config
            self._write(GLOBAL_CONFIG_KEY, config)
        if preferences is not None:
            self.preferences = preferences
            self._write(PREFS_KEY, preferences)

    def set_active(self, manifest_id: str | None) -> None:
        if manifest_id is not None:
            self.get_manifest(manifest_id)
        self.active_manifest_id = manifest_id

    def active_manifest(self) -> Manifest | None:
        if self.active_manifest_id is None:
            return None
        return next((m for m in self.history if m.id == self.active_manifest_id), None)


_repository: ManifestRepository | None = None


def get_repository() -> ManifestRepository:
    global _repository  # noqa: PLW0603
    if _repository is not None:
        return _repository
    repository = ManifestRepository(get_storage())
    repository.load()
    _repository = repository
    return repository


def save_edited_manifest(repo: ManifestRepository, payload: ManifestSave) -> Manifest:
    """Save editor state: replace by id when it exists, else prepend as a new manifest."""
    existing = None
    if payload.id:
        existing = next((m for m in repo.history if m.id == payload.id), None)
    config = payload.config or (existing.config if existing else repo.global_config)
    manifest = Manifest(
        id=payload.id or new_id(),
        manifest_no=payload.manifest_no,
        manifest_date=payload.manifest_date,
        rows=recalculate_rows(payload.rows, config),
        config=config,
        folder_id=payload.folder_id,
    )
    if manifest.folder_id is not None:
        repo.get_folder(manifest.folder_id)
    saved = repo.save_manifest(manifest)
    repo.set_active(saved.id)
    return saved
