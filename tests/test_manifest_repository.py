from __future__ import annotations

import json

import pytest

from manifest_billing.core.errors import NotFoundError
from manifest_billing.core.storage import MemoryBlobStore, StorageError, StorageWriteFailure
from manifest_billing.modules.billing.schemas import BillingConfig, BillingRow
from manifest_billing.modules.billing.service import compute_row
from manifest_billing.modules.manifests.schemas import Manifest, ManifestSave, UserPreferences
from manifest_billing.modules.manifests.service import (
    FOLDERS_KEY,
    HISTORY_KEY,
    RECYCLE_BIN_KEY,
    ManifestRepository,
    save_edited_manifest,
)

CFG = BillingConfig()


def _manifest(no: str, *, weights=(5,), folder_id=None) -> Manifest:
    rows = [compute_row(BillingRow(sl_no=i + 1, weight=w), CFG) for i, w in enumerate(weights)]
    return Manifest(manifest_no=no, manifest_date="2026-01-05", rows=rows, config=CFG, folder_id=folder_id)


def test_save_prepends_and_derives_totals(repo):
    a = repo.save_manifest(_manifest("MF-1", weights=(5, 12)))
    b = repo.save_manifest(_manifest("MF-2"))
    assert [m.manifest_no for m in repo.history] == ["MF-2", "MF-1"]
    assert a.item_count == 2
    assert a.total_amount == 15 + 34
    assert b.total_amount == 15


def test_save_replaces_by_identity(repo):
    m = repo.save_manifest(_manifest("MF-1"))
    repo.save_manifest(m.model_copy(update={"manifest_no": "MF-1b"}))
    assert len(repo.history) == 1
    assert repo.get_manifest(m.id).manifest_no == "MF-1b"


def test_snapshot_round_trips_through_blob_store():
    storage = MemoryBlobStore()
    repo = ManifestRepository(storage)
    folder = repo.create_folder("January")
    repo.save_manifest(_manifest("MF-1", folder_id=folder.id))
    repo.update_global_settings(
        config=BillingConfig(parcel_slab1_rate=4), preferences=UserPreferences(theme="dark", scale=120)
    )

    stored = json.loads(storage.get(key=HISTORY_KEY))
    assert stored[0]["manifestNo"] == "MF-1"
    assert stored[0]["folderId"] == folder.id
    assert "isManualRate" in stored[0]["rows"][0]

    reloaded = ManifestRepository(storage)
    reloaded.load()
    assert [m.manifest_no for m in reloaded.history] == ["MF-1"]
    assert reloaded.folders[0].name == "January"
    assert reloaded.global_config.parcel_slab1_rate == 4
    assert reloaded.preferences.scale == 120


def test_corrupt_snapshot_loads_as_empty():
    storage = MemoryBlobStore()
    storage.set(key=HISTORY_KEY, body=b"{not json")
    storage.set(key=FOLDERS_KEY, body=b'[{"name": 3}]')
    repo = ManifestRepository(storage)
    repo.load()
    assert repo.history == []
    assert repo.folders == []


def test_recycle_bin_lifecycle(repo):
    m = repo.save_manifest(_manifest("MF-1"))
    repo.soft_delete(m.id)
    assert repo.history == []
    assert [x.id for x in repo.recycle_bin] == [m.id]
    assert repo.find_by_manifest_no("MF-1") is None

    repo.restore(m.id)
    assert repo.recycle_bin == []
    assert repo.get_manifest(m.id).manifest_no == "MF-1"

    repo.soft_delete(m.id)
    repo.permanent_delete(m.id)
    assert repo.recycle_bin == []
    with pytest.raises(NotFoundError):
        repo.permanent_delete(m.id)


def test_restore_does_not_recheck_duplicate_numbers(repo):
    old = repo.save_manifest(_manifest("MF-7"))
    repo.soft_delete(old.id)
    repo.save_manifest(_manifest("MF-7"))
    repo.restore(old.id)
    assert [m.manifest_no for m in repo.history] == ["MF-7", "MF-7"]


def test_empty_recycle_bin(repo):
    for no in ("A", "B"):
        repo.soft_delete(repo.save_manifest(_manifest(no)).id)
    assert repo.empty_recycle_bin() == 2
    assert repo.recycle_bin == []


def test_folders_group_manifests_and_delete_reparents_to_root(repo):
    folder = repo.create_folder("  Week 1 ")
    assert folder.name == "Week 1"
    inside = repo.save_manifest(_manifest("IN", folder_id=folder.id))
    outside = repo.save_manifest(_manifest("OUT"))

    assert [m.id for m in repo.list_manifests(folder.id)] == [inside.id]
    assert [m.id for m in repo.list_manifests()] == [outside.id]

    repo.rename_folder(folder.id, "Week 01")
    assert repo.get_folder(folder.id).name == "Week 01"

    repo.delete_folder(folder.id)
    assert repo.folders == []
    assert repo.get_manifest(inside.id).folder_id is None
    assert len(repo.list_manifests()) == 2


def test_move_manifest_checks_folder(repo):
    m = repo.save_manifest(_manifest("MF-1"))
    folder = repo.create_folder("Target")
    assert repo.move_manifest(m.id, folder.id).folder_id == folder.id
    assert repo.move_manifest(m.id, None).folder_id is None
    with pytest.raises(NotFoundError):
        repo.move_manifest(m.id, "nope")


def test_reconfigure_recomputes_every_row(repo):
    m = repo.save_manifest(_manifest("MF-1", weights=(5, 177)))
    assert m.total_amount == 15 + 297
    updated = repo.reconfigure_manifest(m.id, BillingConfig(parcel_slab1_rate=10))
    assert updated.rows[0].amount == 50
    assert updated.total_amount == 50 + 100 + 200 + 67
    assert updated.config.parcel_slab1_rate == 10


def test_global_config_change_leaves_saved_manifests_alone(repo):
    m = repo.save_manifest(_manifest("MF-1"))
    repo.update_global_settings(config=BillingConfig(parcel_slab1_rate=100))
    assert repo.get_manifest(m.id).total_amount == 15


def test_save_edited_manifest_recomputes_and_activates(repo):
    stale = BillingRow(weight=177, amount=1, breakdown="stale").model_dump()
    saved = save_edited_manifest(
        repo,
        ManifestSave(manifest_no="MF-9", manifest_date="2026-02-01", rows=[stale]),
    )
    assert saved.rows[0].amount == 297
    assert repo.active_manifest().id == saved.id


def test_write_failure_keeps_memory_state_and_tracks_key(monkeypatch):
    storage = MemoryBlobStore()
    repo = ManifestRepository(storage)

    def _fail(*, key, body):
        raise StorageWriteFailure(f"Could not write {key}")

    monkeypatch.setattr(storage, "set", _fail)
    m = repo.save_manifest(_manifest("MF-1"))
    repo.soft_delete(m.id)
    assert repo.unsynced_keys == {HISTORY_KEY, RECYCLE_BIN_KEY}
    assert [x.id for x in repo.recycle_bin] == [m.id]

    monkeypatch.undo()
    repo.empty_recycle_bin()
    assert repo.unsynced_keys == {HISTORY_KEY}


def _fail_first_reads(monkeypatch, storage, count: int = 1) -> None:
    real_get = storage.get
    remaining = {"n": count}

    def _flaky(*, key):
        if remaining["n"] > 0:
            remaining["n"] -= 1
            raise StorageError(f"Could not read {key}")
        return real_get(key=key)

    monkeypatch.setattr(storage, "get", _flaky)


def test_unreadable_storage_never_loads_as_empty(monkeypatch):
    storage = MemoryBlobStore()
    ManifestRepository(storage).save_manifest(_manifest("KEEP"))

    repo = ManifestRepository(storage)
    repo.load()
    _fail_first_reads(monkeypatch, storage)
    with pytest.raises(StorageError):
        repo.load()
    assert [m.manifest_no for m in repo.history] == ["KEEP"]


def test_failed_load_is_not_cached_by_get_repository(monkeypatch):
    import manifest_billing.modules.manifests.service as manifests_mod
    from manifest_billing.core.storage import get_storage

    storage = get_storage()
    ManifestRepository(storage).save_manifest(_manifest("KEEP"))
    _fail_first_reads(monkeypatch, storage)

    with pytest.raises(StorageError):
        manifests_mod.get_repository()
    assert manifests_mod._repository is None

    repo = manifests_mod.get_repository()
    assert [m.manifest_no for m in repo.history] == ["KEEP"]
    repo.save_manifest(_manifest("NEW"))

    reloaded = ManifestRepository(storage)
    reloaded.load()
    assert [m.manifest_no for m in reloaded.history] == ["NEW", "KEEP"]
