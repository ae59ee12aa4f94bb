from __future__ import annotations

import json

import pytest

from manifest_billing.core.archive import pack, unpack
from manifest_billing.core.errors import ValidationError
from manifest_billing.core.storage import MemoryBlobStore
from manifest_billing.modules.imports.schemas import ItemStatus
from manifest_billing.modules.imports.service import FOLDER_INFO_NAME, ImportService
from manifest_billing.modules.manifests.service import ManifestRepository


def _seed(repo: ManifestRepository) -> str:
    importer = ImportService(repo)
    folder = repo.create_folder("March")
    importer.bulk_import(
        [
            ("a.json", json.dumps({"manifestNo": "MF/1", "rows": [{"weight": 177}]}).encode()),
            ("b.json", json.dumps({"manifestNo": "mf 1", "rows": [{"weight": 3}]}).encode()),
        ],
        folder_id=folder.id,
    )
    return folder.id


def test_folder_export_then_import_into_fresh_repository(repo):
    folder_id = _seed(repo)
    filename, body = ImportService(repo).export_folder_archive(folder_id)
    assert filename == "March_export.zip"

    entries = dict(unpack(body))
    assert set(entries) == {FOLDER_INFO_NAME, "mf_1.json", "mf_1_2.json"}
    meta = json.loads(entries[FOLDER_INFO_NAME])
    assert meta["folderName"] == "March"
    assert meta["totalManifests"] == 2
    assert meta["version"] == "2.0"

    other = ManifestRepository(MemoryBlobStore())
    result = ImportService(other).import_folder_archive("renamed.zip", body)

    assert [f.name for f in other.folders] == ["March"]
    assert result.folder_id == other.folders[0].id
    assert {m.manifest_no for m in other.list_manifests(result.folder_id)} == {"MF/1", "mf 1"}
    assert sum(m.total_amount for m in other.history) == 297 + 9


def test_archive_name_used_when_folder_info_missing(repo):
    body = pack([("x.json", json.dumps({"manifestNo": "Z-1", "rows": []}).encode())])
    result = ImportService(repo).import_folder_archive("Weekly.ZIP", body)
    assert repo.get_folder(result.folder_id).name == "Weekly"


def test_archive_skips_duplicates_and_junk(repo):
    importer = ImportService(repo)
    importer.import_candidate({"manifestNo": "DUP", "rows": []})
    body = pack(
        [
            ("__MACOSX/._dup.json", b"junk"),
            (".hidden.json", b"{}"),
            ("notes.txt", b"ignored"),
            ("dup.json", json.dumps({"manifestNo": "DUP", "rows": []}).encode()),
            ("nested/new.json", json.dumps({"manifestNo": "NEW", "rows": []}).encode()),
        ]
    )
    result = importer.import_folder_archive("batch.zip", body)
    statuses = {r.file_name: r.status for r in result.results}
    assert statuses == {"dup.json": ItemStatus.WARNING, "new.json": ItemStatus.SUCCESS}
    assert [m.manifest_no for m in result.imported] == ["NEW"]


def test_archive_with_nothing_importable_creates_no_folder(repo):
    body = pack([("bad.json", b"[1, 2]")])
    result = ImportService(repo).import_folder_archive("empty.zip", body)
    assert result.folder_id is None
    assert repo.folders == []
    assert result.results[0].status == ItemStatus.ERROR


def test_invalid_zip_is_rejected(repo):
    with pytest.raises(ValidationError):
        ImportService(repo).import_folder_archive("x.zip", b"not a zip")


def test_exporting_empty_folder_fails(repo):
    folder = repo.create_folder("Nothing")
    with pytest.raises(ValidationError):
        ImportService(repo).export_folder_archive(folder.id)
