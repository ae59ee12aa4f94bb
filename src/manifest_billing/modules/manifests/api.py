from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from manifest_billing.api.deps import get_repository
from manifest_billing.modules.billing.schemas import BillingConfig
from manifest_billing.modules.manifests.schemas import (
    Folder,
    FolderCreate,
    FolderRename,
    GlobalSettings,
    Manifest,
    ManifestMove,
    ManifestSave,
)
from manifest_billing.modules.manifests.service import ManifestRepository, save_edited_manifest

router = APIRouter(tags=["manifests"])


@router.get("/manifests", response_model=list[Manifest])
def list_manifests_endpoint(
    folder_id: str | None = None,
    repo: ManifestRepository = Depends(get_repository),
) -> list[Manifest]:
    return repo.list_manifests(folder_id)


@router.post("/manifests", response_model=Manifest)
def save_manifest_endpoint(
    payload: ManifestSave,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    return save_edited_manifest(repo, payload)


@router.get("/manifests/active", response_model=Manifest | None)
def active_manifest_endpoint(repo: ManifestRepository = Depends(get_repository)) -> Manifest | None:
    return repo.active_manifest()


@router.get("/manifests/{manifest_id}", response_model=Manifest)
def get_manifest_endpoint(
    manifest_id: str,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    return repo.get_manifest(manifest_id)


@router.post("/manifests/{manifest_id}/activate", response_model=Manifest)
def activate_manifest_endpoint(
    manifest_id: str,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    repo.set_active(manifest_id)
    return repo.get_manifest(manifest_id)


@router.put("/manifests/{manifest_id}/config", response_model=Manifest)
def reconfigure_manifest_endpoint(
    manifest_id: str,
    payload: BillingConfig,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    return repo.reconfigure_manifest(manifest_id, payload)


@router.post("/manifests/{manifest_id}/move", response_model=Manifest)
def move_manifest_endpoint(
    manifest_id: str,
    payload: ManifestMove,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    return repo.move_manifest(manifest_id, payload.folder_id)


@router.delete("/manifests/{manifest_id}", response_model=Manifest)
def soft_delete_manifest_endpoint(
    manifest_id: str,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    return repo.soft_delete(manifest_id)


@router.get("/recycle-bin", response_model=list[Manifest])
def list_recycle_bin_endpoint(repo: ManifestRepository = Depends(get_repository)) -> list[Manifest]:
    return repo.recycle_bin


@router.post("/recycle-bin/{manifest_id}/restore", response_model=Manifest)
def restore_manifest_endpoint(
    manifest_id: str,
    repo: ManifestRepository = Depends(get_repository),
) -> Manifest:
    return repo.restore(manifest_id)


@router.delete("/recycle-bin/{manifest_id}", status_code=status.HTTP_204_NO_CONTENT)
def permanent_delete_endpoint(
    manifest_id: str,
    repo: ManifestRepository = Depends(get_repository),
) -> Response:
    repo.permanent_delete(manifest_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/recycle-bin")
def empty_recycle_bin_endpoint(repo: ManifestRepository = Depends(get_repository)) -> dict:
    return {"purged": repo.empty_recycle_bin()}


@router.get("/folders", response_model=list[Folder])
def list_folders_endpoint(repo: ManifestRepository = Depends(get_repository)) -> list[Folder]:
    return repo.folders


@router.post("/folders", response_model=Folder)
def create_folder_endpoint(
    payload: FolderCreate,
    repo: ManifestRepository = Depends(get_repository),
) -> Folder:
    return repo.create_folder(payload.name)


@router.patch("/folders/{folder_id}", response_model=Folder)
def rename_folder_endpoint(
    folder_id: str,
    payload: FolderRename,
    repo: ManifestRepository = Depends(get_repository),
) -> Folder:
    return repo.rename_folder(folder_id, payload.name)


@router.delete("/folders/{folder_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_folder_endpoint(
    folder_id: str,
    repo: ManifestRepository = Depends(get_repository),
) -> Response:
    repo.delete_folder(folder_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/settings", response_model=GlobalSettings)
def get_settings_endpoint(repo: ManifestRepository = Depends(get_repository)) -> GlobalSettings:
    return GlobalSettings(config=repo.global_config, preferences=repo.preferences)


@router.put("/settings", response_model=GlobalSettings)
def update_settings_endpoint(
    payload: GlobalSettings,
    repo: ManifestRepository = Depends(get_repository),
) -> GlobalSettings:
    repo.update_global_settings(config=payload.config, preferences=payload.preferences)
    return GlobalSettings(config=repo.global_config, preferences=repo.preferences)
