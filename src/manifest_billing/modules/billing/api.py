from __future__ import annotations

from fastapi import APIRouter, Depends

from manifest_billing.api.deps import get_repository
from manifest_billing.modules.billing.expressions import evaluate
from manifest_billing.modules.billing.schemas import (
    BillingConfig,
    BillingRow,
    EvaluateIn,
    EvaluateOut,
    RowsIn,
    RowsOut,
    RowTypeIn,
    RowUpdateIn,
    SlabSummary,
)
from manifest_billing.modules.billing.service import (
    apply_type,
    delete_row,
    new_row,
    recalculate_rows,
    summarize_rows,
    total_amount,
    update_row,
)
from manifest_billing.modules.manifests.service import ManifestRepository

router = APIRouter(tags=["billing"])


def _config(payload: RowsIn, repo: ManifestRepository) -> BillingConfig:
    return payload.config or repo.global_config


def _rows_out(rows: list[BillingRow]) -> RowsOut:
    return RowsOut(rows=rows, total_amount=total_amount(rows))


@router.post("/billing/evaluate", response_model=EvaluateOut)
def evaluate_endpoint(payload: EvaluateIn) -> EvaluateOut:
    return EvaluateOut(expression=payload.expression, value=evaluate(payload.expression))


@router.post("/billing/rows/compute", response_model=RowsOut)
def compute_rows_endpoint(
    payload: RowsIn,
    repo: ManifestRepository = Depends(get_repository),
) -> RowsOut:
    return _rows_out(recalculate_rows(payload.rows, _config(payload, repo)))


@router.post("/billing/rows/add", response_model=RowsOut)
def add_row_endpoint(
    payload: RowsIn,
    repo: ManifestRepository = Depends(get_repository),
) -> RowsOut:
    config = _config(payload, repo)
    return _rows_out(new_row(recalculate_rows(payload.rows, config), config))


@router.post("/billing/rows/type", response_model=RowsOut)
def apply_type_endpoint(
    payload: RowTypeIn,
    repo: ManifestRepository = Depends(get_repository),
) -> RowsOut:
    return _rows_out(apply_type(payload.rows, payload.type, _config(payload, repo)))


@router.post("/billing/rows/{row_id}/update", response_model=RowsOut)
def update_row_endpoint(
    row_id: str,
    payload: RowUpdateIn,
    repo: ManifestRepository = Depends(get_repository),
) -> RowsOut:
    config = _config(payload, repo)
    rows = recalculate_rows(payload.rows, config)
    return _rows_out(update_row(rows, row_id, config, **payload.changes))


@router.post("/billing/rows/{row_id}/delete", response_model=RowsOut)
def delete_row_endpoint(
    row_id: str,
    payload: RowsIn,
    repo: ManifestRepository = Depends(get_repository),
) -> RowsOut:
    config = _config(payload, repo)
    return _rows_out(recalculate_rows(delete_row(payload.rows, row_id), config))


@router.post("/billing/summary", response_model=SlabSummary)
def summary_endpoint(
    payload: RowsIn,
    repo: ManifestRepository = Depends(get_repository),
) -> SlabSummary:
    config = _config(payload, repo)
    return summarize_rows(recalculate_rows(payload.rows, config), config)
