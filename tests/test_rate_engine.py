from __future__ import annotations

import math

import pytest

from manifest_billing.modules.billing.schemas import BillingConfig, BillingRow, ItemType
from manifest_billing.modules.billing.service import (
    apply_type,
    billable_weight,
    compute_parcel,
    compute_row,
    delete_row,
    new_row,
    summarize_rows,
    total_amount,
    update_row,
)

CFG = BillingConfig(parcel_slab1_rate=3, parcel_slab2_rate=2, parcel_slab3_rate=1, document_rate=5)


def test_177kg_parcel_spans_all_three_slabs():
    charge = compute_parcel(177, CFG)
    assert (charge.slab1_weight, charge.slab2_weight, charge.slab3_weight) == (10, 100, 67)
    assert charge.total == 297
    assert charge.breakdown == "10kg*3 + 100kg*2 + 67kg*1"


def test_fractional_weight_rounds_up_into_slab1():
    charge = compute_parcel(5.14, CFG)
    assert billable_weight(5.14) == 6
    assert charge.slab1_weight == 6
    assert charge.total == 6 * 3
    assert charge.breakdown == "6kg*3"


@pytest.mark.parametrize("weight", [0, -4, -0.5])
def test_non_positive_weight_bills_nothing(weight):
    charge = compute_parcel(weight, CFG)
    assert charge.total == 0
    assert charge.breakdown == ""
    assert charge.slab1_weight + charge.slab2_weight + charge.slab3_weight == 0


@pytest.mark.parametrize("weight", [0.2, 1, 9.99, 10, 10.01, 55, 110, 110.5, 250, 1234.5])
def test_slab_identities(weight):
    charge = compute_parcel(weight, CFG)
    assert charge.total == (
        charge.slab1_weight * CFG.parcel_slab1_rate
        + charge.slab2_weight * CFG.parcel_slab2_rate
        + charge.slab3_weight * CFG.parcel_slab3_rate
    )
    assert charge.slab1_weight + charge.slab2_weight + charge.slab3_weight == math.ceil(max(weight, 0))


def test_parcel_total_is_monotonic_in_weight():
    cfg = BillingConfig(parcel_slab1_rate=7, parcel_slab2_rate=0, parcel_slab3_rate=4.5, document_rate=1)
    totals = [compute_parcel(w / 4, cfg).total for w in range(0, 600)]
    assert totals == sorted(totals)


def test_rates_render_without_trailing_zero():
    cfg = BillingConfig(parcel_slab1_rate=2.5, parcel_slab2_rate=2, parcel_slab3_rate=1, document_rate=5)
    assert compute_parcel(12, cfg).breakdown == "10kg*2.5 + 2kg*2"


def test_slab_row_back_computes_display_rate():
    row = compute_row(BillingRow(weight=177), CFG)
    assert row.amount == 297
    assert row.rate == pytest.approx(297 / 177)
    assert row.breakdown == "10kg*3 + 100kg*2 + 67kg*1"


def test_zero_weight_slab_row_shows_slab1_rate():
    row = compute_row(BillingRow(weight=0), CFG)
    assert row.amount == 0
    assert row.rate == 3
    assert row.breakdown == ""


def test_manual_parcel_rate_uses_billable_weight():
    row = compute_row(BillingRow(weight=4.2, rate=12, is_manual_rate=True), CFG)
    assert row.amount == 60
    assert row.rate == 12
    assert row.breakdown == "5kg * 12 (Manual)"


def test_document_flat_rate_and_manual_override():
    doc = compute_row(BillingRow(type=ItemType.DOCUMENT, weight=3, rate=99), CFG)
    assert doc.amount == 5
    assert doc.rate == 5
    assert doc.breakdown == "Flat: 5"

    manual = compute_row(BillingRow(type=ItemType.DOCUMENT, rate=8, is_manual_rate=True), CFG)
    assert manual.amount == 8
    assert manual.breakdown == "Flat: 8"


@pytest.mark.parametrize(
    "row",
    [
        BillingRow(weight=177),
        BillingRow(weight=3.3, rate=9, is_manual_rate=True),
        BillingRow(type=ItemType.DOCUMENT, weight=1),
        BillingRow(type=ItemType.DOCUMENT, rate=11, is_manual_rate=True),
        BillingRow(weight=0),
    ],
)
def test_compute_row_is_idempotent(row):
    once = compute_row(row, CFG)
    assert compute_row(once, CFG) == once


def test_type_switch_keeps_manual_flag_and_rate():
    row = compute_row(BillingRow(weight=12, rate=4, is_manual_rate=True), CFG)
    doc = apply_type([row], ItemType.DOCUMENT, CFG)[0]
    assert doc.is_manual_rate is True
    assert doc.rate == 4
    assert doc.amount == 4

    back = apply_type([doc], ItemType.PARCEL, CFG)[0]
    assert back.amount == 48
    assert back.breakdown == "12kg * 4 (Manual)"


def test_row_editing_helpers():
    rows = new_row([], CFG)
    rows = new_row(rows, CFG)
    assert [r.sl_no for r in rows] == [1, 2]

    first, second = rows
    rows = update_row(rows, first.id, CFG, weight="10+2", serial_no="AWB-1")
    assert rows[0].weight == 12
    assert rows[0].serial_no == "AWB-1"
    assert rows[0].amount == 10 * 3 + 2 * 2

    rows = update_row(rows, second.id, CFG, rate="2*(3+4)", is_manual_rate=True, weight=1)
    assert rows[1].amount == 14
    assert total_amount(rows) == 34 + 14

    rows = delete_row(rows, first.id)
    assert len(rows) == 1
    assert rows[0].id == second.id
    assert rows[0].sl_no == 1


def test_update_row_unknown_id_raises():
    from manifest_billing.core.errors import NotFoundError

    with pytest.raises(NotFoundError):
        update_row([], "missing", CFG, weight=1)


def test_summary_splits_light_and_heavy_parcels():
    rows = [
        compute_row(BillingRow(weight=5.14), CFG),
        compute_row(BillingRow(weight=177), CFG),
        compute_row(BillingRow(weight=10), CFG),
        compute_row(BillingRow(type=ItemType.DOCUMENT), CFG),
    ]
    s = summarize_rows(rows, CFG)
    assert s.parcel_count == 3
    assert s.parcel_count_s1 == 2
    assert s.parcel_count_s2_plus == 1
    assert s.light_parcels_total_weight == 16
    assert s.heavy_parcel_weights_list == [177]
    assert s.heavy_parcels_total_weight == 177
    assert (s.slab1_weight, s.slab2_weight, s.slab3_weight) == (26, 100, 67)
    assert s.total_billable_weight == 193
    assert s.doc_count == 1
    assert s.doc_total == 5
    assert s.total_amount == 18 + 297 + 30 + 5


@pytest.mark.parametrize("weight", [math.inf, -math.inf, math.nan])
def test_non_finite_weight_bills_nothing(weight):
    assert billable_weight(weight) == 0
    charge = compute_parcel(weight, CFG)
    assert charge.total == 0
    assert charge.breakdown == ""


def test_non_finite_numbers_become_zero():
    assert BillingRow(weight=math.inf, rate=-math.inf).weight == 0
    assert BillingRow(weight="inf").weight == 0
    assert BillingConfig(parcel_slab1_rate=math.nan).parcel_slab1_rate == 0


def test_update_row_accepts_wire_names_and_rejects_bad_values():
    from manifest_billing.core.errors import ValidationError

    rows = new_row([], CFG)
    row_id = rows[0].id
    rows = update_row(rows, row_id, CFG, serialNo="AWB-7", isManualRate=True, rate="4", weight=3)
    assert rows[0].serial_no == "AWB-7"
    assert rows[0].amount == 12
    assert rows[0].breakdown == "3kg * 4 (Manual)"

    edited = update_row(rows, row_id, CFG, amount=999, id="other")
    assert edited[0].id == row_id
    assert edited[0].amount == 12

    with pytest.raises(ValidationError):
        update_row(rows, row_id, CFG, type="Crate")
    assert update_row(rows, row_id, CFG, weight=math.inf)[0].weight == 0
