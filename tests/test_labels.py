# tests/test_labels.py
from __future__ import annotations

import pytest

from mes_ledger.domain import EPC_RECODE_CHANGE, EPC_RECODE_STATION, LabelHistoryEntry
from mes_ledger.errors import RecordNotFoundError, ValidationError


def test_create_label(mes):
    label = mes.create_label("R0-0001", current_epc="E200-1", regeneration_count=2)
    assert label.r0_code == "R0-0001"
    assert label.regeneration_count == 2
    assert label.history == []
    assert mes.label_registry.find_by_code("R0-0001").id == label.id


def test_create_label_validation(mes):
    mes.create_label("R0-0001")
    with pytest.raises(ValidationError):
        mes.create_label("R0-0001")
    with pytest.raises(ValidationError):
        mes.create_label("")
    with pytest.raises(ValidationError):
        mes.create_label("R0-0002", colour="blue")


def test_update_appends_history(mes):
    label = mes.create_label("R0-0001", current_epc="E200-1")
    updated = mes.update_label(
        label.id,
        current_epc="E200-2",
        history_entry=LabelHistoryEntry(action="rewrite", epc="E200-2"),
    )
    assert updated.current_epc == "E200-2"
    assert len(updated.history) == 1
    assert updated.history[0].action == "rewrite"
    assert updated.history[0].at is not None

    again = mes.update_label(label.id, history_entry=LabelHistoryEntry(action="inspect"))
    assert [entry.action for entry in again.history] == ["rewrite", "inspect"]


def test_sync_upserts_by_code(mes):
    existing = mes.create_label("R0-0001", customer_name="Fab 12")
    result = mes.sync_labels(
        [
            {"r0_code": "R0-0001", "regeneration_count": "3", "regeneration_status": "done"},
            {
                "r0_code": "R0-0002",
                "current_epc": "E200-9",
                "history": '[{"action": "write", "epc": "E200-9"}]',
            },
        ]
    )
    assert (result.created, result.updated, result.total) == (1, 1, 2)

    updated = mes.label_registry.find_by_code("R0-0001")
    assert updated.id == existing.id
    assert updated.regeneration_count == 3
    assert updated.customer_name == "Fab 12"

    created = mes.label_registry.find_by_code("R0-0002")
    assert created.history[0].epc == "E200-9"
    assert len(mes.list_labels()) == 2


def test_sync_requires_code(mes):
    with pytest.raises(ValidationError):
        mes.sync_labels([{"current_epc": "E1"}])


# ----------------------------------------------------------------------
# EPC re-code history
# ----------------------------------------------------------------------
def test_record_epc_change_enriches_from_work_order(mes, work_order):
    entry = mes.record_epc_change(
        work_order.id, "E200-NEW", "E200-OLD", operator_name="Lin", notes="regen 1"
    )
    assert (entry.old_epc, entry.new_epc) == ("E200-OLD", "E200-NEW")
    assert entry.order_number == work_order.order_number
    assert entry.product_model == "R0-300"
    assert entry.station_name == EPC_RECODE_STATION
    assert entry.change_type == EPC_RECODE_CHANGE
    assert entry.created_at is not None
    assert mes.list_epc_history(work_order_id=work_order.id) == [entry]


def test_record_epc_change_validation(mes, work_order):
    with pytest.raises(ValidationError):
        mes.record_epc_change(work_order.id, "", "E200-OLD")
    with pytest.raises(ValidationError):
        mes.record_epc_change(work_order.id, "E200-1", "E200-1")
    with pytest.raises(RecordNotFoundError):
        mes.record_epc_change("missing", "E200-2")
    assert mes.list_epc_history() == []


def test_find_epc_last_record(mes, work_order):
    rework = mes.create_work_order(
        4, order_type="rework", source_work_order_id=work_order.id
    )
    mes.record_epc_change(work_order.id, "E200-2", "E200-1")
    latest = mes.record_epc_change(rework.id, "E200-2", "E200-9")

    assert mes.find_epc_last_record("E200-2").id == latest.id
    assert mes.find_epc_last_record("E200-1") is None
    assert len(mes.list_epc_history()) == 2
    assert len(mes.snapshot().epc_history) == 2
