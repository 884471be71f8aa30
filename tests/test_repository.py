# tests/test_repository.py
from __future__ import annotations

import sqlite3

import pytest

from mes_ledger.domain import (
    LabelHistoryEntry,
    NgDetail,
    R0Label,
    Report,
    WorkOrder,
    WorkOrderStatus,
)
from mes_ledger.errors import (
    DuplicateRecordError,
    PersistenceUnavailable,
    RecordNotFoundError,
    StaleRecordError,
    ValidationError,
)
from mes_ledger.repository import (
    InMemoryRecordStore,
    Repository,
    RepositorySet,
    from_record,
    to_record,
)
from mes_ledger.services import MESService
from mes_ledger.storage import MESDatabase, SQLiteRecordStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRecordStore()
        return
    with MESDatabase(str(tmp_path / "store.sqlite3")) as db:
        yield db.store


@pytest.fixture
def orders(store) -> Repository[WorkOrder]:
    return Repository(store, "work_orders", WorkOrder, retry_delay=0)


def test_add_assigns_identity(orders):
    order = orders.add(WorkOrder(order_number="WO-1", quantity=5))
    assert order.id
    assert order.version == 1
    assert order.created_at is not None
    assert orders.get(order.id) == order


def test_update_is_compare_and_set(orders):
    order = orders.add(WorkOrder(order_number="WO-1", quantity=5))
    updated = orders.update(order, quantity=6)
    assert updated.version == 2
    assert updated.updated_at is not None

    with pytest.raises(StaleRecordError):
        orders.update(order, quantity=7)
    assert orders.get(order.id).quantity == 6


def test_patch_is_unconditional(orders):
    order = orders.add(WorkOrder(order_number="WO-1", quantity=5))
    orders.update(order, quantity=6)
    patched = orders.patch(order.id, priority="high")
    assert (patched.quantity, patched.priority, patched.version) == (6, "high", 3)


def test_patch_never_touches_reserved_fields(orders):
    order = orders.add(WorkOrder(order_number="WO-1", quantity=5))
    patched = orders.patch(order.id, id="other", version=99, created_at=None)
    assert patched.id == order.id
    assert patched.version == 2
    assert patched.created_at == order.created_at


def test_unknown_fields_are_rejected(orders):
    order = orders.add(WorkOrder(quantity=1))
    with pytest.raises(ValidationError):
        orders.patch(order.id, colour="red")


def test_list_is_newest_first(orders):
    first = orders.add(WorkOrder(order_number="WO-1"))
    second = orders.add(WorkOrder(order_number="WO-2"))
    third = orders.add(WorkOrder(order_number="WO-3"))
    assert [o.id for o in orders.list()] == [third.id, second.id, first.id]
    assert len(orders) == 3
    assert second.id in orders
    assert [o.order_number for o in orders.filter(order_number="WO-2")] == ["WO-2"]


def test_missing_records(orders):
    assert orders.find("missing") is None
    assert "missing" not in orders
    with pytest.raises(RecordNotFoundError):
        orders.get("missing")
    with pytest.raises(RecordNotFoundError):
        orders.patch("missing", priority="high")
    with pytest.raises(RecordNotFoundError):
        orders.remove("missing")


def test_duplicate_insert(orders):
    order = orders.add(WorkOrder(quantity=1))
    with pytest.raises(DuplicateRecordError):
        orders.add(order)


def test_remove(orders):
    order = orders.add(WorkOrder(quantity=1))
    orders.remove(order.id)
    assert orders.list() == []


# ----------------------------------------------------------------------
# Record codec
# ----------------------------------------------------------------------
def test_from_record_tolerates_legacy_rows():
    report = from_record(
        Report,
        {
            "id": "r1",
            "good_qty": "3",
            "ng_qty": 1.0,
            "has_abnormal": "TRUE",
            "start_time": "",
            "end_time": "2024-05-01T08:30:00Z",
            "legacy_column": "ignored",
        },
    )
    assert report.good_qty == 3
    assert report.ng_qty == 1
    assert report.has_abnormal is True
    assert report.start_time is None
    assert report.end_time.year == 2024
    assert report.end_time.tzinfo is not None
    assert report.abnormal_type == ""


def test_from_record_false_strings():
    assert from_record(Report, {"has_abnormal": "FALSE"}).has_abnormal is False


def test_from_record_decodes_nested_json_strings():
    detail = from_record(NgDetail, {"barcodes": '["E1", "E2"]'})
    assert detail.barcodes == ["E1", "E2"]

    label = from_record(
        R0Label,
        {"r0_code": "R0-1", "history": '[{"action": "write", "epc": "E1", "at": "2024-01-02"}]'},
    )
    assert label.history == [
        LabelHistoryEntry(at=label.history[0].at, action="write", epc="E1")
    ]
    assert label.history[0].at.day == 2


def test_from_record_keeps_legacy_status():
    order = from_record(WorkOrder, {"status": "pending", "due_date": "2024-06-30T00:00:00"})
    assert order.status == WorkOrderStatus.PENDING
    assert order.due_date.isoformat() == "2024-06-30"


def test_to_record_is_json_ready():
    label = R0Label(r0_code="R0-1", history=[LabelHistoryEntry(action="write", epc="E1")])
    record = to_record(label)
    assert record["history"] == [{"at": None, "action": "write", "epc": "E1", "note": ""}]
    assert from_record(R0Label, record) == label


def test_legacy_pending_order_is_promoted_by_dispatch(mes):
    mes.repositories.store.insert(
        "work_orders",
        {"id": "legacy", "order_number": "WO-OLD", "quantity": 4, "status": "pending"},
    )
    mes.create_dispatch("legacy", 4)
    assert mes.get_work_order("legacy").status == WorkOrderStatus.IN_PROGRESS


# ----------------------------------------------------------------------
# Persistence retries
# ----------------------------------------------------------------------
class FlakyStore(InMemoryRecordStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    def list(self, collection):
        self.calls += 1
        if self.calls <= self.failures:
            raise PersistenceUnavailable("database is locked")
        return super().list(collection)


def test_transient_outage_is_retried():
    store = FlakyStore(failures=2)
    orders = Repository(store, "work_orders", WorkOrder, retry_attempts=3, retry_delay=0)
    assert orders.list() == []
    assert store.calls == 3


def test_persistent_outage_surfaces():
    store = FlakyStore(failures=10)
    orders = Repository(store, "work_orders", WorkOrder, retry_attempts=3, retry_delay=0)
    with pytest.raises(PersistenceUnavailable):
        orders.list()
    assert store.calls == 3


def test_not_found_is_never_retried():
    class CountingStore(InMemoryRecordStore):
        gets = 0

        def get(self, collection, record_id):
            CountingStore.gets += 1
            return super().get(collection, record_id)

    orders = Repository(CountingStore(), "work_orders", WorkOrder, retry_delay=0)
    with pytest.raises(RecordNotFoundError):
        orders.get("missing")
    assert CountingStore.gets == 1


class FlakyInsertStore(InMemoryRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.attempted_ids = []

    def insert(self, collection, record):
        self.attempted_ids.append(record["id"])
        if len(self.attempted_ids) == 1:
            raise PersistenceUnavailable("database is locked")
        return super().insert(collection, record)


def test_retried_insert_keeps_its_id():
    store = FlakyInsertStore()
    orders = Repository(store, "work_orders", WorkOrder, retry_delay=0)
    order = orders.add(WorkOrder(quantity=1))
    assert store.attempted_ids == [order.id, order.id]
    assert len(orders) == 1


# ----------------------------------------------------------------------
# SQLite specifics
# ----------------------------------------------------------------------
def test_sqlite_data_survives_reopen(tmp_path, settings):
    path = str(tmp_path / "mes.sqlite3")
    with MESDatabase(path) as db:
        order = MESService(db.repositories, settings=settings).create_work_order(9)
    with MESDatabase(path) as db:
        reopened = MESService(db.repositories, settings=settings).get_work_order(order.id)
    assert reopened == order


def test_sqlite_rejects_odd_collection_names(sqlite_db):
    with pytest.raises(ValueError):
        sqlite_db.store.list("orders; DROP TABLE x")



class LockedCommitConnection:
    """Connection whose next commit after an INSERT fails as if the file were locked."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self.armed = False
        self._last_sql = ""

    def execute(self, sql, *args):
        self._last_sql = sql
        return self._connection.execute(sql, *args)

    def commit(self):
        if self.armed and self._last_sql.lstrip().startswith("INSERT"):
            self.armed = False
            raise sqlite3.OperationalError("database is locked")
        self._connection.commit()

    def __getattr__(self, name):
        return getattr(self._connection, name)


def test_failed_commit_is_rolled_back_before_retry(tmp_path, settings):
    raw = sqlite3.connect(str(tmp_path / "locked.sqlite3"), check_same_thread=False)
    connection = LockedCommitConnection(raw)
    mes = MESService(
        RepositorySet(SQLiteRecordStore(connection), retry_delay=0), settings=settings
    )
    order = mes.create_work_order(10)
    dispatch = mes.create_dispatch(order.id, 10)
    mes.create_report(dispatch.id, good_qty=1)

    connection.armed = True
    mes.create_report(dispatch.id, good_qty=3)

    assert not connection.armed
    assert len(mes.list_reports(dispatch_id=dispatch.id)) == 2
    assert mes.get_dispatch(dispatch.id).completed_qty == 4
    assert mes.get_work_order(order.id).completed_qty == 4
    raw.close()
