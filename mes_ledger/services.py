"""Service facade exposing the MES use-cases to clients."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Sequence, TypeVar

from .cache import ReadCache
from .config import Settings, get_settings
from .domain import (
    AoiInspection,
    Dispatch,
    DispatchStatus,
    EpcHistory,
    InventoryItem,
    Movement,
    NgDetail,
    OutgassingTest,
    R0Label,
    Report,
    StockTake,
    StockTakeDetail,
    WorkOrder,
    WorkOrderStatus,
)
from .labels import EpcHistoryLog, LabelRegistry, SyncResult
from .locks import KeyedLock
from .production import DispatchLedger, ReportRecorder, ReworkLineage, WorkOrderLedger
from .quality import (
    DefectAggregator,
    ImportSummary,
    SamplingPlanner,
    SamplingSummary,
    parse_aoi_csv,
)
from .repository import RepositorySet
from .warehouse import InventoryLedger, LocationSummary, StockTakeReconciler, StockTakeSummary

F = TypeVar("F", bound=Callable[..., Any])


def _mutation(method: F) -> F:
    """Drop the snapshot cache after a write, including a partially failed one."""

    @functools.wraps(method)
    def wrapper(self: "MESService", *args: Any, **kwargs: Any) -> Any:
        try:
            return method(self, *args, **kwargs)
        finally:
            self.snapshot_cache.invalidate()

    return wrapper  # type: ignore[return-value]


@dataclass(slots=True)
class Snapshot:
    """Active records for dashboard style reads."""

    work_orders: List[WorkOrder] = field(default_factory=list)
    dispatches: List[Dispatch] = field(default_factory=list)
    reports: List[Report] = field(default_factory=list)
    outgassing_tests: List[OutgassingTest] = field(default_factory=list)
    aoi_inspections: List[AoiInspection] = field(default_factory=list)
    labels: List[R0Label] = field(default_factory=list)
    epc_history: List[EpcHistory] = field(default_factory=list)


class MESService:
    """Facade that wires the ledgers onto one set of repositories."""

    def __init__(
        self,
        repositories: Optional[RepositorySet] = None,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repositories = repositories or RepositorySet(
            retry_attempts=self.settings.persistence_retry_attempts,
            retry_delay=self.settings.persistence_retry_delay_seconds,
        )
        repos = self.repositories
        offset = self.settings.numbering_utc_offset_hours
        retries = self.settings.conflict_retry_attempts

        self.work_order_locks = KeyedLock()
        self.lineage = ReworkLineage(repos.work_orders, rework_limit=self.settings.rework_limit)
        self.work_order_ledger = WorkOrderLedger(
            repos.work_orders, self.lineage, utc_offset_hours=offset
        )
        self.dispatch_ledger = DispatchLedger(
            repos.work_orders,
            repos.dispatches,
            conflict_retry_attempts=retries,
            utc_offset_hours=offset,
            work_order_locks=self.work_order_locks,
        )
        self.report_recorder = ReportRecorder(
            repos.work_orders,
            repos.dispatches,
            repos.reports,
            repos.ng_details,
            conflict_retry_attempts=retries,
            utc_offset_hours=offset,
            work_order_locks=self.work_order_locks,
        )
        self.sampling_planner = SamplingPlanner(
            repos.work_orders,
            repos.outgassing_tests,
            sample_rate=self.settings.outgassing_sample_rate,
            utc_offset_hours=offset,
        )
        self.defect_aggregator = DefectAggregator(
            repos.work_orders, repos.aoi_inspections, utc_offset_hours=offset
        )
        self.inventory_ledger = InventoryLedger(
            repos.work_orders, repos.inventory, repos.movements, utc_offset_hours=offset
        )
        self.stock_take_reconciler = StockTakeReconciler(
            self.inventory_ledger,
            repos.inventory,
            repos.stock_takes,
            repos.stock_take_details,
            utc_offset_hours=offset,
        )
        self.label_registry = LabelRegistry(repos.labels)
        self.epc_history_log = EpcHistoryLog(repos.work_orders, repos.epc_history)
        self.snapshot_cache: ReadCache[Snapshot] = ReadCache(
            self._load_snapshot, ttl_seconds=self.settings.cache_ttl_seconds
        )

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------
    def _load_snapshot(self) -> Snapshot:
        repos = self.repositories
        return Snapshot(
            work_orders=[
                order
                for order in repos.work_orders.list()
                if order.status != WorkOrderStatus.CANCELLED
            ],
            dispatches=[
                dispatch
                for dispatch in repos.dispatches.list()
                if dispatch.status != DispatchStatus.CANCELLED
            ],
            reports=repos.reports.list(),
            outgassing_tests=repos.outgassing_tests.list(),
            aoi_inspections=repos.aoi_inspections.list(),
            labels=repos.labels.list(),
            epc_history=repos.epc_history.list(),
        )

    def snapshot(self) -> Snapshot:
        return self.snapshot_cache.get()

    def clear_cache(self) -> None:
        self.snapshot_cache.invalidate()

    # ------------------------------------------------------------------
    # Work orders
    # ------------------------------------------------------------------
    @_mutation
    def create_work_order(self, quantity: int, **spec: Any) -> WorkOrder:
        return self.work_order_ledger.create_work_order(quantity, **spec)

    @_mutation
    def update_work_order(self, work_order_id: str, **changes: Any) -> WorkOrder:
        return self.work_order_ledger.update_work_order(work_order_id, **changes)

    @_mutation
    def delete_work_order(self, work_order_id: str) -> WorkOrder:
        return self.work_order_ledger.delete_work_order(work_order_id)

    @_mutation
    def reconcile_work_order(self, work_order_id: str) -> WorkOrder:
        return self.report_recorder.reconcile(work_order_id)

    def get_work_order(self, work_order_id: str) -> WorkOrder:
        return self.work_order_ledger.get_work_order(work_order_id)

    def list_work_orders(self, *, include_cancelled: bool = False) -> List[WorkOrder]:
        return self.work_order_ledger.list_work_orders(include_cancelled=include_cancelled)

    # ------------------------------------------------------------------
    # Dispatches
    # ------------------------------------------------------------------
    @_mutation
    def create_dispatch(self, work_order_id: str, quantity: int, **spec: Any) -> Dispatch:
        return self.dispatch_ledger.create_dispatch(work_order_id, quantity, **spec)

    @_mutation
    def start_dispatch(self, dispatch_id: str) -> Dispatch:
        return self.dispatch_ledger.start_dispatch(dispatch_id)

    @_mutation
    def complete_dispatch(self, dispatch_id: str) -> Dispatch:
        return self.dispatch_ledger.complete_dispatch(dispatch_id)

    @_mutation
    def update_dispatch(self, dispatch_id: str, **changes: Any) -> Dispatch:
        return self.dispatch_ledger.update_dispatch(dispatch_id, **changes)

    @_mutation
    def delete_dispatch(self, dispatch_id: str) -> Dispatch:
        return self.dispatch_ledger.delete_dispatch(dispatch_id)

    def get_dispatch(self, dispatch_id: str) -> Dispatch:
        return self.dispatch_ledger.get_dispatch(dispatch_id)

    def list_dispatches(
        self, *, work_order_id: Optional[str] = None, include_cancelled: bool = False
    ) -> List[Dispatch]:
        return self.dispatch_ledger.list_dispatches(
            work_order_id=work_order_id, include_cancelled=include_cancelled
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    @_mutation
    def create_report(
        self, dispatch_id: str, good_qty: int = 0, ng_qty: int = 0, **spec: Any
    ) -> Report:
        return self.report_recorder.create_report(dispatch_id, good_qty, ng_qty, **spec)

    def list_reports(
        self, *, work_order_id: Optional[str] = None, dispatch_id: Optional[str] = None
    ) -> List[Report]:
        return self.report_recorder.list_reports(
            work_order_id=work_order_id, dispatch_id=dispatch_id
        )

    def get_ng_details_by_report(self, report_id: str) -> List[NgDetail]:
        return self.report_recorder.get_ng_details_by_report(report_id)

    # ------------------------------------------------------------------
    # Quality
    # ------------------------------------------------------------------
    def get_outgassing_sample_info(self, work_order_id: str) -> SamplingSummary:
        return self.sampling_planner.get_outgassing_sample_info(work_order_id)

    @_mutation
    def create_outgassing_test(
        self, work_order_id: str, result: Any, **spec: Any
    ) -> OutgassingTest:
        return self.sampling_planner.create_outgassing_test(work_order_id, result, **spec)

    def list_outgassing_tests(self, *, work_order_id: Optional[str] = None) -> List[OutgassingTest]:
        return self.sampling_planner.list_outgassing_tests(work_order_id=work_order_id)

    @_mutation
    def create_aoi_inspection(
        self, work_order_id: str, rfid_code: str, result: Any, **spec: Any
    ) -> AoiInspection:
        return self.defect_aggregator.create_aoi_inspection(
            work_order_id, rfid_code, result, **spec
        )

    @_mutation
    def import_aoi_csv(
        self,
        work_order_id: str,
        rows: Sequence[Mapping[str, Any]],
        operator_name: str = "",
    ) -> ImportSummary:
        return self.defect_aggregator.import_aoi_csv(work_order_id, rows, operator_name)

    def import_aoi_csv_text(
        self, work_order_id: str, text: str, operator_name: str = ""
    ) -> ImportSummary:
        return self.import_aoi_csv(work_order_id, parse_aoi_csv(text), operator_name)

    def list_aoi_inspections(self, *, work_order_id: Optional[str] = None) -> List[AoiInspection]:
        return self.defect_aggregator.list_aoi_inspections(work_order_id=work_order_id)

    # ------------------------------------------------------------------
    # Warehouse
    # ------------------------------------------------------------------
    @_mutation
    def wms_inbound(
        self,
        location_code: str,
        work_order_id: str = "",
        quantity: int = 1,
        barcode: str = "",
        operator_name: str = "",
        **spec: Any,
    ) -> InventoryItem:
        return self.inventory_ledger.inbound(
            location_code, work_order_id, quantity, barcode, operator_name, **spec
        )

    @_mutation
    def wms_outbound(
        self, item_id: str, operator_name: str = "", reason: str = "Outbound"
    ) -> Movement:
        return self.inventory_ledger.outbound(item_id, operator_name, reason)

    @_mutation
    def wms_transfer(
        self,
        item_id: str,
        to_location: str,
        operator_name: str = "",
        reason: str = "Transfer",
    ) -> Movement:
        return self.inventory_ledger.transfer(item_id, to_location, operator_name, reason)

    def list_inventory(self, *, location_code: Optional[str] = None) -> List[InventoryItem]:
        return self.inventory_ledger.list_inventory(location_code=location_code)

    def list_movements(self, **criteria: Any) -> List[Movement]:
        return self.inventory_ledger.list_movements(**criteria)

    def location_summary(
        self, location_codes: Optional[Sequence[str]] = None
    ) -> List[LocationSummary]:
        return self.inventory_ledger.location_summary(location_codes)

    @_mutation
    def create_stock_take(
        self,
        location_code: str,
        operator_name: str,
        counted_items: Sequence[Any],
        **spec: Any,
    ) -> StockTakeSummary:
        return self.stock_take_reconciler.create_stock_take(
            location_code, operator_name, counted_items, **spec
        )

    def list_stock_takes(self, *, location_code: Optional[str] = None) -> List[StockTake]:
        return self.stock_take_reconciler.list_stock_takes(location_code=location_code)

    def get_stock_take_details(self, stock_take_id: str) -> List[StockTakeDetail]:
        return self.stock_take_reconciler.get_stock_take_details(stock_take_id)

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------
    def list_labels(self) -> List[R0Label]:
        return self.label_registry.list_labels()

    @_mutation
    def create_label(self, r0_code: str, **spec: Any) -> R0Label:
        return self.label_registry.create_label(r0_code, **spec)

    @_mutation
    def update_label(self, label_id: str, **changes: Any) -> R0Label:
        return self.label_registry.update_label(label_id, **changes)

    @_mutation
    def sync_labels(self, labels: Sequence[Mapping[str, Any]]) -> SyncResult:
        return self.label_registry.sync_labels(labels)

    @_mutation
    def record_epc_change(
        self, work_order_id: str, new_epc: str, old_epc: str = "", **spec: Any
    ) -> EpcHistory:
        return self.epc_history_log.record_epc_change(work_order_id, new_epc, old_epc, **spec)

    def list_epc_history(self, *, work_order_id: Optional[str] = None) -> List[EpcHistory]:
        return self.epc_history_log.list_epc_history(work_order_id=work_order_id)

    def find_epc_last_record(self, epc: str) -> Optional[EpcHistory]:
        return self.epc_history_log.find_last_record(epc)


__all__ = ["MESService", "Snapshot"]
