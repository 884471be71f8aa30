"""Core data structures for production tracking and the warehouse ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

EXTERNAL_LOCATION = "EXTERNAL"

# Station and change type stamped on every EPC re-code of a regenerated unit.
EPC_RECODE_STATION = "RFID re-code"
EPC_RECODE_CHANGE = "regeneration_recode"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderType(str, Enum):
    """Whether a work order is first-pass production or a rework of another."""

    NORMAL = "normal"
    REWORK = "rework"


class WorkOrderStatus(str, Enum):
    """Lifecycle stages for a work order."""

    DRAFT = "draft"
    # Legacy rows written by older clients; treated like DRAFT.
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DispatchStatus(str, Enum):
    """Lifecycle stages for a floor dispatch."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InspectionResult(str, Enum):
    """Outcome of an outgassing test or an AOI inspection."""

    PASS = "PASS"
    NG = "NG"


class MovementType(str, Enum):
    """Kinds of inventory state change recorded in the movement ledger."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"


class InventoryStatus(str, Enum):
    IN_STOCK = "in_stock"


class StockTakeStatus(str, Enum):
    COMPLETED = "completed"


# ----------------------------------------------------------------------
# Production
# ----------------------------------------------------------------------
@dataclass(slots=True)
class WorkOrder:
    """A unit of manufacturing demand with running quantity totals."""

    id: str = ""
    order_number: str = ""
    order_type: OrderType = OrderType.NORMAL
    customer_name: str = ""
    customer_site: str = ""
    product_model: str = ""
    quantity: int = 0
    completed_qty: int = 0
    good_qty: int = 0
    ng_qty: int = 0
    status: WorkOrderStatus = WorkOrderStatus.DRAFT
    priority: str = ""
    due_date: Optional[date] = None
    target_regeneration_count: int = 0
    source_work_order_id: str = ""
    source_order_number: str = ""
    rework_count: int = 0
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in {WorkOrderStatus.COMPLETED, WorkOrderStatus.CANCELLED}


@dataclass(slots=True)
class Dispatch:
    """Assignment of part of a work order to a station and operator."""

    id: str = ""
    dispatch_number: str = ""
    work_order_id: str = ""
    station_name: str = ""
    operator_name: str = ""
    quantity: int = 0
    completed_qty: int = 0
    good_qty: int = 0
    ng_qty: int = 0
    status: DispatchStatus = DispatchStatus.PENDING
    planned_start_at: Optional[datetime] = None
    actual_start_at: Optional[datetime] = None
    actual_end_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class Report:
    """One immutable production event."""

    id: str = ""
    report_number: str = ""
    work_order_id: str = ""
    dispatch_id: str = ""
    operator_name: str = ""
    station_name: str = ""
    quantity: int = 0
    good_qty: int = 0
    ng_qty: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    has_abnormal: bool = False
    abnormal_type: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class NgDetail:
    """Breakdown of a report's NG quantity by reason."""

    id: str = ""
    report_id: str = ""
    dispatch_id: str = ""
    work_order_id: str = ""
    reason_id: str = ""
    reason_name: str = ""
    quantity: int = 0
    barcodes: List[str] = field(default_factory=list)
    notes: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Quality
# ----------------------------------------------------------------------
@dataclass(slots=True)
class OutgassingTest:
    """Destructive outgassing test of one sampled unit."""

    id: str = ""
    test_number: str = ""
    work_order_id: str = ""
    order_number: str = ""
    product_model: str = ""
    batch_number: str = ""
    batch_size: int = 0
    sample_index: int = 0
    rfid_code: str = ""
    result: InspectionResult = InspectionResult.PASS
    test_value: Optional[float] = None
    threshold: Optional[float] = None
    operator_name: str = ""
    tested_at: Optional[datetime] = None
    notes: str = ""
    signature: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class DefectPosition:
    x: str = ""
    y: str = ""


@dataclass(slots=True)
class AoiInspection:
    """Optical inspection verdict for one physical unit."""

    id: str = ""
    inspection_number: str = ""
    work_order_id: str = ""
    order_number: str = ""
    product_model: str = ""
    rfid_code: str = ""
    result: InspectionResult = InspectionResult.PASS
    defect_type: str = ""
    defect_count: int = 0
    defect_positions: List[DefectPosition] = field(default_factory=list)
    image_path: str = ""
    operator_name: str = ""
    inspected_at: Optional[datetime] = None
    import_batch: str = ""
    signature: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Warehouse
# ----------------------------------------------------------------------
@dataclass(slots=True)
class InventoryItem:
    """A tagged quantity of product currently held at one location."""

    id: str = ""
    location_code: str = ""
    work_order_id: str = ""
    order_number: str = ""
    product_model: str = ""
    customer_name: str = ""
    quantity: int = 0
    barcode: str = ""
    status: InventoryStatus = InventoryStatus.IN_STOCK
    inbound_date: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class Movement:
    """Append-only ledger entry for an inventory state change."""

    id: str = ""
    movement_number: str = ""
    from_location: str = ""
    to_location: str = ""
    work_order_id: str = ""
    order_number: str = ""
    product_model: str = ""
    quantity: int = 0
    barcode: str = ""
    movement_type: MovementType = MovementType.INBOUND
    operator_name: str = ""
    reason: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class StockTake:
    """Summary of one counting session at a location."""

    id: str = ""
    stock_take_number: str = ""
    location_code: str = ""
    location_name: str = ""
    operator_name: str = ""
    total_items: int = 0
    adjusted_items: int = 0
    status: StockTakeStatus = StockTakeStatus.COMPLETED
    notes: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class StockTakeDetail:
    """Counted versus recorded quantity for one item in a stock take."""

    id: str = ""
    stock_take_id: str = ""
    inventory_id: str = ""
    barcode: str = ""
    order_number: str = ""
    product_model: str = ""
    system_qty: int = 0
    actual_qty: int = 0
    diff_qty: int = 0
    notes: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Labels
# ----------------------------------------------------------------------
@dataclass(slots=True)
class LabelHistoryEntry:
    at: Optional[datetime] = None
    action: str = ""
    epc: str = ""
    note: str = ""


@dataclass(slots=True)
class R0Label:
    """Reusable carrier label and the EPC codes it has been given."""

    id: str = ""
    r0_code: str = ""
    current_epc: str = ""
    work_order_id: str = ""
    order_number: str = ""
    customer_name: str = ""
    product_model: str = ""
    regeneration_status: str = ""
    regeneration_count: int = 0
    history: List[LabelHistoryEntry] = field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class EpcHistory:
    """One EPC re-code of a regenerated unit, from the old tag to the new one."""

    id: str = ""
    work_order_id: str = ""
    order_number: str = ""
    product_model: str = ""
    old_epc: str = ""
    new_epc: str = ""
    change_type: str = EPC_RECODE_CHANGE
    station_name: str = EPC_RECODE_STATION
    operator_name: str = ""
    notes: str = ""
    version: int = 0
    created_at: Optional[datetime] = None


__all__ = [
    "EXTERNAL_LOCATION",
    "utcnow",
    "OrderType",
    "WorkOrderStatus",
    "DispatchStatus",
    "InspectionResult",
    "MovementType",
    "InventoryStatus",
    "StockTakeStatus",
    "WorkOrder",
    "Dispatch",
    "Report",
    "NgDetail",
    "OutgassingTest",
    "DefectPosition",
    "AoiInspection",
    "InventoryItem",
    "Movement",
    "StockTake",
    "StockTakeDetail",
    "LabelHistoryEntry",
    "R0Label",
    "EpcHistory",
    "EPC_RECODE_CHANGE",
    "EPC_RECODE_STATION",
]
