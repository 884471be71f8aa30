"""FastAPI-based JSON interface for the MES ledger."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import is_dataclass
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import Settings, configure_logging, get_settings
from ..domain import LabelHistoryEntry, MovementType, OrderType
from ..errors import (
    DuplicateRecordError,
    MESError,
    PersistenceUnavailable,
    RecordNotFoundError,
    ReworkLimitExceeded,
    StaleRecordError,
    ValidationError,
)
from ..repository import to_record
from ..services import MESService
from ..storage import MESDatabase

logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[Type[MESError], int] = {
    RecordNotFoundError: 404,
    ValidationError: 422,
    ReworkLimitExceeded: 409,
    StaleRecordError: 409,
    DuplicateRecordError: 409,
    PersistenceUnavailable: 503,
}


def _status_for(exc: MESError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def _encode(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return to_record(value)
    if isinstance(value, (list, tuple)):
        return [_encode(entry) for entry in value]
    return value


def ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": _encode(data)}


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------
class WorkOrderCreate(BaseModel):
    quantity: int
    order_number: str = ""
    order_type: OrderType = OrderType.NORMAL
    customer_name: str = ""
    customer_site: str = ""
    product_model: str = ""
    priority: str = ""
    due_date: Optional[date] = None
    target_regeneration_count: int = 0
    source_work_order_id: str = ""


class WorkOrderPatch(BaseModel):
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_site: Optional[str] = None
    product_model: Optional[str] = None
    quantity: Optional[int] = None
    priority: Optional[str] = None
    due_date: Optional[date] = None
    target_regeneration_count: Optional[int] = None


class DispatchCreate(BaseModel):
    work_order_id: str
    quantity: int
    station_name: str = ""
    operator_name: str = ""
    dispatch_number: str = ""
    planned_start_at: Optional[datetime] = None


class DispatchPatch(BaseModel):
    dispatch_number: Optional[str] = None
    station_name: Optional[str] = None
    operator_name: Optional[str] = None
    quantity: Optional[int] = None
    planned_start_at: Optional[datetime] = None


class NgDetailIn(BaseModel):
    reason_id: str = ""
    reason_name: str = ""
    quantity: int
    barcodes: List[str] = Field(default_factory=list)
    notes: str = ""


class ReportCreate(BaseModel):
    dispatch_id: str
    good_qty: int = 0
    ng_qty: int = 0
    work_order_id: str = ""
    operator_name: str = ""
    station_name: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    has_abnormal: bool = False
    abnormal_type: str = ""
    report_number: str = ""
    ng_details: List[NgDetailIn] = Field(default_factory=list)


class OutgassingTestCreate(BaseModel):
    work_order_id: str
    result: str
    rfid_code: str = ""
    test_value: Optional[float] = None
    threshold: Optional[float] = None
    operator_name: str = ""
    batch_number: str = ""
    batch_size: Optional[int] = None
    sample_index: Optional[int] = None
    tested_at: Optional[datetime] = None
    notes: str = ""
    signature: str = ""


class AoiImport(BaseModel):
    rows: Optional[List[Dict[str, Any]]] = None
    csv_text: Optional[str] = None
    operator_name: str = ""


class InboundRequest(BaseModel):
    location_code: str
    barcode: str
    work_order_id: str = ""
    quantity: int = 1
    operator_name: str = ""
    reason: str = "Inbound"


class OutboundRequest(BaseModel):
    inventory_id: str
    operator_name: str = ""
    reason: str = "Outbound"


class TransferRequest(BaseModel):
    inventory_id: str
    to_location: str
    operator_name: str = ""
    reason: str = "Transfer"


class CountedItemIn(BaseModel):
    inventory_id: str
    actual_qty: int
    notes: str = ""


class StockTakeRequest(BaseModel):
    location_code: str
    operator_name: str = ""
    location_name: str = ""
    notes: str = ""
    details: List[CountedItemIn] = Field(default_factory=list)


class LabelHistoryIn(BaseModel):
    action: str = ""
    epc: str = ""
    note: str = ""
    at: Optional[datetime] = None


class LabelCreate(BaseModel):
    r0_code: str
    current_epc: str = ""
    work_order_id: str = ""
    order_number: str = ""
    customer_name: str = ""
    product_model: str = ""
    regeneration_status: str = ""
    regeneration_count: int = 0


class LabelPatch(BaseModel):
    current_epc: Optional[str] = None
    work_order_id: Optional[str] = None
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    product_model: Optional[str] = None
    regeneration_status: Optional[str] = None
    regeneration_count: Optional[int] = None
    history_entry: Optional[LabelHistoryIn] = None


class LabelSync(BaseModel):
    labels: List[Dict[str, Any]]


class EpcChangeCreate(BaseModel):
    work_order_id: str
    new_epc: str
    old_epc: str = ""
    operator_name: str = ""
    notes: str = ""


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------
def create_app(
    database_path: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    service: Optional[MESService] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    database: Optional[MESDatabase] = None
    if service is None:
        database = MESDatabase(
            database_path or settings.database_path,
            retry_attempts=settings.persistence_retry_attempts,
            retry_delay=settings.persistence_retry_delay_seconds,
        )
        service = MESService(database.repositories, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if database is not None:
            database.close()

    app = FastAPI(title="MES Ledger", lifespan=lifespan)
    app.state.mes_service = service
    app.state.database = database

    @app.exception_handler(MESError)
    async def mes_error_handler(request: Request, exc: MESError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": exc.kind, "detail": str(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "reason": str(error.get("msg") or error.get("type") or "invalid"),
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": ValidationError.kind,
                "detail": "; ".join(f"{p['field']}: {p['reason']}" for p in problems),
                "errors": problems,
            },
        )

    def svc(request: Request) -> MESService:
        return request.app.state.mes_service

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return ok({"status": "ok"})

    @app.get("/snapshot")
    def snapshot(request: Request) -> Dict[str, Any]:
        return ok(svc(request).snapshot())

    # ------------------------------------------------------------------
    # Work orders
    # ------------------------------------------------------------------
    @app.get("/work-orders")
    def list_work_orders(request: Request, include_cancelled: bool = False) -> Dict[str, Any]:
        return ok(svc(request).list_work_orders(include_cancelled=include_cancelled))

    @app.post("/work-orders", status_code=201)
    def create_work_order(request: Request, body: WorkOrderCreate) -> Dict[str, Any]:
        spec = body.model_dump()
        quantity = spec.pop("quantity")
        return ok(svc(request).create_work_order(quantity, **spec))

    @app.get("/work-orders/{work_order_id}")
    def get_work_order(request: Request, work_order_id: str) -> Dict[str, Any]:
        return ok(svc(request).get_work_order(work_order_id))

    @app.patch("/work-orders/{work_order_id}")
    def update_work_order(
        request: Request, work_order_id: str, body: WorkOrderPatch
    ) -> Dict[str, Any]:
        changes = body.model_dump(exclude_unset=True)
        return ok(svc(request).update_work_order(work_order_id, **changes))

    @app.delete("/work-orders/{work_order_id}")
    def delete_work_order(request: Request, work_order_id: str) -> Dict[str, Any]:
        return ok(svc(request).delete_work_order(work_order_id))

    @app.post("/work-orders/{work_order_id}/reconcile")
    def reconcile_work_order(request: Request, work_order_id: str) -> Dict[str, Any]:
        return ok(svc(request).reconcile_work_order(work_order_id))

    @app.get("/work-orders/{work_order_id}/outgassing-sample-info")
    def outgassing_sample_info(request: Request, work_order_id: str) -> Dict[str, Any]:
        return ok(svc(request).get_outgassing_sample_info(work_order_id))

    @app.post("/work-orders/{work_order_id}/aoi-import")
    def import_aoi(request: Request, work_order_id: str, body: AoiImport) -> Dict[str, Any]:
        service = svc(request)
        if body.csv_text is not None:
            summary = service.import_aoi_csv_text(
                work_order_id, body.csv_text, body.operator_name
            )
        elif body.rows is not None:
            summary = service.import_aoi_csv(work_order_id, body.rows, body.operator_name)
        else:
            raise ValidationError("Provide either rows or csv_text")
        return ok(summary)

    # ------------------------------------------------------------------
    # Dispatches and reports
    # ------------------------------------------------------------------
    @app.get("/dispatches")
    def list_dispatches(
        request: Request,
        work_order_id: Optional[str] = None,
        include_cancelled: bool = False,
    ) -> Dict[str, Any]:
        return ok(
            svc(request).list_dispatches(
                work_order_id=work_order_id, include_cancelled=include_cancelled
            )
        )

    @app.post("/dispatches", status_code=201)
    def create_dispatch(request: Request, body: DispatchCreate) -> Dict[str, Any]:
        spec = body.model_dump()
        work_order_id = spec.pop("work_order_id")
        quantity = spec.pop("quantity")
        return ok(svc(request).create_dispatch(work_order_id, quantity, **spec))

    @app.get("/dispatches/{dispatch_id}")
    def get_dispatch(request: Request, dispatch_id: str) -> Dict[str, Any]:
        return ok(svc(request).get_dispatch(dispatch_id))

    @app.patch("/dispatches/{dispatch_id}")
    def update_dispatch(request: Request, dispatch_id: str, body: DispatchPatch) -> Dict[str, Any]:
        return ok(svc(request).update_dispatch(dispatch_id, **body.model_dump(exclude_unset=True)))

    @app.post("/dispatches/{dispatch_id}/start")
    def start_dispatch(request: Request, dispatch_id: str) -> Dict[str, Any]:
        return ok(svc(request).start_dispatch(dispatch_id))

    @app.post("/dispatches/{dispatch_id}/complete")
    def complete_dispatch(request: Request, dispatch_id: str) -> Dict[str, Any]:
        return ok(svc(request).complete_dispatch(dispatch_id))

    @app.delete("/dispatches/{dispatch_id}")
    def delete_dispatch(request: Request, dispatch_id: str) -> Dict[str, Any]:
        return ok(svc(request).delete_dispatch(dispatch_id))

    @app.get("/reports")
    def list_reports(
        request: Request,
        work_order_id: Optional[str] = None,
        dispatch_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return ok(
            svc(request).list_reports(work_order_id=work_order_id, dispatch_id=dispatch_id)
        )

    @app.post("/reports", status_code=201)
    def create_report(request: Request, body: ReportCreate) -> Dict[str, Any]:
        spec = body.model_dump()
        dispatch_id = spec.pop("dispatch_id")
        good_qty = spec.pop("good_qty")
        ng_qty = spec.pop("ng_qty")
        return ok(svc(request).create_report(dispatch_id, good_qty, ng_qty, **spec))

    @app.get("/reports/{report_id}/ng-details")
    def ng_details(request: Request, report_id: str) -> Dict[str, Any]:
        return ok(svc(request).get_ng_details_by_report(report_id))

    # ------------------------------------------------------------------
    # Quality
    # ------------------------------------------------------------------
    @app.get("/outgassing-tests")
    def list_outgassing_tests(
        request: Request, work_order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return ok(svc(request).list_outgassing_tests(work_order_id=work_order_id))

    @app.post("/outgassing-tests", status_code=201)
    def create_outgassing_test(request: Request, body: OutgassingTestCreate) -> Dict[str, Any]:
        spec = body.model_dump()
        work_order_id = spec.pop("work_order_id")
        result = spec.pop("result")
        return ok(svc(request).create_outgassing_test(work_order_id, result, **spec))

    @app.get("/aoi-inspections")
    def list_aoi_inspections(
        request: Request, work_order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return ok(svc(request).list_aoi_inspections(work_order_id=work_order_id))

    # ------------------------------------------------------------------
    # Warehouse
    # ------------------------------------------------------------------
    @app.get("/wms/inventory")
    def list_inventory(request: Request, location_code: Optional[str] = None) -> Dict[str, Any]:
        return ok(svc(request).list_inventory(location_code=location_code))

    @app.get("/wms/movements")
    def list_movements(
        request: Request,
        barcode: Optional[str] = None,
        movement_type: Optional[MovementType] = None,
        location_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        return ok(
            svc(request).list_movements(
                barcode=barcode, movement_type=movement_type, location_code=location_code
            )
        )

    @app.get("/wms/locations/summary")
    def location_summary(request: Request) -> Dict[str, Any]:
        return ok(svc(request).location_summary())

    @app.post("/wms/inbound", status_code=201)
    def wms_inbound(request: Request, body: InboundRequest) -> Dict[str, Any]:
        return ok(
            svc(request).wms_inbound(
                body.location_code,
                body.work_order_id,
                body.quantity,
                body.barcode,
                body.operator_name,
                reason=body.reason,
            )
        )

    @app.post("/wms/outbound")
    def wms_outbound(request: Request, body: OutboundRequest) -> Dict[str, Any]:
        return ok(svc(request).wms_outbound(body.inventory_id, body.operator_name, body.reason))

    @app.post("/wms/transfer")
    def wms_transfer(request: Request, body: TransferRequest) -> Dict[str, Any]:
        return ok(
            svc(request).wms_transfer(
                body.inventory_id, body.to_location, body.operator_name, body.reason
            )
        )

    @app.get("/wms/stock-takes")
    def list_stock_takes(request: Request, location_code: Optional[str] = None) -> Dict[str, Any]:
        return ok(svc(request).list_stock_takes(location_code=location_code))

    @app.post("/wms/stock-takes", status_code=201)
    def create_stock_take(request: Request, body: StockTakeRequest) -> Dict[str, Any]:
        return ok(
            svc(request).create_stock_take(
                body.location_code,
                body.operator_name,
                [entry.model_dump() for entry in body.details],
                location_name=body.location_name,
                notes=body.notes,
            )
        )

    @app.get("/wms/stock-takes/{stock_take_id}/details")
    def stock_take_details(request: Request, stock_take_id: str) -> Dict[str, Any]:
        return ok(svc(request).get_stock_take_details(stock_take_id))

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------
    @app.get("/labels")
    def list_labels(request: Request) -> Dict[str, Any]:
        return ok(svc(request).list_labels())

    @app.post("/labels", status_code=201)
    def create_label(request: Request, body: LabelCreate) -> Dict[str, Any]:
        spec = body.model_dump()
        r0_code = spec.pop("r0_code")
        return ok(svc(request).create_label(r0_code, **spec))

    @app.patch("/labels/{label_id}")
    def update_label(request: Request, label_id: str, body: LabelPatch) -> Dict[str, Any]:
        changes = body.model_dump(exclude_unset=True, exclude={"history_entry"})
        entry = None
        if body.history_entry is not None:
            entry = LabelHistoryEntry(**body.history_entry.model_dump())
        return ok(svc(request).update_label(label_id, history_entry=entry, **changes))

    @app.post("/labels/sync")
    def sync_labels(request: Request, body: LabelSync) -> Dict[str, Any]:
        return ok(svc(request).sync_labels(body.labels))

    @app.get("/epc-history")
    def list_epc_history(
        request: Request, work_order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return ok(svc(request).list_epc_history(work_order_id=work_order_id))

    @app.post("/epc-history", status_code=201)
    def record_epc_change(request: Request, body: EpcChangeCreate) -> Dict[str, Any]:
        return ok(
            svc(request).record_epc_change(
                body.work_order_id,
                body.new_epc,
                body.old_epc,
                operator_name=body.operator_name,
                notes=body.notes,
            )
        )

    @app.get("/epc-history/check")
    def check_epc(request: Request, epc: str) -> Dict[str, Any]:
        return ok(svc(request).find_epc_last_record(epc))

    return app


__all__ = ["create_app", "ok"]
