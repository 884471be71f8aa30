"""Work orders, floor dispatches and production reports.

Quantities flow one way: a :class:`~mes_ledger.domain.Report` is stored, then
the owning dispatch and work order are recomputed from every report that
references them. Recomputing instead of adding deltas keeps the counters equal
to the sum of their reports even if a cascade is interrupted and replayed.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .domain import (
    Dispatch,
    DispatchStatus,
    NgDetail,
    OrderType,
    Report,
    WorkOrder,
    WorkOrderStatus,
    utcnow,
)
from .errors import ReworkLimitExceeded, StaleRecordError, ValidationError
from .locks import KeyedLock
from .numbering import document_number
from .repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Work orders that have not started yet; the first dispatch promotes them.
NOT_STARTED_STATUSES = {WorkOrderStatus.DRAFT, WorkOrderStatus.PENDING}

WORK_ORDER_EDITABLE_FIELDS = frozenset(
    {
        "order_number",
        "customer_name",
        "customer_site",
        "product_model",
        "quantity",
        "priority",
        "due_date",
        "target_regeneration_count",
    }
)
DISPATCH_EDITABLE_FIELDS = frozenset(
    {"dispatch_number", "station_name", "operator_name", "quantity", "planned_start_at"}
)


def _require_positive(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc
    if number <= 0:
        raise ValidationError(f"{name} must be greater than zero")
    return number


def _require_non_negative(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc
    if number < 0:
        raise ValidationError(f"{name} must not be negative")
    return number


def derive_work_order_status(work_order: WorkOrder, completed_qty: int) -> WorkOrderStatus:
    if work_order.status == WorkOrderStatus.CANCELLED:
        return WorkOrderStatus.CANCELLED
    if completed_qty >= work_order.quantity:
        return WorkOrderStatus.COMPLETED
    if completed_qty > 0 or work_order.status == WorkOrderStatus.COMPLETED:
        return WorkOrderStatus.IN_PROGRESS
    return work_order.status


def derive_dispatch_status(dispatch: Dispatch, completed_qty: int) -> DispatchStatus:
    if dispatch.status == DispatchStatus.CANCELLED:
        return DispatchStatus.CANCELLED
    if completed_qty >= dispatch.quantity:
        return DispatchStatus.COMPLETED
    if completed_qty > 0 or dispatch.status == DispatchStatus.COMPLETED:
        return DispatchStatus.IN_PROGRESS
    return dispatch.status


class _ConflictRetry:
    """Re-run a read-compute-write step when the record moved underneath it."""

    def __init__(self, attempts: int) -> None:
        self.attempts = max(attempts, 1)

    def __call__(self, step: Callable[[], T], description: str) -> T:
        for attempt in range(1, self.attempts + 1):
            try:
                return step()
            except StaleRecordError:
                if attempt == self.attempts:
                    raise
                logger.warning(
                    "Concurrent update while %s (attempt %d/%d), re-reading",
                    description,
                    attempt,
                    self.attempts,
                )
        raise AssertionError("unreachable")  # pragma: no cover


# ----------------------------------------------------------------------
# Work orders
# ----------------------------------------------------------------------
class ReworkLineage:
    """Gate deciding whether a work order may be created as a rework child.

    A unit may be reworked at most ``rework_limit`` times; after that it has to
    be scrapped.
    """

    def __init__(self, work_orders: Repository[WorkOrder], *, rework_limit: int = 1) -> None:
        self._work_orders = work_orders
        self.rework_limit = rework_limit

    def resolve_source(self, source_work_order_id: str) -> WorkOrder:
        if not source_work_order_id:
            raise ValidationError("Rework orders require source_work_order_id")
        source = self._work_orders.get(source_work_order_id)
        if source.rework_count >= self.rework_limit:
            raise ReworkLimitExceeded(
                f"Work order {source.order_number or source.id} has already been "
                f"reworked {source.rework_count} time(s); NG units must be scrapped"
            )
        return source

    @staticmethod
    def child_rework_count(source: WorkOrder) -> int:
        return source.rework_count + 1


class WorkOrderLedger:
    """Owns the work order lifecycle apart from quantity counters."""

    def __init__(
        self,
        work_orders: Repository[WorkOrder],
        lineage: ReworkLineage,
        *,
        utc_offset_hours: int = 8,
    ) -> None:
        self._work_orders = work_orders
        self._lineage = lineage
        self._utc_offset_hours = utc_offset_hours

    def create_work_order(
        self,
        quantity: int,
        *,
        order_number: str = "",
        order_type: OrderType = OrderType.NORMAL,
        customer_name: str = "",
        customer_site: str = "",
        product_model: str = "",
        priority: str = "",
        due_date: Optional[date] = None,
        target_regeneration_count: int = 0,
        source_work_order_id: str = "",
    ) -> WorkOrder:
        quantity = _require_positive(quantity, "quantity")
        try:
            order_type = OrderType(order_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown order_type {order_type!r}") from exc
        rework_count = 0
        source_order_number = ""
        if order_type == OrderType.REWORK:
            source = self._lineage.resolve_source(source_work_order_id)
            rework_count = self._lineage.child_rework_count(source)
            source_order_number = source.order_number
        elif source_work_order_id:
            raise ValidationError("source_work_order_id is only valid for rework orders")

        work_order = WorkOrder(
            order_number=order_number
            or document_number("WO", utc_offset_hours=self._utc_offset_hours),
            order_type=order_type,
            customer_name=customer_name,
            customer_site=customer_site,
            product_model=product_model,
            quantity=quantity,
            status=WorkOrderStatus.DRAFT,
            priority=priority,
            due_date=due_date,
            target_regeneration_count=target_regeneration_count,
            source_work_order_id=source_work_order_id,
            source_order_number=source_order_number,
            rework_count=rework_count,
        )
        work_order = self._work_orders.add(work_order)
        logger.info(
            "Created %s work order %s (quantity=%d, rework_count=%d)",
            order_type.value,
            work_order.order_number,
            quantity,
            rework_count,
        )
        return work_order

    def get_work_order(self, work_order_id: str) -> WorkOrder:
        return self._work_orders.get(work_order_id)

    def list_work_orders(self, *, include_cancelled: bool = False) -> List[WorkOrder]:
        return [
            order
            for order in self._work_orders.list()
            if include_cancelled or order.status != WorkOrderStatus.CANCELLED
        ]

    def update_work_order(self, work_order_id: str, **changes: Any) -> WorkOrder:
        """Patch metadata directly; counters and status are not editable here."""

        rejected = set(changes) - WORK_ORDER_EDITABLE_FIELDS
        if rejected:
            raise ValidationError(
                f"Work order field(s) not editable: {', '.join(sorted(rejected))}"
            )
        if "quantity" not in changes:
            return self._work_orders.patch(work_order_id, **changes)

        # A new target changes whether the order counts as completed.
        changes["quantity"] = _require_positive(changes["quantity"], "quantity")
        work_order = self._work_orders.get(work_order_id)
        work_order.quantity = changes["quantity"]
        changes["status"] = derive_work_order_status(work_order, work_order.completed_qty)
        return self._work_orders.update(work_order, **changes)

    def delete_work_order(self, work_order_id: str) -> WorkOrder:
        work_order = self._work_orders.patch(work_order_id, status=WorkOrderStatus.CANCELLED)
        logger.info("Cancelled work order %s", work_order.order_number)
        return work_order


# ----------------------------------------------------------------------
# Dispatches
# ----------------------------------------------------------------------
class DispatchLedger:
    """Floor assignments of work orders to stations and operators."""

    def __init__(
        self,
        work_orders: Repository[WorkOrder],
        dispatches: Repository[Dispatch],
        *,
        conflict_retry_attempts: int = 5,
        utc_offset_hours: int = 8,
        work_order_locks: Optional[KeyedLock] = None,
    ) -> None:
        self._work_orders = work_orders
        self._dispatches = dispatches
        self._work_order_locks = work_order_locks if work_order_locks is not None else KeyedLock()
        self._retry = _ConflictRetry(conflict_retry_attempts)
        self._utc_offset_hours = utc_offset_hours

    def create_dispatch(
        self,
        work_order_id: str,
        quantity: int,
        *,
        station_name: str = "",
        operator_name: str = "",
        dispatch_number: str = "",
        planned_start_at: Optional[datetime] = None,
    ) -> Dispatch:
        quantity = _require_positive(quantity, "quantity")
        work_order = self._work_orders.get(work_order_id)
        if not work_order.is_open:
            raise ValidationError(
                f"Work order {work_order.order_number} is {work_order.status.value}"
            )
        dispatch = self._dispatches.add(
            Dispatch(
                dispatch_number=dispatch_number
                or document_number("DS", utc_offset_hours=self._utc_offset_hours),
                work_order_id=work_order_id,
                station_name=station_name,
                operator_name=operator_name,
                quantity=quantity,
                status=DispatchStatus.PENDING,
                planned_start_at=planned_start_at,
            )
        )
        try:
            with self._work_order_locks.hold(work_order_id):
                self._retry(
                    lambda: self._mark_work_order_started(work_order_id),
                    f"starting work order {work_order.order_number}",
                )
        except Exception:
            logger.exception(
                "Dispatch %s stored but work order %s could not be marked in progress",
                dispatch.dispatch_number,
                work_order.order_number,
            )
            raise
        logger.info(
            "Dispatched %d of work order %s to %s/%s as %s",
            quantity,
            work_order.order_number,
            station_name or "-",
            operator_name or "-",
            dispatch.dispatch_number,
        )
        return dispatch

    def _mark_work_order_started(self, work_order_id: str) -> WorkOrder:
        work_order = self._work_orders.get(work_order_id)
        if work_order.status not in NOT_STARTED_STATUSES:
            return work_order
        return self._work_orders.update(work_order, status=WorkOrderStatus.IN_PROGRESS)

    def get_dispatch(self, dispatch_id: str) -> Dispatch:
        return self._dispatches.get(dispatch_id)

    def list_dispatches(
        self, *, work_order_id: Optional[str] = None, include_cancelled: bool = False
    ) -> List[Dispatch]:
        return [
            dispatch
            for dispatch in self._dispatches.list()
            if (work_order_id is None or dispatch.work_order_id == work_order_id)
            and (include_cancelled or dispatch.status != DispatchStatus.CANCELLED)
        ]

    def start_dispatch(self, dispatch_id: str) -> Dispatch:
        def step() -> Dispatch:
            dispatch = self._dispatches.get(dispatch_id)
            if dispatch.status in {DispatchStatus.CANCELLED, DispatchStatus.COMPLETED}:
                raise ValidationError(
                    f"Dispatch {dispatch.dispatch_number} is {dispatch.status.value}"
                )
            return self._dispatches.update(
                dispatch, status=DispatchStatus.IN_PROGRESS, actual_start_at=utcnow()
            )

        return self._retry(step, f"starting dispatch {dispatch_id}")

    def complete_dispatch(self, dispatch_id: str) -> Dispatch:
        """Stamp the actual end time; completion status still follows the reports."""

        return self._dispatches.patch(dispatch_id, actual_end_at=utcnow())

    def update_dispatch(self, dispatch_id: str, **changes: Any) -> Dispatch:
        rejected = set(changes) - DISPATCH_EDITABLE_FIELDS
        if rejected:
            raise ValidationError(
                f"Dispatch field(s) not editable: {', '.join(sorted(rejected))}"
            )
        if "quantity" not in changes:
            return self._dispatches.patch(dispatch_id, **changes)

        changes["quantity"] = _require_positive(changes["quantity"], "quantity")
        dispatch = self._dispatches.get(dispatch_id)
        dispatch.quantity = changes["quantity"]
        changes["status"] = derive_dispatch_status(dispatch, dispatch.completed_qty)
        return self._dispatches.update(dispatch, **changes)

    def delete_dispatch(self, dispatch_id: str) -> Dispatch:
        return self._dispatches.patch(dispatch_id, status=DispatchStatus.CANCELLED)


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------
class ReportRecorder:
    """Records production events and cascades them into dispatch and work order.

    Cascades of one work order run one at a time within the process; the
    version check on each write covers writers in other processes.
    """

    def __init__(
        self,
        work_orders: Repository[WorkOrder],
        dispatches: Repository[Dispatch],
        reports: Repository[Report],
        ng_details: Repository[NgDetail],
        *,
        conflict_retry_attempts: int = 5,
        utc_offset_hours: int = 8,
        work_order_locks: Optional[KeyedLock] = None,
    ) -> None:
        self._work_orders = work_orders
        self._dispatches = dispatches
        self._reports = reports
        self._ng_details = ng_details
        self._work_order_locks = work_order_locks if work_order_locks is not None else KeyedLock()
        self._retry = _ConflictRetry(conflict_retry_attempts)
        self._utc_offset_hours = utc_offset_hours

    def create_report(
        self,
        dispatch_id: str,
        good_qty: int = 0,
        ng_qty: int = 0,
        *,
        work_order_id: str = "",
        operator_name: str = "",
        station_name: str = "",
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        has_abnormal: bool = False,
        abnormal_type: str = "",
        report_number: str = "",
        ng_details: Sequence[Mapping[str, Any]] = (),
    ) -> Report:
        if not dispatch_id:
            raise ValidationError("dispatch_id is required")
        good_qty = _require_non_negative(good_qty, "good_qty")
        ng_qty = _require_non_negative(ng_qty, "ng_qty")
        if good_qty + ng_qty == 0:
            raise ValidationError("A report must record at least one unit")
        breakdown = self._validate_ng_details(ng_details, ng_qty)

        dispatch = self._dispatches.get(dispatch_id)
        if dispatch.status == DispatchStatus.CANCELLED:
            raise ValidationError(f"Dispatch {dispatch.dispatch_number} is cancelled")
        if work_order_id and work_order_id != dispatch.work_order_id:
            raise ValidationError(
                f"Dispatch {dispatch.dispatch_number} does not belong to work order {work_order_id}"
            )
        work_order = self._work_orders.get(dispatch.work_order_id)
        if work_order.status == WorkOrderStatus.CANCELLED:
            raise ValidationError(f"Work order {work_order.order_number} is cancelled")

        report = self._reports.add(
            Report(
                report_number=report_number
                or document_number("RP", utc_offset_hours=self._utc_offset_hours),
                work_order_id=work_order.id,
                dispatch_id=dispatch.id,
                operator_name=operator_name or dispatch.operator_name,
                station_name=station_name or dispatch.station_name,
                quantity=good_qty + ng_qty,
                good_qty=good_qty,
                ng_qty=ng_qty,
                start_time=start_time,
                end_time=end_time,
                has_abnormal=bool(has_abnormal),
                abnormal_type=abnormal_type,
            )
        )
        try:
            for entry in breakdown:
                entry.report_id = report.id
                entry.dispatch_id = dispatch.id
                entry.work_order_id = work_order.id
                self._ng_details.add(entry)
            with self._work_order_locks.hold(work_order.id):
                dispatch = self._refresh_dispatch(dispatch.id)
                work_order = self._refresh_work_order(work_order.id)
        except Exception:
            logger.exception(
                "Report %s stored but the cascade into dispatch %s / work order %s "
                "did not finish; reconcile work order %s to repair the totals",
                report.report_number,
                dispatch.dispatch_number,
                work_order.order_number,
                work_order.id,
            )
            raise
        logger.info(
            "Report %s: +%d good +%d NG; dispatch %s now %d/%d (%s), work order %s now %d/%d (%s)",
            report.report_number,
            good_qty,
            ng_qty,
            dispatch.dispatch_number,
            dispatch.completed_qty,
            dispatch.quantity,
            dispatch.status.value,
            work_order.order_number,
            work_order.completed_qty,
            work_order.quantity,
            work_order.status.value,
        )
        return report

    @staticmethod
    def _validate_ng_details(
        ng_details: Iterable[Mapping[str, Any]], ng_qty: int
    ) -> List[NgDetail]:
        breakdown: List[NgDetail] = []
        for entry in ng_details:
            breakdown.append(
                NgDetail(
                    reason_id=str(entry.get("reason_id", "")),
                    reason_name=str(entry.get("reason_name", "")),
                    quantity=_require_positive(entry.get("quantity"), "NG detail quantity"),
                    barcodes=[str(code) for code in entry.get("barcodes") or ()],
                    notes=str(entry.get("notes", "")),
                )
            )
        if sum(detail.quantity for detail in breakdown) > ng_qty:
            raise ValidationError("NG detail quantities exceed the reported NG quantity")
        return breakdown

    def _sum_reports(self, **criteria: str) -> Tuple[int, int]:
        good = ng = 0
        for report in self._reports.filter(**criteria):
            good += report.good_qty
            ng += report.ng_qty
        return good, ng

    def _refresh_dispatch(self, dispatch_id: str) -> Dispatch:
        def step() -> Dispatch:
            dispatch = self._dispatches.get(dispatch_id)
            good, ng = self._sum_reports(dispatch_id=dispatch_id)
            completed = good + ng
            return self._dispatches.update(
                dispatch,
                good_qty=good,
                ng_qty=ng,
                completed_qty=completed,
                status=derive_dispatch_status(dispatch, completed),
            )

        return self._retry(step, f"updating dispatch {dispatch_id}")

    def _refresh_work_order(self, work_order_id: str) -> WorkOrder:
        def step() -> WorkOrder:
            work_order = self._work_orders.get(work_order_id)
            good, ng = self._sum_reports(work_order_id=work_order_id)
            completed = good + ng
            return self._work_orders.update(
                work_order,
                good_qty=good,
                ng_qty=ng,
                completed_qty=completed,
                status=derive_work_order_status(work_order, completed),
            )

        return self._retry(step, f"updating work order {work_order_id}")

    def reconcile(self, work_order_id: str) -> WorkOrder:
        """Recompute a work order and all of its dispatches from their reports."""

        self._work_orders.get(work_order_id)
        with self._work_order_locks.hold(work_order_id):
            for dispatch in self._dispatches.filter(work_order_id=work_order_id):
                self._refresh_dispatch(dispatch.id)
            work_order = self._refresh_work_order(work_order_id)
        logger.info(
            "Reconciled work order %s: %d good, %d NG",
            work_order.order_number,
            work_order.good_qty,
            work_order.ng_qty,
        )
        return work_order

    def get_report(self, report_id: str) -> Report:
        return self._reports.get(report_id)

    def list_reports(
        self, *, work_order_id: Optional[str] = None, dispatch_id: Optional[str] = None
    ) -> List[Report]:
        criteria = {}
        if work_order_id is not None:
            criteria["work_order_id"] = work_order_id
        if dispatch_id is not None:
            criteria["dispatch_id"] = dispatch_id
        return self._reports.filter(**criteria)

    def get_ng_details_by_report(self, report_id: str) -> List[NgDetail]:
        return self._ng_details.filter(report_id=report_id)


__all__ = [
    "ReworkLineage",
    "WorkOrderLedger",
    "DispatchLedger",
    "ReportRecorder",
    "derive_work_order_status",
    "derive_dispatch_status",
]
