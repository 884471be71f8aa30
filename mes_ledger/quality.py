"""Quality sub-flows: outgassing sampling and AOI defect aggregation."""

from __future__ import annotations

import csv
import io
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from .domain import (
    AoiInspection,
    DefectPosition,
    InspectionResult,
    OutgassingTest,
    WorkOrder,
    utcnow,
)
from .errors import RepositoryError, ValidationError
from .numbering import document_number
from .repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 18

# Column order of the AOI tool export.
AOI_COLUMNS: Tuple[str, ...] = (
    "date",
    "measure_id",
    "order_number",
    "serial_number",
    "recipe",
    "direction",
    "pos_x",
    "pos_y",
    "width",
    "height",
    "result",
    "path",
    "user",
)
AOI_MIN_PACKED_PARTS = 11
DATE_KEYS = ("日期", "date", "Date")
SERIAL_KEYS = ("serial_number", "序號", "rfidCode", "RFID", "serial")
RESULT_KEYS = ("result", "辨識結果")
POSITION_X_KEYS = ("pos_x", "Position_X")
POSITION_Y_KEYS = ("pos_y", "Position_Y")
DEFECT_RESULTS = frozenset({"damage", "ng", "fail"})


# ----------------------------------------------------------------------
# Outgassing sampling
# ----------------------------------------------------------------------
@dataclass(slots=True)
class SamplingWindow:
    """Where a work order stands in its destructive-sampling plan."""

    sample_rate: int
    required_samples: int
    tested_count: int
    next_sample_index: int
    next_batch_range: Tuple[int, int]
    is_complete: bool


@dataclass(slots=True)
class SamplingSummary:
    work_order_id: str
    order_number: str
    total_qty: int
    completed_qty: int
    sample_rate: int
    required_samples: int
    tested_count: int
    pass_count: int
    fail_count: int
    pass_rate: int
    next_sample_index: int
    next_batch_range: Tuple[int, int]
    is_complete: bool


def plan_sampling(
    target_qty: int, tested_count: int, sample_rate: int = DEFAULT_SAMPLE_RATE
) -> SamplingWindow:
    """One destructive sample per ``sample_rate`` units of the target quantity.

    >>> plan_sampling(36, 0).next_batch_range
    (1, 18)
    >>> plan_sampling(36, 1).next_batch_range
    (19, 36)
    """

    if sample_rate <= 0:
        raise ValidationError("sample_rate must be greater than zero")
    if target_qty < 0 or tested_count < 0:
        raise ValidationError("Quantities must not be negative")
    required = math.ceil(target_qty / sample_rate)
    batch_start = tested_count * sample_rate + 1
    batch_end = min((tested_count + 1) * sample_rate, target_qty)
    return SamplingWindow(
        sample_rate=sample_rate,
        required_samples=required,
        tested_count=tested_count,
        next_sample_index=tested_count + 1,
        next_batch_range=(batch_start, batch_end),
        is_complete=tested_count >= required,
    )


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(math.floor(part * 100 / whole + 0.5))


def _parse_result(value: Any) -> InspectionResult:
    try:
        return InspectionResult(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown inspection result {value!r}; expected PASS or NG") from exc


class SamplingPlanner:
    """Destructive-test cadence for work orders, plus the test records themselves."""

    def __init__(
        self,
        work_orders: Repository[WorkOrder],
        outgassing_tests: Repository[OutgassingTest],
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        utc_offset_hours: int = 8,
    ) -> None:
        self._work_orders = work_orders
        self._tests = outgassing_tests
        self.sample_rate = sample_rate
        self._utc_offset_hours = utc_offset_hours

    def list_outgassing_tests(self, *, work_order_id: Optional[str] = None) -> List[OutgassingTest]:
        if work_order_id is None:
            return self._tests.list()
        return self._tests.filter(work_order_id=work_order_id)

    def get_outgassing_sample_info(self, work_order_id: str) -> SamplingSummary:
        work_order = self._work_orders.get(work_order_id)
        tests = self._tests.filter(work_order_id=work_order_id)
        window = plan_sampling(work_order.quantity, len(tests), self.sample_rate)
        pass_count = sum(1 for test in tests if test.result == InspectionResult.PASS)
        fail_count = sum(1 for test in tests if test.result == InspectionResult.NG)
        return SamplingSummary(
            work_order_id=work_order.id,
            order_number=work_order.order_number,
            total_qty=work_order.quantity,
            completed_qty=work_order.completed_qty,
            sample_rate=window.sample_rate,
            required_samples=window.required_samples,
            tested_count=window.tested_count,
            pass_count=pass_count,
            fail_count=fail_count,
            pass_rate=_percent(pass_count, len(tests)),
            next_sample_index=window.next_sample_index,
            next_batch_range=window.next_batch_range,
            is_complete=window.is_complete,
        )

    def create_outgassing_test(
        self,
        work_order_id: str,
        result: Any,
        *,
        rfid_code: str = "",
        test_value: Optional[float] = None,
        threshold: Optional[float] = None,
        operator_name: str = "",
        batch_number: str = "",
        batch_size: Optional[int] = None,
        sample_index: Optional[int] = None,
        tested_at: Optional[datetime] = None,
        notes: str = "",
        signature: str = "",
        test_number: str = "",
    ) -> OutgassingTest:
        verdict = _parse_result(result)
        work_order = self._work_orders.get(work_order_id)
        if sample_index is None:
            sample_index = len(self._tests.filter(work_order_id=work_order_id)) + 1
        test = self._tests.add(
            OutgassingTest(
                test_number=test_number
                or document_number("OG", utc_offset_hours=self._utc_offset_hours),
                work_order_id=work_order.id,
                order_number=work_order.order_number,
                product_model=work_order.product_model,
                batch_number=batch_number,
                batch_size=self.sample_rate if batch_size is None else batch_size,
                sample_index=sample_index,
                rfid_code=rfid_code,
                result=verdict,
                test_value=test_value,
                threshold=threshold,
                operator_name=operator_name,
                tested_at=tested_at or utcnow(),
                notes=notes,
                signature=signature,
            )
        )
        logger.info(
            "Outgassing sample %d of work order %s: %s",
            sample_index,
            work_order.order_number,
            verdict.value,
        )
        return test


# ----------------------------------------------------------------------
# AOI defect aggregation
# ----------------------------------------------------------------------
@dataclass(slots=True)
class ImportResult:
    row: int
    serial: str
    success: bool
    id: str = ""
    defect_count: int = 0
    error: str = ""


@dataclass(slots=True)
class ImportSummary:
    import_batch: str
    total_rows: int
    unique_serials: int
    success: int
    failed: int
    details: List[ImportResult] = field(default_factory=list)


@dataclass(slots=True)
class _SerialDefects:
    serial: str
    defect_count: int = 0
    positions: List[DefectPosition] = field(default_factory=list)


def _first_value(row: Mapping[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        value = row.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _packed_record(row: Mapping[str, Any]) -> Optional[str]:
    for key in DATE_KEYS:
        value = row.get(key)
        if isinstance(value, str) and "," in value:
            return value
    first = next(iter(row.values()), None)
    if isinstance(first, str) and "," in first:
        return first
    return None


def normalize_aoi_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Undo the AOI export quirk that packs a whole record into its first column."""

    packed = _packed_record(row)
    if packed is not None:
        parts = [part.strip() for part in packed.split(",")]
        if len(parts) >= AOI_MIN_PACKED_PARTS:
            return {
                name: parts[index] if index < len(parts) else ""
                for index, name in enumerate(AOI_COLUMNS)
            }
    return dict(row)


def parse_aoi_csv(text: str) -> List[Dict[str, Any]]:
    """Read an AOI CSV export into row dictionaries keyed by its header."""

    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    return [
        {key: value for key, value in row.items() if key is not None}
        for row in reader
    ]


class DefectAggregator:
    """Reduces per-defect AOI rows to one inspection record per physical unit."""

    def __init__(
        self,
        work_orders: Repository[WorkOrder],
        aoi_inspections: Repository[AoiInspection],
        *,
        utc_offset_hours: int = 8,
    ) -> None:
        self._work_orders = work_orders
        self._inspections = aoi_inspections
        self._utc_offset_hours = utc_offset_hours

    def list_aoi_inspections(self, *, work_order_id: Optional[str] = None) -> List[AoiInspection]:
        if work_order_id is None:
            return self._inspections.list()
        return self._inspections.filter(work_order_id=work_order_id)

    def create_aoi_inspection(
        self,
        work_order_id: str,
        rfid_code: str,
        result: Any,
        *,
        defect_type: str = "",
        defect_count: int = 0,
        defect_positions: Iterable[DefectPosition] = (),
        image_path: str = "",
        operator_name: str = "",
        inspected_at: Optional[datetime] = None,
        import_batch: str = "",
        signature: str = "",
    ) -> AoiInspection:
        if not rfid_code:
            raise ValidationError("rfid_code is required")
        work_order = self._work_orders.get(work_order_id)
        return self._store(
            work_order,
            AoiInspection(
                rfid_code=rfid_code,
                result=_parse_result(result),
                defect_type=defect_type,
                defect_count=defect_count,
                defect_positions=list(defect_positions),
                image_path=image_path,
                operator_name=operator_name,
                inspected_at=inspected_at,
                import_batch=import_batch,
                signature=signature,
            ),
        )

    def _store(self, work_order: WorkOrder, inspection: AoiInspection) -> AoiInspection:
        inspection.inspection_number = inspection.inspection_number or document_number(
            "AOI", utc_offset_hours=self._utc_offset_hours
        )
        inspection.work_order_id = work_order.id
        inspection.order_number = work_order.order_number
        inspection.product_model = work_order.product_model
        inspection.inspected_at = inspection.inspected_at or utcnow()
        return self._inspections.add(inspection)

    @staticmethod
    def aggregate(rows: Iterable[Mapping[str, Any]]) -> List[_SerialDefects]:
        """Group rows by serial in first-seen order; rows without a serial are dropped."""

        by_serial: Dict[str, _SerialDefects] = {}
        for row in rows:
            parsed = normalize_aoi_row(row)
            serial = _first_value(parsed, SERIAL_KEYS)
            if not serial:
                continue
            group = by_serial.setdefault(serial, _SerialDefects(serial=serial))
            if _first_value(parsed, RESULT_KEYS).lower() in DEFECT_RESULTS:
                group.defect_count += 1
                group.positions.append(
                    DefectPosition(
                        x=_first_value(parsed, POSITION_X_KEYS),
                        y=_first_value(parsed, POSITION_Y_KEYS),
                    )
                )
        return list(by_serial.values())

    def import_aoi_csv(
        self,
        work_order_id: str,
        rows: Sequence[Mapping[str, Any]],
        operator_name: str = "",
    ) -> ImportSummary:
        work_order = self._work_orders.get(work_order_id)
        import_batch = str(uuid4())
        groups = self.aggregate(rows)
        details: List[ImportResult] = []
        for index, group in enumerate(groups, start=1):
            defective = group.defect_count > 0
            try:
                inspection = self._store(
                    work_order,
                    AoiInspection(
                        rfid_code=group.serial,
                        result=InspectionResult.NG if defective else InspectionResult.PASS,
                        defect_type="damage" if defective else "",
                        defect_count=group.defect_count,
                        defect_positions=group.positions,
                        operator_name=operator_name,
                        import_batch=import_batch,
                    ),
                )
            except RepositoryError as exc:
                logger.warning(
                    "AOI import %s: could not record serial %s: %s",
                    import_batch,
                    group.serial,
                    exc,
                )
                details.append(
                    ImportResult(
                        row=index,
                        serial=group.serial,
                        success=False,
                        defect_count=group.defect_count,
                        error=str(exc),
                    )
                )
                continue
            details.append(
                ImportResult(
                    row=index,
                    serial=group.serial,
                    success=True,
                    id=inspection.id,
                    defect_count=group.defect_count,
                )
            )

        succeeded = sum(1 for result in details if result.success)
        summary = ImportSummary(
            import_batch=import_batch,
            total_rows=len(rows),
            unique_serials=len(groups),
            success=succeeded,
            failed=len(details) - succeeded,
            details=details,
        )
        logger.info(
            "AOI import %s for work order %s: %d rows, %d units, %d recorded, %d failed",
            import_batch,
            work_order.order_number,
            summary.total_rows,
            summary.unique_serials,
            summary.success,
            summary.failed,
        )
        return summary


__all__ = [
    "DEFAULT_SAMPLE_RATE",
    "SamplingWindow",
    "SamplingSummary",
    "SamplingPlanner",
    "plan_sampling",
    "ImportResult",
    "ImportSummary",
    "DefectAggregator",
    "normalize_aoi_row",
    "parse_aoi_csv",
]
