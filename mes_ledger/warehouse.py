"""Location-based warehouse ledger and stock-take reconciliation.

Inventory items are the current-state view; the movement log is the audit
trail. Every state change of an item is paired with exactly one movement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

from .domain import (
    EXTERNAL_LOCATION,
    InventoryItem,
    InventoryStatus,
    Movement,
    MovementType,
    StockTake,
    StockTakeDetail,
    StockTakeStatus,
    WorkOrder,
    utcnow,
)
from .errors import ValidationError
from .locks import KeyedLock
from .numbering import document_number, stock_take_number
from .repository import Repository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LocationSummary:
    location_code: str
    item_count: int = 0
    total_qty: int = 0


@dataclass(slots=True)
class CountedItem:
    inventory_id: str
    actual_qty: int
    notes: str = ""


@dataclass(slots=True)
class StockTakeSummary:
    stock_take: StockTake
    details: List[StockTakeDetail] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return self.stock_take.total_items

    @property
    def adjusted_items(self) -> int:
        return self.stock_take.adjusted_items


class InventoryLedger:
    """Inbound, outbound and transfer of tagged stock between locations."""

    def __init__(
        self,
        work_orders: Repository[WorkOrder],
        inventory: Repository[InventoryItem],
        movements: Repository[Movement],
        *,
        utc_offset_hours: int = 8,
    ) -> None:
        self._work_orders = work_orders
        self._inventory = inventory
        self._movements = movements
        self._utc_offset_hours = utc_offset_hours
        self.item_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_item(self, item_id: str) -> InventoryItem:
        return self._inventory.get(item_id)

    def list_inventory(self, *, location_code: Optional[str] = None) -> List[InventoryItem]:
        if location_code is None:
            return self._inventory.list()
        return self._inventory.filter(location_code=location_code)

    def list_movements(
        self,
        *,
        barcode: Optional[str] = None,
        movement_type: Optional[MovementType] = None,
        location_code: Optional[str] = None,
    ) -> List[Movement]:
        movements = self._movements.list()
        if barcode is not None:
            movements = [m for m in movements if m.barcode == barcode]
        if movement_type is not None:
            try:
                wanted = MovementType(movement_type)
            except ValueError as exc:
                raise ValidationError(f"Unknown movement_type {movement_type!r}") from exc
            movements = [m for m in movements if m.movement_type == wanted]
        if location_code is not None:
            movements = [
                m
                for m in movements
                if location_code in (m.from_location, m.to_location)
            ]
        return movements

    def location_summary(
        self, location_codes: Optional[Sequence[str]] = None
    ) -> List[LocationSummary]:
        """Item count and total quantity per location.

        When ``location_codes`` is given, every listed location is reported (in
        that order, empty ones included) and other locations are left out.
        """

        summaries: Dict[str, LocationSummary] = {}
        if location_codes is not None:
            for code in location_codes:
                summaries[code] = LocationSummary(location_code=code)
        for item in self._inventory.list():
            summary = summaries.get(item.location_code)
            if summary is None:
                if location_codes is not None:
                    continue
                summary = summaries[item.location_code] = LocationSummary(item.location_code)
            summary.item_count += 1
            summary.total_qty += item.quantity
        if location_codes is not None:
            return list(summaries.values())
        return sorted(summaries.values(), key=lambda summary: summary.location_code)

    # ------------------------------------------------------------------
    # Ledger operations
    # ------------------------------------------------------------------
    def append_movement(
        self,
        item: InventoryItem,
        movement_type: MovementType,
        *,
        from_location: str,
        to_location: str,
        quantity: int,
        operator_name: str,
        reason: str,
    ) -> Movement:
        movement = self._movements.add(
            Movement(
                movement_number=document_number("MV", utc_offset_hours=self._utc_offset_hours),
                from_location=from_location,
                to_location=to_location,
                work_order_id=item.work_order_id,
                order_number=item.order_number,
                product_model=item.product_model,
                quantity=quantity,
                barcode=item.barcode,
                movement_type=movement_type,
                operator_name=operator_name,
                reason=reason,
            )
        )
        logger.info(
            "Movement %s %s %s: %s -> %s qty %d by %s",
            movement.movement_number,
            movement_type.value,
            item.barcode,
            from_location,
            to_location,
            quantity,
            operator_name or "-",
        )
        return movement

    def inbound(
        self,
        location_code: str,
        work_order_id: str = "",
        quantity: int = 1,
        barcode: str = "",
        operator_name: str = "",
        *,
        reason: str = "Inbound",
    ) -> InventoryItem:
        if not location_code:
            raise ValidationError("location_code is required")
        if location_code == EXTERNAL_LOCATION:
            raise ValidationError(f"{EXTERNAL_LOCATION} is not a storage location")
        if not barcode:
            raise ValidationError("barcode is required")
        try:
            quantity = int(quantity)
        except (TypeError, ValueError) as exc:
            raise ValidationError("quantity must be an integer") from exc
        if quantity <= 0:
            raise ValidationError("quantity must be greater than zero")

        with self.item_locks.hold(f"barcode:{barcode}"):
            if self._inventory.filter(barcode=barcode):
                raise ValidationError(f"Barcode {barcode} is already in stock")
            item = InventoryItem(
                location_code=location_code,
                work_order_id=work_order_id,
                quantity=quantity,
                barcode=barcode,
                status=InventoryStatus.IN_STOCK,
                inbound_date=utcnow(),
            )
            work_order = self._work_orders.find(work_order_id) if work_order_id else None
            if work_order is not None:
                item.order_number = work_order.order_number
                item.product_model = work_order.product_model
                item.customer_name = work_order.customer_name

            item = self._inventory.add(item)
            try:
                self.append_movement(
                    item,
                    MovementType.INBOUND,
                    from_location=EXTERNAL_LOCATION,
                    to_location=location_code,
                    quantity=quantity,
                    operator_name=operator_name,
                    reason=reason,
                )
            except Exception:
                logger.exception(
                    "Inbound movement for %s failed; withdrawing item %s", barcode, item.id
                )
                self._inventory.remove(item.id)
                raise
        return item

    def outbound(
        self, item_id: str, operator_name: str = "", reason: str = "Outbound"
    ) -> Movement:
        with self.item_locks.hold(item_id):
            item = self._inventory.get(item_id)
            movement = self.append_movement(
                item,
                MovementType.OUTBOUND,
                from_location=item.location_code,
                to_location=EXTERNAL_LOCATION,
                quantity=item.quantity,
                operator_name=operator_name,
                reason=reason,
            )
            try:
                self._inventory.remove(item.id)
            except Exception:
                logger.exception(
                    "Movement %s recorded but item %s could not be removed",
                    movement.movement_number,
                    item.id,
                )
                raise
        return movement

    def transfer(
        self,
        item_id: str,
        to_location: str,
        operator_name: str = "",
        reason: str = "Transfer",
    ) -> Movement:
        if not to_location:
            raise ValidationError("to_location is required")
        if to_location == EXTERNAL_LOCATION:
            raise ValidationError("Use outbound to move stock out of the warehouse")
        with self.item_locks.hold(item_id):
            item = self._inventory.get(item_id)
            if item.location_code == to_location:
                raise ValidationError(f"Item {item.barcode} is already at {to_location}")
            movement = self.append_movement(
                item,
                MovementType.TRANSFER,
                from_location=item.location_code,
                to_location=to_location,
                quantity=item.quantity,
                operator_name=operator_name,
                reason=reason,
            )
            try:
                self._inventory.update(item, location_code=to_location)
            except Exception:
                logger.exception(
                    "Movement %s recorded but item %s was not relocated",
                    movement.movement_number,
                    item.id,
                )
                raise
        return movement


class StockTakeReconciler:
    """Reconciles physical counts at a location against the ledger."""

    def __init__(
        self,
        ledger: InventoryLedger,
        inventory: Repository[InventoryItem],
        stock_takes: Repository[StockTake],
        stock_take_details: Repository[StockTakeDetail],
        *,
        utc_offset_hours: int = 8,
    ) -> None:
        self._ledger = ledger
        self._inventory = inventory
        self._stock_takes = stock_takes
        self._details = stock_take_details
        self._utc_offset_hours = utc_offset_hours

    def list_stock_takes(self, *, location_code: Optional[str] = None) -> List[StockTake]:
        if location_code is None:
            return self._stock_takes.list()
        return self._stock_takes.filter(location_code=location_code)

    def get_stock_take_details(self, stock_take_id: str) -> List[StockTakeDetail]:
        return self._details.filter(stock_take_id=stock_take_id)

    @staticmethod
    def _coerce(entry: Union[CountedItem, Mapping[str, Any]]) -> CountedItem:
        if isinstance(entry, CountedItem):
            counted = entry
        else:
            counted = CountedItem(
                inventory_id=str(entry.get("inventory_id") or ""),
                actual_qty=entry.get("actual_qty"),  # type: ignore[arg-type]
                notes=str(entry.get("notes") or ""),
            )
        if not counted.inventory_id:
            raise ValidationError("Each counted item needs an inventory_id")
        try:
            counted.actual_qty = int(counted.actual_qty)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"actual_qty for {counted.inventory_id} must be an integer"
            ) from exc
        if counted.actual_qty < 0:
            raise ValidationError(f"actual_qty for {counted.inventory_id} must not be negative")
        return counted

    def create_stock_take(
        self,
        location_code: str,
        operator_name: str,
        counted_items: Sequence[Union[CountedItem, Mapping[str, Any]]],
        *,
        location_name: str = "",
        notes: str = "",
    ) -> StockTakeSummary:
        if not location_code:
            raise ValidationError("location_code is required")
        counted = [self._coerce(entry) for entry in counted_items]
        seen = set()
        for entry in counted:
            if entry.inventory_id in seen:
                raise ValidationError(f"Item {entry.inventory_id} was counted twice")
            seen.add(entry.inventory_id)
            item = self._inventory.get(entry.inventory_id)
            if item.location_code != location_code:
                raise ValidationError(
                    f"Item {item.barcode} is stored at {item.location_code}, not {location_code}"
                )

        header = StockTake(
            stock_take_number=stock_take_number(utc_offset_hours=self._utc_offset_hours),
            location_code=location_code,
            location_name=location_name,
            operator_name=operator_name,
            total_items=len(counted),
            status=StockTakeStatus.COMPLETED,
            notes=notes,
        )
        # The header is written last; details reference its id up front.
        header.id = str(uuid4())
        details: List[StockTakeDetail] = []
        adjusted = 0
        try:
            for entry in counted:
                detail = self._count_item(header, entry)
                details.append(detail)
                if detail.diff_qty != 0:
                    adjusted += 1
            header.adjusted_items = adjusted
            header = self._stock_takes.add(header)
        except Exception:
            logger.exception(
                "Stock take %s at %s stopped after %d of %d items",
                header.stock_take_number,
                location_code,
                len(details),
                len(counted),
            )
            raise
        logger.info(
            "Stock take %s at %s: %d items counted, %d adjusted",
            header.stock_take_number,
            location_code,
            header.total_items,
            header.adjusted_items,
        )
        return StockTakeSummary(stock_take=header, details=details)

    def _count_item(self, header: StockTake, entry: CountedItem) -> StockTakeDetail:
        with self._ledger.item_locks.hold(entry.inventory_id):
            item = self._inventory.get(entry.inventory_id)
            if item.location_code != header.location_code:
                raise ValidationError(
                    f"Item {item.barcode} moved to {item.location_code} during the stock take"
                )
            diff = entry.actual_qty - item.quantity
            detail = self._details.add(
                StockTakeDetail(
                    stock_take_id=header.id,
                    inventory_id=item.id,
                    barcode=item.barcode,
                    order_number=item.order_number,
                    product_model=item.product_model,
                    system_qty=item.quantity,
                    actual_qty=entry.actual_qty,
                    diff_qty=diff,
                    notes=entry.notes,
                )
            )
            if diff == 0:
                return detail
            movement = self._ledger.append_movement(
                item,
                MovementType.ADJUSTMENT,
                from_location=item.location_code,
                to_location=item.location_code,
                quantity=diff,
                operator_name=header.operator_name,
                reason=f"Stock take adjustment: {diff:+d}",
            )
            try:
                self._inventory.update(item, quantity=entry.actual_qty)
            except Exception:
                logger.exception(
                    "Movement %s recorded but item %s was not adjusted",
                    movement.movement_number,
                    item.id,
                )
                raise
        return detail


__all__ = [
    "LocationSummary",
    "CountedItem",
    "StockTakeSummary",
    "InventoryLedger",
    "StockTakeReconciler",
]
