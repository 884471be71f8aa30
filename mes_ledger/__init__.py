"""Manufacturing execution ledger for tagged, regenerated production units.

This package provides the data models, versioned persistence and services
that carry work orders through dispatch and production reporting, plan
outgassing samples, aggregate AOI defects and keep a location-based
warehouse ledger with stock takes.
"""

from .domain import (
    Dispatch,
    DispatchStatus,
    InventoryItem,
    Movement,
    MovementType,
    OrderType,
    Report,
    WorkOrder,
    WorkOrderStatus,
)
from .errors import MESError
from .services import MESService, Snapshot

__all__ = [
    "Dispatch",
    "DispatchStatus",
    "InventoryItem",
    "Movement",
    "MovementType",
    "OrderType",
    "Report",
    "WorkOrder",
    "WorkOrderStatus",
    "MESError",
    "MESService",
    "Snapshot",
]
