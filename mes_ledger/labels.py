"""R0 carrier labels and the history of EPC codes written to them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .domain import EpcHistory, LabelHistoryEntry, R0Label, WorkOrder, utcnow
from .errors import ValidationError
from .repository import Repository, from_record

logger = logging.getLogger(__name__)

LABEL_EDITABLE_FIELDS = frozenset(
    {
        "current_epc",
        "work_order_id",
        "order_number",
        "customer_name",
        "product_model",
        "regeneration_status",
        "regeneration_count",
    }
)


@dataclass(slots=True)
class SyncResult:
    created: int
    updated: int
    total: int


class LabelRegistry:
    """Keeps one record per R0 code with an ordered, typed history."""

    def __init__(self, labels: Repository[R0Label]) -> None:
        self._labels = labels

    def list_labels(self) -> List[R0Label]:
        return self._labels.list()

    def find_by_code(self, r0_code: str) -> Optional[R0Label]:
        matches = self._labels.filter(r0_code=r0_code)
        return matches[0] if matches else None

    def create_label(
        self,
        r0_code: str,
        *,
        history: Iterable[LabelHistoryEntry] = (),
        **fields: Any,
    ) -> R0Label:
        if not r0_code:
            raise ValidationError("r0_code is required")
        if self.find_by_code(r0_code) is not None:
            raise ValidationError(f"Label {r0_code} already exists")
        unknown = set(fields) - LABEL_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown label field(s): {', '.join(sorted(unknown))}")
        label = R0Label(r0_code=r0_code, history=list(history), **fields)
        return self._labels.add(label)

    def update_label(
        self,
        label_id: str,
        *,
        history_entry: Optional[LabelHistoryEntry] = None,
        **changes: Any,
    ) -> R0Label:
        unknown = set(changes) - LABEL_EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown label field(s): {', '.join(sorted(unknown))}")
        label = self._labels.get(label_id)
        if history_entry is not None:
            history_entry.at = history_entry.at or utcnow()
            changes["history"] = [*label.history, history_entry]
        return self._labels.update(label, **changes)

    def sync_labels(self, labels: Iterable[Mapping[str, Any]]) -> SyncResult:
        """Upsert labels pushed by a client device, matched on ``r0_code``."""

        existing: Dict[str, R0Label] = {label.r0_code: label for label in self._labels.list()}
        created = updated = total = 0
        for payload in labels:
            total += 1
            incoming = from_record(R0Label, payload)
            if not incoming.r0_code:
                raise ValidationError("Every synced label needs an r0_code")
            changes = {
                name: getattr(incoming, name)
                for name in LABEL_EDITABLE_FIELDS
                if name in payload
            }
            if "history" in payload:
                changes["history"] = incoming.history
            current = existing.get(incoming.r0_code)
            if current is None:
                existing[incoming.r0_code] = self._labels.add(incoming)
                created += 1
            else:
                existing[incoming.r0_code] = self._labels.update(current, **changes)
                updated += 1
        logger.info("Synced %d labels (%d created, %d updated)", total, created, updated)
        return SyncResult(created=created, updated=updated, total=total)


class EpcHistoryLog:
    """Append-only record of the EPC codes a regenerated unit was re-tagged with.

    A re-code links the tag a unit arrived with (``old_epc``) to the tag it
    leaves with (``new_epc``). Looking a tag up by ``new_epc`` tells a station
    which work order produced it.
    """

    def __init__(
        self, work_orders: Repository[WorkOrder], epc_history: Repository[EpcHistory]
    ) -> None:
        self._work_orders = work_orders
        self._epc_history = epc_history

    def record_epc_change(
        self,
        work_order_id: str,
        new_epc: str,
        old_epc: str = "",
        *,
        operator_name: str = "",
        notes: str = "",
    ) -> EpcHistory:
        if not new_epc:
            raise ValidationError("new_epc is required")
        if new_epc == old_epc:
            raise ValidationError(f"EPC {new_epc} was not changed")
        work_order = self._work_orders.get(work_order_id)
        entry = self._epc_history.add(
            EpcHistory(
                work_order_id=work_order.id,
                order_number=work_order.order_number,
                product_model=work_order.product_model,
                old_epc=old_epc,
                new_epc=new_epc,
                operator_name=operator_name,
                notes=notes,
            )
        )
        logger.info(
            "Re-coded %s -> %s for work order %s",
            old_epc or "-",
            new_epc,
            work_order.order_number,
        )
        return entry

    def list_epc_history(self, *, work_order_id: Optional[str] = None) -> List[EpcHistory]:
        if work_order_id is None:
            return self._epc_history.list()
        return self._epc_history.filter(work_order_id=work_order_id)

    def find_last_record(self, epc: str) -> Optional[EpcHistory]:
        """Most recent re-code that produced ``epc``, or ``None`` for an unknown tag."""

        matches = self._epc_history.filter(new_epc=epc)
        return matches[0] if matches else None


__all__ = ["LabelRegistry", "SyncResult", "EpcHistoryLog"]
