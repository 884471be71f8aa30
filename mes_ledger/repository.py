"""Record stores and typed repositories used by the ledgers.

A record store keeps plain ``dict`` records in named collections. Every record
carries an ``id``, a ``created_at`` timestamp and a ``version`` counter that is
bumped on each update; callers pass the version they read to get
compare-and-set semantics. :class:`Repository` wraps one collection and converts
between records and the dataclasses of :mod:`mes_ledger.domain`.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)
from uuid import uuid4

from .domain import (
    AoiInspection,
    Dispatch,
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
    utcnow,
)
from .errors import (
    DuplicateRecordError,
    PersistenceUnavailable,
    RecordNotFoundError,
    StaleRecordError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Fields owned by the store; patches never overwrite them.
RESERVED_FIELDS = frozenset({"id", "version", "created_at"})

_TRUE_STRINGS = {"true", "1", "yes", "y"}


# ----------------------------------------------------------------------
# Record codec
# ----------------------------------------------------------------------
def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return to_record(value)
    if isinstance(value, (list, tuple)):
        return [_encode(entry) for entry in value]
    return value


def to_record(item: Any) -> Dict[str, Any]:
    """Flatten a domain dataclass into a JSON-compatible record."""

    return {f.name: _encode(getattr(item, f.name)) for f in fields(item)}


_hints_cache: Dict[type, Dict[str, Any]] = {}


def _type_hints(cls: type) -> Dict[str, Any]:
    hints = _hints_cache.get(cls)
    if hints is None:
        hints = get_type_hints(cls)
        _hints_cache[cls] = hints
    return hints


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _decode(tp: Any, value: Any) -> Any:
    origin = get_origin(tp)
    if origin is Union:
        members = [arg for arg in get_args(tp) if arg is not type(None)]
        return _decode(members[0], value) if members else value
    if origin is list:
        args = get_args(tp)
        if isinstance(value, str):
            # Older rows kept nested lists as a JSON string inside the field.
            value = json.loads(value) if value.strip() else []
        item_type = args[0] if args else Any
        return [_decode(item_type, entry) for entry in value]
    if not isinstance(tp, type):
        return value
    if issubclass(tp, Enum):
        return tp(value)
    if tp is bool:
        return _as_bool(value)
    if tp is int:
        return value if isinstance(value, int) else int(float(value))
    if tp is float:
        return float(value)
    if tp is str:
        return str(value)
    if tp is datetime:
        return _as_datetime(value)
    if tp is date:
        return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
    if is_dataclass(tp):
        return from_record(tp, value)
    return value


def from_record(cls: Type[T], record: Mapping[str, Any]) -> T:
    """Build ``cls`` from a record, tolerating missing, extra and blank fields."""

    hints = _type_hints(cls)
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in record:
            continue
        value = record[f.name]
        if value is None:
            continue
        if value == "" and hints[f.name] is not str:
            continue
        kwargs[f.name] = _decode(hints[f.name], value)
    return cls(**kwargs)


# ----------------------------------------------------------------------
# Record stores
# ----------------------------------------------------------------------
class RecordStore(Protocol):
    """Keyed record collections."""

    def list(self, collection: str) -> List[Dict[str, Any]]:
        ...

    def get(self, collection: str, record_id: str) -> Dict[str, Any]:
        ...

    def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    def update_by_id(
        self,
        collection: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        ...

    def delete_by_id(self, collection: str, record_id: str) -> None:
        ...


def prepare_insert(record: Mapping[str, Any]) -> Dict[str, Any]:
    prepared = dict(record)
    prepared["id"] = prepared.get("id") or str(uuid4())
    if not prepared.get("created_at"):
        prepared["created_at"] = utcnow().isoformat()
    prepared["version"] = 1
    return prepared


def apply_patch(current: MutableMapping[str, Any], patch: Mapping[str, Any]) -> None:
    for key, value in patch.items():
        if key not in RESERVED_FIELDS:
            current[key] = value
    current["version"] = int(current.get("version") or 0) + 1
    current["updated_at"] = utcnow().isoformat()


class InMemoryRecordStore:
    """Record store backed by dictionaries, safe to share between threads."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self._table(collection).values())
        return [copy.deepcopy(row) for row in reversed(rows)]

    def get(self, collection: str, record_id: str) -> Dict[str, Any]:
        with self._lock:
            row = self._table(collection).get(record_id)
            if row is None:
                raise RecordNotFoundError(
                    f"{collection} record with id {record_id!r} not found"
                )
            return copy.deepcopy(row)

    def insert(self, collection: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        prepared = prepare_insert(copy.deepcopy(dict(record)))
        with self._lock:
            table = self._table(collection)
            if prepared["id"] in table:
                raise DuplicateRecordError(
                    f"{collection} record with id {prepared['id']!r} already exists"
                )
            table[prepared["id"]] = prepared
            return copy.deepcopy(prepared)

    def update_by_id(
        self,
        collection: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            current = self._table(collection).get(record_id)
            if current is None:
                raise RecordNotFoundError(
                    f"{collection} record with id {record_id!r} not found"
                )
            if expected_version is not None and current.get("version") != expected_version:
                raise StaleRecordError(
                    f"{collection} record {record_id!r} changed since it was read "
                    f"(expected version {expected_version}, found {current.get('version')})"
                )
            apply_patch(current, copy.deepcopy(dict(patch)))
            return copy.deepcopy(current)

    def delete_by_id(self, collection: str, record_id: str) -> None:
        with self._lock:
            table = self._table(collection)
            if record_id not in table:
                raise RecordNotFoundError(
                    f"{collection} record with id {record_id!r} not found"
                )
            del table[record_id]


# ----------------------------------------------------------------------
# Typed repositories
# ----------------------------------------------------------------------
class Repository(Generic[T]):
    """One record collection seen as domain objects of type ``T``.

    Calls that fail with :class:`PersistenceUnavailable` are retried up to
    ``retry_attempts`` times in total before the error is surfaced.
    """

    def __init__(
        self,
        store: RecordStore,
        collection: str,
        record_type: Type[T],
        *,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        self._store = store
        self.collection = collection
        self.record_type = record_type
        self._field_names = {f.name for f in fields(record_type)}
        self._retry_attempts = max(retry_attempts, 1)
        self._retry_delay = max(retry_delay, 0.0)

    def _call(self, operation: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        attempt = 1
        while True:
            try:
                return operation(*args, **kwargs)
            except PersistenceUnavailable:
                if attempt >= self._retry_attempts:
                    raise
                logger.warning(
                    "Record store unavailable for %s (attempt %d/%d), retrying",
                    self.collection,
                    attempt,
                    self._retry_attempts,
                )
                attempt += 1
                if self._retry_delay:
                    time.sleep(self._retry_delay)

    def _decode(self, record: Mapping[str, Any]) -> T:
        return from_record(self.record_type, record)

    def _encode_changes(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - self._field_names
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {self.record_type.__name__}: {', '.join(sorted(unknown))}"
            )
        return {key: _encode(value) for key, value in changes.items()}

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        return self.find(item_id) is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        return len(self._call(self._store.list, self.collection))

    def add(self, item: T) -> T:
        # The id is fixed before retrying so a replayed insert cannot create a twin.
        record = to_record(item)
        record["id"] = record.get("id") or str(uuid4())
        stored = self._call(self._store.insert, self.collection, record)
        return self._decode(stored)

    def get(self, item_id: str) -> T:
        return self._decode(self._call(self._store.get, self.collection, item_id))

    def find(self, item_id: str) -> Optional[T]:
        try:
            return self.get(item_id)
        except RecordNotFoundError:
            return None

    def list(self) -> List[T]:
        """Return all records, newest first."""

        return [self._decode(row) for row in self._call(self._store.list, self.collection)]

    def filter(self, **criteria: Any) -> List[T]:
        return [
            item
            for item in self.list()
            if all(getattr(item, key) == value for key, value in criteria.items())
        ]

    def update(self, item: T, **changes: Any) -> T:
        """Write ``changes`` only if ``item`` is still the stored version."""

        stored = self._call(
            self._store.update_by_id,
            self.collection,
            getattr(item, "id"),
            self._encode_changes(changes),
            expected_version=getattr(item, "version"),
        )
        return self._decode(stored)

    def patch(self, item_id: str, **changes: Any) -> T:
        """Unconditional field update (last writer wins)."""

        stored = self._call(
            self._store.update_by_id,
            self.collection,
            item_id,
            self._encode_changes(changes),
        )
        return self._decode(stored)

    def remove(self, item_id: str) -> None:
        self._call(self._store.delete_by_id, self.collection, item_id)


class RepositorySet:
    """All typed repositories over a single record store."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        *,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
    ) -> None:
        self.store: RecordStore = store if store is not None else InMemoryRecordStore()

        def repo(collection: str, record_type: Type[T]) -> Repository[T]:
            return Repository(
                self.store,
                collection,
                record_type,
                retry_attempts=retry_attempts,
                retry_delay=retry_delay,
            )

        self.work_orders = repo("work_orders", WorkOrder)
        self.dispatches = repo("dispatches", Dispatch)
        self.reports = repo("reports", Report)
        self.ng_details = repo("ng_details", NgDetail)
        self.outgassing_tests = repo("outgassing_tests", OutgassingTest)
        self.aoi_inspections = repo("aoi_inspections", AoiInspection)
        self.inventory = repo("wms_inventory", InventoryItem)
        self.movements = repo("wms_movements", Movement)
        self.stock_takes = repo("wms_stock_takes", StockTake)
        self.stock_take_details = repo("wms_stock_take_details", StockTakeDetail)
        self.labels = repo("r0_labels", R0Label)
        self.epc_history = repo("epc_history", EpcHistory)


__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "Repository",
    "RepositorySet",
    "to_record",
    "from_record",
    "prepare_insert",
    "apply_patch",
]
