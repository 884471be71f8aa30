# tests/test_cache.py
from __future__ import annotations

import pytest

from mes_ledger.cache import ReadCache
from mes_ledger.domain import WorkOrder
from mes_ledger.errors import ValidationError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_value_is_cached_until_ttl():
    clock = FakeClock()
    loads = []
    cache = ReadCache(lambda: loads.append(1) or len(loads), ttl_seconds=10, clock=clock)

    assert cache.get() == 1
    assert cache.get() == 1
    assert cache.is_populated

    clock.now = 10.5
    assert not cache.is_populated
    assert cache.get() == 2


def test_invalidate_forces_reload():
    loads = []
    cache = ReadCache(lambda: loads.append(1) or len(loads))
    cache.get()
    cache.invalidate()
    assert not cache.is_populated
    assert cache.get() == 2


def test_value_loaded_across_invalidate_is_not_kept():
    cache: ReadCache[int]
    loads = []

    def loader() -> int:
        loads.append(1)
        if len(loads) == 1:
            cache.invalidate()
        return len(loads)

    cache = ReadCache(loader)
    assert cache.get() == 1
    assert not cache.is_populated
    assert cache.get() == 2
    assert cache.is_populated


def test_snapshot_follows_mutations(mes):
    assert mes.snapshot().work_orders == []
    assert mes.snapshot_cache.is_populated

    order = mes.create_work_order(5)
    assert not mes.snapshot_cache.is_populated
    assert [o.id for o in mes.snapshot().work_orders] == [order.id]

    mes.delete_work_order(order.id)
    assert mes.snapshot().work_orders == []


def test_failed_mutation_still_invalidates(mes):
    mes.snapshot()
    with pytest.raises(ValidationError):
        mes.create_work_order(0)
    assert not mes.snapshot_cache.is_populated


def test_ledger_reads_bypass_the_cache(mes):
    mes.snapshot()
    # Written behind the service, so the cached snapshot is not told about it.
    order = mes.repositories.work_orders.add(WorkOrder(order_number="WO-SIDE", quantity=1))

    assert mes.snapshot().work_orders == []
    assert [o.id for o in mes.list_work_orders()] == [order.id]
    mes.clear_cache()
    assert [o.id for o in mes.snapshot().work_orders] == [order.id]
