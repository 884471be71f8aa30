# tests/test_locks.py
from __future__ import annotations

import threading

from mes_ledger.locks import KeyedLock


def test_key_is_dropped_after_release():
    locks = KeyedLock()
    with locks.hold("item-1"):
        assert len(locks) == 1
    assert len(locks) == 0


def test_key_is_dropped_when_body_raises():
    locks = KeyedLock()
    try:
        with locks.hold("item-1"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert len(locks) == 0


def test_waiters_share_one_slot_and_run_in_turn():
    locks = KeyedLock()
    held = threading.Event()
    release = threading.Event()
    order = []

    def first() -> None:
        with locks.hold("wo-1"):
            held.set()
            release.wait(timeout=5)
            order.append("first")

    def second() -> None:
        with locks.hold("wo-1"):
            order.append("second")

    one = threading.Thread(target=first)
    one.start()
    held.wait(timeout=5)
    two = threading.Thread(target=second)
    two.start()
    # The waiter must not get in while the key is held.
    two.join(timeout=0.1)
    assert order == []
    assert len(locks) == 1

    release.set()
    one.join()
    two.join()
    assert order == ["first", "second"]
    assert len(locks) == 0


def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0
