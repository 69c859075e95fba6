import threading
import time

import pytest

from app.domain.flows.errors import FlowBusyError
from app.services.flow_locks import LocalLockRegistry


def test_waiters_enter_in_arrival_order():
    locks = LocalLockRegistry(timeout_secs=5.0)
    order = []
    first_in = threading.Event()

    def worker(name, hold_for=0.0):
        with locks.hold(1):
            if name == "a":
                first_in.set()
            order.append(name)
            time.sleep(hold_for)

    ta = threading.Thread(target=worker, args=("a", 0.2))
    ta.start()
    first_in.wait(2)
    others = []
    for name in ("b", "c", "d"):
        t = threading.Thread(target=worker, args=(name,))
        t.start()
        others.append(t)
        time.sleep(0.03)
    for t in [ta] + others:
        t.join(5)

    assert order == ["a", "b", "c", "d"]


def test_timeout_raises_busy_and_does_not_block_queue():
    locks = LocalLockRegistry(timeout_secs=0.05)
    release = threading.Event()
    holding = threading.Event()

    def holder():
        with locks.hold(7):
            holding.set()
            release.wait(2)

    t = threading.Thread(target=holder)
    t.start()
    holding.wait(2)
    with pytest.raises(FlowBusyError):
        with locks.hold(7):
            pass
    release.set()
    t.join(2)

    # o ticket abandonado não trava quem vem depois
    with locks.hold(7):
        pass


def test_different_leads_do_not_contend():
    locks = LocalLockRegistry(timeout_secs=0.05)
    with locks.hold(1):
        with locks.hold(2):
            pass
