import threading

import pytest

from multiverso.lock import LockManager


def _try_lock_in_thread(manager, id):
    acquired = threading.Event()

    def worker():
        manager.lock(id)
        acquired.set()
        manager.unlock(id)

    thread = threading.Thread(target=worker)
    thread.start()
    return acquired, thread


def test_size():
    assert len(LockManager(5)) == 5


def test_invalid_size():
    with pytest.raises(ValueError):
        LockManager(0)


def test_ids_sharing_a_slot_block_each_other():
    manager = LockManager(4)
    manager.lock(1)
    acquired, thread = _try_lock_in_thread(manager, 5)
    assert acquired.wait(0.1) is False
    manager.unlock(1)
    assert acquired.wait(2) is True
    thread.join(2)


def test_different_slots_do_not_block():
    manager = LockManager(4)
    manager.lock(1)
    acquired, thread = _try_lock_in_thread(manager, 2)
    assert acquired.wait(2) is True
    thread.join(2)
    manager.unlock(1)


def test_locked_context_releases():
    manager = LockManager(2)
    with manager.locked(3):
        acquired, thread = _try_lock_in_thread(manager, 1)
        assert acquired.wait(0.1) is False
    assert acquired.wait(2) is True
    thread.join(2)


def test_unlock_without_lock_raises():
    with pytest.raises(RuntimeError):
        LockManager(2).unlock(0)