"""Tests for the per-user lock registry."""
import gc
import threading

import pytest

from atelier.core.errors import LockTimeoutError
from atelier.core.locks import UserLockRegistry


def test_same_user_shares_lock_while_referenced():
    registry = UserLockRegistry()
    first = registry.get("u1")
    assert registry.get("u1") is first
    assert registry.get("u2") is not first


def test_entries_released_when_unused():
    registry = UserLockRegistry()
    with registry.hold("u1"):
        assert len(registry) == 1
    gc.collect()
    assert len(registry) == 0


def test_hold_times_out_when_user_is_busy():
    registry = UserLockRegistry()
    entered = threading.Event()
    release = threading.Event()

    def holder():
        with registry.hold("u1"):
            entered.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    entered.wait(5)
    try:
        with pytest.raises(LockTimeoutError) as exc_info:
            with registry.hold("u1", timeout=0.05):
                pass
        assert exc_info.value.status_code == 409
    finally:
        release.set()
        thread.join()


def test_different_users_do_not_contend():
    registry = UserLockRegistry()
    with registry.hold("u1"):
        with registry.hold("u2", timeout=0.05):
            pass
