import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from outreach_app.engine.locks import IdentityLockManager, LockTimeout
from outreach_app.models import IdentityLease, db


class ManualNow:
    def __init__(self):
        self.value = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.value


def _leases():
    db.session.expire_all()
    return {lease.key: lease for lease in IdentityLease.query.all()}


def test_acquire_and_release_round_trip(app):
    manager = IdentityLockManager(lease_seconds=60, wait_seconds=1)

    with manager.hold(["phone:1", "email:a@b.c"]) as lock:
        assert lock.keys == ("email:a@b.c", "phone:1")
        held = _leases()
        assert set(held) == {"email:a@b.c", "phone:1"}
        assert {lease.owner_token for lease in held.values()} == {lock.owner_token}

    assert _leases() == {}


def test_empty_key_set_is_a_no_op(app):
    manager = IdentityLockManager()
    with manager.hold([]) as lock:
        assert lock.keys == ()
    assert _leases() == {}


def test_held_lease_times_out_and_releases_partial_claims(app):
    holder = IdentityLockManager(lease_seconds=60, wait_seconds=0)
    waiter = IdentityLockManager(lease_seconds=60, wait_seconds=0.05, poll_seconds=0.01)

    lock = holder.acquire(["phone:2"])
    with pytest.raises(LockTimeout) as excinfo:
        waiter.acquire(["email:x@y.z", "phone:2"])

    assert excinfo.value.key == "phone:2"
    # The waiter's claim on the first key was rolled back
    assert set(_leases()) == {"phone:2"}
    holder.release(lock)


def test_expired_lease_is_taken_over(app):
    now = ManualNow()
    crashed = IdentityLockManager(lease_seconds=60, now=now)
    crashed.acquire(["phone:3"])

    now.value += timedelta(seconds=61)
    successor = IdentityLockManager(lease_seconds=60, wait_seconds=0, now=now)
    lock = successor.acquire(["phone:3"])

    assert _leases()["phone:3"].owner_token == lock.owner_token


def test_release_only_removes_own_leases(app):
    now = ManualNow()
    first = IdentityLockManager(lease_seconds=60, now=now)
    stale = first.acquire(["phone:4"])
    now.value += timedelta(seconds=120)
    second = IdentityLockManager(lease_seconds=60, wait_seconds=0, now=now)
    current = second.acquire(["phone:4"])

    first.release(stale)

    assert _leases()["phone:4"].owner_token == current.owner_token


def test_purge_expired(app):
    now = ManualNow()
    manager = IdentityLockManager(lease_seconds=60, now=now)
    manager.acquire(["phone:5"])
    manager.acquire(["phone:6"])
    now.value += timedelta(seconds=90)

    assert manager.purge_expired() == 2
    assert _leases() == {}


def test_threads_are_serialized_per_key(app):
    manager = IdentityLockManager(lease_seconds=60, wait_seconds=5, poll_seconds=0.005)
    active = []
    overlaps = []
    guard = threading.Lock()

    def worker():
        with app.app_context():
            with manager.hold(["phone:7"]):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(True)
                time.sleep(0.02)
                with guard:
                    active.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert _leases() == {}
