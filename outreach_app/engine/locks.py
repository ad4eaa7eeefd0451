"""
Lease-based identity locks.

A reconciliation claims one ``identity_leases`` row per match key (phone,
email, or member id) before it looks anything up in the store, and holds the
claim through persistence and back-linking. Leases expire on their own, so a
crashed worker can never block an identity for longer than
``LOCK_LEASE_SECONDS``; a waiting worker takes over an expired row.

Lease rows are written through a dedicated session so lock commits never flush
or expire objects the caller has pending on ``db.session``.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Sequence

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from outreach_app.metrics import record_lock_wait
from outreach_app.models import IdentityLease, db

logger = logging.getLogger(__name__)


class LockTimeout(RuntimeError):
    """Raised when an identity lease could not be claimed within the wait budget."""

    def __init__(self, key: str, *, waited_seconds: float):
        super().__init__(f"Timed out after {waited_seconds:.1f}s waiting for identity lease {key}")
        self.key = key
        self.waited_seconds = waited_seconds


@dataclass(frozen=True)
class IdentityLock:
    keys: tuple[str, ...]
    owner_token: str
    waited_seconds: float = 0.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityLockManager:
    def __init__(
        self,
        *,
        lease_seconds: float = 60.0,
        wait_seconds: float = 30.0,
        poll_seconds: float = 0.1,
        engine: Engine | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.lease_seconds = lease_seconds
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds
        self._engine = engine
        self._clock = clock
        self._sleep = sleep
        self._now = now

    @classmethod
    def from_config(cls, config, **overrides) -> "IdentityLockManager":
        kwargs = {
            "lease_seconds": float(config.get("LOCK_LEASE_SECONDS", 60.0)),
            "wait_seconds": float(config.get("LOCK_WAIT_SECONDS", 30.0)),
            "poll_seconds": float(config.get("LOCK_POLL_SECONDS", 0.1)),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine or db.engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _try_claim(self, session: Session, key: str, owner_token: str) -> bool:
        now = self._now()
        expires_at = now + timedelta(seconds=self.lease_seconds)
        session.add(IdentityLease(key=key, owner_token=owner_token, acquired_at=now, expires_at=expires_at))
        try:
            session.commit()
            return True
        except IntegrityError:
            session.rollback()

        # Held by someone else; take it over only if their lease has lapsed.
        result = session.execute(
            update(IdentityLease)
            .where(IdentityLease.key == key, IdentityLease.expires_at < now)
            .values(owner_token=owner_token, acquired_at=now, expires_at=expires_at)
        )
        session.commit()
        if result.rowcount == 1:
            logger.warning("Took over expired identity lease", extra={"lock_key": key})
            return True
        return False

    def acquire(self, keys: Sequence[str]) -> IdentityLock:
        """Claim every key (in sorted order) or raise :class:`LockTimeout`."""

        ordered = tuple(sorted(set(keys)))
        owner_token = uuid.uuid4().hex
        started = self._clock()
        claimed: list[str] = []
        with self._session() as session:
            try:
                for key in ordered:
                    while not self._try_claim(session, key, owner_token):
                        waited = self._clock() - started
                        if waited >= self.wait_seconds:
                            record_lock_wait(waited, timed_out=True)
                            raise LockTimeout(key, waited_seconds=waited)
                        self._sleep(self.poll_seconds)
                    claimed.append(key)
            except BaseException:
                if claimed:
                    self._delete(session, claimed, owner_token)
                raise
        waited = self._clock() - started
        record_lock_wait(waited)
        return IdentityLock(keys=ordered, owner_token=owner_token, waited_seconds=waited)

    def release(self, lock: IdentityLock) -> None:
        if not lock.keys:
            return
        with self._session() as session:
            self._delete(session, lock.keys, lock.owner_token)

    def _delete(self, session: Session, keys: Sequence[str], owner_token: str) -> None:
        session.execute(
            delete(IdentityLease).where(IdentityLease.key.in_(list(keys)), IdentityLease.owner_token == owner_token)
        )
        session.commit()

    @contextmanager
    def hold(self, keys: Sequence[str]) -> Iterator[IdentityLock]:
        lock = self.acquire(keys)
        try:
            yield lock
        finally:
            self.release(lock)

    def purge_expired(self) -> int:
        """Delete lapsed leases; returns the number removed."""

        with self._session() as session:
            result = session.execute(delete(IdentityLease).where(IdentityLease.expires_at < self._now()))
            session.commit()
            return result.rowcount or 0
