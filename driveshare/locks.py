# Per-vehicle locking that linearizes reservations and booking transitions.
# Three layers, outermost first:
#   1. an in-process lock per vehicle (threads of this worker),
#   2. a Redis SET NX PX lock (other workers; fail-open when Redis is down),
#   3. a SELECT ... FOR UPDATE on the vehicle row inside the transaction (server DBs).
# Every layer is bounded by a timeout so a stuck holder makes callers fail fast.
from __future__ import annotations

import logging
import os
import random
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Type, TypeVar
from uuid import uuid4

import redis
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import models
from .errors import LockTimeout, ReservationTimeout
from .redis_client import get_redis

logger = logging.getLogger("driveshare.locks")

LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
LOCK_TTL_MS = int(os.getenv("LOCK_TTL_MS", "10000"))
LOCK_RETRY_ATTEMPTS = int(os.getenv("LOCK_RETRY_ATTEMPTS", "3"))

# Release only if we still own the lock (token matches current value)
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

_local_locks: Dict[int, threading.Lock] = {}
_registry_guard = threading.Lock()

T = TypeVar("T")


def _local_lock(vehicle_id: int) -> threading.Lock:
    with _registry_guard:
        lock = _local_locks.get(vehicle_id)
        if lock is None:
            lock = threading.Lock()
            _local_locks[vehicle_id] = lock
        return lock


def _redis_key(vehicle_id: int) -> str:
    return f"lock:vehicle:{vehicle_id}"


def _acquire_redis(r: redis.Redis, key: str, token: str, deadline: float) -> bool:
    """Poll SET NX PX with jittered backoff until acquired or the deadline passes."""
    delay = 0.01
    while True:
        if r.set(key, token, nx=True, px=LOCK_TTL_MS):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(remaining, delay + random.uniform(0, delay)))
        delay = min(delay * 2, 0.25)


@contextmanager
def vehicle_lock(
    vehicle_id: int,
    timeout: Optional[float] = None,
    error: Type[LockTimeout] = ReservationTimeout,
) -> Iterator[None]:
    """
    Hold the critical section for one vehicle.

    Raises `error` (ReservationTimeout by default) when the lock cannot be acquired
    within `timeout` seconds. Different vehicles never contend with each other.

        with vehicle_lock(vehicle.id):
            # check-and-insert interval, commit
    """
    timeout = LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    deadline = time.monotonic() + timeout

    local = _local_lock(vehicle_id)
    if not local.acquire(timeout=timeout):
        logger.warning("lock.local.timeout", extra={"vehicle_id": vehicle_id, "timeout": timeout})
        raise error(f"Timed out waiting for vehicle {vehicle_id}", vehicle_id=vehicle_id)

    r = get_redis()
    key = _redis_key(vehicle_id)
    token: Optional[str] = None
    try:
        if r is not None:
            candidate = uuid4().hex
            try:
                acquired = _acquire_redis(r, key, candidate, deadline)
            except redis.RedisError as exc:
                # Fail open on Redis errors; the in-process and row locks still apply
                logger.warning("vehicle_lock redis error (key=%s): %s", key, exc)
                acquired = True
                candidate = None
            if not acquired:
                logger.warning("lock.redis.timeout", extra={"vehicle_id": vehicle_id, "timeout": timeout})
                raise error(f"Timed out waiting for vehicle {vehicle_id}", vehicle_id=vehicle_id)
            token = candidate
        yield
    finally:
        if r is not None and token is not None:
            try:
                r.eval(_RELEASE_SCRIPT, 1, key, token)
            except redis.RedisError as exc:
                # Do not raise; the lock will expire by TTL
                logger.debug("vehicle_lock release error (key=%s): %s", key, exc)
        local.release()


def lock_vehicle_row(db: Session, vehicle_id: int, error: Type[LockTimeout] = ReservationTimeout) -> None:
    """
    Take a row lock on the vehicle for the rest of the current transaction.

    Skipped on SQLite, which serializes writers at the file level. On PostgreSQL the wait
    is capped with a transaction-local lock_timeout.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        return
    try:
        if dialect == "postgresql":
            timeout_ms = int(LOCK_TIMEOUT_SECONDS * 1000)
            db.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
        db.query(models.Vehicle.id).filter(models.Vehicle.id == vehicle_id).with_for_update().first()
    except OperationalError as exc:
        db.rollback()
        logger.warning("lock.row.timeout", extra={"vehicle_id": vehicle_id})
        raise error(f"Timed out waiting for vehicle {vehicle_id}", vehicle_id=vehicle_id) from exc


def with_retries(
    fn: Callable[[], T],
    attempts: Optional[int] = None,
    base_delay: float = 0.05,
) -> T:
    """
    Call `fn`, retrying lock timeouts with exponential backoff.

    After the last attempt the LockTimeout propagates to the caller unchanged.
    """
    attempts = LOCK_RETRY_ATTEMPTS if attempts is None else attempts
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except LockTimeout as exc:
            if attempt >= attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.info("lock.retry", extra={"attempt": attempt, "delay": delay, "error": exc.code})
            time.sleep(delay)
    raise RuntimeError("with_retries called with attempts < 1")
