"""
Concurrency control utilities for settlement and billing.

This module provides two complementary mechanisms:

1. **Distributed Locks** (DistributedLock)
   - Redis-based mutual exclusion across Celery workers
   - TTL prevents deadlocks from crashed workers
   - Use around work that spans a database write and an external call,
     e.g. processing one payout or renewing one subscription

2. **Optimistic Locking** (check_version)
   - Version-based conflict detection for rows with a version column
   - Use when a caller read a record earlier and must not overwrite a
     concurrent change (e.g. operator actions on a payout)

Usage:

    from payments.locks import DistributedLock, check_version

    with DistributedLock(f"payout:{payout_id}", ttl=120, blocking=False):
        SettlementService.process_payout(payout_id)

    with transaction.atomic():
        payout = check_version(Payout, payout_id, expected_version=3)
        payout.retry()
        payout.save()  # Version auto-increments
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from payments.exceptions import (
    LockAcquisitionError,
    NotFoundOrUnauthorizedError,
    StaleRecordError,
)

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    The lock value is a random token, so only the holder can release it.

    Example:
        # Skip the unit of work if another worker is already on it
        try:
            with DistributedLock(f"subscription:{sub_id}", blocking=False):
                renew(sub_id)
        except LockAcquisitionError:
            logger.info("Renewal already in progress")

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Seconds until Redis drops the lock on its own
        blocking: If True, acquire() polls until timeout
        timeout: Maximum wait in seconds (blocking mode only)
    """

    # Delete only if we still own the key
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 60,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Raises:
            LockAcquisitionError: Lock held elsewhere (non-blocking) or not
                released within the timeout (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if not self.blocking:
            if not self._try_acquire(redis):
                self._token = None
                raise LockAcquisitionError(
                    f"Lock '{self.key}' is already held",
                    details={"key": self.key},
                )
            return True

        deadline = time.time() + self.timeout
        while time.time() < deadline:
            if self._try_acquire(redis):
                return True
            time.sleep(0.05)

        self._token = None
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def release(self) -> bool:
        """Release the lock if we hold it. Safe to call more than once."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int,
) -> T:
    """
    Lock a row for update, but only if it is still at the expected version.

    Must be called inside transaction.atomic(); the row lock is held until
    the outer transaction ends.

    Raises:
        NotFoundOrUnauthorizedError: The row does not exist
        StaleRecordError: The row was modified since it was read
    """
    with transaction.atomic():
        instance = (
            model_class.objects.select_for_update()
            .filter(pk=pk, version=expected_version)
            .first()
        )
        if instance is not None:
            return instance

        model_name = model_class.__name__
        current = model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
        if current is None:
            raise NotFoundOrUnauthorizedError(
                f"{model_name} {pk} not found",
                details={"pk": str(pk)},
            )
        raise StaleRecordError(
            f"{model_name} {pk} has been modified "
            f"(expected version {expected_version}, current {current})",
            details={
                "pk": str(pk),
                "expected_version": expected_version,
                "current_version": current,
            },
        )


__all__ = [
    "DistributedLock",
    "check_version",
]
