"""Distributed locking for reconciliation tasks.

Redis SETNX locks with a TTL keep two workers from reconciling the same
resource key at once. A crashed holder releases automatically when the TTL
expires.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator

import redis

from netrecon.config import settings
from netrecon.db import get_redis

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "netrecon:lock:"
GUARD_KEY_PREFIX = "netrecon:guard:"


def acquire_reconcile_lock(key: str, ttl: int | None = None) -> bool:
    """Try to acquire the reconciliation lock for a mutual-exclusion key.

    Returns:
        True if the lock was acquired, False if it is already held.
        On Redis errors the caller proceeds as if the lock was acquired.
    """
    ttl = ttl or settings.reconcile_lock_ttl
    try:
        acquired = get_redis().set(f"{LOCK_KEY_PREFIX}{key}", "1", nx=True, ex=ttl)
        if acquired:
            logger.debug(f"Acquired reconcile lock {key}")
        else:
            logger.debug(f"Reconcile lock {key} already held")
        return bool(acquired)
    except redis.RedisError as e:
        logger.warning(f"Redis error acquiring reconcile lock {key}: {e}")
        return True


def release_reconcile_lock(key: str) -> None:
    """Release a reconciliation lock. Safe to call when not held."""
    try:
        get_redis().delete(f"{LOCK_KEY_PREFIX}{key}")
    except redis.RedisError as e:
        logger.warning(f"Redis error releasing reconcile lock {key}: {e}")
        # Lock will auto-expire via TTL


def is_reconcile_locked(key: str) -> bool:
    try:
        return bool(get_redis().exists(f"{LOCK_KEY_PREFIX}{key}"))
    except redis.RedisError as e:
        logger.warning(f"Redis error checking reconcile lock {key}: {e}")
        return False


@contextmanager
def reconcile_lock(key: str, ttl: int | None = None) -> Generator[bool, None, None]:
    """Context manager around the reconciliation lock.

    Usage:
        with reconcile_lock("reconcile:application:abc") as acquired:
            if not acquired:
                return  # another worker owns this key
            ...

    Yields:
        True if the lock was acquired, False if already held elsewhere
    """
    acquired = acquire_reconcile_lock(key, ttl)
    try:
        yield acquired
    finally:
        if acquired:
            release_reconcile_lock(key)


@contextmanager
def trigger_guard(key: str, ttl: int | None = None) -> Generator[bool, None, None]:
    """Short-lived guard around the check-then-enqueue step of a trigger.

    Two triggers for the same key arriving together cannot both see "no
    active task" and both enqueue.
    """
    ttl = ttl or settings.trigger_guard_ttl
    guard_key = f"{GUARD_KEY_PREFIX}{key}"
    try:
        acquired = bool(get_redis().set(guard_key, "1", nx=True, ex=ttl))
    except redis.RedisError as e:
        logger.warning(f"Redis error acquiring trigger guard {key}: {e}")
        yield True
        return

    try:
        yield acquired
    finally:
        if acquired:
            try:
                get_redis().delete(guard_key)
            except redis.RedisError as e:
                logger.warning(f"Redis error releasing trigger guard {key}: {e}")
