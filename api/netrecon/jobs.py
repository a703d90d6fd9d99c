"""Reconciliation triggers.

Triggers record a ReconciliationTask and enqueue it on RQ. A trigger whose
mutual-exclusion key already has a queued, running or retrying task is
dropped: the in-flight run observes the latest desired state anyway.
Rows that outlive their time budget (see stale_after) no longer hold the
key, and a row whose enqueue failed is marked dead at once.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from rq import Queue, Retry
from sqlalchemy.orm import Session

from netrecon import models
from netrecon.config import settings
from netrecon.db import get_redis
from netrecon.logging_config import OPS_LOGGER_NAME
from netrecon.metrics import reconcile_tasks_total, triggers_dropped_total
from netrecon.models import ensure_utc, utcnow
from netrecon.resources import ResourceRef, resolve_adapter
from netrecon.state import ACTIVE_TASK_STATUSES, ReconcileTaskStatus, TaskKind
from netrecon.utils.locks import trigger_guard

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger(OPS_LOGGER_NAME)

HOST_RESOURCE_TYPE = "host"

_KEY_PREFIXES = {
    TaskKind.RESOURCE: "reconcile",
    TaskKind.FULL: "reconcile-full",
    TaskKind.DETACH: "detach",
    TaskKind.PROXY_MIGRATION: "proxy-migration",
}


def get_queue() -> Queue:
    return Queue(settings.queue_name, connection=get_redis())


def lock_key(kind: TaskKind, resource_type: str, resource_id: str) -> str:
    """Mutual-exclusion key, e.g. reconcile:application:<id> or reconcile-full:host:<id>."""
    return f"{_KEY_PREFIXES[kind]}:{resource_type}:{resource_id}"


def has_active_task(session: Session, key: str) -> bool:
    return (
        session.query(models.ReconciliationTask.id)
        .filter(
            models.ReconciliationTask.lock_key == key,
            models.ReconciliationTask.status.in_([s.value for s in ACTIVE_TASK_STATUSES]),
        )
        .first()
        is not None
    )


def _job_timeout(kind: str) -> int:
    if kind == TaskKind.PROXY_MIGRATION.value:
        return settings.proxy_migration_job_timeout
    return settings.reconcile_job_timeout


def stale_after(task: models.ReconciliationTask) -> timedelta:
    """How long a task row may stay in flight before it stops holding its key.

    Covers the post-deploy delay, every attempt running to its job timeout
    and every retry backoff, plus stale_task_grace.
    """
    attempts = max(task.max_attempts or 1, 1)
    seconds = (
        settings.post_deploy_delay
        + attempts * _job_timeout(task.kind)
        + sum(settings.reconcile_backoff[: attempts - 1])
        + settings.stale_task_grace
    )
    return timedelta(seconds=seconds)


def is_task_stale(task: models.ReconciliationTask, now: datetime | None = None) -> bool:
    if task.status not in {s.value for s in ACTIVE_TASK_STATUSES}:
        return False
    now = now or utcnow()
    last_progress = ensure_utc(task.started_at) or ensure_utc(task.created_at)
    if last_progress is None:
        return False
    return now - last_progress > stale_after(task)


def _mark_dead(session: Session, task: models.ReconciliationTask, message: str) -> None:
    task.status = ReconcileTaskStatus.DEAD.value
    task.error_message = message
    task.finished_at = utcnow()
    reconcile_tasks_total.labels(kind=task.kind, status=ReconcileTaskStatus.DEAD.value).inc()


def expire_stale_tasks(
    session: Session, key: str | None = None, now: datetime | None = None
) -> int:
    """Mark in-flight rows that outlived their time budget as dead.

    A worker killed mid-run or a job lost before it reached Redis leaves its
    row queued, running or retrying. Expiring it frees the mutual-exclusion
    key for the next trigger. Returns the number of rows expired.
    """
    now = now or utcnow()
    query = session.query(models.ReconciliationTask).filter(
        models.ReconciliationTask.status.in_([s.value for s in ACTIVE_TASK_STATUSES])
    )
    if key is not None:
        query = query.filter(models.ReconciliationTask.lock_key == key)

    expired = 0
    for task in query.all():
        if not is_task_stale(task, now):
            continue
        ops_logger.warning(
            f"Expiring stale reconciliation {task.lock_key} (status={task.status}, "
            f"created_at={task.created_at}, started_at={task.started_at})",
            extra={"task_id": task.id, "lock_key": task.lock_key},
        )
        _mark_dead(session, task, f"No progress for more than {int(stale_after(task).total_seconds())}s")
        expired += 1
    if expired:
        session.commit()
    return expired


def _retry_policy() -> Retry | None:
    retries = settings.reconcile_max_attempts - 1
    if retries <= 0:
        return None
    return Retry(max=retries, interval=list(settings.reconcile_backoff))


def enqueue_task(
    session: Session,
    kind: TaskKind,
    resource_type: str,
    resource_id: str,
    host_id: str | None = None,
    payload: dict | None = None,
    delay: int = 0,
    job_timeout: int | None = None,
) -> models.ReconciliationTask | None:
    """Record and enqueue a reconciliation task.

    Returns:
        The queued task, or None when the trigger was dropped because a
        task for the same key is already in flight.
    """
    from netrecon.tasks.network_reconciliation import run_reconciliation_task

    key = lock_key(kind, resource_type, resource_id)
    with trigger_guard(key) as guarded:
        if guarded:
            expire_stale_tasks(session, key=key)
        if not guarded or has_active_task(session, key):
            triggers_dropped_total.labels(kind=kind.value).inc()
            logger.info(f"Dropping trigger for {key}: task already in flight")
            return None

        task = models.ReconciliationTask(
            kind=kind.value,
            lock_key=key,
            resource_type=resource_type,
            resource_id=resource_id,
            host_id=host_id,
            status=ReconcileTaskStatus.QUEUED.value,
            max_attempts=settings.reconcile_max_attempts,
            payload=payload,
        )
        session.add(task)
        session.commit()

    job_kwargs = dict(
        retry=_retry_policy(),
        job_timeout=job_timeout or settings.reconcile_job_timeout,
        job_id=f"netrecon-{task.id}",
    )
    try:
        queue = get_queue()
        if delay > 0:
            queue.enqueue_in(timedelta(seconds=delay), run_reconciliation_task, task.id, **job_kwargs)
        else:
            queue.enqueue(run_reconciliation_task, task.id, **job_kwargs)
    except Exception as e:
        # No job exists behind the row, so it must not keep holding the key
        session.rollback()
        _mark_dead(session, task, f"Enqueue failed: {e}")
        session.commit()
        logger.error(
            f"Failed to enqueue reconciliation for {key}: {e}",
            extra={"task_id": task.id, "lock_key": key},
        )
        raise

    logger.info(
        f"Enqueued {kind.value} reconciliation for {resource_type}:{resource_id}",
        extra={"task_id": task.id, "lock_key": key, "delay": delay},
    )
    return task


def on_resource_deployed(session: Session, ref: ResourceRef) -> models.ReconciliationTask | None:
    """Deploy pipeline hook: auto-attach after post_deploy_delay seconds."""
    if not settings.isolation_active:
        return None
    host = resolve_adapter(ref.kind).get_host(session, ref)
    return enqueue_task(
        session,
        TaskKind.RESOURCE,
        ref.kind.value,
        ref.id,
        host_id=host.id,
        delay=settings.post_deploy_delay,
    )


def on_resource_deleted(session: Session, ref: ResourceRef) -> models.ReconciliationTask | None:
    """Delete pipeline hook, called before the resource row is removed.

    Host and container names are captured now because the resource may no
    longer exist when the task runs. Runs whenever the feature is enabled,
    whatever the isolation mode, so manual attachments are still cleaned up.
    """
    if not settings.enabled:
        return None
    adapter = resolve_adapter(ref.kind)
    host = adapter.get_host(session, ref)
    return enqueue_task(
        session,
        TaskKind.DETACH,
        ref.kind.value,
        ref.id,
        host_id=host.id,
        payload={"containers": adapter.container_names(session, ref)},
    )


def request_host_sync(
    session: Session, host_id: str, retry_errors: bool = True
) -> models.ReconciliationTask | None:
    """Queue a full-host reverse sync plus drift repair."""
    if not settings.enabled:
        return None
    return enqueue_task(
        session,
        TaskKind.FULL,
        HOST_RESOURCE_TYPE,
        host_id,
        host_id=host_id,
        payload={"retry_errors": retry_errors},
    )


def request_proxy_migration(session: Session, host_id: str) -> models.ReconciliationTask | None:
    if not settings.enabled:
        return None
    return enqueue_task(
        session,
        TaskKind.PROXY_MIGRATION,
        HOST_RESOURCE_TYPE,
        host_id,
        host_id=host_id,
        job_timeout=settings.proxy_migration_job_timeout,
    )
