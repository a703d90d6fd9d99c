"""Reconciliation task execution and the periodic drift monitor.

run_reconciliation_task is the RQ job body. Each run:

1. takes the Redis lock for the task's mutual-exclusion key (a held lock
   drops the task),
2. marks the task running and counts the attempt,
3. dispatches by task kind with a fresh EngineConnector,
4. records succeeded, retrying (and re-raises so RQ retries) or dead.

Configuration errors and vanished resources are dead immediately. The final
failure of a task is reported on the ops log channel.
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.orm import Session

from netrecon import models
from netrecon.cluster import SwarmClusterCapability
from netrecon.config import settings
from netrecon.db import get_session
from netrecon.engine import EngineConnector
from netrecon.errors import ConfigurationError, ResourceNotFound
from netrecon.logging_config import OPS_LOGGER_NAME, correlation_id_var, set_correlation_id
from netrecon.metrics import reconcile_task_duration, reconcile_tasks_total, update_network_metrics
from netrecon.models import utcnow
from netrecon.resources import ResourceRef
from netrecon.services import drift, network_admin
from netrecon.services.network_driver import NetworkDriver, summarize_error
from netrecon.services.reconciliation import detach_resource, reconcile_resource
from netrecon.services.state_machine import ReconcileTaskStateMachine
from netrecon.state import ReconcileTaskStatus, TaskKind
from netrecon.timing import TimedOperation
from netrecon.utils.locks import reconcile_lock

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger(OPS_LOGGER_NAME)

UNRETRYABLE_ERRORS = (ConfigurationError, ResourceNotFound)


def _make_runtime(session: Session, connector: EngineConnector):
    """Driver and cluster capability bound to one task's connector."""
    return NetworkDriver(session, connector), SwarmClusterCapability(connector)


def _set_status(
    session: Session,
    task: models.ReconciliationTask,
    target: ReconcileTaskStatus,
    **fields,
) -> None:
    if not ReconcileTaskStateMachine.can_transition(ReconcileTaskStatus(task.status), target):
        logger.warning(f"Ignoring task {task.id} transition {task.status} -> {target.value}")
        return
    task.status = target.value
    for column, value in fields.items():
        setattr(task, column, value)
    if ReconcileTaskStateMachine.is_terminal(target):
        task.finished_at = utcnow()
    session.commit()


def _get_host(session: Session, host_id: str | None) -> models.Host:
    host = session.get(models.Host, host_id) if host_id else None
    if host is None:
        raise ResourceNotFound("host", host_id or "<none>")
    return host


def _dispatch(session: Session, task: models.ReconciliationTask, connector: EngineConnector) -> None:
    driver, cluster = _make_runtime(session, connector)
    payload = task.payload or {}
    kind = TaskKind(task.kind)

    if kind == TaskKind.RESOURCE:
        reconcile_resource(session, ResourceRef(task.resource_type, task.resource_id), driver, cluster)
    elif kind == TaskKind.FULL:
        host = _get_host(session, task.host_id or task.resource_id)
        drift.sync_from_engine(session, host, driver)
        drift.reconcile_server(session, host, driver, retry_errors=bool(payload.get("retry_errors")))
        update_network_metrics(session)
    elif kind == TaskKind.DETACH:
        host = _get_host(session, task.host_id)
        detach_resource(
            session,
            ResourceRef(task.resource_type, task.resource_id),
            driver,
            host,
            containers=list(payload.get("containers") or []),
        )
    elif kind == TaskKind.PROXY_MIGRATION:
        result = network_admin.migrate_to_proxy_isolation(
            session, task.host_id or task.resource_id, driver, cluster
        )
        if result.errors:
            logger.warning(
                f"Proxy migration for host {task.host_id} finished with errors: {result.errors}",
                extra={"task_id": task.id},
            )


def _execute(session: Session, task: models.ReconciliationTask) -> str:
    _set_status(
        session,
        task,
        ReconcileTaskStatus.RUNNING,
        attempts=task.attempts + 1,
        started_at=utcnow(),
        error_message=None,
    )
    kind = task.kind

    try:
        with EngineConnector(timeout=settings.engine_timeout) as connector, TimedOperation(
            reconcile_task_duration,
            labels={"kind": kind},
            event="network_reconcile",
            extras={"task_id": task.id, "lock_key": task.lock_key, "attempt": task.attempts},
        ):
            _dispatch(session, task, connector)
    except UNRETRYABLE_ERRORS as e:
        session.rollback()
        _set_status(session, task, ReconcileTaskStatus.DEAD, error_message=str(e))
        reconcile_tasks_total.labels(kind=kind, status=ReconcileTaskStatus.DEAD.value).inc()
        ops_logger.error(
            f"Reconciliation {task.lock_key} rejected: {e}",
            extra={"task_id": task.id, "lock_key": task.lock_key},
        )
        return ReconcileTaskStatus.DEAD.value
    except Exception as e:
        session.rollback()
        message = summarize_error(e)
        if task.attempts < task.max_attempts:
            _set_status(session, task, ReconcileTaskStatus.RETRYING, error_message=message)
            reconcile_tasks_total.labels(kind=kind, status=ReconcileTaskStatus.RETRYING.value).inc()
            logger.warning(
                f"Reconciliation {task.lock_key} attempt {task.attempts}/{task.max_attempts} failed: {e}",
                extra={"task_id": task.id},
            )
            raise

        _set_status(session, task, ReconcileTaskStatus.DEAD, error_message=message)
        reconcile_tasks_total.labels(kind=kind, status=ReconcileTaskStatus.DEAD.value).inc()
        ops_logger.error(
            f"Reconciliation {task.lock_key} failed permanently after {task.attempts} attempt(s): {e}",
            extra={"task_id": task.id, "lock_key": task.lock_key},
        )
        raise

    _set_status(session, task, ReconcileTaskStatus.SUCCEEDED)
    reconcile_tasks_total.labels(kind=kind, status=ReconcileTaskStatus.SUCCEEDED.value).inc()
    return ReconcileTaskStatus.SUCCEEDED.value


def run_reconciliation_task(task_id: str) -> str:
    """RQ job body. Returns the task's resulting status."""
    token = set_correlation_id(task_id)
    try:
        with get_session() as session:
            task = session.get(models.ReconciliationTask, task_id)
            if task is None:
                logger.warning(f"Reconciliation task {task_id} not found")
                return "missing"
            if ReconcileTaskStateMachine.is_terminal(ReconcileTaskStatus(task.status)):
                logger.info(f"Reconciliation task {task_id} already {task.status}")
                return task.status

            with reconcile_lock(task.lock_key) as acquired:
                if not acquired:
                    _set_status(session, task, ReconcileTaskStatus.DROPPED)
                    reconcile_tasks_total.labels(
                        kind=task.kind, status=ReconcileTaskStatus.DROPPED.value
                    ).inc()
                    logger.info(f"Dropping {task.lock_key}: another run holds the lock")
                    return ReconcileTaskStatus.DROPPED.value
                return _execute(session, task)
    finally:
        correlation_id_var.reset(token)


def enqueue_drift_checks() -> int:
    """Queue a full-host drift pass for every host. Returns how many were queued.

    Stale in-flight rows are expired first so a lost job cannot hold a key
    past its time budget.
    """
    from netrecon.jobs import expire_stale_tasks, request_host_sync

    queued = 0
    with get_session() as session:
        expired = expire_stale_tasks(session)
        if expired:
            logger.warning(f"Expired {expired} stale reconciliation task(s)")
        for host in session.query(models.Host).all():
            if request_host_sync(session, host.id, retry_errors=False) is not None:
                queued += 1
    return queued


async def network_drift_monitor():
    """Background task that periodically queues drift reconciliation per host."""
    interval = settings.drift_check_interval
    logger.info(f"Network drift monitor started (interval: {interval}s)")

    while True:
        try:
            await asyncio.sleep(interval)
            if not settings.enabled:
                continue
            queued = await asyncio.to_thread(enqueue_drift_checks)
            if queued:
                logger.info(f"Queued drift reconciliation for {queued} host(s)")
        except asyncio.CancelledError:
            logger.info("Network drift monitor stopped")
            break
        except Exception as e:
            logger.error(f"Error in network drift monitor: {e}")
