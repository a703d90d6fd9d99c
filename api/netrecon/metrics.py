"""Prometheus metrics for network reconciliation.

Usage:
    from netrecon.metrics import reconcile_tasks_total, driver_operations_total

The scheduler's /metrics endpoint and the worker's metrics server expose
these in Prometheus format.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from netrecon.state import NetworkStatus

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# --- Task metrics ---

reconcile_tasks_total = Counter(
    "netrecon_reconcile_tasks_total",
    "Reconciliation task executions by kind and final status",
    ["kind", "status"],
)

reconcile_task_duration = Histogram(
    "netrecon_reconcile_task_duration_seconds",
    "Reconciliation task duration",
    ["kind", "status"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)

triggers_dropped_total = Counter(
    "netrecon_triggers_dropped_total",
    "Triggers dropped because a task for the same key was in flight",
    ["kind"],
)

# --- Driver metrics ---

driver_operations_total = Counter(
    "netrecon_driver_operations_total",
    "Engine operations issued by the network driver",
    ["operation", "outcome"],
)

# --- Registry metrics ---

managed_networks = Gauge(
    "netrecon_managed_networks",
    "Managed networks by status",
    ["status"],
)


def update_network_metrics(session: "Session") -> None:
    """Refresh the managed network gauge from the registry."""
    from sqlalchemy import func

    from netrecon import models

    try:
        rows = (
            session.query(models.ManagedNetwork.status, func.count(models.ManagedNetwork.id))
            .group_by(models.ManagedNetwork.status)
            .all()
        )
        counts = {status: count for status, count in rows}
        for status in NetworkStatus:
            managed_networks.labels(status=status.value).set(counts.get(status.value, 0))
    except Exception as e:
        logger.warning(f"Failed to update network metrics: {e}")


def get_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
