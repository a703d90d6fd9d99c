"""Host-wide drift repair between the registry and the engine.

reconcile_server walks registry rows and makes the engine match them;
sync_from_engine walks engine networks carrying the ownership label and makes
the registry match them.

Orphan policy: a row whose network is absent from the engine, that is not
active, has no attachments and has not been seen for ``orphan_grace_days`` is
marked orphaned. Orphaned rows are never deleted automatically.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from netrecon import models
from netrecon.config import Settings, settings as default_settings
from netrecon.models import ensure_utc, utcnow
from netrecon.services import network_registry
from netrecon.services.network_driver import NetworkDriver
from netrecon.state import NetworkScope, NetworkStatus

logger = logging.getLogger(__name__)


def _orphan_candidate(
    session: Session,
    network: models.ManagedNetwork,
    grace: timedelta,
) -> bool:
    if network.status in (NetworkStatus.ACTIVE.value, NetworkStatus.ORPHANED.value):
        return False
    if network_registry.list_network_attachments(session, network):
        return False
    last_seen = ensure_utc(network.last_synced_at or network.created_at)
    return last_seen is not None and utcnow() - last_seen >= grace


def reconcile_server(
    session: Session,
    host: models.Host,
    driver: NetworkDriver,
    retry_errors: bool = False,
    settings: Settings | None = None,
) -> dict[str, int]:
    """Bring every registry row on a host into agreement with the engine.

    Args:
        retry_errors: Also recreate pending and error rows (manual syncs).

    Returns:
        Counters: checked, recreated, refreshed, failed, orphaned.

    Raises:
        TransientEngineError if the engine cannot be inspected at all.
    """
    settings = settings or default_settings
    grace = timedelta(days=settings.orphan_grace_days)
    results = {"checked": 0, "recreated": 0, "refreshed": 0, "failed": 0, "orphaned": 0}

    for network in network_registry.list_networks(session, host.id):
        results["checked"] += 1
        details = driver.inspect(host, network.engine_name, strict=True)

        if details is not None:
            if network.status != NetworkStatus.ACTIVE.value or network.docker_id != details.get("Id"):
                results["refreshed"] += 1
            driver.refresh(network, details)
            continue

        status = NetworkStatus(network.status)
        recreate = status == NetworkStatus.ACTIVE or (
            retry_errors and status in (NetworkStatus.PENDING, NetworkStatus.ERROR)
        )
        if recreate:
            logger.warning(
                f"Network {network.engine_name} missing on host {host.name}, recreating",
                extra={"network_id": network.id, "host_id": host.id, "status": status.value},
            )
            if driver.create(host, network):
                results["recreated"] += 1
            else:
                results["failed"] += 1
        elif _orphan_candidate(session, network, grace):
            driver.mark_orphaned(
                network,
                f"Absent from engine for more than {settings.orphan_grace_days} days",
            )
            results["orphaned"] += 1

    logger.info(
        f"Drift reconciliation for host {host.name}: {results}",
        extra={"host_id": host.id, **results},
    )
    return results


def _scope_from_labels(labels: dict[str, str], settings: Settings) -> NetworkScope:
    try:
        return NetworkScope(labels.get(settings.label("scope"), NetworkScope.SYSTEM.value))
    except ValueError:
        return NetworkScope.SYSTEM


def sync_from_engine(
    session: Session,
    host: models.Host,
    driver: NetworkDriver,
    settings: Settings | None = None,
) -> dict[str, int]:
    """Create or refresh registry rows for managed engine networks on a host."""
    settings = settings or default_settings
    results = {"discovered": 0, "adopted": 0, "refreshed": 0}

    for engine_net in driver.list(host, managed_only=True, strict=True):
        if engine_net.labels.get(settings.label("managed")) != "true":
            continue
        results["discovered"] += 1

        existing = network_registry.find_network(session, host.id, engine_net.name)
        if existing is not None:
            driver.refresh(existing, {"Id": engine_net.id})
            results["refreshed"] += 1
            continue

        environment_id = engine_net.labels.get(settings.label("environment"))
        project_id = engine_net.labels.get(settings.label("project"))
        if environment_id and session.get(models.Environment, environment_id) is None:
            environment_id = None
        if project_id and session.get(models.Project, project_id) is None:
            project_id = None

        scope = _scope_from_labels(engine_net.labels, settings)
        _, created = network_registry.adopt_network(
            session,
            host,
            engine_net.name,
            engine_net.id,
            {
                "name": engine_net.name,
                "scope": scope.value,
                "driver": engine_net.driver or "bridge",
                "team_id": host.team_id,
                "environment_id": environment_id,
                "project_id": project_id,
                "is_internal": engine_net.internal,
                "is_attachable": engine_net.attachable,
                "is_proxy_network": scope == NetworkScope.PROXY,
            },
        )
        if created:
            results["adopted"] += 1
            logger.info(
                f"Adopted engine network {engine_net.name} on host {host.name}",
                extra={"host_id": host.id, "scope": scope.value},
            )

    return results
