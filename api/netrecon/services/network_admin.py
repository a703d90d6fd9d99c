"""Administrative operations on managed networks.

These are the calls the HTTP layer makes. Configuration errors (isolation
disabled, limit reached, protected scope, auto-attached detach) are raised
synchronously as ConfigurationError subclasses; unknown ids raise
ResourceNotFound. Engine failures come back as summarized messages.
"""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from netrecon import models
from netrecon.cluster import ClusterCapability
from netrecon.config import Settings, settings as default_settings
from netrecon.errors import (
    AutoAttachedDetachError,
    ConfigurationError,
    CrossHostAttachmentError,
    IsolationDisabled,
    NetworkManagementError,
    ProtectedNetworkError,
    ResourceNotFound,
    TransientEngineError,
)
from netrecon.models import ensure_utc
from netrecon.resources import ResourceRef, refs_on_host, resolve_adapter
from netrecon.schemas import (
    HostSyncOut,
    HostSyncStatusOut,
    NetworkErrorOut,
    ProxyCleanupOut,
    ProxyMigrationOut,
    SharedNetworkCreate,
)
from netrecon.services import drift, network_registry
from netrecon.services.network_driver import NetworkDriver
from netrecon.services.reconciliation import select_strategy
from netrecon.services.scope_provisioner import ScopeProvisioner
from netrecon.state import PROTECTED_SCOPES, NetworkScope, NetworkStatus

logger = logging.getLogger(__name__)

# Engine networks the proxy container must stay on
BUILTIN_NETWORKS = frozenset({"bridge", "host", "none"})


def _get_host(session: Session, host_id: str) -> models.Host:
    host = session.get(models.Host, host_id)
    if host is None:
        raise ResourceNotFound("host", host_id)
    return host


def _get_host_network(session: Session, host_id: str, network_id: str) -> models.ManagedNetwork:
    network = network_registry.get_network(session, network_id)
    if network is None or network.host_id != host_id:
        raise ResourceNotFound("network", network_id)
    return network


def _require_enabled(settings: Settings) -> None:
    if not settings.enabled:
        raise IsolationDisabled()


def list_networks(session: Session, host_id: str) -> list[models.ManagedNetwork]:
    _get_host(session, host_id)
    return network_registry.list_networks(session, host_id)


def get_network_details(
    session: Session, host_id: str, network_id: str, driver: NetworkDriver
) -> tuple[models.ManagedNetwork, dict | None]:
    host = _get_host(session, host_id)
    network = _get_host_network(session, host_id, network_id)
    return network, driver.inspect(host, network.engine_name)


def create_shared_network(
    session: Session,
    host_id: str,
    request: SharedNetworkCreate,
    team_id: str | None,
    driver: NetworkDriver,
    cluster: ClusterCapability,
    settings: Settings | None = None,
) -> models.ManagedNetwork:
    """Create a shared network. Raises NetworkLimitReached at the host limit."""
    settings = settings or default_settings
    _require_enabled(settings)
    host = _get_host(session, host_id)
    provisioner = ScopeProvisioner(session, driver, cluster, settings)
    network = provisioner.ensure_shared_network(
        request.name,
        host,
        team_id,
        internal=request.internal,
        subnet=request.subnet,
        gateway=request.gateway,
    )
    logger.info(
        f"Created shared network {network.engine_name} on host {host.name}",
        extra={"network_id": network.id, "host_id": host.id, "status": network.status},
    )
    return network


def delete_network(
    session: Session, host_id: str, network_id: str, driver: NetworkDriver
) -> None:
    """Delete a shared or proxy network from the engine and the registry."""
    host = _get_host(session, host_id)
    network = _get_host_network(session, host_id, network_id)
    if NetworkScope(network.scope) in PROTECTED_SCOPES:
        raise ProtectedNetworkError(network.scope)

    if not driver.delete(host, network):
        raise TransientEngineError(f"Failed to remove network {network.engine_name} from the engine")
    network_registry.delete_network_row(session, network)
    logger.info(f"Deleted network {network.engine_name} on host {host.name}", extra={"host_id": host.id})


def sync_host(
    session: Session,
    host_id: str,
    driver: NetworkDriver,
    settings: Settings | None = None,
) -> HostSyncOut:
    """Reverse sync, then drift repair including previously failed networks."""
    host = _get_host(session, host_id)
    discovered = drift.sync_from_engine(session, host, driver, settings)
    reconciled = drift.reconcile_server(session, host, driver, retry_errors=True, settings=settings)
    return HostSyncOut(
        discovered=discovered["discovered"],
        adopted=discovered["adopted"],
        **reconciled,
    )


def list_resource_networks(session: Session, ref: ResourceRef) -> list[models.ResourceNetwork]:
    resolve_adapter(ref.kind).get(session, ref)
    return network_registry.list_attachments(session, ref)


def available_networks(session: Session, ref: ResourceRef) -> list[models.ManagedNetwork]:
    """Active networks on the resource's host it is not attached to yet."""
    host = resolve_adapter(ref.kind).get_host(session, ref)
    attached = {a.managed_network_id for a in network_registry.list_attachments(session, ref)}
    return [
        network
        for network in network_registry.list_networks(session, host.id)
        if network.status == NetworkStatus.ACTIVE.value and network.id not in attached
    ]


def attach_resource(
    session: Session, ref: ResourceRef, network_id: str, driver: NetworkDriver
) -> models.ResourceNetwork:
    """Manually attach a resource's containers to a network."""
    adapter = resolve_adapter(ref.kind)
    host = adapter.get_host(session, ref)
    network = network_registry.get_network(session, network_id)
    if network is None:
        raise ResourceNotFound("network", network_id)
    if network.host_id != host.id:
        raise CrossHostAttachmentError()
    if network.status != NetworkStatus.ACTIVE.value:
        raise ConfigurationError(f"Network {network.engine_name} is {network.status}, not active")

    containers = adapter.container_names(session, ref)
    failures = []
    for container in containers:
        result = driver.connect(host, network.engine_name, container, aliases=[container])
        if not result.ok:
            failures.append(f"{container}: {result.detail}")

    attachment = network_registry.upsert_attachment(
        session,
        ref,
        network,
        is_auto_attached=False,
        is_connected=not failures,
        aliases=containers,
    )
    if failures:
        raise TransientEngineError(
            f"Failed to connect to {network.engine_name}: {'; '.join(failures)}"
        )
    return attachment


def detach_resource(
    session: Session, ref: ResourceRef, network_id: str, driver: NetworkDriver
) -> None:
    """Manually detach a resource from a network.

    Auto-attached environment links are rejected and left unchanged.
    """
    adapter = resolve_adapter(ref.kind)
    host = adapter.get_host(session, ref)
    network = network_registry.get_network(session, network_id)
    if network is None:
        raise ResourceNotFound("network", network_id)
    attachment = network_registry.get_attachment(session, ref, network)
    if attachment is None:
        raise ResourceNotFound("attachment", f"{ref.key}@{network_id}")
    if attachment.is_auto_attached and network.scope == NetworkScope.ENVIRONMENT.value:
        raise AutoAttachedDetachError()

    failures = []
    for container in adapter.container_names(session, ref):
        result = driver.disconnect(host, network.engine_name, container)
        if not result.ok:
            failures.append(f"{container}: {result.detail}")
    if failures:
        raise TransientEngineError(
            f"Failed to disconnect from {network.engine_name}: {'; '.join(failures)}"
        )
    network_registry.delete_attachments(session, ref, network)


def migrate_to_proxy_isolation(
    session: Session,
    host_id: str,
    driver: NetworkDriver,
    cluster: ClusterCapability,
    settings: Settings | None = None,
) -> ProxyMigrationOut:
    """Move a host to a dedicated proxy network.

    Creates the proxy network, connects the proxy container and attaches
    every externally reachable resource. Existing memberships are left in
    place; cleanup_proxy_networks removes them afterwards.
    """
    settings = settings or default_settings
    _require_enabled(settings)
    if not settings.proxy_isolation:
        raise ConfigurationError("Proxy isolation is not enabled")

    host = _get_host(session, host_id)
    result = ProxyMigrationOut()
    provisioner = ScopeProvisioner(session, driver, cluster, settings)

    proxy_network = provisioner.ensure_proxy_network(host)
    result.proxy_network = proxy_network.engine_name
    if proxy_network.status != NetworkStatus.ACTIVE.value:
        result.errors.append(
            f"Proxy network {proxy_network.engine_name} is {proxy_network.status}: "
            f"{proxy_network.error_message or 'not materialized'}"
        )
        return result

    connected = driver.connect(host, proxy_network.engine_name, settings.proxy_container)
    result.proxy_connected = connected.ok
    if not connected.ok:
        result.errors.append(f"Failed to connect proxy container: {connected.detail}")

    strategy = select_strategy(session, host, driver, cluster, settings)
    for ref in refs_on_host(session, host.id):
        adapter = resolve_adapter(ref.kind)
        if not adapter.is_externally_reachable(session, ref):
            continue
        try:
            strategy.reconcile(ref, host)
            result.resources_migrated += 1
        except NetworkManagementError as e:
            result.resources_failed += 1
            result.errors.append(f"{ref.key}: {e}")
            logger.warning(
                f"Proxy migration of {ref.key} on host {host.name} failed: {e}",
                extra={"resource": ref.key, "host_id": host.id},
            )

    logger.info(
        f"Proxy isolation migration on host {host.name}: "
        f"{result.resources_migrated} migrated, {result.resources_failed} failed",
        extra={"host_id": host.id},
    )
    return result


def cleanup_proxy_networks(
    session: Session,
    host_id: str,
    driver: NetworkDriver,
    settings: Settings | None = None,
) -> ProxyCleanupOut:
    """Disconnect the proxy container from networks it no longer needs.

    Keeps the host default networks, proxy networks and the engine's
    builtin networks.
    """
    settings = settings or default_settings
    host = _get_host(session, host_id)
    keep = set(BUILTIN_NETWORKS) | {settings.default_network, settings.default_overlay_network}
    keep |= {
        network.engine_name
        for network in network_registry.list_networks(session, host.id)
        if network.is_proxy_network
    }

    result = ProxyCleanupOut()
    for network_name in driver.container_networks(host, settings.proxy_container):
        if network_name in keep:
            continue
        outcome = driver.disconnect(host, network_name, settings.proxy_container)
        if outcome.ok:
            result.disconnected.append(network_name)
        else:
            result.failed.append(network_name)
    return result


def host_sync_status(session: Session, host_id: str) -> HostSyncStatusOut:
    _get_host(session, host_id)
    networks = network_registry.list_networks(session, host_id)
    status = HostSyncStatusOut(host_id=host_id, total=len(networks))
    for network in networks:
        status.by_status[network.status] = status.by_status.get(network.status, 0) + 1
        if network.status == NetworkStatus.ERROR.value:
            status.errors.append(
                NetworkErrorOut(
                    network_id=network.id,
                    engine_name=network.engine_name,
                    error_message=network.error_message,
                )
            )
        synced = ensure_utc(network.last_synced_at)
        if synced and (status.last_synced_at is None or synced > status.last_synced_at):
            status.last_synced_at = synced
    return status
