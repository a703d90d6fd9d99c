"""Per-resource network reconciliation.

Two strategies converge one resource's attachments:

- StandaloneStrategy connects each container to its networks one by one.
- OrchestratedStrategy sends one batched network update per swarm service,
  since every membership change of a service triggers a rolling redeploy.

Both write ResourceNetwork rows with update-or-create semantics and raise
TransientEngineError when a mandatory step fails so the scheduler retries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from netrecon import models
from netrecon.cluster import ClusterCapability
from netrecon.config import Settings, settings as default_settings
from netrecon.errors import ReconciliationIncomplete, TransientEngineError
from netrecon.resources import ResourceRef, resolve_adapter
from netrecon.services import network_registry
from netrecon.services.network_driver import NetworkDriver
from netrecon.services.scope_provisioner import ScopeProvisioner
from netrecon.state import IsolationMode, NetworkStatus

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    resource_key: str
    strategy: str = "none"
    networks: list[str] = field(default_factory=list)
    connected: list[str] = field(default_factory=list)
    disconnected: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    skipped_reason: str | None = None


class ReconciliationStrategy:
    name = "base"

    def __init__(
        self,
        session: Session,
        driver: NetworkDriver,
        provisioner: ScopeProvisioner,
        settings: Settings | None = None,
    ):
        self.session = session
        self.driver = driver
        self.provisioner = provisioner
        self.settings = settings or default_settings

    @property
    def isolation_mode(self) -> IsolationMode:
        return IsolationMode(self.settings.isolation_mode)

    def default_network_name(self) -> str:
        return self.settings.default_network

    def desired_networks(self, ref: ResourceRef, host: models.Host) -> list[models.ManagedNetwork]:
        """Ensure the environment (and proxy) networks exist before any connect."""
        adapter = resolve_adapter(ref.kind)
        environment = adapter.get_environment(self.session, ref)

        networks = [self.provisioner.ensure_environment_network(environment, host)]
        if self.settings.proxy_isolation and adapter.is_externally_reachable(self.session, ref):
            networks.append(self.provisioner.ensure_proxy_network(host))

        for network in networks:
            if network.status != NetworkStatus.ACTIVE.value:
                raise TransientEngineError(
                    f"Network {network.engine_name} is {network.status} on host {host.name}: "
                    f"{network.error_message or 'not materialized'}"
                )
        return networks

    def reconcile(self, ref: ResourceRef, host: models.Host) -> ReconcileReport:
        raise NotImplementedError


class StandaloneStrategy(ReconciliationStrategy):
    name = "standalone"

    def reconcile(self, ref: ResourceRef, host: models.Host) -> ReconcileReport:
        report = ReconcileReport(resource_key=ref.key, strategy=self.name)
        containers = resolve_adapter(ref.kind).container_names(self.session, ref)
        if not containers:
            report.skipped_reason = "no containers"
            return report

        for network in self.desired_networks(ref, host):
            report.networks.append(network.engine_name)
            all_connected = True
            for container in containers:
                result = self.driver.connect(host, network.engine_name, container, aliases=[container])
                if result.ok:
                    report.connected.append(f"{container}@{network.engine_name}")
                else:
                    all_connected = False
                    report.failures.append(f"connect {container} to {network.engine_name}: {result.detail}")
            network_registry.upsert_attachment(
                self.session,
                ref,
                network,
                is_auto_attached=True,
                is_connected=all_connected,
                aliases=containers,
            )

        if self.isolation_mode == IsolationMode.STRICT:
            default_network = self.default_network_name()
            for container in containers:
                result = self.driver.disconnect(host, default_network, container, force=True)
                if result.ok:
                    report.disconnected.append(f"{container}@{default_network}")
                else:
                    report.failures.append(f"disconnect {container} from {default_network}: {result.detail}")

        if report.failures:
            raise ReconciliationIncomplete(ref.key, report.failures)
        return report


class OrchestratedStrategy(ReconciliationStrategy):
    name = "orchestrated"

    def default_network_name(self) -> str:
        return self.settings.default_overlay_network

    def reconcile(self, ref: ResourceRef, host: models.Host) -> ReconcileReport:
        report = ReconcileReport(resource_key=ref.key, strategy=self.name)
        adapter = resolve_adapter(ref.kind)
        services = adapter.service_names(
            self.session,
            ref,
            lambda filters: self.driver.list_services(host, filters, strict=True),
        )
        if not services:
            report.skipped_reason = "no swarm services"
            logger.info(f"No swarm services found for {ref.key} on host {host.name}")
            return report

        networks = self.desired_networks(ref, host)
        add = [network.engine_name for network in networks]
        remove = [self.default_network_name()] if self.isolation_mode == IsolationMode.STRICT else []
        report.networks.extend(add)

        all_updated = True
        for service in services:
            result = self.driver.update_service_networks(host, service, add, remove)
            if result.ok:
                report.connected.append(service)
                report.disconnected.extend(f"{service}@{name}" for name in remove)
            else:
                all_updated = False
                report.failures.append(f"update {service}: {result.detail}")

        for network in networks:
            network_registry.upsert_attachment(
                self.session,
                ref,
                network,
                is_auto_attached=True,
                is_connected=all_updated,
                aliases=services,
            )

        if report.failures:
            raise ReconciliationIncomplete(ref.key, report.failures)
        return report


def select_strategy(
    session: Session,
    host: models.Host,
    driver: NetworkDriver,
    cluster: ClusterCapability,
    settings: Settings | None = None,
) -> ReconciliationStrategy:
    provisioner = ScopeProvisioner(session, driver, cluster, settings)
    strategy_cls = OrchestratedStrategy if cluster.is_orchestrated(host) else StandaloneStrategy
    return strategy_cls(session, driver, provisioner, settings)


def reconcile_resource(
    session: Session,
    ref: ResourceRef,
    driver: NetworkDriver,
    cluster: ClusterCapability,
    settings: Settings | None = None,
) -> ReconcileReport:
    """Converge one resource's network attachments on its host."""
    settings = settings or default_settings
    if not settings.isolation_active:
        logger.debug(f"Network isolation inactive, skipping {ref.key}")
        return ReconcileReport(resource_key=ref.key, skipped_reason="isolation disabled")

    host = resolve_adapter(ref.kind).get_host(session, ref)
    strategy = select_strategy(session, host, driver, cluster, settings)
    report = strategy.reconcile(ref, host)
    logger.info(
        f"Reconciled {ref.key} on host {host.name} ({strategy.name})",
        extra={
            "resource": ref.key,
            "host_id": host.id,
            "networks": report.networks,
            "connected": len(report.connected),
        },
    )
    return report


def detach_resource(
    session: Session,
    ref: ResourceRef,
    driver: NetworkDriver,
    host: models.Host,
    containers: list[str],
) -> int:
    """Disconnect a deleted resource from its networks and drop its attachments.

    Container names come from a snapshot taken when the resource was
    deleted, since the resource row may already be gone.
    """
    attachments = network_registry.list_attachments(session, ref)
    failures = []
    for attachment in attachments:
        network = attachment.network
        for container in containers:
            result = driver.disconnect(host, network.engine_name, container, force=True)
            if not result.ok:
                failures.append(f"disconnect {container} from {network.engine_name}: {result.detail}")

    removed = network_registry.delete_attachments(session, ref)
    logger.info(
        f"Auto-detached {ref.key} from {removed} network(s)",
        extra={"resource": ref.key, "host_id": host.id},
    )
    if failures:
        # Rows are gone either way; containers of a deleted resource are
        # usually already removed by the delete pipeline.
        logger.warning(f"Auto-detach of {ref.key} left engine state behind: {'; '.join(failures)}")
    return removed
