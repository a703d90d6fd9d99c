"""Resolve and materialize the network for a scope on a host.

Every ensure_* call first finds or creates the registry row (so concurrent
callers agree on which network to use), then asks the driver to create the
engine object only when the row has never been materialized.
"""
from __future__ import annotations

import logging
import uuid

from sqlalchemy.orm import Session

from netrecon import models
from netrecon.cluster import ClusterCapability
from netrecon.config import Settings, settings as default_settings
from netrecon.services import network_registry
from netrecon.services.network_driver import NetworkDriver
from netrecon.state import SCOPE_NAME_TOKENS, NetworkDriverName, NetworkScope, NetworkStatus

logger = logging.getLogger(__name__)


def needs_materialization(network: models.ManagedNetwork) -> bool:
    """True when the engine object was never created (or is known gone)."""
    status = NetworkStatus(network.status)
    if status in (NetworkStatus.PENDING, NetworkStatus.ORPHANED):
        return True
    return status == NetworkStatus.ERROR and network.docker_id is None


class ScopeProvisioner:
    def __init__(
        self,
        session: Session,
        driver: NetworkDriver,
        cluster: ClusterCapability,
        settings: Settings | None = None,
    ):
        self.session = session
        self.driver = driver
        self.cluster = cluster
        self.settings = settings or default_settings

    def network_name(self, scope: NetworkScope, identifier: str) -> str:
        return f"{self.settings.name_prefix}-{SCOPE_NAME_TOKENS[scope]}-{identifier}"

    def driver_defaults(self, host: models.Host) -> dict:
        """Driver-dependent columns for a new network on this host."""
        if self.cluster.is_orchestrated(host):
            return {
                "driver": NetworkDriverName.OVERLAY.value,
                "is_attachable": True,
                "is_encrypted_overlay": self.settings.swarm_overlay_encryption,
            }
        return {
            "driver": NetworkDriverName.BRIDGE.value,
            "is_attachable": True,
            "is_encrypted_overlay": False,
        }

    def _ensure(self, host: models.Host, engine_name: str, defaults: dict) -> models.ManagedNetwork:
        network, created = network_registry.find_or_create_network(
            self.session,
            host,
            engine_name,
            {**self.driver_defaults(host), **defaults},
            limit=self.settings.max_networks_per_server,
        )
        if needs_materialization(network):
            if not created:
                logger.info(
                    f"Network {engine_name} registered but not materialized ({network.status}), creating",
                    extra={"network_id": network.id, "host_id": host.id},
                )
            self.driver.create(host, network)
        return network

    def ensure_environment_network(self, environment: models.Environment, host: models.Host) -> models.ManagedNetwork:
        project = environment.project
        engine_name = self.network_name(NetworkScope.ENVIRONMENT, environment.id)
        return self._ensure(
            host,
            engine_name,
            {
                "name": f"{project.name} / {environment.name}" if project else environment.name,
                "scope": NetworkScope.ENVIRONMENT.value,
                "team_id": project.team_id if project else host.team_id,
                "project_id": environment.project_id,
                "environment_id": environment.id,
            },
        )

    def ensure_proxy_network(self, host: models.Host) -> models.ManagedNetwork:
        return self._ensure(
            host,
            self.network_name(NetworkScope.PROXY, host.id),
            {
                "name": f"Proxy ({host.name})",
                "scope": NetworkScope.PROXY.value,
                "team_id": host.team_id,
                "is_proxy_network": True,
            },
        )

    def ensure_shared_network(
        self,
        name: str,
        host: models.Host,
        team_id: str | None,
        *,
        internal: bool = False,
        subnet: str | None = None,
        gateway: str | None = None,
    ) -> models.ManagedNetwork:
        """Create a user-named shared network.

        The engine name carries a random identifier, so every call makes a
        new network even when the human name repeats.
        """
        return self._ensure(
            host,
            self.network_name(NetworkScope.SHARED, uuid.uuid4().hex[:12]),
            {
                "name": name,
                "scope": NetworkScope.SHARED.value,
                "team_id": team_id,
                "is_internal": internal,
                "subnet": subnet,
                "gateway": gateway,
            },
        )
