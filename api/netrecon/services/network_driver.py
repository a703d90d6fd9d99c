"""Docker network driver.

Wraps every engine interaction the reconciliation engine needs behind
idempotent primitives. Each primitive reports an ``Outcome``: "already
exists", "already connected" and "not connected" are ALREADY_SATISFIED, never
exceptions. Engine errors are logged with host, network and container
identifiers and summarized before they are stored or returned.

The driver is also the only writer of ManagedNetwork.status, docker_id and
error_message (through the registry's mark_* helpers).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import RequestException
from sqlalchemy.orm import Session

from netrecon import models
from netrecon.config import settings
from netrecon.engine import EngineConnector
from netrecon.errors import TransientEngineError
from netrecon.metrics import driver_operations_total
from netrecon.services import network_registry
from netrecon.state import NetworkDriverName

logger = logging.getLogger(__name__)

ENGINE_ERRORS = (DockerException, RequestException)

MAX_ERROR_LENGTH = 255


class Outcome(str, Enum):
    APPLIED = "applied"
    ALREADY_SATISFIED = "already_satisfied"
    FAILED = "failed"


@dataclass(frozen=True)
class OpResult:
    outcome: Outcome
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILED


@dataclass(frozen=True)
class EngineNetwork:
    name: str
    id: str
    driver: str
    labels: dict[str, str] = field(default_factory=dict)
    internal: bool = False
    attachable: bool = False


def summarize_error(exc: BaseException) -> str:
    """Reduce an engine exception to a short, single-line message."""
    text = getattr(exc, "explanation", None) or str(exc) or type(exc).__name__
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    first_line = str(text).strip().splitlines()[0] if str(text).strip() else type(exc).__name__
    return first_line[:MAX_ERROR_LENGTH]


def _message(exc: BaseException) -> str:
    return f"{exc} {getattr(exc, 'explanation', '') or ''}".lower()


def _is_already_exists(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and "already exists" in _message(exc)


def _is_not_connected(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and "is not connected" in _message(exc)


def ownership_labels(network: models.ManagedNetwork) -> dict[str, str]:
    labels = {
        settings.label("managed"): "true",
        settings.label("scope"): network.scope,
    }
    if network.environment_id:
        labels[settings.label("environment")] = network.environment_id
    if network.project_id:
        labels[settings.label("project")] = network.project_id
    if network.labels:
        labels.update({k: str(v) for k, v in network.labels.items()})
    return labels


class NetworkDriver:
    """Idempotent engine primitives for managed networks.

    Args:
        session: Registry session used for status transitions
        connector: Per-task engine connector; its timeout bounds every call
    """

    def __init__(self, session: Session, connector: EngineConnector):
        self.session = session
        self.connector = connector

    def _client(self, host: models.Host) -> docker.DockerClient:
        return self.connector.client(host)

    def _record(self, operation: str, outcome: Outcome) -> None:
        driver_operations_total.labels(operation=operation, outcome=outcome.value).inc()

    def _log_failure(self, operation: str, host: models.Host, exc: BaseException, **ids: Any) -> str:
        summary = summarize_error(exc)
        logger.error(
            f"Engine {operation} failed on host {host.name}: {exc}",
            extra={"operation": operation, "host_id": host.id, **ids},
        )
        self._record(operation, Outcome.FAILED)
        return summary

    # --- Network lifecycle ---

    def create(self, host: models.Host, network: models.ManagedNetwork) -> bool:
        """Create the engine network for a registry row.

        Returns True when the network exists afterwards (created now or
        already present). The row ends up active or error accordingly.
        """
        options = dict(network.options or {})
        overlay = network.driver == NetworkDriverName.OVERLAY.value
        if overlay and network.is_encrypted_overlay:
            options["encrypted"] = ""

        ipam = None
        if network.subnet:
            pool = docker.types.IPAMPool(subnet=network.subnet, gateway=network.gateway)
            ipam = docker.types.IPAMConfig(pool_configs=[pool])

        ids = {"network_id": network.id, "network": network.engine_name}
        try:
            self._client(host).networks.create(
                network.engine_name,
                driver=network.driver,
                options=options or None,
                ipam=ipam,
                internal=network.is_internal,
                attachable=network.is_attachable if overlay else None,
                labels=ownership_labels(network),
            )
            outcome = Outcome.APPLIED
        except ENGINE_ERRORS as e:
            if not _is_already_exists(e):
                summary = self._log_failure("create", host, e, **ids)
                network_registry.mark_error(self.session, network, summary)
                return False
            logger.debug(f"Network {network.engine_name} already exists on host {host.name}")
            outcome = Outcome.ALREADY_SATISFIED

        try:
            details = self._client(host).networks.get(network.engine_name).attrs
        except ENGINE_ERRORS as e:
            summary = self._log_failure("create", host, e, **ids)
            network_registry.mark_error(self.session, network, summary)
            return False

        self._record("create", outcome)
        network_registry.mark_active(self.session, network, details.get("Id"))
        logger.info(
            f"Network {network.engine_name} ready on host {host.name}",
            extra={**ids, "host_id": host.id, "outcome": outcome.value},
        )
        return True

    def delete(self, host: models.Host, network: models.ManagedNetwork) -> bool:
        """Remove the engine network. A missing network counts as removed."""
        try:
            self._client(host).networks.get(network.engine_name).remove()
            self._record("delete", Outcome.APPLIED)
        except NotFound:
            self._record("delete", Outcome.ALREADY_SATISFIED)
        except ENGINE_ERRORS as e:
            self._log_failure("delete", host, e, network_id=network.id, network=network.engine_name)
            return False

        network_registry.mark_pending(self.session, network)
        return True

    def inspect(self, host: models.Host, network_name: str, strict: bool = False) -> dict | None:
        """Return engine details for a network, or None when it does not exist.

        Other failures log a warning and return None, or raise
        TransientEngineError when ``strict`` is set.
        """
        try:
            return self._client(host).networks.get(network_name).attrs
        except NotFound:
            return None
        except ENGINE_ERRORS as e:
            if strict:
                raise TransientEngineError(
                    f"Could not inspect {network_name} on host {host.name}: {summarize_error(e)}"
                ) from e
            logger.warning(
                f"Inspect of network {network_name} on host {host.name} failed: {e}",
                extra={"host_id": host.id, "network": network_name},
            )
            return None

    def list(self, host: models.Host, managed_only: bool = False, strict: bool = False) -> list[EngineNetwork]:
        filters = {"label": f"{settings.label('managed')}=true"} if managed_only else None
        try:
            found = self._client(host).networks.list(filters=filters)
        except ENGINE_ERRORS as e:
            if strict:
                raise TransientEngineError(
                    f"Could not list networks on host {host.name}: {summarize_error(e)}"
                ) from e
            logger.warning(f"Listing networks on host {host.name} failed: {e}", extra={"host_id": host.id})
            return []

        networks = []
        for net in found:
            attrs = net.attrs or {}
            networks.append(
                EngineNetwork(
                    name=attrs.get("Name", net.name),
                    id=attrs.get("Id", net.id),
                    driver=attrs.get("Driver", ""),
                    labels=attrs.get("Labels") or {},
                    internal=bool(attrs.get("Internal")),
                    attachable=bool(attrs.get("Attachable")),
                )
            )
        return networks

    # --- Container membership ---

    def connect(
        self,
        host: models.Host,
        network_name: str,
        container: str,
        aliases: list[str] | None = None,
    ) -> OpResult:
        try:
            self._client(host).networks.get(network_name).connect(container, aliases=aliases or None)
        except ENGINE_ERRORS as e:
            if _is_already_exists(e):
                self._record("connect", Outcome.ALREADY_SATISFIED)
                return OpResult(Outcome.ALREADY_SATISFIED)
            summary = self._log_failure("connect", host, e, network=network_name, container=container)
            return OpResult(Outcome.FAILED, summary)

        self._record("connect", Outcome.APPLIED)
        logger.debug(f"Connected {container} to {network_name} on host {host.name}")
        return OpResult(Outcome.APPLIED)

    def disconnect(
        self,
        host: models.Host,
        network_name: str,
        container: str,
        force: bool = False,
    ) -> OpResult:
        try:
            self._client(host).networks.get(network_name).disconnect(container, force=force)
        except NotFound:
            # Either the network or the container is gone
            self._record("disconnect", Outcome.ALREADY_SATISFIED)
            return OpResult(Outcome.ALREADY_SATISFIED)
        except ENGINE_ERRORS as e:
            if _is_not_connected(e):
                self._record("disconnect", Outcome.ALREADY_SATISFIED)
                return OpResult(Outcome.ALREADY_SATISFIED)
            summary = self._log_failure("disconnect", host, e, network=network_name, container=container)
            return OpResult(Outcome.FAILED, summary)

        self._record("disconnect", Outcome.APPLIED)
        logger.debug(f"Disconnected {container} from {network_name} on host {host.name}")
        return OpResult(Outcome.APPLIED)

    def container_networks(self, host: models.Host, container: str) -> list[str]:
        """Names of the networks a container is currently attached to."""
        try:
            attrs = self._client(host).containers.get(container).attrs
        except NotFound:
            return []
        except ENGINE_ERRORS as e:
            logger.warning(
                f"Inspect of container {container} on host {host.name} failed: {e}",
                extra={"host_id": host.id, "container": container},
            )
            return []
        return sorted(((attrs.get("NetworkSettings") or {}).get("Networks") or {}).keys())

    # --- Swarm services ---

    def list_services(self, host: models.Host, filters: dict, strict: bool = False) -> list[str]:
        try:
            return [service.name for service in self._client(host).services.list(filters=filters)]
        except ENGINE_ERRORS as e:
            if strict:
                raise TransientEngineError(
                    f"Could not list services on host {host.name}: {summarize_error(e)}"
                ) from e
            logger.warning(f"Listing services on host {host.name} failed: {e}", extra={"host_id": host.id})
            return []

    def update_service_networks(
        self,
        host: models.Host,
        service_name: str,
        add: list[str],
        remove: list[str],
    ) -> OpResult:
        """Apply every network addition and removal in one service update.

        Each update of a swarm service's networks triggers a rolling
        redeploy, so the whole change is sent at once and nothing is sent
        when membership already matches.
        """
        try:
            client = self._client(host)
            service = client.services.get(service_name)
            current = self._service_network_entries(client, service)
            current_names = {name for name, _ in current}

            desired = [entry for name, entry in current if name not in remove]
            desired += [{"Target": name} for name in add if name not in current_names]

            if not (set(add) - current_names) and not (set(remove) & current_names):
                self._record("service_update", Outcome.ALREADY_SATISFIED)
                return OpResult(Outcome.ALREADY_SATISFIED)

            service.update(networks=desired)
        except ENGINE_ERRORS as e:
            summary = self._log_failure("service_update", host, e, service=service_name)
            return OpResult(Outcome.FAILED, summary)

        self._record("service_update", Outcome.APPLIED)
        logger.info(
            f"Updated networks of service {service_name} on host {host.name}",
            extra={"host_id": host.id, "service": service_name, "add": add, "remove": remove},
        )
        return OpResult(Outcome.APPLIED)

    def _service_network_entries(self, client: docker.DockerClient, service) -> list[tuple[str, dict]]:
        spec = service.attrs.get("Spec") or {}
        entries = (spec.get("TaskTemplate") or {}).get("Networks") or spec.get("Networks") or []
        resolved = []
        for entry in entries:
            target = entry.get("Target", "")
            try:
                name = client.networks.get(target).name
            except NotFound:
                name = target
            resolved.append((name, entry))
        return resolved

    # --- Drift bookkeeping ---

    def refresh(self, network: models.ManagedNetwork, details: dict) -> None:
        """Record that the engine network exists as inspected."""
        network_registry.mark_active(self.session, network, details.get("Id"))

    def mark_orphaned(self, network: models.ManagedNetwork, reason: str) -> None:
        network_registry.mark_orphaned(self.session, network, reason)
