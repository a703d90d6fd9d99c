"""Resource references and per-kind capability adapters.

A resource is addressed by ``ResourceRef(kind, id)``. Everything the
reconciliation engine needs to know about a resource (host, environment,
container names, service names, reachability) goes through the adapter
registered for its kind.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from netrecon import models
from netrecon.config import settings
from netrecon.errors import ResourceNotFound
from netrecon.state import ResourceKind

# Looks up swarm service names for one docker filter dict
ServiceLookup = Callable[[dict], list[str]]


@dataclass(frozen=True)
class ResourceRef:
    kind: ResourceKind
    id: str

    def __post_init__(self):
        object.__setattr__(self, "kind", ResourceKind(self.kind))

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def parse(cls, key: str) -> "ResourceRef":
        kind, _, identifier = key.partition(":")
        if not identifier:
            raise ValueError(f"Invalid resource key: {key!r}")
        return cls(ResourceKind(kind), identifier)


class ResourceAdapter:
    """Capability interface implemented once per resource kind."""

    kind: ResourceKind
    model: type

    def get(self, session: Session, ref: ResourceRef):
        row = session.get(self.model, ref.id)
        if row is None:
            raise ResourceNotFound(ref.kind.value, ref.id)
        return row

    def get_host(self, session: Session, ref: ResourceRef) -> models.Host:
        row = self.get(session, ref)
        host = session.get(models.Host, row.host_id)
        if host is None:
            raise ResourceNotFound("host", row.host_id)
        return host

    def get_environment(self, session: Session, ref: ResourceRef) -> models.Environment:
        row = self.get(session, ref)
        environment = session.get(models.Environment, row.environment_id)
        if environment is None:
            raise ResourceNotFound("environment", row.environment_id)
        return environment

    def container_names(self, session: Session, ref: ResourceRef) -> list[str]:
        raise NotImplementedError

    def is_externally_reachable(self, session: Session, ref: ResourceRef) -> bool:
        return False

    def service_names(self, session: Session, ref: ResourceRef, lookup: ServiceLookup) -> list[str]:
        raise NotImplementedError

    def refs_on_host(self, session: Session, host_id: str) -> list[ResourceRef]:
        rows = session.query(self.model.id).filter(self.model.host_id == host_id).all()
        return [ResourceRef(self.kind, row.id) for row in rows]


def _has_fqdn(value: str | None) -> bool:
    return bool(value and value.strip())


class ApplicationAdapter(ResourceAdapter):
    kind = ResourceKind.APPLICATION
    model = models.Application

    def container_names(self, session, ref):
        return [self.get(session, ref).id]

    def is_externally_reachable(self, session, ref):
        return _has_fqdn(self.get(session, ref).fqdn)

    def service_names(self, session, ref, lookup):
        app = self.get(session, ref)
        names = lookup({"label": f"{settings.label('applicationId')}={app.id}"})
        if not names:
            names = lookup({"name": app.id})
        return names


class ServiceStackAdapter(ResourceAdapter):
    kind = ResourceKind.SERVICE
    model = models.ServiceStack

    def container_names(self, session, ref):
        stack = self.get(session, ref)
        return [f"{component.name}-{stack.id}" for component in stack.components]

    def is_externally_reachable(self, session, ref):
        return _has_fqdn(self.get(session, ref).fqdn)

    def service_names(self, session, ref, lookup):
        stack = self.get(session, ref)
        names: list[str] = []
        for component in stack.components:
            for name in lookup({"name": f"{stack.id}_{component.name}"}):
                if name not in names:
                    names.append(name)
        return names


class DatabaseAdapter(ResourceAdapter):
    kind = ResourceKind.DATABASE
    model = models.StandaloneDatabase

    def container_names(self, session, ref):
        return [self.get(session, ref).id]

    def service_names(self, session, ref, lookup):
        return lookup({"name": self.get(session, ref).id})


_ADAPTERS: dict[ResourceKind, ResourceAdapter] = {
    adapter.kind: adapter
    for adapter in (ApplicationAdapter(), ServiceStackAdapter(), DatabaseAdapter())
}


def resolve_adapter(kind: ResourceKind | str) -> ResourceAdapter:
    return _ADAPTERS[ResourceKind(kind)]


def refs_on_host(session: Session, host_id: str, kinds: Iterable[ResourceKind] | None = None) -> list[ResourceRef]:
    """All resources placed on a host, across kinds."""
    refs: list[ResourceRef] = []
    for kind in kinds or ResourceKind:
        refs.extend(resolve_adapter(kind).refs_on_host(session, host_id))
    return refs
