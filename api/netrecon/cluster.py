"""Cluster capability: is a host part of an orchestrated (Swarm) cluster?"""
from __future__ import annotations

import logging
from typing import Protocol

from docker.errors import DockerException
from requests.exceptions import RequestException

from netrecon import models
from netrecon.config import settings
from netrecon.engine import EngineConnector
from netrecon.utils.cache import TTLCache

logger = logging.getLogger(__name__)


class ClusterCapability(Protocol):
    def is_orchestrated(self, host: models.Host) -> bool: ...


class SwarmClusterCapability:
    """Detects Swarm membership from ``docker info``.

    Answers are cached per host in the instance's own TTLCache. Engine
    failures answer False and are not cached.
    """

    def __init__(self, connector: EngineConnector, cache: TTLCache | None = None):
        self.connector = connector
        self.cache = cache or TTLCache(ttl=settings.cluster_cache_ttl)

    def is_orchestrated(self, host: models.Host) -> bool:
        cached = self.cache.get(host.id)
        if cached is not None:
            return cached

        try:
            info = self.connector.client(host).info()
        except (DockerException, RequestException) as e:
            logger.warning(
                f"Could not read swarm state for host {host.name}: {e}",
                extra={"host_id": host.id},
            )
            return False

        swarm = info.get("Swarm") or {}
        orchestrated = swarm.get("LocalNodeState") == "active"
        self.cache.set(host.id, orchestrated)
        return orchestrated


class StaticClusterCapability:
    """Fixed answers per host id, for hosts whose topology is known up front."""

    def __init__(self, orchestrated_hosts: set[str] | None = None):
        self.orchestrated_hosts = set(orchestrated_hosts or ())

    def is_orchestrated(self, host: models.Host) -> bool:
        return host.id in self.orchestrated_hosts
