"""Per-host Docker engine access.

An ``EngineConnector`` is created for one task or request and closed when it
ends. It hands out one docker-py client per host, every client carrying the
timeout the connector was created with.
"""
from __future__ import annotations

import logging
import threading

import docker
from docker.errors import DockerException

from netrecon import models
from netrecon.config import settings

logger = logging.getLogger(__name__)


class EngineConnector:
    def __init__(self, timeout: int | None = None):
        self.timeout = timeout or settings.engine_timeout
        self._clients: dict[str, docker.DockerClient] = {}
        self._lock = threading.Lock()

    def client(self, host: models.Host) -> docker.DockerClient:
        """Return the docker client for a host, connecting on first use.

        Raises DockerException when the client cannot be constructed.
        """
        with self._lock:
            client = self._clients.get(host.id)
            if client is None:
                client = docker.DockerClient(
                    base_url=host.docker_url,
                    timeout=self.timeout,
                    use_ssh_client=host.docker_url.startswith("ssh://"),
                )
                self._clients[host.id] = client
                logger.debug(f"Connected to docker engine for host {host.name} ({host.docker_url})")
            return client

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        for host_id, client in clients:
            try:
                client.close()
            except DockerException as e:
                logger.debug(f"Error closing docker client for host {host_id}: {e}")

    def __enter__(self) -> "EngineConnector":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
