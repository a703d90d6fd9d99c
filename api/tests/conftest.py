"""Shared pytest fixtures for network reconciliation tests."""
from __future__ import annotations

import uuid
from contextlib import contextmanager

import pytest
from docker.errors import APIError, NotFound
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from netrecon import models
from netrecon.config import settings
from netrecon.services.network_driver import NetworkDriver


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def test_db(test_engine):
    """Create a database session for testing."""
    TestingSessionLocal = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Pin behaviour-relevant settings regardless of the environment."""
    monkeypatch.setattr(settings, "enabled", True)
    monkeypatch.setattr(settings, "isolation_mode", "environment")
    monkeypatch.setattr(settings, "proxy_isolation", False)
    monkeypatch.setattr(settings, "swarm_overlay_encryption", False)
    monkeypatch.setattr(settings, "max_networks_per_server", 200)
    monkeypatch.setattr(settings, "name_prefix", "ce")
    monkeypatch.setattr(settings, "label_namespace", "coolify")
    monkeypatch.setattr(settings, "default_network", "coolify")
    monkeypatch.setattr(settings, "default_overlay_network", "coolify-overlay")
    monkeypatch.setattr(settings, "proxy_container", "coolify-proxy")
    monkeypatch.setattr(settings, "orphan_grace_days", 7)
    monkeypatch.setattr(settings, "reconcile_max_attempts", 3)
    monkeypatch.setattr(settings, "post_deploy_delay", 3)
    return settings


# --- Control-plane factories ---


@pytest.fixture
def host(test_db: Session) -> models.Host:
    host = models.Host(name="host-1", team_id="team-1", docker_url="unix:///var/run/docker.sock")
    test_db.add(host)
    test_db.commit()
    return host


@pytest.fixture
def environment(test_db: Session) -> models.Environment:
    project = models.Project(name="shop", team_id="team-1")
    test_db.add(project)
    test_db.flush()
    env = models.Environment(name="production", project_id=project.id)
    test_db.add(env)
    test_db.commit()
    return env


@pytest.fixture
def application(test_db: Session, host, environment) -> models.Application:
    app = models.Application(
        name="storefront", environment_id=environment.id, host_id=host.id, fqdn=None
    )
    test_db.add(app)
    test_db.commit()
    return app


@pytest.fixture
def service_stack(test_db: Session, host, environment) -> models.ServiceStack:
    stack = models.ServiceStack(name="analytics", environment_id=environment.id, host_id=host.id)
    stack.components = [
        models.ServiceComponent(name="api", kind="application"),
        models.ServiceComponent(name="db", kind="database"),
    ]
    test_db.add(stack)
    test_db.commit()
    return stack


# --- Fake Redis ---


class FakeRedis:
    """Enough of redis.Redis for SETNX locks."""

    def __init__(self):
        self.store: dict[str, str] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    def exists(self, key):
        return 1 if key in self.store else 0


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    from netrecon.utils import locks

    fake = FakeRedis()
    monkeypatch.setattr(locks, "get_redis", lambda: fake)
    return fake


# --- Fake Docker engine ---


class FakeNetwork:
    def __init__(self, engine: "FakeEngine", attrs: dict):
        self.engine = engine
        self.attrs = attrs

    @property
    def name(self) -> str:
        return self.attrs["Name"]

    @property
    def id(self) -> str:
        return self.attrs["Id"]

    def connect(self, container, aliases=None):
        self.engine.calls.append(("connect", self.name, container))
        if container not in self.engine.containers:
            raise NotFound(f"No such container: {container}")
        if self.name in self.engine.containers[container]:
            raise APIError(f"endpoint with name {container} already exists in network {self.name}")
        self.engine.containers[container].add(self.name)

    def disconnect(self, container, force=False):
        self.engine.calls.append(("disconnect", self.name, container))
        if container not in self.engine.containers:
            raise NotFound(f"No such container: {container}")
        if self.name not in self.engine.containers[container]:
            raise APIError(f"container {container} is not connected to network {self.name}")
        self.engine.containers[container].discard(self.name)

    def remove(self):
        self.engine.calls.append(("remove", self.name))
        self.engine.networks.pop(self.name, None)


class FakeNetworks:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    def create(self, name, driver=None, options=None, ipam=None, internal=False,
               attachable=None, labels=None, **kwargs):
        self.engine.calls.append(("create", name))
        if self.engine.fail_create:
            raise APIError("failed to allocate network: pool overlaps with other one on this address space")
        if name in self.engine.networks:
            raise APIError(f"network with name {name} already exists")
        attrs = {
            "Name": name,
            "Id": uuid.uuid4().hex,
            "Driver": driver or "bridge",
            "Labels": labels or {},
            "Internal": internal,
            "Attachable": bool(attachable),
            "Options": options or {},
            "IPAM": ipam,
        }
        self.engine.networks[name] = attrs
        return FakeNetwork(self.engine, attrs)

    def get(self, name_or_id):
        if self.engine.unreachable:
            raise APIError("Cannot connect to the Docker daemon")
        for attrs in self.engine.networks.values():
            if name_or_id in (attrs["Name"], attrs["Id"]):
                return FakeNetwork(self.engine, attrs)
        raise NotFound(f"network {name_or_id} not found")

    def list(self, filters=None):
        networks = [FakeNetwork(self.engine, attrs) for attrs in self.engine.networks.values()]
        label = (filters or {}).get("label")
        if label:
            key, _, value = label.partition("=")
            networks = [n for n in networks if n.attrs["Labels"].get(key) == value]
        return networks


class FakeContainer:
    def __init__(self, networks: set[str]):
        self.attrs = {"NetworkSettings": {"Networks": {name: {} for name in networks}}}


class FakeContainers:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    def get(self, name):
        if name not in self.engine.containers:
            raise NotFound(f"No such container: {name}")
        return FakeContainer(self.engine.containers[name])


class FakeService:
    def __init__(self, engine: "FakeEngine", name: str, labels: dict, network_ids: list[str]):
        self.engine = engine
        self.name = name
        self.labels = labels
        self.attrs = {
            "Spec": {
                "Name": name,
                "Labels": labels,
                "TaskTemplate": {"Networks": [{"Target": nid} for nid in network_ids]},
            }
        }

    def update(self, networks=None, **kwargs):
        self.engine.service_updates.append((self.name, list(networks or [])))
        resolved = []
        for entry in networks or []:
            target = entry["Target"] if isinstance(entry, dict) else entry
            resolved.append({"Target": self.engine.networks_client.get(target).id})
        self.attrs["Spec"]["TaskTemplate"]["Networks"] = resolved
        return True


class FakeServices:
    def __init__(self, engine: "FakeEngine"):
        self.engine = engine

    def list(self, filters=None):
        filters = filters or {}
        services = list(self.engine.services.values())
        if "name" in filters:
            services = [s for s in services if s.name.startswith(filters["name"])]
        if "label" in filters:
            key, _, value = filters["label"].partition("=")
            services = [s for s in services if s.labels.get(key) == value]
        return services

    def get(self, name):
        if name not in self.engine.services:
            raise NotFound(f"service {name} not found")
        return self.engine.services[name]


class FakeEngine:
    """In-memory docker engine with the parts of docker-py the driver uses."""

    def __init__(self, swarm: bool = False):
        self.swarm = swarm
        self.networks: dict[str, dict] = {}
        self.containers: dict[str, set[str]] = {}
        self.services: dict[str, FakeService] = {}
        self.calls: list[tuple] = []
        self.service_updates: list[tuple[str, list]] = []
        self.fail_create = False
        self.unreachable = False
        self.networks_client = FakeNetworks(self)
        self.containers_client = FakeContainers(self)
        self.services_client = FakeServices(self)

    def info(self):
        return {"Swarm": {"LocalNodeState": "active" if self.swarm else "inactive"}}

    def add_network(self, name: str, labels: dict | None = None, driver: str = "bridge") -> dict:
        return self.networks_client.create(name, driver=driver, labels=labels or {}).attrs

    def add_container(self, name: str, *networks: str) -> None:
        self.containers[name] = set(networks)

    def add_service(self, name: str, *networks: str, labels: dict | None = None) -> FakeService:
        ids = [self.networks[n]["Id"] for n in networks]
        service = FakeService(self, name, labels or {}, ids)
        self.services[name] = service
        return service

    def service_network_names(self, name: str) -> set[str]:
        targets = self.services[name].attrs["Spec"]["TaskTemplate"]["Networks"]
        return {self.networks_client.get(t["Target"]).name for t in targets}

    def calls_of(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]


class FakeDockerClient:
    """Exposes a FakeEngine through docker.DockerClient attribute names."""

    def __init__(self, engine: FakeEngine):
        self.engine = engine
        self.networks = engine.networks_client
        self.containers = engine.containers_client
        self.services = engine.services_client

    def info(self):
        return self.engine.info()

    def close(self):
        pass


class FakeConnector:
    def __init__(self, engine: FakeEngine):
        self.engine = engine
        self.timeout = 5

    def client(self, host):
        return FakeDockerClient(self.engine)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def engine() -> FakeEngine:
    fake = FakeEngine()
    fake.add_network("coolify")
    fake.add_network("coolify-overlay", driver="overlay")
    return fake


@pytest.fixture
def connector(engine) -> FakeConnector:
    return FakeConnector(engine)


@pytest.fixture
def driver(test_db, connector) -> NetworkDriver:
    return NetworkDriver(test_db, connector)


@pytest.fixture
def session_scope(test_db):
    """Stand-in for db.get_session bound to the test session."""

    @contextmanager
    def _scope():
        yield test_db

    return _scope
