"""Tests for the Docker network driver (services/network_driver.py)."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from requests.exceptions import ReadTimeout

from netrecon import models
from netrecon.errors import TransientEngineError
from netrecon.services import network_registry
from netrecon.services.network_driver import NetworkDriver, Outcome, summarize_error
from netrecon.state import NetworkStatus


@pytest.fixture
def env_network(test_db, host, environment) -> models.ManagedNetwork:
    network, _ = network_registry.find_or_create_network(
        test_db,
        host,
        f"ce-env-{environment.id}",
        {
            "name": "shop / production",
            "scope": "environment",
            "environment_id": environment.id,
            "project_id": environment.project_id,
        },
    )
    return network


class TestCreate:
    """Tests for NetworkDriver.create."""

    def test_create_marks_active_with_engine_id(self, driver, engine, host, env_network):
        assert driver.create(host, env_network) is True

        attrs = engine.networks[env_network.engine_name]
        assert env_network.status == NetworkStatus.ACTIVE.value
        assert env_network.docker_id == attrs["Id"]
        assert attrs["Labels"]["coolify.managed"] == "true"
        assert attrs["Labels"]["coolify.scope"] == "environment"
        assert attrs["Labels"]["coolify.environment"] == env_network.environment_id
        assert attrs["Labels"]["coolify.project"] == env_network.project_id

    def test_existing_network_counts_as_created(self, driver, engine, host, env_network):
        existing = engine.add_network(env_network.engine_name)

        assert driver.create(host, env_network) is True
        assert env_network.status == NetworkStatus.ACTIVE.value
        assert env_network.docker_id == existing["Id"]

    def test_failure_marks_error_with_summary(self, driver, engine, host, env_network):
        engine.fail_create = True

        assert driver.create(host, env_network) is False
        assert env_network.status == NetworkStatus.ERROR.value
        assert env_network.error_message.startswith("failed to allocate network")
        assert env_network.docker_id is None

    def test_encrypted_overlay_option(self, test_db, driver, engine, host):
        network, _ = network_registry.find_or_create_network(
            test_db, host, "ce-shared-x",
            {"name": "x", "scope": "shared", "driver": "overlay", "is_encrypted_overlay": True},
        )

        driver.create(host, network)

        attrs = engine.networks["ce-shared-x"]
        assert attrs["Driver"] == "overlay"
        assert "encrypted" in attrs["Options"]
        assert attrs["Attachable"] is True

    def test_bridge_network_has_no_encryption(self, driver, engine, host, env_network):
        env_network.is_encrypted_overlay = True

        driver.create(host, env_network)

        assert "encrypted" not in engine.networks[env_network.engine_name]["Options"]


class TestDelete:
    def test_delete_resets_to_pending(self, driver, engine, host, env_network):
        driver.create(host, env_network)

        assert driver.delete(host, env_network) is True
        assert env_network.engine_name not in engine.networks
        assert env_network.status == NetworkStatus.PENDING.value
        assert env_network.docker_id is None

    def test_delete_missing_network_is_not_an_error(self, driver, host, env_network):
        assert driver.delete(host, env_network) is True
        assert env_network.status == NetworkStatus.PENDING.value


class TestMembership:
    """Tests for connect/disconnect idempotence."""

    def test_connect_then_connect_again(self, driver, engine, host):
        engine.add_container("c1")

        first = driver.connect(host, "coolify", "c1", aliases=["c1"])
        second = driver.connect(host, "coolify", "c1", aliases=["c1"])

        assert first.outcome == Outcome.APPLIED
        assert second.outcome == Outcome.ALREADY_SATISFIED
        assert "coolify" in engine.containers["c1"]

    def test_connect_missing_container_fails(self, driver, host):
        result = driver.connect(host, "coolify", "ghost")

        assert result.outcome == Outcome.FAILED
        assert result.ok is False
        assert "ghost" in result.detail

    def test_disconnect_not_connected_is_satisfied(self, driver, engine, host):
        engine.add_container("c1")

        result = driver.disconnect(host, "coolify", "c1", force=True)

        assert result.outcome == Outcome.ALREADY_SATISFIED

    def test_disconnect_connected(self, driver, engine, host):
        engine.add_container("c1", "coolify")

        result = driver.disconnect(host, "coolify", "c1", force=True)

        assert result.outcome == Outcome.APPLIED
        assert "coolify" not in engine.containers["c1"]

    def test_container_networks(self, driver, engine, host):
        engine.add_container("c1", "coolify", "coolify-overlay")

        assert driver.container_networks(host, "c1") == ["coolify", "coolify-overlay"]
        assert driver.container_networks(host, "ghost") == []


class TestInspectAndList:
    def test_inspect_missing_returns_none(self, driver, host):
        assert driver.inspect(host, "nope") is None

    def test_inspect_unreachable_soft_by_default(self, driver, engine, host):
        engine.unreachable = True

        assert driver.inspect(host, "coolify") is None

    def test_inspect_unreachable_strict_raises(self, driver, engine, host):
        engine.unreachable = True

        with pytest.raises(TransientEngineError):
            driver.inspect(host, "coolify", strict=True)

    def test_list_managed_only(self, driver, engine, host):
        engine.add_network("ce-env-1", labels={"coolify.managed": "true", "coolify.scope": "environment"})

        names = [n.name for n in driver.list(host, managed_only=True)]
        all_names = [n.name for n in driver.list(host)]

        assert names == ["ce-env-1"]
        assert set(all_names) == {"coolify", "coolify-overlay", "ce-env-1"}


class TestServiceNetworks:
    """Tests for batched swarm service network updates."""

    def test_single_update_carries_add_and_remove(self, driver, engine, host):
        engine.add_network("ce-env-1", driver="overlay")
        engine.add_service("stack_api", "coolify-overlay")

        result = driver.update_service_networks(host, "stack_api", ["ce-env-1"], ["coolify-overlay"])

        assert result.outcome == Outcome.APPLIED
        assert len(engine.service_updates) == 1
        assert engine.service_network_names("stack_api") == {"ce-env-1"}

    def test_no_update_when_already_matching(self, driver, engine, host):
        engine.add_network("ce-env-1", driver="overlay")
        engine.add_service("stack_api", "ce-env-1")

        result = driver.update_service_networks(host, "stack_api", ["ce-env-1"], ["coolify-overlay"])

        assert result.outcome == Outcome.ALREADY_SATISFIED
        assert engine.service_updates == []

    def test_keeps_unrelated_networks(self, driver, engine, host):
        engine.add_network("ce-env-1", driver="overlay")
        engine.add_network("monitoring", driver="overlay")
        engine.add_service("stack_api", "coolify-overlay", "monitoring")

        driver.update_service_networks(host, "stack_api", ["ce-env-1"], ["coolify-overlay"])

        assert engine.service_network_names("stack_api") == {"ce-env-1", "monitoring"}


class TestTimeouts:
    def test_timeout_is_a_failure_not_a_hang(self, test_db, host):
        client = MagicMock()
        client.networks.get.side_effect = ReadTimeout("Read timed out. (read timeout=5)")
        connector = MagicMock()
        connector.client.return_value = client
        driver = NetworkDriver(test_db, connector)

        result = driver.connect(host, "coolify", "c1")

        assert result.outcome == Outcome.FAILED
        assert "timed out" in result.detail


class TestSummarizeError:
    def test_first_line_only(self):
        assert summarize_error(RuntimeError("line one\nline two")) == "line one"

    def test_truncated(self):
        assert len(summarize_error(RuntimeError("x" * 1000))) == 255
