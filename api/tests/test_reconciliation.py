"""Tests for per-resource reconciliation (services/reconciliation.py)."""
from __future__ import annotations

import pytest

from netrecon import models
from netrecon.cluster import StaticClusterCapability
from netrecon.errors import ReconciliationIncomplete, TransientEngineError
from netrecon.resources import ResourceRef
from netrecon.services import network_registry
from netrecon.services.reconciliation import detach_resource, reconcile_resource
from netrecon.state import ResourceKind


@pytest.fixture
def app_ref(application) -> ResourceRef:
    return ResourceRef(ResourceKind.APPLICATION, application.id)


@pytest.fixture
def stack_ref(service_stack) -> ResourceRef:
    return ResourceRef(ResourceKind.SERVICE, service_stack.id)


class TestStandaloneReconcile:
    """Containers on a plain docker host are connected one by one."""

    def test_connects_container_to_environment_network(
        self, test_db, driver, engine, application, environment, app_ref
    ):
        engine.add_container(application.id, "coolify")

        report = reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        env_name = f"ce-env-{environment.id}"
        assert report.strategy == "standalone"
        assert report.networks == [env_name]
        assert engine.containers[application.id] == {"coolify", env_name}

        attachments = network_registry.list_attachments(test_db, app_ref)
        assert len(attachments) == 1
        assert attachments[0].is_auto_attached is True
        assert attachments[0].is_connected is True
        assert attachments[0].aliases == [application.id]

    def test_reconcile_twice_converges(self, test_db, driver, engine, application, app_ref):
        engine.add_container(application.id, "coolify")
        cluster = StaticClusterCapability()

        reconcile_resource(test_db, app_ref, driver, cluster)
        reconcile_resource(test_db, app_ref, driver, cluster)

        assert test_db.query(models.ManagedNetwork).count() == 1
        assert test_db.query(models.ResourceNetwork).count() == 1

    def test_strict_isolation_leaves_default_network(
        self, test_db, driver, engine, application, environment, app_ref, default_settings
    ):
        default_settings.isolation_mode = "strict"
        engine.add_container(application.id, "coolify")

        report = reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        assert engine.containers[application.id] == {f"ce-env-{environment.id}"}
        assert report.disconnected == [f"{application.id}@coolify"]

    def test_strict_isolation_when_already_off_default_network(
        self, test_db, driver, engine, application, app_ref, default_settings
    ):
        default_settings.isolation_mode = "strict"
        engine.add_container(application.id)

        reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

    def test_proxy_isolation_for_reachable_resource(
        self, test_db, driver, engine, application, host, environment, app_ref, default_settings
    ):
        default_settings.proxy_isolation = True
        application.fqdn = "https://shop.example.com"
        test_db.commit()
        engine.add_container(application.id)

        report = reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        assert report.networks == [f"ce-env-{environment.id}", f"ce-proxy-{host.id}"]
        assert f"ce-proxy-{host.id}" in engine.containers[application.id]
        assert len(network_registry.list_attachments(test_db, app_ref)) == 2

    def test_proxy_isolation_skips_internal_resource(
        self, test_db, driver, engine, application, app_ref, default_settings
    ):
        default_settings.proxy_isolation = True
        engine.add_container(application.id)

        report = reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        assert len(report.networks) == 1

    def test_isolation_none_is_a_noop(self, test_db, driver, engine, application, app_ref, default_settings):
        default_settings.isolation_mode = "none"
        engine.add_container(application.id)

        report = reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        assert report.skipped_reason == "isolation disabled"
        assert test_db.query(models.ManagedNetwork).count() == 0
        assert engine.calls_of("connect") == []

    def test_failed_connect_marks_attachment_disconnected(
        self, test_db, driver, engine, application, app_ref
    ):
        # Container never started, connect fails with NotFound
        with pytest.raises(ReconciliationIncomplete) as exc_info:
            reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        assert application.id in str(exc_info.value)
        attachments = network_registry.list_attachments(test_db, app_ref)
        assert len(attachments) == 1
        assert attachments[0].is_connected is False
        assert attachments[0].connected_at is None

    def test_network_creation_failure_aborts_before_connect(
        self, test_db, driver, engine, application, app_ref
    ):
        engine.add_container(application.id)
        engine.fail_create = True

        with pytest.raises(TransientEngineError):
            reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        assert engine.calls_of("connect") == []
        assert test_db.query(models.ResourceNetwork).count() == 0

    def test_service_stack_containers(self, test_db, driver, engine, service_stack, environment, stack_ref):
        engine.add_container(f"api-{service_stack.id}")
        engine.add_container(f"db-{service_stack.id}")

        reconcile_resource(test_db, stack_ref, driver, StaticClusterCapability())

        env_name = f"ce-env-{environment.id}"
        assert env_name in engine.containers[f"api-{service_stack.id}"]
        assert env_name in engine.containers[f"db-{service_stack.id}"]


class TestOrchestratedReconcile:
    """Swarm services get one batched network update each."""

    @pytest.fixture
    def swarm(self, host) -> StaticClusterCapability:
        return StaticClusterCapability({host.id})

    @pytest.fixture
    def stack_services(self, engine, service_stack):
        engine.add_service(f"{service_stack.id}_api", "coolify-overlay")
        engine.add_service(f"{service_stack.id}_db", "coolify-overlay")

    def test_one_update_per_service_in_strict_mode(
        self, test_db, driver, engine, service_stack, environment, stack_ref, swarm, stack_services,
        default_settings,
    ):
        default_settings.isolation_mode = "strict"

        report = reconcile_resource(test_db, stack_ref, driver, swarm)

        env_name = f"ce-env-{environment.id}"
        assert report.strategy == "orchestrated"
        assert len(engine.service_updates) == 2
        for service_name in (f"{service_stack.id}_api", f"{service_stack.id}_db"):
            assert engine.service_network_names(service_name) == {env_name}

        network = network_registry.find_network(test_db, service_stack.host_id, env_name)
        assert network.driver == "overlay"
        attachments = network_registry.list_attachments(test_db, stack_ref)
        assert len(attachments) == 1
        assert attachments[0].is_connected is True

    def test_environment_mode_keeps_default_overlay(
        self, test_db, driver, engine, service_stack, environment, stack_ref, swarm, stack_services
    ):
        reconcile_resource(test_db, stack_ref, driver, swarm)

        assert engine.service_network_names(f"{service_stack.id}_api") == {
            "coolify-overlay",
            f"ce-env-{environment.id}",
        }

    def test_second_reconcile_sends_no_updates(
        self, test_db, driver, engine, stack_ref, swarm, stack_services
    ):
        reconcile_resource(test_db, stack_ref, driver, swarm)
        reconcile_resource(test_db, stack_ref, driver, swarm)

        assert len(engine.service_updates) == 2

    def test_application_service_found_by_label(self, test_db, driver, engine, application, app_ref, swarm):
        engine.add_service(
            "storefront-svc", "coolify-overlay", labels={"coolify.applicationId": application.id}
        )

        reconcile_resource(test_db, app_ref, driver, swarm)

        assert [name for name, _ in engine.service_updates] == ["storefront-svc"]

    def test_no_services_is_skipped(self, test_db, driver, engine, stack_ref, swarm):
        report = reconcile_resource(test_db, stack_ref, driver, swarm)

        assert report.skipped_reason == "no swarm services"
        assert engine.service_updates == []


class TestDetachResource:
    def test_disconnects_and_drops_rows(self, test_db, driver, engine, application, host, environment, app_ref):
        engine.add_container(application.id, "coolify")
        reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())

        removed = detach_resource(test_db, app_ref, driver, host, containers=[application.id])

        assert removed == 1
        assert engine.containers[application.id] == {"coolify"}
        assert network_registry.list_attachments(test_db, app_ref) == []
        # The environment network itself stays for other resources
        assert network_registry.find_network(test_db, host.id, f"ce-env-{environment.id}") is not None

    def test_missing_containers_still_drop_rows(self, test_db, driver, engine, application, host, app_ref):
        engine.add_container(application.id)
        reconcile_resource(test_db, app_ref, driver, StaticClusterCapability())
        del engine.containers[application.id]

        assert detach_resource(test_db, app_ref, driver, host, containers=[application.id]) == 1
        assert network_registry.list_attachments(test_db, app_ref) == []
