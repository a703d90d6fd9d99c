"""Durable registry of managed networks and their attachments.

Row creation is insert-or-fetch: concurrent creators of the same
(engine_name, host_id) converge on one row. Status writes go through the
``mark_*`` helpers, commit immediately and are last-writer-wins.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from netrecon import models
from netrecon.errors import InvalidStatusTransition, NetworkLimitReached
from netrecon.models import utcnow
from netrecon.resources import ResourceRef
from netrecon.services.state_machine import NetworkStateMachine
from netrecon.state import NetworkStatus

logger = logging.getLogger(__name__)


# --- Reads ---


def get_network(session: Session, network_id: str) -> models.ManagedNetwork | None:
    return session.get(models.ManagedNetwork, network_id)


def find_network(session: Session, host_id: str, engine_name: str) -> models.ManagedNetwork | None:
    return (
        session.query(models.ManagedNetwork)
        .filter(
            models.ManagedNetwork.host_id == host_id,
            models.ManagedNetwork.engine_name == engine_name,
        )
        .first()
    )


def count_networks(session: Session, host_id: str) -> int:
    return (
        session.query(func.count(models.ManagedNetwork.id))
        .filter(models.ManagedNetwork.host_id == host_id)
        .scalar()
        or 0
    )


def list_networks(session: Session, host_id: str | None = None) -> list[models.ManagedNetwork]:
    query = session.query(models.ManagedNetwork)
    if host_id is not None:
        query = query.filter(models.ManagedNetwork.host_id == host_id)
    return query.order_by(models.ManagedNetwork.scope, models.ManagedNetwork.name).all()


def list_attachments(session: Session, ref: ResourceRef) -> list[models.ResourceNetwork]:
    return (
        session.query(models.ResourceNetwork)
        .filter(
            models.ResourceNetwork.resource_type == ref.kind.value,
            models.ResourceNetwork.resource_id == ref.id,
        )
        .all()
    )


def list_network_attachments(session: Session, network: models.ManagedNetwork) -> list[models.ResourceNetwork]:
    return (
        session.query(models.ResourceNetwork)
        .filter(models.ResourceNetwork.managed_network_id == network.id)
        .all()
    )


def get_attachment(
    session: Session, ref: ResourceRef, network: models.ManagedNetwork
) -> models.ResourceNetwork | None:
    return (
        session.query(models.ResourceNetwork)
        .filter(
            models.ResourceNetwork.resource_type == ref.kind.value,
            models.ResourceNetwork.resource_id == ref.id,
            models.ResourceNetwork.managed_network_id == network.id,
        )
        .first()
    )


# --- Row creation ---


def find_or_create_network(
    session: Session,
    host: models.Host,
    engine_name: str,
    defaults: dict[str, Any],
    limit: int | None = None,
) -> tuple[models.ManagedNetwork, bool]:
    """Return the network row for (engine_name, host), creating it if needed.

    Args:
        session: Database session
        host: Owning host
        engine_name: Generated engine-level network name
        defaults: Column values for a newly created row
        limit: Per-host network limit; exceeding it raises NetworkLimitReached

    Returns:
        (network, created) where created is False when the row already
        existed or a concurrent creator won the insert race.
    """
    existing = find_network(session, host.id, engine_name)
    if existing is not None:
        return existing, False

    if limit is not None and count_networks(session, host.id) >= limit:
        raise NetworkLimitReached(host.id, limit)

    network = models.ManagedNetwork(
        **{"status": NetworkStatus.PENDING.value, **defaults},
        host_id=host.id,
        engine_name=engine_name,
    )
    session.add(network)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = find_network(session, host.id, engine_name)
        if existing is None:
            raise
        logger.info(
            f"Network {engine_name} on host {host.id} created concurrently, using existing row"
        )
        return existing, False

    session.refresh(network)
    logger.info(
        f"Registered network {engine_name} on host {host.id}",
        extra={"network_id": network.id, "scope": network.scope},
    )
    return network, True


def adopt_network(
    session: Session,
    host: models.Host,
    engine_name: str,
    docker_id: str,
    defaults: dict[str, Any],
) -> tuple[models.ManagedNetwork, bool]:
    """Insert an already-existing engine network as an active row."""
    network, created = find_or_create_network(
        session,
        host,
        engine_name,
        {**defaults, "docker_id": docker_id, "status": NetworkStatus.ACTIVE.value,
         "last_synced_at": utcnow()},
    )
    return network, created


def upsert_attachment(
    session: Session,
    ref: ResourceRef,
    network: models.ManagedNetwork,
    *,
    is_auto_attached: bool,
    is_connected: bool,
    aliases: list[str] | None = None,
    ipv4_address: str | None = None,
) -> models.ResourceNetwork:
    """Update-or-create the attachment row for (resource, network)."""
    values = {
        "is_auto_attached": is_auto_attached,
        "is_connected": is_connected,
        "aliases": aliases,
        "connected_at": utcnow() if is_connected else None,
    }
    if ipv4_address is not None:
        values["ipv4_address"] = ipv4_address

    attachment = get_attachment(session, ref, network)
    if attachment is None:
        attachment = models.ResourceNetwork(
            resource_type=ref.kind.value,
            resource_id=ref.id,
            managed_network_id=network.id,
            **values,
        )
        session.add(attachment)
        try:
            session.commit()
            return attachment
        except IntegrityError:
            session.rollback()
            attachment = get_attachment(session, ref, network)
            if attachment is None:
                raise

    for column, value in values.items():
        setattr(attachment, column, value)
    session.commit()
    return attachment


def delete_attachments(
    session: Session,
    ref: ResourceRef,
    network: models.ManagedNetwork | None = None,
) -> int:
    query = session.query(models.ResourceNetwork).filter(
        models.ResourceNetwork.resource_type == ref.kind.value,
        models.ResourceNetwork.resource_id == ref.id,
    )
    if network is not None:
        query = query.filter(models.ResourceNetwork.managed_network_id == network.id)
    deleted = query.delete(synchronize_session=False)
    session.commit()
    return deleted


def delete_network_row(session: Session, network: models.ManagedNetwork) -> None:
    """Remove a network row; attachments go with it through the cascade."""
    session.delete(network)
    session.commit()


# --- Status transitions ---


def _transition(
    session: Session,
    network: models.ManagedNetwork,
    target: NetworkStatus,
    **fields: Any,
) -> models.ManagedNetwork:
    current = NetworkStatus(network.status)
    if not NetworkStateMachine.can_transition(current, target):
        raise InvalidStatusTransition(current.value, target.value)
    network.status = target.value
    for column, value in fields.items():
        setattr(network, column, value)
    session.commit()
    if current != target:
        logger.info(
            f"Network {network.engine_name} {current.value} -> {target.value}",
            extra={"network_id": network.id, "host_id": network.host_id},
        )
    return network


def mark_active(session: Session, network: models.ManagedNetwork, docker_id: str | None) -> models.ManagedNetwork:
    return _transition(
        session,
        network,
        NetworkStatus.ACTIVE,
        docker_id=docker_id or network.docker_id,
        error_message=None,
        last_synced_at=utcnow(),
    )


def mark_error(session: Session, network: models.ManagedNetwork, message: str) -> models.ManagedNetwork:
    return _transition(session, network, NetworkStatus.ERROR, error_message=message)


def mark_pending(session: Session, network: models.ManagedNetwork) -> models.ManagedNetwork:
    return _transition(session, network, NetworkStatus.PENDING, docker_id=None)


def mark_orphaned(session: Session, network: models.ManagedNetwork, reason: str) -> models.ManagedNetwork:
    return _transition(session, network, NetworkStatus.ORPHANED, docker_id=None, error_message=reason)
