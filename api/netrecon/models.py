"""SQLAlchemy models.

Two groups of tables live on the same metadata:

- control-plane tables (hosts, projects, environments and deployable
  resources) that this package only reads;
- registry tables (managed networks, attachments, reconciliation tasks)
  that this package exclusively owns.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from netrecon.state import NetworkDriverName, NetworkStatus, ReconcileTaskStatus


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


# --- Control plane (read-only here) ---


class Host(Base):
    __tablename__ = "hosts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    team_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    # docker-py base URL: unix://, tcp:// or ssh://
    docker_url: Mapped[str] = mapped_column(String(512), default="unix:///var/run/docker.sock")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    team_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    environments: Mapped[list["Environment"]] = relationship(back_populates="project")


class Environment(Base):
    __tablename__ = "environments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE")
    )

    project: Mapped[Project] = relationship(back_populates="environments")


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    environment_id: Mapped[str] = mapped_column(String(36), ForeignKey("environments.id"))
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("hosts.id"))
    fqdn: Mapped[str | None] = mapped_column(String(1024), nullable=True)


class ServiceStack(Base):
    """A compute service bundle made of several components."""

    __tablename__ = "service_stacks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    environment_id: Mapped[str] = mapped_column(String(36), ForeignKey("environments.id"))
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("hosts.id"))
    fqdn: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    components: Mapped[list["ServiceComponent"]] = relationship(
        back_populates="stack",
        cascade="all, delete-orphan",
        order_by="ServiceComponent.name",
    )


class ServiceComponent(Base):
    __tablename__ = "service_components"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    stack_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("service_stacks.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(20), default="application")  # application | database

    stack: Mapped[ServiceStack] = relationship(back_populates="components")


class StandaloneDatabase(Base):
    __tablename__ = "standalone_databases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    environment_id: Mapped[str] = mapped_column(String(36), ForeignKey("environments.id"))
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("hosts.id"))


# --- Network registry ---


class ManagedNetwork(Base):
    """One logical container network on one host."""

    __tablename__ = "managed_networks"
    __table_args__ = (
        UniqueConstraint("engine_name", "host_id", name="uq_managed_network_engine_name_host"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    engine_name: Mapped[str] = mapped_column(String(255), index=True)
    host_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hosts.id", ondelete="CASCADE"), index=True
    )
    team_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    driver: Mapped[str] = mapped_column(String(20), default=NetworkDriverName.BRIDGE.value)
    scope: Mapped[str] = mapped_column(String(20), index=True)
    project_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    environment_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    subnet: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False)
    is_attachable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_proxy_network: Mapped[bool] = mapped_column(Boolean, default=False)
    is_encrypted_overlay: Mapped[bool] = mapped_column(Boolean, default=False)
    options: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    labels: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    docker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=NetworkStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    attachments: Mapped[list["ResourceNetwork"]] = relationship(
        back_populates="network",
        cascade="all, delete-orphan",
    )


class ResourceNetwork(Base):
    """Attachment of one resource to one managed network."""

    __tablename__ = "resource_networks"
    __table_args__ = (
        UniqueConstraint(
            "resource_type", "resource_id", "managed_network_id",
            name="uq_resource_network_resource_network",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    resource_type: Mapped[str] = mapped_column(String(20))
    resource_id: Mapped[str] = mapped_column(String(36), index=True)
    managed_network_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("managed_networks.id", ondelete="CASCADE"), index=True
    )
    aliases: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    ipv4_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_auto_attached: Mapped[bool] = mapped_column(Boolean, default=False)
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    network: Mapped[ManagedNetwork] = relationship(back_populates="attachments")


class ReconciliationTask(Base):
    """Durable record of one scheduled reconciliation run."""

    __tablename__ = "reconciliation_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    kind: Mapped[str] = mapped_column(String(30))
    lock_key: Mapped[str] = mapped_column(String(255), index=True)
    resource_type: Mapped[str] = mapped_column(String(20))
    resource_id: Mapped[str] = mapped_column(String(36))
    host_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=ReconcileTaskStatus.QUEUED.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
