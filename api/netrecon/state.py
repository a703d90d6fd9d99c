"""Centralized state enums for the network registry and scheduler.

All status and kind strings used by models, services and tasks are defined
here so callers compare against enum members instead of bare literals.
"""
from __future__ import annotations

from enum import Enum


class NetworkStatus(str, Enum):
    """Lifecycle status of a managed network."""

    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    ORPHANED = "orphaned"


class NetworkScope(str, Enum):
    """Ownership tier of a managed network."""

    ENVIRONMENT = "environment"
    PROJECT = "project"
    SHARED = "shared"
    PROXY = "proxy"
    SYSTEM = "system"


# Token used inside generated engine network names
SCOPE_NAME_TOKENS: dict[NetworkScope, str] = {
    NetworkScope.ENVIRONMENT: "env",
    NetworkScope.PROJECT: "project",
    NetworkScope.SHARED: "shared",
    NetworkScope.PROXY: "proxy",
    NetworkScope.SYSTEM: "system",
}

# Scopes that cannot be removed through the normal delete path
PROTECTED_SCOPES: frozenset[NetworkScope] = frozenset(
    {NetworkScope.SYSTEM, NetworkScope.ENVIRONMENT}
)


class NetworkDriverName(str, Enum):
    BRIDGE = "bridge"
    OVERLAY = "overlay"
    MACVLAN = "macvlan"


class IsolationMode(str, Enum):
    """Global policy for auto-joining scoped networks."""

    NONE = "none"
    ENVIRONMENT = "environment"
    STRICT = "strict"


class ResourceKind(str, Enum):
    """Kinds of deployable resources that can hold network attachments."""

    APPLICATION = "application"
    SERVICE = "service"
    DATABASE = "database"


class TaskKind(str, Enum):
    RESOURCE = "resource"
    FULL = "full"
    DETACH = "detach"
    PROXY_MIGRATION = "proxy_migration"


class ReconcileTaskStatus(str, Enum):
    """Status of one scheduled reconciliation task."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEAD = "dead"
    DROPPED = "dropped"


# Statuses that hold a mutual-exclusion key
ACTIVE_TASK_STATUSES: tuple[ReconcileTaskStatus, ...] = (
    ReconcileTaskStatus.QUEUED,
    ReconcileTaskStatus.RUNNING,
    ReconcileTaskStatus.RETRYING,
)
