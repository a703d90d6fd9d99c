"""State machines for managed networks and reconciliation tasks."""
from __future__ import annotations

from netrecon.state import NetworkStatus, ReconcileTaskStatus


class NetworkStateMachine:
    """Transition rules for ManagedNetwork.status.

    Network lifecycle:
        pending -> active (create or verify succeeded)
        active -> error (engine failure) or pending (explicit delete)
        error -> active (recreate or verify) or pending (delete)
        absent from engine long enough -> orphaned
        orphaned -> active (reappeared or recreated), error or pending
    """

    VALID_TRANSITIONS: dict[NetworkStatus, set[NetworkStatus]] = {
        NetworkStatus.PENDING: {NetworkStatus.ACTIVE, NetworkStatus.ERROR, NetworkStatus.ORPHANED},
        NetworkStatus.ACTIVE: {NetworkStatus.ERROR, NetworkStatus.PENDING},
        NetworkStatus.ERROR: {NetworkStatus.ACTIVE, NetworkStatus.PENDING, NetworkStatus.ORPHANED},
        NetworkStatus.ORPHANED: {NetworkStatus.ACTIVE, NetworkStatus.PENDING, NetworkStatus.ERROR},
    }

    @classmethod
    def can_transition(cls, current: NetworkStatus, target: NetworkStatus) -> bool:
        if current == target:
            return True
        return target in cls.VALID_TRANSITIONS.get(NetworkStatus(current), set())

    @classmethod
    def is_materialized(cls, status: NetworkStatus) -> bool:
        """True when the registry believes the engine object exists."""
        return status == NetworkStatus.ACTIVE


class ReconcileTaskStateMachine:
    """Transition rules for ReconciliationTask.status.

    Task lifecycle:
        queued -> running -> succeeded
        running -> retrying -> running (bounded by max_attempts)
        running -> dead (final failure or configuration error)
        queued/retrying -> dropped (another run owns the key)
        queued/retrying -> dead (enqueue failed or the row went stale)
    """

    VALID_TRANSITIONS: dict[ReconcileTaskStatus, set[ReconcileTaskStatus]] = {
        ReconcileTaskStatus.QUEUED: {
            ReconcileTaskStatus.RUNNING,
            ReconcileTaskStatus.DROPPED,
            ReconcileTaskStatus.DEAD,
        },
        ReconcileTaskStatus.RUNNING: {
            ReconcileTaskStatus.SUCCEEDED,
            ReconcileTaskStatus.RETRYING,
            ReconcileTaskStatus.DEAD,
        },
        ReconcileTaskStatus.RETRYING: {
            ReconcileTaskStatus.RUNNING,
            ReconcileTaskStatus.DROPPED,
            ReconcileTaskStatus.DEAD,
        },
        ReconcileTaskStatus.SUCCEEDED: set(),
        ReconcileTaskStatus.DEAD: set(),
        ReconcileTaskStatus.DROPPED: set(),
    }

    TERMINAL_STATES: set[ReconcileTaskStatus] = {
        ReconcileTaskStatus.SUCCEEDED,
        ReconcileTaskStatus.DEAD,
        ReconcileTaskStatus.DROPPED,
    }

    @classmethod
    def can_transition(cls, current: ReconcileTaskStatus, target: ReconcileTaskStatus) -> bool:
        if current == target:
            return True
        return target in cls.VALID_TRANSITIONS.get(ReconcileTaskStatus(current), set())

    @classmethod
    def is_terminal(cls, status: ReconcileTaskStatus) -> bool:
        return ReconcileTaskStatus(status) in cls.TERMINAL_STATES
