"""Exception hierarchy for network management.

ConfigurationError and its subclasses are rejected synchronously at the
administrative boundary and are never retried by the scheduler.
TransientEngineError marks failures that a later attempt can fix.
"""
from __future__ import annotations


class NetworkManagementError(Exception):
    """Base class for all network management errors."""


class ConfigurationError(NetworkManagementError):
    """Request cannot succeed with the current configuration or state."""


class IsolationDisabled(ConfigurationError):
    def __init__(self, message: str = "Network management is disabled"):
        super().__init__(message)


class NetworkLimitReached(ConfigurationError):
    def __init__(self, host_id: str, limit: int):
        self.host_id = host_id
        self.limit = limit
        super().__init__(f"Maximum networks per server ({limit}) reached")


class InvalidScopeOperation(ConfigurationError):
    """Operation is not allowed for the network's scope."""


class ProtectedNetworkError(InvalidScopeOperation):
    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"Cannot delete {scope}-scoped networks")


class AutoAttachedDetachError(InvalidScopeOperation):
    def __init__(self):
        super().__init__(
            "Cannot detach an auto-attached environment network; "
            "move the resource to a different environment instead"
        )


class CrossHostAttachmentError(InvalidScopeOperation):
    def __init__(self):
        super().__init__("Network and resource must be on the same server")


class InvalidStatusTransition(ConfigurationError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid network status transition {current} -> {target}")


class ResourceNotFound(NetworkManagementError):
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class TransientEngineError(NetworkManagementError):
    """Engine unreachable, timed out, or a mandatory step did not complete."""


class ReconciliationIncomplete(TransientEngineError):
    def __init__(self, resource_key: str, failures: list[str]):
        self.resource_key = resource_key
        self.failures = failures
        super().__init__(
            f"Reconciliation of {resource_key} incomplete: {'; '.join(failures)}"
        )
