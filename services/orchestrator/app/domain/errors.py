"""Engine error kinds."""
from __future__ import annotations


class OrchestratorError(Exception):
    """Base error carrying the node, the attempted operation and the underlying cause."""

    remediation = "Inspect the node logs and the orchestrator log for details"

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.node_id:
            parts.append(f"node={self.node_id}")
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.cause is not None:
            parts.append(f"cause={self.cause!r}")
        return " | ".join(parts)

    def to_dict(self) -> dict[str, str | None]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "remediation": self.remediation,
            "nodeId": self.node_id,
            "operation": self.operation,
        }


class ProvisioningError(OrchestratorError):
    remediation = "Check the build toolchain, the revision identifier or the artifact URL"


class AssetGenerationError(OrchestratorError):
    remediation = "Fix the network overrides so accounts, balances and node ids agree"


class ProcessError(OrchestratorError):
    remediation = "Inspect the node's captured output (crash tail) and its config.toml"

    def __init__(self, message: str, *, exit_code: int | None = None, log_tail: list[str] | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.log_tail = list(log_tail or [])


class UpgradeError(OrchestratorError):
    remediation = "The node kept its previous binary; provide a resolvable artifact"


class NetworkStateError(OrchestratorError):
    remediation = "Query the network status and retry once the node is in the required state"


class NodeNotFoundError(NetworkStateError):
    remediation = "Use one of the node ids reported by the network status"


__all__ = [
    "OrchestratorError",
    "ProvisioningError",
    "AssetGenerationError",
    "ProcessError",
    "UpgradeError",
    "NetworkStateError",
    "NodeNotFoundError",
]
