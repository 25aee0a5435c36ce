"""Error taxonomy for the workflow execution engine."""

from __future__ import annotations


class WorkflowEngineError(Exception):
    """Base class for every engine error."""


class GraphError(WorkflowEngineError, ValueError):
    """Raised when a workflow graph is malformed or cyclic."""

    def __init__(self, message: str, *, reason: str = "invalid", node_ids: list[str] | None = None):
        super().__init__(message)
        self.reason = reason
        self.node_ids = list(node_ids or [])


class UnknownNodeType(WorkflowEngineError):
    """Raised when no handler is registered for a node type/sub type."""

    def __init__(self, node_type: str, sub_type: str):
        super().__init__(f"No handler registered for node type '{node_type}/{sub_type}'")
        self.node_type = node_type
        self.sub_type = sub_type


class ExpressionError(WorkflowEngineError, ValueError):
    """Raised when an expression is not valid syntax or references an undefined path."""


class NodeExecutionError(WorkflowEngineError):
    """Raised (or recorded) when a node handler fails."""

    def __init__(self, message: str, *, node_id: str | None = None):
        super().__init__(message)
        self.node_id = node_id


class NodeTimeoutError(NodeExecutionError):
    """A node exceeded its timeout. Recorded with error text ``timeout``."""

    def __init__(self, *, node_id: str | None = None):
        super().__init__("timeout", node_id=node_id)


class InvalidTransition(WorkflowEngineError):
    """Raised when a control call is made from an incompatible state."""

    def __init__(self, action: str, status: str):
        super().__init__(f"Cannot {action} while execution is '{status}'")
        self.action = action
        self.status = status
