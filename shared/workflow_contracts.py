"""Workflow graph and execution contracts.

The canvas produces ``WorkflowNode``/``WorkflowEdge`` payloads (camelCase keys
are accepted); the engine publishes ``ExecutionState`` snapshots built from
``NodeOutput`` records. All models are immutable after creation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


NodeType = Literal["trigger", "action", "logic", "transform"]
NodeStatus = Literal["pending", "running", "completed", "failed", "skipped"]
ExecutionStatus = Literal["idle", "running", "paused", "completed", "error"]
ExecutionMode = Literal["full", "step", "until-node"]

DEFAULT_HANDLE = "output"
CONDITION_HANDLES = ("true", "false")
SWITCH_DEFAULT_HANDLE = "default"
CONDITION_SUB_TYPES = frozenset({"condition", "if"})
SWITCH_SUB_TYPES = frozenset({"switch"})
TERMINAL_STATUSES = frozenset({"completed", "error"})


class WorkflowNode(BaseModel):
    """A single step of a workflow graph."""

    model_config = {"frozen": True, "populate_by_name": True}

    id: str
    type: NodeType
    sub_type: str = Field(default="", alias="subType")
    label: str = Field(default="")
    config: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    retry_backoff_ms: float = Field(default=0.0, ge=0.0, alias="retryBackoffMs")
    timeout_ms: float | None = Field(default=None, gt=0.0, alias="timeoutMs")
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    tolerant_expressions: bool = Field(default=False, alias="tolerantExpressions")
    credential_id: str | None = Field(default=None, alias="credentialId")

    @property
    def is_condition(self) -> bool:
        return self.type == "logic" and self.sub_type in CONDITION_SUB_TYPES

    @property
    def is_switch(self) -> bool:
        return self.type == "logic" and self.sub_type in SWITCH_SUB_TYPES

    @property
    def is_branching(self) -> bool:
        return self.is_condition or self.is_switch

    def allowed_handles(self) -> set[str]:
        """Source handles this node may declare on its outgoing edges."""
        if self.is_condition:
            return set(CONDITION_HANDLES)
        if self.is_switch:
            cases = self.config.get("cases")
            count = len(cases) if isinstance(cases, list) else 0
            return {str(idx) for idx in range(count)} | {SWITCH_DEFAULT_HANDLE}
        return {DEFAULT_HANDLE}


class WorkflowEdge(BaseModel):
    """Directed connection between two nodes, tagged by source handle."""

    model_config = {"frozen": True, "populate_by_name": True}

    source: str
    target: str
    source_handle: str = Field(default=DEFAULT_HANDLE, alias="sourceHandle")

    @model_validator(mode="before")
    @classmethod
    def _default_handle(cls, data: Any) -> Any:
        # React Flow sends ``sourceHandle: null`` for plain edges.
        if isinstance(data, dict):
            for key in ("source_handle", "sourceHandle"):
                if key in data and data[key] in (None, ""):
                    data = {k: v for k, v in data.items() if k != key}
        return data


class NodeOutput(BaseModel):
    """Recorded result of one node's execution."""

    model_config = {"frozen": True}

    status: NodeStatus = Field(default="pending")
    start_time: datetime | None = Field(default=None)
    end_time: datetime | None = Field(default=None)
    data: Any = Field(default=None)
    error: str | None = Field(default=None)
    branch: str | None = Field(default=None, description="Handle selected by a branching node")
    attempts: int = Field(default=0, ge=0)


class ExecutionOptions(BaseModel):
    """How a run is driven."""

    model_config = {"frozen": True, "populate_by_name": True}

    mode: ExecutionMode = Field(default="full")
    until_node_id: str | None = Field(default=None, alias="untilNodeId")
    start_node_id: str | None = Field(default=None, alias="startNodeId")
    initial_variables: dict[str, Any] = Field(default_factory=dict, alias="initialVariables")

    @model_validator(mode="after")
    def validate_until_node(self) -> "ExecutionOptions":
        if self.mode == "until-node" and not self.until_node_id:
            raise ValueError("until-node mode requires until_node_id")
        return self


class ExecutionState(BaseModel):
    """Observable snapshot of one workflow run."""

    model_config = {"frozen": True}

    id: str
    workflow_id: str
    status: ExecutionStatus = Field(default="idle")
    mode: ExecutionMode = Field(default="full")
    current_node_id: str | None = Field(default=None)
    start_time: datetime | None = Field(default=None)
    end_time: datetime | None = Field(default=None)
    outputs: dict[str, NodeOutput] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    error: str | None = Field(default=None)
    execution_order: list[str] = Field(default_factory=list)
    stopped: bool = Field(default=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
