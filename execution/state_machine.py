"""Execution state machine.

Owns the only mutable copy of a run's state and applies every transition.
Each transition publishes one immutable ``ExecutionState`` snapshot, in the
same call, to every subscriber of the channel.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from execution.events import SnapshotChannel
from shared.errors import InvalidTransition
from shared.workflow_contracts import (
    TERMINAL_STATUSES,
    ExecutionMode,
    ExecutionState,
    ExecutionStatus,
    NodeOutput,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStateMachine:
    """Single writer of ``ExecutionState`` for one execution attempt."""

    def __init__(
        self,
        workflow_id: str,
        *,
        execution_id: str | None = None,
        channel: SnapshotChannel | None = None,
    ):
        self.workflow_id = workflow_id
        self.execution_id = execution_id or f"exec_{uuid.uuid4().hex[:12]}"
        self.channel = channel or SnapshotChannel()

        self._status: ExecutionStatus = "idle"
        self._mode: ExecutionMode = "full"
        self._current_node_id: str | None = None
        self._start_time: datetime | None = None
        self._end_time: datetime | None = None
        self._outputs: dict[str, NodeOutput] = {}
        self._variables: dict[str, Any] = {}
        self._error: str | None = None
        self._order: list[str] = []
        self._stopped = False

    # ─── Read side ─────────────────────────────────────────────

    @property
    def status(self) -> ExecutionStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    def output_of(self, node_id: str) -> NodeOutput | None:
        return self._outputs.get(node_id)

    def pending_nodes(self) -> list[str]:
        """Scheduled nodes that have not started yet, in execution order."""
        return [node_id for node_id in self._order if node_id not in self._outputs]

    def snapshot(self) -> ExecutionState:
        return ExecutionState(
            id=self.execution_id,
            workflow_id=self.workflow_id,
            status=self._status,
            mode=self._mode,
            current_node_id=self._current_node_id,
            start_time=self._start_time,
            end_time=self._end_time,
            outputs=copy.deepcopy(self._outputs),
            variables=copy.deepcopy(self._variables),
            error=self._error,
            execution_order=list(self._order),
            stopped=self._stopped,
        )

    # ─── Transitions ───────────────────────────────────────────

    def start(
        self,
        mode: ExecutionMode,
        order: list[str],
        initial_variables: dict[str, Any] | None = None,
        *,
        start_node_id: str | None = None,
    ) -> None:
        """Enter ``running``; nodes scheduled before ``start_node_id`` are skipped."""
        self._require("start", "idle")
        if start_node_id is not None and start_node_id not in order:
            raise ValueError(f"start_node_id '{start_node_id}' is not scheduled")
        self._status = "running"
        self._mode = mode
        self._order = list(order)
        self._start_time = _utcnow()
        self._variables = copy.deepcopy(dict(initial_variables or {}))
        if start_node_id is not None:
            self._mark_skipped(self._order[: self._order.index(start_node_id)])
        self._publish()

    def node_begin(self, node_id: str) -> None:
        self._require("begin a node", "running")
        self._current_node_id = node_id
        self._outputs[node_id] = NodeOutput(status="running", start_time=_utcnow())
        self._publish()

    def node_end(
        self,
        node_id: str,
        *,
        succeeded: bool,
        data: Any = None,
        error: str | None = None,
        branch: str | None = None,
        attempts: int = 1,
    ) -> NodeOutput:
        self._require("end a node", "running")
        previous = self._outputs.get(node_id)
        if previous is None or previous.status != "running":
            raise InvalidTransition(f"end node '{node_id}' that is not running", self._status)

        output = NodeOutput(
            status="completed" if succeeded else "failed",
            start_time=previous.start_time,
            end_time=_utcnow(),
            data=copy.deepcopy(data),
            error=None if succeeded else (error or "failed"),
            branch=branch,
            attempts=attempts,
        )
        self._outputs[node_id] = output
        self._current_node_id = None
        self._publish()
        return output

    def skip(self, node_ids: Iterable[str]) -> list[str]:
        """Finalize unstarted nodes as ``skipped``; returns the ids actually skipped."""
        if self.is_terminal:
            raise InvalidTransition("skip nodes", self._status)
        skipped = self._mark_skipped(node_ids)
        if skipped:
            self._publish()
        return skipped

    def pause(self) -> None:
        self._require("pause", "running")
        self._status = "paused"
        self._current_node_id = None
        self._publish()

    def resume(self) -> None:
        self._require("resume", "paused")
        self._status = "running"
        self._publish()

    def step(self) -> None:
        """Re-enter ``running`` for exactly one node (the engine pauses afterwards)."""
        self._require("step forward", "paused")
        self._status = "running"
        self._publish()

    def complete(self) -> None:
        self._require("complete", "running")
        self._mark_skipped(self.pending_nodes())
        self._finish("completed")

    def stop(self) -> None:
        self._require("stop", "running", "paused")
        self._stopped = True
        self._mark_skipped(self.pending_nodes())
        self._finish("completed")

    def fail(self, message: str) -> None:
        if self.is_terminal:
            raise InvalidTransition("fail", self._status)
        self._error = message
        self._mark_skipped(self.pending_nodes())
        self._finish("error")

    def set_variable(self, name: str, value: Any) -> None:
        if self.is_terminal:
            raise InvalidTransition("create a variable", self._status)
        self._variables[name] = copy.deepcopy(value)
        self._publish()

    # ─── Internals ─────────────────────────────────────────────

    def _require(self, action: str, *allowed: ExecutionStatus) -> None:
        if self._status not in allowed:
            raise InvalidTransition(action, self._status)

    def _mark_skipped(self, node_ids: Iterable[str]) -> list[str]:
        now = _utcnow()
        skipped: list[str] = []
        for node_id in node_ids:
            if node_id in self._outputs:
                continue
            self._outputs[node_id] = NodeOutput(status="skipped", end_time=now)
            skipped.append(node_id)
        return skipped

    def _finish(self, status: ExecutionStatus) -> None:
        self._status = status
        self._current_node_id = None
        self._end_time = _utcnow()
        logger.info("Execution %s finished: status=%s stopped=%s", self.execution_id, status, self._stopped)
        self._publish()

    def _publish(self) -> None:
        self.channel.publish(self.snapshot())
