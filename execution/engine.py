"""Workflow Execution Engine.

Drives one execution of a workflow graph:
- walks nodes in topological/branch order, one at a time
- resolves each node's ``{{ ... }}`` config against the state at node start
- dispatches to the registered handler with timeout/retry policy
- supports pause/resume/step/stop and publishes every state change
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping

from execution.dispatch import DispatchOutcome, NodeContext, NodeDispatcher
from execution.events import SnapshotCallback, SnapshotChannel
from execution.graph import EdgeLike, NodeLike, SettledNode, WorkflowGraph
from execution.state_machine import ExecutionStateMachine
from execution.variables import VariableStore
from observability.logger import Observability
from registry.builtin_handlers import build_default_registry
from registry.node_registry import CredentialResolver, NodeHandlerRegistry, StaticCredentialResolver
from shared.config import EngineSettings, load_settings
from shared.errors import ExpressionError, InvalidTransition
from shared.expressions import ExpressionContext, resolve_config
from shared.workflow_contracts import ExecutionOptions, ExecutionState

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"
_SETTLED_STATUSES = ("completed", "failed", "skipped")


class WorkflowExecutionEngine:
    """Engine for a single execution of one workflow graph.

    A terminal engine is never reused; replaying a workflow means building a
    new engine from the same nodes and edges.
    """

    def __init__(
        self,
        workflow_id: str,
        nodes: Iterable[NodeLike],
        edges: Iterable[EdgeLike] = (),
        *,
        registry: NodeHandlerRegistry | None = None,
        credentials: CredentialResolver | Mapping[str, Mapping[str, Any]] | None = None,
        settings: EngineSettings | None = None,
        execution_id: str | None = None,
    ):
        self.graph = WorkflowGraph(nodes, edges)
        self.settings = settings or load_settings()
        self.registry = registry or build_default_registry(self.settings)

        resolver: CredentialResolver | None
        if credentials is None or isinstance(credentials, CredentialResolver):
            resolver = credentials
        else:
            resolver = StaticCredentialResolver(credentials)

        self.channel = SnapshotChannel()
        self._machine = ExecutionStateMachine(workflow_id, execution_id=execution_id, channel=self.channel)
        self.variables = VariableStore(self._machine)
        self.obs = Observability(self._machine.execution_id, workflow_id)
        self.dispatcher = NodeDispatcher(
            self.registry,
            credential_resolver=resolver,
            default_timeout_ms=self.settings.default_timeout_ms,
            default_retry_backoff_ms=self.settings.default_retry_backoff_ms,
            observability=self.obs,
        )
        self._order = self.graph.topological_order()

        self._driver: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None
        self._settled: asyncio.Event | None = None
        self._current_task: asyncio.Task | None = None
        self._cancel_event: asyncio.Event | None = None
        self._pause_requested = False
        self._stop_requested = False
        self._step_budget: int | None = None
        self._until_node_id: str | None = None

    # ─── Public API ────────────────────────────────────────────

    @property
    def execution_id(self) -> str:
        return self._machine.execution_id

    @property
    def workflow_id(self) -> str:
        return self._machine.workflow_id

    def get_state(self) -> ExecutionState:
        return self._machine.snapshot()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Receive every snapshot emitted from now on; returns an unsubscribe function."""
        return self.channel.subscribe(callback)

    async def execute(self, options: ExecutionOptions | Mapping[str, Any] | None = None) -> ExecutionState:
        """Start the run.

        ``full`` returns once the run is terminal (waiting across pauses);
        ``step`` returns after the first node; ``until-node`` returns once the
        target node has ended (or the run finished first).
        """
        opts = options if isinstance(options, ExecutionOptions) else ExecutionOptions.model_validate(options or {})
        if self._driver is not None or self._machine.status != "idle":
            raise InvalidTransition("execute", self._machine.status)
        if opts.until_node_id and opts.until_node_id not in self.graph.node_by_id:
            raise ValueError(f"until_node_id '{opts.until_node_id}' is not a node of this workflow")
        if opts.start_node_id and opts.start_node_id not in self.graph.node_by_id:
            raise ValueError(f"start_node_id '{opts.start_node_id}' is not a node of this workflow")

        self._wake = asyncio.Event()
        self._settled = asyncio.Event()
        self._step_budget = 1 if opts.mode == "step" else None
        self._until_node_id = opts.until_node_id if opts.mode == "until-node" else None

        self._machine.start(opts.mode, self._order, opts.initial_variables, start_node_id=opts.start_node_id)
        self.obs.log_event(
            "execution_started",
            {"mode": opts.mode, "order": self._order, "start_node_id": opts.start_node_id},
        )
        logger.info("Execution %s started: %d nodes, mode=%s", self.execution_id, len(self._order), opts.mode)

        self._driver = asyncio.create_task(self._drive(), name=f"workflow-{self.execution_id}")
        if opts.mode == "full":
            return await self.wait()
        await self._settled.wait()
        return self.get_state()

    async def wait(self) -> ExecutionState:
        """Wait until the run reaches a terminal state."""
        if self._driver is not None:
            await asyncio.shield(self._driver)
        return self.get_state()

    def pause(self) -> None:
        """Pause after the in-flight node finishes."""
        status = self._machine.status
        if status != "running":
            raise InvalidTransition("pause", status)
        self._pause_requested = True
        logger.info("Pause requested for execution %s", self.execution_id)

    def resume(self) -> None:
        """Leave ``paused`` and keep running until the end (or the next pause)."""
        self._machine.resume()
        self._pause_requested = False
        self._step_budget = None
        self._until_node_id = None
        self.obs.log_event("execution_resumed", {})
        self._signal_driver()

    async def step_forward(self) -> ExecutionState:
        """Run exactly one schedulable node, then pause again."""
        if self._machine.status == "idle" and self._driver is None:
            return await self.execute(ExecutionOptions(mode="step"))
        self._machine.step()
        self._pause_requested = False
        self._step_budget = 1
        self._signal_driver()
        if self._settled is not None:
            await self._settled.wait()
        return self.get_state()

    def stop(self) -> None:
        """Cancel the in-flight node, skip everything unstarted and complete."""
        status = self._machine.status
        if status == "paused":
            self._machine.stop()
            self.obs.log_event("execution_stopped", {"outputs": len(self.get_state().outputs)})
            self._signal_driver()
            return
        if status != "running":
            raise InvalidTransition("stop", status)

        self._stop_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()
        if self._current_task is not None and not self._current_task.done():
            self._current_task.cancel()
        logger.info("Stop requested for execution %s", self.execution_id)

    def create_variable(self, node_id: str, path: str, name: str) -> bool:
        return self.variables.create_variable(node_id, path, name)

    # ─── Driver ────────────────────────────────────────────────

    def _signal_driver(self) -> None:
        if self._settled is not None:
            self._settled.clear()
        if self._wake is not None:
            self._wake.set()

    async def _drive(self) -> None:
        assert self._wake is not None and self._settled is not None
        try:
            while not self._machine.is_terminal:
                if self._stop_requested:
                    self._machine.stop()
                    self.obs.log_event("execution_stopped", {"outputs": len(self.get_state().outputs)})
                    break

                if self._machine.status == "paused":
                    self._settled.set()
                    await self._wake.wait()
                    self._wake.clear()
                    continue

                node_id = self._next_node()
                if node_id is None:
                    self._complete()
                    break

                await self._run_node(node_id)
                if self._machine.is_terminal or self._stop_requested:
                    continue
                if self._next_node() is None:
                    self._complete()
                    break
                if self._should_pause_after(node_id):
                    self._machine.pause()
                    self.obs.log_event("execution_paused", {"after_node": node_id})
        except Exception as exc:
            logger.exception("Execution %s crashed", self.execution_id)
            if not self._machine.is_terminal:
                message = f"Engine failure: {exc}"
                in_flight = self._machine.snapshot().current_node_id
                if in_flight is not None and self._machine.status == "running":
                    self._machine.node_end(in_flight, succeeded=False, error=message)
                self._machine.fail(message)
        finally:
            self._settled.set()

    def _next_node(self) -> str | None:
        pending = self._machine.pending_nodes()
        return pending[0] if pending else None

    def _complete(self) -> None:
        self._machine.complete()
        self.obs.log_event(
            "execution_completed",
            {"outputs": len(self.get_state().outputs), "timings": self.obs.timing_summary()},
        )

    def _should_pause_after(self, node_id: str) -> bool:
        if self._pause_requested:
            self._pause_requested = False
            return True
        if self._step_budget is not None:
            self._step_budget -= 1
            if self._step_budget <= 0:
                return True
        if self._until_node_id is not None and self._until_node_id == node_id:
            self._until_node_id = None
            return True
        return False

    async def _run_node(self, node_id: str) -> None:
        node = self.graph.node_by_id[node_id]
        self._machine.node_begin(node_id)
        self.obs.log_event("node_started", {"node_id": node_id, "type": node.type, "sub_type": node.sub_type})

        state = self._machine.snapshot()
        live = self.graph.live_predecessors(node_id, self._settled_view(state))
        inputs = {source: state.outputs[source].data for source in live}
        if not inputs:
            input_value: Any = None
        elif len(inputs) == 1:
            input_value = next(iter(inputs.values()))
        else:
            input_value = list(inputs.values())

        cancelled = False
        try:
            config = resolve_config(
                node.config,
                ExpressionContext.from_state(state, input_value),
                tolerant=node.tolerant_expressions or self.settings.tolerant_expressions,
            )
        except ExpressionError as exc:
            outcome = DispatchOutcome(succeeded=False, error=f"ExpressionError: {exc}")
        else:
            self._cancel_event = asyncio.Event()
            context = NodeContext(
                node=node,
                config=config,
                input=input_value,
                inputs=inputs,
                variables=dict(state.variables),
                execution_id=self.execution_id,
                workflow_id=self.workflow_id,
                cancel_event=self._cancel_event,
            )
            task = asyncio.create_task(self.dispatcher.run(node, context))
            self._current_task = task
            if self._stop_requested:
                self._cancel_event.set()
                task.cancel()
            try:
                outcome = await task
            except asyncio.CancelledError:
                if not (self._stop_requested and task.cancelled()):
                    raise
                cancelled = True
                outcome = DispatchOutcome(succeeded=False, error=CANCELLED_ERROR)
            finally:
                self._current_task = None
                self._cancel_event = None

        output = self._machine.node_end(
            node_id,
            succeeded=outcome.succeeded,
            data=outcome.data,
            error=outcome.error,
            branch=outcome.branch,
            attempts=outcome.attempts,
        )
        if output.status == "completed":
            self.obs.log_event("node_completed", {"node_id": node_id, "branch": output.branch, "attempts": output.attempts})
        else:
            self.obs.log_event(
                "node_failed",
                {"node_id": node_id, "error": output.error, "attempts": output.attempts},
                level="WARNING",
            )
            escalate = outcome.fatal or not node.continue_on_error
            if escalate and not cancelled:
                message = f"Node '{node_id}' failed: {output.error}"
                self._machine.fail(message)
                self.obs.log_event("execution_failed", {"node_id": node_id, "error": message}, level="ERROR")
                return

        self._sweep()

    def _sweep(self) -> None:
        state = self._machine.snapshot()
        dead = self.graph.dead_targets(self._settled_view(state), self._machine.pending_nodes())
        if dead:
            self._machine.skip(dead)
            self.obs.log_event("node_skipped", {"node_ids": dead})

    @staticmethod
    def _settled_view(state: ExecutionState) -> dict[str, SettledNode]:
        return {
            node_id: SettledNode(output.status, output.branch)
            for node_id, output in state.outputs.items()
            if output.status in _SETTLED_STATUSES
        }
