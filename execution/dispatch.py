"""Node executor dispatch: handler lookup, timeout, retry and result normalization."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Any

from observability.logger import Observability
from registry.node_registry import CredentialResolver, NodeHandlerRegistry
from shared.errors import NodeTimeoutError, UnknownNodeType
from shared.workflow_contracts import WorkflowNode

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "timeout"


@dataclass
class NodeResult:
    """What a handler may return: data, a branch selector, or an error result."""

    data: Any = None
    branch: str | bool | int | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class NodeContext:
    """Everything a handler may read while running one node."""

    node: WorkflowNode
    config: dict[str, Any]
    input: Any = None
    inputs: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] = field(default_factory=dict)
    execution_id: str = ""
    workflow_id: str = ""
    attempt: int = 1
    cancel_event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class DispatchOutcome:
    succeeded: bool
    data: Any = None
    branch: str | None = None
    error: str | None = None
    attempts: int = 0
    fatal: bool = False


class NodeDispatcher:
    """Runs a node's handler within its timeout and retry policy."""

    def __init__(
        self,
        registry: NodeHandlerRegistry,
        *,
        credential_resolver: CredentialResolver | None = None,
        default_timeout_ms: float = 30_000.0,
        default_retry_backoff_ms: float = 0.0,
        observability: Observability | None = None,
    ):
        self.registry = registry
        self.credential_resolver = credential_resolver
        self.default_timeout_ms = default_timeout_ms
        self.default_retry_backoff_ms = default_retry_backoff_ms
        self.obs = observability or Observability()

    async def run(self, node: WorkflowNode, context: NodeContext) -> DispatchOutcome:
        try:
            handler = self.registry.resolve(node.type, node.sub_type)
        except UnknownNodeType as exc:
            logger.error("Dispatch failed for node '%s': %s", node.id, exc)
            return DispatchOutcome(succeeded=False, error=str(exc), fatal=True)

        if node.credential_id:
            try:
                context = replace(context, credentials=self._resolve_credentials(node.credential_id))
            except Exception as exc:
                return DispatchOutcome(succeeded=False, error=f"Credential resolution failed: {exc}", attempts=0)

        max_attempts = 1 + node.retry_count
        timeout_seconds = (node.timeout_ms or self.default_timeout_ms) / 1000.0
        backoff_seconds = (node.retry_backoff_ms or self.default_retry_backoff_ms) / 1000.0

        outcome = DispatchOutcome(succeeded=False, error=f"Node '{node.id}' failed.")
        for attempt in range(1, max_attempts + 1):
            attempt_context = replace(context, attempt=attempt)
            try:
                with self.obs.measure("node_attempt", {"node_id": node.id, "attempt": attempt}):
                    raw = await asyncio.wait_for(self._invoke(handler, attempt_context), timeout=timeout_seconds)
                outcome = self._normalize(node, raw)
            except TimeoutError:
                outcome = DispatchOutcome(succeeded=False, error=str(NodeTimeoutError(node_id=node.id)))
            except Exception as exc:
                outcome = DispatchOutcome(succeeded=False, error=str(exc) or type(exc).__name__)
            outcome.attempts = attempt

            if outcome.succeeded or attempt >= max_attempts:
                return outcome

            logger.info("Retrying node '%s' after attempt %d failed: %s", node.id, attempt, outcome.error)
            sleep_seconds = backoff_seconds * (2 ** (attempt - 1)) if backoff_seconds > 0 else 0.0
            if sleep_seconds > 0:
                await asyncio.sleep(sleep_seconds + random.uniform(0.0, sleep_seconds * 0.1))

        return outcome

    def _resolve_credentials(self, credential_id: str) -> dict[str, Any]:
        if self.credential_resolver is None:
            raise LookupError("no credential resolver configured")
        return dict(self.credential_resolver.resolve(credential_id))

    async def _invoke(self, handler: Any, context: NodeContext) -> Any:
        result = handler(context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _normalize(self, node: WorkflowNode, raw: Any) -> DispatchOutcome:
        result = raw if isinstance(raw, NodeResult) else NodeResult(data=raw)
        if not result.succeeded:
            return DispatchOutcome(succeeded=False, data=result.data, error=result.error)

        if not node.is_branching:
            return DispatchOutcome(succeeded=True, data=result.data)

        branch = _branch_label(result.branch)
        if branch is None:
            return DispatchOutcome(succeeded=False, data=result.data, error=f"Node '{node.id}' did not select a branch")
        if branch not in node.allowed_handles():
            return DispatchOutcome(
                succeeded=False,
                data=result.data,
                error=f"Node '{node.id}' selected unknown branch '{branch}'",
            )
        return DispatchOutcome(succeeded=True, data=result.data, branch=branch)


def _branch_label(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip() or None
