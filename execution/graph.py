"""Graph model: adjacency, topological order and branch reachability."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from shared.errors import GraphError
from shared.workflow_contracts import DEFAULT_HANDLE, WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)

NodeLike = WorkflowNode | Mapping[str, Any]
EdgeLike = WorkflowEdge | Mapping[str, Any]


class WorkflowGraph:
    """Immutable, validated view over a workflow's nodes and edges."""

    def __init__(self, nodes: Iterable[NodeLike], edges: Iterable[EdgeLike] = ()):
        self.nodes: list[WorkflowNode] = [_coerce(WorkflowNode, item, "node") for item in nodes]
        self.edges: list[WorkflowEdge] = [_coerce(WorkflowEdge, item, "edge") for item in edges]
        self._validate_shape()

        self.node_by_id: dict[str, WorkflowNode] = {node.id: node for node in self.nodes}
        self._declared = {node.id: idx for idx, node in enumerate(self.nodes)}
        self.incoming: dict[str, list[WorkflowEdge]] = {node.id: [] for node in self.nodes}
        self.outgoing: dict[str, list[WorkflowEdge]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            self.incoming[edge.target].append(edge)
            self.outgoing[edge.source].append(edge)

        self._order = self._compute_order()
        for node_id in self.entry_points():
            if self.node_by_id[node_id].type != "trigger":
                logger.warning("Node '%s' has no incoming edges and is not a trigger", node_id)

    def _validate_shape(self) -> None:
        if not self.nodes:
            raise GraphError("Workflow must contain at least one node", reason="empty")

        node_ids = [node.id for node in self.nodes]
        if any(not node_id.strip() for node_id in node_ids):
            raise GraphError("Workflow nodes must use non-empty ids", reason="invalid_node")

        duplicates = sorted({node_id for node_id in node_ids if node_ids.count(node_id) > 1})
        if duplicates:
            raise GraphError(f"Workflow node ids must be unique: {duplicates}", reason="duplicate", node_ids=duplicates)

        node_by_id = {node.id: node for node in self.nodes}
        for edge in self.edges:
            if edge.source not in node_by_id:
                raise GraphError(f"Edge source '{edge.source}' not found in nodes", reason="dangling_edge")
            if edge.target not in node_by_id:
                raise GraphError(f"Edge target '{edge.target}' not found in nodes", reason="dangling_edge")
            source = node_by_id[edge.source]
            allowed = source.allowed_handles()
            if edge.source_handle not in allowed:
                raise GraphError(
                    f"Edge from '{edge.source}' uses handle '{edge.source_handle}'; "
                    f"allowed handles: {sorted(allowed)}",
                    reason="invalid_handle",
                    node_ids=[edge.source],
                )

    def _compute_order(self) -> list[str]:
        in_degree = {node.id: len(self.incoming[node.id]) for node in self.nodes}
        queue: deque[str] = deque(node.id for node in self.nodes if in_degree[node.id] == 0)
        order: list[str] = []

        while queue:
            node_id = queue.popleft()
            order.append(node_id)
            released: list[str] = []
            for edge in self.outgoing[node_id]:
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    released.append(edge.target)
            queue.extend(sorted(released, key=self._declared.__getitem__))

        if len(order) != len(self.nodes):
            cyclic = [node.id for node in self.nodes if in_degree[node.id] > 0]
            raise GraphError(f"Workflow contains a cycle through: {cyclic}", reason="cycle", node_ids=cyclic)
        return order

    def topological_order(self) -> list[str]:
        """Entry points first, then every node after all its predecessors."""
        return list(self._order)

    def entry_points(self) -> list[str]:
        return [node.id for node in self.nodes if not self.incoming[node.id]]

    def successors(self, node_id: str, chosen_handle: str = DEFAULT_HANDLE) -> list[str]:
        """Targets reached from ``node_id`` through the chosen handle."""
        targets: list[str] = []
        for edge in self.outgoing.get(node_id, []):
            if edge.source_handle == chosen_handle and edge.target not in targets:
                targets.append(edge.target)
        return targets

    def predecessors_of(self, node_id: str) -> list[str]:
        sources: list[str] = []
        for edge in self.incoming.get(node_id, []):
            if edge.source not in sources:
                sources.append(edge.source)
        return sources

    def live_predecessors(self, node_id: str, settled: Mapping[str, "SettledNode"]) -> list[str]:
        """Predecessors whose edge into ``node_id`` carries data."""
        sources: list[str] = []
        for edge in self.incoming.get(node_id, []):
            if not self._edge_is_dead(edge, settled) and edge.source not in sources:
                sources.append(edge.source)
        return sources

    def dead_targets(self, settled: Mapping[str, "SettledNode"], pending: Iterable[str]) -> list[str]:
        """Mark-and-sweep of pending nodes that no live edge can reach any more.

        ``settled`` maps finished node ids to their outcome. A pending node is
        dead once all of its incoming edges are dead; marking it dead can kill
        edges further downstream, so the sweep runs to a fixpoint. Nodes with
        at least one live incoming edge (merge points) survive.
        """
        view: dict[str, SettledNode] = dict(settled)
        candidates = [node_id for node_id in pending if node_id not in view]
        dead: list[str] = []
        changed = True
        while changed:
            changed = False
            for node_id in self._order:
                if node_id not in candidates or node_id in view:
                    continue
                incoming = self.incoming[node_id]
                if incoming and all(self._edge_is_dead(edge, view) for edge in incoming):
                    view[node_id] = SettledNode(status="skipped")
                    dead.append(node_id)
                    changed = True
        return dead

    def _edge_is_dead(self, edge: WorkflowEdge, settled: Mapping[str, "SettledNode"]) -> bool:
        source = settled.get(edge.source)
        if source is None:
            return False
        if source.status == "skipped":
            return True
        if self.node_by_id[edge.source].is_branching:
            if source.status != "completed":
                return True
            return edge.source_handle != source.branch
        return False


class SettledNode:
    """Outcome facts the sweep needs about a finished node."""

    __slots__ = ("status", "branch")

    def __init__(self, status: str, branch: str | None = None):
        self.status = status
        self.branch = branch


def _coerce(model: Any, item: Any, kind: str) -> Any:
    if isinstance(item, model):
        return item
    try:
        return model.model_validate(item)
    except ValidationError as exc:
        raise GraphError(f"Invalid {kind}: {exc.errors()[0].get('msg', exc)}", reason=f"invalid_{kind}") from exc
