import asyncio
from unittest.mock import patch

import httpx
import pytest

from execution.dispatch import NodeContext
from execution.engine import WorkflowExecutionEngine
from registry.builtin_handlers import build_default_registry
from shared.config import EngineSettings
from shared.errors import GraphError, InvalidTransition
from shared.workflow_contracts import ExecutionState

SETTINGS = EngineSettings()


def _node(node_id: str, node_type: str = "transform", sub_type: str = "set", **extra) -> dict:
    return {"id": node_id, "type": node_type, "subType": sub_type, **extra}


def _edge(source: str, target: str, handle: str | None = None) -> dict:
    edge = {"source": source, "target": target}
    if handle is not None:
        edge["sourceHandle"] = handle
    return edge


def _orders_transport(count: int) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/orders"
        return httpx.Response(200, json={"count": count})

    return httpx.MockTransport(handler)


def test_condition_false_skips_true_branch() -> None:
    async def _run() -> ExecutionState:
        registry = build_default_registry(SETTINGS, http_transport=_orders_transport(3))
        engine = WorkflowExecutionEngine(
            "wf-orders",
            [
                _node("A", "trigger", "manual"),
                _node("B", "action", "http", config={"url": "https://api.example.test/orders"}),
                _node("C", "logic", "condition", config={"condition": '{{ $node["B"].json.data.count > 10 }}'}),
                _node("D", config={"values": {"size": "big"}}),
                _node("E", config={"values": {"size": "small"}}),
            ],
            [_edge("A", "B"), _edge("B", "C"), _edge("C", "D", "true"), _edge("C", "E", "false")],
            registry=registry,
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "completed"
    assert state.error is None
    assert {k: v.status for k, v in state.outputs.items()} == {
        "A": "completed",
        "B": "completed",
        "C": "completed",
        "D": "skipped",
        "E": "completed",
    }
    assert state.outputs["B"].data["data"] == {"count": 3}
    assert state.outputs["C"].branch == "false"
    assert state.outputs["E"].data == {"size": "small"}


def test_condition_true_skips_false_branch() -> None:
    async def _run() -> ExecutionState:
        registry = build_default_registry(SETTINGS, http_transport=_orders_transport(42))
        engine = WorkflowExecutionEngine(
            "wf-orders",
            [
                _node("A", "trigger", "manual"),
                _node("B", "action", "http", config={"url": "https://api.example.test/orders"}),
                _node("C", "logic", "if", config={"condition": '{{ $node["B"].json.data.count > 10 }}'}),
                _node("D", config={"values": {"size": "big"}}),
                _node("E", config={"values": {"size": "small"}}),
                _node("F", config={"values": "{{ $input.size }}"}),
            ],
            [
                _edge("A", "B"),
                _edge("B", "C"),
                _edge("C", "D", "true"),
                _edge("C", "E", "false"),
                _edge("E", "F"),
            ],
            registry=registry,
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "completed"
    assert state.outputs["D"].status == "completed"
    assert state.outputs["E"].status == "skipped"
    assert state.outputs["F"].status == "skipped"


def test_hanging_node_times_out_and_fails_run() -> None:
    async def _run() -> ExecutionState:
        registry = build_default_registry(SETTINGS)

        async def hang(context: NodeContext) -> None:
            await asyncio.Event().wait()

        registry.register("action", "hang", hang)
        engine = WorkflowExecutionEngine(
            "wf-timeout",
            [_node("A", "trigger", "manual"), _node("B", "action", "hang", timeoutMs=100), _node("C")],
            [_edge("A", "B"), _edge("B", "C")],
            registry=registry,
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "error"
    assert state.outputs["B"].status == "failed"
    assert state.outputs["B"].error == "timeout"
    assert state.outputs["C"].status == "skipped"
    assert "timeout" in state.error


def test_chain_of_n_nodes_completes_with_n_outputs() -> None:
    count = 6

    async def _run() -> ExecutionState:
        nodes = [_node("n0", "trigger", "manual", config={"payload": {"value": 0}})]
        edges = []
        for idx in range(1, count):
            nodes.append(_node(f"n{idx}", config={"values": {"value": f"{{{{ $input.value + {idx} }}}}"}}))
            edges.append(_edge(f"n{idx - 1}", f"n{idx}"))
        engine = WorkflowExecutionEngine("wf-chain", nodes, edges, settings=SETTINGS)
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "completed"
    assert len(state.outputs) == count
    assert all(output.status == "completed" for output in state.outputs.values())
    assert state.current_node_id is None
    assert state.outputs[f"n{count - 1}"].data == {"value": sum(range(count))}


def test_merge_point_receives_every_live_input() -> None:
    async def _run() -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-merge",
            [
                _node("A", "trigger", "manual"),
                _node("B", config={"values": [1, 2]}),
                _node("C", config={"values": 3}),
                _node("D", sub_type="merge", config={"mode": "append"}),
            ],
            [_edge("A", "B"), _edge("A", "C"), _edge("B", "D"), _edge("C", "D")],
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.outputs["D"].data == [1, 2, 3]


def test_switch_routes_to_matching_case() -> None:
    async def _run() -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-switch",
            [
                _node("A", "trigger", "manual", config={"payload": {"kind": "b"}}),
                _node("S", "logic", "switch", config={"value": "{{ $input.kind }}", "cases": [{"value": "a"}, {"value": "b"}]}),
                _node("X"),
                _node("Y", config={"values": "picked"}),
                _node("Z"),
            ],
            [_edge("A", "S"), _edge("S", "X", "0"), _edge("S", "Y", "1"), _edge("S", "Z", "default")],
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.outputs["S"].branch == "1"
    assert state.outputs["X"].status == "skipped"
    assert state.outputs["Y"].data == "picked"
    assert state.outputs["Z"].status == "skipped"


def test_continue_on_error_keeps_downstream_running() -> None:
    async def _run() -> ExecutionState:
        registry = build_default_registry(SETTINGS)

        def explode(context: NodeContext) -> None:
            raise RuntimeError("explode")

        registry.register("action", "explode", explode)
        engine = WorkflowExecutionEngine(
            "wf-soft",
            [
                _node("A", "trigger", "manual"),
                _node("B", "action", "explode", continueOnError=True, retryCount=1),
                _node("C", config={"values": '{{ $node["B"].status }}'}),
            ],
            [_edge("A", "B"), _edge("B", "C")],
            registry=registry,
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "completed"
    assert state.error is None
    assert state.outputs["B"].status == "failed"
    assert state.outputs["B"].attempts == 2
    assert state.outputs["C"].data == "failed"


def test_expression_errors_fail_the_node_unless_tolerant() -> None:
    async def _run(tolerant: bool) -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-expr",
            [
                _node("A", "trigger", "manual"),
                _node("B", config={"values": {"missing": "{{ $vars.nothing }}"}}, tolerantExpressions=tolerant),
            ],
            [_edge("A", "B")],
            settings=SETTINGS,
        )
        return await engine.execute()

    strict = asyncio.run(_run(False))
    assert strict.status == "error"
    assert strict.outputs["B"].error.startswith("ExpressionError")

    tolerant = asyncio.run(_run(True))
    assert tolerant.status == "completed"
    assert tolerant.outputs["B"].data == {"missing": ""}


def test_unknown_node_type_fails_the_run() -> None:
    async def _run() -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-unknown",
            [_node("A", "trigger", "manual"), _node("B", "action", "teleport", continueOnError=True)],
            [_edge("A", "B")],
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "error"
    assert "No handler registered" in state.error


def test_initial_variables_are_readable() -> None:
    async def _run() -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-vars",
            [_node("A", "trigger", "manual"), _node("B", config={"values": "{{ $vars.greeting + ', world' }}"})],
            [_edge("A", "B")],
            settings=SETTINGS,
        )
        return await engine.execute({"initial_variables": {"greeting": "hello"}})

    state = asyncio.run(_run())
    assert state.outputs["B"].data == "hello, world"
    assert state.variables == {"greeting": "hello"}


def test_every_state_change_is_published() -> None:
    async def _run() -> tuple[ExecutionState, list[ExecutionState]]:
        engine = WorkflowExecutionEngine(
            "wf-events",
            [_node("A", "trigger", "manual"), _node("B")],
            [_edge("A", "B")],
            settings=SETTINGS,
        )
        seen: list[ExecutionState] = []
        engine.subscribe(seen.append)
        return await engine.execute(), seen

    final, seen = asyncio.run(_run())
    assert seen[0].status == "running"
    assert seen[-1] == final
    assert [s.current_node_id for s in seen if s.current_node_id] == ["A", "B"]


def test_second_execute_is_rejected() -> None:
    async def _run() -> None:
        engine = WorkflowExecutionEngine("wf", [_node("A", "trigger", "manual")], [], settings=SETTINGS)
        await engine.execute()
        with pytest.raises(InvalidTransition):
            await engine.execute()

    asyncio.run(_run())


def test_cyclic_graph_is_rejected_before_running() -> None:
    with pytest.raises(GraphError):
        WorkflowExecutionEngine(
            "wf-cycle",
            [_node("A"), _node("B")],
            [_edge("A", "B"), _edge("B", "A")],
            settings=SETTINGS,
        )


def test_snapshot_json_round_trip_preserves_order_and_scalars() -> None:
    async def _run() -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-json",
            [
                _node("A", "trigger", "manual"),
                _node("B", config={"values": {"n": 1.5, "flag": True, "text": "ok", "none": None}}),
                _node("C", config={"values": [3, 2, 1]}),
            ],
            [_edge("A", "B"), _edge("B", "C")],
            settings=SETTINGS,
        )
        return await engine.execute()

    state = asyncio.run(_run())
    restored = ExecutionState.model_validate_json(state.model_dump_json())
    assert restored.execution_order == state.execution_order
    assert list(restored.outputs) == list(state.outputs)
    assert restored.outputs["B"].data == {"n": 1.5, "flag": True, "text": "ok", "none": None}
    assert restored.outputs["C"].data == [3, 2, 1]
    assert restored.outputs["B"].end_time == state.outputs["B"].end_time


def test_arithmetic_overflow_fails_the_node_or_resolves_tolerantly() -> None:
    async def _run(tolerant: bool) -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-overflow",
            [
                _node("A", "trigger", "manual"),
                _node("B", config={"values": "{{ Math.floor(1e999) }}"}, tolerantExpressions=tolerant),
            ],
            [_edge("A", "B")],
            settings=SETTINGS,
        )
        return await engine.execute()

    strict = asyncio.run(_run(False))
    assert strict.status == "error"
    assert strict.outputs["B"].status == "failed"
    assert strict.outputs["B"].error.startswith("ExpressionError")

    tolerant = asyncio.run(_run(True))
    assert tolerant.status == "completed"
    assert tolerant.outputs["B"].data == ""


def test_engine_crash_finalizes_the_in_flight_node() -> None:
    async def _run() -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-crash",
            [_node("A", "trigger", "manual"), _node("B"), _node("C")],
            [_edge("A", "B"), _edge("B", "C")],
            settings=SETTINGS,
        )
        real_run = engine.dispatcher.run

        async def crash_on_b(node, context):
            if node.id == "B":
                raise RuntimeError("dispatcher blew up")
            return await real_run(node, context)

        with patch.object(engine.dispatcher, "run", side_effect=crash_on_b):
            return await engine.execute()

    state = asyncio.run(_run())
    assert state.status == "error"
    assert state.error == "Engine failure: dispatcher blew up"
    assert state.outputs["B"].status == "failed"
    assert state.outputs["B"].end_time is not None
    assert state.outputs["C"].status == "skipped"
    assert all(output.status != "running" for output in state.outputs.values())


def test_static_false_condition_takes_the_false_branch() -> None:
    async def _run(condition: str) -> ExecutionState:
        engine = WorkflowExecutionEngine(
            "wf-static-condition",
            [
                _node("A", "trigger", "manual", config={"payload": {"count": 42}}),
                _node("C", "logic", "if", config={"condition": condition}),
                _node("T", config={"values": "yes"}),
                _node("F", config={"values": "no"}),
            ],
            [_edge("A", "C"), _edge("C", "T", "true"), _edge("C", "F", "false")],
            settings=SETTINGS,
        )
        return await engine.execute()

    static = asyncio.run(_run("false"))
    assert static.outputs["C"].branch == "false"
    assert static.outputs["T"].status == "skipped"
    assert static.outputs["F"].status == "completed"

    predicate = asyncio.run(_run("$input.count > 10"))
    assert predicate.outputs["C"].branch == "true"
    assert predicate.outputs["T"].data == "yes"
    assert predicate.outputs["F"].status == "skipped"
