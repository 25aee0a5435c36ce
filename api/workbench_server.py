"""
Workbench API server for the workflow execution engine.

Endpoints:
- POST /executions                      start a run (graph + options)
- GET  /executions/{id}                 latest snapshot
- GET  /executions/{id}/snapshots       persisted snapshot log
- POST /executions/{id}/pause|resume|stop|step
- POST /executions/{id}/variables       promote a node output value to $vars
- GET  /executions/{id}/events          server-sent snapshot stream
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from execution.engine import WorkflowExecutionEngine
from execution.execution_store import ExecutionStore
from registry.builtin_handlers import build_default_registry
from registry.node_registry import NodeHandlerRegistry
from shared.config import EngineSettings, load_settings
from shared.errors import GraphError, InvalidTransition
from shared.workflow_contracts import ExecutionOptions, ExecutionState

logger = logging.getLogger(__name__)


class ExecutionRequest(BaseModel):
    workflow_id: str = Field(default="workflow", alias="workflowId")
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]] = Field(default_factory=list)
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)
    credentials: dict[str, dict[str, Any]] = Field(default_factory=dict)
    wait: bool = Field(default=False, description="Respond only once execute() returns")

    model_config = {"populate_by_name": True}


class VariableRequest(BaseModel):
    node_id: str = Field(alias="nodeId")
    path: str
    name: str

    model_config = {"populate_by_name": True}


def _sse_line(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _state_payload(state: ExecutionState) -> dict[str, Any]:
    return state.model_dump(mode="json")


def create_app(
    settings: EngineSettings | None = None,
    *,
    registry: NodeHandlerRegistry | None = None,
    db_path: str | None = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        _app.state.settings = settings
        _app.state.registry = registry or build_default_registry(settings)
        _app.state.store = ExecutionStore(db_path or settings.executions_db_path)
        _app.state.engines = {}
        _app.state.tasks = set()
        yield
        for engine in list(_app.state.engines.values()):
            if engine.get_state().status in ("running", "paused"):
                engine.stop()
        for task in list(_app.state.tasks):
            task.cancel()
        _app.state.store.close()

    app = FastAPI(
        title="Workflow Workbench API",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(_request: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "status": exc.status})

    @app.exception_handler(GraphError)
    async def graph_error_handler(_request: Request, exc: GraphError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "reason": exc.reason, "nodeIds": exc.node_ids})

    def _engine(request: Request, execution_id: str, action: str) -> WorkflowExecutionEngine:
        """Live engine for ``execution_id``; finished runs answer 409 from the store."""
        engine = request.app.state.engines.get(execution_id)
        if engine is not None:
            return engine
        stored = request.app.state.store.get_execution(execution_id)
        if stored is None:
            raise HTTPException(status_code=404, detail=f"Unknown execution '{execution_id}'")
        raise InvalidTransition(action, stored.status)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/executions", status_code=201)
    async def start_execution(body: ExecutionRequest, request: Request) -> dict[str, Any]:
        state = request.app.state
        engine = WorkflowExecutionEngine(
            body.workflow_id,
            body.nodes,
            body.edges,
            registry=state.registry,
            credentials=body.credentials or None,
            settings=state.settings,
        )
        for label, node_id in (("until", body.options.until_node_id), ("start", body.options.start_node_id)):
            if node_id and node_id not in engine.graph.node_by_id:
                raise HTTPException(status_code=422, detail=f"Unknown {label} node '{node_id}'")

        state.store.attach(engine)
        state.engines[engine.execution_id] = engine

        def evict_when_finished(snapshot: ExecutionState) -> None:
            if snapshot.is_terminal and state.engines.pop(snapshot.id, None) is not None:
                logger.info("Execution %s finished; serving it from the store", snapshot.id)

        engine.subscribe(evict_when_finished)
        logger.info("Execution %s registered for workflow %s", engine.execution_id, body.workflow_id)

        if body.wait:
            result = await engine.execute(body.options)
            return {"execution": _state_payload(result)}

        task = asyncio.create_task(engine.execute(body.options))
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)
        return {"execution": _state_payload(engine.get_state())}

    @app.get("/executions")
    async def list_executions(request: Request, workflow_id: str | None = None) -> dict[str, Any]:
        rows = request.app.state.store.list_executions(workflow_id)
        return {"executions": [_state_payload(row) for row in rows]}

    @app.get("/executions/{execution_id}")
    async def get_execution(execution_id: str, request: Request) -> dict[str, Any]:
        engine = request.app.state.engines.get(execution_id)
        if engine is not None:
            return {"execution": _state_payload(engine.get_state())}
        stored = request.app.state.store.get_execution(execution_id)
        if stored is None:
            raise HTTPException(status_code=404, detail=f"Unknown execution '{execution_id}'")
        return {"execution": _state_payload(stored)}

    @app.get("/executions/{execution_id}/snapshots")
    async def list_snapshots(execution_id: str, request: Request) -> dict[str, Any]:
        snapshots = request.app.state.store.list_snapshots(execution_id)
        if not snapshots and execution_id not in request.app.state.engines:
            raise HTTPException(status_code=404, detail=f"Unknown execution '{execution_id}'")
        return {"snapshots": [_state_payload(s) for s in snapshots]}

    @app.post("/executions/{execution_id}/pause")
    async def pause_execution(execution_id: str, request: Request) -> dict[str, Any]:
        engine = _engine(request, execution_id, "pause")
        engine.pause()
        return {"execution": _state_payload(engine.get_state())}

    @app.post("/executions/{execution_id}/resume")
    async def resume_execution(execution_id: str, request: Request) -> dict[str, Any]:
        engine = _engine(request, execution_id, "resume")
        engine.resume()
        return {"execution": _state_payload(engine.get_state())}

    @app.post("/executions/{execution_id}/stop")
    async def stop_execution(execution_id: str, request: Request) -> dict[str, Any]:
        engine = _engine(request, execution_id, "stop")
        engine.stop()
        return {"execution": _state_payload(engine.get_state())}

    @app.post("/executions/{execution_id}/step")
    async def step_execution(execution_id: str, request: Request) -> dict[str, Any]:
        engine = _engine(request, execution_id, "step forward")
        result = await engine.step_forward()
        return {"execution": _state_payload(result)}

    @app.post("/executions/{execution_id}/variables")
    async def create_variable(execution_id: str, body: VariableRequest, request: Request) -> dict[str, Any]:
        engine = _engine(request, execution_id, "create a variable")
        created = engine.create_variable(body.node_id, body.path, body.name)
        return {"created": created, "variables": engine.get_state().variables}

    @app.get("/executions/{execution_id}/events")
    async def stream_events(execution_id: str, request: Request) -> StreamingResponse:
        engine = request.app.state.engines.get(execution_id)
        if engine is None:
            stored = request.app.state.store.get_execution(execution_id)
            if stored is None:
                raise HTTPException(status_code=404, detail=f"Unknown execution '{execution_id}'")

            async def finished_stream():
                yield _sse_line(_state_payload(stored))

            return StreamingResponse(finished_stream(), media_type="text/event-stream")

        async def event_stream():
            queue: asyncio.Queue[ExecutionState] = asyncio.Queue()
            unsubscribe = engine.subscribe(queue.put_nowait)
            try:
                current = engine.get_state()
                yield _sse_line(_state_payload(current))
                while not current.is_terminal:
                    current = await queue.get()
                    yield _sse_line(_state_payload(current))
                    if await request.is_disconnected():
                        break
            finally:
                unsubscribe()

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    return app


app = create_app()
