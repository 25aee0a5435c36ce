"""
Workflow Engine: Main CLI Entrypoint.

Runs a workflow JSON file through the execution engine, or serves the
workbench API.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from execution.engine import WorkflowExecutionEngine
from execution.execution_store import ExecutionStore
from shared.config import EngineSettings, load_settings
from shared.errors import WorkflowEngineError
from shared.workflow_contracts import ExecutionState

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)

# ─── Rich Console ───────────────────────────────────────────────

console = Console()

_STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "skipped": "dim",
    "running": "yellow",
    "pending": "white",
}


def setup_logging(settings: EngineSettings) -> None:
    """Configure logging."""
    logging.basicConfig(
        level=settings.log_level_value,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def load_workflow(path: str) -> dict[str, Any]:
    """Read a workflow file: ``{"id"?, "nodes": [...], "edges": [...]}``."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict) or not isinstance(payload.get("nodes"), list):
        raise ValueError(f"{path}: expected an object with a 'nodes' list")
    payload.setdefault("edges", [])
    payload.setdefault("id", Path(path).stem)
    return payload


def _preview(value: Any, limit: int = 60) -> str:
    if value is None:
        return ""
    text = json.dumps(value, ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def render_state(state: ExecutionState) -> None:
    """Render node outputs of a finished (or paused) run."""
    table = Table(
        title=f"Execution {state.id}",
        box=box.SIMPLE_HEAVY,
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Node", style="bold white")
    table.add_column("Status")
    table.add_column("Branch", style="magenta")
    table.add_column("Attempts", justify="right")
    table.add_column("Data / Error", style="white")

    for node_id in state.execution_order:
        output = state.outputs.get(node_id)
        if output is None:
            table.add_row(node_id, Text("pending", style=_STATUS_STYLES["pending"]), "", "", "")
            continue
        detail = output.error if output.error else _preview(output.data)
        table.add_row(
            node_id,
            Text(output.status, style=_STATUS_STYLES.get(output.status, "white")),
            output.branch or "",
            str(output.attempts) if output.attempts else "",
            detail or "",
        )

    console.print()
    console.print(table)

    if state.status == "error":
        console.print(Panel(Text(state.error or "Unknown error", style="bold red"), title="❌ Failed", border_style="red", box=box.ROUNDED))
    elif state.stopped:
        console.print(Panel(Text("Stopped before completion", style="bold yellow"), title="⏹ Stopped", border_style="yellow", box=box.ROUNDED))
    elif state.status == "completed":
        console.print(Panel(Text("All reachable nodes finished", style="bold green"), title="✅ Completed", border_style="green", box=box.ROUNDED))
    else:
        console.print(Text(f"  Status: {state.status}", style="dim"))

    if state.variables:
        console.print(Text(f"  $vars: {_preview(state.variables, 200)}", style="dim"))


async def run_workflow(path: str, mode: str, settings: EngineSettings, db_path: str | None = None) -> ExecutionState:
    workflow = load_workflow(path)
    engine = WorkflowExecutionEngine(
        str(workflow["id"]),
        workflow["nodes"],
        workflow["edges"],
        credentials=workflow.get("credentials"),
        settings=settings,
    )
    store = ExecutionStore(db_path) if db_path else None
    if store is not None:
        store.attach(engine)
    try:
        state = await engine.execute({"mode": mode, "initial_variables": workflow.get("variables") or {}})
        # In step mode, advance one node per Enter until the run finishes.
        while mode == "step" and not state.is_terminal:
            render_state(state)
            answer = await asyncio.to_thread(console.input, "[bold cyan]Enter[/] = step, [bold]s[/] = stop › ")
            if answer.strip().lower() in ("s", "stop", "q"):
                engine.stop()
                state = engine.get_state()
                break
            state = await engine.step_forward()
        return state
    finally:
        if store is not None:
            store.close()


def main() -> None:
    """Entrypoint with CLI args."""
    settings = load_settings()
    setup_logging(settings)

    parser = argparse.ArgumentParser(description="Workflow Execution Engine")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Execute a workflow JSON file")
    run_parser.add_argument("workflow", help="Path to workflow JSON (nodes + edges)")
    run_parser.add_argument("--mode", choices=["full", "step"], default="full", help="Execution mode (default: full)")
    run_parser.add_argument("--db", default=None, help="Persist snapshots to this SQLite file")

    serve_parser = subparsers.add_parser("serve", help="Serve the workbench API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    if args.command == "run":
        try:
            state = asyncio.run(run_workflow(args.workflow, args.mode, settings, db_path=args.db))
        except (WorkflowEngineError, ValueError, OSError) as e:
            console.print(f"[bold red]Error:[/] {e}")
            sys.exit(2)
        except KeyboardInterrupt:
            sys.exit(130)
        render_state(state)
        sys.exit(1 if state.status == "error" else 0)
    elif args.command == "serve":
        import uvicorn

        from api.workbench_server import create_app

        uvicorn.run(create_app(settings), host=args.host, port=args.port)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
