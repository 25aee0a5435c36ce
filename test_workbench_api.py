import time

from fastapi.testclient import TestClient

from api.workbench_server import create_app
from shared.config import EngineSettings

_PRESET = {"initialVariables": {"tag": "preset"}}


def _graph() -> dict:
    return {
        "workflowId": "wf-api",
        "nodes": [
            {"id": "A", "type": "trigger", "subType": "manual", "config": {"payload": {"n": 7}}},
            {"id": "B", "type": "transform", "subType": "set", "config": {"values": {"double": "{{ $input.n * 2 }}"}}},
            {"id": "C", "type": "transform", "subType": "set", "config": {"values": "{{ $vars.tag }}"}},
        ],
        "edges": [{"source": "A", "target": "B"}, {"source": "B", "target": "C"}],
    }


def _client(tmp_path) -> TestClient:
    return TestClient(create_app(EngineSettings(), db_path=str(tmp_path / "executions.db")))


def test_run_to_completion_and_fetch(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.post("/executions", json={**_graph(), "options": _PRESET, "wait": True})
        assert response.status_code == 201
        execution = response.json()["execution"]
        assert execution["status"] == "completed"
        assert execution["outputs"]["B"]["data"] == {"double": 14}

        fetched = client.get(f"/executions/{execution['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["execution"]["outputs"]["C"]["status"] == "completed"

        snapshots = client.get(f"/executions/{execution['id']}/snapshots").json()["snapshots"]
        assert snapshots[0]["status"] == "running"
        assert snapshots[-1]["status"] == "completed"

        listed = client.get("/executions", params={"workflow_id": "wf-api"}).json()["executions"]
        assert [row["id"] for row in listed] == [execution["id"]]


def test_step_pause_and_variables_over_http(tmp_path) -> None:
    with _client(tmp_path) as client:
        started = client.post("/executions", json={**_graph(), "options": {"mode": "step"}, "wait": True})
        execution_id = started.json()["execution"]["id"]
        assert started.json()["execution"]["status"] == "paused"
        assert list(started.json()["execution"]["outputs"]) == ["A"]

        conflict = client.post(f"/executions/{execution_id}/pause")
        assert conflict.status_code == 409
        assert conflict.json()["status"] == "paused"

        variable = client.post(
            f"/executions/{execution_id}/variables",
            json={"nodeId": "A", "path": "n", "name": "tag"},
        )
        assert variable.json() == {"created": True, "variables": {"tag": 7}}

        stepped = client.post(f"/executions/{execution_id}/step").json()["execution"]
        assert stepped["status"] == "paused"
        assert stepped["outputs"]["B"]["data"] == {"double": 14}

        assert client.post(f"/executions/{execution_id}/resume").status_code == 200
        deadline = time.monotonic() + 5
        state = {}
        while time.monotonic() < deadline:
            state = client.get(f"/executions/{execution_id}").json()["execution"]
            if state["status"] == "completed":
                break
            time.sleep(0.01)
        assert state["status"] == "completed"
        assert state["outputs"]["C"]["data"] == 7


def test_stop_over_http(tmp_path) -> None:
    with _client(tmp_path) as client:
        started = client.post("/executions", json={**_graph(), "options": {"mode": "step"}, "wait": True})
        execution_id = started.json()["execution"]["id"]

        stopped = client.post(f"/executions/{execution_id}/stop").json()["execution"]
        assert stopped["status"] == "completed"
        assert stopped["stopped"] is True
        assert stopped["outputs"]["C"]["status"] == "skipped"

        assert client.post(f"/executions/{execution_id}/resume").status_code == 409


def test_events_stream_ends_with_terminal_snapshot(tmp_path) -> None:
    with _client(tmp_path) as client:
        execution_id = client.post("/executions", json={**_graph(), "options": _PRESET, "wait": True}).json()["execution"]["id"]
        response = client.get(f"/executions/{execution_id}/events")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        lines = [line for line in response.text.splitlines() if line.startswith("data: ")]
        assert len(lines) == 1
        assert '"status": "completed"' in lines[0]


def test_error_mapping(tmp_path) -> None:
    with _client(tmp_path) as client:
        assert client.get("/executions/exec_unknown").status_code == 404
        assert client.post("/executions/exec_unknown/pause").status_code == 404

        cyclic = {
            "nodes": [
                {"id": "A", "type": "transform", "subType": "set"},
                {"id": "B", "type": "transform", "subType": "set"},
            ],
            "edges": [{"source": "A", "target": "B"}, {"source": "B", "target": "A"}],
        }
        response = client.post("/executions", json=cyclic)
        assert response.status_code == 422
        assert response.json()["reason"] == "cycle"

        bad_until = client.post(
            "/executions",
            json={**_graph(), "options": {"mode": "until-node", "untilNodeId": "nope"}},
        )
        assert bad_until.status_code == 422


def test_finished_engines_are_evicted_and_served_from_the_store(tmp_path) -> None:
    app = create_app(EngineSettings(), db_path=str(tmp_path / "executions.db"))
    with TestClient(app) as client:
        execution = client.post("/executions", json={**_graph(), "options": _PRESET, "wait": True}).json()["execution"]
        assert execution["status"] == "completed"
        assert execution["id"] not in app.state.engines

        fetched = client.get(f"/executions/{execution['id']}").json()["execution"]
        assert fetched["status"] == "completed"
        assert fetched["outputs"]["B"]["data"] == {"double": 14}

        conflict = client.post(f"/executions/{execution['id']}/stop")
        assert conflict.status_code == 409
        assert conflict.json()["status"] == "completed"

        paused = client.post("/executions", json={**_graph(), "options": {"mode": "step"}, "wait": True}).json()
        assert paused["execution"]["id"] in app.state.engines


def test_start_node_over_http(tmp_path) -> None:
    with _client(tmp_path) as client:
        started = client.post(
            "/executions",
            json={**_graph(), "options": {"startNodeId": "C", "initialVariables": {"tag": "late"}}, "wait": True},
        ).json()["execution"]
        assert started["status"] == "completed"
        assert started["outputs"]["A"]["status"] == "skipped"
        assert started["outputs"]["B"]["status"] == "skipped"
        assert started["outputs"]["C"]["data"] == "late"

        unknown = client.post("/executions", json={**_graph(), "options": {"startNodeId": "nope"}})
        assert unknown.status_code == 422
