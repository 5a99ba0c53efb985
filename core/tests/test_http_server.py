"""
Tests for the workflow HTTP server: SSE turn execution and graph editing.
"""

import json

import aiohttp
import pytest

from convoflow.config import AutosaveConfig, EngineConfig, ServerConfig
from convoflow.graph.executor import WorkflowExecutor
from convoflow.server.app import WorkflowServer
from convoflow.storage.graph_store import FileGraphStore, InMemoryGraphStore
from convoflow.storage.session_store import SessionStore

from conftest import FakeJudge

GRAPH_PAYLOAD = {
    "name": "Qualify lead",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "greet", "type": "message", "config": {"message": "Hi {{name}}"}},
        {
            "id": "qualify",
            "type": "milestone",
            "config": {"goal_description": "book a call", "possible_outcomes": ["yes", "no"]},
        },
        {"id": "end1", "type": "end", "config": {"message": "See you soon"}},
        {"id": "end2", "type": "end"},
    ],
    "edges": [
        {"source": "start", "target": "greet"},
        {"source": "greet", "target": "qualify"},
        {"source": "qualify", "target": "end1", "sourceHandle": "yes"},
        {"source": "qualify", "target": "end2", "sourceHandle": "no"},
    ],
}


def _make_server(judge=None, **kwargs) -> WorkflowServer:
    """Helper to create a WorkflowServer with port=0 for OS-assigned port."""
    executor = WorkflowExecutor(judge=judge or FakeJudge("maybe", "yes"), config=EngineConfig(max_steps=20))
    return WorkflowServer(
        executor,
        config=ServerConfig(host="127.0.0.1", port=0),
        autosave=AutosaveConfig(debounce_seconds=10),
        **kwargs,
    )


def _base_url(server: WorkflowServer) -> str:
    return f"http://127.0.0.1:{server.port}"


async def _read_sse(response: aiohttp.ClientResponse) -> list[dict]:
    events = []
    async for raw in response.content:
        line = raw.decode().strip()
        if line.startswith("data: "):
            events.append(json.loads(line[len("data: ") :]))
    return events


class TestServerLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self):
        server = _make_server()
        await server.start()
        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        server = _make_server()
        await server.stop()
        assert not server.is_running


class TestExecuteEndpoint:
    @pytest.mark.asyncio
    async def test_streams_turns_and_keeps_session(self):
        server = _make_server()
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.put(f"{_base_url(server)}/workflows/wf_1", json=GRAPH_PAYLOAD) as resp:
                    assert resp.status == 202

                url = f"{_base_url(server)}/workflows/wf_1/execute"
                body = {"session_id": "s_1", "message": "hello", "variables": {"name": "Ada"}}
                async with session.post(url, json=body) as resp:
                    assert resp.status == 200
                    assert resp.headers["Content-Type"].startswith("text/event-stream")
                    first = await _read_sse(resp)

                async with session.post(url, json={"session_id": "s_1", "message": "yes please"}) as resp:
                    second = await _read_sse(resp)
        finally:
            await server.stop()

        assert [e["type"] for e in first[:3]] == ["node_execution", "node_execution", "message"]
        assert first[1]["nodeId"] == "greet"
        assert first[2]["content"] == "Hi Ada"
        assert first[-1]["type"] == "complete"
        assert first[-1]["currentNodeId"] == "qualify"
        assert first[-1]["status"] == "awaiting_input"

        # Second turn resumes at the milestone
        assert second[0] == {"type": "node_execution", "nodeId": "qualify", "nodeName": "milestone"}
        assert second[-1]["status"] == "terminated"
        assert second[-1]["variables"]["name"] == "Ada"

    @pytest.mark.asyncio
    async def test_inline_graph_and_unknown_workflow(self):
        server = _make_server(judge=FakeJudge("no"))
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                url = f"{_base_url(server)}/workflows/draft/execute"
                async with session.post(url, json={"session_id": "s_9", "message": "no", **GRAPH_PAYLOAD}) as resp:
                    events = await _read_sse(resp)

                async with session.post(
                    f"{_base_url(server)}/workflows/missing/execute",
                    json={"session_id": "s_9", "message": "hi"},
                ) as resp:
                    assert resp.status == 404

                async with session.post(url, json={"message": "no session"}) as resp:
                    assert resp.status == 400

                async with session.post(url, data="not json") as resp:
                    assert resp.status == 400
        finally:
            await server.stop()

        assert events[-1]["currentNodeId"] == "end2"

    @pytest.mark.asyncio
    async def test_invalid_graph_streams_fatal_error(self):
        server = _make_server()
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/workflows/bad/execute",
                    json={"session_id": "s", "message": "hi", "nodes": [{"id": "a", "type": "message"}]},
                ) as resp:
                    events = await _read_sse(resp)
        finally:
            await server.stop()

        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert events[0]["fatal"] is True


class TestGraphEndpoints:
    @pytest.mark.asyncio
    async def test_put_get_validate_and_save(self, tmp_path):
        store = FileGraphStore(tmp_path)
        server = _make_server(graph_store=store, session_store=SessionStore(tmp_path))
        await server.start()
        base = _base_url(server)
        try:
            async with aiohttp.ClientSession() as session:
                incomplete = {
                    "nodes": GRAPH_PAYLOAD["nodes"],
                    "edges": GRAPH_PAYLOAD["edges"][:3],
                }
                async with session.put(f"{base}/workflows/wf_2", json=incomplete) as resp:
                    assert resp.status == 202
                    put_body = await resp.json()
                assert [e["code"] for e in put_body["errors"]] == ["unresolved_outcome"]
                assert server.coordinator.has_pending("wf_2")

                async with session.get(f"{base}/workflows/wf_2") as resp:
                    graph = await resp.json()
                assert len(graph["edges"]) == 3

                async with session.post(f"{base}/workflows/wf_2/validate", json={}) as resp:
                    report = await resp.json()
                assert report["valid"] is True
                assert report["errors"][0]["fatal"] is False

                async with session.post(f"{base}/workflows/wf_2/save") as resp:
                    saved = await resp.json()
                assert saved["status"] == "saved"
                assert saved["version"] == 1
        finally:
            await server.stop()

        assert (tmp_path / "workflows" / "wf_2.json").exists()

    @pytest.mark.asyncio
    async def test_get_unknown_workflow_is_404(self):
        server = _make_server(graph_store=InMemoryGraphStore())
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"{_base_url(server)}/workflows/nope") as resp:
                    assert resp.status == 404
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_reset_session(self, tmp_path):
        server = _make_server(graph_store=FileGraphStore(tmp_path), session_store=SessionStore(tmp_path))
        await server.start()
        base = _base_url(server)
        try:
            async with aiohttp.ClientSession() as session:
                await (await session.put(f"{base}/workflows/wf_3", json=GRAPH_PAYLOAD)).release()
                async with session.post(
                    f"{base}/workflows/wf_3/execute", json={"session_id": "s_3", "message": "hi"}
                ) as resp:
                    await _read_sse(resp)
                assert (tmp_path / "sessions" / "s_3" / "state.json").exists()

                async with session.delete(f"{base}/sessions/s_3") as resp:
                    assert (await resp.json()) == {"session_id": "s_3", "reset": True}
                async with session.delete(f"{base}/sessions/s_3") as resp:
                    assert (await resp.json())["reset"] is False
        finally:
            await server.stop()
