"""
Workflow HTTP Server - chat turns over server-sent events plus graph editing.

Routes:
    POST   /workflows/{workflow_id}/execute    run one turn, stream events (SSE)
    GET    /workflows/{workflow_id}            current graph
    PUT    /workflows/{workflow_id}            replace graph, debounced save
    POST   /workflows/{workflow_id}/save       commit pending edits now
    POST   /workflows/{workflow_id}/validate   structural validation report
    DELETE /sessions/{session_id}              reset a session

Uses aiohttp for an embedded server that runs within the existing asyncio
loop.
"""

import json
import logging
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from convoflow.config import AutosaveConfig, ServerConfig
from convoflow.errors import GraphStoreError
from convoflow.graph.edge import WorkflowGraph
from convoflow.graph.executor import WorkflowExecutor
from convoflow.runtime.event_channel import TurnStream
from convoflow.runtime.events import encode_sse
from convoflow.schemas.session_state import SessionState
from convoflow.storage.autosave import GraphPersistenceCoordinator
from convoflow.storage.graph_store import GraphStore, InMemoryGraphStore
from convoflow.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


class WorkflowServer:
    """
    Embedded HTTP surface for the workflow engine.

    Lifecycle:
        server = WorkflowServer(executor, graph_store=FileGraphStore(path))
        await server.start()
        # ... server running ...
        await server.stop()

    Without a SessionStore, sessions are kept in memory for the lifetime
    of the server.
    """

    def __init__(
        self,
        executor: WorkflowExecutor,
        graph_store: GraphStore | None = None,
        session_store: SessionStore | None = None,
        config: ServerConfig | None = None,
        autosave: AutosaveConfig | None = None,
    ):
        self.executor = executor
        self.graph_store = graph_store or InMemoryGraphStore()
        self.session_store = session_store
        self.coordinator = GraphPersistenceCoordinator(self.graph_store, autosave)
        self._config = config or ServerConfig()
        self._sessions: dict[str, SessionState] = {}
        # Latest editor state, ahead of the debounced store
        self._live_graphs: dict[str, WorkflowGraph] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/workflows/{workflow_id}/execute", self._handle_execute)
        app.router.add_get("/workflows/{workflow_id}", self._handle_get_graph)
        app.router.add_put("/workflows/{workflow_id}", self._handle_put_graph)
        app.router.add_post("/workflows/{workflow_id}/save", self._handle_save)
        app.router.add_post("/workflows/{workflow_id}/validate", self._handle_validate)
        app.router.add_delete("/sessions/{session_id}", self._handle_reset_session)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Workflow server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Flush pending graph edits and stop the HTTP server."""
        await self.coordinator.close()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Workflow server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # === HELPERS ===

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        try:
            body = await request.read()
            payload = json.loads(body) if body else {}
        except (json.JSONDecodeError, ValueError) as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Invalid JSON body: {e}"}),
                content_type="application/json",
            ) from e
        if not isinstance(payload, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Body must be a JSON object"}),
                content_type="application/json",
            )
        return payload

    def _graph_from_payload(self, workflow_id: str, payload: dict[str, Any]) -> WorkflowGraph:
        try:
            return WorkflowGraph.model_validate(
                {
                    "id": workflow_id,
                    "name": payload.get("name", ""),
                    "nodes": payload.get("nodes") or [],
                    "edges": payload.get("edges") or payload.get("connections") or [],
                }
            )
        except ValidationError as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Invalid graph", "details": e.errors(include_url=False)}, default=str),
                content_type="application/json",
            ) from e

    async def _load_graph(self, workflow_id: str) -> WorkflowGraph:
        live = self._live_graphs.get(workflow_id)
        if live is not None:
            return live
        try:
            return await self.graph_store.load(workflow_id)
        except GraphStoreError as e:
            raise web.HTTPNotFound(
                text=json.dumps({"error": str(e)}), content_type="application/json"
            ) from e
        except ValueError as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": str(e)}), content_type="application/json"
            ) from e

    async def _load_session(self, session_id: str, workflow_id: str) -> SessionState:
        if self.session_store is not None:
            return await self.session_store.get_or_create(session_id, workflow_id)
        session = self._sessions.get(session_id)
        if session is None:
            session = SessionState(session_id=session_id, workflow_id=workflow_id)
        return session

    async def _store_session(self, session: SessionState) -> None:
        if self.session_store is not None:
            await self.session_store.write_state(session)
        else:
            self._sessions[session.session_id] = session

    # === HANDLERS ===

    async def _handle_execute(self, request: web.Request) -> web.StreamResponse:
        workflow_id = request.match_info["workflow_id"]
        payload = await self._read_json(request)

        session_id = payload.get("session_id") or payload.get("sessionId")
        if not session_id:
            return web.json_response({"error": "session_id is required"}, status=400)
        message = payload.get("message") or ""
        variables = payload.get("variables") or {}

        # An unsaved graph sent by the editor's test panel takes precedence
        if payload.get("nodes"):
            graph = self._graph_from_payload(workflow_id, payload)
        else:
            graph = await self._load_graph(workflow_id)
        session = await self._load_session(session_id, workflow_id)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        stream = TurnStream(self.executor, graph, session, message, variables=variables)
        try:
            async for event in stream:
                await response.write(encode_sse(event))
        except ConnectionResetError:
            logger.info(f"Client disconnected from session {session_id}")
        finally:
            await stream.cancel()

        if stream.result is not None:
            await self._store_session(stream.result.session)
        try:
            await response.write_eof()
        except ConnectionResetError:
            pass
        return response

    async def _handle_get_graph(self, request: web.Request) -> web.Response:
        graph = await self._load_graph(request.match_info["workflow_id"])
        return web.json_response(graph.model_dump(mode="json"))

    async def _handle_put_graph(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info["workflow_id"]
        payload = await self._read_json(request)
        graph = self._graph_from_payload(workflow_id, payload)
        self._live_graphs[workflow_id] = graph
        self.coordinator.schedule_save(graph)
        return web.json_response(
            {
                "status": "scheduled",
                "errors": [_error_to_dict(e) for e in graph.validate()],
            },
            status=202,
        )

    async def _handle_save(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info["workflow_id"]
        graph = self._live_graphs.get(workflow_id)
        try:
            result = await self.coordinator.save_now(graph, workflow_id=workflow_id)
        except GraphStoreError as e:
            return web.json_response({"error": str(e)}, status=500)
        if result is None:
            return web.json_response({"status": "nothing to save"})
        return web.json_response(
            {"status": "saved", "version": result.version, "saved_at": result.saved_at}
        )

    async def _handle_validate(self, request: web.Request) -> web.Response:
        workflow_id = request.match_info["workflow_id"]
        payload = await self._read_json(request)
        if payload.get("nodes"):
            graph = self._graph_from_payload(workflow_id, payload)
        else:
            graph = await self._load_graph(workflow_id)
        errors = graph.validate()
        return web.json_response(
            {
                "valid": not any(e.fatal for e in errors),
                "errors": [_error_to_dict(e) for e in errors],
            }
        )

    async def _handle_reset_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        if self.session_store is not None:
            try:
                removed = await self.session_store.reset(session_id)
            except ValueError as e:
                return web.json_response({"error": str(e)}, status=400)
        else:
            removed = self._sessions.pop(session_id, None) is not None
        return web.json_response({"session_id": session_id, "reset": removed})


def _error_to_dict(error: Any) -> dict[str, Any]:
    return {
        "code": error.code,
        "message": error.message,
        "node_id": error.node_id,
        "edge_id": error.edge_id,
        "fatal": error.fatal,
    }
