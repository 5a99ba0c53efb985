"""
Command-line interface for Convoflow.

Usage:
    convoflow validate workflows/lead-intake.json
    convoflow run workflows/lead-intake.json --message "Hi"
    convoflow chat workflows/lead-intake.json
    convoflow serve --data-dir ./data --port 8080
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from convoflow.config import EngineConfig, RuntimeConfig, ServerConfig, get_crm_credentials
from convoflow.crm.client import HighLevelClient
from convoflow.graph.edge import WorkflowGraph
from convoflow.graph.executor import WorkflowExecutor
from convoflow.graph.goal_judge import LLMGoalJudge
from convoflow.llm.litellm import LiteLLMProvider
from convoflow.llm.responder import LLMResponder
from convoflow.observability.logging import configure_logging
from convoflow.runtime.events import MessageEvent
from convoflow.runtime.event_channel import TurnStream
from convoflow.schemas.session_state import SessionState
from convoflow.storage.graph_store import FileGraphStore
from convoflow.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


def load_graph_file(path: str | Path) -> WorkflowGraph:
    """Load a workflow exported by the editor ({"nodes": [...], "edges": [...]})."""
    path = Path(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    data.setdefault("id", path.stem)
    return WorkflowGraph.model_validate(data)


def build_executor(model: str | None = None, with_crm: bool = True) -> WorkflowExecutor:
    runtime = RuntimeConfig()
    if model:
        runtime.model = model
    llm = LiteLLMProvider.from_config(runtime)
    crm = None
    if with_crm:
        token, location_id = get_crm_credentials()
        if token:
            crm = HighLevelClient(token, location_id=location_id)
        else:
            logger.warning("⚠ No CRM access token configured, CRM actions will fail")
    return WorkflowExecutor(
        judge=LLMGoalJudge(llm),
        responder=LLMResponder(llm),
        crm=crm,
        config=EngineConfig(),
    )


def cmd_validate(args: argparse.Namespace) -> int:
    graph = load_graph_file(args.workflow)
    errors = graph.validate()
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "code": e.code,
                        "message": e.message,
                        "node_id": e.node_id,
                        "edge_id": e.edge_id,
                        "fatal": e.fatal,
                    }
                    for e in errors
                ],
                indent=2,
            )
        )
    else:
        for e in errors:
            marker = "✗" if e.fatal else "⚠"
            print(f"{marker} [{e.code}] {e.message}")
        if not errors:
            print(f"✓ {graph.id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    return 1 if any(e.fatal for e in errors) else 0


async def _run_turns(args: argparse.Namespace, messages: list[str] | None) -> int:
    graph = load_graph_file(args.workflow)
    executor = build_executor(args.model, with_crm=not args.no_crm)
    variables = json.loads(args.variables) if args.variables else None
    session = SessionState(workflow_id=graph.id)

    async def one_turn(message: str) -> bool:
        nonlocal session, variables
        stream = TurnStream(executor, graph, session, message, variables=variables)
        variables = None
        try:
            async for event in stream:
                if args.events:
                    print(json.dumps(event.to_wire(), default=str))
                elif isinstance(event, MessageEvent):
                    print(f"assistant> {event.content}")
        finally:
            await stream.cancel()
        result = stream.result
        if result is None:
            return False
        session = result.session
        if result.error:
            print(f"✗ {result.error}", file=sys.stderr)
        return not session.is_terminated

    try:
        if messages is not None:
            for message in messages:
                if not await one_turn(message):
                    break
        else:
            while True:
                try:
                    message = await asyncio.to_thread(input, "you> ")
                except EOFError:
                    break
                if not await one_turn(message):
                    break
    finally:
        if isinstance(executor.crm, HighLevelClient):
            await executor.crm.aclose()

    print(json.dumps(session.variables, indent=2, default=str))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run_turns(args, args.message or [""]))


def cmd_chat(args: argparse.Namespace) -> int:
    return asyncio.run(_run_turns(args, None))


async def _serve(args: argparse.Namespace) -> None:
    from convoflow.server.app import WorkflowServer

    data_dir = Path(args.data_dir)
    server = WorkflowServer(
        build_executor(args.model, with_crm=not args.no_crm),
        graph_store=FileGraphStore(data_dir),
        session_store=SessionStore(data_dir),
        config=ServerConfig(host=args.host, port=args.port, data_dir=str(data_dir)),
    )
    await server.start()
    print(f"🚀 Listening on http://{args.host}:{server.port}")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        pass
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="convoflow",
        description="Convoflow - Run conversational workflow graphs",
    )
    parser.add_argument("--model", default=None, help="LiteLLM model id (overrides config)")
    parser.add_argument("--log-level", default="INFO", help="Log level")
    parser.add_argument("--log-format", default="auto", choices=["auto", "json", "human"])

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Check a workflow file")
    validate_parser.add_argument("workflow", help="Path to workflow JSON")
    validate_parser.add_argument("--json", action="store_true", help="Output as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    for name, func, help_text in (
        ("run", cmd_run, "Run scripted turns against a workflow"),
        ("chat", cmd_chat, "Chat with a workflow interactively"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("workflow", help="Path to workflow JSON")
        sub.add_argument("--variables", default=None, help="Initial variables as JSON")
        sub.add_argument("--events", action="store_true", help="Print raw engine events")
        sub.add_argument("--no-crm", action="store_true", help="Do not connect to the CRM")
        if name == "run":
            sub.add_argument(
                "--message", "-m", action="append", help="User message (repeat for more turns)"
            )
        sub.set_defaults(func=func)

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument("--data-dir", default="./data", help="Workflow and session storage")
    serve_parser.add_argument("--no-crm", action="store_true", help="Do not connect to the CRM")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
