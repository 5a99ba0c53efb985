"""Tests for the streaming event channel, turn streams and SSE encoding."""

import asyncio
import json

import pytest

from convoflow.config import EngineConfig
from convoflow.graph.executor import WorkflowExecutor
from convoflow.runtime.event_channel import ChannelClosed, EventChannel, TurnStream
from convoflow.runtime.events import (
    CompleteEvent,
    ErrorEvent,
    MessageEvent,
    NodeExecutionEvent,
    VariableUpdateEvent,
    encode_sse,
    is_terminal,
)
from convoflow.schemas.session_state import SessionState, SessionStatus

from conftest import FakeJudge, FakeResponder, build_graph


class TestEventChannel:
    @pytest.mark.asyncio
    async def test_preserves_order_and_closes_on_complete(self):
        channel = EventChannel()
        await channel.send(NodeExecutionEvent(node_id="a", node_name="A"))
        await channel.send(MessageEvent(content="hi", node_id="a"))
        await channel.send(CompleteEvent(status="awaiting_input"))

        assert channel.closed
        with pytest.raises(ChannelClosed):
            await channel.send(MessageEvent(content="late"))

        received = [event async for event in channel]
        assert [e.type for e in received] == ["node_execution", "message", "complete"]
        assert channel.sent_count == 3

    @pytest.mark.asyncio
    async def test_fatal_error_closes_but_non_fatal_does_not(self):
        channel = EventChannel()
        await channel.send(ErrorEvent(message="judge down", fatal=False))
        assert not channel.closed
        await channel.send(ErrorEvent(message="broken graph"))
        assert channel.closed

    @pytest.mark.asyncio
    async def test_disconnect_rejects_sends(self):
        channel = EventChannel()
        channel.disconnect()
        assert channel.disconnected
        with pytest.raises(ChannelClosed):
            await channel.send(MessageEvent(content="x"))

    def test_close_is_idempotent(self):
        channel = EventChannel()
        channel.close()
        channel.close()
        assert channel.closed


class TestWireFormat:
    def test_wire_keys(self):
        assert NodeExecutionEvent(node_id="n1", node_name="Greet").to_wire() == {
            "type": "node_execution",
            "nodeId": "n1",
            "nodeName": "Greet",
        }
        assert VariableUpdateEvent(name="age", value=21).to_wire() == {
            "type": "variable_update",
            "variable": "age",
            "value": 21,
        }
        assert CompleteEvent(status="terminated", current_node_id="end").to_wire()["currentNodeId"] == "end"

    def test_sse_frame(self):
        frame = encode_sse(MessageEvent(content="Hi", node_id="m"))
        assert frame.startswith(b"data: ")
        assert frame.endswith(b"\n\n")
        payload = json.loads(frame[len(b"data: ") : -2])
        assert payload == {"type": "message", "content": "Hi", "nodeId": "m"}

    def test_is_terminal(self):
        assert is_terminal(CompleteEvent())
        assert is_terminal(ErrorEvent(message="x"))
        assert not is_terminal(ErrorEvent(message="x", fatal=False))
        assert not is_terminal(MessageEvent())


def _ai_graph():
    return build_graph(
        nodes=[
            {"id": "start", "type": "start", "config": {"welcome_message": "Welcome"}},
            {"id": "assistant", "type": "ai"},
            {"id": "end", "type": "end"},
        ],
        edges=[
            {"id": "e0", "source": "start", "target": "assistant"},
            {"id": "e1", "source": "assistant", "target": "end"},
        ],
    )


class TestTurnStream:
    @pytest.mark.asyncio
    async def test_streams_turn_and_exposes_result(self):
        executor = WorkflowExecutor(
            judge=FakeJudge(), responder=FakeResponder("Hello there"), config=EngineConfig(max_steps=10)
        )
        stream = TurnStream(executor, _ai_graph(), SessionState(), "hi")

        types = [event.type async for event in stream]

        assert types[0] == "node_execution"
        assert types[-1] == "complete"
        assert stream.result is not None
        assert stream.result.status == SessionStatus.TERMINATED
        await stream.cancel()

    @pytest.mark.asyncio
    async def test_observer_disconnect_cancels_turn(self):
        release = asyncio.Event()

        class BlockingResponder(FakeResponder):
            async def generate(self, *args, **kwargs):
                await release.wait()
                return "never delivered"

        executor = WorkflowExecutor(
            responder=BlockingResponder(),
            config=EngineConfig(max_steps=10, evaluation_timeout_seconds=30),
        )
        stream = TurnStream(executor, _ai_graph(), SessionState(), "hi")

        received = []
        async for event in stream:
            received.append(event)
            if isinstance(event, NodeExecutionEvent) and event.node_id == "assistant":
                break
        await stream.cancel()

        assert stream.result is not None
        assert stream.result.cancelled
        # Cursor stays on the last entered node
        assert stream.result.current_node_id == "assistant"
        assert stream.result.status == SessionStatus.AWAITING_INPUT
        assert not any(isinstance(e, CompleteEvent) for e in stream.result.events)
        assert stream.channel.disconnected

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self):
        executor = WorkflowExecutor(responder=FakeResponder("ok"), config=EngineConfig(max_steps=10))
        stream = TurnStream(executor, _ai_graph(), SessionState(), "hi")
        async for _ in stream:
            pass
        await stream.cancel()
        assert not stream.result.cancelled
