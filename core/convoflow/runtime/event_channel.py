"""
Event channel between the executor and one observer.

- EventChannel: ordered single-consumer queue of EngineEvents, closed after
  ``complete`` or a fatal ``error``
- TurnStream: runs a turn as a task and yields its events; cancels the
  turn when the observer goes away
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from convoflow.errors import ConvoflowError
from convoflow.runtime.events import EngineEvent, is_terminal

if TYPE_CHECKING:
    from convoflow.graph.edge import WorkflowGraph
    from convoflow.graph.executor import TurnResult, WorkflowExecutor
    from convoflow.schemas.session_state import SessionState

logger = logging.getLogger(__name__)


class ChannelClosed(ConvoflowError):
    """The observer disconnected or the channel was already closed."""


class EventChannel:
    """
    Ordered, push-based delivery of one turn's events.

    The producer calls send(); the consumer iterates. Events are never
    reordered or dropped while the observer is connected. After the
    observer disconnects, send() raises ChannelClosed so the producer
    stops.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[EngineEvent | None] = asyncio.Queue()
        self._closed = False
        self._disconnected = False
        self.sent_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    async def send(self, event: EngineEvent) -> None:
        if self._disconnected:
            raise ChannelClosed("observer disconnected")
        if self._closed:
            raise ChannelClosed(f"channel closed, cannot send {event.type}")
        await self._queue.put(event)
        self.sent_count += 1
        if is_terminal(event):
            self.close()

    def close(self) -> None:
        """Mark the end of the stream. Idempotent."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Called on behalf of an observer that went away."""
        self._disconnected = True
        self.close()

    async def __aiter__(self) -> AsyncIterator[EngineEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event


class TurnStream:
    """
    Runs one turn in a background task and exposes its events.

    Usage:
        stream = TurnStream(executor, graph, session, "hello")
        try:
            async for event in stream:
                ...
        finally:
            await stream.cancel()
        result = stream.result
    """

    def __init__(
        self,
        executor: WorkflowExecutor,
        graph: WorkflowGraph,
        session: SessionState,
        message: str,
        **run_kwargs: Any,
    ):
        self.channel = EventChannel()
        self.result: TurnResult | None = None
        self._executor = executor
        self._graph = graph
        self._session = session
        self._message = message
        self._run_kwargs = run_kwargs
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            self.result = await self._executor.run_turn(
                self._graph,
                self._session,
                self._message,
                channel=self.channel,
                **self._run_kwargs,
            )
        finally:
            self.channel.close()

    async def __aiter__(self) -> AsyncIterator[EngineEvent]:
        self.start()
        async for event in self.channel:
            yield event
        assert self._task is not None
        # Surface unexpected executor exceptions to the consumer
        await self._task

    async def cancel(self) -> None:
        """Stop the turn if it is still running. Safe to call after completion."""
        if self._task is None or self._task.done():
            return
        logger.info("Observer disconnected, cancelling turn")
        self.channel.disconnect()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
