"""Convoflow - run conversational workflow graphs built in a visual editor."""

from convoflow.graph import WorkflowExecutor, WorkflowGraph
from convoflow.runtime import EventChannel, TurnStream
from convoflow.schemas import SessionState

__version__ = "0.1.0"

__all__ = [
    "EventChannel",
    "SessionState",
    "TurnStream",
    "WorkflowExecutor",
    "WorkflowGraph",
]
