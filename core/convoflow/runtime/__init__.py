"""Turn events and their delivery to observers."""

from convoflow.runtime.event_channel import ChannelClosed, EventChannel, TurnStream
from convoflow.runtime.events import (
    BackendLogEvent,
    CompleteEvent,
    EngineEvent,
    ErrorEvent,
    MessageEvent,
    NodeExecutionEvent,
    VariableUpdateEvent,
    encode_sse,
)

__all__ = [
    "EngineEvent",
    "NodeExecutionEvent",
    "MessageEvent",
    "VariableUpdateEvent",
    "BackendLogEvent",
    "ErrorEvent",
    "CompleteEvent",
    "encode_sse",
    "EventChannel",
    "ChannelClosed",
    "TurnStream",
]
