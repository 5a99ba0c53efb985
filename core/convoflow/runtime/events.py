"""Engine lifecycle events.

A discriminated union of frozen dataclasses describing everything a turn
can report to its observer. The executor produces them in order; the
event channel delivers them; the HTTP surface serialises them with
``to_wire()`` using the keys the chat client expects (``nodeId``,
``nodeName``, ``variable``).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class NodeExecutionEvent:
    """The executor entered a node."""

    type: Literal["node_execution"] = "node_execution"
    node_id: str = ""
    node_name: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "nodeId": self.node_id, "nodeName": self.node_name}


@dataclass(frozen=True)
class MessageEvent:
    """Text for the end user."""

    type: Literal["message"] = "message"
    content: str = ""
    node_id: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content, "nodeId": self.node_id}


@dataclass(frozen=True)
class VariableUpdateEvent:
    """A session variable was written."""

    type: Literal["variable_update"] = "variable_update"
    name: str = ""
    value: Any = None

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "variable": self.name, "value": self.value}


@dataclass(frozen=True)
class BackendLogEvent:
    """Observability record (action results, routing decisions)."""

    type: Literal["backend_log"] = "backend_log"
    content: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content, "data": self.data}


@dataclass(frozen=True)
class ErrorEvent:
    """
    Something went wrong.

    ``fatal=True`` ends the turn; non-fatal errors (a failed judgment or
    generation call) are informational and the stream continues.
    """

    type: Literal["error"] = "error"
    message: str = ""
    fatal: bool = True
    node_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"type": self.type, "message": self.message, "fatal": self.fatal}
        if self.node_id:
            wire["nodeId"] = self.node_id
        return wire


@dataclass(frozen=True)
class CompleteEvent:
    """The turn finished. Carries the final status and variables snapshot."""

    type: Literal["complete"] = "complete"
    status: str = ""
    current_node_id: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "currentNodeId": self.current_node_id,
            "variables": self.variables,
        }


EngineEvent = (
    NodeExecutionEvent
    | MessageEvent
    | VariableUpdateEvent
    | BackendLogEvent
    | ErrorEvent
    | CompleteEvent
)


def is_terminal(event: EngineEvent) -> bool:
    """True for events after which the channel closes."""
    return isinstance(event, CompleteEvent) or (isinstance(event, ErrorEvent) and event.fatal)


def encode_sse(event: EngineEvent) -> bytes:
    """Encode one event as a server-sent-events ``data:`` frame."""
    return f"data: {json.dumps(event.to_wire(), default=str)}\n\n".encode()
