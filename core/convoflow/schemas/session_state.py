"""
Session State Schema - one live conversation's cursor, variables and history.

This is what a caller stores between turns and hands back to the executor
with the next inbound message.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field


class SessionStatus(StrEnum):
    """Execution state of a session."""

    AWAITING_INPUT = "awaiting_input"  # Paused at a node, waiting for a message
    RUNNING = "running"  # Traversing nodes within a turn
    TERMINATED = "terminated"  # An end node was reached


class ChatMessage(BaseModel):
    """One entry in the conversation history."""

    role: Literal["user", "assistant", "system"]
    content: str
    node_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"extra": "allow"}

    def as_prompt_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class SessionTimestamps(BaseModel):
    """Timestamps tracking session lifecycle."""

    started_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    terminated_at: str | None = None

    model_config = {"extra": "allow"}


class SessionState(BaseModel):
    """
    Complete state for one conversation.

    ``current_node_id`` is None until the first turn places the cursor on
    the start node.
    """

    schema_version: str = "1.0"

    session_id: str = Field(default_factory=lambda: f"session_{uuid.uuid4().hex[:12]}")
    workflow_id: str = ""

    status: SessionStatus = SessionStatus.AWAITING_INPUT
    current_node_id: str | None = None

    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[ChatMessage] = Field(default_factory=list)

    turn_count: int = 0
    history_save_requested: bool = False

    timestamps: SessionTimestamps = Field(default_factory=SessionTimestamps)

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def is_terminated(self) -> bool:
        return self.status == SessionStatus.TERMINATED

    def recent_history(self, window: int) -> list[dict[str, str]]:
        """Last ``window`` messages as role/content dicts."""
        messages = self.history[-window:] if window > 0 else self.history
        return [m.as_prompt_message() for m in messages]

    def touch(self) -> None:
        self.timestamps.updated_at = datetime.now().isoformat()
