"""Persisted session shapes."""

from convoflow.schemas.session_state import ChatMessage, SessionState, SessionStatus

__all__ = ["ChatMessage", "SessionState", "SessionStatus"]
