"""
Session Store - one state.json per conversation.

    {base_path}/sessions/{session_id}/
      ├── state.json      # SessionState: cursor, status, variables
      └── history.json    # Written when an end node asked for it
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path

from convoflow.schemas.session_state import SessionState
from convoflow.storage.graph_store import validate_key
from convoflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class SessionStore:
    """File-backed session storage."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.sessions_dir = self.base_path / "sessions"

    def get_session_path(self, session_id: str) -> Path:
        validate_key(session_id)
        return self.sessions_dir / session_id

    def get_state_path(self, session_id: str) -> Path:
        return self.get_session_path(session_id) / "state.json"

    async def write_state(self, state: SessionState) -> None:
        """
        Atomically write state.json (and history.json when requested).

        Uses temp file + rename for crash safety.
        """
        session_path = self.get_session_path(state.session_id)

        def _write():
            with atomic_write(session_path / "state.json") as f:
                f.write(state.model_dump_json(indent=2))
            if state.history_save_requested:
                with atomic_write(session_path / "history.json") as f:
                    f.write(
                        json.dumps(
                            [m.model_dump() for m in state.history], indent=2, default=str
                        )
                    )

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote state.json for session {state.session_id}")

    async def read_state(self, session_id: str) -> SessionState | None:
        """Read state.json, or None if the session does not exist."""

        def _read():
            state_path = self.get_state_path(session_id)
            if not state_path.exists():
                return None
            return SessionState.model_validate_json(state_path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def get_or_create(self, session_id: str, workflow_id: str = "") -> SessionState:
        state = await self.read_state(session_id)
        if state is None:
            state = SessionState(session_id=session_id, workflow_id=workflow_id)
        return state

    async def reset(self, session_id: str) -> bool:
        """
        Discard a session so the next message starts from the start node.

        Returns:
            True if deleted, False if not found
        """

        def _delete():
            session_path = self.get_session_path(session_id)
            if not session_path.exists():
                return False
            shutil.rmtree(session_path)
            logger.info(f"Reset session {session_id}")
            return True

        return await asyncio.to_thread(_delete)

    async def list_sessions(self, workflow_id: str | None = None, limit: int = 100) -> list[SessionState]:
        """List sessions, most recently updated first."""

        def _scan():
            sessions = []
            if not self.sessions_dir.exists():
                return sessions
            for session_dir in self.sessions_dir.iterdir():
                state_path = session_dir / "state.json"
                if not state_path.exists():
                    continue
                try:
                    state = SessionState.model_validate_json(state_path.read_text(encoding="utf-8"))
                except ValueError as e:
                    logger.warning(f"Failed to load {state_path}: {e}")
                    continue
                if workflow_id and state.workflow_id != workflow_id:
                    continue
                sessions.append(state)
            sessions.sort(key=lambda s: s.timestamps.updated_at, reverse=True)
            return sessions[:limit]

        return await asyncio.to_thread(_scan)
