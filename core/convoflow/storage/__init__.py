"""Durable storage for workflow graphs and sessions."""

from convoflow.storage.autosave import GraphPersistenceCoordinator
from convoflow.storage.graph_store import FileGraphStore, GraphStore, InMemoryGraphStore, SaveResult
from convoflow.storage.session_store import SessionStore

__all__ = [
    "GraphStore",
    "InMemoryGraphStore",
    "FileGraphStore",
    "SaveResult",
    "GraphPersistenceCoordinator",
    "SessionStore",
]
