"""HTTP surface for the workflow engine."""

from convoflow.server.app import WorkflowServer

__all__ = ["WorkflowServer"]
