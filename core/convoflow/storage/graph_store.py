"""
Durable graph store.

    load(workflow_id) -> WorkflowGraph
    save(workflow_id, nodes, edges) -> SaveResult

Two implementations:
- InMemoryGraphStore: process-local dict, for tests and the CLI
- FileGraphStore: one JSON file per workflow under {base_path}/workflows/
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from convoflow.errors import GraphStoreError
from convoflow.graph.edge import EdgeSpec, WorkflowGraph
from convoflow.graph.node import NodeSpec
from convoflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """Outcome of one persistence call."""

    workflow_id: str
    version: int
    saved_at: str


def validate_key(key: str) -> None:
    """Reject ids that could escape the storage directory."""
    if not key or key.strip() == "":
        raise ValueError("Key cannot be empty")
    if "/" in key or "\\" in key:
        raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")
    if ".." in key or key.startswith("."):
        raise ValueError(f"Invalid key format: path traversal detected in '{key}'")
    if "\x00" in key:
        raise ValueError(f"Invalid key format: null bytes not allowed in '{key}'")


class GraphStore(ABC):
    """Durable storage for workflow graphs."""

    @abstractmethod
    async def load(self, workflow_id: str) -> WorkflowGraph:
        """Load a workflow. Raises GraphStoreError if it does not exist."""

    @abstractmethod
    async def save(
        self, workflow_id: str, nodes: list[NodeSpec], edges: list[EdgeSpec]
    ) -> SaveResult:
        """Replace the stored nodes and edges of a workflow."""

    async def exists(self, workflow_id: str) -> bool:
        try:
            await self.load(workflow_id)
        except GraphStoreError:
            return False
        return True


class InMemoryGraphStore(GraphStore):
    """Graph store backed by a dict. Stores copies, never live objects."""

    def __init__(self) -> None:
        self._graphs: dict[str, WorkflowGraph] = {}
        self.save_count = 0

    async def load(self, workflow_id: str) -> WorkflowGraph:
        graph = self._graphs.get(workflow_id)
        if graph is None:
            raise GraphStoreError(f"Workflow not found: {workflow_id}")
        return graph.model_copy(deep=True)

    async def save(
        self, workflow_id: str, nodes: list[NodeSpec], edges: list[EdgeSpec]
    ) -> SaveResult:
        previous = self._graphs.get(workflow_id)
        version = previous.version + 1 if previous else 1
        self._graphs[workflow_id] = WorkflowGraph(
            id=workflow_id,
            name=previous.name if previous else "",
            nodes=[n.model_copy(deep=True) for n in nodes],
            edges=[e.model_copy(deep=True) for e in edges],
            version=version,
        )
        self.save_count += 1
        return SaveResult(workflow_id, version, datetime.now().isoformat())


class FileGraphStore(GraphStore):
    """
    JSON file per workflow.

    Directory structure:
    {base_path}/
      workflows/
        {workflow_id}.json
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.workflows_dir = self.base_path / "workflows"

    def get_path(self, workflow_id: str) -> Path:
        validate_key(workflow_id)
        return self.workflows_dir / f"{workflow_id}.json"

    async def load(self, workflow_id: str) -> WorkflowGraph:
        path = self.get_path(workflow_id)

        def _read() -> WorkflowGraph:
            if not path.exists():
                raise GraphStoreError(f"Workflow not found: {workflow_id}")
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return WorkflowGraph.model_validate(data)
            except (json.JSONDecodeError, ValueError) as e:
                raise GraphStoreError(f"Corrupt workflow file {path}: {e}") from e

        return await asyncio.to_thread(_read)

    async def save(
        self, workflow_id: str, nodes: list[NodeSpec], edges: list[EdgeSpec]
    ) -> SaveResult:
        path = self.get_path(workflow_id)

        def _write() -> SaveResult:
            version = 1
            name = ""
            if path.exists():
                try:
                    existing = json.loads(path.read_text(encoding="utf-8"))
                    version = int(existing.get("version", 0)) + 1
                    name = existing.get("name", "")
                except (json.JSONDecodeError, ValueError):
                    logger.warning(f"Overwriting unreadable workflow file {path}")
            graph = WorkflowGraph(id=workflow_id, name=name, nodes=nodes, edges=edges, version=version)
            try:
                with atomic_write(path) as f:
                    f.write(graph.model_dump_json(indent=2))
            except OSError as e:
                raise GraphStoreError(f"Failed to write {path}: {e}") from e
            return SaveResult(workflow_id, version, datetime.now().isoformat())

        result = await asyncio.to_thread(_write)
        logger.debug(f"Saved workflow {workflow_id} v{result.version}")
        return result
