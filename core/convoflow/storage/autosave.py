"""
Graph Persistence Coordinator - debounced, serialized graph saves.

Editor mutations call schedule_save() as often as they like; the graph is
committed once after a quiet period. save_now() commits immediately.

Per workflow there is a single pending slot (the latest snapshot wins)
and at most one persistence call in flight. An edit that arrives while a
save is running waits in the slot and is written by the same writer
right after the running save finishes.
"""

import asyncio
import logging
from dataclasses import dataclass

from convoflow.config import AutosaveConfig
from convoflow.errors import GraphStoreError
from convoflow.graph.edge import WorkflowGraph
from convoflow.storage.graph_store import GraphStore, SaveResult

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    pending: WorkflowGraph | None = None
    timer: asyncio.Task | None = None
    writer: asyncio.Task | None = None
    last_result: SaveResult | None = None
    save_count: int = 0


class GraphPersistenceCoordinator:
    """
    Debounces and serializes writes of workflow graphs to a GraphStore.

    Usage:
        coordinator = GraphPersistenceCoordinator(store)
        coordinator.schedule_save(graph)      # on every edit
        await coordinator.save_now(graph)     # explicit "Save" button
        await coordinator.close()             # on shutdown, flushes pending edits
    """

    def __init__(self, store: GraphStore, config: AutosaveConfig | None = None):
        self.store = store
        self.config = config or AutosaveConfig()
        self._slots: dict[str, _Slot] = {}

    def _slot(self, workflow_id: str) -> _Slot:
        return self._slots.setdefault(workflow_id, _Slot())

    # === PUBLIC API ===

    def schedule_save(self, graph: WorkflowGraph) -> None:
        """Queue a snapshot of ``graph``; commit after ``debounce_seconds`` of quiet."""
        slot = self._slot(graph.id)
        slot.pending = graph.model_copy(deep=True)
        if slot.timer is not None and not slot.timer.done():
            slot.timer.cancel()
        slot.timer = asyncio.create_task(self._debounced_flush(graph.id))

    async def save_now(self, graph: WorkflowGraph | None = None, workflow_id: str | None = None) -> SaveResult | None:
        """
        Commit immediately.

        With ``graph`` its snapshot replaces whatever is pending. Without it
        the pending snapshot (if any) for ``workflow_id`` is flushed. Returns
        the result of the last write, or None if nothing was ever saved.
        """
        wid = graph.id if graph is not None else workflow_id
        if wid is None:
            raise ValueError("save_now() needs a graph or a workflow_id")
        slot = self._slot(wid)
        if graph is not None:
            slot.pending = graph.model_copy(deep=True)
        if slot.timer is not None and not slot.timer.done():
            slot.timer.cancel()
        slot.timer = None
        return await self._flush(wid)

    def has_pending(self, workflow_id: str) -> bool:
        slot = self._slots.get(workflow_id)
        return slot is not None and slot.pending is not None

    def is_saving(self, workflow_id: str) -> bool:
        slot = self._slots.get(workflow_id)
        return slot is not None and slot.writer is not None and not slot.writer.done()

    def save_count(self, workflow_id: str) -> int:
        slot = self._slots.get(workflow_id)
        return slot.save_count if slot else 0

    async def close(self) -> None:
        """Cancel debounce timers and flush every pending snapshot."""
        for workflow_id, slot in list(self._slots.items()):
            if slot.timer is not None and not slot.timer.done():
                slot.timer.cancel()
            slot.timer = None
            if slot.pending is not None or self.is_saving(workflow_id):
                try:
                    await self._flush(workflow_id)
                except GraphStoreError as e:
                    logger.error(f"Failed to flush workflow {workflow_id} on close: {e}")

    # === INTERNALS ===

    async def _debounced_flush(self, workflow_id: str) -> None:
        try:
            await asyncio.sleep(self.config.debounce_seconds)
        except asyncio.CancelledError:
            return
        slot = self._slot(workflow_id)
        slot.timer = None
        try:
            await self._flush(workflow_id)
        except GraphStoreError as e:
            logger.error(f"Autosave failed for workflow {workflow_id}: {e}")

    async def _flush(self, workflow_id: str) -> SaveResult | None:
        slot = self._slot(workflow_id)
        if slot.writer is None or slot.writer.done():
            slot.writer = asyncio.create_task(self._drain(workflow_id))
        # The running writer picks up our snapshot after its current save
        return await asyncio.shield(slot.writer)

    async def _drain(self, workflow_id: str) -> SaveResult | None:
        slot = self._slot(workflow_id)
        while slot.pending is not None:
            graph, slot.pending = slot.pending, None
            try:
                result = await self.store.save(workflow_id, graph.nodes, graph.edges)
            except Exception:
                # Keep the snapshot unless a newer edit already replaced it
                if slot.pending is None:
                    slot.pending = graph
                raise
            slot.last_result = result
            slot.save_count += 1
            logger.info(
                f"Saved workflow {workflow_id} (v{result.version})", extra={"event": "graph_saved"}
            )
        return slot.last_result
