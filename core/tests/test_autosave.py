"""Tests for the debounced, serialized graph persistence coordinator."""

import asyncio

import pytest

from convoflow.config import AutosaveConfig
from convoflow.errors import GraphStoreError
from convoflow.graph.node import NodeSpec, NodeType
from convoflow.storage.autosave import GraphPersistenceCoordinator
from convoflow.storage.graph_store import InMemoryGraphStore, SaveResult

from conftest import build_graph


class SlowStore(InMemoryGraphStore):
    """In-memory store whose saves block until released; tracks concurrency."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0
        self.saved_titles: list[str] = []
        self.fail_next = False

    async def save(self, workflow_id, nodes, edges) -> SaveResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.release.wait()
            if self.fail_next:
                self.fail_next = False
                raise GraphStoreError("disk full")
            self.saved_titles.append(nodes[0].title)
            return await super().save(workflow_id, nodes, edges)
        finally:
            self.in_flight -= 1


def _graph(title: str):
    return build_graph(nodes=[{"id": "start", "type": "start", "title": title}], workflow_id="wf")


@pytest.mark.asyncio
async def test_rapid_edits_coalesce_into_one_save():
    store = InMemoryGraphStore()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=0.2))

    for i in range(5):
        coordinator.schedule_save(_graph(f"v{i}"))
        await asyncio.sleep(0.01)
    assert store.save_count == 0
    assert coordinator.has_pending("wf")

    await asyncio.sleep(0.5)
    assert store.save_count == 1
    assert (await store.load("wf")).nodes[0].title == "v4"
    assert not coordinator.has_pending("wf")


@pytest.mark.asyncio
async def test_snapshot_is_taken_at_schedule_time():
    store = InMemoryGraphStore()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=10))
    graph = _graph("before")
    coordinator.schedule_save(graph)
    graph.update_node("start", {"title": "after"})

    await coordinator.save_now(workflow_id="wf")
    assert (await store.load("wf")).nodes[0].title == "before"


@pytest.mark.asyncio
async def test_save_now_cancels_pending_debounce():
    store = InMemoryGraphStore()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=0.05))
    coordinator.schedule_save(_graph("draft"))

    result = await coordinator.save_now(_graph("final"))
    assert result.version == 1

    await asyncio.sleep(0.1)
    assert store.save_count == 1
    assert (await store.load("wf")).nodes[0].title == "final"


@pytest.mark.asyncio
async def test_edit_during_save_is_queued_not_duplicated():
    store = SlowStore()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=10))

    first = asyncio.create_task(coordinator.save_now(_graph("one")))
    await asyncio.sleep(0)
    assert coordinator.is_saving("wf")

    # Arrives mid-save: waits in the slot, the latest snapshot wins
    second = asyncio.create_task(coordinator.save_now(_graph("two")))
    third = asyncio.create_task(coordinator.save_now(_graph("three")))
    await asyncio.sleep(0)

    store.release.set()
    results = await asyncio.gather(first, second, third)

    assert store.max_in_flight == 1
    assert store.saved_titles == ["one", "three"]
    assert coordinator.save_count("wf") == 2
    assert {r.version for r in results} == {2}


@pytest.mark.asyncio
async def test_failed_save_keeps_snapshot_for_retry():
    store = SlowStore()
    store.fail_next = True
    store.release.set()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=10))

    with pytest.raises(GraphStoreError):
        await coordinator.save_now(_graph("retry me"))
    assert coordinator.has_pending("wf")

    result = await coordinator.save_now(workflow_id="wf")
    assert result.version == 1
    assert store.saved_titles == ["retry me"]


@pytest.mark.asyncio
async def test_graphs_are_independent():
    store = SlowStore()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=10))
    other = build_graph(nodes=[{"id": "start", "type": "start", "title": "b"}], workflow_id="other")

    a = asyncio.create_task(coordinator.save_now(_graph("a")))
    b = asyncio.create_task(coordinator.save_now(other))
    for _ in range(5):
        await asyncio.sleep(0)
    assert store.in_flight == 2
    store.release.set()
    await asyncio.gather(a, b)


@pytest.mark.asyncio
async def test_close_flushes_pending_edits():
    store = InMemoryGraphStore()
    coordinator = GraphPersistenceCoordinator(store, AutosaveConfig(debounce_seconds=10))
    graph = _graph("unsaved")
    graph.add_node(NodeSpec(id="end", type=NodeType.END))
    coordinator.schedule_save(graph)

    await coordinator.close()

    stored = await store.load("wf")
    assert [n.id for n in stored.nodes] == ["start", "end"]


@pytest.mark.asyncio
async def test_save_now_requires_target():
    coordinator = GraphPersistenceCoordinator(InMemoryGraphStore())
    with pytest.raises(ValueError):
        await coordinator.save_now()
    assert await coordinator.save_now(workflow_id="never_edited") is None
