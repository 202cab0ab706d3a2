"""Tests for undo/redo history."""

import pytest

from workflow_editor.core.graph_store import GraphStore
from workflow_editor.core.history import HistoryManager
from workflow_editor.models.core import StepType


@pytest.fixture
def store():
    return GraphStore()


@pytest.fixture
def history(store):
    return HistoryManager(store, max_history_size=5)


def test_undo_redo_round_trip(store, history):
    node = store.add_node(StepType.LOG)
    store.update_node(node.id, {"label": "Renamed"})

    assert history.can_undo()
    assert history.undo_description == "Update node Log"

    assert history.undo()
    assert store.get_node(node.id).label == "Log"
    assert history.can_redo()

    assert history.undo()
    assert store.nodes == []
    assert not history.can_undo()
    assert not history.undo()

    assert history.redo()
    assert history.redo()
    assert store.get_node(node.id).label == "Renamed"
    assert not history.redo()


def test_new_mutation_clears_redo(store, history):
    store.add_node(StepType.LOG)
    history.undo()
    assert history.can_redo()

    store.add_node(StepType.DELAY)
    assert not history.can_redo()


def test_history_is_bounded(store, history):
    for _ in range(8):
        store.add_node(StepType.LOG)

    assert len(history.past) == 5
    while history.undo():
        pass
    assert len(store.nodes) == 3


def test_selection_is_not_recorded(store, history):
    node = store.add_node(StepType.LOG)
    depth = len(history.past)
    store.select_all()
    store.deselect_all()
    store.select_node(node.id)
    assert len(history.past) == depth


def test_checkpoint_coalesces_drag(store, history):
    node = store.add_node(StepType.LOG, (0, 0))
    history.checkpoint("Move node(s)")
    for step in range(1, 10):
        store.update_node_position(node.id, (step * 10, 0))

    assert store.get_node(node.id).position.x == 90
    assert history.undo()
    assert store.get_node(node.id).position.x == 0


def test_undo_restores_edges_and_clears_selection(store, history):
    start = store.add_node(StepType.START)
    end = store.add_node(StepType.END)
    edge = store.connect(start.id, "output", end.id, "input").value
    store.delete_nodes([end.id])
    store.select_node(start.id)

    history.undo()

    assert [e.id for e in store.edges] == [edge.id]
    assert store.selected_node_ids == []


def test_undo_and_redo_walk_every_operation(store):
    history = HistoryManager(store, max_history_size=20)
    topologies = [store.snapshot().topology()]

    start = store.add_node(StepType.START)
    topologies.append(store.snapshot().topology())
    log = store.add_node(StepType.LOG, (200, 0))
    topologies.append(store.snapshot().topology())
    edge = store.connect(start.id, "output", log.id, "data").value
    topologies.append(store.snapshot().topology())
    store.update_node(log.id, {"label": "Audit", "config": {"level": "warn"}})
    topologies.append(store.snapshot().topology())
    clone = store.duplicate_nodes([log.id])[0]
    topologies.append(store.snapshot().topology())
    assert store.disconnect(edge.id)
    topologies.append(store.snapshot().topology())
    store.delete_nodes([clone.id])
    topologies.append(store.snapshot().topology())
    assert len(history.past) == len(topologies) - 1

    for expected in reversed(topologies[:-1]):
        assert history.undo()
        assert store.snapshot().topology() == expected
    assert not history.can_undo()

    for expected in topologies[1:]:
        assert history.redo()
        assert store.snapshot().topology() == expected
    assert not history.can_redo()


def test_clear(store, history):
    store.add_node(StepType.LOG)
    history.undo()
    history.clear()
    assert not history.can_undo()
    assert not history.can_redo()


def test_invalid_size():
    with pytest.raises(ValueError):
        HistoryManager(GraphStore(), max_history_size=0)
