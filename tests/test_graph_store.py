"""Tests for the graph store."""

import pytest

from workflow_editor.core.exceptions import GraphMutationError, UnknownStepTypeError
from workflow_editor.core.graph_store import GraphStore
from workflow_editor.models.core import Position, StepType


@pytest.fixture
def store():
    return GraphStore()


class TestNodes:
    def test_add_node_uses_defaults(self, store):
        node = store.add_node(StepType.PROMPT, {"x": 10, "y": 20})

        assert node.step_type == StepType.PROMPT
        assert node.label == "LLM Prompt"
        assert node.position == Position(x=10, y=20)
        assert node.config["temperature"] == 0.7
        assert node.config["systemPrompt"] == "You are a helpful assistant."
        assert store.selected_node_ids == [node.id]

    def test_add_node_accepts_string_type_and_overrides(self, store):
        node = store.add_node("delay", (1, 2), label="Wait", config={"durationSeconds": 1})

        assert node.step_type == StepType.DELAY
        assert node.label == "Wait"
        assert node.config == {"durationSeconds": 1}

    def test_add_node_unknown_type(self, store):
        with pytest.raises(UnknownStepTypeError):
            store.add_node("teleport")
        assert store.nodes == []

    def test_ids_are_unique(self, store):
        ids = {store.add_node(StepType.LOG).id for _ in range(20)}
        assert len(ids) == 20

    def test_update_node_merges_config(self, store):
        node = store.add_node(StepType.PROMPT)
        updated = store.update_node(node.id, {"label": "Summarize", "config": {"model": "gpt-4o"}})

        assert updated.label == "Summarize"
        assert updated.config["model"] == "gpt-4o"
        assert updated.config["temperature"] == 0.7
        assert store.get_node(node.id) == updated

    def test_update_unknown_node_returns_none(self, store):
        assert store.update_node("missing", {"label": "x"}) is None

    def test_update_rejects_unsupported_fields(self, store):
        node = store.add_node(StepType.LOG)
        with pytest.raises(GraphMutationError):
            store.update_node(node.id, {"step_type": "prompt"})

    def test_nodes_are_immutable_snapshots(self, store):
        node = store.add_node(StepType.LOG)
        store.update_node(node.id, {"label": "Changed"})
        assert node.label == "Log"

    def test_delete_nodes_cascades_edges(self, store):
        start = store.add_node(StepType.START)
        log = store.add_node(StepType.LOG)
        end = store.add_node(StepType.END)
        store.connect(start.id, "output", log.id, "data")
        store.connect(log.id, "passthrough", end.id, "input")

        removed = store.delete_nodes([log.id, "unknown"])

        assert removed == [log.id]
        assert [n.id for n in store.nodes] == [start.id, end.id]
        assert store.edges == []

    def test_delete_nothing_does_not_notify(self, store):
        calls = []
        store.add_listener(lambda previous, description: calls.append(description))
        assert store.delete_nodes(["nope"]) == []
        assert calls == []

    def test_duplicate_clones_internal_edges_only(self, store):
        start = store.add_node(StepType.START, (0, 0))
        a = store.add_node(StepType.LOG, (100, 0))
        b = store.add_node(StepType.LOG, (200, 0))
        store.connect(start.id, "output", a.id, "data")
        store.connect(a.id, "passthrough", b.id, "data")

        clones = store.duplicate_nodes([a.id, b.id])

        assert len(clones) == 2
        assert {c.id for c in clones}.isdisjoint({a.id, b.id})
        assert clones[0].position == Position(x=150, y=50)
        assert store.selected_node_ids == [c.id for c in clones]
        clone_ids = {c.id for c in clones}
        cloned_edges = [e for e in store.edges if e.source in clone_ids or e.target in clone_ids]
        assert len(cloned_edges) == 1
        assert cloned_edges[0].source == clones[0].id
        assert cloned_edges[0].target == clones[1].id

    def test_clear_canvas(self, store):
        store.add_node(StepType.START)
        store.clear_canvas()
        assert store.nodes == []
        assert store.edges == []

    def test_update_position_does_not_notify(self, store):
        node = store.add_node(StepType.LOG)
        calls = []
        store.add_listener(lambda previous, description: calls.append(description))

        moved = store.update_node_position(node.id, (5, 6))

        assert moved.position == Position(x=5, y=6)
        assert calls == []


class TestEdges:
    def test_connect_returns_edge(self, store):
        start = store.add_node(StepType.START)
        end = store.add_node(StepType.END)

        result = store.connect(start.id, "output", end.id, "input")

        assert result.ok
        assert result.value.source == start.id
        assert store.edges == [result.value]

    @pytest.mark.parametrize("source_port,target_port,code", [
        ("missing", "input", "unknown_port"),
        ("output", "missing", "unknown_port"),
    ])
    def test_connect_rejects_unknown_ports(self, store, source_port, target_port, code):
        start = store.add_node(StepType.START)
        end = store.add_node(StepType.END)

        result = store.connect(start.id, source_port, end.id, target_port)

        assert not result.ok
        assert result.error_code == code
        assert store.edges == []

    def test_connect_rejects_unknown_node_and_self_loop(self, store):
        log = store.add_node(StepType.LOG)
        assert store.connect("ghost", "output", log.id, "data").error_code == "unknown_node"
        assert store.connect(log.id, "passthrough", log.id, "data").error_code == "self_loop"

    def test_connect_rejects_incompatible_types(self, store):
        rag = store.add_node(StepType.RAG_SEARCH)
        tts = store.add_node(StepType.TTS)

        result = store.connect(rag.id, "results", tts.id, "text")

        assert result.error_code == "incompatible_ports"

    def test_single_cardinality_port(self, store):
        a = store.add_node(StepType.LOG)
        b = store.add_node(StepType.LOG)
        target = store.add_node(StepType.PROMPT)

        assert store.connect(a.id, "passthrough", target.id, "input").ok
        result = store.connect(b.id, "passthrough", target.id, "input")

        assert result.error_code == "port_occupied"
        assert len(store.edges) == 1

    def test_multiple_cardinality_port(self, store):
        a = store.add_node(StepType.LOG)
        b = store.add_node(StepType.LOG)
        end = store.add_node(StepType.END)

        assert store.connect(a.id, "passthrough", end.id, "input").ok
        assert store.connect(b.id, "passthrough", end.id, "input").ok
        assert store.connect(b.id, "passthrough", end.id, "input").error_code == "duplicate_edge"

    def test_custom_cardinality_policy(self):
        store = GraphStore(cardinality_policy=lambda port, existing: True)
        a = store.add_node(StepType.LOG)
        b = store.add_node(StepType.LOG)
        target = store.add_node(StepType.PROMPT)

        assert store.connect(a.id, "passthrough", target.id, "input").ok
        assert store.connect(b.id, "passthrough", target.id, "input").ok

    def test_disconnect(self, store):
        start = store.add_node(StepType.START)
        end = store.add_node(StepType.END)
        edge = store.connect(start.id, "output", end.id, "input").value

        assert store.disconnect(edge.id)
        assert not store.disconnect(edge.id)
        assert store.edges == []


class TestSelection:
    def test_selection_ignores_unknown_ids(self, store):
        node = store.add_node(StepType.LOG)
        store.set_selected_nodes([node.id, "ghost", node.id])
        assert store.selected_node_ids == [node.id]

    def test_select_node_additive(self, store):
        a = store.add_node(StepType.LOG)
        b = store.add_node(StepType.LOG)
        store.select_node(a.id)
        store.select_node(b.id, add_to_selection=True)
        assert store.selected_node_ids == [a.id, b.id]
        store.select_node(b.id)
        assert store.selected_node_ids == [b.id]

    def test_select_all_and_deselect(self, store):
        start = store.add_node(StepType.START)
        end = store.add_node(StepType.END)
        edge = store.connect(start.id, "output", end.id, "input").value

        store.select_all()
        assert store.selected_node_ids == [start.id, end.id]
        assert store.selected_edge_ids == [edge.id]

        store.deselect_all()
        assert store.selected_node_ids == []
        assert store.selected_edge_ids == []

    def test_deleted_nodes_leave_selection(self, store):
        node = store.add_node(StepType.LOG)
        store.select_node(node.id)
        store.delete_nodes([node.id])
        assert store.selected_node_ids == []

    def test_selection_changes_do_not_notify(self, store):
        node = store.add_node(StepType.LOG)
        calls = []
        store.add_listener(lambda previous, description: calls.append(description))
        store.select_all()
        store.select_node(node.id)
        store.deselect_all()
        assert calls == []
