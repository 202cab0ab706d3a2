"""Graph store: the single source of truth for workflow topology and selection."""

import copy
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..models.core import (
    GraphSnapshot,
    OperationResult,
    Position,
    StepType,
    WorkflowEdge,
    WorkflowNode,
)
from .exceptions import GraphMutationError
from .logging import get_logger
from .step_registry import (
    PortDefinition,
    coerce_step_type,
    default_config,
    default_label,
    get_step_metadata,
    ports_compatible,
)

logger = get_logger(__name__)

# (port, number of incoming edges already attached) -> may another edge attach?
PortCardinalityPolicy = Callable[[PortDefinition, int], bool]

# (graph before the change, human readable description)
MutationListener = Callable[[GraphSnapshot, str], None]

PositionLike = Union[Position, Mapping[str, float], Tuple[float, float]]

UPDATABLE_NODE_FIELDS = frozenset({"label", "config", "position"})


def default_cardinality_policy(port: PortDefinition, existing_incoming: int) -> bool:
    """Single-cardinality ports accept one incoming edge; ``multiple`` ports accept any number."""
    return port.multiple or existing_incoming == 0


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _coerce_position(position: Optional[PositionLike]) -> Position:
    if position is None:
        return Position()
    if isinstance(position, Position):
        return position
    if isinstance(position, Mapping):
        return Position(x=position.get("x", 0.0), y=position.get("y", 0.0))
    x, y = position
    return Position(x=x, y=y)


class GraphStore:
    """Owns the node/edge collections and the selection.

    Every topology-changing call notifies the registered mutation listeners
    with the snapshot taken before the change. Selection changes and drag
    position updates never notify.
    """

    def __init__(
        self,
        cardinality_policy: Optional[PortCardinalityPolicy] = None,
        duplicate_offset: Tuple[float, float] = (50.0, 50.0),
        id_factory: Callable[[str], str] = generate_id,
    ):
        self._cardinality_policy = cardinality_policy or default_cardinality_policy
        self._duplicate_offset = duplicate_offset
        self._id_factory = id_factory
        self._snapshot = GraphSnapshot()
        self._node_index: Dict[str, WorkflowNode] = {}
        self._edge_index: Dict[str, WorkflowEdge] = {}
        self._selected_node_ids: List[str] = []
        self._selected_edge_ids: List[str] = []
        self._listeners: List[MutationListener] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> List[WorkflowNode]:
        return list(self._snapshot.nodes)

    @property
    def edges(self) -> List[WorkflowEdge]:
        return list(self._snapshot.edges)

    @property
    def selected_node_ids(self) -> List[str]:
        return list(self._selected_node_ids)

    @property
    def selected_edge_ids(self) -> List[str]:
        return list(self._selected_edge_ids)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self._node_index.get(node_id)

    def get_edge(self, edge_id: str) -> Optional[WorkflowEdge]:
        return self._edge_index.get(edge_id)

    def incoming_edges(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self._snapshot.edges if e.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self._snapshot.edges if e.source == node_id]

    def snapshot(self) -> GraphSnapshot:
        """The current (immutable) graph."""
        return self._snapshot

    # ------------------------------------------------------------------
    # Listeners and whole-graph replacement
    # ------------------------------------------------------------------

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MutationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def restore(self, snapshot: GraphSnapshot) -> None:
        """Install a snapshot without notifying listeners and clear the selection."""
        self._install(snapshot)
        self._selected_node_ids = []
        self._selected_edge_ids = []

    def _install(self, snapshot: GraphSnapshot) -> None:
        self._snapshot = snapshot
        self._node_index = {node.id: node for node in snapshot.nodes}
        self._edge_index = {edge.id: edge for edge in snapshot.edges}
        self._selected_node_ids = [i for i in self._selected_node_ids if i in self._node_index]
        self._selected_edge_ids = [i for i in self._selected_edge_ids if i in self._edge_index]

    def _commit(
        self,
        nodes: Iterable[WorkflowNode],
        edges: Iterable[WorkflowEdge],
        description: str
    ) -> None:
        previous = self._snapshot
        self._install(GraphSnapshot(nodes=tuple(nodes), edges=tuple(edges)))
        logger.debug(f"Graph mutation: {description}")
        for listener in list(self._listeners):
            listener(previous, description)

    # ------------------------------------------------------------------
    # Node operations
    # ------------------------------------------------------------------

    def add_node(
        self,
        step_type: Union[StepType, str],
        position: Optional[PositionLike] = None,
        label: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> WorkflowNode:
        """
        Create a node with the step type's default config and a generated id.

        Raises:
            UnknownStepTypeError: If the step type is not registered
        """
        resolved = coerce_step_type(step_type)
        node_config = default_config(resolved)
        if config:
            node_config.update(copy.deepcopy(config))

        node = WorkflowNode(
            id=self._id_factory("node"),
            step_type=resolved,
            label=label if label is not None else default_label(resolved),
            config=node_config,
            position=_coerce_position(position),
        )
        self._commit(self._snapshot.nodes + (node,), self._snapshot.edges, f"Add {resolved.value} node")
        self._selected_node_ids = [node.id]
        return node

    def update_node(self, node_id: str, data: Dict[str, Any]) -> Optional[WorkflowNode]:
        """
        Merge ``label``/``config``/``position`` into a node.

        ``config`` is merged key by key. Config shape is not validated here.
        Returns the updated node, or None when the node does not exist.
        """
        unknown = set(data) - UPDATABLE_NODE_FIELDS
        if unknown:
            raise GraphMutationError(
                f"Unsupported node fields: {', '.join(sorted(unknown))}", node_id=node_id
            )

        node = self._node_index.get(node_id)
        if node is None:
            logger.debug(f"update_node ignored for unknown node {node_id}")
            return None

        changes: Dict[str, Any] = {}
        if "label" in data:
            changes["label"] = str(data["label"])
        if "config" in data:
            merged = dict(node.config)
            merged.update(copy.deepcopy(data["config"] or {}))
            changes["config"] = merged
        if "position" in data:
            changes["position"] = _coerce_position(data["position"])

        updated = node.model_copy(update=changes)
        if updated == node:
            return node

        self._commit(
            (updated if n.id == node_id else n for n in self._snapshot.nodes),
            self._snapshot.edges,
            f"Update node {node.label or node_id}",
        )
        return updated

    def update_node_position(self, node_id: str, position: PositionLike) -> Optional[WorkflowNode]:
        """Move a node without touching history; used for drag frames."""
        node = self._node_index.get(node_id)
        if node is None:
            return None
        moved = node.model_copy(update={"position": _coerce_position(position)})
        self._install(GraphSnapshot(
            nodes=tuple(moved if n.id == node_id else n for n in self._snapshot.nodes),
            edges=self._snapshot.edges,
        ))
        return moved

    def delete_nodes(self, node_ids: Iterable[str]) -> List[str]:
        """Remove nodes and every edge touching them. Unknown ids are ignored."""
        doomed = {node_id for node_id in node_ids if node_id in self._node_index}
        if not doomed:
            return []

        removed = [n.id for n in self._snapshot.nodes if n.id in doomed]
        self._commit(
            (n for n in self._snapshot.nodes if n.id not in doomed),
            (e for e in self._snapshot.edges if e.source not in doomed and e.target not in doomed),
            f"Delete {len(doomed)} node(s)",
        )
        return removed

    def duplicate_nodes(self, node_ids: Iterable[str]) -> List[WorkflowNode]:
        """
        Clone nodes with new ids at an offset position.

        Edges between two duplicated nodes are cloned too; edges crossing the
        boundary of the duplicated set are not.
        """
        wanted = set(node_ids)
        originals = [n for n in self._snapshot.nodes if n.id in wanted]
        if not originals:
            return []

        dx, dy = self._duplicate_offset
        id_map: Dict[str, str] = {}
        clones: List[WorkflowNode] = []
        for node in originals:
            clone = WorkflowNode(
                id=self._id_factory("node"),
                step_type=node.step_type,
                label=node.label,
                config=copy.deepcopy(node.config),
                position=node.position.offset(dx, dy),
            )
            id_map[node.id] = clone.id
            clones.append(clone)

        cloned_edges = [
            edge.model_copy(update={
                "id": self._id_factory("edge"),
                "source": id_map[edge.source],
                "target": id_map[edge.target],
            })
            for edge in self._snapshot.edges
            if edge.source in id_map and edge.target in id_map
        ]

        self._commit(
            self._snapshot.nodes + tuple(clones),
            self._snapshot.edges + tuple(cloned_edges),
            f"Duplicate {len(clones)} node(s)",
        )
        self._selected_node_ids = [c.id for c in clones]
        return clones

    def clear_canvas(self) -> None:
        if not self._snapshot.nodes and not self._snapshot.edges:
            return
        self._commit((), (), "Clear canvas")

    # ------------------------------------------------------------------
    # Edge operations
    # ------------------------------------------------------------------

    def connect(
        self,
        source: str,
        source_port: str,
        target: str,
        target_port: str,
    ) -> OperationResult:
        """
        Connect an output port to an input port.

        Returns an accepted result carrying the new edge, or a rejected result
        explaining why the connection is not allowed.
        """
        source_node = self._node_index.get(source)
        target_node = self._node_index.get(target)
        if source_node is None:
            return OperationResult.rejected(f"Source node '{source}' does not exist", "unknown_node")
        if target_node is None:
            return OperationResult.rejected(f"Target node '{target}' does not exist", "unknown_node")
        if source == target:
            return OperationResult.rejected("A node cannot be connected to itself", "self_loop")

        out_port = get_step_metadata(source_node.step_type).output_port(source_port)
        if out_port is None:
            return OperationResult.rejected(
                f"Node '{source_node.label}' has no output port '{source_port}'", "unknown_port"
            )
        in_port = get_step_metadata(target_node.step_type).input_port(target_port)
        if in_port is None:
            return OperationResult.rejected(
                f"Node '{target_node.label}' has no input port '{target_port}'", "unknown_port"
            )
        if not ports_compatible(out_port, in_port):
            return OperationResult.rejected(
                f"Cannot connect {out_port.data_type.value} output to {in_port.data_type.value} input",
                "incompatible_ports",
            )

        incoming = [
            e for e in self._snapshot.edges
            if e.target == target and e.target_port == target_port
        ]
        if any(e.source == source and e.source_port == source_port for e in incoming):
            return OperationResult.rejected("These ports are already connected", "duplicate_edge")
        if not self._cardinality_policy(in_port, len(incoming)):
            return OperationResult.rejected(
                f"Input port '{target_port}' on '{target_node.label}' already has a connection",
                "port_occupied",
            )

        edge = WorkflowEdge(
            id=self._id_factory("edge"),
            source=source,
            source_port=source_port,
            target=target,
            target_port=target_port,
        )
        self._commit(self._snapshot.nodes, self._snapshot.edges + (edge,), "Add connection")
        return OperationResult.accepted(edge)

    def disconnect(self, edge_id: str) -> bool:
        return bool(self.delete_edges([edge_id]))

    def delete_edges(self, edge_ids: Iterable[str]) -> List[str]:
        doomed = {edge_id for edge_id in edge_ids if edge_id in self._edge_index}
        if not doomed:
            return []
        removed = [e.id for e in self._snapshot.edges if e.id in doomed]
        self._commit(
            self._snapshot.nodes,
            (e for e in self._snapshot.edges if e.id not in doomed),
            f"Delete {len(doomed)} edge(s)",
        )
        return removed

    # ------------------------------------------------------------------
    # Selection (UI state only)
    # ------------------------------------------------------------------

    def set_selected_nodes(self, node_ids: Iterable[str]) -> None:
        self._selected_node_ids = [i for i in dict.fromkeys(node_ids) if i in self._node_index]

    def set_selected_edges(self, edge_ids: Iterable[str]) -> None:
        self._selected_edge_ids = [i for i in dict.fromkeys(edge_ids) if i in self._edge_index]

    def select_node(self, node_id: str, add_to_selection: bool = False) -> None:
        if node_id not in self._node_index:
            return
        if add_to_selection:
            if node_id not in self._selected_node_ids:
                self._selected_node_ids.append(node_id)
        else:
            self._selected_node_ids = [node_id]

    def select_all(self) -> None:
        self._selected_node_ids = [n.id for n in self._snapshot.nodes]
        self._selected_edge_ids = [e.id for e in self._snapshot.edges]

    def deselect_all(self) -> None:
        self._selected_node_ids = []
        self._selected_edge_ids = []
