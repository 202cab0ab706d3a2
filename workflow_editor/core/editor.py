"""Workflow editor engine: one constructible instance per open document."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..models.core import (
    TERMINAL_RUN_STATUSES,
    ApprovalResponse,
    DocumentMetadata,
    GraphSnapshot,
    NodeExecutionState,
    OperationResult,
    PendingApprovalRequest,
    RunSession,
    RunStatus,
    StepType,
    ValidationIssue,
    ValidationReport,
    WorkflowDocument,
    WorkflowEdge,
    WorkflowNode,
)
from .execution_controller import ExecutionController
from .executor_registry import ExecutorRegistry
from .graph_store import GraphStore, PortCardinalityPolicy, PositionLike
from .history import HistoryManager
from .logging import get_logger
from .validator import Validator

logger = get_logger(__name__)

NEW_WORKFLOW_START_POSITION = (100.0, 200.0)
NEW_WORKFLOW_END_POSITION = (500.0, 200.0)


class WorkflowEditor:
    """
    Composes GraphStore, HistoryManager, Validator, ExecutionController and
    ApprovalGate behind the public engine surface.

    The editor owns the last validation result. Any topology change, undo or
    redo discards it, so ``start_run`` requires a fresh ``validate()``.
    """

    def __init__(
        self,
        executors: Optional[ExecutorRegistry] = None,
        max_history_size: int = 50,
        duplicate_offset: Tuple[float, float] = (50.0, 50.0),
        cardinality_policy: Optional[PortCardinalityPolicy] = None,
        validator: Optional[Validator] = None,
    ):
        self.store = GraphStore(cardinality_policy=cardinality_policy, duplicate_offset=duplicate_offset)
        self.history = HistoryManager(self.store, max_history_size=max_history_size)
        self.validator = validator or Validator()
        self.execution = ExecutionController(executors)
        self.store.add_listener(self._on_mutation)

        self._last_validation: Optional[ValidationReport] = None
        self._dirty = False
        self.workflow_id: Optional[str] = None
        self.name = "Untitled Workflow"
        self.description = ""
        self.version = 1
        self.metadata = DocumentMetadata()

    @classmethod
    def from_config(cls, config, executors: Optional[ExecutorRegistry] = None) -> "WorkflowEditor":
        """Build an editor from an ``EditorConfig``."""
        return cls(
            executors=executors,
            max_history_size=config.max_history_size,
            duplicate_offset=(config.duplicate_offset_x, config.duplicate_offset_y),
        )

    def _on_mutation(self, previous: GraphSnapshot, description: str) -> None:
        self._last_validation = None
        self._dirty = True

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> List[WorkflowNode]:
        return self.store.nodes

    @property
    def edges(self) -> List[WorkflowEdge]:
        return self.store.edges

    @property
    def selected_node_ids(self) -> List[str]:
        return self.store.selected_node_ids

    @property
    def selected_edge_ids(self) -> List[str]:
        return self.store.selected_edge_ids

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self.store.get_node(node_id)

    def add_node(
        self,
        step_type: Union[StepType, str],
        position: Optional[PositionLike] = None,
        label: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> WorkflowNode:
        return self.store.add_node(step_type, position, label=label, config=config)

    def update_node(self, node_id: str, data: Dict[str, Any]) -> Optional[WorkflowNode]:
        return self.store.update_node(node_id, data)

    def update_node_position(self, node_id: str, position: PositionLike) -> Optional[WorkflowNode]:
        moved = self.store.update_node_position(node_id, position)
        if moved is not None:
            self._dirty = True
        return moved

    def begin_drag(self) -> None:
        """Record one undo point before a burst of position updates."""
        self.history.checkpoint("Move node(s)")
        self._dirty = True

    def delete_nodes(self, node_ids: Iterable[str]) -> List[str]:
        return self.store.delete_nodes(node_ids)

    def delete_edges(self, edge_ids: Iterable[str]) -> List[str]:
        return self.store.delete_edges(edge_ids)

    def delete_selection(self) -> None:
        """Delete the selected edges, then the selected nodes."""
        if self.store.selected_edge_ids:
            self.store.delete_edges(self.store.selected_edge_ids)
        if self.store.selected_node_ids:
            self.store.delete_nodes(self.store.selected_node_ids)

    def duplicate_nodes(self, node_ids: Iterable[str]) -> List[WorkflowNode]:
        return self.store.duplicate_nodes(node_ids)

    def duplicate_selection(self) -> List[WorkflowNode]:
        return self.store.duplicate_nodes(self.store.selected_node_ids)

    def clear_canvas(self) -> None:
        self.store.clear_canvas()

    def connect(self, source: str, source_port: str, target: str, target_port: str) -> OperationResult:
        return self.store.connect(source, source_port, target, target_port)

    def disconnect(self, edge_id: str) -> bool:
        return self.store.disconnect(edge_id)

    def set_selected_nodes(self, node_ids: Iterable[str]) -> None:
        self.store.set_selected_nodes(node_ids)

    def set_selected_edges(self, edge_ids: Iterable[str]) -> None:
        self.store.set_selected_edges(edge_ids)

    def select_node(self, node_id: str, add_to_selection: bool = False) -> None:
        self.store.select_node(node_id, add_to_selection)

    def select_all(self) -> None:
        self.store.select_all()

    def deselect_all(self) -> None:
        self.store.deselect_all()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> bool:
        if not self.history.undo():
            return False
        self._last_validation = None
        self._dirty = True
        return True

    def redo(self) -> bool:
        if not self.history.redo():
            return False
        self._last_validation = None
        self._dirty = True
        return True

    def can_undo(self) -> bool:
        return self.history.can_undo()

    def can_redo(self) -> bool:
        return self.history.can_redo()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> ValidationReport:
        self._last_validation = self.validator.validate(self.store.nodes, self.store.edges)
        return self._last_validation

    @property
    def last_validation(self) -> Optional[ValidationReport]:
        return self._last_validation

    @property
    def validation_issues(self) -> List[ValidationIssue]:
        return list(self._last_validation.issues) if self._last_validation else []

    @property
    def is_valid(self) -> bool:
        return bool(self._last_validation and self._last_validation.is_valid)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def start_run(self, run_id: Optional[str] = None, run_input: Any = None) -> OperationResult:
        return self.execution.start_run(
            self.store.snapshot(), self._last_validation, run_id=run_id, run_input=run_input
        )

    def pause_run(self) -> OperationResult:
        return self.execution.pause_run()

    def resume_run(self) -> OperationResult:
        return self.execution.resume_run()

    def stop_run(self) -> OperationResult:
        return self.execution.stop_run()

    def reset_execution(self) -> OperationResult:
        return self.execution.reset_execution()

    def respond_to_approval(self, response: ApprovalResponse) -> OperationResult:
        return self.execution.respond_to_approval(response)

    @property
    def status(self) -> RunStatus:
        return self.execution.status

    @property
    def run_id(self) -> Optional[str]:
        return self.execution.run_id

    @property
    def node_states(self) -> Dict[str, NodeExecutionState]:
        return self.execution.node_states

    @property
    def pending_approval(self) -> Optional[PendingApprovalRequest]:
        return self.execution.pending_approval

    @property
    def pending_approvals(self) -> List[PendingApprovalRequest]:
        return self.execution.pending_approvals

    @property
    def error(self) -> Optional[str]:
        return self.execution.error

    @property
    def started_at(self) -> Optional[datetime]:
        return self.execution.started_at

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.execution.completed_at

    @property
    def session(self) -> RunSession:
        return self.execution.session

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def set_workflow_meta(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._dirty = True

    def export_document(self) -> WorkflowDocument:
        """The current graph and metadata as a document. Execution state and history are excluded."""
        return WorkflowDocument(
            id=self.workflow_id,
            name=self.name,
            description=self.description,
            version=self.version,
            nodes=self.store.nodes,
            edges=self.store.edges,
            metadata=self.metadata.model_copy(),
        )

    def mark_saved(self, document: WorkflowDocument) -> None:
        """Adopt the identity a repository assigned to a saved document."""
        self.workflow_id = document.id
        self.version = document.version
        self.metadata = document.metadata.model_copy()
        self._dirty = False

    def load_document(self, document: Union[WorkflowDocument, Mapping[str, Any]]) -> OperationResult:
        """Replace the graph. Clears history, selection and validation."""
        if self.execution.is_active:
            return OperationResult.rejected("Cannot load a workflow while a run is active", "run_active")
        if not isinstance(document, WorkflowDocument):
            document = WorkflowDocument.from_dict(dict(document))

        self._replace_graph(GraphSnapshot(nodes=tuple(document.nodes), edges=tuple(document.edges)))
        self.workflow_id = document.id
        self.name = document.name
        self.description = document.description
        self.version = document.version
        self.metadata = document.metadata.model_copy()
        self._dirty = False
        logger.info(f"Loaded workflow '{document.name}' ({len(document.nodes)} nodes, {len(document.edges)} edges)")
        return OperationResult.accepted(document.id)

    def new_workflow(self) -> OperationResult:
        """Start over with a start node and an end node."""
        if self.execution.is_active:
            return OperationResult.rejected("Cannot start a new workflow while a run is active", "run_active")

        self._replace_graph(GraphSnapshot())
        self.store.add_node(StepType.START, NEW_WORKFLOW_START_POSITION)
        self.store.add_node(StepType.END, NEW_WORKFLOW_END_POSITION)
        self.store.deselect_all()
        self.history.clear()
        self.workflow_id = None
        self.name = "Untitled Workflow"
        self.description = ""
        self.version = 1
        self.metadata = DocumentMetadata()
        self._last_validation = None
        self._dirty = False
        return OperationResult.accepted()

    def _replace_graph(self, snapshot: GraphSnapshot) -> None:
        if self.execution.status in TERMINAL_RUN_STATUSES:
            self.execution.reset_execution()
        self.store.restore(snapshot)
        self.history.clear()
        self._last_validation = None
