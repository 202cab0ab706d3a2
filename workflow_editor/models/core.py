"""Core Pydantic models for the workflow editor engine."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class StepType(str, Enum):
    """Closed set of workflow step types."""
    PROMPT = "prompt"
    RAG_SEARCH = "rag_search"
    MEDIA_INGEST = "media_ingest"
    BRANCH = "branch"
    MAP = "map"
    WAIT_FOR_HUMAN = "wait_for_human"
    WEBHOOK = "webhook"
    TTS = "tts"
    STT_TRANSCRIBE = "stt_transcribe"
    DELAY = "delay"
    LOG = "log"
    START = "start"
    END = "end"


class PortDataType(str, Enum):
    """Data types carried by node ports."""
    ANY = "any"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    FILE = "file"
    AUDIO = "audio"
    CONTROL = "control"


class NodeStatus(str, Enum):
    """Per-node execution status within a run."""
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING_HUMAN = "waiting_human"
    CANCELLED = "cancelled"


TERMINAL_NODE_STATUSES = frozenset({
    NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.CANCELLED
})


class RunStatus(str, Enum):
    """Run-level execution status."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_HUMAN = "waiting_human"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RUN_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.WAITING_HUMAN})
TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class ValidationSeverity(str, Enum):
    """Severity of a validation issue."""
    ERROR = "error"
    WARNING = "warning"


class ApprovalAction(str, Enum):
    """Human decision on a pending approval."""
    APPROVE = "approve"
    REJECT = "reject"


class RunEventType(str, Enum):
    """Events emitted by the execution controller."""
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_STATUS = "run_status"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"
    RUN_RESET = "run_reset"
    NODE_STATUS = "node_status"
    NODE_OUTPUT = "node_output"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"


# ---------------------------------------------------------------------------
# Graph topology
# ---------------------------------------------------------------------------

class Position(BaseModel):
    """Canvas position of a node. Written by the UI, persisted by the engine."""
    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0

    def offset(self, dx: float, dy: float) -> "Position":
        return Position(x=self.x + dx, y=self.y + dy)


class WorkflowNode(BaseModel):
    """A step instance on the canvas.

    Nodes are immutable; every change produces a new instance so history
    snapshots can share unchanged nodes. Treat ``config`` as read-only.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Unique, stable node identifier")
    step_type: StepType = Field(..., alias="stepType", description="Step type of the node")
    label: str = Field("", description="Display name")
    config: Dict[str, Any] = Field(default_factory=dict, description="Step parameters")
    position: Position = Field(default_factory=Position, description="Canvas position")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not empty."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()


class WorkflowEdge(BaseModel):
    """A connection from an output port to an input port."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Unique edge identifier")
    source: str = Field(..., description="Source node ID")
    source_port: str = Field(..., alias="sourcePort", description="Output port on the source node")
    target: str = Field(..., description="Target node ID")
    target_port: str = Field(..., alias="targetPort", description="Input port on the target node")


class GraphSnapshot(BaseModel):
    """Immutable (nodes, edges) pair used for undo/redo."""
    model_config = ConfigDict(frozen=True)

    nodes: Tuple[WorkflowNode, ...] = ()
    edges: Tuple[WorkflowEdge, ...] = ()

    def topology(self) -> Dict[str, Any]:
        """Comparable plain representation of the snapshot."""
        return {
            "nodes": [node.model_dump() for node in self.nodes],
            "edges": [edge.model_dump() for edge in self.edges],
        }


class DocumentMetadata(BaseModel):
    """Revision metadata carried by a saved document."""
    model_config = ConfigDict(populate_by_name=True)

    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")
    tags: List[str] = Field(default_factory=list)


class WorkflowDocument(BaseModel):
    """Unit of save/load/export. Excludes execution state and history."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Storage identifier, assigned on first save")
    name: str = Field("Untitled Workflow", description="Workflow name")
    description: str = Field("", description="Workflow description")
    version: int = Field(1, description="Revision number, bumped on every save")
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('edges')
    @classmethod
    def validate_unique_edge_ids(cls, edges):
        """Ensure all edge IDs are unique."""
        edge_ids = [edge.id for edge in edges]
        if len(edge_ids) != len(set(edge_ids)):
            raise ValueError("All edge IDs must be unique")
        return edges

    def to_dict(self) -> Dict[str, Any]:
        """Interchange representation with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDocument":
        """Parse an interchange dictionary, raising DocumentFormatError on bad input."""
        from ..core.exceptions import DocumentFormatError

        if not isinstance(data, dict):
            raise DocumentFormatError("Workflow document must be a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DocumentFormatError(
                f"Invalid workflow document: {e.error_count()} error(s)",
                details={"errors": e.errors(include_url=False)}
            )

    @classmethod
    def from_json(cls, payload: str) -> "WorkflowDocument":
        from ..core.exceptions import DocumentFormatError

        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise DocumentFormatError(f"Workflow document is not valid JSON: {e}")
        return cls.from_dict(data)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationIssue(BaseModel):
    """A structural or semantic problem found in the graph. Never persisted."""
    id: str = Field(..., description="Deterministic issue identifier")
    severity: ValidationSeverity
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    field: Optional[str] = None


class ValidationReport(BaseModel):
    """Result of validating a graph."""
    is_valid: bool = Field(..., description="True when no error-severity issue exists")
    issues: List[ValidationIssue] = Field(default_factory=list)

    @classmethod
    def from_issues(cls, issues: List[ValidationIssue]) -> "ValidationReport":
        return cls(
            is_valid=all(issue.severity != ValidationSeverity.ERROR for issue in issues),
            issues=issues
        )

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class OperationResult(BaseModel):
    """Outcome of a public engine operation.

    Expected rejections (run already active, unknown approval, ...) are
    reported here instead of being raised.
    """
    ok: bool
    reason: Optional[str] = None
    error_code: Optional[str] = None
    value: Optional[Any] = None

    @classmethod
    def accepted(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def rejected(cls, reason: str, error_code: str = "rejected") -> "OperationResult":
        return cls(ok=False, reason=reason, error_code=error_code)

    def __bool__(self) -> bool:
        return self.ok


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------

class NodeExecutionState(BaseModel):
    """Per-run, per-node execution state. Only mutated by the execution controller."""
    node_id: str
    status: NodeStatus = NodeStatus.IDLE
    streaming_output: Optional[str] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    active_port: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class PendingApprovalRequest(BaseModel):
    """A human decision the run is waiting on."""
    id: str
    node_id: str
    node_name: str = ""
    prompt_message: str = ""
    data_to_review: Optional[Any] = None
    allow_edit: bool = False
    editable_fields: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    timeout_at: Optional[datetime] = None


class ApprovalResponse(BaseModel):
    """A human's answer to a pending approval request."""
    request_id: str
    action: ApprovalAction
    edited_data: Optional[Any] = None
    reason: Optional[str] = None
    responded_at: datetime = Field(default_factory=datetime.utcnow)


class RunSession(BaseModel):
    """Read-only view of the active (or last) run."""
    run_id: Optional[str] = None
    status: RunStatus = RunStatus.IDLE
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    node_states: Dict[str, NodeExecutionState] = Field(default_factory=dict)
    pending_approvals: List[PendingApprovalRequest] = Field(default_factory=list)
    current_node_id: Optional[str] = None
    error: Optional[str] = None


class RunEvent(BaseModel):
    """Notification delivered to execution observers."""
    type: RunEventType
    run_id: Optional[str] = None
    node_id: Optional[str] = None
    status: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
