"""Data models for the workflow editor engine."""

from .core import (
    StepType,
    PortDataType,
    NodeStatus,
    RunStatus,
    ValidationSeverity,
    ApprovalAction,
    RunEventType,
    Position,
    WorkflowNode,
    WorkflowEdge,
    GraphSnapshot,
    DocumentMetadata,
    WorkflowDocument,
    ValidationIssue,
    ValidationReport,
    OperationResult,
    NodeExecutionState,
    PendingApprovalRequest,
    ApprovalResponse,
    RunSession,
    RunEvent,
)

__all__ = [
    "StepType",
    "PortDataType",
    "NodeStatus",
    "RunStatus",
    "ValidationSeverity",
    "ApprovalAction",
    "RunEventType",
    "Position",
    "WorkflowNode",
    "WorkflowEdge",
    "GraphSnapshot",
    "DocumentMetadata",
    "WorkflowDocument",
    "ValidationIssue",
    "ValidationReport",
    "OperationResult",
    "NodeExecutionState",
    "PendingApprovalRequest",
    "ApprovalResponse",
    "RunSession",
    "RunEvent",
]
