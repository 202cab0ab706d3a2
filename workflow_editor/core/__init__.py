"""Core workflow editor components."""

from .exceptions import (
    WorkflowEditorError,
    UnknownStepTypeError,
    GraphMutationError,
    ExecutionProtocolError,
    NodeExecutionError,
    ExecutorRegistryError,
    DocumentFormatError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .graph_store import GraphStore
from .history import HistoryManager
from .validator import Validator, validate_workflow
from .executor_registry import ExecutorRegistry, StepContext, StepResult
from .execution_controller import ExecutionController
from .approval_gate import ApprovalGate
from .editor import WorkflowEditor

__all__ = [
    "WorkflowEditorError",
    "UnknownStepTypeError",
    "GraphMutationError",
    "ExecutionProtocolError",
    "NodeExecutionError",
    "ExecutorRegistryError",
    "DocumentFormatError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "GraphStore",
    "HistoryManager",
    "Validator",
    "validate_workflow",
    "ExecutorRegistry",
    "StepContext",
    "StepResult",
    "ExecutionController",
    "ApprovalGate",
    "WorkflowEditor",
]
