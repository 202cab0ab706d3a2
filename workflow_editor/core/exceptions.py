"""
Exceptions raised by the workflow editor engine.

Engine operations that a user can legitimately attempt at the wrong moment
(starting a second run, answering an approval twice) do not raise; they return
a rejected ``OperationResult``. The classes here cover programming errors,
malformed input and infrastructure failures, plus ``ExecutionProtocolError``
for adapters that have to turn a rejection into an exception.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    PROTOCOL = "protocol"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    FORMAT = "format"


class WorkflowEditorError(Exception):
    """
    Base exception for all workflow editor errors.

    Subclasses set ``severity``, ``category`` and ``recoverable`` as class
    attributes. Extra keyword arguments become ``context`` entries (None values
    are dropped), e.g. ``GraphMutationError(msg, node_id="n1")``.
    """

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        **context: Any
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        if recoverable is not None:
            self.recoverable = recoverable
        self.context = {key: value for key, value in context.items() if value is not None}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form for structured logs."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": type(self).__name__,
        }


class UnknownStepTypeError(WorkflowEditorError):
    """A node was requested for a step type the registry does not know."""

    category = ErrorCategory.VALIDATION

    def __init__(self, step_type: str, **kwargs):
        super().__init__(f"Unknown step type: '{step_type}'", step_type=step_type, **kwargs)
        self.step_type = step_type


class GraphMutationError(WorkflowEditorError):
    """A graph mutation was called with arguments it cannot apply."""

    category = ErrorCategory.VALIDATION


class ExecutionProtocolError(WorkflowEditorError):
    """A rejected engine operation crossing a boundary that expects exceptions."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.PROTOCOL


class NodeExecutionError(WorkflowEditorError):
    """
    Raised by step executors to fail their node with a readable message.

    Executors may raise any exception; this one only makes the intent explicit.
    The controller records ``str(error)`` as the node's error.
    """

    severity = ErrorSeverity.HIGH
    recoverable = True


class ExecutorRegistryError(WorkflowEditorError):
    category = ErrorCategory.CONFIGURATION


class DocumentFormatError(WorkflowEditorError):
    """A workflow document could not be parsed."""

    category = ErrorCategory.FORMAT


class StorageError(WorkflowEditorError):
    """Document storage failed. Recoverable unless stated otherwise."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True


class ConfigurationError(WorkflowEditorError):
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION


def create_error_response(error: WorkflowEditorError) -> Dict[str, Any]:
    """JSON body for an HTTP error response."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat(),
        },
        "context": error.context,
    }
