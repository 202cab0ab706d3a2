"""Workflow editor engine: graph editing, undo/redo, validation and run control."""

from .core.editor import WorkflowEditor
from .core.executor_registry import ExecutorRegistry, StepContext, StepResult

__version__ = "1.0.0"

__all__ = ["WorkflowEditor", "ExecutorRegistry", "StepContext", "StepResult"]
