"""Registry of step executors for workflow nodes."""

import inspect
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
from pydantic import BaseModel, Field

from ..models.core import StepType, WorkflowNode
from .exceptions import ExecutorRegistryError
from .logging import get_logger
from .step_registry import coerce_step_type

logger = get_logger(__name__)


class StepContext:
    """Context handed to a step executor for one node of one run."""

    def __init__(
        self,
        run_id: str,
        node: WorkflowNode,
        inputs: Dict[str, Any],
        emit: Callable[[str], None],
        run_input: Any = None,
    ):
        self.run_id = run_id
        self.node = node
        self.inputs = inputs
        self.emit = emit
        self.run_input = run_input

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.config

    @property
    def input(self) -> Any:
        """The single upstream output, or the mapping by node id when several exist."""
        if len(self.inputs) == 1:
            return next(iter(self.inputs.values()))
        return dict(self.inputs)


class StepResult(BaseModel):
    """Outcome of a successful step execution."""
    output: Optional[Any] = None
    active_port: Optional[str] = Field(None, description="Output port to activate; None activates all")


StepExecutor = Callable[[StepContext], Union[Any, Awaitable[Any]]]

# Returned by an executor whose node is finished by an out-of-process worker
DEFERRED = object()


def deferred_executor(context: StepContext) -> Any:
    """Leave the node running until a worker calls ``complete_node`` or ``fail_node``."""
    return DEFERRED


def _start_executor(context: StepContext) -> Any:
    return context.run_input


def _end_executor(context: StepContext) -> Any:
    return context.input if context.inputs else None


BUILTIN_EXECUTORS: Dict[StepType, StepExecutor] = {
    StepType.START: _start_executor,
    StepType.END: _end_executor,
}


class ExecutorRegistry:
    """
    Maps step types to the external executors that run them.

    Executors may be plain or async callables taking a ``StepContext``. They
    return a ``StepResult`` or any other value, which is taken as the output.
    The registry is in-memory; executors belong to the host process.
    """

    def __init__(self, include_builtins: bool = True):
        self._executors: Dict[StepType, StepExecutor] = {}
        self._descriptions: Dict[StepType, str] = {}
        if include_builtins:
            for step_type, executor in BUILTIN_EXECUTORS.items():
                self._executors[step_type] = executor
                self._descriptions[step_type] = "Built-in pass-through"

    def register(
        self,
        step_type: Union[StepType, str],
        executor: StepExecutor,
        description: str = "",
        replace: bool = False,
    ) -> None:
        """Register an executor for a step type.

        Args:
            step_type: Step type the executor handles
            executor: Callable taking a StepContext
            description: Optional description of the executor
            replace: Allow replacing an already registered executor

        Raises:
            ExecutorRegistryError: If the executor is invalid or already registered
        """
        step_type = coerce_step_type(step_type)

        if not callable(executor):
            raise ExecutorRegistryError(
                f"Executor for '{step_type.value}' must be callable",
                step_type=step_type.value
            )

        try:
            sig = inspect.signature(executor)
            if len(sig.parameters) == 0:
                raise ExecutorRegistryError(
                    f"Executor for '{step_type.value}' must accept a step context",
                    step_type=step_type.value
                )
        except (ValueError, TypeError) as e:
            raise ExecutorRegistryError(
                f"Cannot inspect executor signature for '{step_type.value}': {e}",
                step_type=step_type.value
            )

        if step_type in self._executors and not replace and step_type not in BUILTIN_EXECUTORS:
            raise ExecutorRegistryError(
                f"Executor for '{step_type.value}' is already registered",
                step_type=step_type.value
            )

        self._executors[step_type] = executor
        self._descriptions[step_type] = description.strip() if description else ""
        logger.info(f"Registered executor for step type '{step_type.value}'")

    def unregister(self, step_type: Union[StepType, str]) -> bool:
        """Remove an executor. Returns False if none was registered."""
        step_type = coerce_step_type(step_type)
        if step_type not in self._executors:
            return False
        del self._executors[step_type]
        self._descriptions.pop(step_type, None)
        logger.info(f"Unregistered executor for step type '{step_type.value}'")
        return True

    def register_deferred(self, step_types: Iterable[Union[StepType, str]]) -> None:
        """Hand the given step types to out-of-process workers."""
        for step_type in step_types:
            self.register(step_type, deferred_executor, "Completed by an external worker", replace=True)

    def get(self, step_type: Union[StepType, str]) -> Optional[StepExecutor]:
        return self._executors.get(coerce_step_type(step_type))

    def has_executor(self, step_type: Union[StepType, str]) -> bool:
        return coerce_step_type(step_type) in self._executors

    def list_executors(self) -> Dict[str, str]:
        """List registered step types with their descriptions."""
        return {step_type.value: self._descriptions.get(step_type, "") for step_type in self._executors}

    def registered_types(self) -> List[StepType]:
        return list(self._executors)
