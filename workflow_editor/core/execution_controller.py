"""Run-time state machine for workflow execution."""

import asyncio
import inspect
import time
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ..models.core import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_NODE_STATUSES,
    TERMINAL_RUN_STATUSES,
    GraphSnapshot,
    NodeExecutionState,
    NodeStatus,
    OperationResult,
    PendingApprovalRequest,
    RunEvent,
    RunEventType,
    RunSession,
    RunStatus,
    StepType,
    ValidationReport,
    WorkflowEdge,
    WorkflowNode,
    ApprovalResponse,
)
from .approval_gate import ApprovalGate
from .executor_registry import DEFERRED, ExecutorRegistry, StepContext, StepResult
from .logging import get_logger, set_logging_context
from .step_registry import get_step_metadata

logger = get_logger(__name__)

RunListener = Callable[[RunEvent], None]

IN_FLIGHT_STATUSES = frozenset({NodeStatus.QUEUED, NodeStatus.RUNNING, NodeStatus.WAITING_HUMAN})


def find_back_edges(start_ids: List[str], nodes: List[WorkflowNode], edges: List[WorkflowEdge]) -> Set[str]:
    """
    Return ids of edges that close a cycle.

    A depth-first traversal rooted at the start nodes (then at any node not
    yet visited) classifies an edge as a back edge when it points at a node
    still on the traversal stack.
    """
    adjacency: Dict[str, List[WorkflowEdge]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge)

    on_stack, done = set(), set()
    back_edges: Set[str] = set()
    roots = list(start_ids) + [n.id for n in nodes if n.id not in start_ids]
    for root in roots:
        if root in on_stack or root in done:
            continue
        on_stack.add(root)
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node_id, edge_iter = stack[-1]
            edge = next(edge_iter, None)
            if edge is None:
                stack.pop()
                on_stack.discard(node_id)
                done.add(node_id)
            elif edge.target in on_stack:
                back_edges.add(edge.id)
            elif edge.target not in done:
                on_stack.add(edge.target)
                stack.append((edge.target, iter(adjacency[edge.target])))
    return back_edges


class ExecutionController:
    """
    Owns the lifecycle of a single run over a graph snapshot.

    All transitions are synchronous and happen on the event loop thread.
    Executor completions re-enter through ``complete_node``/``fail_node``,
    which drop any callback whose ``run_id`` is not the active run's.
    """

    def __init__(self, executors: Optional[ExecutorRegistry] = None):
        self.executors = executors or ExecutorRegistry()
        self.approvals = ApprovalGate(self)
        self._listeners: List[RunListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dispatch_handle: Optional[asyncio.Handle] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._finished: Optional[asyncio.Event] = None
        self._clear_run()

    def _clear_run(self) -> None:
        self._run_id: Optional[str] = None
        self._status = RunStatus.IDLE
        self._started_at: Optional[datetime] = None
        self._completed_at: Optional[datetime] = None
        self._error: Optional[str] = None
        self._run_input: Any = None
        self._nodes: Dict[str, WorkflowNode] = {}
        self._incoming: Dict[str, List[WorkflowEdge]] = {}
        self._node_states: Dict[str, NodeExecutionState] = {}
        self._clock: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # Read-only observables
    # ------------------------------------------------------------------

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def completed_at(self) -> Optional[datetime]:
        return self._completed_at

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_active(self) -> bool:
        return self._status in ACTIVE_RUN_STATUSES

    @property
    def node_states(self) -> Dict[str, NodeExecutionState]:
        return {node_id: state.model_copy() for node_id, state in self._node_states.items()}

    def get_node_state(self, node_id: str) -> Optional[NodeExecutionState]:
        state = self._node_states.get(node_id)
        return state.model_copy() if state else None

    @property
    def current_node_id(self) -> Optional[str]:
        for status in (NodeStatus.RUNNING, NodeStatus.WAITING_HUMAN, NodeStatus.QUEUED):
            for node_id, state in self._node_states.items():
                if state.status == status:
                    return node_id
        return None

    @property
    def pending_approvals(self) -> List[PendingApprovalRequest]:
        return self.approvals.pending_approvals

    @property
    def pending_approval(self) -> Optional[PendingApprovalRequest]:
        return self.approvals.pending_approval

    @property
    def session(self) -> RunSession:
        return RunSession(
            run_id=self._run_id,
            status=self._status,
            started_at=self._started_at,
            completed_at=self._completed_at,
            node_states=self.node_states,
            pending_approvals=self.pending_approvals,
            current_node_id=self.current_node_id,
            error=self._error,
        )

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        """Node definition as captured when the run started."""
        return self._nodes.get(node_id)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: RunListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: RunListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(
        self,
        event_type: RunEventType,
        node_id: Optional[str] = None,
        status: Optional[str] = None,
        **data: Any
    ) -> None:
        """Deliver an event to every listener. Listener errors are logged, never raised."""
        event = RunEvent(type=event_type, run_id=self._run_id, node_id=node_id, status=status, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Run event listener failed on {event_type.value}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Run controls
    # ------------------------------------------------------------------

    def start_run(
        self,
        graph: GraphSnapshot,
        validation: Optional[ValidationReport],
        run_id: Optional[str] = None,
        run_input: Any = None,
    ) -> OperationResult:
        """
        Start a run over ``graph``.

        Rejected while a run is active, when ``validation`` is missing (the
        graph changed since the last ``validate()``) or when it has errors.
        A finished run is replaced. Must be called from a running event loop.
        """
        if self.is_active:
            return self._reject("A run is already active", "run_active")
        if validation is None:
            return self._reject("Workflow must be validated before it can run", "not_validated")
        if not validation.is_valid:
            return self._reject(
                f"Workflow has {len(validation.errors)} validation error(s)", "invalid_workflow"
            )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return self._reject("start_run requires a running event loop", "no_event_loop")

        self._teardown()
        self._clear_run()
        self._loop = loop
        self._finished = asyncio.Event()
        self._run_id = run_id or uuid.uuid4().hex
        self._run_input = run_input

        nodes = list(graph.nodes)
        self._nodes = {node.id: node for node in nodes}
        edges = [e for e in graph.edges if e.source in self._nodes and e.target in self._nodes]
        start_ids = [n.id for n in nodes if n.step_type == StepType.START]
        back_edges = find_back_edges(start_ids, nodes, edges)
        self._incoming = {node.id: [] for node in nodes}
        for edge in edges:
            if edge.id not in back_edges:
                self._incoming[edge.target].append(edge)

        self._node_states = {node.id: NodeExecutionState(node_id=node.id) for node in nodes}
        self._status = RunStatus.RUNNING
        self._started_at = datetime.utcnow()

        set_logging_context(run_id=self._run_id)
        logger.info(f"Started run {self._run_id} over {len(nodes)} node(s)")
        self.notify(RunEventType.RUN_STARTED, status=self._status.value)

        for node_id in start_ids:
            self._set_node_status(node_id, NodeStatus.QUEUED)
        self._advance()
        return OperationResult.accepted(self._run_id)

    def pause_run(self) -> OperationResult:
        """Freeze scheduling. In-flight nodes may still report their outcome."""
        if self._status not in (RunStatus.RUNNING, RunStatus.WAITING_HUMAN):
            return self._reject(f"Cannot pause a run in status '{self._status.value}'", "invalid_state")
        self._status = RunStatus.PAUSED
        if self._dispatch_handle is not None:
            self._dispatch_handle.cancel()
            self._dispatch_handle = None
        logger.info(f"Paused run {self._run_id}")
        self.notify(RunEventType.RUN_PAUSED, status=self._status.value)
        return OperationResult.accepted()

    def resume_run(self) -> OperationResult:
        if self._status != RunStatus.PAUSED:
            return self._reject(f"Cannot resume a run in status '{self._status.value}'", "invalid_state")
        self._status = RunStatus.RUNNING
        logger.info(f"Resumed run {self._run_id}")
        self.notify(RunEventType.RUN_RESUMED, status=self._status.value)
        self._advance()
        return OperationResult.accepted()

    def stop_run(self) -> OperationResult:
        """Cancel the run immediately. Later callbacks for it are ignored."""
        if not self.is_active:
            return self._reject("No active run to stop", "invalid_state")

        self._teardown()
        for node_id, state in self._node_states.items():
            if state.status in IN_FLIGHT_STATUSES:
                self._finish_node(state, NodeStatus.CANCELLED)
                self.notify(RunEventType.NODE_STATUS, node_id=node_id, status=state.status.value)

        self._status = RunStatus.CANCELLED
        self._completed_at = datetime.utcnow()
        logger.info(f"Stopped run {self._run_id}")
        self.notify(RunEventType.RUN_CANCELLED, status=self._status.value)
        self._set_finished()
        return OperationResult.accepted()

    def reset_execution(self) -> OperationResult:
        """Discard a finished run's state and return to idle. The graph is untouched."""
        if self._status not in TERMINAL_RUN_STATUSES:
            return self._reject(
                f"Run can only be reset once finished (status '{self._status.value}')", "invalid_state"
            )
        previous_run = self._run_id
        self._teardown()
        self._clear_run()
        logger.info(f"Reset execution state of run {previous_run}")
        self.notify(RunEventType.RUN_RESET, status=self._status.value)
        return OperationResult.accepted()

    def respond_to_approval(self, response: ApprovalResponse) -> OperationResult:
        return self.approvals.respond_to_approval(response)

    async def wait_until_finished(self, timeout: Optional[float] = None) -> RunStatus:
        """Wait for the current run to reach a terminal status."""
        if self._finished is not None and self.is_active:
            await asyncio.wait_for(self._finished.wait(), timeout)
        return self._status

    # ------------------------------------------------------------------
    # Executor callbacks
    # ------------------------------------------------------------------

    def complete_node(
        self,
        run_id: str,
        node_id: str,
        output: Any = None,
        active_port: Optional[str] = None,
    ) -> OperationResult:
        """Record a successful node outcome reported by an executor."""
        state = self._accept_callback(run_id, node_id)
        if isinstance(state, OperationResult):
            return state

        node = self._nodes[node_id]
        declared = [port.id for port in get_step_metadata(node.step_type).outputs]
        if node.step_type == StepType.BRANCH and active_port is None:
            active_port = node.config.get("defaultOutputId")
            if active_port not in declared:
                return self._fail(state, "Branch did not resolve to a declared output port")
        if active_port is not None and active_port not in declared:
            return self._fail(state, f"Executor activated undeclared output port '{active_port}'")

        state.output = output
        state.active_port = active_port
        self._finish_node(state, NodeStatus.SUCCESS)
        logger.debug(f"Node {node_id} succeeded in {state.duration_ms}ms (port={active_port})")
        self.notify(
            RunEventType.NODE_STATUS, node_id=node_id, status=state.status.value,
            output=output, active_port=active_port, duration_ms=state.duration_ms
        )
        self._advance()
        return OperationResult.accepted()

    def fail_node(self, run_id: str, node_id: str, error: str) -> OperationResult:
        """Record a failed node outcome reported by an executor."""
        state = self._accept_callback(run_id, node_id)
        if isinstance(state, OperationResult):
            return state
        return self._fail(state, error)

    def append_streaming_output(self, run_id: str, node_id: str, chunk: str) -> OperationResult:
        state = self._accept_callback(run_id, node_id)
        if isinstance(state, OperationResult):
            return state
        state.streaming_output = (state.streaming_output or "") + chunk
        self.notify(RunEventType.NODE_OUTPUT, node_id=node_id, chunk=chunk)
        return OperationResult.accepted()

    def clear_streaming_output(self, run_id: str, node_id: str) -> OperationResult:
        if run_id != self._run_id or node_id not in self._node_states:
            return self._reject(f"Unknown run or node '{node_id}'", "stale_callback")
        self._node_states[node_id].streaming_output = None
        return OperationResult.accepted()

    def _accept_callback(self, run_id: str, node_id: str):
        if run_id != self._run_id or not self.is_active:
            logger.warning(f"Ignoring stale callback for node {node_id} of run {run_id}")
            return OperationResult.rejected(f"Run '{run_id}' is not the active run", "stale_callback")
        state = self._node_states.get(node_id)
        if state is None:
            return self._reject(f"Node '{node_id}' is not part of run '{run_id}'", "unknown_node")
        if state.status not in (NodeStatus.RUNNING, NodeStatus.WAITING_HUMAN):
            return self._reject(
                f"Node '{node_id}' is not in progress (status '{state.status.value}')", "invalid_state"
            )
        return state

    def _fail(self, state: NodeExecutionState, error: str) -> OperationResult:
        state.error = error or "Step failed"
        self._finish_node(state, NodeStatus.FAILED)
        logger.debug(f"Node {state.node_id} failed: {state.error}")
        self.notify(RunEventType.NODE_STATUS, node_id=state.node_id, status=state.status.value, error=state.error)
        self._advance()
        return OperationResult.accepted()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _edge_satisfied(self, edge: WorkflowEdge) -> bool:
        source = self._node_states[edge.source]
        if source.status != NodeStatus.SUCCESS:
            return False
        return source.active_port is None or source.active_port == edge.source_port

    def _advance(self) -> None:
        """Queue ready nodes, skip dead ones, then dispatch or finish."""
        if self._status not in (RunStatus.RUNNING, RunStatus.WAITING_HUMAN):
            return

        changed = True
        while changed:
            changed = False
            for node_id, state in self._node_states.items():
                if state.status != NodeStatus.IDLE:
                    continue
                incoming = self._incoming[node_id]
                if any(self._node_states[e.source].status not in TERMINAL_NODE_STATUSES for e in incoming):
                    continue
                if any(self._edge_satisfied(e) for e in incoming):
                    self._set_node_status(node_id, NodeStatus.QUEUED)
                else:
                    self._finish_node(state, NodeStatus.SKIPPED)
                    self.notify(RunEventType.NODE_STATUS, node_id=node_id, status=state.status.value)
                changed = True

        if any(s.status in IN_FLIGHT_STATUSES for s in self._node_states.values()):
            self._refresh_status()
            self._schedule_dispatch()
        else:
            self._finalize()

    def _schedule_dispatch(self) -> None:
        if self._dispatch_handle is None and self._loop is not None:
            if any(s.status == NodeStatus.QUEUED for s in self._node_states.values()):
                self._dispatch_handle = self._loop.call_soon(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_handle = None
        if self._status not in (RunStatus.RUNNING, RunStatus.WAITING_HUMAN):
            return

        for node_id, state in self._node_states.items():
            if state.status != NodeStatus.QUEUED:
                continue
            node = self._nodes[node_id]
            inputs = self._collect_inputs(node_id)
            if node.step_type == StepType.WAIT_FOR_HUMAN:
                self._set_node_status(node_id, NodeStatus.WAITING_HUMAN)
                request = self.approvals.open_request(self._run_id, node, inputs)
                self.notify(
                    RunEventType.APPROVAL_REQUESTED, node_id=node_id,
                    request=request.model_dump(mode="json")
                )
            else:
                self._set_node_status(node_id, NodeStatus.RUNNING)
                # The store and history snapshots share node.config
                context = StepContext(
                    run_id=self._run_id,
                    node=node.model_copy(deep=True),
                    inputs=inputs,
                    emit=self._emitter(self._run_id, node_id),
                    run_input=self._run_input,
                )
                self._tasks[node_id] = self._loop.create_task(self._execute(context))
        self._refresh_status()

    def _emitter(self, run_id: str, node_id: str) -> Callable[[str], None]:
        def emit(chunk: str) -> None:
            self.append_streaming_output(run_id, node_id, chunk)
        return emit

    def _collect_inputs(self, node_id: str) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for edge in self._incoming[node_id]:
            if self._edge_satisfied(edge):
                inputs[edge.source] = self._node_states[edge.source].output
        return inputs

    async def _execute(self, context: StepContext) -> None:
        run_id, node = context.run_id, context.node
        set_logging_context(node_id=node.id)
        try:
            executor = self.executors.get(node.step_type)
            if executor is None:
                self.fail_node(run_id, node.id, f"No executor registered for step type '{node.step_type.value}'")
                return
            try:
                result = executor(context)
                if inspect.isawaitable(result):
                    result = await result
            except asyncio.CancelledError:
                # Stop, reset and a replacing run unregister the task before cancelling it
                if run_id != self._run_id or self._tasks.get(node.id) is not asyncio.current_task():
                    raise
                logger.error(f"Executor for node {node.id} was cancelled")
                self.fail_node(run_id, node.id, "Step was cancelled")
                return
            except Exception as e:
                logger.error(f"Executor for node {node.id} raised: {e}")
                self.fail_node(run_id, node.id, str(e) or e.__class__.__name__)
                return

            if result is DEFERRED:
                logger.debug(f"Node {node.id} waits for an external worker")
            elif isinstance(result, StepResult):
                self.complete_node(run_id, node.id, result.output, result.active_port)
            else:
                self.complete_node(run_id, node.id, result)
        finally:
            if run_id == self._run_id:
                self._tasks.pop(node.id, None)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _set_node_status(self, node_id: str, status: NodeStatus) -> None:
        state = self._node_states[node_id]
        state.status = status
        if status in (NodeStatus.RUNNING, NodeStatus.WAITING_HUMAN):
            state.started_at = datetime.utcnow()
            self._clock[node_id] = time.monotonic()
        logger.debug(f"Node {node_id} -> {status.value}")
        self.notify(RunEventType.NODE_STATUS, node_id=node_id, status=status.value)

    def _finish_node(self, state: NodeExecutionState, status: NodeStatus) -> None:
        state.status = status
        state.completed_at = datetime.utcnow()
        started = self._clock.pop(state.node_id, None)
        if started is not None:
            state.duration_ms = int((time.monotonic() - started) * 1000)

    def _refresh_status(self) -> None:
        if self._status not in (RunStatus.RUNNING, RunStatus.WAITING_HUMAN):
            return
        statuses = [s.status for s in self._node_states.values()]
        progressing = NodeStatus.RUNNING in statuses or NodeStatus.QUEUED in statuses
        if NodeStatus.WAITING_HUMAN in statuses and not progressing:
            status = RunStatus.WAITING_HUMAN
        else:
            status = RunStatus.RUNNING
        if status != self._status:
            self._status = status
            self.notify(RunEventType.RUN_STATUS, status=status.value)

    def _finalize(self) -> None:
        for node_id, state in self._node_states.items():
            if state.status == NodeStatus.IDLE:
                self._finish_node(state, NodeStatus.SKIPPED)
                self.notify(RunEventType.NODE_STATUS, node_id=node_id, status=state.status.value)

        failed = [s for s in self._node_states.values() if s.status == NodeStatus.FAILED]
        end_reached = any(
            self._nodes[s.node_id].step_type == StepType.END and s.status == NodeStatus.SUCCESS
            for s in self._node_states.values()
        )
        self._completed_at = datetime.utcnow()
        if not failed or end_reached:
            self._status = RunStatus.COMPLETED
            logger.info(f"Run {self._run_id} completed")
            self.notify(RunEventType.RUN_COMPLETED, status=self._status.value)
        else:
            details = ", ".join(
                f"{self._nodes[s.node_id].label or s.node_id}: {s.error}" for s in failed
            )
            self._status = RunStatus.FAILED
            self._error = f"Run failed at {details}"
            logger.info(f"Run {self._run_id} failed: {self._error}")
            self.notify(RunEventType.RUN_FAILED, status=self._status.value, error=self._error)
        self._set_finished()

    def _set_finished(self) -> None:
        if self._finished is not None:
            self._finished.set()

    def _teardown(self) -> None:
        """Cancel scheduled work, executor tasks and approval timers."""
        if self._dispatch_handle is not None:
            self._dispatch_handle.cancel()
            self._dispatch_handle = None
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
        self.approvals.cancel_all()

    def _reject(self, reason: str, error_code: str) -> OperationResult:
        logger.warning(f"Rejected: {reason}")
        return OperationResult.rejected(reason, error_code)
