"""Human-in-the-loop approval protocol for wait_for_human steps."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..models.core import (
    ApprovalAction,
    ApprovalResponse,
    OperationResult,
    PendingApprovalRequest,
    RunEventType,
    WorkflowNode,
)
from .logging import get_logger

if TYPE_CHECKING:
    from .execution_controller import ExecutionController

logger = get_logger(__name__)

DEFAULT_REJECT_REASON = "Rejected by reviewer"
TIMEOUT_REASON = "Approval timed out"


class ApprovalGate:
    """
    Pending approval requests of the active run.

    Each waiting node has exactly one request. Requests are kept oldest-first
    so a single-slot UI can show ``pending_approval`` while independent
    branches keep running.
    """

    def __init__(self, controller: "ExecutionController"):
        self._controller = controller
        self._requests: Dict[str, PendingApprovalRequest] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def pending_approvals(self) -> List[PendingApprovalRequest]:
        return [request.model_copy() for request in self._requests.values()]

    @property
    def pending_approval(self) -> Optional[PendingApprovalRequest]:
        for request in self._requests.values():
            return request.model_copy()
        return None

    def get_request(self, request_id: str) -> Optional[PendingApprovalRequest]:
        request = self._requests.get(request_id)
        return request.model_copy() if request else None

    def request_for_node(self, node_id: str) -> Optional[PendingApprovalRequest]:
        for request in self._requests.values():
            if request.node_id == node_id:
                return request.model_copy()
        return None

    def open_request(self, run_id: str, node: WorkflowNode, inputs: Dict[str, Any]) -> PendingApprovalRequest:
        """Create the request for a node that just reached waiting_human."""
        existing = self.request_for_node(node.id)
        if existing is not None:
            return existing

        config = node.config
        if len(inputs) == 1:
            data_to_review = next(iter(inputs.values()))
        else:
            data_to_review = dict(inputs) if inputs else None

        timeout = _as_seconds(config.get("timeoutSeconds"))
        now = datetime.utcnow()
        request = PendingApprovalRequest(
            id=f"approval-{uuid.uuid4().hex[:12]}",
            node_id=node.id,
            node_name=node.label or node.id,
            prompt_message=config.get("promptMessage") or "",
            data_to_review=data_to_review,
            allow_edit=bool(config.get("allowEdit", False)),
            editable_fields=list(config.get("editableFields") or []),
            created_at=now,
            timeout_at=now + timedelta(seconds=timeout) if timeout else None,
        )
        self._requests[request.id] = request

        if timeout:
            action = ApprovalAction.APPROVE if config.get("defaultAction") == "approve" else ApprovalAction.REJECT
            loop = asyncio.get_running_loop()
            self._timers[request.id] = loop.call_later(timeout, self._on_timeout, request.id, action)

        logger.info(f"Approval requested for node {node.id} (request {request.id}, run {run_id})")
        return request.model_copy()

    def respond_to_approval(self, response: ApprovalResponse) -> OperationResult:
        """Resolve a pending request. Unknown or resolved requests are rejected, not raised."""
        request = self._requests.pop(response.request_id, None)
        if request is None:
            reason = f"Approval request '{response.request_id}' is unknown or already resolved"
            logger.warning(reason)
            return OperationResult.rejected(reason, "unknown_request")

        timer = self._timers.pop(request.id, None)
        if timer is not None:
            timer.cancel()

        controller = self._controller
        run_id = controller.run_id
        logger.info(f"Approval {request.id} for node {request.node_id}: {response.action.value}")
        controller.notify(
            RunEventType.APPROVAL_RESOLVED, node_id=request.node_id,
            request_id=request.id, action=response.action.value, reason=response.reason
        )

        if response.action == ApprovalAction.APPROVE:
            if request.allow_edit and response.edited_data is not None:
                output = response.edited_data
            else:
                output = request.data_to_review
            return controller.complete_node(run_id, request.node_id, output, active_port="approved")

        return controller.fail_node(run_id, request.node_id, response.reason or DEFAULT_REJECT_REASON)

    def _on_timeout(self, request_id: str, action: ApprovalAction) -> None:
        self._timers.pop(request_id, None)
        if request_id not in self._requests:
            return
        logger.info(f"Approval {request_id} timed out, applying default action '{action.value}'")
        self.respond_to_approval(ApprovalResponse(request_id=request_id, action=action, reason=TIMEOUT_REASON))

    def cancel_all(self) -> None:
        """Drop every pending request and its timer."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._requests.clear()


def _as_seconds(value: Any) -> float:
    try:
        seconds = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return seconds if seconds > 0 else 0.0
