"""FastAPI endpoints exposing the workflow editor engine."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Response, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ..config import EditorConfig
from ..core.editor import WorkflowEditor
from ..core.exceptions import ExecutionProtocolError
from ..core.logging import get_logger
from ..core.step_registry import get_categorized_steps
from ..models.core import (
    ApprovalAction,
    ApprovalResponse,
    OperationResult,
    RunSession,
    ValidationReport,
    WorkflowEdge,
    WorkflowNode,
)
from ..storage.document_repository import DocumentRepository, DocumentSummary
from .sessions import EditorSession, SessionRegistry

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow-editor"])

# Global instances (initialized by the application factory)
_sessions: Optional[SessionRegistry] = None
_repository: Optional[DocumentRepository] = None
_config: Optional[EditorConfig] = None


def init_dependencies(
    sessions: SessionRegistry,
    repository: Optional[DocumentRepository],
    config: EditorConfig,
):
    """Initialize the global dependencies."""
    global _sessions, _repository, _config
    _sessions = sessions
    _repository = repository
    _config = config


def get_sessions() -> SessionRegistry:
    if _sessions is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session registry not initialized"
        )
    return _sessions


def get_repository() -> DocumentRepository:
    if _repository is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Document storage not configured"
        )
    return _repository


def get_session(session_id: str, sessions: SessionRegistry = Depends(get_sessions)) -> EditorSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "SessionNotFound", "message": f"Editor session '{session_id}' not found"}
        )
    return session


def get_editor(session: EditorSession = Depends(get_session)) -> WorkflowEditor:
    return session.editor


def ensure_accepted(result: OperationResult, operation: str, editor: Optional[WorkflowEditor] = None) -> OperationResult:
    """Turn a rejected engine operation into a 409 response."""
    if not result.ok:
        raise ExecutionProtocolError(
            result.reason or f"{operation} rejected",
            run_id=editor.run_id if editor else None,
            operation=operation,
            details={"code": result.error_code},
        )
    return result


def _node_not_found(node_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "NodeNotFound", "message": f"Node '{node_id}' not found"}
    )


# Request/Response models

class CreateSessionRequest(BaseModel):
    """Request model for opening an editor session."""
    document: Optional[Dict[str, Any]] = Field(None, description="Workflow document to import")
    blank: bool = Field(False, description="Start from an empty canvas instead of start/end nodes")


class EditorStateResponse(BaseModel):
    """Snapshot of an editor session for rendering."""
    session_id: str
    workflow_id: Optional[str] = None
    name: str
    description: str
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge]
    selected_node_ids: List[str]
    selected_edge_ids: List[str]
    can_undo: bool
    can_redo: bool
    is_dirty: bool
    validation: Optional[ValidationReport] = None
    run: RunSession


class AddNodeRequest(BaseModel):
    step_type: str = Field(..., description="Step type of the new node")
    position: Optional[Dict[str, float]] = None
    label: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class UpdateNodeRequest(BaseModel):
    label: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    position: Optional[Dict[str, float]] = None


class NodeIdsRequest(BaseModel):
    node_ids: List[str] = Field(default_factory=list)


class ConnectRequest(BaseModel):
    source: str
    source_port: str
    target: str
    target_port: str


class SelectionRequest(BaseModel):
    node_ids: List[str] = Field(default_factory=list)
    edge_ids: List[str] = Field(default_factory=list)


class HistoryResponse(BaseModel):
    applied: bool
    can_undo: bool
    can_redo: bool


class WorkflowMetaRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class StartRunRequest(BaseModel):
    run_id: Optional[str] = None
    input: Optional[Any] = Field(None, description="Value handed to the start node")


class ApprovalRequestBody(BaseModel):
    action: ApprovalAction
    edited_data: Optional[Any] = None
    reason: Optional[str] = None


class CompleteNodeRequest(BaseModel):
    output: Optional[Any] = None
    active_port: Optional[str] = Field(None, description="Output port to activate; None activates all")


class FailNodeRequest(BaseModel):
    error: str = Field(..., min_length=1)


class StreamingChunkRequest(BaseModel):
    chunk: str


def _state(session: EditorSession) -> EditorStateResponse:
    editor = session.editor
    return EditorStateResponse(
        session_id=session.id,
        workflow_id=editor.workflow_id,
        name=editor.name,
        description=editor.description,
        nodes=editor.nodes,
        edges=editor.edges,
        selected_node_ids=editor.selected_node_ids,
        selected_edge_ids=editor.selected_edge_ids,
        can_undo=editor.can_undo(),
        can_redo=editor.can_redo(),
        is_dirty=editor.is_dirty,
        validation=editor.last_validation,
        run=editor.session,
    )


# Endpoints. All handlers are async so engine calls run on the event loop thread.

@router.get("/steps", summary="List the step palette")
async def list_steps() -> List[Dict[str, Any]]:
    return [
        {
            "category": group["category"].value,
            "label": group["label"],
            "steps": [step.model_dump(mode="json", exclude={"config_model"}) for step in group["steps"]],
        }
        for group in get_categorized_steps()
    ]


@router.post("/sessions", response_model=EditorStateResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: Optional[CreateSessionRequest] = None,
    sessions: SessionRegistry = Depends(get_sessions)
) -> EditorStateResponse:
    request = request or CreateSessionRequest()
    session = sessions.create(document=request.document, blank=request.blank)
    return _state(session)


@router.get("/sessions/{session_id}", response_model=EditorStateResponse)
async def get_session_state(session: EditorSession = Depends(get_session)) -> EditorStateResponse:
    return _state(session)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(session_id: str, sessions: SessionRegistry = Depends(get_sessions)) -> Response:
    if not sessions.remove(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "SessionNotFound", "message": f"Editor session '{session_id}' not found"}
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Graph editing

@router.post("/sessions/{session_id}/nodes", response_model=WorkflowNode, status_code=status.HTTP_201_CREATED)
async def add_node(request: AddNodeRequest, editor: WorkflowEditor = Depends(get_editor)) -> WorkflowNode:
    return editor.add_node(request.step_type, request.position, label=request.label, config=request.config)


@router.patch("/sessions/{session_id}/nodes/{node_id}", response_model=WorkflowNode)
async def update_node(
    node_id: str,
    request: UpdateNodeRequest,
    editor: WorkflowEditor = Depends(get_editor)
) -> WorkflowNode:
    node = editor.update_node(node_id, request.model_dump(exclude_none=True))
    if node is None:
        raise _node_not_found(node_id)
    return node


@router.delete("/sessions/{session_id}/nodes/{node_id}")
async def delete_node(node_id: str, editor: WorkflowEditor = Depends(get_editor)) -> Dict[str, List[str]]:
    removed = editor.delete_nodes([node_id])
    if not removed:
        raise _node_not_found(node_id)
    return {"deleted": removed}


@router.post("/sessions/{session_id}/nodes/delete")
async def delete_nodes(request: NodeIdsRequest, editor: WorkflowEditor = Depends(get_editor)) -> Dict[str, List[str]]:
    return {"deleted": editor.delete_nodes(request.node_ids)}


@router.post("/sessions/{session_id}/nodes/duplicate", response_model=List[WorkflowNode])
async def duplicate_nodes(request: NodeIdsRequest, editor: WorkflowEditor = Depends(get_editor)) -> List[WorkflowNode]:
    return editor.duplicate_nodes(request.node_ids)


@router.post("/sessions/{session_id}/edges", response_model=WorkflowEdge, status_code=status.HTTP_201_CREATED)
async def connect(request: ConnectRequest, editor: WorkflowEditor = Depends(get_editor)) -> WorkflowEdge:
    result = ensure_accepted(
        editor.connect(request.source, request.source_port, request.target, request.target_port),
        "connect", editor
    )
    return result.value


@router.delete("/sessions/{session_id}/edges/{edge_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(edge_id: str, editor: WorkflowEditor = Depends(get_editor)) -> Response:
    if not editor.disconnect(edge_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "EdgeNotFound", "message": f"Edge '{edge_id}' not found"}
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/sessions/{session_id}/selection")
async def set_selection(request: SelectionRequest, editor: WorkflowEditor = Depends(get_editor)) -> Dict[str, List[str]]:
    editor.set_selected_nodes(request.node_ids)
    editor.set_selected_edges(request.edge_ids)
    return {"node_ids": editor.selected_node_ids, "edge_ids": editor.selected_edge_ids}


@router.post("/sessions/{session_id}/clear", status_code=status.HTTP_204_NO_CONTENT)
async def clear_canvas(editor: WorkflowEditor = Depends(get_editor)) -> Response:
    editor.clear_canvas()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sessions/{session_id}/undo", response_model=HistoryResponse)
async def undo(editor: WorkflowEditor = Depends(get_editor)) -> HistoryResponse:
    applied = editor.undo()
    return HistoryResponse(applied=applied, can_undo=editor.can_undo(), can_redo=editor.can_redo())


@router.post("/sessions/{session_id}/redo", response_model=HistoryResponse)
async def redo(editor: WorkflowEditor = Depends(get_editor)) -> HistoryResponse:
    applied = editor.redo()
    return HistoryResponse(applied=applied, can_undo=editor.can_undo(), can_redo=editor.can_redo())


@router.post("/sessions/{session_id}/validate", response_model=ValidationReport)
async def validate(editor: WorkflowEditor = Depends(get_editor)) -> ValidationReport:
    return editor.validate()


# Documents

@router.get("/sessions/{session_id}/document")
async def export_document(editor: WorkflowEditor = Depends(get_editor)) -> Dict[str, Any]:
    return editor.export_document().to_dict()


@router.put("/sessions/{session_id}/document", response_model=EditorStateResponse)
async def import_document(
    document: Dict[str, Any],
    session: EditorSession = Depends(get_session)
) -> EditorStateResponse:
    ensure_accepted(session.editor.load_document(document), "load_document", session.editor)
    return _state(session)


@router.patch("/sessions/{session_id}/meta", response_model=EditorStateResponse)
async def set_workflow_meta(
    request: WorkflowMetaRequest,
    session: EditorSession = Depends(get_session)
) -> EditorStateResponse:
    session.editor.set_workflow_meta(request.name, request.description)
    return _state(session)


@router.post("/sessions/{session_id}/save")
async def save_document(
    editor: WorkflowEditor = Depends(get_editor),
    repository: DocumentRepository = Depends(get_repository)
) -> Dict[str, Any]:
    saved = repository.save(editor.export_document())
    editor.mark_saved(saved)
    return saved.to_dict()


@router.post("/sessions/{session_id}/load/{document_id}", response_model=EditorStateResponse)
async def load_saved_document(
    document_id: str,
    session: EditorSession = Depends(get_session),
    repository: DocumentRepository = Depends(get_repository)
) -> EditorStateResponse:
    document = repository.load(document_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "DocumentNotFound", "message": f"Workflow '{document_id}' not found"}
        )
    ensure_accepted(session.editor.load_document(document), "load_document", session.editor)
    return _state(session)


@router.get("/documents", response_model=List[DocumentSummary])
async def list_documents(repository: DocumentRepository = Depends(get_repository)) -> List[DocumentSummary]:
    return repository.list_documents()


@router.get("/documents/recent", response_model=List[DocumentSummary])
async def recent_documents(
    limit: Optional[int] = None,
    repository: DocumentRepository = Depends(get_repository)
) -> List[DocumentSummary]:
    default_limit = _config.recent_documents_limit if _config else 10
    return repository.recent(limit or default_limit)


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(document_id: str, repository: DocumentRepository = Depends(get_repository)) -> Response:
    if not repository.delete(document_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "DocumentNotFound", "message": f"Workflow '{document_id}' not found"}
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Execution

@router.post("/sessions/{session_id}/run", response_model=RunSession, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    request: Optional[StartRunRequest] = None,
    editor: WorkflowEditor = Depends(get_editor)
) -> RunSession:
    request = request or StartRunRequest()
    ensure_accepted(editor.start_run(run_id=request.run_id, run_input=request.input), "start_run", editor)
    return editor.session


@router.get("/sessions/{session_id}/run", response_model=RunSession)
async def get_run(editor: WorkflowEditor = Depends(get_editor)) -> RunSession:
    return editor.session


@router.post("/sessions/{session_id}/run/pause", response_model=RunSession)
async def pause_run(editor: WorkflowEditor = Depends(get_editor)) -> RunSession:
    ensure_accepted(editor.pause_run(), "pause_run", editor)
    return editor.session


@router.post("/sessions/{session_id}/run/resume", response_model=RunSession)
async def resume_run(editor: WorkflowEditor = Depends(get_editor)) -> RunSession:
    ensure_accepted(editor.resume_run(), "resume_run", editor)
    return editor.session


@router.post("/sessions/{session_id}/run/stop", response_model=RunSession)
async def stop_run(editor: WorkflowEditor = Depends(get_editor)) -> RunSession:
    ensure_accepted(editor.stop_run(), "stop_run", editor)
    return editor.session


@router.post("/sessions/{session_id}/run/reset", response_model=RunSession)
async def reset_execution(editor: WorkflowEditor = Depends(get_editor)) -> RunSession:
    ensure_accepted(editor.reset_execution(), "reset_execution", editor)
    return editor.session


@router.post("/sessions/{session_id}/approvals/{request_id}", response_model=RunSession)
async def respond_to_approval(
    request_id: str,
    body: ApprovalRequestBody,
    editor: WorkflowEditor = Depends(get_editor)
) -> RunSession:
    response = ApprovalResponse(
        request_id=request_id, action=body.action, edited_data=body.edited_data, reason=body.reason
    )
    ensure_accepted(editor.respond_to_approval(response), "respond_to_approval", editor)
    return editor.session


# Worker callbacks for step types handed to out-of-process executors

@router.post("/sessions/{session_id}/runs/{run_id}/nodes/{node_id}/complete", response_model=RunSession)
async def complete_node(
    run_id: str,
    node_id: str,
    body: CompleteNodeRequest,
    editor: WorkflowEditor = Depends(get_editor)
) -> RunSession:
    ensure_accepted(
        editor.execution.complete_node(run_id, node_id, body.output, body.active_port), "complete_node", editor
    )
    return editor.session


@router.post("/sessions/{session_id}/runs/{run_id}/nodes/{node_id}/fail", response_model=RunSession)
async def fail_node(
    run_id: str,
    node_id: str,
    body: FailNodeRequest,
    editor: WorkflowEditor = Depends(get_editor)
) -> RunSession:
    ensure_accepted(editor.execution.fail_node(run_id, node_id, body.error), "fail_node", editor)
    return editor.session


@router.post("/sessions/{session_id}/runs/{run_id}/nodes/{node_id}/output", status_code=status.HTTP_204_NO_CONTENT)
async def append_streaming_output(
    run_id: str,
    node_id: str,
    body: StreamingChunkRequest,
    editor: WorkflowEditor = Depends(get_editor)
) -> Response:
    ensure_accepted(
        editor.execution.append_streaming_output(run_id, node_id, body.chunk), "append_streaming_output", editor
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.websocket("/sessions/{session_id}/events")
async def session_events(websocket: WebSocket, session_id: str):
    """
    Stream run events of one editor session.

    The first message is ``{"type": "connection_established", ...}``; every
    following message is a serialized run event. The stream ends when the
    session is closed.
    """
    sessions = _sessions
    if sessions is None or sessions.get(session_id) is None:
        await websocket.close(code=1008, reason="Unknown editor session")
        return

    stream = sessions.event_stream
    connection = await stream.connect(websocket, session_id)
    # Client frames are read only to notice a disconnect between events
    receiver = asyncio.ensure_future(websocket.receive())
    sender: Optional[asyncio.Future] = None
    try:
        while True:
            sender = asyncio.ensure_future(stream.next_message(connection))
            done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                if receiver.result()["type"] == "websocket.disconnect":
                    logger.info(f"Event stream client disconnected: {connection.connection_id}")
                    break
                receiver = asyncio.ensure_future(websocket.receive())
            if sender not in done:
                sender.cancel()
                continue
            message = sender.result()
            if message is None:
                await websocket.close(code=1000)
                break
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.info(f"Event stream client disconnected: {connection.connection_id}")
    finally:
        for task in (receiver, sender):
            if task is not None and not task.done():
                task.cancel()
        stream.disconnect(connection.connection_id)


@router.get("/health")
async def health() -> Dict[str, Any]:
    sessions = get_sessions()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "sessions": len(sessions.list_ids()),
        "event_stream": sessions.event_stream.get_connection_info(),
        "storage": _repository is not None,
    }
