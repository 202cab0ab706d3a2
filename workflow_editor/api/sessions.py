"""Registry of open editor sessions served over HTTP."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..config import EditorConfig
from ..core.editor import WorkflowEditor
from ..core.executor_registry import ExecutorRegistry
from ..core.logging import get_logger
from ..models.core import RunEvent
from .event_stream import EventStreamManager

logger = get_logger(__name__)


class EditorSession:
    """One open document and its engine instance."""

    def __init__(self, session_id: str, editor: WorkflowEditor):
        self.id = session_id
        self.editor = editor
        self.created_at = datetime.utcnow()


class SessionRegistry:
    """Creates, looks up and closes editor sessions. Each session gets its own engine."""

    def __init__(
        self,
        config: EditorConfig,
        executors: Optional[ExecutorRegistry] = None,
        event_stream: Optional[EventStreamManager] = None,
    ):
        self.config = config
        self.executors = executors or ExecutorRegistry()
        self.event_stream = event_stream or EventStreamManager()
        self._sessions: Dict[str, EditorSession] = {}

    def create(self, document: Optional[Mapping[str, Any]] = None, blank: bool = False) -> EditorSession:
        """
        Open a session with a new workflow, an empty canvas or an imported document.

        Raises:
            DocumentFormatError: If ``document`` is not a valid workflow document
        """
        editor = WorkflowEditor.from_config(self.config, executors=self.executors)
        if document is not None:
            editor.load_document(document)
        elif not blank:
            editor.new_workflow()

        session = EditorSession(uuid.uuid4().hex, editor)

        def forward(event: RunEvent, session_id: str = session.id) -> None:
            self.event_stream.publish(session_id, event)

        editor.execution.subscribe(forward)
        self._sessions[session.id] = session
        logger.info(f"Opened editor session {session.id}")
        return session

    def get(self, session_id: str) -> Optional[EditorSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session.editor.execution.is_active:
            session.editor.stop_run()
        self.event_stream.close_session(session_id)
        logger.info(f"Closed editor session {session_id}")
        return True

    def list_ids(self) -> List[str]:
        return list(self._sessions)

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.remove(session_id)
