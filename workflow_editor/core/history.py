"""Linear undo/redo over graph snapshots."""

import uuid
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..models.core import GraphSnapshot
from .graph_store import GraphStore
from .logging import get_logger

logger = get_logger(__name__)


class HistoryEntry(BaseModel):
    """A labelled graph snapshot on the undo or redo stack."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    description: str
    snapshot: GraphSnapshot


class HistoryManager:
    """
    Bounded past/future stacks of graph snapshots.

    Snapshots hold the store's immutable node/edge tuples directly, so pushing
    one costs a reference rather than a deep copy. Execution state and
    validation results are never part of a snapshot.
    """

    def __init__(self, store: GraphStore, max_history_size: int = 50):
        if max_history_size < 1:
            raise ValueError("max_history_size must be at least 1")
        self._store = store
        self._max_history_size = max_history_size
        self._past: List[HistoryEntry] = []
        self._future: List[HistoryEntry] = []
        store.add_listener(self._on_mutation)

    @property
    def max_history_size(self) -> int:
        return self._max_history_size

    @property
    def past(self) -> List[HistoryEntry]:
        return list(self._past)

    @property
    def future(self) -> List[HistoryEntry]:
        return list(self._future)

    def _on_mutation(self, previous: GraphSnapshot, description: str) -> None:
        self._push(previous, description)

    def _push(self, snapshot: GraphSnapshot, description: str) -> None:
        self._past.append(HistoryEntry(description=description, snapshot=snapshot))
        if len(self._past) > self._max_history_size:
            del self._past[: len(self._past) - self._max_history_size]
        self._future.clear()
        logger.debug(f"History push: {description} (depth={len(self._past)})")

    def checkpoint(self, description: str) -> None:
        """
        Record the current graph as an undo point.

        Callers use this to coalesce a burst of untracked changes, such as
        drag-frame position updates, into a single undo step: checkpoint at
        drag start, then move nodes with ``update_node_position``.
        """
        self._push(self._store.snapshot(), description)

    def can_undo(self) -> bool:
        return bool(self._past)

    def can_redo(self) -> bool:
        return bool(self._future)

    @property
    def undo_description(self) -> Optional[str]:
        return self._past[-1].description if self._past else None

    @property
    def redo_description(self) -> Optional[str]:
        return self._future[0].description if self._future else None

    def undo(self) -> bool:
        """Step back one snapshot. Returns False when there is nothing to undo."""
        if not self._past:
            return False

        entry = self._past.pop()
        self._future.insert(0, HistoryEntry(description=entry.description, snapshot=self._store.snapshot()))
        del self._future[self._max_history_size:]
        self._store.restore(entry.snapshot)
        logger.debug(f"Undo: {entry.description}")
        return True

    def redo(self) -> bool:
        """Step forward one snapshot. Returns False past the newest snapshot."""
        if not self._future:
            return False

        entry = self._future.pop(0)
        self._past.append(HistoryEntry(description=entry.description, snapshot=self._store.snapshot()))
        del self._past[: max(0, len(self._past) - self._max_history_size)]
        self._store.restore(entry.snapshot)
        logger.debug(f"Redo: {entry.description}")
        return True

    def clear(self) -> None:
        self._past.clear()
        self._future.clear()
