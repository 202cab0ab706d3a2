"""Persistence of workflow documents."""

import uuid
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.error_recovery import RetryConfig, is_transient, with_retry
from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import DocumentMetadata, WorkflowDocument
from .models import WorkflowDocumentModel

logger = get_logger(__name__)

STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.05, max_delay=0.5)


class DocumentSummary(BaseModel):
    """Listing entry for a saved workflow."""
    id: str
    name: str
    description: str = ""
    version: int
    node_count: int
    updated_at: Optional[datetime] = None


class DocumentRepository:
    """Saves and loads workflow documents through SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        return self._session_factory()

    def _storage_error(self, operation: str, error: Exception, document_id: Optional[str] = None) -> StorageError:
        return StorageError(
            f"Failed to {operation} workflow document: {error}",
            operation=operation,
            document_id=document_id,
            recoverable=is_transient(error),
        )

    @with_retry(STORAGE_RETRY)
    def save(self, document: WorkflowDocument) -> WorkflowDocument:
        """
        Insert or update a document.

        A document without an id gets a new one. Updating an existing
        document bumps its version. Returns the stored document.
        """
        session = self._get_session()
        try:
            now = datetime.utcnow()
            model = session.get(WorkflowDocumentModel, document.id) if document.id else None
            nodes = [node.model_dump(mode="json", by_alias=True) for node in document.nodes]
            edges = [edge.model_dump(mode="json", by_alias=True) for edge in document.edges]

            if model is None:
                model = WorkflowDocumentModel(
                    id=document.id or str(uuid.uuid4()),
                    version=max(document.version, 1),
                    created_at=document.metadata.created_at or now,
                )
                session.add(model)
            else:
                model.version = model.version + 1

            model.name = document.name
            model.description = document.description
            model.nodes = nodes
            model.edges = edges
            model.tags = list(document.metadata.tags)
            model.updated_at = now
            session.commit()

            saved = self._to_document(model)
            logger.info(f"Saved workflow '{saved.name}' (id={saved.id}, version={saved.version})")
            return saved

        except SQLAlchemyError as e:
            session.rollback()
            raise self._storage_error("save", e, document.id)
        finally:
            session.close()

    @with_retry(STORAGE_RETRY)
    def load(self, document_id: str) -> Optional[WorkflowDocument]:
        """Load a document by id, or None when it does not exist."""
        session = self._get_session()
        try:
            model = session.get(WorkflowDocumentModel, document_id)
            if model is None:
                return None
            document = self._to_document(model)
            logger.info(f"Loaded workflow '{document.name}' (id={document_id})")
            return document
        except SQLAlchemyError as e:
            raise self._storage_error("load", e, document_id)
        finally:
            session.close()

    @with_retry(STORAGE_RETRY)
    def list_documents(self) -> List[DocumentSummary]:
        """All saved documents ordered by name."""
        session = self._get_session()
        try:
            models = session.query(WorkflowDocumentModel).order_by(WorkflowDocumentModel.name).all()
            return [self._to_summary(model) for model in models]
        except SQLAlchemyError as e:
            raise self._storage_error("list", e)
        finally:
            session.close()

    @with_retry(STORAGE_RETRY)
    def recent(self, limit: int = 10) -> List[DocumentSummary]:
        """Most recently updated documents first."""
        session = self._get_session()
        try:
            models = (
                session.query(WorkflowDocumentModel)
                .order_by(WorkflowDocumentModel.updated_at.desc())
                .limit(limit)
                .all()
            )
            return [self._to_summary(model) for model in models]
        except SQLAlchemyError as e:
            raise self._storage_error("list", e)
        finally:
            session.close()

    @with_retry(STORAGE_RETRY)
    def delete(self, document_id: str) -> bool:
        """Delete a document. Returns False when it does not exist."""
        session = self._get_session()
        try:
            model = session.get(WorkflowDocumentModel, document_id)
            if model is None:
                return False
            session.delete(model)
            session.commit()
            logger.info(f"Deleted workflow {document_id}")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise self._storage_error("delete", e, document_id)
        finally:
            session.close()

    @staticmethod
    def _to_document(model: WorkflowDocumentModel) -> WorkflowDocument:
        return WorkflowDocument.from_dict({
            "id": model.id,
            "name": model.name,
            "description": model.description or "",
            "version": model.version,
            "nodes": model.nodes or [],
            "edges": model.edges or [],
            "metadata": DocumentMetadata(
                created_at=model.created_at,
                updated_at=model.updated_at,
                tags=model.tags or [],
            ).model_dump(by_alias=True),
        })

    @staticmethod
    def _to_summary(model: WorkflowDocumentModel) -> DocumentSummary:
        return DocumentSummary(
            id=model.id,
            name=model.name,
            description=model.description or "",
            version=model.version,
            node_count=len(model.nodes or []),
            updated_at=model.updated_at,
        )
