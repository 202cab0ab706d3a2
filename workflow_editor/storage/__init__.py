"""SQLAlchemy storage for workflow documents."""

from .database import Base, create_database_engine, create_tables, get_session_factory
from .models import WorkflowDocumentModel
from .document_repository import DocumentRepository, DocumentSummary

__all__ = [
    "Base",
    "create_database_engine",
    "create_tables",
    "get_session_factory",
    "WorkflowDocumentModel",
    "DocumentRepository",
    "DocumentSummary",
]
