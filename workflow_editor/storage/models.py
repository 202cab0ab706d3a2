"""SQLAlchemy database models for saved workflows."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer
from .database import Base


class WorkflowDocumentModel(Base):
    """Database model for saved workflow documents."""
    __tablename__ = "workflow_documents"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    nodes = Column(JSON, nullable=False)  # Interchange-format node list
    edges = Column(JSON, nullable=False)  # Interchange-format edge list
    tags = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True)
