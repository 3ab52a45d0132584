"""
SQLAlchemy models for Ticket Forge.

All core entities (workflow instances, tickets, breakdown drafts) live in a
single keyed document table. Each row carries a ``version`` used for
optimistic compare-and-set writes.
"""

from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from .base import Base


class DocumentModel(Base):
    """SQLAlchemy model for keyed documents."""

    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True)
    key = Column(String(128), primary_key=True)
    version = Column(Integer, nullable=False, default=1)
    data = Column(JSON, nullable=False, default=dict)

    # Owner scope ("workspace_id:user_id") for scoped listing
    scope = Column(String(256), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_documents_collection_scope", "collection", "scope"),)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "collection": self.collection,
            "key": self.key,
            "version": self.version,
            "scope": self.scope,
            "data": self.data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
