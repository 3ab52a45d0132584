"""
Database package for Ticket Forge.
"""

from .base import Base, get_db, get_engine, get_session_local, init_database
from .document_store import DocumentStore, StoredDocument
from .models import DocumentModel

__all__ = [
    "Base",
    "DocumentModel",
    "DocumentStore",
    "StoredDocument",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
]
