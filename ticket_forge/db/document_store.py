"""
Keyed document store over SQLAlchemy.

Supports read, conditional write (compare-and-set on ``version``) and delete by
key. No cross-document transactions are offered or needed: every writer
serializes on a single document.

Calls are synchronous and block the event loop while a session is open. The
workflow engine, drafts and bulk coordinator call the store from coroutines;
that is cheap against the in-process SQLite pool, but against a networked
database each call holds the loop for a round trip. Deployments that need a
responsive loop under Postgres should run those services on a loop of their
own, or wrap the store calls with ``asyncio.to_thread``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ..errors import ConcurrentModificationError
from .models import DocumentModel

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoredDocument:
    """A snapshot of one stored document."""

    collection: str
    key: str
    version: int
    data: Dict[str, Any]
    scope: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, model: DocumentModel) -> "StoredDocument":
        return cls(
            collection=model.collection,
            key=model.key,
            version=model.version,
            data=dict(model.data or {}),
            scope=model.scope,
            updated_at=model.updated_at,
        )


class DocumentStore:
    """Keyed document store with optimistic concurrency."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        """Read a document, or None when absent."""
        with self._session_factory() as db:
            model = db.get(DocumentModel, (collection, key))
            return StoredDocument.from_model(model) if model else None

    def put(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int] = None,
        scope: Optional[str] = None,
    ) -> StoredDocument:
        """Conditionally write a document.

        Args:
            collection: Document namespace
            key: Document key
            data: JSON-serializable payload
            expected_version: None to create (the key must not exist), otherwise
                the version the caller last read
            scope: Optional owner scope used by ``list``

        Returns:
            The stored document with its new version

        Raises:
            ConcurrentModificationError: If the key exists on create, or the
                stored version differs from ``expected_version``
        """
        with self._session_factory() as db:
            if expected_version is None:
                model = DocumentModel(
                    collection=collection, key=key, version=1, data=data, scope=scope
                )
                db.add(model)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise ConcurrentModificationError(
                        f"Document {collection}/{key} already exists"
                    )
                db.refresh(model)
                return StoredDocument.from_model(model)

            values: Dict[str, Any] = {"data": data, "version": expected_version + 1}
            if scope is not None:
                values["scope"] = scope
            result = db.execute(
                update(DocumentModel)
                .where(
                    DocumentModel.collection == collection,
                    DocumentModel.key == key,
                    DocumentModel.version == expected_version,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                logger.warning(
                    "document_version_conflict",
                    collection=collection,
                    key=key,
                    expected_version=expected_version,
                )
                raise ConcurrentModificationError(
                    f"Document {collection}/{key} was modified concurrently "
                    f"(expected version {expected_version})"
                )
            db.commit()
            model = db.get(DocumentModel, (collection, key))
            return StoredDocument.from_model(model)

    def upsert(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        scope: Optional[str] = None,
    ) -> StoredDocument:
        """Write a document unconditionally (last write wins)."""
        existing = self.get(collection, key)
        if existing is None:
            return self.put(collection, key, data, scope=scope)
        return self.put(
            collection, key, data, expected_version=existing.version, scope=scope
        )

    def delete(self, collection: str, key: str) -> bool:
        """Delete a document. Returns False when it did not exist."""
        with self._session_factory() as db:
            result = db.execute(
                delete(DocumentModel).where(
                    DocumentModel.collection == collection, DocumentModel.key == key
                )
            )
            db.commit()
            return result.rowcount > 0

    def list(
        self, collection: str, scope: Optional[str] = None
    ) -> List[StoredDocument]:
        """List documents in a collection, optionally restricted to a scope."""
        with self._session_factory() as db:
            query = select(DocumentModel).where(DocumentModel.collection == collection)
            if scope is not None:
                query = query.where(DocumentModel.scope == scope)
            models = db.execute(query.order_by(DocumentModel.key)).scalars().all()
            return [StoredDocument.from_model(model) for model in models]
