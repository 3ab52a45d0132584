"""Ticket records read by the workflow engine."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .db.document_store import DocumentStore
from .errors import NotFoundError

TICKET_COLLECTION = "tickets"


class RepositoryRef(BaseModel):
    """Repository a ticket is scoped to."""

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    branch: str = "main"


class Ticket(BaseModel):
    """The short user intent a workflow instance expands."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, description="One-line user intent")
    description: str = Field(default="", description="Optional longer intent")
    repository: Optional[RepositoryRef] = None

    @property
    def intent(self) -> str:
        return f"{self.title}\n{self.description}".strip()


class TicketRepository:
    """Ticket persistence over the document store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def save(self, ticket: Ticket) -> Ticket:
        self.store.upsert(
            TICKET_COLLECTION,
            ticket.id,
            ticket.model_dump(mode="json"),
            scope=ticket.workspace_id,
        )
        return ticket

    def get(self, ticket_id: str, workspace_id: str) -> Ticket:
        """Load a ticket visible to ``workspace_id`` or raise NotFoundError."""
        doc = self.store.get(TICKET_COLLECTION, ticket_id)
        if doc is None or doc.data.get("workspace_id") != workspace_id:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return Ticket.model_validate(doc.data)
