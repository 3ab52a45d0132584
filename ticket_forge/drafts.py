"""
Breakdown drafts.

A breakdown draft caches the expensive analysis of a large requirements
document (epics and stories) so a user can resume it. Drafts are advisory:
store failures are logged and reported as cache misses, never raised.

A draft is deleted when tickets are created from its selected stories
(``BreakdownTicketCreator``) or when it expires.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

import pydantic
import structlog
from pydantic import BaseModel, Field, model_validator

from .db.document_store import DocumentStore
from .errors import NotFoundError, ValidationError, error_message
from .tickets import Ticket, TicketRepository
from .workflow.models import OwnerScope

logger = structlog.get_logger()

DRAFT_COLLECTION = "breakdown_drafts"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BDDCriterion(BaseModel):
    given: str
    when: str
    then: str


class Story(BaseModel):
    """A ticket draft inside an epic."""

    id: int
    epic_index: int
    story_index: int
    title: str = Field(..., min_length=1)
    description: str = ""
    type: Literal["feature", "bug", "task"] = "feature"
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    acceptance_criteria: List[BDDCriterion] = Field(default_factory=list)
    functional_requirements: List[str] = Field(default_factory=list)
    blocked_by: List[int] = Field(
        default_factory=list, description="Ids of stories that must land first"
    )
    technical_notes: Optional[str] = None
    is_selected: bool = True


class Epic(BaseModel):
    index: int
    name: str = Field(..., min_length=1)
    goal: str = ""
    stories: List[Story] = Field(default_factory=list)
    functional_requirements: List[str] = Field(default_factory=list)


class Breakdown(BaseModel):
    """Epics and stories extracted from a requirements document."""

    epics: List[Epic] = Field(default_factory=list)
    fr_inventory: List[str] = Field(default_factory=list)
    fr_coverage: float = Field(default=0.0, ge=0.0, le=1.0)
    analysis_time_ms: float = 0.0

    @model_validator(mode="after")
    def _check_story_references(self) -> "Breakdown":
        stories = self.stories
        ids = [story.id for story in stories]
        if len(set(ids)) != len(ids):
            raise ValueError("story ids must be unique across the breakdown")
        known = set(ids)
        for story in stories:
            for ref in story.blocked_by:
                if ref == story.id:
                    raise ValueError(f"story {story.id} cannot block itself")
                if ref not in known:
                    raise ValueError(f"story {story.id} is blocked by unknown story {ref}")
        return self

    @property
    def stories(self) -> List[Story]:
        return [story for epic in self.epics for story in epic.stories]

    @property
    def total_tickets(self) -> int:
        return len(self.stories)


class BreakdownDraft(BaseModel):
    """Resumable snapshot of a breakdown session for one (workspace, user)."""

    id: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    prd_text: str
    project_name: Optional[str] = None
    breakdown: Breakdown
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    @property
    def scope(self) -> str:
        return f"{self.workspace_id}:{self.user_id}"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or _utcnow())


class DraftRepository(ABC):
    """Persistence contract for breakdown drafts."""

    @abstractmethod
    def save_draft(self, draft: BreakdownDraft, now: Optional[datetime] = None) -> Optional[BreakdownDraft]:
        """Create or update a draft. Returns None if it could not be stored."""

    @abstractmethod
    def get_latest(self, workspace_id: str, user_id: str, now: Optional[datetime] = None) -> Optional[BreakdownDraft]:
        """Most recently updated live draft for the scope."""

    @abstractmethod
    def get_by_id(self, draft_id: str, workspace_id: str, user_id: str) -> Optional[BreakdownDraft]:
        """A live draft by id, if it belongs to the scope."""

    @abstractmethod
    def delete(self, draft_id: str, workspace_id: str, user_id: str) -> bool:
        """Delete a draft. Returns False if nothing was deleted."""

    @abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every expired draft and return how many were removed."""


class DocumentDraftRepository(DraftRepository):
    """Draft repository over the document store."""

    def __init__(self, store: DocumentStore, ttl_hours: Optional[int] = None):
        if ttl_hours is None:
            from ticket_forge.config import settings

            ttl_hours = settings.draft_ttl_hours
        self.store = store
        self.ttl = timedelta(hours=ttl_hours) if ttl_hours else None

    def save_draft(self, draft: BreakdownDraft, now: Optional[datetime] = None) -> Optional[BreakdownDraft]:
        now = now or _utcnow()
        try:
            existing = self.store.get(DRAFT_COLLECTION, draft.id)
            created_at = draft.created_at
            if existing is not None:
                if existing.scope != draft.scope:
                    logger.warning("draft_scope_mismatch", draft_id=draft.id)
                    return None
                previous = self._parse(existing.data)
                if previous is not None:
                    created_at = previous.created_at
            stored = draft.model_copy(
                update={
                    "created_at": created_at,
                    "updated_at": now,
                    "expires_at": now + self.ttl if self.ttl else None,
                }
            )
            self.store.upsert(
                DRAFT_COLLECTION, stored.id, stored.model_dump(mode="json"), scope=stored.scope
            )
        except Exception as e:
            logger.warning("draft_save_failed", draft_id=draft.id, error=str(e))
            return None
        logger.info("draft_saved", draft_id=stored.id, stories=stored.breakdown.total_tickets)
        return stored

    def get_latest(self, workspace_id: str, user_id: str, now: Optional[datetime] = None) -> Optional[BreakdownDraft]:
        now = now or _utcnow()
        try:
            docs = self.store.list(DRAFT_COLLECTION, scope=f"{workspace_id}:{user_id}")
        except Exception as e:
            logger.warning("draft_lookup_failed", workspace_id=workspace_id, error=str(e))
            return None
        drafts = [d for d in (self._parse(doc.data) for doc in docs) if d and not d.is_expired(now)]
        if not drafts:
            return None
        return max(drafts, key=lambda d: d.updated_at)

    def get_by_id(self, draft_id: str, workspace_id: str, user_id: str) -> Optional[BreakdownDraft]:
        try:
            doc = self.store.get(DRAFT_COLLECTION, draft_id)
        except Exception as e:
            logger.warning("draft_lookup_failed", draft_id=draft_id, error=str(e))
            return None
        if doc is None or doc.scope != f"{workspace_id}:{user_id}":
            return None
        draft = self._parse(doc.data)
        if draft is None or draft.is_expired():
            return None
        return draft

    def delete(self, draft_id: str, workspace_id: str, user_id: str) -> bool:
        try:
            doc = self.store.get(DRAFT_COLLECTION, draft_id)
            if doc is None or doc.scope != f"{workspace_id}:{user_id}":
                return False
            return self.store.delete(DRAFT_COLLECTION, draft_id)
        except Exception as e:
            logger.warning("draft_delete_failed", draft_id=draft_id, error=str(e))
            return False

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        removed = 0
        try:
            for doc in self.store.list(DRAFT_COLLECTION):
                draft = self._parse(doc.data)
                # Unreadable drafts are as good as expired
                if draft is None or draft.is_expired(now):
                    removed += 1 if self.store.delete(DRAFT_COLLECTION, doc.key) else 0
        except Exception as e:
            logger.warning("draft_purge_failed", error=str(e))
        if removed:
            logger.info("drafts_purged", count=removed)
        return removed

    @staticmethod
    def _parse(data: dict) -> Optional[BreakdownDraft]:
        try:
            return BreakdownDraft.model_validate(data)
        except pydantic.ValidationError as e:
            logger.warning("draft_unreadable", draft_id=data.get("id"), error=str(e))
            return None


MAX_TICKETS_PER_BREAKDOWN = 100


class StoryError(BaseModel):
    story_id: int
    title: str
    error: str


class BreakdownCreateResult(BaseModel):
    """Outcome of turning a draft's selected stories into tickets."""

    ticket_ids: List[str] = Field(default_factory=list)
    errors: List[StoryError] = Field(default_factory=list)
    draft_deleted: bool = False

    @property
    def created_count(self) -> int:
        return len(self.ticket_ids)


class BreakdownTicketCreator:
    """Creates tickets from the selected stories of a breakdown draft.

    Creation is best-effort per story: a story that cannot be saved is
    reported in ``errors`` and the rest are still created. The draft is
    deleted once at least one ticket exists, so the user is not offered a
    breakdown that has already been turned into work.
    """

    def __init__(
        self,
        drafts: DraftRepository,
        tickets: TicketRepository,
        max_tickets: int = MAX_TICKETS_PER_BREAKDOWN,
    ):
        self.drafts = drafts
        self.tickets = tickets
        self.max_tickets = max_tickets

    def create_from_breakdown(self, draft_id: str, owner: OwnerScope) -> BreakdownCreateResult:
        """
        Args:
            draft_id: Draft to create tickets from
            owner: Scope the draft belongs to; tickets land in its workspace

        Raises:
            NotFoundError: If the draft is missing, expired or not the owner's
            ValidationError: If no story is selected or too many are
        """
        draft = self.drafts.get_by_id(draft_id, owner.workspace_id, owner.user_id)
        if draft is None:
            raise NotFoundError(f"Draft {draft_id} not found")

        epics = {epic.index: epic for epic in draft.breakdown.epics}
        selected = [story for story in draft.breakdown.stories if story.is_selected]
        if not selected:
            raise ValidationError("No stories selected for ticket creation")
        if len(selected) > self.max_tickets:
            raise ValidationError(
                f"Bulk creation limit is {self.max_tickets} tickets; "
                f"{len(selected)} stories are selected"
            )

        log = logger.bind(draft_id=draft_id, workspace_id=owner.workspace_id)
        log.info("breakdown_ticket_creation_started", stories=len(selected))

        result = BreakdownCreateResult()
        for story in selected:
            try:
                ticket = self.tickets.save(
                    Ticket(
                        id=str(uuid.uuid4()),
                        workspace_id=owner.workspace_id,
                        title=story.title,
                        description=_story_description(story, epics.get(story.epic_index)),
                    )
                )
            except Exception as e:
                result.errors.append(
                    StoryError(story_id=story.id, title=story.title, error=error_message(e))
                )
                log.warning("breakdown_story_failed", story_id=story.id, error=error_message(e))
                continue
            result.ticket_ids.append(ticket.id)

        if result.ticket_ids:
            result.draft_deleted = self.drafts.delete(draft_id, owner.workspace_id, owner.user_id)

        log.info(
            "breakdown_ticket_creation_completed",
            created=result.created_count,
            failed=len(result.errors),
            draft_deleted=result.draft_deleted,
        )
        return result


def _story_description(story: Story, epic: Optional[Epic]) -> str:
    lines = []
    if epic is not None:
        lines += [f"Epic: {epic.name}", ""]
    if story.description:
        lines.append(story.description)
    if story.acceptance_criteria:
        lines += ["", "Acceptance criteria:"]
        lines += [
            f"- Given {c.given}, when {c.when}, then {c.then}" for c in story.acceptance_criteria
        ]
    return "\n".join(lines).strip()
