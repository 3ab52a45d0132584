"""
Bulk enrichment coordinator.

Runs the front half of the pipeline (context, analysis, question generation)
for many tickets on a bounded pool of asyncio workers, so their questions can
be answered together. A structurally identical second fan-out finalizes the
tickets once answers are in.

A failing ticket never cancels or blocks its siblings: its error is captured
per ticket id and the pool keeps draining. The batch only fails as a whole
when no ticket succeeds.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFoundError, ValidationError, error_message
from .workflow.engine import WorkflowEngine
from .workflow.models import InstanceSnapshot, InstanceStatus, OwnerScope, StepStatus, utcnow

logger = structlog.get_logger()

# Enrichment stops once this step is next
ENRICHMENT_STOP_STEP = "synthesize"


class BulkPhase(str, Enum):
    """Aggregate phase of a bulk batch."""

    ENRICHING = "enriching"
    ANSWERING = "answering"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"


class TicketPhase(str, Enum):
    """Per-ticket phase reported in progress events."""

    CONTEXT = "context"
    DEEP_ANALYSIS = "deep_analysis"
    QUESTION_GENERATION = "question_generation"
    GENERATING_SPEC = "generating_spec"
    VALIDATING = "validating"
    COMPLETE = "complete"
    ERROR = "error"


STEP_PHASES = {
    "gather_context": TicketPhase.CONTEXT,
    "analyze": TicketPhase.DEEP_ANALYSIS,
    "clarify": TicketPhase.QUESTION_GENERATION,
    "synthesize": TicketPhase.GENERATING_SPEC,
    "finalize": TicketPhase.VALIDATING,
}


class ProgressEvent(BaseModel):
    """One progress report for one ticket in a batch."""

    model_config = ConfigDict(frozen=True)

    type: Literal["progress", "complete", "error"] = "progress"
    task_id: str
    ticket_id: str
    worker_id: str
    phase: TicketPhase
    status: Literal["started", "in_progress", "completed", "failed"]
    message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class Outcome(BaseModel):
    """Result for one ticket in a batch."""

    ticket_id: str
    status: Literal["enriched", "finalized", "failed"]
    instance_id: Optional[str] = None
    question_count: int = 0
    quality_score: Optional[float] = None
    error: Optional[str] = None


class BulkResult(BaseModel):
    """Aggregate result of a bulk fan-out."""

    phase: BulkPhase
    results: Dict[str, Outcome] = Field(default_factory=dict)
    enriched_count: int = 0
    finalized_count: int = 0
    failed_count: int = 0

    @property
    def errors(self) -> Dict[str, str]:
        return {
            ticket_id: outcome.error or ""
            for ticket_id, outcome in self.results.items()
            if outcome.status == "failed"
        }


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class _TaskContext:
    task_id: str
    ticket_id: str
    worker_id: str
    callback: Optional[ProgressCallback]

    def emit(self, phase: TicketPhase, status: str, message: str = "", **metadata: Any) -> None:
        if status == "failed":
            event_type = "error"
        elif phase == TicketPhase.COMPLETE:
            event_type = "complete"
        else:
            event_type = "progress"
        event = ProgressEvent(
            type=event_type,
            task_id=self.task_id,
            ticket_id=self.ticket_id,
            worker_id=self.worker_id,
            phase=phase,
            status=status,
            message=message,
            metadata=metadata,
        )
        if self.callback is None:
            return
        try:
            self.callback(event)
        except Exception:
            logger.exception("progress_callback_failed", ticket_id=self.ticket_id)


@dataclass
class BulkSession:
    """A background enrichment batch that callers poll."""

    id: str
    owner: OwnerScope
    ticket_ids: List[str]
    phase: BulkPhase = BulkPhase.ENRICHING
    progress: Dict[str, ProgressEvent] = field(default_factory=dict)
    result: Optional[BulkResult] = None
    task: Optional[asyncio.Task] = None
    finished_at: Optional[datetime] = None

    def record(self, event: ProgressEvent) -> None:
        self.progress[event.ticket_id] = event


class BulkSessionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    phase: BulkPhase
    ticket_ids: List[str]
    progress: Dict[str, ProgressEvent]
    result: Optional[BulkResult] = None


class BulkEnrichmentCoordinator:
    """Fans workflow instances out over a bounded worker pool."""

    def __init__(
        self,
        engine: WorkflowEngine,
        pool_size: Optional[int] = None,
        step_deadline: Optional[float] = None,
        session_retention: Optional[float] = None,
    ):
        from ticket_forge.config import settings

        self.engine = engine
        self.pool_size = pool_size or settings.bulk_worker_pool_size
        self.step_deadline = step_deadline or settings.step_timeout_seconds
        if session_retention is None:
            session_retention = settings.bulk_session_retention_seconds
        # Finished sessions stay pollable this long
        self.session_retention = timedelta(seconds=session_retention)
        if self.pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self._sessions: Dict[str, BulkSession] = {}

    async def run(
        self,
        ticket_ids: Sequence[str],
        owner: OwnerScope,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        """Enrich tickets up to their question rounds.

        Returns:
            BulkResult with phase ``answering`` if at least one ticket was
            enriched, ``error`` otherwise
        """
        ticket_ids = self._check_ticket_ids(ticket_ids)
        log = logger.bind(workspace_id=owner.workspace_id, batch_size=len(ticket_ids))
        log.info("bulk_enrichment_start", pool_size=self.pool_size)

        outcomes = await self._fan_out(
            ticket_ids,
            lambda ctx: self._enrich_one(ctx, owner),
            on_progress,
        )
        enriched = sum(1 for o in outcomes.values() if o.status == "enriched")
        result = BulkResult(
            phase=BulkPhase.ANSWERING if enriched else BulkPhase.ERROR,
            results=outcomes,
            enriched_count=enriched,
            failed_count=len(outcomes) - enriched,
        )
        log.info(
            "bulk_enrichment_done",
            enriched=result.enriched_count,
            failed=result.failed_count,
            phase=result.phase.value,
        )
        return result

    async def finalize(
        self,
        answers_by_ticket: Mapping[str, Mapping[str, Any]],
        owner: OwnerScope,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkResult:
        """Answer and finalize previously enriched tickets.

        Args:
            answers_by_ticket: Ticket id to answers keyed by question id. A
                ticket whose answers do not cover a round's required questions
                has that round skipped with default answers.
            owner: Authenticated caller scope
            on_progress: Optional progress callback
        """
        if not answers_by_ticket:
            raise ValidationError("No answers provided for finalization")
        ticket_ids = self._check_ticket_ids(list(answers_by_ticket))
        log = logger.bind(workspace_id=owner.workspace_id, batch_size=len(ticket_ids))
        log.info("bulk_finalize_start", pool_size=self.pool_size)

        outcomes = await self._fan_out(
            ticket_ids,
            lambda ctx: self._finalize_one(ctx, owner, answers_by_ticket[ctx.ticket_id]),
            on_progress,
        )
        finalized = sum(1 for o in outcomes.values() if o.status == "finalized")
        result = BulkResult(
            phase=BulkPhase.COMPLETE if finalized else BulkPhase.ERROR,
            results=outcomes,
            finalized_count=finalized,
            failed_count=len(outcomes) - finalized,
        )
        log.info(
            "bulk_finalize_done",
            finalized=result.finalized_count,
            failed=result.failed_count,
            phase=result.phase.value,
        )
        return result

    def start(self, ticket_ids: Sequence[str], owner: OwnerScope) -> str:
        """Start enrichment in the background and return a session id to poll."""
        self.evict_finished()
        ticket_ids = self._check_ticket_ids(ticket_ids)
        session = BulkSession(id=str(uuid.uuid4()), owner=owner, ticket_ids=ticket_ids)
        self._sessions[session.id] = session

        async def _run() -> None:
            result = await self.run(ticket_ids, owner, on_progress=session.record)
            session.result = result
            session.phase = result.phase

        session.task = asyncio.create_task(_run())
        session.task.add_done_callback(lambda task: self._on_session_done(session, task))
        return session.id

    def poll(self, session_id: str, owner: OwnerScope) -> BulkSessionSnapshot:
        self.evict_finished()
        session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            raise NotFoundError(f"Bulk session {session_id} not found")
        return BulkSessionSnapshot(
            session_id=session.id,
            phase=session.phase,
            ticket_ids=list(session.ticket_ids),
            progress=dict(session.progress),
            result=session.result,
        )

    def evict_finished(self, now: Optional[datetime] = None) -> int:
        """Drop sessions that finished longer ago than the retention period.

        Running sessions are never evicted. Returns the number removed.
        """
        now = now or utcnow()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.finished_at is not None
            and session.finished_at + self.session_retention <= now
        ]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info("bulk_sessions_evicted", count=len(expired))
        return len(expired)

    # Internals

    @staticmethod
    def _check_ticket_ids(ticket_ids: Sequence[str]) -> List[str]:
        ids = list(ticket_ids)
        if not ids:
            raise ValidationError("At least one ticket id is required")
        if any(not isinstance(t, str) or not t.strip() for t in ids):
            raise ValidationError("Ticket ids must be non-empty strings")
        if len(set(ids)) != len(ids):
            raise ValidationError("Ticket ids must be unique")
        return ids

    def _on_session_done(self, session: BulkSession, task: asyncio.Task) -> None:
        session.finished_at = utcnow()
        if task.cancelled():
            session.phase = BulkPhase.ERROR
            return
        exc = task.exception()
        if exc is not None:
            logger.error("bulk_session_failed", session_id=session.id, error=str(exc))
            session.phase = BulkPhase.ERROR

    async def _fan_out(
        self,
        ticket_ids: List[str],
        work: Callable[[_TaskContext], Awaitable[Outcome]],
        on_progress: Optional[ProgressCallback],
    ) -> Dict[str, Outcome]:
        queue: asyncio.Queue = asyncio.Queue()
        for ticket_id in ticket_ids:
            queue.put_nowait(ticket_id)
        outcomes: Dict[str, Outcome] = {}

        async def worker(worker_id: str) -> None:
            worker_log = logger.bind(worker_id=worker_id)
            while True:
                try:
                    ticket_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                ctx = _TaskContext(
                    task_id=str(uuid.uuid4()),
                    ticket_id=ticket_id,
                    worker_id=worker_id,
                    callback=on_progress,
                )
                try:
                    outcomes[ticket_id] = await work(ctx)
                except Exception as e:
                    # Isolate the failure to this ticket
                    message = error_message(e)
                    worker_log.warning("bulk_ticket_failed", ticket_id=ticket_id, error=message)
                    outcomes[ticket_id] = Outcome(
                        ticket_id=ticket_id, status="failed", error=message
                    )
                    ctx.emit(TicketPhase.ERROR, "failed", message, error=message)
                finally:
                    queue.task_done()

        workers = [
            asyncio.create_task(worker(f"worker-{index + 1}"))
            for index in range(min(self.pool_size, len(ticket_ids)))
        ]
        await asyncio.gather(*workers)
        # Keep the caller's ordering
        return {ticket_id: outcomes[ticket_id] for ticket_id in ticket_ids}

    async def _drive(
        self,
        ctx: _TaskContext,
        owner: OwnerScope,
        snapshot: InstanceSnapshot,
        stop_before: Optional[str] = None,
    ) -> InstanceSnapshot:
        """Advance one instance step by step, reporting progress per step."""
        while snapshot.status == InstanceStatus.PENDING:
            step = snapshot.active_step
            if stop_before is not None and step.key == stop_before:
                break
            phase = STEP_PHASES.get(step.key, TicketPhase.DEEP_ANALYSIS)
            ctx.emit(phase, "in_progress", step.title, current_step=step.id)
            snapshot = await self.engine.advance(
                snapshot.instance_id, owner, deadline=self.step_deadline
            )
            after = snapshot.steps[step.id - 1]
            if after.status == StepStatus.FAILED:
                break
            ctx.emit(phase, "completed", after.details or step.title, current_step=step.id)
        return snapshot

    def _failure(self, ctx: _TaskContext, snapshot: InstanceSnapshot) -> Outcome:
        failed = snapshot.failed_step
        if failed is not None:
            message = failed.error or f"{failed.title} failed"
        else:
            message = f"Workflow is {snapshot.status.value}"
        ctx.emit(TicketPhase.ERROR, "failed", message, error=message)
        return Outcome(
            ticket_id=ctx.ticket_id,
            status="failed",
            instance_id=snapshot.instance_id,
            error=message,
        )

    async def _enrich_one(self, ctx: _TaskContext, owner: OwnerScope) -> Outcome:
        instance_id = await self.engine.start(ctx.ticket_id, owner)
        ctx.emit(TicketPhase.CONTEXT, "started", "Starting enrichment", instance_id=instance_id)

        snapshot = await self._drive(
            ctx, owner, self.engine.get_snapshot(instance_id, owner), ENRICHMENT_STOP_STEP
        )
        if snapshot.status not in (InstanceStatus.SUSPENDED, InstanceStatus.PENDING):
            return self._failure(ctx, snapshot)

        open_round = snapshot.open_round
        question_count = len(open_round.questions) if open_round else 0
        ctx.emit(
            TicketPhase.COMPLETE,
            "completed",
            f"Ready for answers ({question_count} questions)",
            question_count=question_count,
        )
        return Outcome(
            ticket_id=ctx.ticket_id,
            status="enriched",
            instance_id=instance_id,
            question_count=question_count,
        )

    async def _finalize_one(
        self, ctx: _TaskContext, owner: OwnerScope, answers: Mapping[str, Any]
    ) -> Outcome:
        snapshot = self.engine.latest_for_ticket(ctx.ticket_id, owner)
        instance_id = snapshot.instance_id
        ctx.emit(TicketPhase.GENERATING_SPEC, "started", "Starting finalization")

        while True:
            if snapshot.status == InstanceStatus.SUSPENDED:
                snapshot = await self._answer_round(snapshot, owner, answers)
                continue
            if snapshot.status != InstanceStatus.PENDING:
                break
            snapshot = await self._drive(ctx, owner, snapshot)

        if snapshot.status != InstanceStatus.COMPLETE:
            return self._failure(ctx, snapshot)

        quality = snapshot.quality or {}
        ctx.emit(
            TicketPhase.COMPLETE,
            "completed",
            "Ticket finalized",
            quality_score=quality.get("overall"),
        )
        return Outcome(
            ticket_id=ctx.ticket_id,
            status="finalized",
            instance_id=instance_id,
            quality_score=quality.get("overall"),
        )

    async def _answer_round(
        self, snapshot: InstanceSnapshot, owner: OwnerScope, answers: Mapping[str, Any]
    ) -> InstanceSnapshot:
        open_round = snapshot.open_round
        provided = {q.id: answers[q.id] for q in open_round.questions if q.id in answers}
        required = [q.id for q in open_round.questions if q.required]
        if all(provided.get(qid) for qid in required):
            return await self.engine.submit_answers(
                snapshot.instance_id, owner, open_round.round_number, provided
            )
        return await self.engine.skip_questions(snapshot.instance_id, owner)
