"""
Workflow engine.

Drives a workflow instance through its pipeline one step per ``advance``:

1. Load the instance and locate the step at ``current_step_index``
2. Mark it in progress and persist
3. Run the step's action under the caller-supplied deadline
4. Mark it complete (or suspended, for a question round) and persist before
   returning

A failing action marks the step failed with its error message verbatim and
leaves the index where it is, so ``retry_step`` re-runs exactly that step.
Step failures are never raised to the caller; they are visible on the
instance. Public-operation input errors are raised before any mutation.

The engine is the single writer for its instances: each instance has an
asyncio lock (a second concurrent mutation raises
ConcurrentModificationError), and every write is a compare-and-set on the
stored document version. When a step result loses that race to another
engine, the stored instance is kept and the result is dropped. A caller that
cancels ``advance`` (for example through ``asyncio.wait_for``) leaves the
step pending, not in progress.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Set

import structlog
from pydantic import BaseModel, Field

from ..capabilities import DEFAULT_MAX_CONTEXT_FILES, ReasoningCapability, RepositoryCapability
from ..db.document_store import DocumentStore
from ..errors import (
    ConcurrentModificationError,
    ForgeError,
    NotFoundError,
    QualityGateError,
    ValidationError,
    error_message,
)
from ..progress import ProgressPublisher
from ..quality import QualityEngine
from ..tickets import TicketRepository
from .models import (
    INSTANCE_COLLECTION,
    InstanceSnapshot,
    InstanceStatus,
    OwnerScope,
    QuestionRound,
    Step,
    StepKind,
    StepStatus,
    WorkflowInstance,
    utcnow,
)
from .pipeline import StepOutcome, TicketPipeline, build_steps
from .questions import DEFAULT_MAX_ROUNDS, DefaultAnswerPolicy, QuestionRoundManager

logger = structlog.get_logger()


class EngineConfig(BaseModel):
    """Configuration for the workflow engine."""

    max_question_rounds: int = Field(default=DEFAULT_MAX_ROUNDS, ge=1)
    max_context_files: int = Field(default=DEFAULT_MAX_CONTEXT_FILES, ge=1)
    default_answer_policy: DefaultAnswerPolicy = DefaultAnswerPolicy.OMIT


def _get_default_engine_config() -> EngineConfig:
    """Build the engine config from application settings."""
    from ticket_forge.config import settings

    return EngineConfig(
        max_question_rounds=settings.max_question_rounds,
        max_context_files=settings.max_context_files,
        default_answer_policy=settings.default_answer_policy,
    )


class WorkflowEngine:
    """Sequences, suspends, resumes and retries ticket generation."""

    def __init__(
        self,
        store: DocumentStore,
        reasoning: ReasoningCapability,
        repository: Optional[RepositoryCapability] = None,
        quality: Optional[QualityEngine] = None,
        publisher: Optional[ProgressPublisher] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.store = store
        self.config = config or _get_default_engine_config()
        self.tickets = TicketRepository(store)
        self.quality = quality or QualityEngine()
        self.publisher = publisher
        self.questions = QuestionRoundManager(
            reasoning,
            max_rounds=self.config.max_question_rounds,
            policy=self.config.default_answer_policy,
        )
        self.pipeline = TicketPipeline(
            reasoning,
            repository,
            self.questions,
            self.quality,
            max_context_files=self.config.max_context_files,
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancel_requests: Set[str] = set()

    # Public operations

    async def start(self, ticket_id: str, owner: OwnerScope) -> str:
        """Create a workflow instance for a ticket and return its id."""
        if not ticket_id or not ticket_id.strip():
            raise ValidationError("ticket_id is required")
        ticket = self.tickets.get(ticket_id, owner.workspace_id)

        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            ticket_id=ticket.id,
            owner=owner,
            steps=build_steps(),
        )
        self._save(instance)
        logger.info(
            "workflow_started",
            instance_id=instance.id,
            ticket_id=ticket.id,
            workspace_id=owner.workspace_id,
        )
        return instance.id

    async def advance(
        self,
        instance_id: str,
        owner: OwnerScope,
        deadline: Optional[float] = None,
    ) -> InstanceSnapshot:
        """Run the step at the current index.

        Args:
            instance_id: Workflow instance id
            owner: Authenticated caller scope
            deadline: Seconds the step's action may take; None for no limit

        Returns:
            Snapshot after the step completed, suspended or failed. Suspended,
            failed, complete and cancelled instances are returned unchanged.

        Raises:
            ConcurrentModificationError: If the instance is being modified
            NotFoundError: If the instance is unknown to ``owner``
        """
        async with self._exclusive(instance_id):
            instance = self.get_instance(instance_id, owner)
            return await self._advance_locked(instance, deadline)

    async def submit_answers(
        self,
        instance_id: str,
        owner: OwnerScope,
        round_number: int,
        answers: Mapping[str, Any],
    ) -> InstanceSnapshot:
        """Answer the open question round.

        Below the round cap the question step returns to pending so the next
        ``advance`` generates a follow-up round; at the cap the step completes.
        """
        if not isinstance(answers, Mapping):
            raise ValidationError("answers must be a mapping of question id to value")

        async with self._exclusive(instance_id):
            instance = self.get_instance(instance_id, owner)
            step, open_round = self._require_open_round(instance)

            closed = self.questions.record_answers(open_round, round_number, answers)
            missing = self.questions.missing_required(closed)
            if missing:
                raise ValidationError(
                    f"Required questions not answered: {', '.join(missing)}"
                )

            instance.rounds[-1] = closed
            if closed.round_number >= self.questions.max_rounds:
                self._complete_question_step(
                    instance,
                    step,
                    f"Answers recorded for round {closed.round_number}; round limit reached",
                )
            else:
                step.status = StepStatus.PENDING
                step.details = f"Answers recorded for round {closed.round_number}"
            self._save(instance)
            logger.info(
                "answers_submitted",
                instance_id=instance.id,
                round_number=closed.round_number,
                answered=len(closed.answers),
            )
            return instance.snapshot()

    async def skip_questions(self, instance_id: str, owner: OwnerScope) -> InstanceSnapshot:
        """Skip clarification and proceed with synthesized default answers.

        Skipping an already-skipped round returns the same answer set without
        changing the instance.
        """
        async with self._exclusive(instance_id):
            instance = self.get_instance(instance_id, owner)
            step = instance.active_step
            last_round = instance.rounds[-1] if instance.rounds else None

            if step is None or step.kind != StepKind.QUESTION:
                if last_round is not None and last_round.skipped_by_user:
                    return instance.snapshot()
                raise ValidationError("No question round to skip")
            if instance.cancel_requested:
                raise ValidationError(f"Workflow {instance.id} has been cancelled")

            if step.status == StepStatus.SUSPENDED and instance.open_round is not None:
                instance.rounds[-1] = self.questions.skip_round(instance.open_round)
            elif step.status == StepStatus.PENDING:
                instance.rounds.append(
                    QuestionRound(
                        round_number=len(instance.rounds) + 1,
                        answered_at=utcnow(),
                        skipped_by_user=True,
                    )
                )
            elif step.status == StepStatus.IN_PROGRESS:
                raise ConcurrentModificationError(
                    f"Step {step.id} of workflow {instance.id} is in progress"
                )
            else:
                raise ValidationError(
                    f"Question step is {step.status.value}; retry it before skipping"
                )

            self._complete_question_step(instance, step, "Questions skipped; defaults assumed")
            self._save(instance)
            logger.info("questions_skipped", instance_id=instance.id)
            return instance.snapshot()

    async def retry_step(
        self,
        instance_id: str,
        owner: OwnerScope,
        step_id: int,
        deadline: Optional[float] = None,
    ) -> InstanceSnapshot:
        """Reset the failing step to pending and run it again.

        Also recovers a step left in progress by a process that died mid-step.
        """
        async with self._exclusive(instance_id):
            instance = self.get_instance(instance_id, owner)
            step = instance.step_by_id(step_id)
            if step is None:
                raise ValidationError(f"Unknown step id: {step_id}")
            if instance.cancel_requested:
                raise ValidationError(f"Workflow {instance.id} has been cancelled")
            if step is not instance.active_step or step.status not in (
                StepStatus.FAILED,
                StepStatus.IN_PROGRESS,
            ):
                raise ValidationError(
                    f"Step {step_id} is not retryable (status {step.status.value})"
                )

            step.status = StepStatus.PENDING
            step.error = None
            instance.outputs.pop(step.key, None)
            logger.info("step_retry", instance_id=instance.id, step=step.key)
            return await self._advance_locked(instance, deadline)

    async def cancel(self, instance_id: str, owner: OwnerScope) -> None:
        """Cooperatively cancel an instance.

        An action already in flight finishes, but its result is discarded and
        the step returns to pending. A step left in progress by an action this
        engine is not running goes back to pending at once; the process still
        running it, if any, drops its result on its next write.
        """
        lock = self._locks.get(instance_id)
        if lock is not None and lock.locked():
            self.get_instance(instance_id, owner)
            self._cancel_requests.add(instance_id)
            logger.info("workflow_cancel_requested", instance_id=instance_id)
            return

        async with self._exclusive(instance_id):
            instance = self.get_instance(instance_id, owner)
            if instance.status in (InstanceStatus.COMPLETE, InstanceStatus.CANCELLED):
                return
            instance.cancel_requested = True
            step = instance.active_step
            if step is not None and step.status == StepStatus.IN_PROGRESS:
                step.status = StepStatus.PENDING
                step.started_at = None
            self._save(instance)
            logger.info("workflow_cancelled", instance_id=instance_id)

    async def drive(
        self,
        instance_id: str,
        owner: OwnerScope,
        stop_before: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> InstanceSnapshot:
        """Advance repeatedly until the instance suspends, terminates, or the
        active step is ``stop_before``."""
        snapshot = self.get_snapshot(instance_id, owner)
        while snapshot.status == InstanceStatus.PENDING:
            step = snapshot.active_step
            if stop_before is not None and step is not None and step.key == stop_before:
                break
            snapshot = await self.advance(instance_id, owner, deadline)
        return snapshot

    def get_snapshot(self, instance_id: str, owner: OwnerScope) -> InstanceSnapshot:
        return self.get_instance(instance_id, owner).snapshot()

    def get_instance(self, instance_id: str, owner: OwnerScope) -> WorkflowInstance:
        """Load an instance visible to ``owner`` or raise NotFoundError."""
        doc = self.store.get(INSTANCE_COLLECTION, instance_id)
        if doc is None:
            raise NotFoundError(f"Workflow {instance_id} not found")
        instance = WorkflowInstance.model_validate(doc.data)
        if instance.owner != owner:
            raise NotFoundError(f"Workflow {instance_id} not found")
        instance.version = doc.version
        return instance

    def latest_for_ticket(self, ticket_id: str, owner: OwnerScope) -> InstanceSnapshot:
        """Most recently created instance for a ticket."""
        candidates = [
            WorkflowInstance.model_validate(doc.data)
            for doc in self.store.list(INSTANCE_COLLECTION, scope=owner.key)
            if doc.data.get("ticket_id") == ticket_id
        ]
        if not candidates:
            raise NotFoundError(f"No workflow found for ticket {ticket_id}")
        latest = max(candidates, key=lambda i: i.created_at)
        return self.get_snapshot(latest.id, owner)

    # Internals

    @asynccontextmanager
    async def _exclusive(self, instance_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(instance_id, asyncio.Lock())
        if lock.locked():
            raise ConcurrentModificationError(
                f"Workflow {instance_id} is already being modified"
            )
        try:
            async with lock:
                yield
        finally:
            self._locks.pop(instance_id, None)
            self._cancel_requests.discard(instance_id)

    async def _advance_locked(
        self, instance: WorkflowInstance, deadline: Optional[float]
    ) -> InstanceSnapshot:
        status = instance.status
        if status == InstanceStatus.RUNNING:
            raise ConcurrentModificationError(
                f"Workflow {instance.id} has a step in progress"
            )
        if status != InstanceStatus.PENDING:
            return instance.snapshot()

        instance = await self._execute_step(instance, instance.active_step, deadline)
        return instance.snapshot()

    async def _execute_step(
        self, instance: WorkflowInstance, step: Step, deadline: Optional[float]
    ) -> WorkflowInstance:
        log = logger.bind(instance_id=instance.id, ticket_id=instance.ticket_id, step=step.key)

        step.status = StepStatus.IN_PROGRESS
        step.attempts += 1
        step.error = None
        step.details = None
        step.started_at = utcnow()
        step.completed_at = None
        self._save(instance)
        log.info("step_started", attempt=step.attempts)

        outcome: Optional[StepOutcome] = None
        error: Optional[str] = None
        report: Optional[dict] = None
        try:
            ticket = self.tickets.get(instance.ticket_id, instance.owner.workspace_id)
            action = self.pipeline.run(step, instance.model_copy(deep=True), ticket)
            if deadline is not None:
                outcome = await asyncio.wait_for(action, timeout=deadline)
            else:
                outcome = await action
        except asyncio.CancelledError:
            # The caller gave up on advance; the step must not stay in progress
            self._discard_result(instance, step, log, reason="interrupted")
            raise
        except asyncio.TimeoutError:
            error = f"Step timed out after {deadline} seconds"
        except QualityGateError as e:
            error, report = e.message, e.report
        except ForgeError as e:
            error = e.message
        except Exception as e:
            error = error_message(e)
            log.exception("step_action_error")

        if instance.id in self._cancel_requests:
            return self._discard_result(instance, step, log, reason="cancelled")

        if error is not None:
            step.status = StepStatus.FAILED
            step.error = error
            if report:
                instance.outputs[step.key] = report
            log.warning("step_failed", error=error)
        elif outcome.question_round is not None:
            self._apply_round(instance, step, outcome)
        else:
            step.status = StepStatus.COMPLETE
            step.details = outcome.details
            step.completed_at = utcnow()
            instance.outputs[step.key] = outcome.output
            instance.current_step_index += 1
            log.info("step_completed", details=outcome.details)
        return self._save_result(instance, step, log)

    def _discard_result(
        self, instance: WorkflowInstance, step: Step, log: Any, reason: str
    ) -> WorkflowInstance:
        """Return the step to pending without recording its result."""
        if instance.id in self._cancel_requests:
            self._cancel_requests.discard(instance.id)
            instance.cancel_requested = True
        step.status = StepStatus.PENDING
        step.started_at = None
        log.info("step_result_discarded", reason=reason)
        return self._save_result(instance, step, log)

    def _save_result(self, instance: WorkflowInstance, step: Step, log: Any) -> WorkflowInstance:
        """Persist the outcome of a step.

        A version conflict here means another engine wrote the instance while
        the action ran (a cancel, or a retry that took the step over). The
        stored instance wins and this result is dropped.
        """
        try:
            self._save(instance)
            return instance
        except ConcurrentModificationError:
            current = self.get_instance(instance.id, instance.owner)

        log.warning("step_result_superseded", stored_version=current.version)
        stored_step = current.step_by_id(step.id)
        if (
            current.cancel_requested
            and stored_step is not None
            and stored_step.status == StepStatus.IN_PROGRESS
        ):
            stored_step.status = StepStatus.PENDING
            stored_step.started_at = None
            self._save(current)
        return current

    def _apply_round(self, instance: WorkflowInstance, step: Step, outcome: StepOutcome) -> None:
        question_round = outcome.question_round
        instance.rounds.append(question_round)
        if question_round.is_open:
            step.status = StepStatus.SUSPENDED
            step.details = outcome.details
            logger.info(
                "workflow_suspended",
                instance_id=instance.id,
                round_number=question_round.round_number,
                questions=len(question_round.questions),
            )
        else:
            self._complete_question_step(instance, step, outcome.details)

    def _complete_question_step(
        self, instance: WorkflowInstance, step: Step, details: Optional[str]
    ) -> None:
        step.status = StepStatus.COMPLETE
        step.details = details
        step.error = None
        step.completed_at = utcnow()
        instance.outputs[step.key] = {
            "rounds": len(instance.rounds),
            "answers": self.questions.answered_pairs(instance.rounds),
            "assumptions": self.questions.unresolved_assumptions(instance.rounds),
        }
        instance.current_step_index += 1

    def _require_open_round(self, instance: WorkflowInstance):
        if instance.cancel_requested:
            raise ValidationError(f"Workflow {instance.id} has been cancelled")
        step = instance.active_step
        open_round = instance.open_round
        if (
            step is None
            or step.kind != StepKind.QUESTION
            or step.status != StepStatus.SUSPENDED
            or open_round is None
        ):
            raise ValidationError(f"Workflow {instance.id} has no open question round")
        return step, open_round

    def _save(self, instance: WorkflowInstance) -> None:
        """Persist with compare-and-set, then publish a snapshot."""
        instance.updated_at = utcnow()
        doc = self.store.put(
            INSTANCE_COLLECTION,
            instance.id,
            instance.model_dump(mode="json"),
            expected_version=instance.version or None,
            scope=instance.owner.key,
        )
        instance.version = doc.version
        if self.publisher is not None:
            self.publisher.publish(instance.id, instance.snapshot())
