"""
Workflow instance and step models.

A workflow instance is one attempt to generate a single ticket's
specification. Its steps run strictly in order; only the engine mutates step
status and ``current_step_index``. Question rounds are frozen once written and
are replaced, never edited, when answered or skipped.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, conint, constr, model_validator

INSTANCE_COLLECTION = "workflow_instances"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Status of a single pipeline step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SUSPENDED = "suspended"


class StepKind(str, Enum):
    """Action steps run to completion; question steps suspend for input."""

    ACTION = "action"
    QUESTION = "question"


class InstanceStatus(str, Enum):
    """Derived status of a workflow instance."""

    INITIALIZING = "initializing"
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {
    InstanceStatus.COMPLETE,
    InstanceStatus.FAILED,
    InstanceStatus.CANCELLED,
}


class OwnerScope(BaseModel):
    """An already-authenticated (workspace, user) pair."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    workspace_id: constr(strip_whitespace=True, min_length=1)
    user_id: constr(strip_whitespace=True, min_length=1)

    @property
    def key(self) -> str:
        return f"{self.workspace_id}:{self.user_id}"


class Step(BaseModel):
    """One unit of pipeline work."""

    model_config = ConfigDict(extra="forbid")

    id: int
    key: str
    title: str
    kind: StepKind = StepKind.ACTION
    status: StepStatus = StepStatus.PENDING
    details: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# Question variants, keyed on input_type

ChoiceInputType = Literal["radio", "checkbox", "select"]
FreeformInputType = Literal["text", "multiline"]
AnswerValue = Union[str, List[str]]


class _QuestionBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: constr(strip_whitespace=True, min_length=1)
    text: constr(strip_whitespace=True, min_length=1)
    required: bool = True
    context: Optional[str] = None
    impact: Optional[str] = None
    default_assumption: Optional[str] = None


class ChoiceQuestion(_QuestionBase):
    """A question answered by picking from ``options``."""

    input_type: ChoiceInputType
    options: List[constr(strip_whitespace=True, min_length=1)] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_options(self) -> "ChoiceQuestion":
        if len(set(self.options)) != len(self.options):
            raise ValueError("options must be unique")
        return self


class FreeformQuestion(_QuestionBase):
    """A question answered with free text. Carries no options."""

    input_type: FreeformInputType


Question = Annotated[
    Union[ChoiceQuestion, FreeformQuestion], Field(discriminator="input_type")
]


class QuestionRound(BaseModel):
    """One batch of clarification questions plus the user's answers."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    round_number: conint(ge=1)
    questions: List[Question] = Field(default_factory=list)
    answers: Dict[str, AnswerValue] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=utcnow)
    answered_at: Optional[datetime] = None
    skipped_by_user: bool = False
    context_summary: Optional[str] = None

    @model_validator(mode="after")
    def _check_ids(self) -> "QuestionRound":
        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError("question ids must be unique within a round")
        unknown = set(self.answers) - set(ids)
        if unknown:
            raise ValueError(f"answers reference unknown questions: {sorted(unknown)}")
        return self

    @property
    def is_open(self) -> bool:
        return self.answered_at is None

    def question(self, question_id: str) -> Optional[Union[ChoiceQuestion, FreeformQuestion]]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None


class WorkflowInstance(BaseModel):
    """Persisted state of one ticket generation attempt."""

    model_config = ConfigDict(extra="forbid")

    id: str
    ticket_id: str
    owner: OwnerScope
    steps: List[Step]
    current_step_index: int = 0
    outputs: Dict[str, Any] = Field(default_factory=dict)
    rounds: List[QuestionRound] = Field(default_factory=list)
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # Store version of the document this instance was loaded from (0 = unsaved)
    version: int = Field(default=0, exclude=True)

    @model_validator(mode="after")
    def _check_step_index(self) -> "WorkflowInstance":
        if not 0 <= self.current_step_index <= len(self.steps):
            raise ValueError(
                f"current_step_index {self.current_step_index} out of range "
                f"for {len(self.steps)} steps"
            )
        return self

    @property
    def active_step(self) -> Optional[Step]:
        if self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def open_round(self) -> Optional[QuestionRound]:
        if self.rounds and self.rounds[-1].is_open:
            return self.rounds[-1]
        return None

    @property
    def status(self) -> InstanceStatus:
        statuses = [step.status for step in self.steps]
        if StepStatus.IN_PROGRESS in statuses:
            return InstanceStatus.RUNNING
        if all(s == StepStatus.COMPLETE for s in statuses):
            return InstanceStatus.COMPLETE
        if self.cancel_requested:
            return InstanceStatus.CANCELLED
        if StepStatus.FAILED in statuses:
            return InstanceStatus.FAILED
        active = self.active_step
        if active is not None and active.status == StepStatus.SUSPENDED:
            return InstanceStatus.SUSPENDED
        return InstanceStatus.PENDING

    def step_by_id(self, step_id: int) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def check_invariants(self) -> None:
        """Raise ValueError when step statuses disagree with the step index."""
        completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETE)
        if completed != self.current_step_index:
            raise ValueError(
                f"{completed} complete steps but current_step_index is "
                f"{self.current_step_index}"
            )
        for step in self.steps[: self.current_step_index]:
            if step.status != StepStatus.COMPLETE:
                raise ValueError(f"step {step.id} precedes the index but is {step.status.value}")
        for step in self.steps[self.current_step_index + 1 :]:
            if step.status != StepStatus.PENDING:
                raise ValueError(f"step {step.id} follows the index but is {step.status.value}")

    def snapshot(self) -> "InstanceSnapshot":
        return InstanceSnapshot(
            instance_id=self.id,
            ticket_id=self.ticket_id,
            status=self.status,
            current_step_index=self.current_step_index,
            steps=[step.model_copy() for step in self.steps],
            rounds=list(self.rounds),
            outputs=copy.deepcopy(self.outputs),
            version=self.version,
            updated_at=self.updated_at,
        )


class InstanceSnapshot(BaseModel):
    """Immutable view of an instance, as handed to callers and observers."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    ticket_id: Optional[str] = None
    status: InstanceStatus
    current_step_index: int = 0
    steps: List[Step] = Field(default_factory=list)
    rounds: List[QuestionRound] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def initializing(cls, instance_id: str) -> "InstanceSnapshot":
        return cls(instance_id=instance_id, status=InstanceStatus.INITIALIZING)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active_step(self) -> Optional[Step]:
        if self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def open_round(self) -> Optional[QuestionRound]:
        if self.rounds and self.rounds[-1].is_open:
            return self.rounds[-1]
        return None

    @property
    def failed_step(self) -> Optional[Step]:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    @property
    def quality(self) -> Optional[Dict[str, Any]]:
        return self.outputs.get("finalize")

    @property
    def specification(self) -> Optional[Dict[str, Any]]:
        return self.outputs.get("synthesize")
