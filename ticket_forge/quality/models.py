"""
Models for quality scoring.

``TicketSpec`` is the artifact the synthesis step produces and the quality
engine scores. ``ValidationResult`` is computed on demand per criterion and is
never persisted on its own; the aggregate ``QualityReport`` is stored with the
workflow instance that produced it.
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, confloat, constr


class ApiChange(BaseModel):
    """An endpoint the ticket adds, changes or removes."""

    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
    path: constr(strip_whitespace=True, min_length=1)
    description: str = ""


class TicketSpec(BaseModel):
    """An implementation-ready ticket specification."""

    title: str = Field(default="", description="Ticket title")
    description: str = Field(default="", description="Problem statement and approach")
    ticket_type: Optional[Literal["feature", "bug", "task"]] = None
    acceptance_criteria: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    repo_paths: List[str] = Field(
        default_factory=list, description="Repository paths the change touches"
    )
    has_repository_context: bool = False
    api_changes: List[ApiChange] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of one validator on one artifact."""

    model_config = ConfigDict(frozen=True)

    criterion: str
    passed: bool
    score: confloat(ge=0.0, le=1.0)
    weight: confloat(gt=0.0)
    issues: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    message: constr(min_length=1)

    @property
    def weighted_score(self) -> float:
        return self.score * self.weight

    def has_blockers(self) -> bool:
        return bool(self.blockers)


class GateDecision(str, Enum):
    """Whether a scored artifact may be created."""

    BLOCKED = "blocked"
    ALLOWED_WITH_ISSUES = "allowed_with_issues"
    HIGH_CONFIDENCE = "high_confidence"


class QualityReport(BaseModel):
    """Aggregate of one scoring pass."""

    model_config = ConfigDict(frozen=True)

    results: List[ValidationResult]
    overall: confloat(ge=0.0, le=100.0)
    passed: bool
    gate: GateDecision
    duration_ms: float = 0.0

    @property
    def blockers(self) -> List[str]:
        return [blocker for result in self.results for blocker in result.blockers]

    @property
    def issues(self) -> List[str]:
        return [issue for result in self.results for issue in result.issues]

    @property
    def creation_allowed(self) -> bool:
        return self.gate != GateDecision.BLOCKED

    @property
    def passed_count(self) -> int:
        return sum(1 for result in self.results if result.passed)
