"""
Validation telemetry.

``ValidationMetrics`` is a fixed-capacity ring buffer of recent scoring
passes. It is owned by a ``QualityEngine`` instance and lives as long as that
engine; every query is a pure read over the buffer.
"""

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

DEFAULT_CAPACITY = 1000


@dataclass(frozen=True)
class ValidatorMetric:
    criterion: str
    score: float
    passed: bool
    duration_ms: float


@dataclass(frozen=True)
class ValidationMetric:
    """One recorded scoring pass."""

    overall: float
    passed: bool
    duration_ms: float
    validators: List[ValidatorMetric] = field(default_factory=list)
    total_issues: int = 0
    critical_issues: int = 0
    artifact_id: Optional[str] = None
    workspace_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ValidationMetrics:
    """Bounded buffer of recent scoring passes, oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: Deque[ValidationMetric] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, metric: ValidationMetric) -> None:
        self._entries.append(metric)

    def clear(self) -> None:
        self._entries.clear()

    def _select(self, workspace_id: Optional[str]) -> List[ValidationMetric]:
        if workspace_id is None:
            return list(self._entries)
        return [m for m in self._entries if m.workspace_id == workspace_id]

    def recent(self, limit: int = 100, workspace_id: Optional[str] = None) -> List[ValidationMetric]:
        """Most recent entries, newest first."""
        entries = self._select(workspace_id)
        return list(reversed(entries[-limit:])) if limit > 0 else []

    def average_score(self, workspace_id: Optional[str] = None) -> float:
        entries = self._select(workspace_id)
        if not entries:
            return 0.0
        return sum(m.overall for m in entries) / len(entries)

    def pass_rate(self, workspace_id: Optional[str] = None) -> float:
        entries = self._select(workspace_id)
        if not entries:
            return 0.0
        return sum(1 for m in entries if m.passed) / len(entries)

    def average_duration(self, workspace_id: Optional[str] = None) -> float:
        entries = self._select(workspace_id)
        if not entries:
            return 0.0
        return sum(m.duration_ms for m in entries) / len(entries)

    def validator_stats(self, workspace_id: Optional[str] = None) -> Dict[str, Dict[str, float]]:
        """Per-criterion average score, pass rate and run count."""
        totals: Dict[str, Dict[str, float]] = {}
        for metric in self._select(workspace_id):
            for v in metric.validators:
                stats = totals.setdefault(v.criterion, {"score": 0.0, "passed": 0, "runs": 0})
                stats["score"] += v.score
                stats["passed"] += 1 if v.passed else 0
                stats["runs"] += 1
        return {
            criterion: {
                "average_score": stats["score"] / stats["runs"],
                "pass_rate": stats["passed"] / stats["runs"],
                "total_runs": stats["runs"],
            }
            for criterion, stats in totals.items()
        }

    def summary(self, workspace_id: Optional[str] = None) -> Dict[str, Any]:
        entries = self._select(workspace_id)
        return {
            "total_validations": len(entries),
            "average_score": self.average_score(workspace_id),
            "pass_rate": self.pass_rate(workspace_id),
            "average_duration_ms": self.average_duration(workspace_id),
            "validators": self.validator_stats(workspace_id),
        }

    def export(self) -> List[Dict[str, Any]]:
        return [asdict(m) for m in self._entries]
