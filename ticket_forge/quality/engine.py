"""
Quality validation engine.

Scores a ticket specification against independent weighted validators and
decides whether it may be created.

Gate policy:
- overall < BLOCK_THRESHOLD (50): blocked
- BLOCK_THRESHOLD <= overall < HIGH_CONFIDENCE_THRESHOLD (80): allowed, issues surfaced
- overall >= HIGH_CONFIDENCE_THRESHOLD: high confidence
Any blocker also blocks creation.

Aggregation is weight-normalized over the validators that apply to the
artifact; non-applicable validators are excluded from both numerator and
denominator.
"""

import time
from typing import Any, Dict, List, Optional, Union

import pydantic
import structlog
from pydantic import BaseModel, Field, model_validator

from ..errors import ValidationError
from .metrics import DEFAULT_CAPACITY, ValidationMetric, ValidationMetrics, ValidatorMetric
from .models import GateDecision, QualityReport, TicketSpec, ValidationResult
from .validators import Validator, default_validators

logger = structlog.get_logger()

# Gate thresholds on the 0-100 overall scale
BLOCK_THRESHOLD = 50.0
HIGH_CONFIDENCE_THRESHOLD = 80.0

# Product weight table; overridable through configuration
DEFAULT_WEIGHTS: Dict[str, float] = {
    "completeness": 1.0,
    "testability": 0.9,
    "clarity": 0.8,
    "consistency": 0.8,
    "context_alignment": 0.7,
    "feasibility": 0.7,
    "scope": 0.6,
    "api_changes": 0.8,
}


class QualityConfig(BaseModel):
    """Configuration for quality scoring."""

    block_threshold: float = Field(default=BLOCK_THRESHOLD, ge=0, le=100)
    high_confidence_threshold: float = Field(default=HIGH_CONFIDENCE_THRESHOLD, ge=0, le=100)
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    metrics_capacity: int = Field(default=DEFAULT_CAPACITY, ge=1)

    @model_validator(mode="after")
    def _check(self) -> "QualityConfig":
        if self.block_threshold > self.high_confidence_threshold:
            raise ValueError("block_threshold must not exceed high_confidence_threshold")
        for criterion, weight in self.weights.items():
            if weight <= 0:
                raise ValueError(f"weight for {criterion!r} must be positive")
        return self


def _get_default_quality_config() -> QualityConfig:
    """Build the quality config from application settings."""
    from ticket_forge.config import settings

    return QualityConfig(
        block_threshold=settings.quality_block_threshold,
        high_confidence_threshold=settings.quality_high_confidence_threshold,
        weights={**DEFAULT_WEIGHTS, **settings.quality_weights},
        metrics_capacity=settings.quality_metrics_capacity,
    )


class QualityEngine:
    """Weighted, advisory scoring of ticket specifications."""

    def __init__(
        self,
        config: Optional[QualityConfig] = None,
        validators: Optional[List[Validator]] = None,
        metrics: Optional[ValidationMetrics] = None,
    ):
        self.config = config or _get_default_quality_config()
        self.validators = validators if validators is not None else default_validators()
        self.metrics = metrics or ValidationMetrics(self.config.metrics_capacity)

    def weight_for(self, validator: Validator) -> float:
        return self.config.weights.get(validator.criterion, validator.default_weight)

    def decide(self, overall: float, has_blockers: bool) -> GateDecision:
        if has_blockers or overall < self.config.block_threshold:
            return GateDecision.BLOCKED
        if overall >= self.config.high_confidence_threshold:
            return GateDecision.HIGH_CONFIDENCE
        return GateDecision.ALLOWED_WITH_ISSUES

    def score(
        self,
        artifact: Union[TicketSpec, Dict[str, Any]],
        workspace_id: Optional[str] = None,
        artifact_id: Optional[str] = None,
    ) -> QualityReport:
        """Score an artifact.

        Args:
            artifact: A TicketSpec, or a dict validated into one
            workspace_id: Recorded with the metrics entry
            artifact_id: Recorded with the metrics entry

        Returns:
            QualityReport with per-criterion results and the gate decision

        Raises:
            ValidationError: If a dict artifact does not describe a TicketSpec
        """
        if not isinstance(artifact, TicketSpec):
            try:
                artifact = TicketSpec.model_validate(artifact)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid ticket specification: {e}") from e

        started = time.perf_counter()
        results: List[ValidationResult] = []
        timings: List[float] = []
        for validator in self.validators:
            if not validator.applies_to(artifact):
                continue
            v_started = time.perf_counter()
            results.append(self._run_validator(validator, artifact))
            timings.append((time.perf_counter() - v_started) * 1000)

        total_weight = sum(r.weight for r in results)
        overall = (
            round(sum(r.weighted_score for r in results) / total_weight * 100, 2)
            if total_weight
            else 0.0
        )
        has_blockers = any(r.has_blockers() for r in results)
        passed = not has_blockers and overall >= self.config.block_threshold
        duration_ms = (time.perf_counter() - started) * 1000

        report = QualityReport(
            results=results,
            overall=overall,
            passed=passed,
            gate=self.decide(overall, has_blockers),
            duration_ms=duration_ms,
        )
        self.metrics.record(
            ValidationMetric(
                overall=overall,
                passed=passed,
                duration_ms=duration_ms,
                validators=[
                    ValidatorMetric(r.criterion, r.score, r.passed, t)
                    for r, t in zip(results, timings)
                ],
                total_issues=sum(len(r.issues) for r in results),
                critical_issues=sum(len(r.blockers) for r in results),
                artifact_id=artifact_id,
                workspace_id=workspace_id,
            )
        )
        logger.info(
            "quality_scored",
            artifact_id=artifact_id,
            overall=overall,
            passed=passed,
            gate=report.gate.value,
        )
        return report

    def _run_validator(self, validator: Validator, artifact: TicketSpec) -> ValidationResult:
        weight = self.weight_for(validator)
        try:
            return validator.validate(artifact, weight)
        except Exception:
            # A crashing validator fails its criterion instead of the whole pass
            logger.exception("validator_crashed", criterion=validator.criterion)
            return ValidationResult(
                criterion=validator.criterion,
                passed=False,
                score=0.0,
                weight=weight,
                issues=["Validator encountered an error"],
                blockers=["Validation could not complete"],
                message=f"{validator.criterion} validation failed to run",
            )
