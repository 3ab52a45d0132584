"""Quality scoring for generated ticket specifications."""

from .engine import (
    BLOCK_THRESHOLD,
    DEFAULT_WEIGHTS,
    HIGH_CONFIDENCE_THRESHOLD,
    QualityConfig,
    QualityEngine,
)
from .metrics import ValidationMetrics
from .models import ApiChange, GateDecision, QualityReport, TicketSpec, ValidationResult
from .validators import Validator, default_validators

__all__ = [
    "ApiChange",
    "BLOCK_THRESHOLD",
    "DEFAULT_WEIGHTS",
    "GateDecision",
    "HIGH_CONFIDENCE_THRESHOLD",
    "QualityConfig",
    "QualityEngine",
    "QualityReport",
    "TicketSpec",
    "ValidationMetrics",
    "ValidationResult",
    "Validator",
    "default_validators",
]
