"""
Error taxonomy for Ticket Forge.

Every error carries a stable ``code`` for programmatic handling and a
human-readable ``message``. Public operations raise these before mutating any
state; step-level failures are recorded on the step instead of being raised
past the workflow engine.
"""

from typing import Optional


class ForgeError(Exception):
    """
    Base class for all Ticket Forge errors.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
    """

    default_code = "FORGE_ERROR"
    error_type = "forge_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "error": self.error_type,
            "code": self.code,
            "message": self.message,
        }


class ValidationError(ForgeError):
    """Malformed input to a public operation."""

    default_code = "VALIDATION_FAILED"
    error_type = "validation_error"


class ConcurrentModificationError(ForgeError):
    """Stale version on a conditional write, or a concurrent mutation."""

    default_code = "CONCURRENT_MODIFICATION"
    error_type = "concurrent_modification"


class ProviderError(ForgeError):
    """An external capability failed or returned unusable output."""

    default_code = "PROVIDER_ERROR"
    error_type = "provider_error"


class GenerationError(ProviderError):
    """Question or specification synthesis produced structurally invalid output."""

    default_code = "GENERATION_FAILED"
    error_type = "generation_error"


class QualityGateError(ForgeError):
    """A finished specification scored below the creation threshold.

    Carries the quality report so it can be kept alongside the failed step.
    """

    default_code = "QUALITY_GATE_BLOCKED"
    error_type = "quality_gate"

    def __init__(self, message: str, report: Optional[dict] = None, code: Optional[str] = None):
        super().__init__(message, code)
        self.report = report or {}


class NotFoundError(ForgeError):
    """Unknown instance, draft or ticket id."""

    default_code = "NOT_FOUND"
    error_type = "not_found"


class ProgressTimeoutError(ForgeError):
    """An observer waited past the grace period for an instance to appear."""

    default_code = "PROGRESS_TIMEOUT"
    error_type = "progress_timeout"


def error_message(exc: BaseException) -> str:
    """Return the message to retain on a failed step."""
    if isinstance(exc, ForgeError):
        return exc.message
    return str(exc) or exc.__class__.__name__
