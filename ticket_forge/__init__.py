"""
Ticket Forge

Turns a short user intent into an implementation-ready ticket through an
interruptible, resumable generation pipeline.
"""

import importlib.metadata

__version__ = importlib.metadata.version("ticket-forge")

from .bulk import BulkEnrichmentCoordinator, BulkPhase, BulkResult
from .capabilities import ReasoningCapability, RepositoryCapability
from .drafts import BreakdownDraft, BreakdownTicketCreator, DocumentDraftRepository, DraftRepository
from .errors import (
    ConcurrentModificationError,
    ForgeError,
    GenerationError,
    NotFoundError,
    ProgressTimeoutError,
    ProviderError,
    ValidationError,
)
from .progress import ProgressPublisher
from .quality import QualityEngine, QualityReport, TicketSpec
from .workflow.engine import EngineConfig, WorkflowEngine
from .workflow.models import InstanceSnapshot, InstanceStatus, OwnerScope

__all__ = [
    "BreakdownDraft",
    "BreakdownTicketCreator",
    "BulkEnrichmentCoordinator",
    "BulkPhase",
    "BulkResult",
    "ConcurrentModificationError",
    "DocumentDraftRepository",
    "DraftRepository",
    "EngineConfig",
    "ForgeError",
    "GenerationError",
    "InstanceSnapshot",
    "InstanceStatus",
    "NotFoundError",
    "OwnerScope",
    "ProgressPublisher",
    "ProgressTimeoutError",
    "ProviderError",
    "QualityEngine",
    "QualityReport",
    "ReasoningCapability",
    "RepositoryCapability",
    "TicketSpec",
    "ValidationError",
    "WorkflowEngine",
]
