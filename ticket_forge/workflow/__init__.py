"""
Workflow instances, steps and question rounds.

The engine lives in ``ticket_forge.workflow.engine``; it is not re-exported
here because the progress publisher imports these models.
"""

from .models import (
    ChoiceQuestion,
    FreeformQuestion,
    InstanceSnapshot,
    InstanceStatus,
    OwnerScope,
    QuestionRound,
    Step,
    StepKind,
    StepStatus,
    WorkflowInstance,
)
from .questions import DefaultAnswerPolicy, QuestionRoundManager

__all__ = [
    "ChoiceQuestion",
    "DefaultAnswerPolicy",
    "FreeformQuestion",
    "InstanceSnapshot",
    "InstanceStatus",
    "OwnerScope",
    "QuestionRound",
    "QuestionRoundManager",
    "Step",
    "StepKind",
    "StepStatus",
    "WorkflowInstance",
]
