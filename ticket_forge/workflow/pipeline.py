"""
Ticket generation pipeline.

Defines the ordered steps of a workflow instance and the action behind each
one. Actions are pure with respect to the instance: they receive a copy and
return a ``StepOutcome``; only the engine applies outcomes.

Steps:
1. gather_context  - bounded repository file subset
2. analyze         - deep analysis of the intent
3. clarify         - question round (suspends for answers)
4. synthesize      - ticket specification
5. finalize        - quality gate
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pydantic
import structlog

from ..capabilities import (
    DEFAULT_MAX_CONTEXT_FILES,
    ReasoningCapability,
    RepositoryCapability,
    parse_json_payload,
    select_context_files,
)
from ..errors import GenerationError, QualityGateError
from ..quality import QualityEngine, TicketSpec
from ..tickets import Ticket
from .models import QuestionRound, Step, StepKind, WorkflowInstance
from .questions import QuestionRoundManager

logger = structlog.get_logger()


@dataclass(frozen=True)
class StepDefinition:
    key: str
    title: str
    kind: StepKind = StepKind.ACTION


STEP_DEFINITIONS = (
    StepDefinition("gather_context", "Gathering repository context"),
    StepDefinition("analyze", "Analyzing ticket intent"),
    StepDefinition("clarify", "Asking clarifying questions", StepKind.QUESTION),
    StepDefinition("synthesize", "Generating specification"),
    StepDefinition("finalize", "Validating ticket quality"),
)


def build_steps() -> List[Step]:
    """Fresh, all-pending steps for a new instance."""
    return [
        Step(id=index + 1, key=definition.key, title=definition.title, kind=definition.kind)
        for index, definition in enumerate(STEP_DEFINITIONS)
    ]


@dataclass
class StepOutcome:
    """Result of running one step's action."""

    output: Any = None
    details: Optional[str] = None
    question_round: Optional[QuestionRound] = None


class TicketPipeline:
    """Runs the action behind each pipeline step."""

    def __init__(
        self,
        reasoning: ReasoningCapability,
        repository: Optional[RepositoryCapability],
        questions: QuestionRoundManager,
        quality: QualityEngine,
        max_context_files: int = DEFAULT_MAX_CONTEXT_FILES,
    ):
        self.reasoning = reasoning
        self.repository = repository
        self.questions = questions
        self.quality = quality
        self.max_context_files = max_context_files
        self._actions = {
            "gather_context": self.gather_context,
            "analyze": self.analyze,
            "clarify": self.clarify,
            "synthesize": self.synthesize,
            "finalize": self.finalize,
        }

    async def run(self, step: Step, instance: WorkflowInstance, ticket: Ticket) -> StepOutcome:
        action = self._actions.get(step.key)
        if action is None:
            raise ValueError(f"No action registered for step {step.key!r}")
        return await action(instance, ticket)

    async def gather_context(self, instance: WorkflowInstance, ticket: Ticket) -> StepOutcome:
        repo = ticket.repository
        if repo is None or self.repository is None:
            return StepOutcome(
                output={"repository": None, "tree_size": 0, "files": {}},
                details="No repository connected; continuing without code context",
            )

        tree = await self.repository.get_file_tree(repo.owner, repo.name, repo.branch)
        selected = select_context_files(tree, ticket.intent, self.max_context_files)
        files = await self.repository.read_files(repo.owner, repo.name, repo.branch, selected)
        # Never trust the capability to honour the subset
        files = {path: files[path] for path in selected if path in files}
        return StepOutcome(
            output={
                "repository": f"{repo.owner}/{repo.name}@{repo.branch}",
                "tree_size": len(tree),
                "files": files,
            },
            details=f"Read {len(files)} of {len(tree)} repository files",
        )

    async def analyze(self, instance: WorkflowInstance, ticket: Ticket) -> StepOutcome:
        context_output = instance.outputs.get("gather_context") or {}
        raw = await self.reasoning.invoke(
            "Analyze the ticket intent against the repository context. Identify "
            "affected areas, risks and open ambiguities.",
            {
                "stage": "analysis",
                "ticket": {"title": ticket.title, "description": ticket.description},
                "files": context_output.get("files", {}),
            },
        )
        analysis = parse_json_payload(raw)
        areas = analysis.get("affected_areas") or []
        return StepOutcome(
            output=analysis,
            details=f"Analysis complete: {len(areas)} affected areas identified",
        )

    async def clarify(self, instance: WorkflowInstance, ticket: Ticket) -> StepOutcome:
        question_round = await self.questions.generate_round(
            instance, self.questions.answered_pairs(instance.rounds)
        )
        count = len(question_round.questions)
        if count:
            details = (
                f"Generated {count} clarification questions "
                f"(round {question_round.round_number})"
            )
        else:
            details = "No further clarification needed"
        return StepOutcome(details=details, question_round=question_round)

    async def synthesize(self, instance: WorkflowInstance, ticket: Ticket) -> StepOutcome:
        context_output = instance.outputs.get("gather_context") or {}
        assumptions = self.questions.unresolved_assumptions(instance.rounds)
        raw = await self.reasoning.invoke(
            "Write an implementation-ready ticket specification with a title, "
            "description, ticket type, acceptance criteria, assumptions and the "
            "repository paths it touches.",
            {
                "stage": "specification",
                "ticket": {"title": ticket.title, "description": ticket.description},
                "analysis": instance.outputs.get("analyze"),
                "answers": self.questions.answered_pairs(instance.rounds),
                "assume_defaults": assumptions,
            },
        )
        payload = parse_json_payload(raw)
        payload.setdefault("title", ticket.title)
        payload["has_repository_context"] = bool(context_output.get("files"))
        try:
            spec = TicketSpec.model_validate(payload)
        except pydantic.ValidationError as e:
            raise GenerationError(f"Specification is malformed: {e}") from e

        for assumption in assumptions:
            if assumption not in spec.assumptions:
                spec.assumptions.append(assumption)
        return StepOutcome(
            output=spec.model_dump(mode="json"),
            details=(
                f"Generated specification with {len(spec.acceptance_criteria)} "
                "acceptance criteria"
            ),
        )

    async def finalize(self, instance: WorkflowInstance, ticket: Ticket) -> StepOutcome:
        spec = instance.outputs.get("synthesize")
        if spec is None:
            raise GenerationError("No specification to validate")
        report = self.quality.score(
            spec, workspace_id=instance.owner.workspace_id, artifact_id=instance.id
        )
        output = report.model_dump(mode="json")
        summary = (
            f"Validation complete: {report.passed_count}/{len(report.results)} "
            f"criteria passed ({report.overall:.0f}% overall score)"
        )
        if not report.creation_allowed:
            reasons = report.blockers or [
                f"Quality score {report.overall:.0f} is below the creation "
                f"threshold ({self.quality.config.block_threshold:.0f})"
            ]
            raise QualityGateError(
                f"Ticket blocked by quality gate: {'; '.join(reasons)}", report=output
            )
        return StepOutcome(output=output, details=summary)
