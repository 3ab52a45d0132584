"""
Question round manager.

Generates clarification rounds from the reasoning capability, validates their
shape at the boundary, and records answers. Rounds are immutable once closed;
every transition returns a new round.

Default answers (used when a round is skipped, and when the round cap leaves
questions unanswered) follow a configurable policy:
- omit: unanswered questions stay absent and become explicit assumptions
- neutral: each unanswered question gets a deterministic neutral value
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pydantic
import structlog
from pydantic import TypeAdapter

from ..capabilities import ReasoningCapability, parse_json_payload
from ..errors import GenerationError, ValidationError
from .models import (
    AnswerValue,
    ChoiceQuestion,
    Question,
    QuestionRound,
    WorkflowInstance,
    utcnow,
)

logger = structlog.get_logger()

DEFAULT_MAX_ROUNDS = 3
MAX_QUESTIONS_PER_ROUND = 5
NEUTRAL_DEFAULT_ANSWER = "No preference; use a reasonable default"

_question_adapter = TypeAdapter(Question)


class DefaultAnswerPolicy(str, Enum):
    OMIT = "omit"
    NEUTRAL = "neutral"


def _is_empty(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list):
        return not any(isinstance(v, str) and v.strip() for v in value)
    return value is None


def _normalize_question(raw: Any, index: int, round_number: int) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise GenerationError(f"Question {index + 1} is not an object")
    data = dict(raw)
    # Model output uses camelCase inputType
    if "inputType" in data and "input_type" not in data:
        data["input_type"] = data.pop("inputType")
    if "defaultAssumption" in data and "default_assumption" not in data:
        data["default_assumption"] = data.pop("defaultAssumption")
    if not data.get("id"):
        data["id"] = f"r{round_number}q{index + 1}"
    # An empty options list is the same as no options
    if data.get("options") in (None, []):
        data.pop("options", None)
    return data


class QuestionRoundManager:
    """Owns clarification round content once generated."""

    def __init__(
        self,
        reasoning: ReasoningCapability,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        policy: DefaultAnswerPolicy = DefaultAnswerPolicy.OMIT,
    ):
        self.reasoning = reasoning
        self.max_rounds = max_rounds
        self.policy = DefaultAnswerPolicy(policy)

    async def generate_round(
        self,
        instance: WorkflowInstance,
        prior_answers: Sequence[Dict[str, Any]],
    ) -> QuestionRound:
        """Ask the reasoning capability for the next round of questions.

        Args:
            instance: Read-only copy of the workflow instance
            prior_answers: Question/answer pairs from closed rounds

        Returns:
            A new open round. A round with zero questions means the ticket is
            ready for synthesis.

        Raises:
            GenerationError: If the output is not a well-formed question list
        """
        round_number = len(instance.rounds) + 1
        if round_number > self.max_rounds:
            return QuestionRound(round_number=round_number, answered_at=utcnow())

        context = {
            "stage": "questions",
            "round_number": round_number,
            "max_rounds": self.max_rounds,
            "ticket_id": instance.ticket_id,
            "analysis": instance.outputs.get("analyze"),
            "prior_answers": list(prior_answers),
        }
        raw = await self.reasoning.invoke(
            f"Generate clarification questions (round {round_number} of "
            f"{self.max_rounds}) for the ticket. Only ask what changes the "
            "specification.",
            context,
        )
        payload = parse_json_payload(raw)
        questions = payload.get("questions")
        if not isinstance(questions, list):
            raise GenerationError("Question output must contain a 'questions' list")

        if len(questions) > MAX_QUESTIONS_PER_ROUND:
            logger.info(
                "questions_truncated",
                instance_id=instance.id,
                generated=len(questions),
                kept=MAX_QUESTIONS_PER_ROUND,
            )
            questions = questions[:MAX_QUESTIONS_PER_ROUND]

        parsed = []
        for index, raw_question in enumerate(questions):
            data = _normalize_question(raw_question, index, round_number)
            try:
                parsed.append(_question_adapter.validate_python(data))
            except pydantic.ValidationError as e:
                raise GenerationError(f"Question {index + 1} is malformed: {e}") from e

        try:
            return QuestionRound(
                round_number=round_number,
                questions=parsed,
                context_summary=payload.get("summary") or None,
                answered_at=None if parsed else utcnow(),
            )
        except pydantic.ValidationError as e:
            raise GenerationError(f"Question round is malformed: {e}") from e

    def record_answers(
        self,
        round: QuestionRound,
        round_number: int,
        answers: Mapping[str, Any],
    ) -> QuestionRound:
        """Validate answers against the open round and close it.

        Raises:
            ValidationError: On a round mismatch, a closed round, an unknown
                question id, or a value that does not fit the question
        """
        if round_number != round.round_number:
            raise ValidationError(
                f"Round mismatch: expected {round.round_number}, got {round_number}"
            )
        if not round.is_open:
            raise ValidationError(f"Round {round.round_number} is already closed")

        cleaned: Dict[str, AnswerValue] = {}
        for question_id, value in answers.items():
            question = round.question(question_id)
            if question is None:
                raise ValidationError(f"Unknown question id: {question_id}")
            if _is_empty(value):
                continue
            cleaned[question_id] = self._check_answer(question, value)

        return round.model_copy(update={"answers": cleaned, "answered_at": utcnow()})

    @staticmethod
    def _check_answer(question, value: Any) -> AnswerValue:
        if isinstance(question, ChoiceQuestion):
            if question.input_type == "checkbox":
                values = [value] if isinstance(value, str) else value
                if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                    raise ValidationError(f"Question {question.id} expects a list of options")
                unknown = [v for v in values if v not in question.options]
                if unknown:
                    raise ValidationError(
                        f"Question {question.id} has no option(s): {', '.join(unknown)}"
                    )
                return values
            if not isinstance(value, str):
                raise ValidationError(f"Question {question.id} expects a single option")
            if value not in question.options:
                raise ValidationError(f"Question {question.id} has no option: {value}")
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Question {question.id} expects text")
        return value.strip()

    def is_complete(self, round: QuestionRound) -> bool:
        """True iff every required question is answered or the round was skipped."""
        if round.skipped_by_user:
            return True
        return all(
            not _is_empty(round.answers.get(q.id))
            for q in round.questions
            if q.required
        )

    def missing_required(self, round: QuestionRound) -> List[str]:
        return [
            q.id
            for q in round.questions
            if q.required and _is_empty(round.answers.get(q.id))
        ]

    def synthesize_defaults(self, round: QuestionRound) -> Dict[str, AnswerValue]:
        """Deterministic default answer set for a round under the policy."""
        answers: Dict[str, AnswerValue] = dict(round.answers)
        if self.policy == DefaultAnswerPolicy.OMIT:
            return answers
        for question in round.questions:
            if question.id in answers:
                continue
            if question.default_assumption:
                default: AnswerValue = question.default_assumption
            elif isinstance(question, ChoiceQuestion):
                first = question.options[0]
                default = [first] if question.input_type == "checkbox" else first
            else:
                default = NEUTRAL_DEFAULT_ANSWER
            answers[question.id] = default
        return answers

    def skip_round(self, round: QuestionRound) -> QuestionRound:
        """Close a round as skipped. Skipping a skipped round returns it unchanged."""
        if round.skipped_by_user:
            return round
        if not round.is_open:
            raise ValidationError(f"Round {round.round_number} was already answered")
        return round.model_copy(
            update={
                "answers": self.synthesize_defaults(round),
                "answered_at": utcnow(),
                "skipped_by_user": True,
            }
        )

    @staticmethod
    def answered_pairs(rounds: Sequence[QuestionRound]) -> List[Dict[str, Any]]:
        """Question/answer pairs from closed rounds, in round order."""
        pairs = []
        for r in rounds:
            if r.is_open:
                continue
            for question in r.questions:
                if question.id in r.answers:
                    pairs.append(
                        {
                            "round": r.round_number,
                            "question": question.text,
                            "answer": r.answers[question.id],
                        }
                    )
        return pairs

    @staticmethod
    def unresolved_assumptions(rounds: Sequence[QuestionRound]) -> List[str]:
        """Closed-round questions left unanswered, as "assume a default" signals."""
        assumptions = []
        for r in rounds:
            if r.is_open:
                continue
            for question in r.questions:
                if question.id in r.answers:
                    continue
                hint: Optional[str] = question.default_assumption
                text = f"Assume a reasonable default for: {question.text}"
                assumptions.append(f"{text} ({hint})" if hint else text)
        return assumptions
