"""Tests for the question round manager."""

import pytest

from ticket_forge.errors import GenerationError, ValidationError
from ticket_forge.workflow.models import OwnerScope, QuestionRound, WorkflowInstance
from ticket_forge.workflow.pipeline import build_steps
from ticket_forge.workflow.questions import (
    NEUTRAL_DEFAULT_ANSWER,
    DefaultAnswerPolicy,
    QuestionRoundManager,
)

MIXED_ROUND = {
    "round_number": 1,
    "questions": [
        {"id": "format", "text": "Which format?", "input_type": "radio", "options": ["CSV", "XLSX"]},
        {"id": "columns", "text": "Which columns?", "input_type": "checkbox", "options": ["id", "amount", "date"]},
        {"id": "notes", "text": "Anything else?", "input_type": "multiline", "required": False},
        {"id": "limits", "text": "Row limit?", "input_type": "text", "default_assumption": "10,000 rows"},
    ],
}


@pytest.fixture
def instance(owner) -> WorkflowInstance:
    return WorkflowInstance(id="wf-1", ticket_id="1", owner=owner, steps=build_steps())


@pytest.fixture
def open_round() -> QuestionRound:
    return QuestionRound.model_validate(MIXED_ROUND)


@pytest.fixture
def manager(reasoning) -> QuestionRoundManager:
    return QuestionRoundManager(reasoning)


class TestGenerateRound:
    """Round generation validates model output at the boundary."""

    @pytest.mark.asyncio
    async def test_generates_open_round(self, manager, reasoning, instance):
        round_ = await manager.generate_round(instance, [])

        assert round_.round_number == 1
        assert round_.is_open
        assert [q.id for q in round_.questions] == ["format", "limits"]
        assert reasoning.calls[0]["stage"] == "questions"
        assert reasoning.calls[0]["max_rounds"] == 3

    @pytest.mark.asyncio
    async def test_normalizes_camel_case_and_assigns_ids(self, make_reasoning, instance):
        reasoning = make_reasoning(
            questions_by_round={
                1: [
                    {
                        "text": "Anything else?",
                        "inputType": "text",
                        "options": [],
                        "defaultAssumption": "Nothing else",
                    }
                ]
            }
        )
        round_ = await QuestionRoundManager(reasoning).generate_round(instance, [])

        question = round_.questions[0]
        assert question.id == "r1q1"
        assert question.input_type == "text"
        assert question.default_assumption == "Nothing else"

    @pytest.mark.asyncio
    async def test_truncates_to_five_questions(self, make_reasoning, instance):
        many = [
            {"id": f"q{i}", "text": f"Question {i}?", "input_type": "text"} for i in range(8)
        ]
        reasoning = make_reasoning(questions_by_round={1: many})

        round_ = await QuestionRoundManager(reasoning).generate_round(instance, [])

        assert [q.id for q in round_.questions] == ["q0", "q1", "q2", "q3", "q4"]

    @pytest.mark.asyncio
    async def test_empty_round_is_closed(self, make_reasoning, instance):
        reasoning = make_reasoning(questions_by_round={})
        round_ = await QuestionRoundManager(reasoning).generate_round(instance, [])

        assert round_.questions == []
        assert round_.is_open is False

    @pytest.mark.asyncio
    async def test_missing_question_list_is_rejected(self, make_reasoning, instance):
        reasoning = make_reasoning(questions_by_round={1: "ask nothing"})
        with pytest.raises(GenerationError, match="'questions' list"):
            await QuestionRoundManager(reasoning).generate_round(instance, [])

    @pytest.mark.asyncio
    async def test_round_cap_skips_the_reasoning_call(self, manager, reasoning, instance):
        instance.rounds = [
            QuestionRound(round_number=n, answered_at=instance.created_at) for n in (1, 2, 3)
        ]

        round_ = await manager.generate_round(instance, [])

        assert round_.round_number == 4
        assert round_.is_open is False
        assert reasoning.calls == []


class TestRecordAnswers:
    def test_records_and_closes(self, manager, open_round):
        closed = manager.record_answers(
            open_round,
            1,
            {"format": "XLSX", "columns": "amount", "notes": "  ", "limits": " 500 "},
        )

        assert closed.is_open is False
        assert closed.answers == {"format": "XLSX", "columns": ["amount"], "limits": "500"}
        assert open_round.is_open is True
        assert manager.is_complete(closed)
        assert manager.missing_required(closed) == []

    def test_checkbox_rejects_unknown_option(self, manager, open_round):
        with pytest.raises(ValidationError, match="has no option"):
            manager.record_answers(open_round, 1, {"columns": ["id", "tax"]})

    def test_text_rejects_non_string(self, manager, open_round):
        with pytest.raises(ValidationError, match="expects text"):
            manager.record_answers(open_round, 1, {"limits": 500})

    def test_closed_round_rejects_answers(self, manager, open_round):
        closed = manager.record_answers(open_round, 1, {"format": "CSV"})
        with pytest.raises(ValidationError, match="already closed"):
            manager.record_answers(closed, 1, {"format": "XLSX"})

    def test_missing_required(self, manager, open_round):
        closed = manager.record_answers(open_round, 1, {"format": "CSV"})

        assert manager.missing_required(closed) == ["columns", "limits"]
        assert manager.is_complete(closed) is False


class TestDefaults:
    """Default answers under each policy."""

    def test_neutral_policy_fills_every_question(self, reasoning, open_round):
        manager = QuestionRoundManager(reasoning, policy=DefaultAnswerPolicy.NEUTRAL)

        assert manager.synthesize_defaults(open_round) == {
            "format": "CSV",
            "columns": ["id"],
            "notes": NEUTRAL_DEFAULT_ANSWER,
            "limits": "10,000 rows",
        }

    def test_omit_policy_keeps_only_given_answers(self, manager, open_round):
        assert manager.synthesize_defaults(open_round) == {}

    def test_skip_round_is_idempotent(self, reasoning, open_round):
        manager = QuestionRoundManager(reasoning, policy="neutral")

        skipped = manager.skip_round(open_round)

        assert skipped.skipped_by_user is True
        assert manager.is_complete(skipped)
        assert manager.skip_round(skipped) is skipped

    def test_answered_round_cannot_be_skipped(self, manager, open_round):
        closed = manager.record_answers(open_round, 1, {"format": "CSV"})
        with pytest.raises(ValidationError, match="already answered"):
            manager.skip_round(closed)

    def test_unresolved_assumptions(self, manager, open_round):
        skipped = manager.skip_round(open_round)

        assert manager.unresolved_assumptions([skipped]) == [
            "Assume a reasonable default for: Which format?",
            "Assume a reasonable default for: Which columns?",
            "Assume a reasonable default for: Anything else?",
            "Assume a reasonable default for: Row limit? (10,000 rows)",
        ]
        # Open rounds contribute nothing yet
        assert manager.unresolved_assumptions([open_round]) == []

    def test_answered_pairs(self, manager, open_round):
        closed = manager.record_answers(open_round, 1, {"format": "CSV", "limits": "5"})

        assert QuestionRoundManager.answered_pairs([closed]) == [
            {"round": 1, "question": "Which format?", "answer": "CSV"},
            {"round": 1, "question": "Row limit?", "answer": "5"},
        ]
