"""Tests for the workflow engine."""

import asyncio

import pytest

from ticket_forge.errors import ConcurrentModificationError, NotFoundError, ValidationError
from ticket_forge.workflow.models import INSTANCE_COLLECTION, InstanceStatus, OwnerScope, StepStatus

ANSWERS = {"format": "CSV", "limits": "5,000 rows"}


def assert_invariants(engine, instance_id, owner):
    engine.get_instance(instance_id, owner).check_invariants()


class TestHappyPath:
    """Single ticket, answered questions, high-confidence result."""

    @pytest.mark.asyncio
    async def test_start_creates_pending_instance(self, engine, owner):
        instance_id = await engine.start("1", owner)
        snapshot = engine.get_snapshot(instance_id, owner)

        assert snapshot.status == InstanceStatus.PENDING
        assert snapshot.current_step_index == 0
        assert [s.key for s in snapshot.steps] == [
            "gather_context",
            "analyze",
            "clarify",
            "synthesize",
            "finalize",
        ]
        assert all(s.status == StepStatus.PENDING for s in snapshot.steps)

    @pytest.mark.asyncio
    async def test_full_run_completes_with_high_confidence(self, engine, reasoning, owner):
        instance_id = await engine.start("1", owner)

        snapshot = await engine.advance(instance_id, owner)
        assert snapshot.steps[0].status == StepStatus.COMPLETE
        assert snapshot.current_step_index == 1
        assert_invariants(engine, instance_id, owner)

        snapshot = await engine.advance(instance_id, owner)
        assert snapshot.steps[1].status == StepStatus.COMPLETE
        assert_invariants(engine, instance_id, owner)

        snapshot = await engine.advance(instance_id, owner)
        assert snapshot.status == InstanceStatus.SUSPENDED
        assert snapshot.steps[2].status == StepStatus.SUSPENDED
        assert len(snapshot.open_round.questions) == 2
        assert snapshot.current_step_index == 2
        assert_invariants(engine, instance_id, owner)

        snapshot = await engine.submit_answers(instance_id, owner, 1, ANSWERS)
        assert snapshot.status == InstanceStatus.PENDING
        assert snapshot.rounds[0].answers == ANSWERS
        assert snapshot.rounds[0].answered_at is not None
        assert_invariants(engine, instance_id, owner)

        snapshot = await engine.drive(instance_id, owner)
        assert snapshot.status == InstanceStatus.COMPLETE
        assert snapshot.current_step_index == len(snapshot.steps)
        assert snapshot.quality["overall"] == 85.0
        assert snapshot.quality["passed"] is True
        assert snapshot.quality["gate"] == "high_confidence"
        assert_invariants(engine, instance_id, owner)

        spec_call = [c for c in reasoning.calls if c["stage"] == "specification"][0]
        assert {"round": 1, "question": "Which export format should be supported?", "answer": "CSV"} in spec_call["answers"]

    @pytest.mark.asyncio
    async def test_step_details_are_recorded(self, engine, owner):
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)
        snapshot = await engine.submit_answers(instance_id, owner, 1, ANSWERS)
        snapshot = await engine.drive(instance_id, owner)

        details = {s.key: s.details for s in snapshot.steps}
        assert details["gather_context"] == "Read 2 of 3 repository files"
        assert details["finalize"].startswith("Validation complete: 2/2 criteria passed")

    @pytest.mark.asyncio
    async def test_context_respects_file_cap(self, make_engine, reasoning, repository, owner):
        engine = make_engine(reasoning, max_context_files=1)
        instance_id = await engine.start("1", owner)
        snapshot = await engine.advance(instance_id, owner)

        assert repository.requested == ["package.json"]
        assert list(snapshot.outputs["gather_context"]["files"]) == ["package.json"]
        assert snapshot.outputs["gather_context"]["tree_size"] == 3


class TestQualityGate:
    """Finalization is blocked below the creation threshold."""

    @pytest.mark.asyncio
    async def test_low_score_blocks_with_blocker_text(
        self, make_engine, reasoning, make_quality, owner
    ):
        quality = make_quality(0.42, ["Acceptance criteria lack measurable outcomes"])
        engine = make_engine(reasoning, quality=quality)
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)
        await engine.submit_answers(instance_id, owner, 1, ANSWERS)

        snapshot = await engine.drive(instance_id, owner)

        assert snapshot.status == InstanceStatus.FAILED
        assert snapshot.failed_step.key == "finalize"
        assert "Acceptance criteria lack measurable outcomes" in snapshot.failed_step.error
        assert snapshot.quality["overall"] == 42.0
        assert snapshot.quality["passed"] is False
        assert snapshot.quality["gate"] == "blocked"
        assert snapshot.current_step_index == 4
        assert_invariants(engine, instance_id, owner)


class TestFailureAndRetry:
    """Step failures are recorded on the step and retried in place."""

    @pytest.mark.asyncio
    async def test_failure_is_retained_and_retry_reruns_only_that_step(
        self, make_engine, make_reasoning, owner
    ):
        failures = {"analysis": 1}

        def fail_once(context):
            if failures.get(context["stage"]):
                failures[context["stage"]] -= 1
                return "upstream model unavailable"
            return None

        reasoning = make_reasoning(fail_when=fail_once)
        engine = make_engine(reasoning)
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        snapshot = await engine.advance(instance_id, owner)
        assert snapshot.status == InstanceStatus.FAILED
        assert snapshot.steps[1].status == StepStatus.FAILED
        assert snapshot.steps[1].error == "upstream model unavailable"
        assert snapshot.current_step_index == 1
        assert_invariants(engine, instance_id, owner)

        # Advancing a failed instance changes nothing
        unchanged = await engine.advance(instance_id, owner)
        assert unchanged.version == snapshot.version
        assert reasoning.stages() == ["analysis"]

        snapshot = await engine.retry_step(instance_id, owner, 2)
        assert snapshot.steps[1].status == StepStatus.COMPLETE
        assert snapshot.steps[1].error is None
        assert snapshot.steps[1].attempts == 2
        assert snapshot.steps[0].attempts == 1
        assert snapshot.current_step_index == 2
        assert reasoning.stages() == ["analysis", "analysis"]

    @pytest.mark.asyncio
    async def test_retry_rejects_step_that_has_not_failed(self, engine, owner):
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        with pytest.raises(ValidationError, match="not retryable"):
            await engine.retry_step(instance_id, owner, 1)
        with pytest.raises(ValidationError, match="Unknown step"):
            await engine.retry_step(instance_id, owner, 42)

    @pytest.mark.asyncio
    async def test_deadline_expiry_is_a_step_failure(self, make_engine, make_reasoning, owner):
        engine = make_engine(make_reasoning(delay=0.5))
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        snapshot = await engine.advance(instance_id, owner, deadline=0.01)

        assert snapshot.status == InstanceStatus.FAILED
        assert snapshot.steps[1].error == "Step timed out after 0.01 seconds"

    @pytest.mark.asyncio
    async def test_malformed_questions_fail_the_question_step(
        self, make_engine, make_reasoning, owner
    ):
        reasoning = make_reasoning(
            questions_by_round={1: [{"id": "q1", "text": "Pick one", "input_type": "radio"}]}
        )
        engine = make_engine(reasoning)
        instance_id = await engine.start("1", owner)

        snapshot = await engine.drive(instance_id, owner)
        assert snapshot.status == InstanceStatus.FAILED
        assert snapshot.failed_step.key == "clarify"
        assert snapshot.failed_step.error.startswith("Question 1 is malformed")
        assert snapshot.rounds == []

        reasoning.questions_by_round = {
            1: [{"id": "q1", "text": "Pick one", "input_type": "radio", "options": ["a", "b"]}]
        }
        snapshot = await engine.retry_step(instance_id, owner, 3)
        assert snapshot.status == InstanceStatus.SUSPENDED
        assert snapshot.open_round.round_number == 1


class TestResumability:
    """A fresh engine over the same store resumes where the last one stopped."""

    @pytest.mark.asyncio
    async def test_restart_resumes_without_repeating_steps(
        self, make_engine, make_reasoning, owner
    ):
        first = make_engine(make_reasoning())
        instance_id = await first.start("1", owner)
        await first.advance(instance_id, owner)
        await first.advance(instance_id, owner)

        reasoning = make_reasoning()
        second = make_engine(reasoning)
        assert second.get_snapshot(instance_id, owner).current_step_index == 2

        snapshot = await second.advance(instance_id, owner)

        assert reasoning.stages() == ["questions"]
        assert [s.attempts for s in snapshot.steps[:3]] == [1, 1, 1]
        assert snapshot.status == InstanceStatus.SUSPENDED
        assert snapshot.outputs["analyze"] == {"affected_areas": ["billing"], "risks": []}


class TestQuestionRounds:
    """Answer submission, skipping and the round cap."""

    @pytest.mark.asyncio
    async def test_skip_is_idempotent(self, make_engine, reasoning, owner):
        engine = make_engine(reasoning, default_answer_policy="neutral")
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)

        first = await engine.skip_questions(instance_id, owner)
        second = await engine.skip_questions(instance_id, owner)

        expected = {"format": "CSV", "limits": "10,000 rows"}
        assert first.rounds[-1].skipped_by_user is True
        assert first.rounds[-1].answers == expected
        assert second.rounds[-1].answers == expected
        assert second.version == first.version
        assert first.active_step.key == "synthesize"

    @pytest.mark.asyncio
    async def test_skip_with_omit_policy_passes_assumptions_to_synthesis(
        self, engine, reasoning, owner
    ):
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)

        skipped = await engine.skip_questions(instance_id, owner)
        assert skipped.rounds[-1].answers == {}

        snapshot = await engine.drive(instance_id, owner)
        assert snapshot.status == InstanceStatus.COMPLETE
        spec_call = [c for c in reasoning.calls if c["stage"] == "specification"][0]
        assert len(spec_call["assume_defaults"]) == 2
        assert set(spec_call["assume_defaults"]) <= set(snapshot.specification["assumptions"])

    @pytest.mark.asyncio
    async def test_skip_without_questions_is_rejected(self, engine, owner):
        instance_id = await engine.start("1", owner)
        with pytest.raises(ValidationError, match="No question round to skip"):
            await engine.skip_questions(instance_id, owner)

    @pytest.mark.asyncio
    async def test_round_mismatch_is_rejected_without_mutation(self, engine, owner):
        instance_id = await engine.start("1", owner)
        suspended = await engine.drive(instance_id, owner)

        with pytest.raises(ValidationError, match="Round mismatch: expected 1, got 2"):
            await engine.submit_answers(instance_id, owner, 2, ANSWERS)

        assert engine.get_snapshot(instance_id, owner).version == suspended.version

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "answers, message",
        [
            ({"format": "CSV"}, "Required questions not answered: limits"),
            ({"format": "PDF", "limits": "10"}, "has no option"),
            ({"format": "CSV", "limits": "10", "color": "red"}, "Unknown question id"),
            ({"format": ["CSV"], "limits": "10"}, "expects a single option"),
        ],
    )
    async def test_invalid_answers_are_rejected(self, engine, owner, answers, message):
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)

        with pytest.raises(ValidationError, match=message):
            await engine.submit_answers(instance_id, owner, 1, answers)
        assert engine.get_snapshot(instance_id, owner).status == InstanceStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_submit_without_open_round_is_rejected(self, engine, owner):
        instance_id = await engine.start("1", owner)
        with pytest.raises(ValidationError, match="no open question round"):
            await engine.submit_answers(instance_id, owner, 1, ANSWERS)

    @pytest.mark.asyncio
    async def test_round_cap_moves_on_to_synthesis(self, make_engine, make_reasoning, owner):
        question = {"id": "q", "text": "Anything else?", "input_type": "text"}
        reasoning = make_reasoning(questions_by_round={1: [question], 2: [question], 3: [question]})
        engine = make_engine(reasoning, max_question_rounds=2)
        instance_id = await engine.start("1", owner)

        snapshot = await engine.drive(instance_id, owner)
        assert snapshot.open_round.round_number == 1
        snapshot = await engine.submit_answers(instance_id, owner, 1, {"q": "no"})
        assert snapshot.status == InstanceStatus.PENDING

        snapshot = await engine.drive(instance_id, owner)
        assert snapshot.open_round.round_number == 2
        snapshot = await engine.submit_answers(instance_id, owner, 2, {"q": "still no"})

        assert snapshot.steps[2].status == StepStatus.COMPLETE
        assert snapshot.active_step.key == "synthesize"
        assert reasoning.stages().count("questions") == 2
        assert_invariants(engine, instance_id, owner)

    @pytest.mark.asyncio
    async def test_round_without_questions_completes_question_step(
        self, make_engine, make_reasoning, owner
    ):
        engine = make_engine(make_reasoning(questions_by_round={}))
        instance_id = await engine.start("1", owner)

        snapshot = await engine.drive(instance_id, owner, stop_before="synthesize")

        assert snapshot.status == InstanceStatus.PENDING
        assert snapshot.steps[2].status == StepStatus.COMPLETE
        assert snapshot.steps[2].details == "No further clarification needed"
        assert snapshot.rounds[0].questions == []


class TestConcurrency:
    """Single writer per instance and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_second_mutation_during_advance_is_rejected(self, engine, reasoning, owner):
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        reasoning.gate = asyncio.Event()
        in_flight = asyncio.create_task(engine.advance(instance_id, owner))
        await reasoning.entered.wait()

        with pytest.raises(ConcurrentModificationError):
            await engine.advance(instance_id, owner)
        with pytest.raises(ConcurrentModificationError):
            await engine.retry_step(instance_id, owner, 2)

        reasoning.gate.set()
        snapshot = await in_flight

        assert snapshot.steps[1].status == StepStatus.COMPLETE
        assert snapshot.steps[1].attempts == 1
        assert reasoning.stages() == ["analysis"]

    @pytest.mark.asyncio
    async def test_cancel_discards_in_flight_result(self, engine, reasoning, owner):
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        reasoning.gate = asyncio.Event()
        in_flight = asyncio.create_task(engine.advance(instance_id, owner))
        await reasoning.entered.wait()
        await engine.cancel(instance_id, owner)
        reasoning.gate.set()
        snapshot = await in_flight

        assert snapshot.status == InstanceStatus.CANCELLED
        assert snapshot.steps[1].status == StepStatus.PENDING
        assert "analyze" not in snapshot.outputs
        assert snapshot.current_step_index == 1

        again = await engine.advance(instance_id, owner)
        assert again.status == InstanceStatus.CANCELLED
        assert reasoning.stages() == ["analysis"]
        assert_invariants(engine, instance_id, owner)

    @pytest.mark.asyncio
    async def test_caller_timeout_leaves_step_pending(self, engine, reasoning, owner):
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        reasoning.gate = asyncio.Event()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.advance(instance_id, owner), 0.05)

        snapshot = engine.get_snapshot(instance_id, owner)
        assert snapshot.status == InstanceStatus.PENDING
        assert snapshot.steps[1].status == StepStatus.PENDING
        assert snapshot.steps[1].attempts == 1
        assert_invariants(engine, instance_id, owner)

        reasoning.gate = None
        snapshot = await engine.advance(instance_id, owner)
        assert snapshot.steps[1].status == StepStatus.COMPLETE
        assert snapshot.steps[1].attempts == 2

    @pytest.mark.asyncio
    async def test_cancel_after_caller_timeout_is_terminal(self, engine, reasoning, owner):
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        reasoning.gate = asyncio.Event()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.advance(instance_id, owner), 0.05)
        await engine.cancel(instance_id, owner)

        snapshot = engine.get_snapshot(instance_id, owner)
        assert snapshot.status == InstanceStatus.CANCELLED
        assert (await engine.advance(instance_id, owner)).status == InstanceStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_recovers_step_left_in_progress(self, engine, store, owner):
        instance_id = await engine.start("1", owner)
        await engine.advance(instance_id, owner)

        # A process that died mid-step leaves the step in progress
        crashed = engine.get_instance(instance_id, owner)
        crashed.steps[1].status = StepStatus.IN_PROGRESS
        store.put(
            INSTANCE_COLLECTION,
            instance_id,
            crashed.model_dump(mode="json"),
            expected_version=crashed.version,
            scope=owner.key,
        )
        assert engine.get_snapshot(instance_id, owner).status == InstanceStatus.RUNNING

        await engine.cancel(instance_id, owner)

        snapshot = engine.get_snapshot(instance_id, owner)
        assert snapshot.status == InstanceStatus.CANCELLED
        assert snapshot.steps[1].status == StepStatus.PENDING
        assert_invariants(engine, instance_id, owner)

    @pytest.mark.asyncio
    async def test_cancel_from_another_engine_discards_in_flight_result(
        self, make_engine, make_reasoning, reasoning, owner
    ):
        running = make_engine(reasoning)
        other = make_engine(make_reasoning())
        instance_id = await running.start("1", owner)
        await running.advance(instance_id, owner)

        reasoning.gate = asyncio.Event()
        in_flight = asyncio.create_task(running.advance(instance_id, owner))
        await reasoning.entered.wait()

        await other.cancel(instance_id, owner)
        assert other.get_snapshot(instance_id, owner).status == InstanceStatus.CANCELLED

        reasoning.gate.set()
        snapshot = await in_flight

        assert snapshot.status == InstanceStatus.CANCELLED
        assert snapshot.steps[1].status == StepStatus.PENDING
        assert "analyze" not in snapshot.outputs
        stored = running.get_snapshot(instance_id, owner)
        assert stored.status == InstanceStatus.CANCELLED
        assert stored.version == snapshot.version
        assert_invariants(running, instance_id, owner)

    @pytest.mark.asyncio
    async def test_cancel_idle_instance_blocks_further_input(self, engine, owner):
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)

        await engine.cancel(instance_id, owner)

        assert engine.get_snapshot(instance_id, owner).status == InstanceStatus.CANCELLED
        with pytest.raises(ValidationError, match="cancelled"):
            await engine.submit_answers(instance_id, owner, 1, ANSWERS)

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_a_no_op(self, engine, owner):
        instance_id = await engine.start("1", owner)
        await engine.drive(instance_id, owner)
        await engine.skip_questions(instance_id, owner)
        completed = await engine.drive(instance_id, owner)

        await engine.cancel(instance_id, owner)

        snapshot = engine.get_snapshot(instance_id, owner)
        assert snapshot.status == InstanceStatus.COMPLETE
        assert snapshot.version == completed.version


class TestOwnership:
    """Entry points only see instances owned by the caller."""

    @pytest.mark.asyncio
    async def test_other_workspace_cannot_see_instance(self, engine, owner):
        instance_id = await engine.start("1", owner)
        stranger = OwnerScope(workspace_id="ws-2", user_id="user-9")

        with pytest.raises(NotFoundError):
            engine.get_snapshot(instance_id, stranger)
        with pytest.raises(NotFoundError):
            await engine.advance(instance_id, stranger)

    @pytest.mark.asyncio
    async def test_start_rejects_unknown_or_empty_ticket(self, engine, owner):
        with pytest.raises(NotFoundError):
            await engine.start("missing", owner)
        with pytest.raises(ValidationError):
            await engine.start("  ", owner)

    @pytest.mark.asyncio
    async def test_latest_for_ticket(self, engine, owner):
        await engine.start("1", owner)
        newest = await engine.start("1", owner)
        await engine.start("2", owner)

        assert engine.latest_for_ticket("1", owner).instance_id == newest
        with pytest.raises(NotFoundError):
            engine.latest_for_ticket("5", owner)
