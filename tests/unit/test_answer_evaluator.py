"""
Unit Tests for the Answer Evaluator

Walks the multiple_choice -> example -> next concept state machine against
the in-memory store.
"""

import json

import pytest
import pytest_asyncio

from oaktree.answer_evaluator import (
    COMPLETION_MESSAGE,
    GENERIC_CHOICE_HINT,
    WRONG_CHOICE_FEEDBACK,
    AnswerEvaluator,
    wrong_choice_hint,
)
from oaktree.errors import (
    GenerationFailed,
    InvalidAnswer,
    MissingFields,
    PhaseMismatch,
    SessionNotActive,
    SessionNotFound,
)
from oaktree.session_manager import SessionManager
from oaktree.session_state import ConceptQuestion, decode_state

from conftest import ScriptedGenerator, grade_reply, make_question, questions_reply


class TestAnswerEvaluator:
    """Test suite for AnswerEvaluator.submit_answer."""

    @pytest_asyncio.fixture
    async def session_id(self, store, lesson_setup):
        manager = SessionManager(store, ScriptedGenerator([questions_reply(["Photosynthesis", "Respiration"])]))
        result = await manager.start_session(lesson_setup["student"]["id"], lesson_setup["lesson"]["id"])
        return result["sessionId"]

    @pytest.fixture
    def grader(self):
        return ScriptedGenerator()

    @pytest.fixture
    def evaluator(self, store, grader):
        return AnswerEvaluator(store, grader)

    def state_of(self, fake_supabase, session_id):
        return decode_state(fake_supabase.rows("chat_sessions", id=session_id)[0]["session_state"])

    @pytest.mark.asyncio
    async def test_wrong_choice_leaves_state_alone(self, evaluator, fake_supabase, session_id):
        """Test that a wrong option records an attempt and a hint but does not move the quiz."""
        version_before = fake_supabase.rows("chat_sessions", id=session_id)[0]["version"]

        result = await evaluator.submit_answer(session_id, "a", "multiple_choice")

        assert result["isCorrect"] is False
        assert result["feedback"] == WRONG_CHOICE_FEEDBACK
        assert result["hint"] == GENERIC_CHOICE_HINT
        assert set(result["options"]) == {"a", "b", "c"}
        assert result["currentPhase"] == "multiple_choice"
        assert fake_supabase.rows("chat_sessions", id=session_id)[0]["version"] == version_before

        attempts = fake_supabase.rows("multiple_choice_attempts", session_id=session_id)
        assert [(a["concept"], a["selected_option"], a["is_correct"]) for a in attempts] == [
            ("Photosynthesis", "a", False)
        ]
        hints = fake_supabase.rows("dynamic_hints", session_id=session_id)
        assert hints[0]["answer_type"] == "multiple_choice"

        kinds = [m["kind"] for m in fake_supabase.rows("chat_messages", session_id=session_id)]
        assert kinds == ["question", "choice_answer", "feedback"]

    @pytest.mark.asyncio
    async def test_correct_choice_moves_to_example(self, evaluator, fake_supabase, session_id):
        """Test that the right option advances to the example phase of the same concept."""
        result = await evaluator.submit_answer(session_id, " B ", "multiple_choice")

        assert result["isCorrect"] is True
        assert result["currentPhase"] == "example"
        assert "example of Photosynthesis" in result["examplePrompt"]
        state = self.state_of(fake_supabase, session_id)
        assert state.current_question_index == 0
        assert state.current_phase.value == "example"

        attempts = fake_supabase.rows("multiple_choice_attempts", session_id=session_id)
        assert attempts[-1]["is_correct"] is True
        progress = fake_supabase.rows("concept_progress", session_id=session_id)
        assert progress[0]["phase"] == "example"
        assert progress[0]["completed"] is False

        messages = fake_supabase.rows("chat_messages", session_id=session_id)
        assert [m["kind"] for m in messages] == ["question", "choice_answer", "feedback", "question"]
        assert messages[-1]["content"]["phase"] == "example"

    @pytest.mark.asyncio
    async def test_phase_mismatch(self, evaluator, session_id):
        """Test that an example answer during multiple choice is refused."""
        with pytest.raises(PhaseMismatch) as exc_info:
            await evaluator.submit_answer(session_id, "My example", "example")

        assert exc_info.value.extra["currentPhase"] == "multiple_choice"

    @pytest.mark.asyncio
    async def test_wrong_example_keeps_phase(self, evaluator, grader, fake_supabase, session_id):
        """Test that a rejected example keeps the example phase and logs the grader hint."""
        await evaluator.submit_answer(session_id, "b", "multiple_choice")
        grader.replies.append(grade_reply(False, "That is about animals.", "Think about leaves."))

        result = await evaluator.submit_answer(session_id, "A dog eating", "example")

        assert result["isCorrect"] is False
        assert result["hint"] == "Think about leaves."
        assert result["currentPhase"] == "example"
        assert self.state_of(fake_supabase, session_id).current_phase.value == "example"
        hints = fake_supabase.rows("dynamic_hints", session_id=session_id)
        assert hints[-1]["answer_type"] == "example"
        assert "Sage" in grader.calls[0]["system"]

    @pytest.mark.asyncio
    async def test_correct_example_moves_to_next_concept(self, evaluator, grader, fake_supabase, session_id):
        await evaluator.submit_answer(session_id, "b", "multiple_choice")
        grader.replies.append(grade_reply(True))

        result = await evaluator.submit_answer(session_id, "A cactus in the sun", "example")

        assert result["isCorrect"] is True
        assert result["isComplete"] is False
        assert result["currentPhase"] == "multiple_choice"
        assert result["nextQuestion"]["concept"] == "Respiration"
        assert result["progress"] == {"current": 2, "total": 2, "percentage": 50}
        progress = fake_supabase.rows("concept_progress", session_id=session_id)
        assert progress[0]["completed"] is True

    @pytest.mark.asyncio
    async def test_full_walk_completes_session(self, evaluator, grader, fake_supabase, session_id):
        """Test that answering every concept completes the session with a terminal message."""
        grader.replies.extend([grade_reply(True), grade_reply(True)])

        for _ in range(2):
            await evaluator.submit_answer(session_id, "b", "multiple_choice")
            result = await evaluator.submit_answer(session_id, "An example", "example")

        assert result["isComplete"] is True
        assert result["currentPhase"] == "completed"
        assert result["completionMessage"] == COMPLETION_MESSAGE
        assert result["progress"]["percentage"] == 100

        session = fake_supabase.rows("chat_sessions", id=session_id)[0]
        assert session["status"] == "completed"
        assert session["ended_at"]
        messages = fake_supabase.rows("chat_messages", session_id=session_id)
        assert messages[-1]["is_terminal"] is True
        assert sum(1 for m in messages if m["is_terminal"]) == 1

        with pytest.raises(SessionNotActive) as exc_info:
            await evaluator.submit_answer(session_id, "b", "multiple_choice")
        assert exc_info.value.extra["isComplete"] is True

    @pytest.mark.asyncio
    async def test_unparseable_grade_is_an_error(self, evaluator, grader, fake_supabase, session_id):
        """Test that an unreadable grader reply fails without moving the quiz."""
        await evaluator.submit_answer(session_id, "b", "multiple_choice")
        grader.replies.append("Looks good to me!")

        with pytest.raises(GenerationFailed):
            await evaluator.submit_answer(session_id, "An example", "example")

        assert self.state_of(fake_supabase, session_id).current_phase.value == "example"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer, answer_type, error", [
        ("", "multiple_choice", MissingFields),
        ("b", "", MissingFields),
        ("b", "essay", InvalidAnswer),
        ("d", "multiple_choice", InvalidAnswer),
    ])
    async def test_invalid_input(self, evaluator, session_id, answer, answer_type, error):
        with pytest.raises(error):
            await evaluator.submit_answer(session_id, answer, answer_type)

    @pytest.mark.asyncio
    async def test_unknown_session(self, evaluator):
        with pytest.raises(SessionNotFound):
            await evaluator.submit_answer("missing", "b", "multiple_choice")

    @pytest.mark.asyncio
    async def test_archived_session_is_not_active(self, evaluator, store, session_id):
        await store.update_session(session_id, {"status": "completed"})

        with pytest.raises(SessionNotActive):
            await evaluator.submit_answer(session_id, "b", "multiple_choice")

    @pytest.mark.asyncio
    async def test_hint_log_failure_is_tolerated(self, evaluator, fake_supabase, session_id):
        """Test that a failing hint insert does not fail the answer."""
        fake_supabase.fail("dynamic_hints", "insert")

        result = await evaluator.submit_answer(session_id, "c", "multiple_choice")

        assert result["isCorrect"] is False


class TestWrongChoiceHint:
    def test_uses_concept_description(self):
        question = ConceptQuestion.from_dict(make_question("Osmosis", description="Water moves across membranes"))

        assert wrong_choice_hint(question) == "Remember, Osmosis is about this: Water moves across membranes"

    def test_generic_without_description(self):
        question = ConceptQuestion.from_dict(make_question("Osmosis"))

        assert wrong_choice_hint(question) == GENERIC_CHOICE_HINT

    @pytest.mark.asyncio
    async def test_string_verdict_is_understood(self, store):
        """Test that a grader answering "true" as a string still counts."""
        grader = ScriptedGenerator([json.dumps({"isCorrect": "true", "feedback": ""})])
        question = ConceptQuestion.from_dict(make_question("Osmosis"))

        grade = await AnswerEvaluator(store, grader).grade_example(question, "Raisins swelling")

        assert grade["isCorrect"] is True
        assert grade["feedback"] == "Great example!"
