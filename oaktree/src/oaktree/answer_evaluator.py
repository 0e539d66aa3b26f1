"""
Answer Evaluator

The quiz state machine. Each concept is asked as a multiple-choice question
and, once answered correctly, as a request for an example:

    multiple_choice --correct--> example --correct--> next concept (multiple_choice)
         |  ^                      |  ^
         +--+ wrong                +--+ wrong

Wrong answers never move the state; they only leave an attempt row (for
multiple choice), a hint and messages behind. Every state change is a
compare-and-swap write of the whole SessionState.
"""

import logging
from typing import Any, Dict, Optional

from openai import OpenAIError
from postgrest.exceptions import APIError

from oaktree.config import ANALYSIS_MODEL
from oaktree.errors import (
    GenerationFailed,
    InvalidAnswer,
    MissingFields,
    PhaseMismatch,
    SessionNotActive,
    SessionNotFound,
)
from oaktree.messages import (
    ChoiceAnswerBody,
    ExampleAnswerBody,
    FeedbackBody,
    PlainTextBody,
    choice_question_body,
    example_request_body,
)
from oaktree.session_state import OPTION_KEYS, ConceptQuestion, Phase, SessionState, decode_state
from oaktree.store import STATUS_ACTIVE, STATUS_COMPLETED, OakTreeStore, utcnow
from oaktree.text_generator import TextGenerator, parse_json_reply

logger = logging.getLogger(__name__)

WRONG_CHOICE_FEEDBACK = "Hmm, not quite! Let's give that one another try."
GENERIC_CHOICE_HINT = "Read each option carefully and think back to what you learned in class."
COMPLETION_MESSAGE = (
    "Congratulations! You've worked through every concept in this lesson. "
    "Great job, your teacher will be able to see your progress!"
)

GRADER_SYSTEM_PROMPT = (
    "You are Sage, a wise and encouraging owl who checks students' examples. "
    "You always answer with a single JSON object."
)

GRADER_PROMPT_TEMPLATE = """A student was asked to give a real-life example of a concept.

CONCEPT: {concept}
CONCEPT DESCRIPTION: {description}
WHAT THE STUDENT WAS ASKED: {prompt}
HINT THE STUDENT WAS GIVEN: {hint}

STUDENT'S EXAMPLE:
{answer}

Decide whether the example genuinely illustrates the concept. Be generous with
informal wording but strict about the idea itself. Do not accept the example the
question already gave.

Return a JSON object:
{{
  "isCorrect": true or false,
  "feedback": "one or two friendly sentences to the student",
  "hint": "if incorrect, a short nudge towards a valid example, otherwise empty"
}}"""


def wrong_choice_hint(question: ConceptQuestion) -> str:
    """Concept-specific hint when the question carries a description, generic otherwise."""
    if question.concept_description.strip():
        return f"Remember, {question.concept} is about this: {question.concept_description.strip()}"
    return GENERIC_CHOICE_HINT


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "correct")
    return bool(value)


class AnswerEvaluator:
    """Applies one student answer to a session."""

    def __init__(self, store: OakTreeStore, text_generator: TextGenerator, model: str = ANALYSIS_MODEL):
        self.store = store
        self.text_generator = text_generator
        self.model = model

    async def submit_answer(self, session_id: str, answer: Optional[str], answer_type: str) -> Dict[str, Any]:
        """
        Evaluate `answer` against the session's current question.

        Args:
            session_id: chat session id
            answer: the option letter, or the example text
            answer_type: "multiple_choice" or "example"; must match the current phase

        Raises:
            MissingFields, InvalidAnswer, SessionNotFound, SessionNotActive,
            PhaseMismatch, GenerationFailed, StaleSessionState
        """
        if not session_id or answer is None or not str(answer).strip() or not answer_type:
            raise MissingFields("Session ID, answer and answer type are required")
        try:
            phase = Phase(answer_type)
        except ValueError:
            raise InvalidAnswer(f"Unknown answer type '{answer_type}'")

        session = await self.store.get_session(session_id)
        if not session:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.get("status") != STATUS_ACTIVE:
            raise SessionNotActive(
                "This session has already ended",
                isComplete=session.get("status") == STATUS_COMPLETED,
            )

        state = decode_state(session.get("session_state"))
        if not state or not state.questions:
            raise SessionNotActive("This session has no questions yet, start it first")
        if state.is_complete:
            raise SessionNotActive("Every question in this session is already answered", isComplete=True)
        if phase is not state.current_phase:
            raise PhaseMismatch(
                f"Expected a {state.current_phase.value} answer, got {phase.value}",
                currentPhase=state.current_phase.value,
            )

        if phase is Phase.MULTIPLE_CHOICE:
            return await self._answer_choice(session, state, str(answer))
        return await self._answer_example(session, state, str(answer))

    # ==================== Multiple choice ====================

    async def _answer_choice(self, session: Dict[str, Any], state: SessionState, answer: str) -> Dict[str, Any]:
        option = answer.strip().lower()
        if option not in OPTION_KEYS:
            raise InvalidAnswer("Option must be one of a, b or c")

        index = state.current_question_index
        question = state.current_question
        is_correct = option == question.correct_option
        answered = ChoiceAnswerBody(
            option=option,
            text=question.options[option],
            concept=question.concept,
            question_index=index,
        )

        if is_correct:
            new_state = SessionState(
                questions=state.questions,
                current_question_index=index,
                current_phase=Phase.EXAMPLE,
                conversation_history=state.conversation_history,
            )
            session = await self.store.write_session_state(session, new_state)

        await self.store.record_attempt(session, question.concept, option, is_correct)
        logger.info(
            f"{'✅' if is_correct else '❌'} [AnswerEvaluator] Session {session['id']} "
            f"q{index} '{question.concept}': chose {option}"
        )

        if not is_correct:
            hint = wrong_choice_hint(question)
            await self.store.add_messages(session["id"], [
                answered,
                FeedbackBody(
                    text=WRONG_CHOICE_FEEDBACK,
                    is_positive=False,
                    concept=question.concept,
                    question_index=index,
                    hint=hint,
                ),
            ])
            await self._log_hint(session["id"], question.concept, Phase.MULTIPLE_CHOICE, hint)
            return {
                "success": True,
                "isCorrect": False,
                "feedback": WRONG_CHOICE_FEEDBACK,
                "hint": hint,
                "options": dict(question.options),
                "currentPhase": Phase.MULTIPLE_CHOICE.value,
                "progress": state.progress(),
            }

        await self.store.add_messages(session["id"], [
            answered,
            FeedbackBody(
                text=question.correct_explanation,
                is_positive=True,
                concept=question.concept,
                question_index=index,
            ),
            example_request_body(question, index),
        ])
        await self._save_progress(session, question, index, Phase.EXAMPLE, completed=False)
        return {
            "success": True,
            "isCorrect": True,
            "feedback": question.correct_explanation,
            "examplePrompt": question.example_prompt,
            "hint": question.example_hint,
            "currentPhase": Phase.EXAMPLE.value,
            "progress": new_state.progress(),
        }

    # ==================== Example ====================

    async def grade_example(self, question: ConceptQuestion, answer: str) -> Dict[str, Any]:
        """
        Ask the grader whether `answer` is a valid example of the concept.

        Raises:
            GenerationFailed: the grader reply is not a JSON object
        """
        prompt = GRADER_PROMPT_TEMPLATE.format(
            concept=question.concept,
            description=question.concept_description or "(none)",
            prompt=question.example_prompt,
            hint=question.example_hint or "(none)",
            answer=answer,
        )
        try:
            reply = await self.text_generator.generate(
                prompt,
                system=GRADER_SYSTEM_PROMPT,
                json_mode=True,
                model=self.model,
            )
            data = parse_json_reply(reply)
        except (ValueError, OpenAIError) as e:
            logger.error(f"❌ [AnswerEvaluator] Unparseable grader reply: {e}")
            raise GenerationFailed("Failed to evaluate the example, please try again") from e

        is_correct = _as_bool(data.get("isCorrect"))
        feedback = str(data.get("feedback") or "").strip()
        if not feedback:
            feedback = "Great example!" if is_correct else "That's not quite an example of this concept."
        return {
            "isCorrect": is_correct,
            "feedback": feedback,
            "hint": str(data.get("hint") or "").strip(),
        }

    async def _answer_example(self, session: Dict[str, Any], state: SessionState, answer: str) -> Dict[str, Any]:
        index = state.current_question_index
        question = state.current_question
        text = answer.strip()
        grade = await self.grade_example(question, text)
        answered = ExampleAnswerBody(text=text, concept=question.concept, question_index=index)

        logger.info(
            f"{'✅' if grade['isCorrect'] else '❌'} [AnswerEvaluator] Session {session['id']} "
            f"q{index} '{question.concept}': example graded"
        )

        if not grade["isCorrect"]:
            hint = grade["hint"] or question.example_hint
            await self.store.add_messages(session["id"], [
                answered,
                FeedbackBody(
                    text=grade["feedback"],
                    is_positive=False,
                    concept=question.concept,
                    question_index=index,
                    hint=hint or None,
                ),
            ])
            if hint:
                await self._log_hint(session["id"], question.concept, Phase.EXAMPLE, hint)
            return {
                "success": True,
                "isCorrect": False,
                "feedback": grade["feedback"],
                "hint": hint,
                "examplePrompt": question.example_prompt,
                "currentPhase": Phase.EXAMPLE.value,
                "progress": state.progress(),
            }

        new_state = SessionState(
            questions=state.questions,
            current_question_index=index + 1,
            current_phase=Phase.MULTIPLE_CHOICE,
            conversation_history=state.conversation_history,
        )
        complete = new_state.is_complete
        extra = {"status": STATUS_COMPLETED, "ended_at": utcnow()} if complete else {}
        session = await self.store.write_session_state(session, new_state, **extra)

        feedback = FeedbackBody(
            text=grade["feedback"],
            is_positive=True,
            concept=question.concept,
            question_index=index,
        )
        if complete:
            await self.store.add_messages(
                session["id"],
                [answered, feedback, PlainTextBody(COMPLETION_MESSAGE)],
                terminal=True,
            )
        else:
            await self.store.add_messages(session["id"], [
                answered,
                feedback,
                choice_question_body(new_state.current_question, new_state.current_question_index),
            ])
        await self._save_progress(session, question, index, Phase.EXAMPLE, completed=True)

        result = {
            "success": True,
            "isCorrect": True,
            "feedback": grade["feedback"],
            "progress": new_state.progress(),
            "isComplete": complete,
        }
        if complete:
            logger.info(f"🏁 [AnswerEvaluator] Session {session['id']} completed")
            result["currentPhase"] = "completed"
            result["completionMessage"] = COMPLETION_MESSAGE
        else:
            result["currentPhase"] = Phase.MULTIPLE_CHOICE.value
            result["nextQuestion"] = new_state.current_question.to_dict()
        return result

    # ==================== Bookkeeping ====================

    async def _save_progress(
        self,
        session: Dict[str, Any],
        question: ConceptQuestion,
        index: int,
        phase: Phase,
        completed: bool,
    ) -> None:
        try:
            await self.store.save_concept_progress(session, question.concept, index, phase.value, completed)
        except APIError as e:
            logger.warning(f"⚠️ [AnswerEvaluator] Could not save concept progress: {e}")

    async def _log_hint(self, session_id: str, concept: str, phase: Phase, hint: str) -> None:
        try:
            await self.store.add_hint(session_id, concept, phase.value, hint)
        except APIError as e:
            logger.warning(f"⚠️ [AnswerEvaluator] Could not log hint: {e}")
