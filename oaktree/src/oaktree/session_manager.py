"""
Session Lifecycle Manager

Creates, resumes, resets, archives and (legacy flow) ends chat sessions.
At most one session per (student, lesson) is active at a time; the quiz
itself lives in the session's `session_state` column.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAIError
from postgrest.exceptions import APIError

from oaktree.concepts import normalize_key_concepts
from oaktree.config import ANALYSIS_MODEL
from oaktree.errors import (
    LessonNotFound,
    LessonNotReady,
    MissingFields,
    NoQuestionsToReset,
    SessionNotFound,
)
from oaktree.messages import PlainTextBody, Speaker, body_from_row, choice_question_body, speaker_from_row
from oaktree.question_generator import QuestionSetGenerator
from oaktree.session_state import SessionState, decode_state
from oaktree.store import STATUS_ACTIVE, STATUS_COMPLETED, OakTreeStore, utcnow
from oaktree.text_generator import TextGenerator, parse_json_reply

logger = logging.getLogger(__name__)

FALLBACK_ANALYSIS = {
    "understanding_level": 50,
    "strengths": [],
    "misunderstandings": [],
    "summary": "Unable to generate proper analysis. Please review the chat manually.",
}

ANALYSIS_PROMPT_TEMPLATE = """Analyze this chat between a student and Oakie (an AI bird) about {topic}.

CHAT HISTORY:
{history}

KEY CONCEPTS THAT SHOULD BE UNDERSTOOD:
{concepts}

Based on the student's explanations, evaluate their understanding of the topic.

Return your analysis as a JSON object with the following structure:
{{
  "understanding_level": <number between 0-100>,
  "strengths": [concepts the student understands well],
  "misunderstandings": [concepts the student struggles with or has misconceptions about],
  "summary": "2-3 paragraph summary of the student's understanding"
}}"""

GOODBYE_TEMPLATE = (
    "Thanks for chatting with me about {topic} today! "
    "Your teacher will see how it went. See you next time!"
)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def coerce_analysis(data: Dict[str, Any]) -> Dict[str, Any]:
    """Clamp an LLM analysis to the stored shape; missing pieces take fallback values."""
    try:
        level = int(round(float(data.get("understanding_level"))))
    except (TypeError, ValueError):
        level = FALLBACK_ANALYSIS["understanding_level"]
    return {
        "understanding_level": max(0, min(100, level)),
        "strengths": _string_list(data.get("strengths")),
        "misunderstandings": _string_list(data.get("misunderstandings")),
        "summary": str(data.get("summary") or FALLBACK_ANALYSIS["summary"]),
    }


def format_history(message_rows: List[Dict[str, Any]]) -> str:
    """Plain-text transcript for the analysis prompt."""
    lines = []
    for row in message_rows:
        body = body_from_row(row)
        who = "Student" if speaker_from_row(row, body) is Speaker.STUDENT else "Oakie"
        lines.append(f"{who}: {body.text}")
    return "\n\n".join(lines)


class SessionManager:
    """
    Session lifecycle operations.

    Args:
        store: OakTreeStore
        text_generator: TextGenerator used for question sets and analysis
        question_generator: override for the QuestionSetGenerator
    """

    def __init__(
        self,
        store: OakTreeStore,
        text_generator: TextGenerator,
        question_generator: Optional[QuestionSetGenerator] = None,
    ):
        self.store = store
        self.text_generator = text_generator
        self.question_generator = question_generator or QuestionSetGenerator(text_generator)

    async def _load_ready_lesson(self, lesson_id: str) -> Dict[str, Any]:
        lesson = await self.store.get_lesson(lesson_id)
        if not lesson:
            raise LessonNotFound(f"Lesson {lesson_id} not found")
        if not normalize_key_concepts(lesson.get("key_concepts")):
            logger.info(f"🚫 [SessionManager] Lesson {lesson_id} has no key concepts")
            raise LessonNotReady()
        return lesson

    async def start_session(self, student_id: str, lesson_id: str) -> Dict[str, Any]:
        """
        Start or resume the active session for (student, lesson).

        Questions are generated only when the session has no usable question
        set; a resume never calls the generator.

        Raises:
            MissingFields, LessonNotFound, LessonNotReady, GenerationFailed,
            ActiveSessionConflict
        """
        if not student_id or not lesson_id:
            raise MissingFields("Student ID and Lesson ID are required")

        lesson = await self._load_ready_lesson(lesson_id)

        session = await self.store.find_active_session(student_id, lesson_id)
        created = session is None
        if created:
            session = await self.store.create_session(student_id, lesson_id)
            logger.info(f"🆕 [SessionManager] Created session {session['id']}")

        state = decode_state(session.get("session_state"))
        if state and state.questions:
            return await self._resume(session, state)

        materials = await self.store.list_materials(lesson_id=lesson_id)
        questions = await self.question_generator.generate_questions(lesson, materials)
        state = SessionState(questions=questions)
        session = await self.store.write_session_state(session, state)

        # A state-less session that already existed gets questions but no new opening message
        if created:
            await self.store.add_messages(session["id"], [choice_question_body(questions[0], 0)])

        logger.info(
            f"✅ [SessionManager] Session {session['id']} ready with {len(questions)} questions"
            f"{' (regenerated)' if not created else ''}"
        )
        return {
            "success": True,
            "sessionId": session["id"],
            "currentQuestion": questions[0].to_dict(),
            "currentPhase": state.current_phase.value,
            "progress": state.progress(),
            "resumed": False,
            "regenerated": not created,
        }

    async def _resume(self, session: Dict[str, Any], state: SessionState) -> Dict[str, Any]:
        if state.is_complete:
            # Every question answered but the status flip never landed
            await self.store.update_session(session["id"], {"status": STATUS_COMPLETED, "ended_at": utcnow()})
            logger.info(f"🏁 [SessionManager] Session {session['id']} was already complete, closed it")
            return {
                "success": True,
                "sessionId": session["id"],
                "currentQuestion": None,
                "currentPhase": "completed",
                "progress": state.progress(),
                "resumed": True,
                "isComplete": True,
            }

        logger.info(
            f"🔄 [SessionManager] Resuming session {session['id']} at question "
            f"{state.current_question_index + 1}/{state.total} ({state.current_phase.value})"
        )
        return {
            "success": True,
            "sessionId": session["id"],
            "currentQuestion": state.current_question.to_dict(),
            "currentPhase": state.current_phase.value,
            "progress": state.progress(),
            "resumed": True,
        }

    async def reset_session(self, student_id: str, lesson_id: str) -> Dict[str, Any]:
        """
        Replay the latest session from its first question with a clean slate.

        The rewind claims the session version before anything is deleted; a
        request that loses the race deletes nothing. Message deletion
        is strict; progress, attempt and hint cleanup is best-effort.

        Raises:
            MissingFields, SessionNotFound, NoQuestionsToReset, StaleSessionState
        """
        if not student_id or not lesson_id:
            raise MissingFields("Student ID and Lesson ID are required")

        session = await self.store.find_latest_session(student_id, lesson_id)
        if not session:
            raise SessionNotFound("No session found to reset")

        state = decode_state(session.get("session_state"))
        if not state or not state.questions:
            raise NoQuestionsToReset("No questions found in session to reset")

        session_id = session["id"]
        rewound = state.rewound()
        await self.store.write_session_state(
            session,
            rewound,
            started_at=utcnow(),
            ended_at=None,
            understanding_level=None,
            status=STATUS_ACTIVE,
        )

        try:
            await self.store.delete_messages([session_id])
        except APIError as e:
            logger.error(f"❌ [SessionManager] Failed to clear messages for {session_id}: {e}")
            raise

        cleanup = (
            ("concept progress", self.store.delete_concept_progress),
            ("multiple choice attempts", self.store.delete_attempts),
            ("dynamic hints", self.store.delete_hints),
        )
        for label, delete in cleanup:
            try:
                await delete([session_id])
            except APIError as e:
                logger.warning(f"⚠️ [SessionManager] Could not clear {label} for {session_id}: {e}")

        await self.store.add_messages(session_id, [choice_question_body(rewound.questions[0], 0)])

        logger.info(f"♻️ [SessionManager] Reset session {session_id} ({rewound.total} questions kept)")
        return {
            "success": True,
            "message": "Conversation reset successfully with existing questions.",
            "sessionId": session_id,
            "questionCount": rewound.total,
        }

    async def clean_sessions(self, student_id: str, lesson_id: str) -> Dict[str, Any]:
        """Archive the active session(s) for (student, lesson) without deleting anything."""
        if not student_id or not lesson_id:
            raise MissingFields("Student ID and Lesson ID are required")

        archived = await self.store.archive_active_sessions(student_id, lesson_id)
        logger.info(f"📦 [SessionManager] Archived {len(archived)} active session(s)")
        return {"success": True, "archivedSessions": len(archived)}

    async def end_session(self, session_id: str) -> Dict[str, Any]:
        """
        Legacy free-form flow: analyse the whole transcript and close the session.

        An analysis that cannot be generated or parsed falls back to a neutral
        report; the session still closes.
        """
        if not session_id:
            raise MissingFields("Session ID is required")

        session = await self.store.get_session(session_id)
        if not session:
            raise SessionNotFound("Chat session not found")

        lesson = await self.store.get_lesson(session["lesson_id"]) or {}
        topic = lesson.get("topic") or lesson.get("title") or "this lesson"
        messages = await self.store.list_messages(session_id=session_id)
        concepts = ", ".join(c["concept"] for c in normalize_key_concepts(lesson.get("key_concepts")))

        prompt = ANALYSIS_PROMPT_TEMPLATE.format(
            topic=topic,
            history=format_history(messages) or "(no messages)",
            concepts=concepts or "(none listed)",
        )
        try:
            reply = await self.text_generator.generate(prompt, json_mode=True, model=ANALYSIS_MODEL)
            analysis = coerce_analysis(parse_json_reply(reply))
        except (ValueError, OpenAIError) as e:
            logger.warning(f"⚠️ [SessionManager] Analysis unavailable for {session_id}, using fallback: {e}")
            analysis = dict(FALLBACK_ANALYSIS)

        updated = await self.store.update_session(session_id, {
            "completion_analysis": analysis,
            "understanding_level": analysis["understanding_level"],
            "strengths": analysis["strengths"],
            "misunderstandings": analysis["misunderstandings"],
            "status": STATUS_COMPLETED,
            "ended_at": utcnow(),
        })
        if not updated:
            raise SessionNotFound("Chat session not found")

        goodbye = GOODBYE_TEMPLATE.format(topic=topic)
        await self.store.add_messages(session_id, [PlainTextBody(goodbye)], terminal=True)

        logger.info(
            f"🏁 [SessionManager] Ended session {session_id} "
            f"(understanding {analysis['understanding_level']})"
        )
        return {"success": True, "analysis": analysis, "session": updated, "goodbyeMessage": goodbye}
