"""Read-side views: understanding dashboards, teacher progress and transcripts."""

import logging
from typing import Any, Dict, List, Optional

from oaktree.config import DEFAULT_TEACHER_ID
from oaktree.errors import LessonNotFound, MissingFields, SessionNotFound
from oaktree.store import OakTreeStore
from oaktree.transcript import render_transcript
from oaktree.understanding import (
    band5_concepts,
    build_student_understanding,
    build_teacher_progress,
    compute_concept_understanding,
)

logger = logging.getLogger(__name__)


class ProgressDashboard:
    def __init__(self, store: OakTreeStore):
        self.store = store

    async def concept_understanding(self, lesson_id: str, student_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if not lesson_id:
            raise MissingFields("lessonId is required")
        attempts = await self.store.list_attempts(lesson_id=lesson_id, student_id=student_id)
        return compute_concept_understanding(attempts, lesson_id=lesson_id, student_id=student_id)

    async def student_understanding(self, lesson_id: str) -> Dict[str, Any]:
        if not lesson_id:
            raise MissingFields("lessonId is required")
        attempts = await self.store.list_attempts(lesson_id=lesson_id)
        sessions = await self.store.list_sessions(lesson_id=lesson_id)
        students = await self.store.get_students(a["student_id"] for a in attempts)
        return build_student_understanding(attempts, sessions, students)

    async def teacher_progress(
        self,
        teacher_id: Optional[str] = None,
        course_id: Optional[str] = None,
        lesson_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Every session in the teacher's courses, optionally narrowed to one course or lesson."""
        courses = await self.store.list_courses(teacher_id or DEFAULT_TEACHER_ID)
        if course_id:
            courses = [c for c in courses if c["id"] == course_id]
        lessons = await self.store.list_lessons(course_ids=[c["id"] for c in courses])
        if lesson_id:
            lessons = [lesson for lesson in lessons if lesson["id"] == lesson_id]
        lesson_ids = [lesson["id"] for lesson in lessons]

        sessions = await self.store.list_sessions(lesson_ids=lesson_ids)
        attempts = await self.store.list_attempts(lesson_ids=lesson_ids)
        students = await self.store.get_students(s["student_id"] for s in sessions)

        logger.info(f"📊 [ProgressDashboard] {len(sessions)} sessions across {len(lesson_ids)} lessons")
        return build_teacher_progress(
            sessions,
            attempts,
            {lesson["id"]: lesson for lesson in lessons},
            {c["id"]: c for c in courses},
            students,
        )

    async def progress_detail(self, student_id: str, lesson_id: str, teacher_id: Optional[str] = None) -> Dict[str, Any]:
        """
        One student's work on one lesson: sessions, transcripts and band-5 levels.

        Raises:
            MissingFields, LessonNotFound: unknown lesson, or not one of the teacher's
        """
        if not student_id or not lesson_id:
            raise MissingFields("Student ID and Lesson ID are required")

        lesson = await self.store.get_lesson(lesson_id)
        course = await self.store.get_course(lesson["course_id"]) if lesson and lesson.get("course_id") else None
        if not lesson or not course or course.get("teacher_id") != (teacher_id or DEFAULT_TEACHER_ID):
            raise LessonNotFound("Lesson not found or access denied")

        sessions = await self.store.list_sessions(student_id=student_id, lesson_id=lesson_id)
        transcripts = []
        for session in sessions:
            messages = await self.store.list_messages(session_id=session["id"])
            transcripts.append(render_transcript(session, messages))
        attempts = await self.store.list_attempts(lesson_id=lesson_id, student_id=student_id)

        return {
            "lesson": lesson,
            "sessions": sessions,
            "transcripts": transcripts,
            "understanding": band5_concepts(attempts),
        }

    async def transcript(self, session_id: str) -> Dict[str, Any]:
        session = await self.store.get_session(session_id)
        if not session:
            raise SessionNotFound(f"Session {session_id} not found")
        messages = await self.store.list_messages(session_id=session_id)
        return render_transcript(session, messages)
