"""
Course and lesson administration, including cascading deletes.

Deletes are best-effort for everything below a lesson (session messages,
attempts, files...) and strict for the record being deleted: a lesson is
only removed once its sessions and materials are gone, a course once its
lessons are gone.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError
from storage3.utils import StorageException

from oaktree.config import DEFAULT_TEACHER_ID
from oaktree.errors import CourseNotFound, DeletionIncomplete, LessonNotFound, MissingFields
from oaktree.store import OakTreeStore

logger = logging.getLogger(__name__)


class Cascade:
    """Runs cleanup steps in order, recording failures instead of stopping."""

    def __init__(self, label: str):
        self.label = label
        self.failed: List[str] = []

    async def attempt(self, step: str, action: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        try:
            await action(*args)
        except (APIError, StorageException) as e:
            logger.error(f"❌ [CourseAdmin] {self.label}: deleting {step} failed: {e}")
            self.failed.append(step)
            return False
        logger.debug(f"[CourseAdmin] {self.label}: deleted {step}")
        return True


class CourseAdmin:
    """Creates and deletes courses and lessons for the (single) teacher."""

    def __init__(self, store: OakTreeStore, teacher_id: str = DEFAULT_TEACHER_ID):
        self.store = store
        self.teacher_id = teacher_id

    async def create_course(self, title: Optional[str], description: Optional[str] = None) -> Dict[str, Any]:
        if not title or not title.strip():
            raise MissingFields("Course title is required")
        course = await self.store.create_course(title.strip(), description, self.teacher_id)
        logger.info(f"✅ [CourseAdmin] Created course {course['id']}")
        return course

    async def create_lesson(
        self,
        course_id: Optional[str],
        title: Optional[str],
        week_number: Optional[int],
        lesson_number: Optional[int],
        topic: Optional[str],
    ) -> Dict[str, Any]:
        """
        Raises:
            MissingFields: a field is missing, or a number is not an int
            CourseNotFound: the course does not exist
        """
        numbers_ok = all(
            isinstance(n, int) and not isinstance(n, bool) for n in (week_number, lesson_number)
        )
        if not course_id or not title or not topic or not numbers_ok:
            raise MissingFields("Missing or invalid required fields")
        if not await self.store.get_course(course_id):
            raise CourseNotFound(f"Course {course_id} not found")

        lesson = await self.store.create_lesson({
            "course_id": course_id,
            "title": title,
            "week_number": week_number,
            "lesson_number": lesson_number,
            "topic": topic,
        })
        logger.info(f"✅ [CourseAdmin] Created lesson {lesson['id']} in course {course_id}")
        return lesson

    async def _clear_lessons(self, cascade: Cascade, lesson_ids: Sequence[str]) -> bool:
        """
        Delete everything hanging off `lesson_ids`.

        Returns True when the lessons' own children (sessions and materials)
        are gone, i.e. the lesson rows themselves may be deleted.
        """
        sessions = await self.store.list_sessions(lesson_ids=lesson_ids)
        session_ids = [s["id"] for s in sessions]
        materials = await self.store.list_materials(lesson_ids=lesson_ids)
        file_names = [m["file_name"] for m in materials if m.get("file_name")]

        await cascade.attempt("chat messages", self.store.delete_messages, session_ids)
        await cascade.attempt("multiple choice attempts", self.store.delete_attempts, session_ids)
        await cascade.attempt("concept progress", self.store.delete_concept_progress, session_ids)
        await cascade.attempt("dynamic hints", self.store.delete_hints, session_ids)
        sessions_ok = await cascade.attempt("chat sessions", self.store.delete_sessions, session_ids)

        materials_ok = await cascade.attempt("materials", self.store.delete_materials, lesson_ids)
        await cascade.attempt("storage files", self.store.remove_files, file_names)

        logger.info(
            f"🧹 [CourseAdmin] {cascade.label}: cleared {len(session_ids)} sessions, "
            f"{len(materials)} materials, {len(file_names)} files"
        )
        return sessions_ok and materials_ok

    async def delete_lesson(self, lesson_id: str) -> Dict[str, Any]:
        """
        Raises:
            LessonNotFound, DeletionIncomplete
        """
        if not await self.store.get_lesson(lesson_id):
            raise LessonNotFound("Lesson not found")

        cascade = Cascade(f"lesson {lesson_id}")
        if not await self._clear_lessons(cascade, [lesson_id]):
            raise DeletionIncomplete("Failed to delete associated lesson data", cascade.failed)

        await self.store.delete_lessons([lesson_id])
        logger.info(f"🗑️ [CourseAdmin] Deleted lesson {lesson_id}")
        return {"success": True, "failedSteps": cascade.failed}

    async def delete_course(self, course_id: str) -> Dict[str, Any]:
        """
        Raises:
            CourseNotFound, DeletionIncomplete
        """
        if not await self.store.get_course(course_id):
            raise CourseNotFound("Course not found")

        cascade = Cascade(f"course {course_id}")
        lessons = await self.store.list_lessons(course_id=course_id)
        lesson_ids = [lesson["id"] for lesson in lessons]
        if lesson_ids:
            children_ok = await self._clear_lessons(cascade, lesson_ids)
            if not children_ok or not await cascade.attempt("lessons", self.store.delete_lessons, lesson_ids):
                raise DeletionIncomplete("Failed to delete associated lessons", cascade.failed)

        await self.store.delete_course(course_id)
        logger.info(f"🗑️ [CourseAdmin] Deleted course {course_id} with {len(lesson_ids)} lessons")
        return {"success": True, "failedSteps": cascade.failed}
