"""
Supabase-backed storage for OakTree.

`OakTreeStore` owns every table query the application makes. Callers get
plain row dicts back; PostgREST failures surface as `postgrest.exceptions.APIError`.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from postgrest.exceptions import APIError

from oaktree.config import MATERIALS_BUCKET
from oaktree.errors import ActiveSessionConflict, StaleSessionState
from oaktree.messages import MessageBody, build_message_row
from oaktree.session_state import SessionState, encode_state

logger = logging.getLogger(__name__)

STUDENTS = "students"
COURSES = "courses"
LESSONS = "lessons"
MATERIALS = "materials"
CHAT_SESSIONS = "chat_sessions"
CHAT_MESSAGES = "chat_messages"
ATTEMPTS = "multiple_choice_attempts"
CONCEPT_PROGRESS = "concept_progress"
DYNAMIC_HINTS = "dynamic_hints"

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"

UNIQUE_VIOLATION = "23505"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(result) -> Optional[Dict[str, Any]]:
    return result.data[0] if result.data else None


class OakTreeStore:
    """
    Repository over the OakTree Supabase schema.

    Args:
        supabase_client: a `supabase.Client` (or anything with the same
            `table(...)` / `storage` surface)
        bucket: storage bucket holding uploaded material files
    """

    def __init__(self, supabase_client, bucket: str = MATERIALS_BUCKET):
        self.supabase = supabase_client
        self.bucket = bucket

    # ==================== Students ====================

    async def list_students(self) -> List[Dict[str, Any]]:
        result = self.supabase.table(STUDENTS).select('*').order('name').execute()
        return result.data or []

    async def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(STUDENTS).select('*').eq('id', student_id).limit(1).execute()
        return _first(result)

    async def get_students(self, student_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = sorted(set(student_ids))
        if not ids:
            return {}
        result = self.supabase.table(STUDENTS).select('*').in_('id', ids).execute()
        return {row["id"]: row for row in result.data or []}

    # ==================== Courses ====================

    async def list_courses(self, teacher_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.supabase.table(COURSES).select('*')
        if teacher_id:
            query = query.eq('teacher_id', teacher_id)
        return query.order('created_at').execute().data or []

    async def get_course(self, course_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(COURSES).select('*').eq('id', course_id).limit(1).execute()
        return _first(result)

    async def create_course(self, title: str, description: Optional[str], teacher_id: str) -> Dict[str, Any]:
        result = self.supabase.table(COURSES).insert({
            "title": title,
            "description": description,
            "teacher_id": teacher_id,
            "created_at": utcnow(),
        }).execute()
        return result.data[0]

    async def delete_course(self, course_id: str) -> None:
        self.supabase.table(COURSES).delete().eq('id', course_id).execute()

    # ==================== Lessons ====================

    async def list_lessons(
        self,
        course_id: Optional[str] = None,
        course_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        query = self.supabase.table(LESSONS).select('*')
        if course_id:
            query = query.eq('course_id', course_id)
        if course_ids is not None:
            if not course_ids:
                return []
            query = query.in_('course_id', list(course_ids))
        return query.order('week_number').order('lesson_number').execute().data or []

    async def get_lesson(self, lesson_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(LESSONS).select('*').eq('id', lesson_id).limit(1).execute()
        return _first(result)

    async def create_lesson(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = {**data, "created_at": utcnow(), "updated_at": utcnow()}
        return self.supabase.table(LESSONS).insert(row).execute().data[0]

    async def update_lesson(self, lesson_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(LESSONS).update({**data, "updated_at": utcnow()}).eq('id', lesson_id).execute()
        return _first(result)

    async def delete_lessons(self, lesson_ids: Sequence[str]) -> None:
        if lesson_ids:
            self.supabase.table(LESSONS).delete().in_('id', list(lesson_ids)).execute()

    # ==================== Materials ====================

    async def list_materials(
        self,
        lesson_id: Optional[str] = None,
        lesson_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        query = self.supabase.table(MATERIALS).select('*')
        if lesson_id:
            query = query.eq('lesson_id', lesson_id)
        if lesson_ids is not None:
            if not lesson_ids:
                return []
            query = query.in_('lesson_id', list(lesson_ids))
        return query.order('created_at').execute().data or []

    async def get_material(self, material_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(MATERIALS).select('*').eq('id', material_id).limit(1).execute()
        return _first(result)

    async def create_material(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = {**data, "created_at": utcnow(), "updated_at": utcnow()}
        return self.supabase.table(MATERIALS).insert(row).execute().data[0]

    async def update_material(self, material_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(MATERIALS).update({**data, "updated_at": utcnow()}).eq('id', material_id).execute()
        return _first(result)

    async def delete_materials(self, lesson_ids: Sequence[str]) -> None:
        if lesson_ids:
            self.supabase.table(MATERIALS).delete().in_('lesson_id', list(lesson_ids)).execute()

    # ==================== File storage ====================

    async def upload_file(self, file_name: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Upload a material file and return its public URL."""
        bucket = self.supabase.storage.from_(self.bucket)
        bucket.upload(
            path=file_name,
            file=data,
            file_options={"content-type": content_type or "application/octet-stream", "cache-control": "3600"},
        )
        return bucket.get_public_url(file_name)

    async def remove_files(self, file_names: Sequence[str]) -> None:
        if file_names:
            self.supabase.storage.from_(self.bucket).remove(list(file_names))

    # ==================== Chat sessions ====================

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(CHAT_SESSIONS).select('*').eq('id', session_id).limit(1).execute()
        return _first(result)

    async def find_active_session(self, student_id: str, lesson_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(CHAT_SESSIONS) \
            .select('*') \
            .eq('student_id', student_id) \
            .eq('lesson_id', lesson_id) \
            .eq('status', STATUS_ACTIVE) \
            .order('started_at', desc=True) \
            .limit(1) \
            .execute()
        return _first(result)

    async def find_latest_session(self, student_id: str, lesson_id: str) -> Optional[Dict[str, Any]]:
        """Most recently started session for the pair, active or completed."""
        result = self.supabase.table(CHAT_SESSIONS) \
            .select('*') \
            .eq('student_id', student_id) \
            .eq('lesson_id', lesson_id) \
            .in_('status', [STATUS_ACTIVE, STATUS_COMPLETED]) \
            .order('started_at', desc=True) \
            .limit(1) \
            .execute()
        return _first(result)

    async def list_sessions(
        self,
        student_id: Optional[str] = None,
        lesson_id: Optional[str] = None,
        lesson_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        query = self.supabase.table(CHAT_SESSIONS).select('*')
        if student_id:
            query = query.eq('student_id', student_id)
        if lesson_id:
            query = query.eq('lesson_id', lesson_id)
        if lesson_ids is not None:
            if not lesson_ids:
                return []
            query = query.in_('lesson_id', list(lesson_ids))
        return query.order('started_at', desc=True).execute().data or []

    async def create_session(self, student_id: str, lesson_id: str) -> Dict[str, Any]:
        """
        Insert a new active session.

        Raises:
            ActiveSessionConflict: another request created the active session first
        """
        try:
            result = self.supabase.table(CHAT_SESSIONS).insert({
                "student_id": student_id,
                "lesson_id": lesson_id,
                "started_at": utcnow(),
                "status": STATUS_ACTIVE,
                "version": 0,
            }).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ActiveSessionConflict(
                    f"An active session already exists for student {student_id} and lesson {lesson_id}"
                ) from e
            raise
        return result.data[0]

    async def update_session(self, session_id: str, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Plain update for fields that are not the quiz state (status, analysis...)."""
        result = self.supabase.table(CHAT_SESSIONS).update(data).eq('id', session_id).execute()
        return _first(result)

    async def write_session_state(
        self,
        session: Dict[str, Any],
        state: SessionState,
        **fields: Any,
    ) -> Dict[str, Any]:
        """
        Compare-and-swap the whole SessionState.

        The write only lands if the row still carries the version we read;
        otherwise StaleSessionState is raised and nothing changes.
        """
        version = session.get("version") or 0
        update = {"session_state": encode_state(state), "version": version + 1, **fields}
        try:
            result = self.supabase.table(CHAT_SESSIONS) \
                .update(update) \
                .eq('id', session["id"]) \
                .eq('version', version) \
                .execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ActiveSessionConflict(
                    f"Another active session exists for student {session.get('student_id')} "
                    f"and lesson {session.get('lesson_id')}"
                ) from e
            raise
        if not result.data:
            raise StaleSessionState(session["id"])
        return result.data[0]

    async def archive_active_sessions(self, student_id: str, lesson_id: str) -> List[Dict[str, Any]]:
        result = self.supabase.table(CHAT_SESSIONS) \
            .update({"status": STATUS_COMPLETED, "ended_at": utcnow()}) \
            .eq('student_id', student_id) \
            .eq('lesson_id', lesson_id) \
            .eq('status', STATUS_ACTIVE) \
            .execute()
        return result.data or []

    async def delete_sessions(self, session_ids: Sequence[str]) -> None:
        if session_ids:
            self.supabase.table(CHAT_SESSIONS).delete().in_('id', list(session_ids)).execute()

    # ==================== Chat messages ====================

    async def add_messages(
        self,
        session_id: str,
        bodies: Sequence[MessageBody],
        terminal: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Append messages in order. `terminal` marks the last one as closing
        the conversation. Timestamps are strictly increasing within a batch.
        """
        if not bodies:
            return []
        base = datetime.now(timezone.utc)
        rows = [
            build_message_row(
                session_id,
                body,
                is_terminal=terminal and index == len(bodies) - 1,
                timestamp=base + timedelta(microseconds=index),
            )
            for index, body in enumerate(bodies)
        ]
        return self.supabase.table(CHAT_MESSAGES).insert(rows).execute().data or []

    async def list_messages(
        self,
        session_id: Optional[str] = None,
        session_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        query = self.supabase.table(CHAT_MESSAGES).select('*')
        if session_id:
            query = query.eq('session_id', session_id)
        if session_ids is not None:
            if not session_ids:
                return []
            query = query.in_('session_id', list(session_ids))
        return query.order('timestamp').execute().data or []

    async def delete_messages(self, session_ids: Sequence[str]) -> None:
        if session_ids:
            self.supabase.table(CHAT_MESSAGES).delete().in_('session_id', list(session_ids)).execute()

    # ==================== Attempts, progress and hints ====================

    async def record_attempt(
        self,
        session: Dict[str, Any],
        concept: str,
        selected_option: str,
        is_correct: bool,
    ) -> Dict[str, Any]:
        result = self.supabase.table(ATTEMPTS).insert({
            "session_id": session["id"],
            "student_id": session["student_id"],
            "lesson_id": session["lesson_id"],
            "concept": concept,
            "selected_option": selected_option,
            "is_correct": is_correct,
            "created_at": utcnow(),
        }).execute()
        return result.data[0]

    async def list_attempts(
        self,
        lesson_id: Optional[str] = None,
        lesson_ids: Optional[Sequence[str]] = None,
        student_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Attempt log, oldest first."""
        query = self.supabase.table(ATTEMPTS).select('*')
        if lesson_id:
            query = query.eq('lesson_id', lesson_id)
        if lesson_ids is not None:
            if not lesson_ids:
                return []
            query = query.in_('lesson_id', list(lesson_ids))
        if student_id:
            query = query.eq('student_id', student_id)
        if session_id:
            query = query.eq('session_id', session_id)
        return query.order('created_at').execute().data or []

    async def delete_attempts(self, session_ids: Sequence[str]) -> None:
        if session_ids:
            self.supabase.table(ATTEMPTS).delete().in_('session_id', list(session_ids)).execute()

    async def save_concept_progress(
        self,
        session: Dict[str, Any],
        concept: str,
        question_index: int,
        phase: str,
        completed: bool,
    ) -> None:
        existing = self.supabase.table(CONCEPT_PROGRESS) \
            .select('id') \
            .eq('session_id', session["id"]) \
            .eq('concept', concept) \
            .limit(1) \
            .execute()
        data = {
            "question_index": question_index,
            "phase": phase,
            "completed": completed,
            "updated_at": utcnow(),
        }
        if existing.data:
            self.supabase.table(CONCEPT_PROGRESS).update(data).eq('id', existing.data[0]["id"]).execute()
        else:
            self.supabase.table(CONCEPT_PROGRESS).insert({
                "session_id": session["id"],
                "student_id": session["student_id"],
                "concept": concept,
                **data,
            }).execute()

    async def delete_concept_progress(self, session_ids: Sequence[str]) -> None:
        if session_ids:
            self.supabase.table(CONCEPT_PROGRESS).delete().in_('session_id', list(session_ids)).execute()

    async def add_hint(self, session_id: str, concept: str, answer_type: str, hint: str) -> None:
        self.supabase.table(DYNAMIC_HINTS).insert({
            "session_id": session_id,
            "concept": concept,
            "answer_type": answer_type,
            "hint": hint,
            "created_at": utcnow(),
        }).execute()

    async def delete_hints(self, session_ids: Sequence[str]) -> None:
        if session_ids:
            self.supabase.table(DYNAMIC_HINTS).delete().in_('session_id', list(session_ids)).execute()
