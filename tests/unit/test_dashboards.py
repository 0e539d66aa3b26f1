"""
Unit Tests for the Progress Dashboard read paths
"""

import pytest

from oaktree.dashboards import ProgressDashboard
from oaktree.errors import LessonNotFound, MissingFields, SessionNotFound


class TestProgressDashboard:
    """Test suite for ProgressDashboard."""

    @pytest.fixture
    def dashboard(self, store):
        return ProgressDashboard(store)

    @pytest.fixture
    def history(self, fake_supabase, lesson_setup):
        student_id, lesson_id = lesson_setup["student"]["id"], lesson_setup["lesson"]["id"]
        session = fake_supabase.seed(
            "chat_sessions",
            student_id=student_id,
            lesson_id=lesson_id,
            status="completed",
            started_at="2024-01-01T00:00:00+00:00",
        )
        for index, correct in enumerate([False, False, True]):
            fake_supabase.seed(
                "multiple_choice_attempts",
                session_id=session["id"],
                student_id=student_id,
                lesson_id=lesson_id,
                concept="Photosynthesis",
                selected_option="b" if correct else "a",
                is_correct=correct,
                created_at=f"2024-01-01T00:0{index}:00+00:00",
            )
        fake_supabase.seed(
            "chat_messages",
            session_id=session["id"],
            speaker="tutor",
            kind="plain_text",
            content={"text": "Bye!"},
            is_terminal=True,
            timestamp="2024-01-01T00:05:00+00:00",
        )
        return {**lesson_setup, "session": session}

    @pytest.mark.asyncio
    async def test_concept_understanding(self, dashboard, history):
        rows = await dashboard.concept_understanding(history["lesson"]["id"])

        assert len(rows) == 1
        assert rows[0]["understanding_level"] == "moderate"
        assert rows[0]["last_updated"] == "2024-01-01T00:02:00+00:00"

    @pytest.mark.asyncio
    async def test_concept_understanding_needs_lesson(self, dashboard):
        with pytest.raises(MissingFields):
            await dashboard.concept_understanding("")

    @pytest.mark.asyncio
    async def test_student_understanding(self, dashboard, history):
        view = await dashboard.student_understanding(history["lesson"]["id"])

        assert view["totalStudents"] == 1
        assert view["students"][0]["name"] == "Ada"
        assert view["students"][0]["sessionCompleted"] is True

    @pytest.mark.asyncio
    async def test_teacher_progress(self, dashboard, history):
        progress = await dashboard.teacher_progress()

        assert progress["summary"]["totalSessions"] == 1
        assert progress["summary"]["completedSessions"] == 1
        assert progress["summary"]["averageUnderstanding"] == 60.0
        assert progress["sessionStats"][0]["student_name"] == "Ada"

    @pytest.mark.asyncio
    async def test_teacher_progress_other_teacher_sees_nothing(self, dashboard, history):
        progress = await dashboard.teacher_progress(teacher_id="someone-else")

        assert progress["sessionStats"] == []

    @pytest.mark.asyncio
    async def test_progress_detail(self, dashboard, history):
        detail = await dashboard.progress_detail(history["student"]["id"], history["lesson"]["id"])

        assert detail["lesson"]["id"] == history["lesson"]["id"]
        assert len(detail["transcripts"]) == 1
        assert detail["transcripts"][0]["isComplete"] is True
        assert detail["understanding"] == [
            {"concept": "Photosynthesis", "level": 3, "wrongCount": 2, "totalAttempts": 3}
        ]

    @pytest.mark.asyncio
    async def test_progress_detail_checks_ownership(self, dashboard, history):
        with pytest.raises(LessonNotFound):
            await dashboard.progress_detail(history["student"]["id"], history["lesson"]["id"], "someone-else")

    @pytest.mark.asyncio
    async def test_transcript(self, dashboard, history):
        transcript = await dashboard.transcript(history["session"]["id"])

        assert transcript["messages"][0]["text"] == "Bye!"
        assert transcript["messages"][0]["isTerminal"] is True

    @pytest.mark.asyncio
    async def test_transcript_unknown_session(self, dashboard):
        with pytest.raises(SessionNotFound):
            await dashboard.transcript("missing")
