"""
Unit Tests for the Understanding Aggregator

Tests the two banding scales and the dashboard aggregates built from the
multiple-choice attempt log.
"""

import pytest

from oaktree.understanding import (
    band5_concepts,
    build_student_understanding,
    build_teacher_progress,
    compute_concept_understanding,
    concept_band3,
    level_percentage,
    session_band5,
    tally_attempts,
)


def attempt(concept, correct, student="s1", lesson="l1", session="sess1", at="2024-01-01T00:00:00+00:00"):
    return {
        "student_id": student,
        "lesson_id": lesson,
        "session_id": session,
        "concept": concept,
        "is_correct": correct,
        "created_at": at,
    }


class TestBands:
    """Test suite for concept_band3 and session_band5."""

    @pytest.mark.parametrize("wrong, band", [(0, "good"), (1, "good"), (2, "moderate"), (3, "moderate"), (4, "bad"), (9, "bad")])
    def test_concept_band3(self, wrong, band):
        assert concept_band3(wrong) == band

    @pytest.mark.parametrize("wrong, level", [(0, 5), (1, 4), (2, 3), (3, 2), (4, 2), (5, 1), (12, 1)])
    def test_session_band5(self, wrong, level):
        assert session_band5(wrong) == level

    def test_level_percentage(self):
        assert level_percentage([5, 3]) == 80
        assert level_percentage([4, 4, 5]) == 87
        assert level_percentage([]) == 0


class TestConceptUnderstanding:
    """Test suite for compute_concept_understanding."""

    @pytest.fixture
    def attempts(self):
        return [
            attempt("Photosynthesis", False, at="2024-01-01T00:00:01+00:00"),
            attempt("Photosynthesis", False, at="2024-01-01T00:00:02+00:00"),
            attempt("Photosynthesis", True, at="2024-01-01T00:00:03+00:00"),
            attempt("Respiration", True, at="2024-01-01T00:00:04+00:00"),
        ]

    def test_wrong_answers_decide_the_band(self, attempts):
        """Test two wrong answers give moderate and none give good."""
        rows = compute_concept_understanding(attempts, lesson_id="l1")

        by_concept = {row["concept"]: row for row in rows}
        assert by_concept["Photosynthesis"]["understanding_level"] == "moderate"
        assert by_concept["Photosynthesis"]["wrong_multiple_choice_count"] == 2
        assert by_concept["Photosynthesis"]["wrong_example_count"] == 0
        assert by_concept["Photosynthesis"]["total_wrong_count"] == 2
        assert by_concept["Photosynthesis"]["last_updated"] == "2024-01-01T00:00:03+00:00"
        assert by_concept["Respiration"]["understanding_level"] == "good"

    def test_filters_by_student_and_lesson(self, attempts):
        others = attempts + [attempt("Photosynthesis", False, student="s2"), attempt("Osmosis", False, lesson="l2")]

        rows = compute_concept_understanding(others, lesson_id="l1", student_id="s1")

        assert {row["concept"] for row in rows} == {"Photosynthesis", "Respiration"}
        assert all(row["student_id"] == "s1" for row in rows)

    def test_same_concept_in_two_lessons_is_two_rows(self):
        tallies = tally_attempts([attempt("Energy", False, lesson="l1"), attempt("Energy", False, lesson="l2")])

        assert len(tallies) == 2

    def test_no_attempts(self):
        assert compute_concept_understanding([], lesson_id="l1") == []


class TestStudentUnderstanding:
    """Test suite for the class view."""

    def test_class_view(self):
        """Test levels, strengths, misunderstandings and class aggregates."""
        attempts = [
            attempt("Photosynthesis", False, student="s1"),
            attempt("Photosynthesis", False, student="s1"),
            attempt("Photosynthesis", False, student="s1"),
            attempt("Respiration", True, student="s1"),
            attempt("Photosynthesis", True, student="s2"),
        ]
        sessions = [
            {"student_id": "s1", "status": "completed", "started_at": "2024-01-03T00:00:00+00:00", "ended_at": "2024-01-03T01:00:00+00:00"},
            {"student_id": "s1", "status": "completed", "started_at": "2024-01-02T00:00:00+00:00", "ended_at": None},
            {"student_id": "s2", "status": "active", "started_at": "2024-01-02T00:00:00+00:00", "ended_at": None},
        ]
        students = {"s1": {"name": "Ada"}, "s2": {"name": "Grace"}}

        view = build_student_understanding(attempts, sessions, students)

        assert view["totalStudents"] == 2
        ada, grace = view["students"]
        assert ada["name"] == "Ada"
        assert ada["concepts"][0] == {"concept": "Photosynthesis", "level": 2, "wrongCount": 3, "totalAttempts": 3}
        assert ada["misunderstandings"] == ["Photosynthesis"]
        assert ada["strengths"] == ["Respiration"]
        assert ada["understanding"] == 70
        assert ada["averageLevel"] == 3.5
        assert ada["sessionCompleted"] is True
        assert ada["lastActivity"] == "2024-01-03T01:00:00+00:00"
        assert grace["understanding"] == 100
        assert grace["sessionStatus"] == "active"
        assert view["classAverage"] == 85
        assert view["commonMisunderstandings"] == [{"concept": "Photosynthesis", "count": 1}]

    def test_students_without_attempts_are_left_out(self):
        view = build_student_understanding([], [{"student_id": "s1", "status": "active"}], {})

        assert view == {"students": [], "classAverage": 0, "commonMisunderstandings": [], "totalStudents": 0}


class TestTeacherProgress:
    """Test suite for build_teacher_progress."""

    def test_summary_uses_attempts_then_stored_level(self):
        """Test that sessions with attempts are scored from them, others from the stored level."""
        sessions = [
            {"id": "sess1", "student_id": "s1", "lesson_id": "l1", "status": "completed", "ended_at": "x"},
            {"id": "sess2", "student_id": "s2", "lesson_id": "l1", "status": "active", "understanding_level": 40},
            {"id": "sess3", "student_id": "s3", "lesson_id": "l1", "status": "active"},
        ]
        attempts = [attempt("Photosynthesis", True, session="sess1"), attempt("Respiration", False, session="sess1")]
        lessons = {"l1": {"id": "l1", "title": "Energy", "topic": "Cells", "course_id": "c1"}}
        courses = {"c1": {"id": "c1", "title": "Biology"}}

        progress = build_teacher_progress(sessions, attempts, lessons, courses, {"s1": {"name": "Ada"}})

        stats = {s["id"]: s for s in progress["sessionStats"]}
        assert stats["sess1"]["understanding"] == 90
        assert stats["sess1"]["course_title"] == "Biology"
        assert stats["sess1"]["student_name"] == "Ada"
        assert stats["sess2"]["understanding"] == 40
        assert stats["sess3"]["understanding"] is None
        assert progress["summary"] == {"totalSessions": 3, "completedSessions": 1, "averageUnderstanding": 65.0}
        assert [row["level"] for row in progress["conceptProgress"]] == [5, 4]

    def test_band5_concepts(self):
        concepts = band5_concepts([attempt("A", False), attempt("A", True)])

        assert concepts == [{"concept": "A", "level": 4, "wrongCount": 1, "totalAttempts": 2}]
