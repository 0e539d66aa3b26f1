"""
Understanding Aggregator

Derives understanding levels from the multiple-choice attempt log on every
read. Nothing stored on a session is trusted as the level.

Two scales exist and are used by different dashboards:

- `concept_band3`: good / moderate / bad, used by the concept-understanding view
- `session_band5`: 1..5, used by the teacher progress and class views

They look at the same wrong-answer counts with different thresholds. Keep
them separate until the product decides whether they should agree.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from oaktree.session_state import round_half_up

GOOD = "good"
MODERATE = "moderate"
BAD = "bad"

MAX_BAND5 = 5
STRENGTH_MIN_LEVEL = 3
COMMON_MISUNDERSTANDINGS_LIMIT = 5


def concept_band3(total_wrong: int) -> str:
    """0-1 wrong answers is good, 2-3 moderate, 4 or more bad."""
    if total_wrong <= 1:
        return GOOD
    if total_wrong <= 3:
        return MODERATE
    return BAD


def session_band5(wrong: int) -> int:
    """0 wrong answers is 5, 1 is 4, 2 is 3, 3-4 is 2, more than 4 is 1."""
    if wrong <= 0:
        return 5
    if wrong == 1:
        return 4
    if wrong == 2:
        return 3
    if wrong <= 4:
        return 2
    return 1


@dataclass
class ConceptTally:
    """Attempt counts for one student on one concept of a lesson."""
    student_id: str
    lesson_id: Optional[str]
    concept: str
    attempts: int = 0
    wrong_multiple_choice: int = 0
    # Only multiple-choice attempts are logged, so this stays 0
    wrong_example: int = 0
    last_attempt_at: Optional[str] = None

    @property
    def total_wrong(self) -> int:
        return self.wrong_multiple_choice + self.wrong_example


def tally_attempts(attempts: Iterable[Dict[str, Any]]) -> List[ConceptTally]:
    """Group attempts by (student, lesson, concept), in order of first appearance."""
    tallies: Dict[Tuple[str, Optional[str], str], ConceptTally] = {}
    for attempt in attempts:
        key = (attempt["student_id"], attempt.get("lesson_id"), attempt["concept"])
        tally = tallies.get(key)
        if tally is None:
            tally = tallies[key] = ConceptTally(
                student_id=attempt["student_id"],
                lesson_id=attempt.get("lesson_id"),
                concept=attempt["concept"],
            )
        tally.attempts += 1
        if not attempt.get("is_correct"):
            tally.wrong_multiple_choice += 1
        created_at = attempt.get("created_at")
        if created_at and (tally.last_attempt_at is None or created_at > tally.last_attempt_at):
            tally.last_attempt_at = created_at
    return list(tallies.values())


def compute_concept_understanding(
    attempts: Iterable[Dict[str, Any]],
    lesson_id: Optional[str] = None,
    student_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Three-band understanding per (student, concept).

    Args:
        attempts: attempt rows, oldest first
        lesson_id: only count attempts for this lesson
        student_id: only count attempts by this student
    """
    selected = [
        a for a in attempts
        if (lesson_id is None or a.get("lesson_id") == lesson_id)
        and (student_id is None or a.get("student_id") == student_id)
    ]
    return [
        {
            "student_id": tally.student_id,
            "lesson_id": tally.lesson_id,
            "concept": tally.concept,
            "wrong_multiple_choice_count": tally.wrong_multiple_choice,
            "wrong_example_count": tally.wrong_example,
            "total_wrong_count": tally.total_wrong,
            "understanding_level": concept_band3(tally.total_wrong),
            "last_updated": tally.last_attempt_at,
        }
        for tally in tally_attempts(selected)
    ]


def band5_concepts(attempts: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Five-band level per concept; attempts are expected to belong to one student."""
    return [
        {
            "concept": tally.concept,
            "level": session_band5(tally.total_wrong),
            "wrongCount": tally.total_wrong,
            "totalAttempts": tally.attempts,
        }
        for tally in tally_attempts(attempts)
    ]


def level_percentage(levels: List[int]) -> int:
    if not levels:
        return 0
    return round_half_up(sum(levels) / len(levels) / MAX_BAND5 * 100)


def build_student_understanding(
    attempts: List[Dict[str, Any]],
    sessions: List[Dict[str, Any]],
    students_by_id: Dict[str, Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Class view for one lesson: every student who has attempted something,
    with band-5 concept levels, strengths, misunderstandings and a percentage.

    Args:
        attempts: the lesson's attempt rows, oldest first
        sessions: the lesson's chat sessions, newest first
        students_by_id: student rows keyed by id
    """
    students: Dict[str, Dict[str, Any]] = {}
    for tally in tally_attempts(attempts):
        student = students.get(tally.student_id)
        if student is None:
            student = students[tally.student_id] = {
                "id": tally.student_id,
                "name": (students_by_id.get(tally.student_id) or {}).get("name", "Unknown student"),
                "concepts": [],
                "strengths": [],
                "misunderstandings": [],
                "lastActivity": tally.last_attempt_at,
                "sessionStatus": None,
                "sessionCompleted": False,
            }
        level = session_band5(tally.total_wrong)
        student["concepts"].append({
            "concept": tally.concept,
            "level": level,
            "wrongCount": tally.total_wrong,
            "totalAttempts": tally.attempts,
        })
        if level >= STRENGTH_MIN_LEVEL:
            student["strengths"].append(tally.concept)
        else:
            student["misunderstandings"].append(tally.concept)
        if tally.last_attempt_at and (student["lastActivity"] or "") < tally.last_attempt_at:
            student["lastActivity"] = tally.last_attempt_at

    seen = set()
    for session in sessions:
        student = students.get(session.get("student_id"))
        if student is None:
            continue
        if session["student_id"] not in seen:
            # newest session decides the status
            seen.add(session["student_id"])
            student["sessionStatus"] = session.get("status")
            student["sessionCompleted"] = session.get("status") == "completed"
        activity = session.get("ended_at") or session.get("started_at")
        if activity and (student["lastActivity"] or "") < activity:
            student["lastActivity"] = activity

    rows = []
    for student in students.values():
        levels = [c["level"] for c in student["concepts"]]
        student["averageLevel"] = round(sum(levels) / len(levels), 2) if levels else 0
        student["understanding"] = level_percentage(levels)
        rows.append(student)

    class_average = (
        round_half_up(sum(s["understanding"] for s in rows) / len(rows)) if rows else 0
    )
    counts = Counter(concept for s in rows for concept in s["misunderstandings"])
    common = [
        {"concept": concept, "count": count}
        for concept, count in counts.most_common(COMMON_MISUNDERSTANDINGS_LIMIT)
    ]
    return {
        "students": rows,
        "classAverage": class_average,
        "commonMisunderstandings": common,
        "totalStudents": len(rows),
    }


def session_understanding(session: Dict[str, Any], concepts: List[Dict[str, Any]]) -> Optional[int]:
    """Percentage for one session: band-5 average when attempts exist, else the stored legacy level."""
    if concepts:
        return level_percentage([c["level"] for c in concepts])
    return session.get("understanding_level")


def build_teacher_progress(
    sessions: List[Dict[str, Any]],
    attempts: List[Dict[str, Any]],
    lessons_by_id: Dict[str, Dict[str, Any]],
    courses_by_id: Dict[str, Dict[str, Any]],
    students_by_id: Dict[str, Dict[str, Any]],
) -> Dict[str, Any]:
    """Fleet view of a teacher's sessions with band-5 concept levels per session."""
    attempts_by_session: Dict[str, List[Dict[str, Any]]] = {}
    for attempt in attempts:
        attempts_by_session.setdefault(attempt.get("session_id"), []).append(attempt)

    stats = []
    for session in sessions:
        lesson = lessons_by_id.get(session.get("lesson_id")) or {}
        course = courses_by_id.get(lesson.get("course_id")) or {}
        concepts = band5_concepts(attempts_by_session.get(session["id"], []))
        stats.append({
            "id": session["id"],
            "student_id": session.get("student_id"),
            "student_name": (students_by_id.get(session.get("student_id")) or {}).get("name"),
            "lesson_id": session.get("lesson_id"),
            "lesson_title": lesson.get("title"),
            "lesson_topic": lesson.get("topic"),
            "course_id": lesson.get("course_id"),
            "course_title": course.get("title"),
            "status": session.get("status"),
            "started_at": session.get("started_at"),
            "ended_at": session.get("ended_at"),
            "concepts": concepts,
            "understanding": session_understanding(session, concepts),
        })

    concept_progress = []
    for tally in tally_attempts(attempts):
        concept_progress.append({
            "student_id": tally.student_id,
            "student_name": (students_by_id.get(tally.student_id) or {}).get("name"),
            "lesson_id": tally.lesson_id,
            "concept": tally.concept,
            "level": session_band5(tally.total_wrong),
            "wrongCount": tally.total_wrong,
            "totalAttempts": tally.attempts,
            "last_attempt_at": tally.last_attempt_at,
        })

    scored = [s["understanding"] for s in stats if s["understanding"] is not None]
    return {
        "conceptProgress": concept_progress,
        "sessionStats": stats,
        "summary": {
            "totalSessions": len(stats),
            "completedSessions": sum(1 for s in stats if s["status"] == "completed" or s["ended_at"]),
            "averageUnderstanding": round(sum(scored) / len(scored), 1) if scored else 0,
        },
    }
