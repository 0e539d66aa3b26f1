"""
Shared fixtures: an in-memory Supabase stand-in and a scripted text generator.

`FakeSupabase` implements the slice of the supabase-py surface OakTreeStore
uses (`table(...).select/insert/update/delete/eq/neq/in_/order/limit/execute`
and `storage.from_(...)`). It also enforces the one-active-session index.
"""

import copy
import itertools
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError
from storage3.utils import StorageException

from oaktree.store import OakTreeStore

TABLE_DEFAULTS = {
    "chat_sessions": {
        "ended_at": None,
        "status": "active",
        "understanding_level": None,
        "strengths": None,
        "misunderstandings": None,
        "session_state": None,
        "completion_analysis": None,
        "version": 0,
    },
    "lessons": {"ai_summary": None, "key_concepts": [], "preclass_reading": None, "teacher_need": None},
    "materials": {
        "content": None,
        "file_url": None,
        "file_name": None,
        "ai_summary": None,
        "key_concepts": [],
        "processing_status": "pending",
    },
    "chat_messages": {"is_terminal": False},
}

_clock = itertools.count()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeResult:
    def __init__(self, data: List[Dict[str, Any]]):
        self.data = data


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.operation = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orderings: List[tuple] = []
        self.row_limit: Optional[int] = None

    # ---- operations ----

    def select(self, *columns):
        self.operation = "select"
        return self

    def insert(self, rows):
        self.operation = "insert"
        self.payload = rows
        return self

    def update(self, data):
        self.operation = "update"
        self.payload = data
        return self

    def delete(self):
        self.operation = "delete"
        return self

    # ---- filters ----

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        allowed = list(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def order(self, column, desc=False):
        self.orderings.append((column, desc))
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    # ---- execution ----

    def _matches(self, row):
        return all(check(row) for check in self.filters)

    def execute(self) -> FakeResult:
        self.db.check_failure(self.table, self.operation)
        rows = self.db.tables.setdefault(self.table, [])

        if self.operation == "insert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in payload:
                row = {**TABLE_DEFAULTS.get(self.table, {}), **copy.deepcopy(item)}
                row.setdefault("id", str(uuid.uuid4()))
                row.setdefault("created_at", _now())
                self.db.check_unique(self.table, rows + inserted, row)
                inserted.append(row)
            rows.extend(inserted)
            return FakeResult(copy.deepcopy(inserted))

        matched = [row for row in rows if self._matches(row)]

        if self.operation == "update":
            for row in matched:
                candidate = {**row, **copy.deepcopy(self.payload)}
                others = [r for r in rows if r is not row]
                self.db.check_unique(self.table, others, candidate)
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResult(copy.deepcopy(matched))

        if self.operation == "delete":
            self.db.tables[self.table] = [row for row in rows if not self._matches(row)]
            return FakeResult(copy.deepcopy(matched))

        result = list(matched)
        for column, desc in reversed(self.orderings):
            result.sort(key=lambda row: (row.get(column) is not None, row.get(column) or 0), reverse=desc)
        if self.row_limit is not None:
            result = result[:self.row_limit]
        return FakeResult(copy.deepcopy(result))


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str):
        self.storage = storage
        self.name = name

    def upload(self, path, file, file_options=None):
        self.storage.files[path] = file
        return {"Key": f"{self.name}/{path}"}

    def remove(self, paths):
        if self.storage.fail_remove:
            raise StorageException({"message": "storage unavailable"})
        for path in paths:
            self.storage.files.pop(path, None)
        return [{"name": p} for p in paths]

    def get_public_url(self, path):
        return f"https://storage.test/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.fail_remove = False

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeSupabase:
    """In-memory tables plus failure injection (`fail(table, operation)`)."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.storage = FakeStorage()
        self.failures = set()

    def table(self, name):
        return FakeQuery(self, name)

    def fail(self, table, operation):
        self.failures.add((table, operation))

    def check_failure(self, table, operation):
        if (table, operation) in self.failures:
            raise APIError({"message": f"{operation} on {table} failed", "code": "XX000"})

    def check_unique(self, table, existing, row):
        if table != "chat_sessions" or row.get("status") != "active":
            return
        for other in existing:
            if (
                other.get("status") == "active"
                and other.get("student_id") == row.get("student_id")
                and other.get("lesson_id") == row.get("lesson_id")
            ):
                raise APIError({
                    "message": "duplicate key value violates unique constraint \"chat_sessions_one_active\"",
                    "code": "23505",
                })

    def rows(self, table, **filters):
        return [
            row for row in self.tables.get(table, [])
            if all(row.get(key) == value for key, value in filters.items())
        ]

    def seed(self, table, **row):
        row = {**TABLE_DEFAULTS.get(table, {}), **row}
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", f"2024-01-01T00:00:{next(_clock):02d}+00:00")
        self.tables.setdefault(table, []).append(row)
        return row


class ScriptedGenerator:
    """
    Stand-in for TextGenerator.

    Replies come from `handler(prompt, system)` when given, else from the
    `replies` queue. Every call is recorded in `calls`.
    """

    def __init__(self, replies: Optional[List[str]] = None, handler: Optional[Callable[[str, Optional[str]], str]] = None):
        self.replies = list(replies or [])
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, system=None, json_mode=False, model=None, max_tokens=None, temperature=0.7):
        self.calls.append({"prompt": prompt, "system": system, "json_mode": json_mode, "model": model})
        if self.handler is not None:
            return self.handler(prompt, system)
        if not self.replies:
            raise AssertionError("ScriptedGenerator ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def calls_with(self, text: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if text in (c["system"] or "") or text in c["prompt"]]


def make_question(concept: str, correct: str = "b", description: str = "") -> Dict[str, Any]:
    return {
        "concept": concept,
        "conceptDescription": description,
        "multipleChoiceQuestion": f"Hi! I heard in your class you learned about {concept}. Can you tell me what it is?",
        "options": {"a": f"Not {concept}", "b": f"The idea of {concept}", "c": f"Something else"},
        "correctOption": correct,
        "correctExplanation": f"Spot on! That's {concept}.",
        "examplePrompt": f"Oh, I know! That reminds me of something. That's an example of {concept}, right? Can you think of another one?",
        "exampleHint": f"Think of everyday situations involving {concept}",
    }


def questions_reply(concepts: List[str], correct: str = "b") -> str:
    return json.dumps({"questions": [make_question(c, correct) for c in concepts]})


def grade_reply(is_correct: bool, feedback: str = "", hint: str = "") -> str:
    return json.dumps({
        "isCorrect": is_correct,
        "feedback": feedback or ("Great example!" if is_correct else "Not quite an example."),
        "hint": hint,
    })


def quiz_handler(concepts: List[str], example_verdicts: Optional[List[bool]] = None):
    """
    Handler answering question-set prompts with `concepts`, grading prompts
    from `example_verdicts` (all correct when exhausted or omitted) and
    summary prompts with a fixed summary.
    """
    verdicts = list(example_verdicts or [])

    def handle(prompt, system):
        if system and "Chirpy" in system:
            return questions_reply(concepts)
        if system and "Sage" in system:
            return grade_reply(verdicts.pop(0) if verdicts else True)
        if system and "education assistant" in system:
            return json.dumps({"summary": "Leaves make sugar.", "key_concepts": ["Chlorophyll"]})
        raise AssertionError(f"Unexpected prompt: {prompt[:80]}")

    return handle


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def store(fake_supabase):
    return OakTreeStore(fake_supabase)


@pytest.fixture
def lesson_setup(fake_supabase):
    """A course, a two-concept lesson and a student."""
    course = fake_supabase.seed(
        "courses", title="Biology", teacher_id="00000000-0000-0000-0000-000000000001"
    )
    lesson = fake_supabase.seed(
        "lessons",
        course_id=course["id"],
        title="Energy in cells",
        week_number=1,
        lesson_number=1,
        topic="Cell energy",
        ai_summary="How cells get energy.",
        key_concepts=[
            {"concept": "Photosynthesis", "description": "Plants turn light into chemical energy"},
            "Respiration",
        ],
    )
    student = fake_supabase.seed("students", name="Ada", email="ada@example.com")
    return {"course": course, "lesson": lesson, "student": student}
