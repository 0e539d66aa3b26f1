"""
Session State Data Model

Defines the quiz progression state that is stored, serialized, in the
`session_state` column of a chat session, and the codec for it.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

OPTION_KEYS = ("a", "b", "c")


class Phase(str, Enum):
    """Sub-stage within one concept."""
    MULTIPLE_CHOICE = "multiple_choice"
    EXAMPLE = "example"


@dataclass
class ConceptQuestion:
    """One generated multiple-choice-then-example question for a concept."""
    concept: str
    concept_description: str
    multiple_choice_question: str
    options: Dict[str, str]
    correct_option: str
    correct_explanation: str
    example_prompt: str
    example_hint: str

    def __post_init__(self):
        missing = [key for key in OPTION_KEYS if not self.options.get(key)]
        if missing:
            raise ValueError(f"Question for '{self.concept}' is missing options {missing}")
        if self.correct_option not in OPTION_KEYS:
            raise ValueError(
                f"Question for '{self.concept}' has invalid correct option {self.correct_option!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept": self.concept,
            "conceptDescription": self.concept_description,
            "multipleChoiceQuestion": self.multiple_choice_question,
            "options": {key: self.options[key] for key in OPTION_KEYS},
            "correctOption": self.correct_option,
            "correctExplanation": self.correct_explanation,
            "examplePrompt": self.example_prompt,
            "exampleHint": self.example_hint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConceptQuestion":
        """
        Build a question from its camelCase JSON form.

        Raises:
            ValueError: if the options or the correct option are invalid
        """
        if not isinstance(data, dict):
            raise ValueError(f"Question must be an object, got {type(data).__name__}")
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ValueError("Question options must be an object")
        return cls(
            concept=str(data.get("concept") or "").strip(),
            concept_description=str(data.get("conceptDescription") or ""),
            multiple_choice_question=str(data.get("multipleChoiceQuestion") or ""),
            options={key: str(options.get(key) or "").strip() for key in OPTION_KEYS},
            correct_option=str(data.get("correctOption") or "").strip().lower(),
            correct_explanation=str(data.get("correctExplanation") or ""),
            example_prompt=str(data.get("examplePrompt") or ""),
            example_hint=str(data.get("exampleHint") or ""),
        )


@dataclass
class SessionState:
    """Quiz progression for one chat session."""
    questions: List[ConceptQuestion] = field(default_factory=list)
    current_question_index: int = 0
    current_phase: Phase = Phase.MULTIPLE_CHOICE
    # Kept for compatibility with stored rows; nothing appends to it
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def is_complete(self) -> bool:
        return bool(self.questions) and self.current_question_index >= len(self.questions)

    @property
    def current_question(self) -> Optional[ConceptQuestion]:
        if self.is_complete or not self.questions:
            return None
        return self.questions[self.current_question_index]

    def progress(self) -> Dict[str, int]:
        """Progress block shown to the client: 1-based position plus percent done."""
        total = self.total
        if self.is_complete:
            return {"current": total, "total": total, "percentage": 100}
        return {
            "current": self.current_question_index + 1,
            "total": total,
            "percentage": round_half_up(100 * self.current_question_index / total) if total else 0,
        }

    def rewound(self) -> "SessionState":
        """Same question set, back at the first question."""
        return SessionState(questions=list(self.questions))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions": [q.to_dict() for q in self.questions],
            "currentQuestionIndex": self.current_question_index,
            "currentPhase": self.current_phase.value,
            "conversationHistory": list(self.conversation_history),
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def encode_state(state: SessionState) -> str:
    """Serialize a SessionState for the `session_state` column."""
    return json.dumps(state.to_dict(), ensure_ascii=False)


def decode_state(raw: Optional[str]) -> Optional[SessionState]:
    """
    Parse a stored SessionState.

    Returns None when there is no state or it cannot be parsed; an
    unreadable state is treated like a session that never got questions.
    """
    if not raw:
        return None
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"⚠️ Could not parse stored session state: {e}")
            return None
    if not isinstance(data, dict):
        return None

    raw_questions = data.get("questions")
    if not isinstance(raw_questions, list):
        return None
    try:
        questions = [ConceptQuestion.from_dict(q) for q in raw_questions]
    except ValueError as e:
        logger.warning(f"⚠️ Stored session state has an invalid question: {e}")
        return None

    try:
        index = int(data.get("currentQuestionIndex") or 0)
    except (TypeError, ValueError):
        index = 0
    index = max(0, min(index, len(questions)))

    try:
        phase = Phase(data.get("currentPhase") or Phase.MULTIPLE_CHOICE.value)
    except ValueError:
        phase = Phase.MULTIPLE_CHOICE

    history = data.get("conversationHistory")
    return SessionState(
        questions=questions,
        current_question_index=index,
        current_phase=phase,
        conversation_history=history if isinstance(history, list) else [],
    )
