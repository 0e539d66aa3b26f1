"""
Chat message bodies.

A message row stores who spoke (`speaker`), what kind of utterance it is
(`kind`), a structured `content` payload and whether it closes the
conversation (`is_terminal`). The body classes below are the typed view of
`kind` + `content`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class Speaker(str, Enum):
    TUTOR = "tutor"
    STUDENT = "student"
    GRADER = "grader"


class MessageKind(str, Enum):
    QUESTION = "question"
    CHOICE_ANSWER = "choice_answer"
    EXAMPLE_ANSWER = "example_answer"
    FEEDBACK = "feedback"
    PLAIN_TEXT = "plain_text"


# Names the client shows for each speaker
SPEAKER_CHARACTERS = {
    Speaker.TUTOR: "Chirpy",
    Speaker.GRADER: "Sage",
    Speaker.STUDENT: None,
}


@dataclass
class QuestionBody:
    """A tutor prompt: the multiple-choice question, or the example request."""
    text: str
    concept: str
    question_index: int
    phase: str
    options: Optional[Dict[str, str]] = None
    hint: Optional[str] = None

    kind = MessageKind.QUESTION
    speaker = Speaker.TUTOR


@dataclass
class ChoiceAnswerBody:
    option: str
    text: str
    concept: str
    question_index: int

    kind = MessageKind.CHOICE_ANSWER
    speaker = Speaker.STUDENT


@dataclass
class ExampleAnswerBody:
    text: str
    concept: str
    question_index: int

    kind = MessageKind.EXAMPLE_ANSWER
    speaker = Speaker.STUDENT


@dataclass
class FeedbackBody:
    text: str
    is_positive: bool
    concept: Optional[str] = None
    question_index: Optional[int] = None
    hint: Optional[str] = None

    kind = MessageKind.FEEDBACK
    speaker = Speaker.GRADER


@dataclass
class PlainTextBody:
    text: str

    kind = MessageKind.PLAIN_TEXT
    speaker = Speaker.TUTOR


MessageBody = Union[QuestionBody, ChoiceAnswerBody, ExampleAnswerBody, FeedbackBody, PlainTextBody]

_BODY_TYPES = {
    MessageKind.QUESTION: QuestionBody,
    MessageKind.CHOICE_ANSWER: ChoiceAnswerBody,
    MessageKind.EXAMPLE_ANSWER: ExampleAnswerBody,
    MessageKind.FEEDBACK: FeedbackBody,
    MessageKind.PLAIN_TEXT: PlainTextBody,
}

# payload key -> dataclass field
_PAYLOAD_KEYS = {
    "text": "text",
    "concept": "concept",
    "questionIndex": "question_index",
    "phase": "phase",
    "options": "options",
    "hint": "hint",
    "option": "option",
    "isPositive": "is_positive",
}


def body_to_payload(body: MessageBody) -> Dict[str, Any]:
    """Structured JSON payload for the `content` column. None fields are omitted."""
    payload = {}
    for key, attr in _PAYLOAD_KEYS.items():
        value = getattr(body, attr, None)
        if value is not None:
            payload[key] = value
    return payload


def body_from_row(row: Dict[str, Any]) -> MessageBody:
    """
    Rebuild the typed body of a stored message.

    Unknown kinds are read as plain text so an old row never breaks a transcript.
    """
    try:
        kind = MessageKind(row.get("kind"))
    except ValueError:
        kind = MessageKind.PLAIN_TEXT

    content = row.get("content")
    if not isinstance(content, dict):
        content = {"text": "" if content is None else str(content)}

    body_type = _BODY_TYPES[kind]
    wanted = set(body_type.__dataclass_fields__)
    kwargs = {
        attr: content[key]
        for key, attr in _PAYLOAD_KEYS.items()
        if key in content and attr in wanted
    }
    kwargs.setdefault("text", "")
    if kind is MessageKind.FEEDBACK:
        kwargs.setdefault("is_positive", False)
    if kind in (MessageKind.QUESTION, MessageKind.CHOICE_ANSWER, MessageKind.EXAMPLE_ANSWER):
        kwargs.setdefault("concept", "")
        kwargs.setdefault("question_index", 0)
    if kind is MessageKind.QUESTION:
        kwargs.setdefault("phase", "multiple_choice")
    if kind is MessageKind.CHOICE_ANSWER:
        kwargs.setdefault("option", "")
    return body_type(**kwargs)


def speaker_from_row(row: Dict[str, Any], body: Optional[MessageBody] = None) -> Speaker:
    """The stored speaker column; the body's default only for rows written without one."""
    try:
        return Speaker(row.get("speaker"))
    except ValueError:
        return (body or body_from_row(row)).speaker


def build_message_row(
    session_id: str,
    body: MessageBody,
    is_terminal: bool = False,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Row for `chat_messages`; speaker and terminality are decided here, at write time."""
    return {
        "session_id": session_id,
        "speaker": body.speaker.value,
        "kind": body.kind.value,
        "content": body_to_payload(body),
        "is_terminal": is_terminal,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
    }


def choice_question_body(question, index: int) -> QuestionBody:
    """Tutor message presenting the multiple-choice question of `question`."""
    return QuestionBody(
        text=question.multiple_choice_question,
        concept=question.concept,
        question_index=index,
        phase="multiple_choice",
        options=dict(question.options),
    )


def example_request_body(question, index: int) -> QuestionBody:
    """Tutor message asking for an example of the concept."""
    return QuestionBody(
        text=question.example_prompt,
        concept=question.concept,
        question_index=index,
        phase="example",
        hint=question.example_hint or None,
    )
