"""
Conversation rendering.

Builds the linear chat transcript the client displays from the stored,
structured messages plus the session's SessionState. Roles, characters and
terminality come from the stored columns; nothing is inferred from text.
"""

from typing import Any, Dict, List, Optional

from oaktree.messages import (
    SPEAKER_CHARACTERS,
    FeedbackBody,
    QuestionBody,
    body_from_row,
    speaker_from_row,
)
from oaktree.session_state import Phase, SessionState, decode_state


def render_message(row: Dict[str, Any]) -> Dict[str, Any]:
    body = body_from_row(row)
    speaker = speaker_from_row(row, body)
    return {
        "id": row.get("id"),
        "role": speaker.value,
        "character": SPEAKER_CHARACTERS[speaker],
        "kind": body.kind.value,
        "text": body.text,
        "options": body.options if isinstance(body, QuestionBody) else None,
        "concept": getattr(body, "concept", None),
        "questionIndex": getattr(body, "question_index", None),
        "isPositive": body.is_positive if isinstance(body, FeedbackBody) else None,
        "hint": getattr(body, "hint", None),
        "isTerminal": bool(row.get("is_terminal")),
        "timestamp": row.get("timestamp"),
    }


def pending_prompt(state: Optional[SessionState]) -> Optional[Dict[str, Any]]:
    """What the student is expected to answer next, or None."""
    if state is None or state.current_question is None:
        return None
    question = state.current_question
    prompt = {
        "phase": state.current_phase.value,
        "questionIndex": state.current_question_index,
        "concept": question.concept,
    }
    if state.current_phase is Phase.MULTIPLE_CHOICE:
        prompt["question"] = question.multiple_choice_question
        prompt["options"] = dict(question.options)
    else:
        prompt["examplePrompt"] = question.example_prompt
        prompt["exampleHint"] = question.example_hint
    return prompt


def render_transcript(session: Dict[str, Any], message_rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Transcript view of a session.

    Args:
        session: chat_sessions row
        message_rows: the session's messages, oldest first

    Returns:
        `{sessionId, status, messages, pending, progress, isComplete}`; `pending`
        is None once the session is no longer active
    """
    messages = [render_message(row) for row in message_rows]
    state = decode_state(session.get("session_state"))
    is_complete = (
        session.get("status") == "completed"
        or bool(state and state.is_complete)
        or any(m["isTerminal"] for m in messages)
    )
    return {
        "sessionId": session.get("id"),
        "status": session.get("status"),
        "messages": messages,
        "pending": None if is_complete or session.get("status") != "active" else pending_prompt(state),
        "progress": state.progress() if state and state.questions else None,
        "isComplete": is_complete,
    }
