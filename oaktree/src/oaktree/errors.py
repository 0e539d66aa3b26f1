"""
Domain errors.

Each error knows the HTTP status it maps to and any machine-readable fields
the client branches on. The API layer turns them into `{"error": ..., **extra}`.
"""

from typing import Any, Dict, List, Optional


class OakTreeError(Exception):
    """Base class for all OakTree domain failures."""

    status_code: int = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class MissingFields(OakTreeError):
    status_code = 400


class LessonNotReady(OakTreeError):
    """The lesson has no key concepts, so there is nothing to quiz."""

    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message or (
                "Chat is not available for this lesson yet. The teacher needs to "
                "generate lesson content with key concepts first."
            ),
            chatNotAvailable=True,
        )


class NoQuestionsToReset(OakTreeError):
    status_code = 400


class InvalidAnswer(OakTreeError):
    status_code = 400


class SessionNotActive(OakTreeError):
    status_code = 400


class NothingToSummarize(OakTreeError):
    """A lesson without materials, or a material without text."""

    status_code = 400


class LessonSummaryMissing(OakTreeError):
    status_code = 400


class LessonNotFound(OakTreeError):
    status_code = 404


class SessionNotFound(OakTreeError):
    status_code = 404


class CourseNotFound(OakTreeError):
    status_code = 404


class MaterialNotFound(OakTreeError):
    status_code = 404


class StudentNotFound(OakTreeError):
    status_code = 404


class PhaseMismatch(OakTreeError):
    """The submitted answer type does not match the session's current phase."""

    status_code = 409


class StaleSessionState(OakTreeError):
    """Another request rewrote the session state between our read and write."""

    status_code = 409

    def __init__(self, session_id: str):
        super().__init__(
            f"Session {session_id} was modified by another request, please retry",
            retry=True,
        )


class ActiveSessionConflict(OakTreeError):
    status_code = 409


class GenerationFailed(OakTreeError):
    status_code = 500


class DeletionIncomplete(OakTreeError):
    status_code = 500

    def __init__(self, message: str, failed_steps: List[str]):
        super().__init__(message, failedSteps=failed_steps)
