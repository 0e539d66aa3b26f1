"""OakTree: AI study-companion quizzes and teacher dashboards."""

from oaktree.answer_evaluator import AnswerEvaluator
from oaktree.course_admin import CourseAdmin
from oaktree.dashboards import ProgressDashboard
from oaktree.materials import LessonContentService
from oaktree.session_manager import SessionManager
from oaktree.store import OakTreeStore
from oaktree.text_generator import TextGenerator

__all__ = [
    "AnswerEvaluator",
    "CourseAdmin",
    "LessonContentService",
    "OakTreeStore",
    "ProgressDashboard",
    "SessionManager",
    "TextGenerator",
]
