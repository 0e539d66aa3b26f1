"""
FastAPI Backend for OakTree

Provides REST API endpoints for:
- The study-companion quiz (start / answer / reset / clean / end)
- Chat sessions, messages and transcripts
- Courses, lessons, materials and generated lesson content
- Teacher dashboards (concept understanding, class view, progress)
"""

import os
import sys
import signal
import time
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from storage3.utils import StorageException

from oaktree.answer_evaluator import AnswerEvaluator
from oaktree.config import CORS_ORIGINS, DEFAULT_TEACHER_ID, LOG_LEVEL
from oaktree.course_admin import CourseAdmin
from oaktree.dashboards import ProgressDashboard
from oaktree.errors import LessonNotFound, MissingFields, OakTreeError, StudentNotFound
from oaktree.materials import LessonContentService
from oaktree.session_manager import SessionManager
from oaktree.store import OakTreeStore
from oaktree.text_generator import TextGenerator

from backend.lib.logger import setup_logging, get_logger
from backend.lib.supabase_client import get_supabase_client

setup_logging(level=LOG_LEVEL, use_colors=True)
logger = get_logger("backend.main")

app = FastAPI(
    title="OakTree API",
    description="AI study companion quizzes and teacher dashboards, backed by Supabase",
    version="1.0.0",
)

# CORS middleware for the Next.js frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== Dependencies ====================

_text_generator: Optional[TextGenerator] = None


def get_store() -> OakTreeStore:
    return OakTreeStore(get_supabase_client())


def get_text_generator() -> TextGenerator:
    """Process-wide TextGenerator (one OpenAI client)."""
    global _text_generator
    if _text_generator is None:
        _text_generator = TextGenerator()
    return _text_generator


def get_session_manager(
    store: OakTreeStore = Depends(get_store),
    text_generator: TextGenerator = Depends(get_text_generator),
) -> SessionManager:
    return SessionManager(store, text_generator)


def get_answer_evaluator(
    store: OakTreeStore = Depends(get_store),
    text_generator: TextGenerator = Depends(get_text_generator),
) -> AnswerEvaluator:
    return AnswerEvaluator(store, text_generator)


def get_content_service(
    store: OakTreeStore = Depends(get_store),
    text_generator: TextGenerator = Depends(get_text_generator),
) -> LessonContentService:
    return LessonContentService(store, text_generator)


def get_course_admin(store: OakTreeStore = Depends(get_store)) -> CourseAdmin:
    return CourseAdmin(store)


def get_dashboard(store: OakTreeStore = Depends(get_store)) -> ProgressDashboard:
    return ProgressDashboard(store)


# ==================== Error handling ====================

@app.exception_handler(OakTreeError)
async def oaktree_error_handler(request: Request, exc: OakTreeError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed", error=exc)
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(APIError)
async def database_error_handler(request: Request, exc: APIError):
    logger.error(f"Database error on {request.method} {request.url.path}", error=exc)
    return JSONResponse(status_code=500, content={"error": f"Database error: {exc.message}"})


@app.exception_handler(StorageException)
async def storage_error_handler(request: Request, exc: StorageException):
    logger.error(f"Storage error on {request.method} {request.url.path}", error=exc)
    return JSONResponse(status_code=500, content={"error": "File storage error"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    ]
    logger.warning(f"Invalid request to {request.url.path}", data={"details": details})
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", error=exc)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    logger.request(request.method, request.url.path, data=dict(request.query_params) or None)
    response = await call_next(request)
    logger.response(response.status_code, request.url.path, duration=time.time() - start_time)
    return response


# ==================== Pydantic Models ====================

class StudentLessonRequest(BaseModel):
    studentId: Optional[str] = None
    lessonId: Optional[str] = None


class AnswerRequest(BaseModel):
    sessionId: Optional[str] = None
    answer: Optional[str] = None
    answerType: Optional[str] = None


class SessionRequest(BaseModel):
    sessionId: Optional[str] = None


class CreateCourseRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


class CreateLessonRequest(BaseModel):
    courseId: Optional[str] = None
    title: Optional[str] = None
    weekNumber: Optional[int] = None
    lessonNumber: Optional[int] = None
    topic: Optional[str] = None


class PreclassReadingRequest(BaseModel):
    teacherNeed: Optional[str] = None


class ProcessMaterialRequest(BaseModel):
    materialId: Optional[str] = None


class ProgressDetailRequest(BaseModel):
    teacherId: Optional[str] = None
    studentId: Optional[str] = None
    lessonId: Optional[str] = None


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "OakTree API", "version": "1.0.0"}


# ---------- Quiz chat ----------

@app.post("/api/chat/start")
async def chat_start(body: StudentLessonRequest, manager: SessionManager = Depends(get_session_manager)):
    logger.section("CHAT START", {"student_id": body.studentId, "lesson_id": body.lessonId})
    result = await manager.start_session(body.studentId, body.lessonId)
    logger.success("Chat session ready", data={
        "session_id": result["sessionId"],
        "resumed": result["resumed"],
        "progress": result["progress"],
    })
    return result


@app.post("/api/chat/message")
async def chat_message(body: AnswerRequest, evaluator: AnswerEvaluator = Depends(get_answer_evaluator)):
    result = await evaluator.submit_answer(body.sessionId, body.answer, body.answerType)
    logger.info("Answer evaluated", data={
        "session_id": body.sessionId,
        "answer_type": body.answerType,
        "correct": result["isCorrect"],
        "phase": result["currentPhase"],
    })
    return result


@app.post("/api/chat/reset")
async def chat_reset(body: StudentLessonRequest, manager: SessionManager = Depends(get_session_manager)):
    logger.section("CHAT RESET", {"student_id": body.studentId, "lesson_id": body.lessonId})
    return await manager.reset_session(body.studentId, body.lessonId)


@app.post("/api/chat/clean")
async def chat_clean(body: StudentLessonRequest, manager: SessionManager = Depends(get_session_manager)):
    return await manager.clean_sessions(body.studentId, body.lessonId)


@app.post("/api/chat/end")
async def chat_end(body: SessionRequest, manager: SessionManager = Depends(get_session_manager)):
    logger.section("CHAT END", {"session_id": body.sessionId})
    return await manager.end_session(body.sessionId)


@app.get("/api/chat/transcript/{session_id}")
async def chat_transcript(session_id: str, dashboard: ProgressDashboard = Depends(get_dashboard)):
    return await dashboard.transcript(session_id)


# ---------- Sessions and messages ----------

@app.get("/api/chat-sessions")
async def list_chat_sessions(
    studentId: Optional[str] = None,
    lessonId: Optional[str] = None,
    store: OakTreeStore = Depends(get_store),
):
    return {"sessions": await store.list_sessions(student_id=studentId, lesson_id=lessonId)}


@app.get("/api/chat-sessions/student/{student_id}")
async def list_student_sessions(
    student_id: str,
    lessonId: Optional[str] = None,
    store: OakTreeStore = Depends(get_store),
):
    return {"sessions": await store.list_sessions(student_id=student_id, lesson_id=lessonId)}


@app.get("/api/chat-messages")
async def list_chat_messages(sessionId: Optional[str] = None, store: OakTreeStore = Depends(get_store)):
    if not sessionId:
        raise MissingFields("sessionId is required")
    return {"messages": await store.list_messages(session_id=sessionId)}


@app.get("/api/chat-messages/session/{session_id}")
async def list_session_messages(session_id: str, store: OakTreeStore = Depends(get_store)):
    return {"messages": await store.list_messages(session_id=session_id)}


# ---------- Dashboards ----------

@app.get("/api/concept-understanding")
async def concept_understanding(
    lessonId: Optional[str] = None,
    studentId: Optional[str] = None,
    dashboard: ProgressDashboard = Depends(get_dashboard),
):
    return {"data": await dashboard.concept_understanding(lessonId, studentId)}


@app.get("/api/student-understanding")
async def student_understanding(lessonId: Optional[str] = None, dashboard: ProgressDashboard = Depends(get_dashboard)):
    return await dashboard.student_understanding(lessonId)


@app.get("/api/teacher/progress")
async def teacher_progress(
    teacherId: Optional[str] = None,
    courseId: Optional[str] = None,
    lessonId: Optional[str] = None,
    dashboard: ProgressDashboard = Depends(get_dashboard),
):
    return await dashboard.teacher_progress(teacherId or DEFAULT_TEACHER_ID, courseId, lessonId)


@app.post("/api/teacher/progress")
async def teacher_progress_detail(body: ProgressDetailRequest, dashboard: ProgressDashboard = Depends(get_dashboard)):
    return await dashboard.progress_detail(body.studentId, body.lessonId, body.teacherId or DEFAULT_TEACHER_ID)


# ---------- Students ----------

@app.get("/api/students")
async def list_students(store: OakTreeStore = Depends(get_store)):
    return {"students": await store.list_students()}


@app.get("/api/students/{student_id}")
async def get_student(student_id: str, store: OakTreeStore = Depends(get_store)):
    student = await store.get_student(student_id)
    if not student:
        raise StudentNotFound("Student not found")
    return {"student": student}


# ---------- Courses ----------

@app.get("/api/courses")
async def list_courses(store: OakTreeStore = Depends(get_store)):
    return {"courses": await store.list_courses(DEFAULT_TEACHER_ID)}


@app.post("/api/courses/create")
async def create_course(body: CreateCourseRequest, admin: CourseAdmin = Depends(get_course_admin)):
    return {"success": True, "course": await admin.create_course(body.title, body.description)}


@app.delete("/api/courses/{course_id}")
async def delete_course(course_id: str, admin: CourseAdmin = Depends(get_course_admin)):
    logger.section("DELETE COURSE", {"course_id": course_id})
    return await admin.delete_course(course_id)


# ---------- Lessons ----------

@app.get("/api/lessons")
async def list_lessons(courseId: Optional[str] = None, store: OakTreeStore = Depends(get_store)):
    return {"lessons": await store.list_lessons(course_id=courseId)}


@app.get("/api/lessons/{lesson_id}")
async def get_lesson(lesson_id: str, store: OakTreeStore = Depends(get_store)):
    lesson = await store.get_lesson(lesson_id)
    if not lesson:
        raise LessonNotFound("Lesson not found")
    return {"lesson": lesson}


@app.post("/api/lessons/create")
async def create_lesson(body: CreateLessonRequest, admin: CourseAdmin = Depends(get_course_admin)):
    lesson = await admin.create_lesson(body.courseId, body.title, body.weekNumber, body.lessonNumber, body.topic)
    return {"success": True, "lesson": lesson}


@app.delete("/api/lessons/{lesson_id}")
async def delete_lesson(lesson_id: str, admin: CourseAdmin = Depends(get_course_admin)):
    logger.section("DELETE LESSON", {"lesson_id": lesson_id})
    return await admin.delete_lesson(lesson_id)


@app.post("/api/lessons/{lesson_id}/summarize")
async def summarize_lesson(lesson_id: str, service: LessonContentService = Depends(get_content_service)):
    logger.section("LESSON SUMMARY", {"lesson_id": lesson_id})
    return await service.summarize_lesson(lesson_id)


@app.post("/api/lessons/{lesson_id}/preclassreading")
async def preclass_reading(
    lesson_id: str,
    body: Optional[PreclassReadingRequest] = None,
    service: LessonContentService = Depends(get_content_service),
):
    return await service.generate_preclass_reading(lesson_id, body.teacherNeed if body else None)


# ---------- Materials ----------

@app.post("/api/materials/upload")
async def upload_material(
    background_tasks: BackgroundTasks,
    lesson_id: Optional[str] = Form(None, alias="lessonId"),
    title: Optional[str] = Form(None),
    content_type: Optional[str] = Form(None, alias="contentType"),
    content: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    service: LessonContentService = Depends(get_content_service),
):
    logger.section("MATERIAL UPLOAD", {"lesson_id": lesson_id, "title": title, "content_type": content_type})
    file_data = await file.read() if file else None
    material = await service.upload_material(
        lesson_id,
        title,
        content_type,
        content=content,
        file_name=file.filename if file else None,
        file_data=file_data,
        mime_type=file.content_type if file else None,
    )
    background_tasks.add_task(service.process_material_in_background, material["id"])
    return {
        "success": True,
        "material": material,
        "message": "Material saved successfully and processing started",
    }


@app.post("/api/materials/process")
async def process_material(body: ProcessMaterialRequest, service: LessonContentService = Depends(get_content_service)):
    return await service.process_material(body.materialId)


@app.post("/api/materials/{material_id}/process")
async def process_material_by_id(material_id: str, service: LessonContentService = Depends(get_content_service)):
    return await service.process_material(material_id)


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    uvicorn.run("backend.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True)
