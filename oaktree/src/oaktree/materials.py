"""
Lesson content: material uploads, material and lesson summaries, pre-class
reading.

Summaries are a convenience for the teacher, so a generation failure there
degrades to placeholder text. Pre-class reading is an explicit request and
fails loudly.
"""

import logging
import random
import re
import string
import time
from typing import Any, Dict, Optional

from openai import OpenAIError
from postgrest.exceptions import APIError
from storage3.utils import StorageException

from oaktree.concepts import format_key_concepts, normalize_key_concepts
from oaktree.config import SUMMARY_MODEL
from oaktree.document_parser import extract_text
from oaktree.errors import (
    GenerationFailed,
    LessonNotFound,
    LessonSummaryMissing,
    MaterialNotFound,
    MissingFields,
    NothingToSummarize,
)
from oaktree.store import OakTreeStore
from oaktree.text_generator import TextGenerator, parse_json_reply

logger = logging.getLogger(__name__)

CONTENT_TYPE_TEXT = "text"

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

MATERIAL_SUMMARY_PLACEHOLDER = (
    "A summary could not be generated for this material. Try processing it again."
)
LESSON_SUMMARY_PLACEHOLDER = (
    "A lesson summary could not be generated from the materials. Try again in a moment."
)

MATERIAL_PROMPT_TEMPLATE = """Analyze the following learning material about {topic} and create:
1. A concise summary of the main ideas
2. A list of 5-10 key concepts that students should understand

LEARNING MATERIAL:
{content}

Return your analysis as a JSON object with the following structure:
{{
  "summary": "A comprehensive summary of the material in 3-5 paragraphs",
  "key_concepts": [
    {{"concept": "Key concept", "description": "Brief explanation of this concept"}}
  ]
}}"""

LESSON_PROMPT_TEMPLATE = """Synthesize the provided learning materials into a lesson overview.

CRITICAL INSTRUCTION: Your summary and key concepts must be STRICTLY based on the
materials provided. Do NOT introduce information, concepts or examples that are not
explicitly mentioned in them.

Your task:
1. Write a comprehensive lesson summary that ONLY combines information from the materials
2. Extract 5-7 key concepts that are EXPLICITLY mentioned in the materials
If the materials contradict each other, say so in the summary.

MATERIALS:
{materials}

Return a JSON object:
{{
  "summary": "A comprehensive summary that ONLY includes information from the materials",
  "key_concepts": [
    {{"concept": "Key concept (from materials)", "description": "Description using ONLY the materials"}}
  ]
}}"""

PRECLASS_PROMPT_TEMPLATE = """Create engaging pre-class reading material for students.

# LESSON INFORMATION:
- Course: "{course}"
- Lesson Topic: "{topic}"
- Teacher's emphasis: {teacher_need}

# LESSON SUMMARY:
{summary}

# KEY CONCEPTS:
{concepts}

# INSTRUCTIONS:
1. Write a brief, engaging introduction to this topic (AT MOST THREE SHORT PARAGRAPHS)
2. Use a conversational, friendly tone, speaking directly to the student
3. Use relatable, real-world examples and analogies
4. Start with a hook, question or scenario that draws students in
5. Include 1-2 thought-provoking questions to consider before class
6. If the teacher specified areas to emphasize, feature them prominently"""

SUMMARY_SYSTEM_PROMPT = "You are an expert education assistant. You always answer with a single JSON object."
PRECLASS_SYSTEM_PROMPT = "You are an expert education assistant writing for students."


def unique_file_name(file_name: str) -> str:
    """`<millis>_<random>_<sanitized name>`, so uploads never collide in the bucket."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", file_name or "upload")
    return f"{int(time.time() * 1000)}_{suffix}_{sanitized}"


class LessonContentService:
    """Materials and lesson-level generated content."""

    def __init__(self, store: OakTreeStore, text_generator: TextGenerator, model: str = SUMMARY_MODEL):
        self.store = store
        self.text_generator = text_generator
        self.model = model

    # ==================== Materials ====================

    async def upload_material(
        self,
        lesson_id: str,
        title: str,
        content_type: str,
        content: Optional[str] = None,
        file_name: Optional[str] = None,
        file_data: Optional[bytes] = None,
        mime_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Save a material: inline text, or a file pushed to the storage bucket.

        Text is extracted from files at upload time so processing never has to
        download them again. If the row insert fails the uploaded file is removed.

        Raises:
            MissingFields, LessonNotFound, APIError
        """
        if not lesson_id or not title or not content_type:
            raise MissingFields("Missing required fields")
        if not await self.store.get_lesson(lesson_id):
            raise LessonNotFound(f"Lesson {lesson_id} not found")

        stored_name = None
        file_url = None
        if content_type == CONTENT_TYPE_TEXT:
            if not content or not content.strip():
                raise MissingFields("No content provided")
        else:
            if not file_data:
                raise MissingFields("No file provided")
            stored_name = unique_file_name(file_name)
            content = extract_text(file_data, file_name or stored_name, mime_type) or None
            file_url = await self.store.upload_file(stored_name, file_data, mime_type)
            logger.info(f"📤 [LessonContentService] Uploaded {stored_name}")

        try:
            material = await self.store.create_material({
                "lesson_id": lesson_id,
                "title": title,
                "content_type": content_type,
                "content": content,
                "file_url": file_url,
                "file_name": stored_name,
                "processing_status": STATUS_PENDING,
            })
        except APIError:
            if stored_name:
                try:
                    await self.store.remove_files([stored_name])
                    logger.info(f"🧹 [LessonContentService] Removed orphaned file {stored_name}")
                except StorageException as cleanup_error:
                    logger.error(f"❌ [LessonContentService] Could not remove orphaned file: {cleanup_error}")
            raise

        logger.info(f"✅ [LessonContentService] Saved material {material['id']}")
        return material

    async def process_material(self, material_id: str) -> Dict[str, Any]:
        """
        Summarize one material and extract its key concepts.

        A failed generation leaves a placeholder summary and
        `processing_status = "failed"`; the request itself succeeds.

        Raises:
            MissingFields, MaterialNotFound, NothingToSummarize
        """
        if not material_id:
            raise MissingFields("Material ID is required")
        material = await self.store.get_material(material_id)
        if not material:
            raise MaterialNotFound("Material not found")
        text = (material.get("content") or "").strip()
        if not text:
            raise NothingToSummarize("No content to analyze")

        lesson = await self.store.get_lesson(material["lesson_id"]) or {}
        await self.store.update_material(material_id, {"processing_status": STATUS_PROCESSING})

        prompt = MATERIAL_PROMPT_TEMPLATE.format(
            topic=lesson.get("topic") or "the subject",
            content=text,
        )
        try:
            reply = await self.text_generator.generate(
                prompt, system=SUMMARY_SYSTEM_PROMPT, json_mode=True, model=self.model
            )
            analysis = parse_json_reply(reply)
            summary = analysis.get("summary")
            if not isinstance(summary, str) or not summary.strip():
                raise ValueError("Reply has no summary")
        except (ValueError, OpenAIError) as e:
            logger.warning(f"⚠️ [LessonContentService] Material {material_id} summary failed: {e}")
            updated = await self.store.update_material(material_id, {
                "ai_summary": MATERIAL_SUMMARY_PLACEHOLDER,
                "processing_status": STATUS_FAILED,
            })
            return {"success": True, "degraded": True, "material": updated, "analysis": None}

        key_concepts = normalize_key_concepts(analysis.get("key_concepts"))
        updated = await self.store.update_material(material_id, {
            "ai_summary": summary.strip(),
            "key_concepts": key_concepts,
            "processing_status": STATUS_COMPLETED,
        })
        logger.info(f"✅ [LessonContentService] Material {material_id}: {len(key_concepts)} key concepts")
        return {
            "success": True,
            "degraded": False,
            "material": updated,
            "analysis": {"summary": summary.strip(), "key_concepts": key_concepts},
        }

    async def process_material_in_background(self, material_id: str) -> None:
        """Background-task entry point: failures are logged, never raised."""
        try:
            await self.process_material(material_id)
        except (NothingToSummarize, MaterialNotFound) as e:
            logger.warning(f"⚠️ [LessonContentService] Skipped processing {material_id}: {e.message}")
            await self.store.update_material(material_id, {"processing_status": STATUS_FAILED})
        except APIError as e:
            logger.error(f"❌ [LessonContentService] Processing {material_id} failed: {e}")

    # ==================== Lessons ====================

    async def summarize_lesson(self, lesson_id: str) -> Dict[str, Any]:
        """
        Build the lesson summary and key concepts from its materials.

        On a generation or parse failure the summary becomes a placeholder and
        the existing key concepts are kept.

        Raises:
            LessonNotFound, NothingToSummarize
        """
        lesson = await self.store.get_lesson(lesson_id)
        if not lesson:
            raise LessonNotFound("Lesson not found")
        materials = await self.store.list_materials(lesson_id=lesson_id)
        if not materials:
            raise NothingToSummarize("No materials found for this lesson")

        blocks = []
        for material in materials:
            block = f"MATERIAL: {material.get('title') or 'Untitled'}\n"
            block += material.get("ai_summary") or "No summary available"
            concepts = normalize_key_concepts(material.get("key_concepts"))
            if concepts:
                block += "\nKey concepts:\n" + format_key_concepts(concepts)
            blocks.append(block)

        prompt = LESSON_PROMPT_TEMPLATE.format(materials="\n\n---\n\n".join(blocks))
        logger.info(f"📝 [LessonContentService] Summarizing lesson {lesson_id} from {len(materials)} materials")
        try:
            reply = await self.text_generator.generate(
                prompt, system=SUMMARY_SYSTEM_PROMPT, json_mode=True, model=self.model
            )
            analysis = parse_json_reply(reply)
            summary = analysis.get("summary")
            if not isinstance(summary, str) or not summary.strip():
                raise ValueError("Reply has no summary")
        except (ValueError, OpenAIError) as e:
            logger.warning(f"⚠️ [LessonContentService] Lesson {lesson_id} summary failed, using placeholder: {e}")
            updated = await self.store.update_lesson(lesson_id, {"ai_summary": LESSON_SUMMARY_PLACEHOLDER})
            return {"success": True, "degraded": True, "lesson": updated}

        update = {"ai_summary": summary.strip()}
        key_concepts = normalize_key_concepts(analysis.get("key_concepts"))
        if key_concepts:
            update["key_concepts"] = key_concepts
        else:
            logger.warning(f"⚠️ [LessonContentService] No usable key concepts for lesson {lesson_id}, kept existing")

        updated = await self.store.update_lesson(lesson_id, update)
        logger.info(f"✅ [LessonContentService] Lesson {lesson_id} summarized ({len(key_concepts)} key concepts)")
        return {"success": True, "degraded": False, "lesson": updated}

    async def generate_preclass_reading(self, lesson_id: str, teacher_need: Optional[str] = None) -> Dict[str, Any]:
        """
        Write the student-facing pre-class reading for a summarized lesson.

        Raises:
            LessonNotFound, LessonSummaryMissing, GenerationFailed
        """
        lesson = await self.store.get_lesson(lesson_id)
        if not lesson:
            raise LessonNotFound("Lesson not found")
        if not lesson.get("ai_summary"):
            raise LessonSummaryMissing("Lesson summary not found. Please generate a lesson overview first.")

        course = await self.store.get_course(lesson["course_id"]) if lesson.get("course_id") else None
        concepts = normalize_key_concepts(lesson.get("key_concepts"))
        prompt = PRECLASS_PROMPT_TEMPLATE.format(
            course=(course or {}).get("title") or "the course",
            topic=lesson.get("topic") or lesson.get("title") or "",
            teacher_need=teacher_need or "No specific emphasis provided.",
            summary=lesson["ai_summary"],
            concepts=format_key_concepts(concepts) or "No key concepts specified.",
        )
        try:
            reading = await self.text_generator.generate(prompt, system=PRECLASS_SYSTEM_PROMPT, model=self.model)
        except (ValueError, OpenAIError) as e:
            logger.error(f"❌ [LessonContentService] Pre-class reading failed for {lesson_id}: {e}")
            raise GenerationFailed(f"Failed to generate pre-class reading: {e}") from e
        if not reading.strip():
            raise GenerationFailed("Failed to generate pre-class reading: empty reply")

        updated = await self.store.update_lesson(lesson_id, {
            "preclass_reading": reading.strip(),
            "teacher_need": teacher_need or None,
        })
        logger.info(f"✅ [LessonContentService] Pre-class reading saved for lesson {lesson_id}")
        return {"success": True, "lesson": updated}
