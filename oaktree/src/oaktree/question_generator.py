"""
Question Set Generator

Turns a lesson's key concepts (plus its materials as context) into one
multiple-choice-then-example question per concept, with a single LLM call.
Unlike the summary paths, a bad reply here is fatal: there is no fallback
question set.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAIError

from oaktree.concepts import format_key_concepts, normalize_key_concepts
from oaktree.config import QUESTION_MODEL
from oaktree.errors import GenerationFailed
from oaktree.session_state import ConceptQuestion
from oaktree.text_generator import TextGenerator, parse_json_reply

logger = logging.getLogger(__name__)

QUESTION_SYSTEM_PROMPT = (
    "You are Chirpy, an enthusiastic and friendly educational assistant creating a "
    "standardized learning session. You always answer with a single JSON object."
)

QUESTION_PROMPT_TEMPLATE = """For each concept, create a multiple-choice question followed by an example request.

LESSON TOPIC: {topic}
LESSON SUMMARY: {summary}

KEY CONCEPTS TO COVER:
{concepts}

ADDITIONAL CONTEXT:
{context}

For each concept, create a standardized interaction following this EXACT pattern:

1. Multiple Choice Question:
   - Start with: "Hi! I heard in your class you learned about [Concept Name]. Can you tell me what it is?"
   - Provide 3 options (a, b, c) where one is correct and two are plausible but incorrect
   - Make options concise but clear

2. Example Request:
   - After the correct answer, transition naturally without saying "Yes! That's right!"
   - Use a smooth transition like: "Oh, I know! That reminds me... [short real-world example]. That's an example of [concept], right? But I need another one. Can you think of one?"
   - Provide a hint that helps students think of examples

IMPORTANT:
- Cover EVERY concept above, in the same order, exactly one question per concept
- Keep Chirpy's personality enthusiastic and encouraging
- Make incorrect options believable but clearly distinguishable from the correct answer
- Keep language simple and conversational
- For correctExplanation, DON'T say "Yes! That's right!". Use "Exactly!", "Spot on!", "You got it!" or move directly to the example

Return a JSON object with this structure:
{{
  "questions": [
    {{
      "concept": "concept name",
      "conceptDescription": "brief description if available",
      "multipleChoiceQuestion": "Hi! I heard in your class you learned about [concept]. Can you tell me what it is?",
      "options": {{"a": "option a text", "b": "option b text", "c": "option c text"}},
      "correctOption": "a|b|c",
      "correctExplanation": "Natural transition or brief acknowledgment",
      "examplePrompt": "Oh, I know! That reminds me... [example]. That's an example of [concept], right? But I need another one. Can you think of one?",
      "exampleHint": "Think of another real-life example that shows [concept]"
    }}
  ]
}}"""


def build_material_context(materials: List[Dict[str, Any]]) -> str:
    """Summaries and key concepts of the lesson materials, as prompt context."""
    blocks = []
    for material in materials or []:
        block = f"TITLE: {material.get('title') or 'Untitled'}\n"
        if material.get("ai_summary"):
            block += f"SUMMARY: {material['ai_summary']}\n"
        concepts = normalize_key_concepts(material.get("key_concepts"))
        if concepts:
            block += "KEY CONCEPTS:\n" + format_key_concepts(concepts) + "\n"
        blocks.append(block)
    return "\n\n".join(blocks)


class QuestionSetGenerator:
    """Generates the ConceptQuestion list for a fresh session."""

    def __init__(self, text_generator: TextGenerator, model: str = QUESTION_MODEL):
        self.text_generator = text_generator
        self.model = model

    def build_prompt(self, lesson: Dict[str, Any], materials: List[Dict[str, Any]]) -> str:
        concepts = normalize_key_concepts(lesson.get("key_concepts"))
        return QUESTION_PROMPT_TEMPLATE.format(
            topic=lesson.get("topic") or lesson.get("title") or "",
            summary=lesson.get("ai_summary") or "No summary available",
            concepts=format_key_concepts(concepts, numbered=True),
            context=build_material_context(materials) or "None",
        )

    async def generate_questions(
        self,
        lesson: Dict[str, Any],
        materials: Optional[List[Dict[str, Any]]] = None,
    ) -> List[ConceptQuestion]:
        """
        Generate one question per key concept of `lesson`.

        Raises:
            GenerationFailed: the reply is not JSON, has no `questions` list,
                is empty, or contains an invalid question
        """
        concepts = normalize_key_concepts(lesson.get("key_concepts"))
        prompt = self.build_prompt(lesson, materials or [])

        logger.info(f"🧩 [QuestionSetGenerator] Generating questions for {len(concepts)} concepts")
        try:
            reply = await self.text_generator.generate(
                prompt,
                system=QUESTION_SYSTEM_PROMPT,
                json_mode=True,
                model=self.model,
            )
        except (ValueError, OpenAIError) as e:
            logger.error(f"❌ [QuestionSetGenerator] LLM call failed: {e}")
            raise GenerationFailed("Failed to generate questions") from e

        try:
            data = parse_json_reply(reply)
        except ValueError as e:
            logger.error(f"❌ [QuestionSetGenerator] Unparseable reply: {e}")
            raise GenerationFailed("Failed to generate questions") from e

        raw_questions = data.get("questions")
        if not isinstance(raw_questions, list) or not raw_questions:
            logger.error("❌ [QuestionSetGenerator] Reply has no questions list")
            raise GenerationFailed("Failed to generate questions")

        try:
            questions = [ConceptQuestion.from_dict(q) for q in raw_questions]
        except ValueError as e:
            logger.error(f"❌ [QuestionSetGenerator] Invalid question in reply: {e}")
            raise GenerationFailed(f"Failed to generate questions: {e}") from e

        if len(questions) != len(concepts):
            logger.warning(
                f"⚠️ [QuestionSetGenerator] Asked for {len(concepts)} concepts, got {len(questions)} questions"
            )
        logger.info(f"✅ [QuestionSetGenerator] Generated {len(questions)} questions")
        return questions
