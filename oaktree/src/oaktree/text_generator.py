"""
Text Generation

Thin wrapper over OpenAI chat completions. Everything that talks to the LLM
(question sets, example grading, session analysis, summaries) goes through
`TextGenerator.generate`.
"""

import json
import logging
import os
import time
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from oaktree.config import OPENAI_MODEL

logger = logging.getLogger(__name__)


class TextGenerator:
    """
    Async text-completion collaborator.

    The OpenAI client is created on first use so the app can boot (and tests
    can run) without an API key.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = OPENAI_MODEL):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ValueError("OPENAI_API_KEY not found")
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        json_mode: bool = False,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> str:
        """
        Run one chat completion and return the reply text.

        Args:
            prompt: user message
            system: optional system message
            json_mode: ask the model for a JSON object reply
            model: override the default model
            max_tokens: completion token cap

        Returns:
            The reply content ("" if the model returned nothing)
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        start_time = time.time()
        response = await self.client.chat.completions.create(**kwargs)
        elapsed = time.time() - start_time
        logger.info(f"🤖 [TextGenerator] {kwargs['model']} replied in {elapsed:.2f}s")
        return response.choices[0].message.content or ""


def parse_json_reply(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of an LLM reply.

    Tolerates markdown code fences and chatter around the object by taking the
    span from the first `{` to the last `}`.

    Raises:
        ValueError: if no JSON object can be parsed
    """
    if not text:
        raise ValueError("Empty reply")
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        raise ValueError("Reply contains no JSON object")
    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Reply JSON is not an object")
    return data
