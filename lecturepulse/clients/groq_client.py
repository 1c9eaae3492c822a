import json
import logging

import groq
from groq import AsyncGroq

from lecturepulse.config import settings
from lecturepulse.errors import QuestionGenerationError

logger = logging.getLogger(__name__)


class GroqClient:
    """Async wrapper around the Groq SDK for schema-constrained completions.

    Usage::

        client = GroqClient()
        data = await client.chat_json(messages, QUESTION_SCHEMA, schema_name="question")

    SDK and decoding failures are raised as ``QuestionGenerationError`` so
    callers handle one exception type.
    """

    def __init__(self, model: str | None = None, api_key: str | None = None) -> None:
        self.model = model or settings.default_model
        self._client = AsyncGroq(api_key=api_key or settings.groq_api_key)

    async def chat_json(
        self,
        messages: list[dict],
        response_schema: dict,
        *,
        schema_name: str = "response",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        """Completion in Groq's strict JSON Schema mode, parsed into a dict.

        Strict mode requires ``"additionalProperties": false`` on every object
        and every property listed in ``"required"``.
        """
        kwargs: dict = {
            "model": self.model,
            "messages": messages,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name,
                    "strict": True,
                    "schema": response_schema,
                },
            },
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            resp = await self._client.chat.completions.create(**kwargs)
        except groq.APIError as e:
            logger.warning("Groq request failed (%s): %s", schema_name, e)
            raise QuestionGenerationError(f"Generation service error: {e}") from e

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise QuestionGenerationError("Generation service returned an empty response")
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise QuestionGenerationError(f"Malformed JSON from generation service: {e}") from e

    async def close(self) -> None:
        await self._client.close()
