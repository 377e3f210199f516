"""Text-generation client for the OpenAI-compatible model server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import APIError, OpenAI, OpenAIError

from smart_worker.config import LLMConfig
from smart_worker.errors import ResponseFormatError, SmartWorkerError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    """Outcome of one text-generation call.

    Exactly one of ``content`` or ``error`` is meaningful: a failed call
    carries the typed error and no content.
    """

    content: str = ""
    error: Optional[SmartWorkerError] = None
    usage: Optional[Dict[str, int]] = None

    @property
    def ok(self) -> bool:
        """Check if the call produced content."""
        return self.error is None


class TextGenerationClient:
    """Wrapper around the OpenAI SDK for the local model server."""

    def __init__(self, config: LLMConfig, client: Optional[Any] = None):
        """Initialize the client.

        Args:
            config: Model server configuration.
            client: Optional pre-built OpenAI client (used by tests).
        """
        self.config = config
        # Retry policy belongs to the job queue, never to this layer
        self._client = client or OpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=0,
        )

    def chat(self, messages: List[Dict[str, str]]) -> GenerationResult:
        """Send one blocking chat completion request.

        Args:
            messages: Conversation as ``{role, content}`` dicts.

        Returns:
            GenerationResult with the first choice's content, or the error.
        """
        logger.info(
            f"AI request: model={self.config.model} messages={len(messages)}"
        )
        try:
            response = self._client.chat.completions.create(
                model=self.config.model,
                messages=messages,
            )
        except (APIError, OpenAIError) as e:
            logger.error(f"AI request failed: {e}")
            return GenerationResult(error=TransportError(str(e)))

        choices = getattr(response, "choices", None)
        if not choices:
            logger.error("AI response has no choices")
            return GenerationResult(
                error=ResponseFormatError("response has no choices")
            )
        content = getattr(choices[0].message, "content", None)
        if not isinstance(content, str):
            logger.error("AI response choice has no text content")
            return GenerationResult(
                error=ResponseFormatError("response choice has no text content")
            )

        usage = None
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        logger.info(f"AI response: {len(content)} chars, usage={usage}")
        return GenerationResult(content=content, usage=usage)

    def complete(self, system: str, user: str) -> GenerationResult:
        """Single-turn chat with a system prompt.

        Args:
            system: System instructions.
            user: User message content.

        Returns:
            GenerationResult for the call.
        """
        return self.chat(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ]
        )
