"""Commits verified repair episodes to failure memory."""

import asyncio
import json
import logging
from typing import List, Optional, Tuple

from smart_worker.errors import StorageError
from smart_worker.integrations.llm_client import TextGenerationClient
from smart_worker.memory.memory_index import MemoryIndex
from smart_worker.models.failure import (
    CategorizedEmbedding,
    CodeChange,
    StructuredFailureContext,
)
from smart_worker.models.job import FailedJob

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a senior software engineer.

Your task is to write a **concise resolution summary** explaining how the job failure was fixed.

STRICT OUTPUT RULES:
1. **CONTENT:**
   - Explain the **root cause** of the failure.
   - Explain the **specific fix applied**.
   - Focus on logic and behavior, not formatting or instructions.

2. **FORMAT:**
   - Output a **single short paragraph only**.
   - No bullet points, no headings, no markdown.
   - No code.

3. **STYLE:**
   - Technical, clear, production-quality.
   - No references to prompts, instructions, or tooling.
   - Write as if for an incident or change log.

Input: Original code and fixed code.
Output: One short resolution summary paragraph."""


def build_summary_prompt(
    context: StructuredFailureContext, changes: List[CodeChange]
) -> str:
    """Failure context followed by each file's original and fixed code."""
    parts = [context.job_context]
    for i, change in enumerate(changes, start=1):
        parts.append(
            f"FILE {i}: {change.path}\n"
            f"ORIGINAL CODE IN FILE {i}:\n```\n{change.original_code}\n```\n\n"
            f"FIXED CODE IN FILE {i}:\n```\n{change.code}\n```\n"
        )
    return "".join(parts)


class MemoryWriter:
    """Summarizes a verified fix and stores the episode."""

    def __init__(self, llm: TextGenerationClient, memory: MemoryIndex):
        self.llm = llm
        self.memory = memory

    async def summarize(
        self, context: StructuredFailureContext, changes: List[CodeChange]
    ) -> str:
        """Generate a resolution summary; empty if the model call fails."""
        prompt = build_summary_prompt(context, changes)
        result = await asyncio.to_thread(
            self.llm.complete, SUMMARY_SYSTEM_PROMPT, json.dumps(prompt)
        )
        if not result.ok:
            logger.warning(
                f"Resolution summary for job {context.job_id} unavailable: {result.error}"
            )
            return ""
        return result.content.strip()

    async def write(
        self,
        job: FailedJob,
        context: StructuredFailureContext,
        changes: List[CodeChange],
        embeddings: Optional[List[CategorizedEmbedding]] = None,
    ) -> Tuple[Optional[int], str]:
        """Summarize and store a verified episode.

        Args:
            job: The failed job.
            context: Its structured failure context.
            changes: The verified code changes.
            embeddings: Embeddings computed during search; recomputed if None.

        Returns:
            ``(record_id, summary)``; record_id is None if storing failed.
        """
        summary = await self.summarize(context, changes)

        if embeddings is None:
            embeddings = await asyncio.to_thread(self.memory.embed, context)
        try:
            record_id = await asyncio.to_thread(
                self.memory.store,
                job,
                embeddings,
                True,
                summary,
                changes,
            )
        except StorageError as e:
            logger.error(f"Error storing episode for job {job.id}: {e}")
            return None, summary
        return record_id, summary
