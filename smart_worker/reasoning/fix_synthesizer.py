"""Fix synthesis: prompt the model for a rewrite and parse its code changes."""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional

from smart_worker.errors import ConfigurationError, SmartWorkerError
from smart_worker.integrations.llm_client import TextGenerationClient
from smart_worker.models.failure import CodeChange, StructuredFailureContext

logger = logging.getLogger(__name__)

FIX_SYSTEM_PROMPT = """You are a senior software engineer.
Your task is to **REWRITE** the provided code to resolve the job failure.

**READ PREVIOUS RESOLUTION SUMMARIES IF AVAILABLE:**
    -- You must ALWAYS read the PREVIOUS SIMILAR JOB RESOLUTION SUMMARY if AVAILABLE and TRY to solve the error with that information.
    -- If the resolution summary is non-similar or incomprehensible, ignore it.

STRICT OUTPUT RULES:
1. **ACTUAL CODE CHANGES:** You must **modify the code logic** to fix the bug. Do not just comment on the error.
   - If the code raises an intentional error that causes failure, **remove or handle it**.
   - The code you output must be the **working, fixed version** of the whole file.

2. **FORMAT:**
   - **File Path First:** Line 1 of every changed file must be `# File: <path/to/file.py>`
   - **No Markdown/Text:** Output *only* the raw code.
   - **Indentation:** Use 4 spaces (no tabs).

3. **COMMENTING STRATEGY:**
   - **Do not** leave the old buggy code commented out. Delete it.
   - Add a comment **only on the specific line you changed** using this format:
     `# FIX: <brief explanation of the change>`"""

PRECEDENT_RULE = "==================================================="

# Runs over the JSON-escaped response, so line breaks are the two
# characters backslash-n. A marker starts a line, optionally behind a
# ``#`` or ``//`` comment. A block ends at a closing fence, the next
# marker or the end of the text.
_LINE_START = r"(?<=[^\\]\\n)[ \t]*"
_MARKER = r"(?:(?://|#)[ \t]*)?File:[ \t]*"
CODE_BLOCK_RE = re.compile(
    _LINE_START + _MARKER + r"(?P<path>.*?)(?:\\n)+"
    r"(?:```(?:\w+)?(?:\\n)+)?"
    r"(?P<code>.*?)"
    r"(?=(?:\\n)*```|(?:\\n)+[ \t]*" + _MARKER + r"|$)",
    re.DOTALL,
)

_ESCAPE_RE = re.compile(r'\\([ntr"\\])')
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


def unescape_code(raw: str) -> str:
    """Undo JSON string escaping of a captured code block.

    Unescapes in a single pass so an escaped backslash followed by ``n``
    stays a literal backslash-n. Drops one trailing quote left over from
    the enclosing JSON string, then trims.
    """
    code = _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(1)], raw)
    if code.endswith('"'):
        code = code[:-1]
    return code.strip()


def parse_code_changes(response_text: str) -> List[CodeChange]:
    """Extract ``(path, code)`` pairs from a model response.

    Best effort: a response with no recognizable marker yields no changes.

    Args:
        response_text: Raw model output.

    Returns:
        Parsed changes in order of first appearance, without original
        code. A path named twice keeps its last block.
    """
    # Leading newline so a marker on the first line also starts a line
    escaped = json.dumps("\n" + response_text, ensure_ascii=False)
    changes: List[CodeChange] = []
    positions = {}
    for match in CODE_BLOCK_RE.finditer(escaped):
        path = unescape_code(match.group("path")).strip("`'\" ")
        code = unescape_code(match.group("code"))
        if not path:
            logger.warning("Skipping code block with an empty file path")
            continue
        if not code:
            logger.warning(f"Skipping empty code block for {path}")
            continue
        change = CodeChange(path=path, code=code)
        if path in positions:
            logger.warning(f"Response rewrites {path} more than once; last block wins")
            changes[positions[path]] = change
        else:
            positions[path] = len(changes)
            changes.append(change)
    return changes


def resolve_source_path(path: str, root_dir: str) -> str:
    """Map a path named by the model onto the file under ``root_dir``."""
    root = root_dir.rstrip("/\\")
    relative = path
    if root and path.startswith(root):
        relative = path[len(root):]
    relative = relative.lstrip("/\\")
    if relative.startswith("./"):
        relative = relative[2:]
    return os.path.join(root_dir, relative)


def _read_original(path: str) -> str:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read original code of {path}: {e}")
        return ""


@dataclass
class FixProposal:
    """Changes proposed by the model, or why none were produced."""

    changes: List[CodeChange] = field(default_factory=list)
    error: Optional[SmartWorkerError] = None
    raw_response: str = ""

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)


def build_fix_prompt(
    context: StructuredFailureContext,
    precedent_id: Optional[int] = None,
    precedent_summary: Optional[str] = None,
) -> str:
    """Failure context, prefixed by the precedent summary when there is one."""
    prompt = context.job_context
    if precedent_id is not None and precedent_summary:
        prompt = (
            f"{PRECEDENT_RULE}\n"
            f"PREVIOUS SIMILAR JOB RESOLUTION SUMMARY (JOB {precedent_id})\n"
            f"{PRECEDENT_RULE}\n"
            f"{precedent_summary}\n\n" + prompt
        )
    return prompt


class FixSynthesizer:
    """Asks the model for a rewrite and turns it into code changes."""

    def __init__(self, llm: TextGenerationClient, root_dir: Optional[str] = None):
        """Initialize the synthesizer.

        Args:
            llm: Text-generation client.
            root_dir: Application root on the host, used to read originals.
        """
        self.llm = llm
        self.root_dir = root_dir

    async def synthesize(
        self,
        context: StructuredFailureContext,
        precedent_id: Optional[int] = None,
        precedent_summary: Optional[str] = None,
    ) -> FixProposal:
        """Produce code changes for a failure.

        Args:
            context: Structured failure context.
            precedent_id: Record id of the winning precedent, if any.
            precedent_summary: That precedent's resolution summary.

        Returns:
            FixProposal; a transport or format failure yields no changes.

        Raises:
            ConfigurationError: If changes were parsed but no root
                directory is configured to resolve them against.
        """
        prompt = build_fix_prompt(context, precedent_id, precedent_summary)
        result = await asyncio.to_thread(
            self.llm.complete, FIX_SYSTEM_PROMPT, json.dumps(prompt)
        )
        if not result.ok:
            logger.error(f"Fix generation failed for job {context.job_id}: {result.error}")
            return FixProposal(error=result.error)

        changes = parse_code_changes(result.content)
        if not changes:
            logger.info(f"No code changes found in response for job {context.job_id}")
            return FixProposal(raw_response=result.content)

        if not self.root_dir:
            raise ConfigurationError("APP_ROOT_DIR is not set; cannot resolve fix paths")

        originals = await asyncio.gather(
            *(
                asyncio.to_thread(
                    _read_original, resolve_source_path(change.path, self.root_dir)
                )
                for change in changes
            )
        )
        for change, original in zip(changes, originals):
            change.original_code = original

        logger.info(
            f"Parsed {len(changes)} code change(s) for job {context.job_id}: "
            f"{', '.join(c.path for c in changes)}"
        )
        return FixProposal(changes=changes, raw_response=result.content)
