"""Failure context extraction.

Turns a failed job's stack trace and metadata into a structured, bounded
description of the failure. Extraction never raises on file I/O: an
unreadable file shows up as an inline error marker instead.
"""

import json
import logging
import os
import re
from typing import Dict, List, Optional

from smart_worker.models.failure import (
    ErrorSignature,
    FailureLocation,
    FileContext,
    FocusedSnippet,
    StructuredFailureContext,
)
from smart_worker.models.job import FailedJob

logger = logging.getLogger(__name__)

SNIPPET_CONTEXT_LINES = 12
MAX_SNIPPETS = 3

SOURCE_EXTENSIONS = r"(?:js|ts|mjs|cjs|py)"

# "at func (/app/workers.ts:15:10)" and "at /app/index.ts:3:7"
STACK_FRAME_RE = re.compile(
    r"at\s+(?:(?P<func>[^\s(]+)\s+)?\(?"
    r"(?P<file>(?:[A-Za-z]:\\|/)?[^():\n]+\." + SOURCE_EXTENSIONS + r")"
    r":(?P<line>\d+):(?P<col>\d+)\)?"
)

# 'File "/app/jobs.py", line 12, in run'
PY_FRAME_RE = re.compile(
    r'File "(?P<file>[^"\n]+\.py)", line (?P<line>\d+)(?:, in (?P<func>[^\s]+))?'
)

ERROR_TYPE_RE = re.compile(
    r"^(?P<type>[A-Z][a-zA-Z]*Error):\s*(?P<message>.+)$", re.MULTILINE
)

DEPENDENCY_DIRS = ("node_modules", "site-packages", "dist-packages", ".venv")

_JOB_NUMBER_RE = re.compile(r"\b(job)\s+\d+", re.IGNORECASE)
_TIMESTAMP_RE = re.compile(r"\d{13,}")
_UUID_RE = re.compile(
    r"\b[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}\b",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"\b\d+\b")

SECTION_RULE = "=================="


def normalize_error_message(message: str) -> str:
    """Replace volatile tokens so equivalent errors compare equal.

    Substitutions run narrowest first: job numbers, then 13+ digit
    timestamps, then UUIDs, then any remaining bare integer.
    """
    message = _JOB_NUMBER_RE.sub(r"\1 <ID>", message)
    message = _TIMESTAMP_RE.sub("<TIMESTAMP>", message)
    message = _UUID_RE.sub("<UUID>", message)
    message = _NUMBER_RE.sub("<N>", message)
    return message.strip()


def is_dependency_path(path: str) -> bool:
    """True for frames inside installed third-party packages."""
    parts = re.split(r"[\\/]", path)
    return any(part in DEPENDENCY_DIRS for part in parts)


def extract_error_signature(
    stacktrace: str, failed_reason: Optional[str] = None
) -> ErrorSignature:
    """Find the error type and message, falling back to the failed reason.

    When the trace holds several error lines (chained Python exceptions)
    the last one is the error that escaped.
    """
    matches = list(ERROR_TYPE_RE.finditer(stacktrace or ""))
    if matches:
        error_type = matches[-1].group("type")
        error_message = matches[-1].group("message").strip()
    else:
        error_type = "Error"
        error_message = (failed_reason or "").strip()

    return ErrorSignature(
        error_type=error_type,
        error_message=error_message,
        normalized_message=normalize_error_message(error_message),
    )


def parse_stack_frames(stacktrace: str) -> List[FailureLocation]:
    """Parse unique, non-dependency frames in the order they appear.

    Frames are deduplicated by ``(file_path, line_number)``.
    """
    found = []
    for match in STACK_FRAME_RE.finditer(stacktrace or ""):
        found.append(
            (
                match.start(),
                FailureLocation(
                    file_path=match.group("file"),
                    line_number=int(match.group("line")),
                    column_number=int(match.group("col")),
                    function_name=match.group("func"),
                ),
            )
        )
    for match in PY_FRAME_RE.finditer(stacktrace or ""):
        found.append(
            (
                match.start(),
                FailureLocation(
                    file_path=match.group("file"),
                    line_number=int(match.group("line")),
                    column_number=0,
                    function_name=match.group("func"),
                ),
            )
        )
    found.sort(key=lambda item: item[0])

    seen = set()
    locations = []
    for _, location in found:
        key = (location.file_path, location.line_number)
        if key in seen or is_dependency_path(location.file_path):
            continue
        seen.add(key)
        locations.append(location)
    return locations


def build_snippet(
    file_path: str,
    lines: List[str],
    failure_line: int,
    radius: int = SNIPPET_CONTEXT_LINES,
) -> FocusedSnippet:
    """Numbered window of ``radius`` lines either side of the failure line."""
    total = len(lines)
    start = max(1, failure_line - radius)
    end = min(total, failure_line + radius)

    numbered = []
    for line_num in range(start, end + 1):
        marker = ">>>" if line_num == failure_line else "   "
        numbered.append(f"{marker} {line_num:>4}: {lines[line_num - 1]}")

    return FocusedSnippet(
        file_path=file_path,
        start_line=start,
        end_line=end,
        failure_line=failure_line,
        content="\n".join(numbered),
    )


class FailureContextExtractor:
    """Builds a StructuredFailureContext from a failed job."""

    def __init__(
        self,
        root_dir: Optional[str] = None,
        snippet_radius: int = SNIPPET_CONTEXT_LINES,
        max_snippets: int = MAX_SNIPPETS,
    ):
        """Initialize the extractor.

        Args:
            root_dir: Directory relative frame paths are resolved against.
            snippet_radius: Lines of context either side of a failure line.
            max_snippets: Number of leading locations that get snippets.
        """
        self.root_dir = root_dir
        self.snippet_radius = snippet_radius
        self.max_snippets = max_snippets

    def _resolve(self, path: str) -> str:
        if os.path.isabs(path) or re.match(r"^[A-Za-z]:\\", path):
            return path
        return os.path.join(self.root_dir or os.getcwd(), path)

    def _read(self, path: str, cache: Dict[str, FileContext]) -> FileContext:
        if path not in cache:
            try:
                with open(self._resolve(path), encoding="utf-8") as f:
                    cache[path] = FileContext(path=path, content=f.read())
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read {path}: {e}")
                cache[path] = FileContext(path=path, error=str(e))
        return cache[path]

    def extract(self, job: FailedJob) -> StructuredFailureContext:
        """Extract the structured failure context of a job.

        Args:
            job: The failed job.

        Returns:
            The context, degraded where files could not be read.
        """
        stacktrace = job.latest_stacktrace
        signature = extract_error_signature(stacktrace, job.failed_reason)
        locations = parse_stack_frames(stacktrace)
        cache: Dict[str, FileContext] = {}

        snippets = []
        for location in locations[: self.max_snippets]:
            file_ctx = self._read(location.file_path, cache)
            if not file_ctx.readable:
                continue
            lines = (file_ctx.content or "").splitlines()
            if not 1 <= location.line_number <= len(lines):
                continue
            snippets.append(
                build_snippet(
                    location.file_path, lines, location.line_number, self.snippet_radius
                )
            )

        paths: List[str] = []
        for location in locations:
            if location.file_path not in paths:
                paths.append(location.file_path)
        entry = job.entry_file
        if entry and entry not in paths and not is_dependency_path(entry):
            paths.append(entry)
        files = [self._read(path, cache) for path in paths]

        context = StructuredFailureContext(
            job_id=job.id,
            job_name=job.name,
            queue_name=job.queue_name,
            job_data=job.data,
            error_signature=signature,
            failure_locations=locations,
            focused_snippets=snippets,
            files=files,
            stacktrace=stacktrace,
        )
        context.job_context = render_context(context)

        logger.info(
            f"Extracted context for job {job.id}: {signature.error_type}, "
            f"{len(locations)} locations, {len(snippets)} snippets, {len(files)} files"
        )
        return context


def _section(title: str) -> str:
    return f"{SECTION_RULE}\n{title}\n{SECTION_RULE}\n"


def render_context(context: StructuredFailureContext) -> str:
    """Render the context as the text handed to the model."""
    signature = context.error_signature
    out = [
        _section("JOB METADATA"),
        f"Name: {context.job_name}\n"
        f"Data: {json.dumps(context.job_data, default=str)}\n"
        f"ID: {context.job_id}\n"
        f"Queue: {context.queue_name}\n\n",
        _section("ERROR SIGNATURE"),
        f"Type: {signature.error_type}\n"
        f"Message: {signature.error_message}\n"
        f"Normalized: {signature.normalized_signature}\n\n",
    ]

    if context.failure_locations:
        out.append(_section("FAILURE LOCATIONS"))
        for i, location in enumerate(context.failure_locations, start=1):
            out.append(f"{i}. {location.describe()}\n")
        out.append("\n")

    if context.focused_snippets:
        out.append(_section("FOCUSED SNIPPETS"))
        for snippet in context.focused_snippets:
            out.append(
                f"{snippet.file_path} (lines {snippet.start_line}-{snippet.end_line}):\n"
                f"{snippet.content}\n\n"
            )

    out.append(_section("STACKTRACE"))
    out.append(f"{context.stacktrace}\n\n")

    out.append(_section("CODE CONTEXT"))
    for i, file_ctx in enumerate(context.files, start=1):
        if file_ctx.readable:
            out.append(
                f"FILE {i}: {file_ctx.path}\n"
                f"CODE IN FILE {i}:\n```\n{file_ctx.content}\n```\n\n"
            )
        else:
            out.append(
                f"FILE {i}: {file_ctx.path}\n"
                f"ERROR: Could not read file ({file_ctx.error})\n\n"
            )
    return "".join(out)
