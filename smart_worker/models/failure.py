"""Failure context, embedding and memory data models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EmbeddingCategory(str, Enum):
    """Semantic category of an embedding chunk."""

    ERROR_SIGNATURE = "error_signature"
    FAILURE_LOCATION = "failure_location"
    CODE_CONTEXT = "code_context"
    METADATA = "metadata"


# error_signature > failure_location > code_context > metadata
CATEGORY_WEIGHTS: Dict[EmbeddingCategory, float] = {
    EmbeddingCategory.ERROR_SIGNATURE: 3.0,
    EmbeddingCategory.FAILURE_LOCATION: 2.0,
    EmbeddingCategory.CODE_CONTEXT: 1.0,
    EmbeddingCategory.METADATA: 0.5,
}


@dataclass
class ErrorSignature:
    """Normalized error identity."""

    error_type: str
    error_message: str
    normalized_message: str

    @property
    def normalized_signature(self) -> str:
        return f"{self.error_type}: {self.normalized_message}"


@dataclass
class FailureLocation:
    """One unique stack frame."""

    file_path: str
    line_number: int
    column_number: int
    function_name: Optional[str] = None

    def describe(self) -> str:
        """Render as ``func at path:line:col``."""
        where = f"{self.file_path}:{self.line_number}:{self.column_number}"
        if self.function_name:
            return f"{self.function_name} at {where}"
        return where


@dataclass
class FocusedSnippet:
    """Numbered source window around a failure site."""

    file_path: str
    start_line: int
    end_line: int
    failure_line: int
    content: str


@dataclass
class FileContext:
    """Full contents of one referenced file, or why it could not be read."""

    path: str
    content: Optional[str] = None
    error: Optional[str] = None

    @property
    def readable(self) -> bool:
        return self.error is None


@dataclass
class StructuredFailureContext:
    """Everything the pipeline knows about one failure.

    ``job_context`` is the rendered text handed to the model: job
    metadata, stack trace and the full code of every referenced file.
    """

    job_id: str
    job_name: str
    queue_name: str
    job_data: Dict[str, Any]
    error_signature: ErrorSignature
    failure_locations: List[FailureLocation] = field(default_factory=list)
    focused_snippets: List[FocusedSnippet] = field(default_factory=list)
    files: List[FileContext] = field(default_factory=list)
    stacktrace: str = ""
    job_context: str = ""


@dataclass
class CodeChange:
    """One file's proposed rewrite."""

    path: str
    code: str
    original_code: str = ""

    def to_payload(self) -> Dict[str, str]:
        """Shape injected into the sandbox through APP_CODE_CHANGES."""
        return {"path": self.path, "code": self.code}


@dataclass
class CategorizedEmbedding:
    """One vector tagged with its category and fixed weight."""

    category: EmbeddingCategory
    chunk_id: str
    content: str
    vector: List[float]
    weight: float

    @classmethod
    def create(
        cls,
        category: EmbeddingCategory,
        chunk_id: str,
        content: str,
        vector: List[float],
    ) -> "CategorizedEmbedding":
        """Build an embedding carrying its category's weight."""
        return cls(
            category=category,
            chunk_id=chunk_id,
            content=content,
            vector=vector,
            weight=CATEGORY_WEIGHTS[category],
        )


@dataclass
class MemorySearchHit:
    """A stored chunk found near one of the query embeddings."""

    chunk_id: str
    record_id: int
    category: EmbeddingCategory
    content: str
    distance: float
    weight: float
    query_chunk_id: str = ""

    @property
    def weighted_distance(self) -> float:
        return self.distance / self.weight


@dataclass
class MemorySearchResponse:
    """Ranked hits plus the near-duplicate signature flag."""

    hits: List[MemorySearchHit] = field(default_factory=list)
    signature_match: bool = False

    @property
    def record_ids(self) -> List[int]:
        return [hit.record_id for hit in self.hits]


@dataclass
class MemoryRecord:
    """A persisted failure episode."""

    id: int
    job_id: str
    job_name: str
    queue_name: str
    job_data: Dict[str, Any] = field(default_factory=dict)
    job_opts: Dict[str, Any] = field(default_factory=dict)
    failed_reason: Optional[str] = None
    stacktrace: Optional[str] = None
    attempts_made: int = 0
    max_attempts: int = 1
    retry_delay_ms: Optional[int] = None
    timestamp_created: Optional[str] = None
    timestamp_failed: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[str] = None
    resolution_summary: Optional[str] = None
    code_diff: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "job_name": self.job_name,
            "queue_name": self.queue_name,
            "job_data": self.job_data,
            "job_opts": self.job_opts,
            "failed_reason": self.failed_reason,
            "stacktrace": self.stacktrace,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "retry_delay_ms": self.retry_delay_ms,
            "timestamp_created": self.timestamp_created,
            "timestamp_failed": self.timestamp_failed,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at,
            "resolution_summary": self.resolution_summary,
            "code_diff": self.code_diff,
        }
