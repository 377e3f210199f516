"""Failed job data model as handed over by the job queue."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass
class FailedJob:
    """A job invocation that exhausted its retry budget.

    Mirrors what the queue exposes for a failed job. ``stacktrace`` is
    ordered oldest first, so the most recent trace is the last entry.
    """

    id: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    stacktrace: List[str] = field(default_factory=list)
    failed_reason: Optional[str] = None
    attempts_made: int = 0
    opts: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0  # enqueue time, epoch milliseconds
    queue_name: str = "default"
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None

    @property
    def max_attempts(self) -> int:
        """Configured attempt budget (``opts.attempts``), defaulting to 1."""
        attempts = self.opts.get("attempts")
        return int(attempts) if attempts else 1

    @property
    def retry_delay_ms(self) -> Optional[int]:
        """Configured retry delay in milliseconds, if any."""
        delay = self.opts.get("delay")
        if delay is None and isinstance(self.opts.get("backoff"), dict):
            delay = self.opts["backoff"].get("delay")
        return int(delay) if delay is not None else None

    @property
    def exhausted(self) -> bool:
        """True once the queue will not retry this job again."""
        return self.attempts_made >= self.max_attempts

    @property
    def latest_stacktrace(self) -> str:
        """Most recent stack trace, or the failed reason when none was kept."""
        if self.stacktrace:
            return self.stacktrace[-1]
        return self.failed_reason or ""

    @property
    def entry_file(self) -> Optional[str]:
        """File the job declares as its entry point (``data.callfile``)."""
        callfile = self.data.get("callfile") if isinstance(self.data, dict) else None
        return str(callfile) if callfile else None

    @property
    def wants_reasoning_fix(self) -> bool:
        """Whether the submitter opted this job into automated repair."""
        return bool(isinstance(self.data, dict) and self.data.get("reasoning_fix"))

    @property
    def created_at(self) -> datetime:
        """Enqueue time as an aware datetime."""
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "stacktrace": self.stacktrace,
            "failedReason": self.failed_reason,
            "attemptsMade": self.attempts_made,
            "opts": self.opts,
            "timestamp": self.timestamp,
            "queueName": self.queue_name,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailedJob":
        """Create from a queue payload (camelCase or snake_case keys)."""

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        stacktrace = pick("stacktrace", default=[])
        if isinstance(stacktrace, str):
            stacktrace = [stacktrace]

        return cls(
            id=str(pick("id", "job_id", default="")),
            name=str(pick("name", "job_name", default="")),
            data=pick("data", default={}),
            stacktrace=list(stacktrace),
            failed_reason=pick("failedReason", "failed_reason"),
            attempts_made=int(pick("attemptsMade", "attempts_made", default=0)),
            opts=pick("opts", default={}),
            timestamp=int(pick("timestamp", default=0)),
            queue_name=str(pick("queueName", "queue_name", default="default")),
            processed_on=pick("processedOn", "processed_on"),
            finished_on=pick("finishedOn", "finished_on"),
        )
