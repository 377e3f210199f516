"""Repair pipeline orchestration.

extract -> embed/search -> consensus -> synthesize -> sandbox -> memory write
"""

from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from smart_worker.config import SmartWorkerConfig
from smart_worker.errors import SmartWorkerError
from smart_worker.integrations.diff import render_changes_html
from smart_worker.integrations.embedding_client import EmbeddingClient
from smart_worker.integrations.llm_client import TextGenerationClient
from smart_worker.integrations.notifications import NotificationManager
from smart_worker.logging import log_event, set_correlation_id
from smart_worker.memory.memory_index import MemoryIndex
from smart_worker.memory.store import FailureMemoryStore
from smart_worker.models.failure import CodeChange, MemorySearchResponse
from smart_worker.models.job import FailedJob
from smart_worker.reasoning.consensus import ConsensusResolver
from smart_worker.reasoning.context_extractor import FailureContextExtractor
from smart_worker.reasoning.fix_synthesizer import FixSynthesizer
from smart_worker.reasoning.memory_writer import MemoryWriter
from smart_worker.sandbox.runner import SandboxRunner
from smart_worker.sandbox.runtime import ContainerRuntime, DockerRuntime

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    """Terminal status of one repair run."""

    VERIFIED = "verified"
    SANDBOX_FAILED = "sandbox_failed"
    NO_FIX = "no_fix"
    ABORTED = "aborted"


@dataclass
class PipelineOutcome:
    """What one repair run produced."""

    job_id: str
    status: PipelineStatus
    changes: List[CodeChange] = field(default_factory=list)
    precedent_id: Optional[int] = None
    signature_match: bool = False
    summary: str = ""
    record_id: Optional[int] = None
    detail: str = ""

    @property
    def verified(self) -> bool:
        return self.status is PipelineStatus.VERIFIED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "changes": [c.path for c in self.changes],
            "precedent_id": self.precedent_id,
            "signature_match": self.signature_match,
            "summary": self.summary,
            "record_id": self.record_id,
            "detail": self.detail,
        }


class RepairPipeline:
    """Runs one failed job through the full repair pipeline."""

    def __init__(
        self,
        extractor: FailureContextExtractor,
        memory: MemoryIndex,
        consensus: ConsensusResolver,
        synthesizer: FixSynthesizer,
        sandbox: SandboxRunner,
        writer: MemoryWriter,
        notifier: NotificationManager,
    ):
        self.extractor = extractor
        self.memory = memory
        self.consensus = consensus
        self.synthesizer = synthesizer
        self.sandbox = sandbox
        self.writer = writer
        self.notifier = notifier

    @classmethod
    def from_config(
        cls,
        config: SmartWorkerConfig,
        runtime: Optional[ContainerRuntime] = None,
        store: Optional[FailureMemoryStore] = None,
    ) -> "RepairPipeline":
        """Wire every collaborator from configuration.

        Args:
            config: Service configuration.
            runtime: Container runtime; Docker when omitted.
            store: Failure memory store; opened from config when omitted.
        """
        llm = TextGenerationClient(config.llm)
        memory = MemoryIndex(
            store or FailureMemoryStore(config.memory),
            EmbeddingClient(config.embedding),
            config.memory,
        )
        return cls(
            extractor=FailureContextExtractor(root_dir=config.root_dir),
            memory=memory,
            consensus=ConsensusResolver(),
            synthesizer=FixSynthesizer(llm, root_dir=config.root_dir),
            sandbox=SandboxRunner(
                runtime or DockerRuntime(), config.sandbox, config.root_dir or ""
            ),
            writer=MemoryWriter(llm, memory),
            notifier=NotificationManager.from_config(config.smtp),
        )

    async def run(self, job: FailedJob) -> PipelineOutcome:
        """Repair a failed job. Never raises.

        Args:
            job: The failed job.

        Returns:
            The run's outcome; failures are logged and notified.
        """
        set_correlation_id(str(job.id))
        logger.info(f"Starting repair pipeline for job {job.id} ({job.name})")
        try:
            outcome = await self._run(job)
        except SmartWorkerError as e:
            logger.error(f"Repair of job {job.id} aborted: {e}")
            outcome = PipelineOutcome(
                job_id=job.id, status=PipelineStatus.ABORTED, detail=str(e)
            )
        except Exception as e:
            logger.exception(f"Unexpected error repairing job {job.id}")
            outcome = PipelineOutcome(
                job_id=job.id,
                status=PipelineStatus.ABORTED,
                detail=f"{type(e).__name__}: {e}",
            )

        try:
            await self._notify(job, outcome)
        except Exception:
            logger.exception(f"Could not send notification for job {job.id}")
        log_event(
            logger,
            "pipeline",
            "finished",
            status=outcome.status.value,
            change_count=len(outcome.changes),
            precedent_id=outcome.precedent_id,
        )
        return outcome

    async def _run(self, job: FailedJob) -> PipelineOutcome:
        context = await asyncio.to_thread(self.extractor.extract, job)

        embeddings = await asyncio.to_thread(self.memory.embed, context)
        if embeddings:
            search = await asyncio.to_thread(self.memory.search, embeddings)
        else:
            search = MemorySearchResponse()
        if search.signature_match:
            logger.info(f"Near-duplicate error signature found for job {job.id}")

        precedent_id = None
        precedent_summary = None
        vote = self.consensus.resolve(search.record_ids)
        if vote.winner is not None:
            precedent_summary = await asyncio.to_thread(
                self.memory.resolution_summary, vote.winner
            )
            if precedent_summary:
                precedent_id = vote.winner
                logger.info(f"Similarities found with record {precedent_id}")
        if precedent_id is None:
            logger.info("No similar jobs in memory")

        proposal = await self.synthesizer.synthesize(
            context, precedent_id, precedent_summary
        )
        base = dict(
            job_id=job.id,
            precedent_id=precedent_id,
            signature_match=search.signature_match,
        )
        if not proposal.has_changes:
            detail = str(proposal.error) if proposal.error else "no code changes proposed"
            return PipelineOutcome(status=PipelineStatus.NO_FIX, detail=detail, **base)

        logger.info(f"Fix proposed for job {job.id}; testing in sandbox")
        result = await asyncio.to_thread(self.sandbox.verify, job, proposal.changes)
        if not result.success:
            return PipelineOutcome(
                status=PipelineStatus.SANDBOX_FAILED,
                changes=proposal.changes,
                detail=result.detail,
                **base,
            )

        record_id, summary = await self.writer.write(
            job, context, proposal.changes, embeddings
        )
        return PipelineOutcome(
            status=PipelineStatus.VERIFIED,
            changes=proposal.changes,
            summary=summary,
            record_id=record_id,
            **base,
        )

    async def _notify(self, job: FailedJob, outcome: PipelineOutcome) -> None:
        if outcome.verified:
            await self.notifier.send_success(render_changes_html(outcome.changes))
            return

        report = (
            f"<b>Job</b>: {html.escape(job.name)} ({html.escape(str(job.id))})<br>"
            f"<b>Status</b>: {outcome.status.value}<br>"
            f"<b>Reason</b>: {html.escape(outcome.detail)}<br>"
        )
        if outcome.changes:
            report += "<br>" + render_changes_html(outcome.changes)
        await self.notifier.send_failure(report)
