"""Failed-job routing and background supervision of repair runs."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Optional, Protocol, Set

from smart_worker.config import SmartWorkerConfig
from smart_worker.models.job import FailedJob
from smart_worker.reasoning.pipeline import PipelineOutcome, RepairPipeline

logger = logging.getLogger(__name__)


class QueueBackend(Protocol):
    """The two queue operations the failure handler needs."""

    async def remove(self, job: FailedJob) -> None: ...

    async def add_to_dead_letter(self, job: FailedJob) -> None: ...


class PipelineSupervisor:
    """Runs repair pipelines as background tasks and records how they end.

    Only the most recent ``history_limit`` outcomes and crashes are kept,
    oldest evicted first.
    """

    def __init__(self, pipeline: RepairPipeline, history_limit: int = 100):
        self.pipeline = pipeline
        self.history_limit = history_limit
        self._tasks: Set[asyncio.Task] = set()
        self.outcomes: OrderedDict[str, PipelineOutcome] = OrderedDict()
        self.failures: OrderedDict[str, BaseException] = OrderedDict()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def submit(self, job: FailedJob) -> asyncio.Task:
        """Start a repair run without waiting for it.

        Must be called from a running event loop.
        """
        task = asyncio.create_task(
            self.pipeline.run(job), name=f"repair-{job.queue_name}-{job.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(lambda t, job_id=str(job.id): self._on_done(job_id, t))
        logger.info(f"Repair run submitted for job {job.id} ({self.active_count} active)")
        return task

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Repair run for job {job_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self._remember(self.failures, job_id, exc)
            logger.error(
                f"Repair run for job {job_id} crashed: {exc}", exc_info=exc
            )
            return
        outcome = task.result()
        self._remember(self.outcomes, job_id, outcome)
        logger.info(f"Repair run for job {job_id} finished: {outcome.status.value}")

    def _remember(self, history: OrderedDict, job_id: str, value) -> None:
        history.pop(job_id, None)
        history[job_id] = value
        while len(history) > self.history_limit:
            history.popitem(last=False)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight repair run, e.g. on shutdown.

        Args:
            timeout: Seconds to wait before cancelling what is left.
        """
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info(f"Draining {len(pending)} repair run(s)")
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_pending)} unfinished repair run(s)")


class FailedJobHandler:
    """Routes exhausted jobs to the dead-letter queue and into repair."""

    def __init__(
        self,
        queue: QueueBackend,
        supervisor: PipelineSupervisor,
        config: Optional[SmartWorkerConfig] = None,
    ):
        """Initialize the handler.

        Args:
            queue: Queue operations for the job's queue.
            supervisor: Supervisor that runs repair pipelines.
            config: Service configuration. If None, loads from environment.
        """
        self.queue = queue
        self.supervisor = supervisor
        self.config = config or SmartWorkerConfig.from_env()

    async def on_failed(self, job: FailedJob) -> Optional[asyncio.Task]:
        """Handle a failed attempt reported by the queue.

        Jobs with retries left are ignored. An exhausted job is removed
        from its queue and added to the dead-letter queue; a repair run is
        started when the job opted in and this process is not itself a
        sandbox.

        Returns:
            The repair task, if one was started.
        """
        if not job.exhausted:
            logger.debug(
                f"Job {job.id} failed attempt {job.attempts_made}/{job.max_attempts}"
            )
            return None

        await self.queue.remove(job)
        await self.queue.add_to_dead_letter(job)
        logger.info(f"Job {job.id} moved to dead-letter queue")

        if not job.wants_reasoning_fix:
            logger.error(f"Job {job.id} failed again!")
            return None
        if self.config.in_sandbox:
            logger.info(f"Skipping repair of job {job.id} inside sandbox")
            return None
        return self.supervisor.submit(job)
