"""Replays a failed job against the sandboxed application."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from smart_worker.models.job import FailedJob

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of replaying a job inside the sandbox."""

    success: bool
    attempts: int
    response: Any = None
    detail: str = ""


class JobProber:
    """POSTs the job's exact invocation to ``/job`` until it answers."""

    def __init__(
        self,
        attempts: int = 5,
        delay: float = 2.0,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the prober.

        Args:
            attempts: Maximum number of requests.
            delay: Seconds to wait between attempts.
            timeout: Per-request timeout in seconds.
            session: Optional requests session (used by tests).
            sleep: Sleep function (tests pass a no-op).
        """
        self.attempts = attempts
        self.delay = delay
        self.timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep

    def replay(self, job: FailedJob, host: str, port: int) -> ProbeResult:
        """Run the job in the sandbox.

        Connection errors and non-2xx answers are retried. A 2xx answer
        whose body reports ``success: false`` means the job ran and failed
        again, so it is returned without retrying.

        Args:
            job: The job to replay.
            host: Host the sandbox port is published on.
            port: Published sandbox port.

        Returns:
            ProbeResult; exhausting attempts is a failed result.
        """
        url = f"http://{host}:{port}/job"
        payload = {"name": job.name, "data": job.data}

        for attempt in range(1, self.attempts + 1):
            try:
                response = self._session.post(url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                logger.info(f"Attempt {attempt} failed: {e}")
            else:
                if response.ok:
                    return self._judge(response, attempt)
                logger.info(
                    f"Attempt {attempt} failed: HTTP {response.status_code} {response.text[:200]}"
                )

            if attempt < self.attempts:
                self._sleep(self.delay)

        return ProbeResult(
            success=False,
            attempts=self.attempts,
            detail="Failed to connect to the job server after multiple attempts.",
        )

    @staticmethod
    def _judge(response: requests.Response, attempt: int) -> ProbeResult:
        try:
            body = response.json()
        except ValueError:
            body = response.text

        if isinstance(body, dict) and "success" in body and not body["success"]:
            logger.info(f"Job ran in sandbox but reported failure: {body}")
            return ProbeResult(
                success=False,
                attempts=attempt,
                response=body,
                detail="job reported failure",
            )
        return ProbeResult(success=True, attempts=attempt, response=body)
