"""Sandbox verification of proposed fixes.

A run walks Preparing -> ImageBuilt -> NetworkReady -> ContainerRunning
-> Probing -> Verified and always ends in Destroyed, whichever step
failed.
"""

import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from dotenv import dotenv_values

from smart_worker.config import SandboxConfig
from smart_worker.errors import SandboxError
from smart_worker.logging import log_event
from smart_worker.models.failure import CodeChange
from smart_worker.models.job import FailedJob
from smart_worker.sandbox.probe import JobProber, ProbeResult
from smart_worker.sandbox.runtime import ContainerRuntime, ContainerSpec

logger = logging.getLogger(__name__)

SIDECAR_REDIS_PORT = 6800

RECIPE_TEMPLATE = """FROM {base_image}
WORKDIR /app
RUN apt-get update \\
    && apt-get install -y --no-install-recommends redis-server curl \\
    && rm -rf /var/lib/apt/lists/*
RUN useradd --create-home sandbox
COPY --chown=sandbox:sandbox . .
RUN if [ -f requirements.txt ]; then pip install --no-cache-dir -r requirements.txt; fi
USER sandbox
ENV PORT={port}
EXPOSE {port}/tcp
CMD ["sh", "-c", "redis-server --daemonize no --port {redis_port} & exec python -m smart_worker.sandbox.entrypoint"]
"""


class SandboxState(str, Enum):
    """Lifecycle state of a sandbox session."""

    PREPARING = "preparing"
    IMAGE_BUILT = "image_built"
    NETWORK_READY = "network_ready"
    CONTAINER_RUNNING = "container_running"
    PROBING = "probing"
    VERIFIED = "verified"
    DESTROYED = "destroyed"


@dataclass
class SandboxSession:
    """One verification run."""

    identity: str
    port: int
    container_name: str
    sidecar_name: str
    recipe_path: str
    state: SandboxState = SandboxState.PREPARING
    history: List[SandboxState] = field(
        default_factory=lambda: [SandboxState.PREPARING]
    )
    container_id: Optional[str] = None

    def advance(self, state: SandboxState) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class SandboxResult:
    """Verification outcome of a sandbox run."""

    success: bool
    session: SandboxSession
    detail: str = ""
    response: Any = None
    error: Optional[SandboxError] = None


def render_recipe(config: SandboxConfig, port: int) -> str:
    """Container build recipe for a sandbox listening on ``port``."""
    return RECIPE_TEMPLATE.format(
        base_image=config.base_image,
        port=port,
        redis_port=SIDECAR_REDIS_PORT,
    )


def sandbox_identity(job: FailedJob) -> str:
    """Container-name-safe identity unique to one job."""
    name = re.sub(r"[^a-zA-Z0-9_.-]+", "-", job.name).strip("-.").lower() or "job"
    job_id = re.sub(r"[^a-zA-Z0-9_.-]+", "-", str(job.id)) or "0"
    return f"{name}-{job_id}"


class SandboxRunner:
    """Runs a proposed fix inside an ephemeral, resource-capped container."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: SandboxConfig,
        root_dir: str,
        prober: Optional[JobProber] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the runner.

        Args:
            runtime: Container runtime.
            config: Sandbox configuration.
            root_dir: Application root on the host, injected into the
                container so it can map changed paths.
            prober: Job prober; built from the config when omitted.
            sleep: Sleep function used for the settle delay.
            rng: Random source for port selection.
        """
        self.runtime = runtime
        self.config = config
        self.root_dir = root_dir
        self.prober = prober or JobProber(
            attempts=config.probe_attempts,
            delay=config.probe_delay_seconds,
            sleep=sleep,
        )
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _prepare(self, job: FailedJob) -> SandboxSession:
        identity = sandbox_identity(job)
        port = self._rng.randint(self.config.port_min, self.config.port_max - 1)
        recipe_path = os.path.join(
            self.config.build_context, f".{self.config.container_prefix}-{identity}.Dockerfile"
        )
        return SandboxSession(
            identity=identity,
            port=port,
            container_name=f"{self.config.container_prefix}-{identity}",
            sidecar_name=f"{self.config.sidecar_prefix}-{identity}",
            recipe_path=recipe_path,
        )

    def _environment(self, session: SandboxSession, changes: List[CodeChange]) -> Dict[str, str]:
        env: Dict[str, str] = {}
        if os.path.isfile(self.config.env_file):
            env.update(
                {k: v for k, v in dotenv_values(self.config.env_file).items() if v is not None}
            )
        env.update(
            {
                "APP_CODE_CHANGES": json.dumps([c.to_payload() for c in changes]),
                "APP_PORT": str(session.port),
                "APP_ROOT_DIR": self.root_dir,
                "APP_START_COMMAND": self.config.app_command,
                "EXECUTION_CONTEXT": "sandbox",
            }
        )
        return env

    def verify(self, job: FailedJob, changes: List[CodeChange]) -> SandboxResult:
        """Verify a fix by replaying the job against the patched application.

        Build and start failures end the run with a failed result. Any
        other exception propagates after teardown.

        Args:
            job: The failed job.
            changes: Proposed code changes.

        Returns:
            SandboxResult with the probe outcome.
        """
        session = self._prepare(job)
        log_event(
            logger, "sandbox", "preparing", job_id=job.id, port=session.port
        )

        try:
            self.runtime.write_recipe(
                session.recipe_path, render_recipe(self.config, session.port)
            )

            self.runtime.build_image(
                self.config.build_context, session.recipe_path, self.config.image_tag
            )
            session.advance(SandboxState.IMAGE_BUILT)
            log_event(logger, "sandbox", "image_built", job_id=job.id)

            self.runtime.ensure_network(self.config.network)
            session.advance(SandboxState.NETWORK_READY)

            session.container_id = self.runtime.run_container(
                ContainerSpec(
                    name=session.container_name,
                    image=self.config.image_tag,
                    network=self.config.network,
                    port=session.port,
                    environment=self._environment(session, changes),
                    mem_limit=self.config.memory_limit,
                    cpus=self.config.cpus,
                    pids_limit=self.config.pids_limit,
                    labels={"smart_worker.sandbox.job": str(job.id)},
                )
            )
            session.advance(SandboxState.CONTAINER_RUNNING)
            log_event(
                logger,
                "sandbox",
                "waiting_for_startup",
                job_id=job.id,
                container=session.container_name,
            )

            self._sleep(self.config.settle_seconds)
            session.advance(SandboxState.PROBING)
            probe: ProbeResult = self.prober.replay(
                job, self.config.probe_host, session.port
            )
            session.advance(SandboxState.VERIFIED)
            log_event(
                logger,
                "sandbox",
                "job_success" if probe.success else "job_failure",
                job_id=job.id,
                attempts=probe.attempts,
            )
            return SandboxResult(
                success=probe.success,
                session=session,
                detail=probe.detail,
                response=probe.response,
            )
        except SandboxError as e:
            logger.error(f"Error in sandbox for job {job.id} ({session.state.value}): {e}")
            return SandboxResult(
                success=False, session=session, detail=str(e), error=e
            )
        finally:
            self.teardown(session)

    def teardown(self, session: SandboxSession) -> None:
        """Stop the session's containers and delete its recipe.

        Each step runs even if an earlier one failed. Safe to call twice.
        """
        if session.state is SandboxState.DESTROYED:
            return
        logger.info(f"Destroying sandbox {session.identity}")

        for name in (session.container_name, session.sidecar_name):
            try:
                self.runtime.stop_container(name)
            except SandboxError as e:
                logger.error(f"Could not stop container {name}: {e}")
            except Exception:
                logger.exception(f"Unexpected error stopping container {name}")

        try:
            self.runtime.delete_recipe(session.recipe_path)
        except Exception:
            logger.exception(f"Could not delete {session.recipe_path}")

        session.advance(SandboxState.DESTROYED)
        log_event(logger, "sandbox", "destroyed", sandbox=session.identity)
