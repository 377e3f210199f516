"""Container runtime abstraction for sandbox verification runs."""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from smart_worker.errors import SandboxBuildError, SandboxError, SandboxRunError

logger = logging.getLogger(__name__)

# Label used to identify sandbox containers and networks
SANDBOX_LABEL = "smart_worker.sandbox"


@dataclass
class ContainerSpec:
    """Everything needed to start one sandbox container."""

    name: str
    image: str
    network: str
    port: int
    environment: Dict[str, str] = field(default_factory=dict)
    mem_limit: str = "128m"
    cpus: float = 0.5
    pids_limit: int = 64
    labels: Dict[str, str] = field(default_factory=dict)


class ContainerRuntime(ABC):
    """Operations the sandbox needs from a container engine.

    Recipe files are plain files on the host, so writing and deleting
    them is shared by every runtime.
    """

    def write_recipe(self, path: str, content: str) -> None:
        """Write a build recipe to a scratch file.

        Raises:
            SandboxBuildError: If the file cannot be written.
        """
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise SandboxBuildError(f"could not write recipe {path}: {e}") from e
        logger.debug(f"Recipe written to {path}")

    def delete_recipe(self, path: str) -> None:
        """Delete a scratch recipe; a missing file counts as deleted."""
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.debug(f"Recipe {path} already gone")

    @abstractmethod
    def build_image(self, context_dir: str, recipe_path: str, tag: str) -> None:
        """Build an image from a recipe inside ``context_dir``.

        Raises:
            SandboxBuildError: If the build fails.
        """

    @abstractmethod
    def ensure_network(self, name: str) -> None:
        """Create a bridge network unless one with that name exists.

        Raises:
            SandboxRunError: If the network cannot be created.
        """

    @abstractmethod
    def run_container(self, spec: ContainerSpec) -> str:
        """Start a detached, resource-capped container.

        Returns:
            The container id.

        Raises:
            SandboxRunError: If the container cannot be started.
        """

    @abstractmethod
    def stop_container(self, name: str) -> bool:
        """Stop a container by name.

        Returns:
            True if it was stopped, False if it did not exist.

        Raises:
            SandboxError: On any other runtime failure.
        """

    @abstractmethod
    def list_container_names(self) -> List[str]:
        """Names of all containers, running or not."""


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime backed by the Docker engine API."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        """Initialize Docker runtime.

        Args:
            client: Optional Docker client; connects from the environment
                on first use when omitted.
        """
        self._client = client

    def _get_client(self) -> docker.DockerClient:
        """Get or create Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
                self._client.ping()
                logger.info("Docker client connected")
            except DockerException as e:
                logger.error(f"Failed to connect to Docker: {e}")
                raise SandboxRunError(f"docker unavailable: {e}") from e
        return self._client

    def is_available(self) -> bool:
        """Check if Docker is available and connected."""
        try:
            self._get_client().ping()
            return True
        except (SandboxError, DockerException) as e:
            logger.error(f"Docker not available: {e}")
            return False

    def build_image(self, context_dir: str, recipe_path: str, tag: str) -> None:
        dockerfile = os.path.relpath(recipe_path, context_dir)
        logger.info(f"Building image {tag} from {dockerfile}")
        try:
            self._get_client().images.build(
                path=context_dir,
                dockerfile=dockerfile,
                tag=tag,
                rm=True,
                labels={SANDBOX_LABEL: "image"},
            )
        except (BuildError, APIError) as e:
            raise SandboxBuildError(f"failed to build {tag}: {e}") from e

    def ensure_network(self, name: str) -> None:
        try:
            client = self._get_client()
            if client.networks.list(names=[name]):
                logger.debug(f"Network {name} already exists")
                return
            client.networks.create(
                name=name,
                driver="bridge",
                labels={SANDBOX_LABEL: "network"},
            )
            logger.info(f"Created network: {name}")
        except APIError as e:
            # Lost a creation race with a concurrent run
            if e.status_code == 409:
                logger.debug(f"Network {name} created concurrently")
                return
            raise SandboxRunError(f"failed to ensure network {name}: {e}") from e
        except DockerException as e:
            raise SandboxRunError(f"failed to ensure network {name}: {e}") from e

    def run_container(self, spec: ContainerSpec) -> str:
        try:
            container = self._get_client().containers.run(
                image=spec.image,
                name=spec.name,
                environment=spec.environment,
                labels={SANDBOX_LABEL: "true", **spec.labels},
                network=spec.network,
                ports={f"{spec.port}/tcp": spec.port},
                detach=True,
                auto_remove=True,
                mem_limit=spec.mem_limit,
                nano_cpus=int(spec.cpus * 1_000_000_000),
                pids_limit=spec.pids_limit,
            )
        except (ImageNotFound, APIError) as e:
            raise SandboxRunError(f"failed to start {spec.name}: {e}") from e
        logger.info(f"Sandbox container {spec.name} started ({container.short_id})")
        return container.id

    def stop_container(self, name: str) -> bool:
        try:
            self._get_client().containers.get(name).stop()
        except NotFound:
            logger.debug(f"Container {name} not found (already removed?)")
            return False
        except DockerException as e:
            raise SandboxError(f"could not stop container {name}: {e}") from e
        logger.info(f"Stopped container {name}")
        return True

    def list_container_names(self) -> List[str]:
        try:
            containers = self._get_client().containers.list(all=True)
        except DockerException as e:
            raise SandboxError(f"failed to list containers: {e}") from e
        return [container.name for container in containers]


def sweep_stale_sandboxes(runtime: ContainerRuntime, prefixes: Sequence[str]) -> int:
    """Stop leftover sandbox containers from earlier runs.

    Args:
        runtime: Container runtime.
        prefixes: Container name prefixes that identify sandboxes.

    Returns:
        Number of containers stopped.
    """
    try:
        names = [
            name
            for name in runtime.list_container_names()
            if name and name.startswith(tuple(prefixes))
        ]
    except SandboxError as e:
        logger.error(f"Failed to list sandbox containers: {e}")
        return 0

    if not names:
        logger.info("No sandbox containers found to remove")
        return 0

    logger.info(f"Found sandbox containers to remove: {', '.join(names)}")
    stopped = 0
    for name in names:
        try:
            if runtime.stop_container(name):
                stopped += 1
        except SandboxError as e:
            logger.warning(f"Could not stop container {name}: {e}")
    logger.info(f"Removed {stopped} stale sandbox container(s)")
    return stopped
