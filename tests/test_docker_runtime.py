"""Tests for the Docker-backed container runtime."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from smart_worker.errors import SandboxBuildError, SandboxError, SandboxRunError
from smart_worker.sandbox.runtime import (
    SANDBOX_LABEL,
    ContainerSpec,
    DockerRuntime,
    sweep_stale_sandboxes,
)
from tests.fakes import FakeRuntime


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def runtime(client: MagicMock) -> DockerRuntime:
    return DockerRuntime(client=client)


def _conflict() -> APIError:
    return APIError("conflict", response=MagicMock(status_code=409))


class TestConnection:
    """Lazy client creation."""

    @patch("smart_worker.sandbox.runtime.docker.from_env")
    def test_connects_from_env(self, mock_from_env) -> None:
        runtime = DockerRuntime()
        assert runtime.is_available()
        mock_from_env.assert_called_once()

    @patch("smart_worker.sandbox.runtime.docker.from_env")
    def test_unavailable(self, mock_from_env) -> None:
        mock_from_env.side_effect = DockerException("no socket")
        runtime = DockerRuntime()

        assert not runtime.is_available()
        with pytest.raises(SandboxRunError):
            runtime.ensure_network("sandbox")


class TestBuild:
    """Image builds from a recipe file."""

    def test_build_uses_relative_recipe(self, runtime: DockerRuntime, client: MagicMock) -> None:
        runtime.build_image("/srv/app", "/srv/app/.smart-sandbox-x.Dockerfile", "tag")

        client.images.build.assert_called_once_with(
            path="/srv/app",
            dockerfile=".smart-sandbox-x.Dockerfile",
            tag="tag",
            rm=True,
            labels={SANDBOX_LABEL: "image"},
        )

    def test_build_error(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.images.build.side_effect = BuildError("step 3 failed", build_log=[])
        with pytest.raises(SandboxBuildError):
            runtime.build_image("/srv/app", "/srv/app/Dockerfile", "tag")


class TestNetwork:
    """Idempotent network creation."""

    def test_existing_network_is_reused(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.networks.list.return_value = [MagicMock()]
        runtime.ensure_network("sandbox")
        client.networks.create.assert_not_called()

    def test_creates_bridge(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.networks.list.return_value = []
        runtime.ensure_network("sandbox")
        client.networks.create.assert_called_once_with(
            name="sandbox", driver="bridge", labels={SANDBOX_LABEL: "network"}
        )

    def test_lost_creation_race_is_ok(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.networks.list.return_value = []
        client.networks.create.side_effect = _conflict()
        runtime.ensure_network("sandbox")

    def test_other_api_error(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.networks.list.return_value = []
        client.networks.create.side_effect = APIError(
            "boom", response=MagicMock(status_code=500)
        )
        with pytest.raises(SandboxRunError):
            runtime.ensure_network("sandbox")


class TestContainers:
    """Container start, stop and listing."""

    def test_run_caps_resources(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.containers.run.return_value = MagicMock(id="abc123", short_id="abc")
        spec = ContainerSpec(
            name="smart-sandbox-x-1",
            image="img",
            network="sandbox",
            port=12000,
            environment={"A": "1"},
            cpus=0.5,
            labels={"smart_worker.sandbox.job": "1"},
        )

        assert runtime.run_container(spec) == "abc123"

        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["ports"] == {"12000/tcp": 12000}
        assert kwargs["detach"] is True
        assert kwargs["auto_remove"] is True
        assert kwargs["mem_limit"] == "128m"
        assert kwargs["nano_cpus"] == 500_000_000
        assert kwargs["pids_limit"] == 64
        assert kwargs["labels"] == {SANDBOX_LABEL: "true", "smart_worker.sandbox.job": "1"}

    def test_run_missing_image(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.containers.run.side_effect = ImageNotFound("img")
        with pytest.raises(SandboxRunError):
            runtime.run_container(ContainerSpec("n", "img", "net", 1))

    def test_stop(self, runtime: DockerRuntime, client: MagicMock) -> None:
        assert runtime.stop_container("smart-sandbox-x")
        client.containers.get.assert_called_once_with("smart-sandbox-x")
        client.containers.get.return_value.stop.assert_called_once()

    def test_stop_missing_container(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.containers.get.side_effect = NotFound("gone")
        assert not runtime.stop_container("smart-sandbox-x")

    def test_stop_engine_error(self, runtime: DockerRuntime, client: MagicMock) -> None:
        client.containers.get.return_value.stop.side_effect = APIError("stuck")
        with pytest.raises(SandboxError):
            runtime.stop_container("smart-sandbox-x")

    def test_list_names(self, runtime: DockerRuntime, client: MagicMock) -> None:
        a, b = MagicMock(), MagicMock()
        a.name, b.name = "smart-sandbox-a", "postgres"
        client.containers.list.return_value = [a, b]

        assert runtime.list_container_names() == ["smart-sandbox-a", "postgres"]
        client.containers.list.assert_called_once_with(all=True)


class TestSweep:
    """Stale sandbox cleanup."""

    def test_stops_only_prefixed_containers(self) -> None:
        runtime = FakeRuntime()
        for name in ("smart-sandbox-a-1", "smart-sandbox-redis-a-1", "postgres"):
            runtime.running[name] = ContainerSpec(name, "img", "net", 1)

        stopped = sweep_stale_sandboxes(runtime, ["smart-sandbox", "smart-sandbox-redis"])

        assert stopped == 2
        assert list(runtime.running) == ["postgres"]

    def test_nothing_to_sweep(self) -> None:
        assert sweep_stale_sandboxes(FakeRuntime(), ["smart-sandbox"]) == 0

    def test_stop_failure_is_skipped(self) -> None:
        runtime = FakeRuntime(fail_at="stop")
        runtime.running["smart-sandbox-a"] = ContainerSpec("smart-sandbox-a", "img", "net", 1)
        assert sweep_stale_sandboxes(runtime, ["smart-sandbox"]) == 0

    def test_list_failure(self) -> None:
        runtime = MagicMock()
        runtime.list_container_names.side_effect = SandboxError("engine down")
        assert sweep_stale_sandboxes(runtime, ["smart-sandbox"]) == 0
