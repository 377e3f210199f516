"""Tests for the smart-worker command line."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from smart_worker.errors import StorageError
from smart_worker.main import app
from smart_worker.models.failure import CodeChange, MemoryRecord
from smart_worker.reasoning.pipeline import PipelineOutcome, PipelineStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    with patch("smart_worker.main.configure_from_env"):
        yield


@pytest.fixture
def job_file(tmp_path: Path, job_payload: Dict) -> Path:
    path = tmp_path / "job.json"
    path.write_text(json.dumps(job_payload))
    return path


def _pipeline(outcome: PipelineOutcome) -> MagicMock:
    pipeline = MagicMock()
    pipeline.run = AsyncMock(return_value=outcome)
    return pipeline


# --- reason ---


class TestReason:
    """Running the pipeline for one job file."""

    def test_verified(self, job_file: Path) -> None:
        outcome = PipelineOutcome(
            job_id="42",
            status=PipelineStatus.VERIFIED,
            changes=[CodeChange(path="workers/report.py", code="x")],
            precedent_id=3,
            summary="Guard against an empty recipient.",
        )
        with patch(
            "smart_worker.reasoning.pipeline.RepairPipeline.from_config",
            return_value=_pipeline(outcome),
        ) as from_config:
            result = runner.invoke(app, ["reason", str(job_file)])

        assert result.exit_code == 0, result.output
        assert "verified" in result.output
        assert "record 3" in result.output
        assert "workers/report.py" in result.output
        job = from_config.return_value.run.await_args.args[0]
        assert job.id == "42"

    def test_not_verified_exits_one(self, job_file: Path) -> None:
        outcome = PipelineOutcome(
            job_id="42", status=PipelineStatus.SANDBOX_FAILED, detail="probe failed"
        )
        with patch(
            "smart_worker.reasoning.pipeline.RepairPipeline.from_config",
            return_value=_pipeline(outcome),
        ):
            result = runner.invoke(app, ["reason", str(job_file)])

        assert result.exit_code == 1
        assert "sandbox_failed" in result.output
        assert "probe failed" in result.output

    def test_json_output(self, job_file: Path) -> None:
        outcome = PipelineOutcome(job_id="42", status=PipelineStatus.VERIFIED)
        with patch(
            "smart_worker.reasoning.pipeline.RepairPipeline.from_config",
            return_value=_pipeline(outcome),
        ):
            result = runner.invoke(app, ["reason", str(job_file), "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["status"] == "verified"

    def test_unreadable_job_file(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")

        result = runner.invoke(app, ["reason", str(bad)])

        assert result.exit_code == 2
        assert "Could not read job file" in result.output


# --- memory ---


class TestMemoryCommands:
    """memory-stats and forget."""

    def test_memory_stats(self) -> None:
        store = MagicMock()
        store.count_records.side_effect = lambda resolved=None: 1
        store.count_chunks.return_value = 4
        store.list_records.return_value = [
            MemoryRecord(
                id=1,
                job_id="42",
                job_name="send-report",
                queue_name="reports",
                resolved=True,
                resolution_summary="Guarded.",
            )
        ]
        with patch("smart_worker.memory.store.FailureMemoryStore", return_value=store):
            result = runner.invoke(app, ["memory-stats", "--limit", "5"])

        assert result.exit_code == 0, result.output
        assert "chunks: 4" in result.output
        assert "send-report" in result.output
        store.list_records.assert_called_once_with(limit=5)

    def test_memory_stats_empty(self) -> None:
        store = MagicMock()
        store.count_records.return_value = 0
        store.count_chunks.return_value = 0
        store.list_records.return_value = []
        with patch("smart_worker.memory.store.FailureMemoryStore", return_value=store):
            result = runner.invoke(app, ["memory-stats"])

        assert result.exit_code == 0
        assert "No episodes stored yet" in result.output

    def test_forget(self) -> None:
        store = MagicMock()
        store.delete_record.return_value = True
        with patch("smart_worker.memory.store.FailureMemoryStore", return_value=store):
            result = runner.invoke(app, ["forget", "7"])

        assert result.exit_code == 0
        store.delete_record.assert_called_once_with(7)

    def test_forget_missing(self) -> None:
        store = MagicMock()
        store.delete_record.return_value = False
        with patch("smart_worker.memory.store.FailureMemoryStore", return_value=store):
            result = runner.invoke(app, ["forget", "7"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_forget_storage_error(self) -> None:
        store = MagicMock()
        store.delete_record.side_effect = StorageError("vector store unavailable")
        with patch("smart_worker.memory.store.FailureMemoryStore", return_value=store):
            result = runner.invoke(app, ["forget", "7"])

        assert result.exit_code == 1
        assert "vector store unavailable" in result.output


# --- sweep / check-config ---


class TestSweep:
    def test_docker_unavailable(self) -> None:
        runtime = MagicMock()
        runtime.is_available.return_value = False
        with patch("smart_worker.sandbox.runtime.DockerRuntime", return_value=runtime):
            result = runner.invoke(app, ["sweep"])

        assert result.exit_code == 1
        assert "Docker is not available" in result.output

    def test_sweep(self) -> None:
        runtime = MagicMock()
        runtime.is_available.return_value = True
        with patch(
            "smart_worker.sandbox.runtime.DockerRuntime", return_value=runtime
        ), patch(
            "smart_worker.sandbox.runtime.sweep_stale_sandboxes", return_value=2
        ) as sweep:
            result = runner.invoke(app, ["sweep"])

        assert result.exit_code == 0
        assert "Removed 2 sandbox container(s)" in result.output
        assert sweep.call_args.args[0] is runtime


class TestCheckConfig:
    def test_valid(self) -> None:
        with patch.dict(os.environ, {"APP_ROOT_DIR": "/srv/app"}, clear=True):
            result = runner.invoke(app, ["check-config"])

        assert result.exit_code == 0, result.output
        assert "Configuration OK" in result.output

    def test_invalid(self) -> None:
        with patch.dict(os.environ, {"EXECUTION_CONTEXT": "cloud"}, clear=True):
            result = runner.invoke(app, ["check-config"])

        assert result.exit_code == 1
        assert "APP_ROOT_DIR" in result.output
