"""Shared fixtures for smart_worker tests."""

from __future__ import annotations

from pathlib import Path
from typing import Dict

import pytest

from smart_worker.config import MemoryConfig, SandboxConfig
from smart_worker.models.job import FailedJob
from tests.fakes import FakeEmbedder, FakeRuntime

WORKER_SOURCE = """\
import os


def send_report(data):
    recipient = data["to"]
    if not recipient:
        raise ValueError("missing recipient")
    return {"sent": True}


def run(data):
    total = data["count"] * 2
    report = send_report(data)
    return total, report


def main():
    return run({"count": 1, "to": "ops"})
"""

NODE_STACKTRACE = """TypeError: Cannot read properties of undefined (reading 'map') for job 42
    at processBatch ({root}/workers/report.ts:12:18)
    at run ({root}/workers/report.ts:6:5)
    at Worker.handle ({root}/node_modules/bullmq/dist/worker.js:350:30)
    at processBatch ({root}/workers/report.ts:12:18)"""

PYTHON_STACKTRACE = """Traceback (most recent call last):
  File "{root}/workers/report.py", line 13, in run
    report = send_report(data)
  File "{root}/workers/report.py", line 7, in send_report
    raise ValueError("missing recipient")
ValueError: missing recipient"""


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """Application tree holding one worker module."""
    root = tmp_path / "app"
    (root / "workers").mkdir(parents=True)
    (root / "workers" / "report.py").write_text(WORKER_SOURCE)
    return root


@pytest.fixture
def job_payload(app_root: Path) -> Dict:
    """Failed job as the queue reports it (camelCase keys)."""
    return {
        "id": "42",
        "name": "send-report",
        "data": {
            "to": "",
            "count": 3,
            "callfile": f"{app_root}/workers/report.py",
            "reasoning_fix": True,
        },
        "stacktrace": [
            "ValueError: older attempt",
            PYTHON_STACKTRACE.format(root=app_root),
        ],
        "failedReason": "missing recipient",
        "attemptsMade": 3,
        "opts": {"attempts": 3, "backoff": {"type": "fixed", "delay": 5000}},
        "timestamp": 1700000000000,
        "queueName": "reports",
    }


@pytest.fixture
def failed_job(job_payload: Dict) -> FailedJob:
    return FailedJob.from_dict(job_payload)


@pytest.fixture
def memory_config(tmp_path: Path) -> MemoryConfig:
    return MemoryConfig(
        db_path=str(tmp_path / "memory.db"),
        vector_path=str(tmp_path / "vectors"),
        collection="test_chunks",
        distance_metric="cosine",
        top_k=5,
        neighbors_per_query=3,
        signature_match_threshold=0.15,
    )


@pytest.fixture
def sandbox_config(tmp_path: Path) -> SandboxConfig:
    context = tmp_path / "build"
    context.mkdir()
    return SandboxConfig(
        image_tag="smart-worker-sandbox-test",
        network="sandbox-test",
        port_min=10000,
        port_max=10010,
        settle_seconds=0,
        probe_attempts=2,
        probe_delay_seconds=0,
        env_file=str(tmp_path / "missing.env"),
        app_command="python -m app",
        build_context=str(context),
    )


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
