"""Tests for the sandbox job prober."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from smart_worker.models.job import FailedJob
from smart_worker.sandbox.probe import JobProber


def _response(status: int = 200, body=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = "" if body is None else str(body)
    if isinstance(body, (dict, list)):
        response.json.return_value = body
    else:
        response.json.side_effect = ValueError("not json")
    return response


@pytest.fixture
def job() -> FailedJob:
    return FailedJob(id="42", name="send-report", data={"to": "ops", "count": 3})


def _prober(session: MagicMock, sleeps: list, attempts: int = 5) -> JobProber:
    return JobProber(
        attempts=attempts, delay=2.0, timeout=30, session=session, sleep=sleeps.append
    )


class TestReplay:
    """Retry and success rules."""

    def test_posts_exact_invocation(self, job: FailedJob) -> None:
        session = MagicMock()
        session.post.return_value = _response(200, {"success": True, "result": 6})

        result = _prober(session, []).replay(job, "localhost", 12000)

        assert result.success
        assert result.attempts == 1
        assert result.response == {"success": True, "result": 6}
        session.post.assert_called_once_with(
            "http://localhost:12000/job",
            json={"name": "send-report", "data": {"to": "ops", "count": 3}},
            timeout=30,
        )

    def test_retries_until_server_is_up(self, job: FailedJob) -> None:
        session = MagicMock()
        session.post.side_effect = [
            requests.ConnectionError("refused"),
            _response(503, "starting"),
            _response(200, {"success": True}),
        ]
        sleeps: list = []

        result = _prober(session, sleeps).replay(job, "localhost", 12000)

        assert result.success
        assert result.attempts == 3
        assert sleeps == [2.0, 2.0]

    def test_gives_up_after_all_attempts(self, job: FailedJob) -> None:
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        sleeps: list = []

        result = _prober(session, sleeps, attempts=5).replay(job, "localhost", 12000)

        assert not result.success
        assert result.attempts == 5
        assert session.post.call_count == 5
        # No sleep after the final attempt
        assert len(sleeps) == 4
        assert result.detail == "Failed to connect to the job server after multiple attempts."

    def test_reported_failure_is_not_retried(self, job: FailedJob) -> None:
        session = MagicMock()
        session.post.return_value = _response(200, {"success": False, "error": "boom"})
        sleeps: list = []

        result = _prober(session, sleeps).replay(job, "localhost", 12000)

        assert not result.success
        assert result.attempts == 1
        assert result.response == {"success": False, "error": "boom"}
        assert session.post.call_count == 1
        assert sleeps == []

    def test_non_json_2xx_counts_as_success(self, job: FailedJob) -> None:
        session = MagicMock()
        session.post.return_value = _response(200, "OK")

        result = _prober(session, []).replay(job, "localhost", 12000)

        assert result.success
        assert result.response == "OK"

    def test_timeout_is_retried(self, job: FailedJob) -> None:
        session = MagicMock()
        session.post.side_effect = [requests.Timeout("slow"), _response(201, {"success": True})]

        result = _prober(session, []).replay(job, "localhost", 12000)

        assert result.success
        assert result.attempts == 2
