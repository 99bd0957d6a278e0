"""Tests for CLI commands"""

import re

import pytest
from typer.testing import CliRunner

from cli.main import app

JOB_ID = re.compile(r"Enqueued job ([0-9a-f-]{36}) \((\w[\w-]*)\)")


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, database_url):
    """Point the CLI at a throwaway database and keep logging configuration out of the way."""
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setattr("cli.main.setup_logging", lambda settings: None)


@pytest.fixture
def initialized(runner):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    return runner


def enqueue(runner, *args) -> str:
    result = runner.invoke(app, ["enqueue", *args])
    assert result.exit_code == 0, result.stdout
    match = JOB_ID.search(result.stdout)
    assert match, result.stdout
    return match.group(1)


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        """Test version option"""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "Meeting Bot" in result.stdout
        assert "1.0.0" in result.stdout

    def test_init_db(self, runner):
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert "Database schema created" in result.stdout


class TestEnqueueCommand:
    """Test job enqueueing"""

    def test_enqueue_pending(self, initialized):
        result = initialized.invoke(
            app, ["enqueue", "process-recording", "--payload", '{"recording_id": "r1"}']
        )

        assert result.exit_code == 0
        assert JOB_ID.search(result.stdout).group(2) == "pending"

    def test_enqueue_delayed(self, initialized):
        result = initialized.invoke(
            app, ["enqueue", "generate-summary", "--delay-ms", "60000"]
        )

        assert result.exit_code == 0
        assert JOB_ID.search(result.stdout).group(2) == "delayed"

    def test_enqueue_deduplicated(self, initialized):
        job_id = enqueue(initialized, "transcribe-audio", "--dedupe-key", "audio-1")

        result = initialized.invoke(
            app, ["enqueue", "transcribe-audio", "--dedupe-key", "audio-1"]
        )

        assert result.exit_code == 0
        assert f"Live job already exists: {job_id}" in result.stdout

    def test_invalid_json_payload(self, initialized):
        result = initialized.invoke(app, ["enqueue", "process-recording", "-p", "{nope"])
        assert result.exit_code == 1
        assert "Invalid JSON payload" in result.stdout

    def test_unknown_job_type(self, initialized):
        result = initialized.invoke(app, ["enqueue", "launch-rocket"])
        assert result.exit_code == 1
        assert "Unknown job type: launch-rocket" in result.stdout


class TestInspectionCommands:
    """Test status, inspect and retry"""

    def test_status(self, initialized):
        enqueue(initialized, "process-recording")
        enqueue(initialized, "generate-summary", "--delay-ms", "60000")

        result = initialized.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "Queue depth: 2" in result.stdout
        assert "Queue: meeting-jobs" in result.stdout
        assert "pending" in result.stdout

    def test_inspect(self, initialized):
        job_id = enqueue(
            initialized, "process-recording", "-p", '{"recording_id": "r7"}', "-q", "uploads"
        )

        result = initialized.invoke(app, ["inspect", job_id])

        assert result.exit_code == 0
        assert job_id in result.stdout
        assert "uploads" in result.stdout
        assert "r7" in result.stdout

    def test_inspect_unknown_job(self, initialized):
        result = initialized.invoke(app, ["inspect", "00000000-0000-0000-0000-000000000000"])
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_retry_rejects_pending_job(self, initialized):
        job_id = enqueue(initialized, "process-recording")

        result = initialized.invoke(app, ["retry", job_id])

        assert result.exit_code == 1
        assert "not eligible for retry" in result.stdout
