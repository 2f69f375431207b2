"""Tests for CLI commands"""

import re

import pytest
from typer.testing import CliRunner

from jobs_engine.cli import main as cli_main
from jobs_engine.cli.main import app
from jobs_engine.cli.utils import runtime

SUBMITTED = re.compile(r"Job submitted: ([0-9a-f-]{36})")


@pytest.fixture
def runner(settings, monkeypatch):
    """CLI runner against an initialized throwaway database"""
    monkeypatch.setattr(runtime, "load_settings", lambda: settings)
    monkeypatch.setattr(cli_main, "load_settings", lambda: settings)

    runner = CliRunner()
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.stdout
    return runner


def _submit(runner, *args) -> str:
    result = runner.invoke(app, ["jobs", "submit", *args])
    assert result.exit_code == 0, result.stdout
    return SUBMITTED.search(result.stdout).group(1)


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "1.0.0" in result.stdout
        assert "test" in result.stdout

    def test_init_db_is_idempotent(self, runner):
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0
        assert "Database tables created" in result.stdout


class TestJobCommands:
    """Test job commands"""

    def test_submit_and_show(self, runner):
        job_id = _submit(runner, "send-email", "--payload", '{"to": "a@example.com"}')

        result = runner.invoke(app, ["jobs", "show", job_id])
        assert result.exit_code == 0
        assert "send-email" in result.stdout
        assert "waiting" in result.stdout

    def test_submit_invalid_payload(self, runner):
        result = runner.invoke(app, ["jobs", "submit", "send-email", "--payload", "{nope"])
        assert result.exit_code == 1
        assert "--payload is not valid JSON" in result.stdout

    def test_submit_timeout_beyond_lease(self, runner):
        result = runner.invoke(app, ["jobs", "submit", "slow", "--timeout", "600000"])
        assert result.exit_code == 1
        assert "shorter than the worker lease" in result.stdout

    def test_show_unknown_job(self, runner):
        result = runner.invoke(
            app, ["jobs", "show", "00000000-0000-0000-0000-000000000000"]
        )
        assert result.exit_code == 1
        assert "Job not found" in result.stdout

    def test_show_invalid_id(self, runner):
        result = runner.invoke(app, ["jobs", "show", "not-a-uuid"])
        assert result.exit_code == 1
        assert "Invalid job id" in result.stdout

    def test_list(self, runner):
        _submit(runner, "send-email")
        _submit(runner, "report", "--queue", "reports")

        result = runner.invoke(app, ["jobs", "list", "--queue", "reports"])
        assert result.exit_code == 0
        assert "Showing 1 of 1 jobs" in result.stdout

    def test_cancel(self, runner):
        job_id = _submit(runner, "send-email")

        result = runner.invoke(app, ["jobs", "cancel", job_id])
        assert result.exit_code == 0
        assert "cancelled" in result.stdout

        again = runner.invoke(app, ["jobs", "cancel", job_id])
        assert again.exit_code == 1

    def test_run_once_fail_and_retry(self, runner):
        job_id = _submit(runner, "no-processor")

        result = runner.invoke(app, ["jobs", "run-once"])
        assert result.exit_code == 0
        assert "failed" in result.stdout

        failed = runner.invoke(app, ["jobs", "failed"])
        assert failed.exit_code == 0
        assert "Failed Jobs" in failed.stdout

        retried = runner.invoke(app, ["jobs", "retry", job_id])
        assert retried.exit_code == 0
        assert f"Job {job_id} retried as" in retried.stdout

        again = runner.invoke(app, ["jobs", "retry", job_id])
        assert again.exit_code == 1
        assert "already retried" in again.stdout

    def test_run_once_empty_queue(self, runner):
        result = runner.invoke(app, ["jobs", "run-once", "--queue", "empty"])
        assert result.exit_code == 0
        assert "No job ready on queue empty" in result.stdout

    def test_retry_needs_a_selector(self, runner):
        result = runner.invoke(app, ["jobs", "retry"])
        assert result.exit_code == 1
        assert "Give a job id, --type or --queue" in result.stdout

    def test_retry_by_type_without_matches(self, runner):
        result = runner.invoke(app, ["jobs", "retry", "--type", "nothing"])
        assert result.exit_code == 0
        assert "No failed jobs matched" in result.stdout

    def test_stats(self, runner):
        _submit(runner, "send-email")

        result = runner.invoke(app, ["jobs", "stats"])
        assert result.exit_code == 0
        assert "send-email" in result.stdout

    def test_cleanup(self, runner):
        result = runner.invoke(app, ["jobs", "cleanup"])
        assert result.exit_code == 0
        assert "Removed 0 jobs" in result.stdout


class TestScheduleCommands:
    """Test schedule commands"""

    def test_create_list_disable_delete(self, runner):
        result = runner.invoke(
            app, ["schedules", "create", "nightly", "0 2 * * *", "--type", "report"]
        )
        assert result.exit_code == 0, result.stdout
        assert "Schedule nightly created" in result.stdout

        listed = runner.invoke(app, ["schedules", "list"])
        assert listed.exit_code == 0
        assert "nightly" in listed.stdout

        disabled = runner.invoke(app, ["schedules", "disable", "nightly"])
        assert disabled.exit_code == 0

        enabled_only = runner.invoke(app, ["schedules", "list", "--enabled"])
        assert "No schedules" in enabled_only.stdout

        deleted = runner.invoke(app, ["schedules", "delete", "nightly", "--yes"])
        assert deleted.exit_code == 0

        missing = runner.invoke(app, ["schedules", "show", "nightly"])
        assert missing.exit_code == 1
        assert "Schedule not found" in missing.stdout

    def test_create_invalid_cron(self, runner):
        result = runner.invoke(
            app, ["schedules", "create", "broken", "every day", "--type", "report"]
        )
        assert result.exit_code == 1
        assert "Invalid cron expression" in result.stdout

    def test_scheduler_once_with_nothing_due(self, runner):
        result = runner.invoke(app, ["scheduler", "--once"])
        assert result.exit_code == 0
        assert "Scheduler produced 0 jobs" in result.stdout
