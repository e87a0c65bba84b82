"""Tests for the lifecycle CLI."""

import io
import json

import pytest
import structlog

from lifecycle import cli
from lifecycle.cli import build_parser, main, run_command


async def run(args_list, settings, service):
    """Run a command against the injected service; return (exit code, report)."""
    out = io.StringIO()
    code = await run_command(
        build_parser().parse_args(args_list), settings, service=service, out=out
    )
    return code, json.loads(out.getvalue())


class TestParser:
    def test_policy_command_takes_name(self):
        args = build_parser().parse_args(["policy", "session_data"])
        assert args.command == "policy"
        assert args.name == "session_data"

    def test_daily_hour_option(self):
        args = build_parser().parse_args(["--json-logs", "daily", "--hour", "4"])
        assert args.json_logs is True
        assert args.hour == 4

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: lifecycle" in capsys.readouterr().out


class TestRunCommand:
    """Run commands against an injected service and inspect the JSON report."""

    @pytest.mark.asyncio
    async def test_sweep(self, service, subject, settings):
        code, payload = await run(["sweep"], settings, service)

        assert code == 0
        assert payload["policies_executed"] == 14
        assert payload["details"]["session_data"]["cleaned_count"] == 1

    @pytest.mark.asyncio
    async def test_daily(self, service, subject, settings):
        code, payload = await run(["daily"], settings, service)

        assert code == 0
        assert set(payload) == {"started_at", "finished_at", "deletions", "retention"}

    @pytest.mark.asyncio
    async def test_due_deletions(self, service, subject, settings):
        code, payload = await run(["due-deletions"], settings, service)

        assert code == 0
        assert payload["processed"] == 0

    @pytest.mark.asyncio
    async def test_unknown_policy_exits_non_zero(self, service, settings):
        code, payload = await run(["policy", "audit_records"], settings, service)

        assert code == 1
        assert payload["error"] == "unknown_policy"

    @pytest.mark.asyncio
    async def test_policies_table(self, service, settings):
        code, payload = await run(["policies"], settings, service)

        assert code == 0
        assert payload["policy_count"] == 14
        assert payload["policies"]["log_files"]["retention_days"] == 90

    @pytest.mark.asyncio
    async def test_daily_hour_defaults_to_settings(self, service, settings):
        args = build_parser().parse_args(["daily"])

        await run_command(args, settings, service=service, out=io.StringIO())

        assert args.hour == settings.daily_run_hour_utc


class TestMain:
    @pytest.fixture(autouse=True)
    def _reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_stdout_carries_only_the_report(self, settings, monkeypatch, capsys):
        monkeypatch.setattr(cli, "get_settings", lambda: settings)

        code = main(["policies"])

        captured = capsys.readouterr()
        assert code == 0
        assert json.loads(captured.out)["policy_count"] == 14
        assert "database.initialized" not in captured.out
