"""Tests for the pre-flight health checks."""

from unittest.mock import patch

import pytest

from korero.autonomous.health_check import (
    HealthCheckResult,
    HealthCheckSystem,
    HealthReport,
    HealthStatus,
    build_default_checks,
    check_config_syntax,
    check_tool_allowlist,
    scan_config_secrets,
)
from korero.autonomous.rate_limiter import RateLimiter

OPENAI_KEY = "sk-" + "a1B2c3D4" * 3


def limiter_for(config, used=0):
    limiter = RateLimiter(config.max_calls_per_hour, config.call_count_file)
    for _ in range(used):
        limiter.record_call()
    return limiter


def result_named(report, name):
    return next(r for r in report.results if r.name == name)


@pytest.fixture
def tools_on_path():
    with patch("korero.autonomous.health_check.shutil.which", return_value="/usr/bin/found") as which:
        yield which


class TestHealthCheckSystem:
    @pytest.mark.asyncio
    async def test_checks_run_in_order(self):
        health = HealthCheckSystem()

        @health.check("first")
        async def first():
            return HealthCheckResult("first", HealthStatus.OK)

        @health.check("second")
        async def second():
            return HealthCheckResult("second", HealthStatus.WARN, "meh")

        report = await health.run_all()
        assert [r.name for r in report.results] == ["first", "second"]
        assert report.outcome == "PASSED with warnings"

    @pytest.mark.asyncio
    async def test_raising_check_is_an_error(self):
        health = HealthCheckSystem()

        @health.check("broken")
        async def broken():
            raise RuntimeError("boom")

        report = await health.run_all()
        assert report.has_errors
        assert "RuntimeError: boom" in report.results[0].message

    @pytest.mark.asyncio
    async def test_unregistered_check(self):
        result = await HealthCheckSystem().run_check("missing")
        assert result.status is HealthStatus.ERROR

    def test_report_outcomes(self):
        ok = HealthCheckResult("a", HealthStatus.OK)
        warn = HealthCheckResult("b", HealthStatus.WARN)
        err = HealthCheckResult("c", HealthStatus.ERROR)
        assert HealthReport([ok]).outcome == "ALL CLEAR"
        assert HealthReport([ok, warn]).outcome == "PASSED with warnings"
        assert HealthReport([ok, warn, err]).outcome == "FAILED"
        assert HealthReport([err]).to_dict()["checks"][0]["status"] == "ERROR"


class TestDefaultChecks:
    """The eight standard checks."""

    @pytest.mark.asyncio
    async def test_healthy_project(self, config, tools_on_path):
        config.allowed_tools = "@standard"
        config.config_file.write_text('MAX_CALLS_PER_HOUR="50"\n')
        report = await build_default_checks(config, limiter_for(config)).run_all()
        assert [r.name for r in report.results] == [
            "Claude CLI",
            "Dependencies",
            "Project Structure",
            "Session State",
            "Rate Limit",
            "Config Syntax",
            "Config Secrets",
            "Tool Permissions",
        ]
        assert report.outcome == "ALL CLEAR"

    @pytest.mark.asyncio
    async def test_missing_agent_cli(self, config):
        config.agent_command = "definitely-not-an-agent-cli-xyz --flag"
        report = await build_default_checks(config, limiter_for(config)).run_all()
        result = result_named(report, "Claude CLI")
        assert result.status is HealthStatus.ERROR
        assert "CLAUDE_CODE_CMD" in result.remediation

    @pytest.mark.asyncio
    async def test_missing_git(self, config):
        def which(name):
            return None if name == "git" else "/usr/bin/" + name

        with patch("korero.autonomous.health_check.shutil.which", side_effect=which):
            report = await build_default_checks(config, limiter_for(config)).run_all()
        assert result_named(report, "Dependencies").status is HealthStatus.ERROR
        assert report.outcome == "FAILED"

    @pytest.mark.asyncio
    async def test_missing_korero_dir(self, tmp_path, tools_on_path):
        from korero.config import load_config

        config = load_config(tmp_path, environ={})
        report = await build_default_checks(config, limiter_for(config)).run_all()
        assert result_named(report, "Project Structure").status is HealthStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_prompt_warns(self, config, tools_on_path):
        config.prompt_file.unlink()
        report = await build_default_checks(config, limiter_for(config)).run_all()
        result = result_named(report, "Project Structure")
        assert result.status is HealthStatus.WARN
        assert "PROMPT.md" in result.message

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self, config, tools_on_path):
        config.max_calls_per_hour = 5
        report = await build_default_checks(config, limiter_for(config, used=5)).run_all()
        assert result_named(report, "Rate Limit").status is HealthStatus.ERROR

    @pytest.mark.asyncio
    async def test_rate_limit_near_capacity(self, config, tools_on_path):
        config.max_calls_per_hour = 10
        report = await build_default_checks(config, limiter_for(config, used=9)).run_all()
        assert result_named(report, "Rate Limit").status is HealthStatus.WARN

    @pytest.mark.asyncio
    async def test_config_syntax_error(self, config, tools_on_path):
        config.config_file.write_text('ALLOWED_TOOLS="Write,Read\n')
        report = await build_default_checks(config, limiter_for(config)).run_all()
        result = result_named(report, "Config Syntax")
        assert result.status is HealthStatus.ERROR
        assert "Line 1: unmatched double quote" in result.message

    @pytest.mark.asyncio
    async def test_missing_config_file_warns(self, config, tools_on_path):
        report = await build_default_checks(config, limiter_for(config)).run_all()
        assert result_named(report, "Config Syntax").status is HealthStatus.WARN

    @pytest.mark.asyncio
    async def test_expired_session_warns(self, config, tools_on_path):
        config.session_file.write_text('{"session_id": "abc", "timestamp": "2001-01-01T00:00:00+00:00"}')
        report = await build_default_checks(config, limiter_for(config)).run_all()
        assert result_named(report, "Session State").status is HealthStatus.WARN


    @pytest.mark.asyncio
    async def test_secret_in_config_warns(self, config, tools_on_path):
        config.config_file.write_text(f'MAX_CALLS_PER_HOUR="50"\nOPENAI_KEY="{OPENAI_KEY}"\n')
        report = await build_default_checks(config, limiter_for(config)).run_all()
        result = result_named(report, "Config Secrets")
        assert result.status is HealthStatus.WARN
        assert "Line 2: Possible OpenAI API Key detected" in result.message
        assert "# korero: trusted" in result.remediation
        assert report.outcome == "PASSED with warnings"

    @pytest.mark.asyncio
    async def test_missing_config_has_no_secrets(self, config, tools_on_path):
        report = await build_default_checks(config, limiter_for(config)).run_all()
        assert result_named(report, "Config Secrets").status is HealthStatus.OK


class TestConfigSyntax:
    def test_comments_and_blank_lines_ignored(self):
        assert check_config_syntax("# it's a comment\n\nKEY=value\n") == []

    def test_single_quote(self):
        assert check_config_syntax("A='x\nB=\"ok\"") == ["Line 1: unmatched single quote"]


class TestToolAllowlist:
    @pytest.mark.parametrize(
        "value,status",
        [
            ("", HealthStatus.WARN),
            ("@standard", HealthStatus.OK),
            ("@standard,Bash(docker *)", HealthStatus.OK),
            ("@bogus", HealthStatus.WARN),
            ("Bash(git *)", HealthStatus.WARN),
            ("Write,Read,Edit", HealthStatus.OK),
        ],
    )
    def test_allowlist_status(self, value, status):
        assert check_tool_allowlist(value).status is status


class TestConfigSecrets:
    @pytest.mark.parametrize(
        "line,finding",
        [
            (f'OPENAI_KEY="{OPENAI_KEY}"', "Possible OpenAI API Key detected"),
            (f"GH_TOKEN={'ghp_' + 'A1b2' * 9}", "Possible GitHub Token detected"),
            ("AWS_KEY='AKIA" + "ABCDEFGHIJKLMNOP'", "Possible AWS Access Key detected"),
            ('AUTH="Bearer ' + 'abc.def-ghi_jkl.mno.pqrstu"', "Possible Bearer Token detected"),
            (f"SIGNING_SECRET={'Zm9v' * 12}", "Possible secret/token (long encoded string)"),
        ],
    )
    def test_each_pattern_is_flagged(self, line, finding):
        assert scan_config_secrets(f"# settings\n{line}\n") == [f"Line 2: {finding}"]

    def test_trusted_marker_suppresses_line(self):
        text = f'OPENAI_KEY="{OPENAI_KEY}"  # korero: trusted\n'
        assert scan_config_secrets(text) == []

    def test_only_untrusted_lines_reported(self):
        text = (
            f'A="{OPENAI_KEY}"  # korero: trusted\n'
            f'B="{OPENAI_KEY}"\n'
        )
        assert scan_config_secrets(text) == ["Line 2: Possible OpenAI API Key detected"]

    @pytest.mark.parametrize(
        "text",
        [
            f"# OPENAI_KEY={OPENAI_KEY}",
            "",
            "NOT_AN_ASSIGNMENT",
            'ALLOWED_TOOLS="@standard"',
            "KORERO_MODE=continuous",
            "SHORT=sk-abc123",
            'ALLOWED_TOOLS="Write,Read,Edit,Bash(git *),Bash(npm test)"',
            "PROJECT_DIR=/home/someone/projects/a-rather-long-directory-name",
        ],
    )
    def test_benign_lines_not_flagged(self, text):
        assert scan_config_secrets(text) == []

    def test_one_finding_per_line(self):
        text = f'COMBO="{OPENAI_KEY} Bearer abcdefghijklmnopqrstuvwxyz"\n'
        assert scan_config_secrets(text) == ["Line 1: Possible OpenAI API Key detected"]
