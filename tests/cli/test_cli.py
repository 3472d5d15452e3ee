"""Tests for the gantry CLI."""

import json
from pathlib import Path

from typer.testing import CliRunner

from gantry.cli import app
from gantry.contracts.enums import RESULT_EXIT_CODES, USAGE_ERROR_EXIT_CODE

runner = CliRunner()

PASSING = """
pipeline:
  name: ci
stages:
  - name: build
    steps:
      - name: compile
        run: echo compiled
  - name: test
    policy: tolerant
    timeout_seconds: 30
    steps:
      - run: echo tested
"""

DEGRADED = """
pipeline:
  name: ci
stages:
  - name: lint
    policy: tolerant
    steps:
      - run: exit 3
  - name: build
    steps:
      - run: echo built
"""

FAILED = """
pipeline:
  name: ci
stages:
  - name: build
    steps:
      - run: exit 1
  - name: deploy
    steps:
      - run: echo never
"""


def _json_events(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


class TestCLIBasics:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "gantry version" in result.stdout

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "validate", "show-config"):
            assert command in result.stdout

    def test_missing_env_file_exits(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--env-file", str(tmp_path / "absent.env"), "validate", "-s", "settings.yaml"])

        assert result.exit_code == 3
        assert ".env file not found" in result.output


class TestValidate:
    def test_valid_settings_print_plan(self, write_settings) -> None:
        config_file = write_settings(PASSING)

        result = runner.invoke(app, ["--no-dotenv", "validate", "-s", str(config_file)])

        assert result.exit_code == 0
        assert "Pipeline configuration valid" in result.output
        assert "1. build (strict)" in result.output
        assert "2. test (tolerant → degraded) [timeout 30" in result.output
        assert "- compile" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "validate", "-s", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 3
        assert "File Not Found" in result.output

    def test_invalid_settings(self, write_settings) -> None:
        config_file = write_settings(
            """
pipeline:
  name: ci
stages:
  - name: build
    policy: sometimes
    steps:
      - run: make
"""
        )

        result = runner.invoke(app, ["--no-dotenv", "validate", "-s", str(config_file)])

        assert result.exit_code == 3
        assert "Validation Failed" in result.output


class TestShowConfig:
    def test_prints_resolved_yaml_with_defaults(self, write_settings) -> None:
        config_file = write_settings(PASSING)

        result = runner.invoke(app, ["--no-dotenv", "show-config", "-s", str(config_file)])

        assert result.exit_code == 0
        assert "name: ci" in result.stdout
        assert "policy: strict" in result.stdout
        assert "success_exit_codes:" in result.stdout


class TestRunSafety:
    def test_requires_execute_flag(self, write_settings) -> None:
        config_file = write_settings(PASSING)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file)])

        assert result.exit_code == 3
        assert "--execute" in result.output

    def test_dry_run_prints_plan_without_running(self, write_settings, tmp_path: Path) -> None:
        config_file = write_settings(PASSING)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "--dry-run"])

        assert result.exit_code == 0
        assert "Dry run mode" in result.output
        assert "1. build (strict)" in result.output
        assert not (tmp_path / "agents").exists()

    def test_json_without_execute_exits(self, write_settings) -> None:
        config_file = write_settings(PASSING)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "-f", "json"])

        assert result.exit_code == 3

    def test_usage_errors_never_look_like_a_run_result(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(tmp_path / "nope.yaml"), "--execute"])

        assert result.exit_code == USAGE_ERROR_EXIT_CODE
        assert USAGE_ERROR_EXIT_CODE not in RESULT_EXIT_CODES.values()


class TestRunExecute:
    def test_success_exits_zero(self, write_settings) -> None:
        config_file = write_settings(PASSING)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "--execute"])

        assert result.exit_code == 0, result.output
        assert "✓ build: success" in result.output
        assert "Run SUCCESS" in result.output

    def test_degraded_exits_one(self, write_settings) -> None:
        config_file = write_settings(DEGRADED)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "--execute"])

        assert result.exit_code == 1, result.output
        assert "⚠ lint: degraded" in result.output
        assert "✓ build: success" in result.output
        assert "Run DEGRADED" in result.output

    def test_failed_exits_two_and_skips_rest(self, write_settings) -> None:
        config_file = write_settings(FAILED)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "--execute"])

        assert result.exit_code == 2, result.output
        assert "✗ build: failed" in result.output
        assert "- deploy: skipped" in result.output

    def test_json_format_emits_events(self, write_settings) -> None:
        config_file = write_settings(DEGRADED)

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "-x", "-f", "json"])

        assert result.exit_code == 1
        events = _json_events(result.stdout)
        stages = [event for event in events if event["event"] == "stage_completed"]
        assert [(event["stage"], event["outcome"]) for event in stages] == [
            ("lint", "degraded"),
            ("build", "success"),
        ]
        (summary,) = [event for event in events if event["event"] == "run_completed"]
        assert summary["result"] == "degraded"
        assert summary["exit_code"] == 1
        assert summary["tolerated_failures"][0]["stage"] == "lint"

    def test_post_action_failure_does_not_change_exit_code(self, write_settings, tmp_path: Path) -> None:
        config_file = write_settings(
            PASSING
            + """
post:
  always:
    - type: archive
      pattern: "*.jar"
  success:
    - type: shell
      run: echo packaged > package.txt
    - type: archive
      pattern: "package.txt"
"""
        )

        result = runner.invoke(app, ["--no-dotenv", "run", "-s", str(config_file), "-x"])

        assert result.exit_code == 0, result.output
        assert "Post action 'always' failed" in result.output
        assert (tmp_path / "artifacts" / "files" / "package.txt").read_text() == "packaged\n"
