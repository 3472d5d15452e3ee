# src/gantry/cli.py
"""Gantry Command Line Interface.

Entry point for the gantry CLI tool.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from gantry import __version__
from gantry.contracts.enums import RESULT_EXIT_CODES, USAGE_ERROR_EXIT_CODE
from gantry.contracts.pipeline import Pipeline
from gantry.core.config import GantrySettings, load_settings, resolve_config, settings_to_yaml

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

app = typer.Typer(
    name="gantry",
    help="Gantry: staged CI pipelines with explicit failure policies.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"gantry version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(USAGE_ERROR_EXIT_CODE)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # Existence is checked in _load_dotenv for a better message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Gantry: staged CI pipelines with explicit failure policies."""
    from gantry.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _format_validation_error(
    title: str,
    message: str,
    hint: str | None = None,
    details: list[str] | None = None,
) -> None:
    """Display a formatted validation error with optional hint and details."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    console = Console(stderr=True)

    content = Text()
    content.append(message, style="white")

    if details:
        content.append("\n\n")
        for detail in details:
            content.append(f"  • {detail}\n", style="dim")

    if hint:
        content.append("\n")
        content.append("Hint: ", style="yellow bold")
        content.append(hint, style="yellow")

    panel = Panel(
        content,
        title=f"[red bold]❌ {title}[/]",
        border_style="red",
        padding=(0, 1),
    )
    console.print(panel)


def _load_pipeline(settings: str) -> tuple[GantrySettings, Pipeline]:
    """Load settings and build the pipeline, reporting errors and exiting with 1.

    Raises:
        typer.Exit: On any configuration error
    """
    from gantry.cli_helpers import build_pipeline

    settings_path = Path(settings).expanduser()

    try:
        config = load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        _format_validation_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {settings_path.name}",
            details=[str(e.problem)] if hasattr(e, "problem") else None,
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(USAGE_ERROR_EXIT_CODE) from None
    except FileNotFoundError:
        _format_validation_error(
            title="File Not Found",
            message=f"Settings file does not exist: {settings}",
            hint="Check the path and ensure the file exists.",
        )
        raise typer.Exit(USAGE_ERROR_EXIT_CODE) from None
    except ValidationError as e:
        # Must come before ValueError - ValidationError inherits from it
        details = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            details.append(f"{loc}: {error['msg']}")
        _format_validation_error(
            title="Configuration Validation Failed",
            message=f"Invalid settings in {settings_path.name}",
            details=details,
            hint="Check field names, types, and required values.",
        )
        raise typer.Exit(USAGE_ERROR_EXIT_CODE) from None

    try:
        pipeline = build_pipeline(config)
    except ValueError as e:
        _format_validation_error(
            title="Pipeline Definition Error",
            message=str(e),
            hint="Check stage names, step exit codes, and credential variables.",
        )
        raise typer.Exit(USAGE_ERROR_EXIT_CODE) from None

    return config, pipeline


def _describe_plan(pipeline: Pipeline) -> None:
    """Print the stage plan: one line per stage, one indented line per step."""
    timeout = f"{pipeline.timeout_seconds}s" if pipeline.timeout_seconds else "none"
    typer.echo(f"  Pipeline: {pipeline.name} (run timeout: {timeout})")
    for index, stage in enumerate(pipeline.stages, start=1):
        policy = stage.policy.kind.value
        if not stage.policy.is_strict:
            policy = f"{policy} → {stage.policy.downgrade_to.value}"
        extras = []
        if stage.timeout_seconds is not None:
            extras.append(f"timeout {stage.timeout_seconds}s")
        if stage.credentials:
            extras.append("credentials: " + ", ".join(binding.credential_id for binding in stage.credentials))
        if stage.retry is not None and stage.retry.max_attempts > 1:
            extras.append(f"retry x{stage.retry.max_attempts}")
        suffix = f" [{'; '.join(extras)}]" if extras else ""
        typer.echo(f"  {index}. {stage.name} ({policy}){suffix}")
        for step in stage.steps:
            typer.echo(f"       - {step.name}")


@app.command()
def validate(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Validate pipeline configuration without running."""
    _, pipeline = _load_pipeline(settings)

    typer.echo("✅ Pipeline configuration valid!")
    _describe_plan(pipeline)


@app.command("show-config")
def show_config(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Print the resolved configuration (file, environment overrides and defaults) as YAML."""
    config, _ = _load_pipeline(settings)
    typer.echo(settings_to_yaml(config), nl=False)


@app.command()
def run(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Validate and show what would run without executing.",
    ),
    execute: bool = typer.Option(
        False,
        "--execute",
        "-x",
        help="Actually execute the pipeline (required for safety).",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Execute a pipeline run.

    Requires --execute flag to actually run (safety feature).
    Use --dry-run to validate configuration without executing.

    Exit code: 0 success, 1 degraded, 2 failed, 3 invalid configuration or
    missing --execute.
    """
    config, pipeline = _load_pipeline(settings)

    # Console-only messages (don't emit in JSON mode to keep stream clean)
    if output_format == "console":
        if dry_run:
            typer.echo("Dry run mode - would execute:")
            _describe_plan(pipeline)
            return

        if not execute:
            typer.echo("Pipeline configuration valid.")
            typer.echo(f"  Stages: {len(pipeline.stages)}")
            typer.echo("")
            typer.echo("To execute, add --execute (or -x) flag:", err=True)
            typer.echo(f"  gantry run -s {settings} --execute", err=True)
            raise typer.Exit(USAGE_ERROR_EXIT_CODE)
    elif dry_run or not execute:
        raise typer.Exit(USAGE_ERROR_EXIT_CODE)

    try:
        exit_code = _execute_pipeline(config, pipeline, output_format=output_format)
    except Exception as e:
        # Only engine bugs get here; stage failures are part of the result
        if output_format == "json":
            typer.echo(
                json.dumps(
                    {
                        "event": "error",
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                ),
                err=True,
            )
        else:
            typer.echo(f"Error during pipeline execution: {e}", err=True)
        raise typer.Exit(2) from None

    raise typer.Exit(exit_code)


def _execute_pipeline(
    config: GantrySettings,
    pipeline: Pipeline,
    *,
    output_format: Literal["console", "json"],
) -> int:
    """Wire up the runner from settings, run once and return the exit code."""
    from gantry.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
    from gantry.cli_helpers import PostActionBuilder, build_secret_store
    from gantry.core.canonical import stable_hash
    from gantry.core.events import EventBus
    from gantry.engine import PipelineRunner, StepExecutor
    from gantry.plugins import DirectoryReportPublisher, FilesystemArtifactSink, LocalAgentProvisioner

    event_bus = EventBus()
    formatters = create_json_formatters() if output_format == "json" else create_console_formatters()
    subscribe_formatters(event_bus, formatters)

    step_runner = StepExecutor()
    post_actions = PostActionBuilder(
        step_runner,
        FilesystemArtifactSink(config.artifact_store.artifacts_dir),
        DirectoryReportPublisher(config.artifact_store.reports_dir),
    ).build(config)

    runner = PipelineRunner(
        LocalAgentProvisioner(base_dir=config.agent.base_dir),
        build_secret_store(config),
        step_runner=step_runner,
        event_bus=event_bus,
    )
    result = runner.run(pipeline, post_actions, config_hash=stable_hash(resolve_config(config)))
    return RESULT_EXIT_CODES[result.result]


if __name__ == "__main__":
    app()
