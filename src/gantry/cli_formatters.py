# src/gantry/cli_formatters.py
"""CLI event formatter factories for pipeline execution output.

Provides factory functions that return event handler maps for console
(human-readable) and JSON (structured) output formats. Each factory
returns a dict mapping event types to handler callables, suitable for
subscribing to an EventBus.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import typer

from gantry.contracts.enums import BuildResult, StageOutcome
from gantry.contracts.events import (
    PhaseCompleted,
    PhaseError,
    PhaseStarted,
    RunSummary,
    StageCompleted,
    StageStarted,
)
from gantry.core.events import EventBusProtocol

_OUTCOME_SYMBOLS: dict[StageOutcome, str] = {
    StageOutcome.SUCCESS: "✓",
    StageOutcome.DEGRADED: "⚠",
    StageOutcome.FAILED: "✗",
    StageOutcome.SKIPPED: "-",
}

_RESULT_SYMBOLS: dict[BuildResult, str] = {
    BuildResult.SUCCESS: "✓",
    BuildResult.DEGRADED: "⚠",
    BuildResult.FAILED: "✗",
}


def _format_duration(seconds: float) -> str:
    return f"{seconds:.2f}s" if seconds < 60 else f"{seconds / 60:.1f}m"


def create_console_formatters(prefix: str = "Run") -> dict[type, Callable[..., None]]:
    """Create console formatters for human-readable CLI output.

    Args:
        prefix: Label for the summary line.
    """

    def _format_phase_started(event: PhaseStarted) -> None:
        target_info = f" → {event.target}" if event.target else ""
        typer.echo(f"[{event.phase.value.upper()}] {event.action.value.capitalize()}{target_info}...")

    def _format_phase_completed(event: PhaseCompleted) -> None:
        typer.echo(f"[{event.phase.value.upper()}] ✓ Completed in {_format_duration(event.duration_seconds)}")

    def _format_phase_error(event: PhaseError) -> None:
        target_info = f" ({event.target})" if event.target else ""
        typer.echo(f"[{event.phase.value.upper()}] ✗ Error{target_info}: {event.error_message}", err=True)

    def _format_stage_started(event: StageStarted) -> None:
        typer.echo(f"  [{event.index + 1}/{event.total}] {event.stage} ({event.policy.value})")

    def _format_stage_completed(event: StageCompleted) -> None:
        symbol = _OUTCOME_SYMBOLS[event.outcome]
        reason = f" - {event.reason}" if event.reason and event.outcome != StageOutcome.SUCCESS else ""
        typer.echo(
            f"  {symbol} {event.stage}: {event.outcome.value} in {_format_duration(event.duration_seconds)}{reason}"
        )

    def _format_run_summary(event: RunSummary) -> None:
        symbol = _RESULT_SYMBOLS[event.result]
        typer.echo(
            f"\n{symbol} {prefix} {event.result.value.upper()}: "
            f"✓{event.succeeded} succeeded | "
            f"⚠{event.degraded} degraded | "
            f"✗{event.failed} failed | "
            f"-{event.skipped} skipped | "
            f"{event.duration_seconds:.2f}s total"
        )
        for stage, reason in event.tolerated_failures:
            typer.echo(f"  ⚠ {stage}: {reason}")
        if event.aborted_by:
            typer.echo(f"  Aborted by: {event.aborted_by}", err=True)
        for condition, reason in event.post_action_failures:
            typer.echo(f"  Post action '{condition}' failed: {reason}", err=True)

    return {
        PhaseStarted: _format_phase_started,
        PhaseCompleted: _format_phase_completed,
        PhaseError: _format_phase_error,
        StageStarted: _format_stage_started,
        StageCompleted: _format_stage_completed,
        RunSummary: _format_run_summary,
    }


def create_json_formatters() -> dict[type, Callable[..., None]]:
    """Create JSON formatters for structured CLI output (one object per line)."""

    def _format_phase_started_json(event: PhaseStarted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "phase_started",
                    "phase": event.phase.value,
                    "action": event.action.value,
                    "target": event.target,
                }
            )
        )

    def _format_phase_completed_json(event: PhaseCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "phase_completed",
                    "phase": event.phase.value,
                    "duration_seconds": event.duration_seconds,
                }
            )
        )

    def _format_phase_error_json(event: PhaseError) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "phase_error",
                    "phase": event.phase.value,
                    "error": event.error_message,
                    "target": event.target,
                }
            ),
            err=True,
        )

    def _format_stage_started_json(event: StageStarted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "stage_started",
                    "run_id": event.run_id,
                    "stage": event.stage,
                    "index": event.index,
                    "total": event.total,
                    "policy": event.policy.value,
                }
            )
        )

    def _format_stage_completed_json(event: StageCompleted) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "stage_completed",
                    "run_id": event.run_id,
                    "stage": event.stage,
                    "outcome": event.outcome.value,
                    "duration_seconds": event.duration_seconds,
                    "result_so_far": event.result_so_far.value,
                    "reason": event.reason,
                }
            )
        )

    def _format_run_summary_json(event: RunSummary) -> None:
        typer.echo(
            json.dumps(
                {
                    "event": "run_completed",
                    "run_id": event.run_id,
                    "pipeline": event.pipeline,
                    "result": event.result.value,
                    "succeeded": event.succeeded,
                    "degraded": event.degraded,
                    "failed": event.failed,
                    "skipped": event.skipped,
                    "duration_seconds": event.duration_seconds,
                    "exit_code": event.exit_code,
                    "tolerated_failures": [
                        {"stage": stage, "reason": reason} for stage, reason in event.tolerated_failures
                    ],
                    "aborted_by": event.aborted_by,
                    "post_action_failures": [
                        {"condition": condition, "reason": reason} for condition, reason in event.post_action_failures
                    ],
                }
            )
        )

    return {
        PhaseStarted: _format_phase_started_json,
        PhaseCompleted: _format_phase_completed_json,
        PhaseError: _format_phase_error_json,
        StageStarted: _format_stage_started_json,
        StageCompleted: _format_stage_completed_json,
        RunSummary: _format_run_summary_json,
    }


def subscribe_formatters(
    event_bus: EventBusProtocol,
    formatters: dict[type, Callable[..., None]],
) -> None:
    """Subscribe all formatters to the event bus."""
    for event_type, handler in formatters.items():
        event_bus.subscribe(event_type, handler)
