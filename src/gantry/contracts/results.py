"""Operation outcomes and results.

These types answer: "What did a step, stage, or run produce?"

IMPORTANT:
- StageRecord is frozen: once the classifier has decided the outcome it never changes
- RunState is the mutable view owned by the sequencer while a run executes
- RunResult is the immutable snapshot handed to post actions and callers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from gantry.contracts.enums import BuildResult, PolicyKind, RunStatus, StageOutcome
from gantry.contracts.errors import (
    ExecutionError,
    StageFailed,
    StepFailure,
    TimeoutExceeded,
)


@dataclass(frozen=True, slots=True)
class StepResult:
    """Captured result of one external command.

    A non-zero exit_code is data, not an error - callers interpret it.
    """

    name: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    def tail(self, stream: str = "stderr", lines: int = 5) -> str:
        """Last few lines of a captured stream, for failure messages."""
        text = self.stderr if stream == "stderr" else self.stdout
        return "\n".join(text.strip().splitlines()[-lines:])


@dataclass(frozen=True, slots=True)
class FailureInfo:
    """Type-safe failure details for stage records and run aborts.

    Fields:
        exception_type: The exception class name (required)
        message: Human-readable error message (required)
        step: Name of the failing step (optional)
        exit_code: Exit code of the failing step (optional)
        timed_out: Whether the failure was a timeout
    """

    exception_type: str
    message: str
    step: str | None = None
    exit_code: int | None = None
    timed_out: bool = False

    @classmethod
    def from_exception(cls, error: BaseException) -> FailureInfo:
        """Build FailureInfo from any exception the engine observed."""
        if isinstance(error, StageFailed):
            return error.failure
        if isinstance(error, StepFailure):
            return cls(
                exception_type=type(error).__name__,
                message=str(error),
                step=error.step_name,
                exit_code=error.exit_code,
            )
        if isinstance(error, TimeoutExceeded):
            return cls(
                exception_type=type(error).__name__,
                message=str(error),
                step=error.step,
                timed_out=True,
            )
        return cls(exception_type=type(error).__name__, message=str(error))

    def to_error(self) -> ExecutionError:
        """Serialize to the ExecutionError payload used in events."""
        payload: ExecutionError = {"exception": self.message, "type": self.exception_type}
        if self.step is not None:
            payload["step"] = self.step
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        return payload


@dataclass(frozen=True, slots=True)
class StageRecord:
    """Final record of one stage. Immutable once created."""

    name: str
    outcome: StageOutcome
    policy: PolicyKind
    steps: tuple[StepResult, ...] = ()
    failure: FailureInfo | None = None
    duration_seconds: float = 0.0
    attempts: int = 0
    credentials: tuple[str, ...] = ()

    @classmethod
    def skipped(cls, name: str, policy: PolicyKind) -> StageRecord:
        """Record for a stage the sequencer never reached."""
        return cls(name=name, outcome=StageOutcome.SKIPPED, policy=policy)


@dataclass(frozen=True, slots=True)
class PostActionFailure:
    """A post-action handler failure. Diagnostic only - never alters the result."""

    condition: str
    failure: FailureInfo


@dataclass
class RunState:
    """Mutable state of a run while the sequencer drives it.

    Only the single active sequencer mutates env and records.
    """

    run_id: str
    pipeline_name: str
    env: dict[str, str]
    started_at: datetime
    records: list[StageRecord] = field(default_factory=list)
    aborted_by: FailureInfo | None = None

    @property
    def aborted(self) -> bool:
        return self.aborted_by is not None


@dataclass(frozen=True)
class RunResult:
    """Result of a pipeline run."""

    run_id: str
    pipeline_name: str
    result: BuildResult
    status: RunStatus
    stages: tuple[StageRecord, ...]
    started_at: datetime
    finished_at: datetime
    env: dict[str, str] = field(default_factory=dict)
    aborted_by: FailureInfo | None = None
    config_hash: str | None = None
    post_action_failures: tuple[PostActionFailure, ...] = ()

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def degraded_stages(self) -> tuple[StageRecord, ...]:
        """Stages that degraded the run, each carrying its failure detail."""
        return tuple(record for record in self.stages if record.outcome == StageOutcome.DEGRADED)

    @property
    def tolerated_failures(self) -> tuple[StageRecord, ...]:
        """Failures a tolerant policy absorbed, whether downgraded to DEGRADED or FAILED.

        The failure that aborted the run is reported by aborted_by instead.
        """
        return tuple(
            record
            for record in self.stages
            if record.policy == PolicyKind.TOLERANT
            and record.failure is not None
            and record.outcome in (StageOutcome.DEGRADED, StageOutcome.FAILED)
            and record.failure != self.aborted_by
        )

    def stage(self, name: str) -> StageRecord:
        """Look up a stage record by name."""
        for record in self.stages:
            if record.name == name:
                return record
        raise KeyError(f"No stage named '{name}' in run {self.run_id}")

    def outcome_counts(self) -> dict[str, int]:
        """Number of stages per outcome, in a stable order."""
        counts: dict[str, int] = {outcome.value: 0 for outcome in StageOutcome}
        for record in self.stages:
            counts[record.outcome.value] += 1
        return counts

    def with_post_action_failures(self, failures: list[PostActionFailure]) -> RunResult:
        """Copy with post-action diagnostics attached. The result is unchanged."""
        return RunResult(
            run_id=self.run_id,
            pipeline_name=self.pipeline_name,
            result=self.result,
            status=self.status,
            stages=self.stages,
            started_at=self.started_at,
            finished_at=self.finished_at,
            env=self.env,
            aborted_by=self.aborted_by,
            config_hash=self.config_hash,
            post_action_failures=tuple(failures),
        )

    def summary(self) -> dict[str, Any]:
        """JSON-safe summary, including why each degraded stage degraded."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "result": self.result.value,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "stages": [
                {
                    "name": record.name,
                    "outcome": record.outcome.value,
                    "attempts": record.attempts,
                    "failure": record.failure.to_error() if record.failure else None,
                }
                for record in self.stages
            ],
            "aborted_by": self.aborted_by.to_error() if self.aborted_by else None,
            "post_action_failures": [
                {"condition": item.condition, "failure": item.failure.to_error()} for item in self.post_action_failures
            ],
        }
