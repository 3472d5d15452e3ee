"""Observability events for pipeline execution.

These domain events provide visibility into run phases, stage progress,
and the final result. Events are emitted by the runner and sequencer and
consumed by CLI formatters for human-readable or structured output.
"""

from dataclasses import dataclass
from enum import StrEnum

from gantry.contracts.enums import BuildResult, PolicyKind, StageOutcome


class PipelinePhase(StrEnum):
    """Run lifecycle phases for observability events."""

    PROVISION = "provision"
    STAGES = "stages"
    POST_ACTIONS = "post_actions"
    TEARDOWN = "teardown"


class PhaseAction(StrEnum):
    """Actions within a run phase."""

    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    DISPATCHING = "dispatching"
    CLEANING = "cleaning"


@dataclass(frozen=True, slots=True)
class PhaseStarted:
    """Emitted when a run phase begins.

    Attributes:
        phase: The lifecycle phase starting
        action: What's happening (e.g., "provisioning", "executing")
        target: Optional target (e.g., agent label, pipeline name)
    """

    phase: PipelinePhase
    action: PhaseAction
    target: str | None = None


@dataclass(frozen=True, slots=True)
class PhaseCompleted:
    """Emitted when a run phase completes."""

    phase: PipelinePhase
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class PhaseError:
    """Emitted when a run phase fails.

    Stores the full exception object to preserve type and chained causes.
    """

    phase: PipelinePhase
    error: BaseException
    target: str | None = None

    @property
    def error_message(self) -> str:
        """Human-readable error message for formatting."""
        return str(self.error)


@dataclass(frozen=True, slots=True)
class StageStarted:
    """Emitted when the sequencer reaches a stage."""

    run_id: str
    stage: str
    index: int
    total: int
    policy: PolicyKind


@dataclass(frozen=True, slots=True)
class StageCompleted:
    """Emitted once per stage when its outcome is recorded (skips included)."""

    run_id: str
    stage: str
    outcome: StageOutcome
    duration_seconds: float
    result_so_far: BuildResult
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Summary emitted when a run finishes, whatever its result.

    tolerated_failures lists (stage, reason) pairs for every failure a
    tolerant stage absorbed, so the summary says which stages fell short and
    why, including tolerant stages downgraded to FAILED.
    """

    run_id: str
    pipeline: str
    result: BuildResult
    succeeded: int
    degraded: int
    failed: int
    skipped: int
    duration_seconds: float
    exit_code: int  # 0=success, 1=degraded, 2=failed
    tolerated_failures: tuple[tuple[str, str], ...] = ()
    aborted_by: str | None = None
    post_action_failures: tuple[tuple[str, str], ...] = ()
