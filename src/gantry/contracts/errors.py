"""Error taxonomy and structured failure payloads.

The classifier decides what to do with each kind:

- InfrastructureError: fatal, aborts the run, bypasses stage policy
- StepFailure: local to a stage, subject to Strict/Tolerant policy
- TimeoutExceeded: like StepFailure unless scope is RUN (then fatal)
- CredentialResolutionError: always Strict - secrets never silently degrade
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NotRequired, TypedDict

from gantry.contracts.enums import TimeoutScope

if TYPE_CHECKING:
    from gantry.contracts.results import FailureInfo


class ExecutionError(TypedDict):
    """Schema for failure payloads emitted in events and run summaries."""

    exception: str  # String representation of the exception
    type: str  # Exception class name (e.g., "StepFailure")
    step: NotRequired[str]  # Failing step, when known
    exit_code: NotRequired[int]  # Exit code of the failing step, when known


class PipelineError(Exception):
    """Base class for failures the engine knows how to classify."""


class InfrastructureError(PipelineError):
    """Agent unreachable, provisioning failure, or a step that cannot be spawned.

    Distinct from a command's own non-zero exit.
    """


class StepFailure(PipelineError):
    """A step exited with a code outside its success_exit_codes."""

    def __init__(self, step_name: str, exit_code: int, stderr_tail: str = "") -> None:
        self.step_name = step_name
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"Step '{step_name}' exited with code {exit_code}"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message)


class TimeoutExceeded(PipelineError):
    """Raised by the timeout guard when a deadline elapses.

    Attributes:
        scope: Which deadline bound the operation (step, stage, or run)
        limit_seconds: The configured limit of that deadline
        label: What was running (stage or step name)
        step: The step that was running when the deadline elapsed, when known.
            A stage timeout fires while one of its steps is in flight; that
            step, not the stage, is what a failure report should name.
        detached: True if the operation did not stop after cancellation.
            The guard reports the timeout but cannot guarantee the work halted.
    """

    def __init__(
        self,
        scope: TimeoutScope,
        limit_seconds: float | None,
        label: str,
        *,
        detached: bool = False,
        step: str | None = None,
    ) -> None:
        self.scope = scope
        self.limit_seconds = limit_seconds
        self.label = label
        self.detached = detached
        self.step = step
        limit = f"{limit_seconds:g}s" if limit_seconds is not None else "deadline"
        super().__init__(f"{scope.value} timeout ({limit}) exceeded while running '{label}'")


class CredentialResolutionError(PipelineError):
    """The secret store could not resolve a credential binding."""

    def __init__(self, credential_id: str, reason: str) -> None:
        self.credential_id = credential_id
        self.reason = reason
        super().__init__(f"Cannot resolve credential '{credential_id}': {reason}")


class StageFailed(PipelineError):
    """A stage failure that propagates and aborts the remaining stages.

    Carries the structured FailureInfo so the sequencer can record the abort
    cause without re-inspecting the original exception.
    """

    def __init__(self, stage_name: str, failure: FailureInfo) -> None:
        self.stage_name = stage_name
        self.failure = failure
        super().__init__(f"Stage '{stage_name}' failed: {failure.message}")


class PostActionError(Exception):
    """One or more actions inside a post-action handler failed.

    Raised after every action in the handler has been attempted.
    """

    def __init__(self, condition: str, errors: list[str]) -> None:
        self.condition = condition
        self.errors = errors
        super().__init__(f"Post-action '{condition}' failed: {'; '.join(errors)}")


class OrchestrationInvariantError(Exception):
    """An engine invariant was violated. This is a bug, never a stage outcome."""
