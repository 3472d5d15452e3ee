"""All status codes, modes, and kinds used across subsystem boundaries.

BuildResult carries an explicit severity ordering. Aggregation is always
``combine(a, b) = max(a, b)`` under that ordering - a run can only get
worse, never better.
"""

from enum import StrEnum


class BuildResult(StrEnum):
    """Aggregate result of a pipeline run.

    Ordered: SUCCESS < DEGRADED < FAILED.
    """

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"

    @property
    def severity(self) -> int:
        """Position in the success < degraded < failed ordering."""
        return _SEVERITY[self]

    def worst(self, other: "BuildResult") -> "BuildResult":
        """Return the more severe of the two results."""
        return self if self.severity >= other.severity else other


_SEVERITY: dict[BuildResult, int] = {
    BuildResult.SUCCESS: 0,
    BuildResult.DEGRADED: 1,
    BuildResult.FAILED: 2,
}


class StageOutcome(StrEnum):
    """Recorded outcome of one stage.

    SKIPPED is only assigned to stages the sequencer never reached
    because an earlier Strict stage aborted the run.
    """

    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"
    SKIPPED = "skipped"

    def as_result(self) -> BuildResult | None:
        """Map to the aggregate ordering. SKIPPED contributes nothing."""
        if self == StageOutcome.SKIPPED:
            return None
        return BuildResult(self.value)


class PolicyKind(StrEnum):
    """Stage failure policy.

    STRICT: a failure aborts the run.
    TOLERANT: a failure is absorbed as the stage outcome and the run continues.
    """

    STRICT = "strict"
    TOLERANT = "tolerant"


class TimeoutScope(StrEnum):
    """Which deadline produced a TimeoutExceeded.

    RUN-scoped timeouts abort the whole run regardless of stage policy.
    """

    STEP = "step"
    STAGE = "stage"
    RUN = "run"


class PostCondition(StrEnum):
    """Post-action slot keyed on the final build result."""

    ALWAYS = "always"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"


class RunStatus(StrEnum):
    """Lifecycle status of a run (independent of its BuildResult)."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


# Exact-match selection of the result-specific post-action slot.
RESULT_POST_CONDITION: dict[BuildResult, PostCondition] = {
    BuildResult.SUCCESS: PostCondition.SUCCESS,
    BuildResult.DEGRADED: PostCondition.UNSTABLE,
    BuildResult.FAILED: PostCondition.FAILURE,
}

# CLI process exit codes: 0=success, 1=degraded, 2=failed
RESULT_EXIT_CODES: dict[BuildResult, int] = {
    BuildResult.SUCCESS: 0,
    BuildResult.DEGRADED: 1,
    BuildResult.FAILED: 2,
}

# Invalid configuration or invocation: the pipeline never started
USAGE_ERROR_EXIT_CODE = 3
