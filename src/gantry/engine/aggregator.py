# src/gantry/engine/aggregator.py
"""Result aggregation.

The run result is the max of every recorded stage outcome under the
severity order success < degraded < failed. It starts at SUCCESS, only
ever gets worse, and is frozen once the stage sequence has ended.
"""

from __future__ import annotations

from gantry.contracts.enums import BuildResult, StageOutcome
from gantry.contracts.errors import OrchestrationInvariantError
from gantry.core.logging import get_logger

logger = get_logger(__name__)


def combine(current: BuildResult, outcome: StageOutcome | BuildResult) -> BuildResult:
    """Fold one outcome into a result. Pure.

    SKIPPED contributes nothing: combine(r, SKIPPED) == r.
    """
    if isinstance(outcome, StageOutcome):
        mapped = outcome.as_result()
        if mapped is None:
            return current
        return current.worst(mapped)
    return current.worst(outcome)


class ResultAggregator:
    """Accumulates stage outcomes into the run result.

    Owned by a single driver (the sequencer thread); not thread-safe.

    Example:
        aggregator = ResultAggregator()
        aggregator.record("build", StageOutcome.SUCCESS)
        aggregator.record("scan", StageOutcome.DEGRADED)
        aggregator.finalize()
        assert aggregator.final_result() == BuildResult.DEGRADED
    """

    def __init__(self) -> None:
        self._current = BuildResult.SUCCESS
        self._recorded: dict[str, StageOutcome] = {}
        self._finalized = False

    @property
    def current(self) -> BuildResult:
        """Result so far (may still get worse until finalized)."""
        return self._current

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def recorded(self) -> dict[str, StageOutcome]:
        """Copy of the outcomes recorded so far, in recording order."""
        return dict(self._recorded)

    def record(self, stage_name: str, outcome: StageOutcome) -> BuildResult:
        """Record a stage outcome exactly once.

        Raises:
            OrchestrationInvariantError: If the stage was already recorded or
                the result has been finalized.
        """
        if self._finalized:
            raise OrchestrationInvariantError(f"Cannot record stage '{stage_name}': result already finalized")
        if stage_name in self._recorded:
            raise OrchestrationInvariantError(
                f"Stage '{stage_name}' recorded twice (already {self._recorded[stage_name].value}, now {outcome.value})"
            )
        self._recorded[stage_name] = outcome
        self._current = combine(self._current, outcome)
        logger.debug("Stage outcome recorded", stage=stage_name, outcome=outcome.value, result=self._current.value)
        return self._current

    def record_abort(self) -> BuildResult:
        """Fold in FAILED for a failure outside any stage (e.g. provisioning)."""
        if self._finalized:
            raise OrchestrationInvariantError("Cannot record abort: result already finalized")
        self._current = combine(self._current, BuildResult.FAILED)
        return self._current

    def finalize(self) -> BuildResult:
        """Freeze the result. Idempotent."""
        self._finalized = True
        return self._current

    def final_result(self) -> BuildResult:
        """The frozen result.

        Raises:
            OrchestrationInvariantError: If called before finalize().
        """
        if not self._finalized:
            raise OrchestrationInvariantError("final_result() read before the stage sequence ended")
        return self._current
