"""Tests for ResultAggregator and combine()."""

import pytest

from gantry.contracts.enums import BuildResult, StageOutcome
from gantry.contracts.errors import OrchestrationInvariantError
from gantry.engine.aggregator import ResultAggregator, combine


class TestCombine:
    @pytest.mark.parametrize(
        ("current", "outcome", "expected"),
        [
            (BuildResult.SUCCESS, StageOutcome.SUCCESS, BuildResult.SUCCESS),
            (BuildResult.SUCCESS, StageOutcome.DEGRADED, BuildResult.DEGRADED),
            (BuildResult.DEGRADED, StageOutcome.SUCCESS, BuildResult.DEGRADED),
            (BuildResult.DEGRADED, StageOutcome.FAILED, BuildResult.FAILED),
            (BuildResult.FAILED, StageOutcome.DEGRADED, BuildResult.FAILED),
            (BuildResult.FAILED, StageOutcome.SUCCESS, BuildResult.FAILED),
        ],
    )
    def test_takes_the_more_severe(self, current: BuildResult, outcome: StageOutcome, expected: BuildResult) -> None:
        assert combine(current, outcome) == expected

    @pytest.mark.parametrize("current", list(BuildResult))
    def test_skipped_is_identity(self, current: BuildResult) -> None:
        assert combine(current, StageOutcome.SKIPPED) == current

    def test_accepts_build_result(self) -> None:
        assert combine(BuildResult.SUCCESS, BuildResult.FAILED) == BuildResult.FAILED


class TestResultAggregator:
    def test_starts_at_success(self) -> None:
        assert ResultAggregator().current == BuildResult.SUCCESS

    def test_tolerant_tolerant_strict_sequence(self) -> None:
        """degraded, then a failed-downgrade, then a success: result stays failed."""
        aggregator = ResultAggregator()

        assert aggregator.record("lint", StageOutcome.DEGRADED) == BuildResult.DEGRADED
        assert aggregator.record("scan", StageOutcome.FAILED) == BuildResult.FAILED
        assert aggregator.record("package", StageOutcome.SUCCESS) == BuildResult.FAILED

        aggregator.finalize()
        assert aggregator.final_result() == BuildResult.FAILED

    def test_recording_a_stage_twice_is_a_bug(self) -> None:
        aggregator = ResultAggregator()
        aggregator.record("build", StageOutcome.SUCCESS)

        with pytest.raises(OrchestrationInvariantError, match="recorded twice"):
            aggregator.record("build", StageOutcome.FAILED)

        assert aggregator.current == BuildResult.SUCCESS

    def test_no_recording_after_finalize(self) -> None:
        aggregator = ResultAggregator()
        aggregator.finalize()

        with pytest.raises(OrchestrationInvariantError, match="finalized"):
            aggregator.record("late", StageOutcome.FAILED)
        with pytest.raises(OrchestrationInvariantError):
            aggregator.record_abort()

        assert aggregator.final_result() == BuildResult.SUCCESS

    def test_final_result_before_finalize_raises(self) -> None:
        aggregator = ResultAggregator()

        with pytest.raises(OrchestrationInvariantError):
            aggregator.final_result()

    def test_finalize_is_idempotent(self) -> None:
        aggregator = ResultAggregator()
        aggregator.record("build", StageOutcome.DEGRADED)

        assert aggregator.finalize() == BuildResult.DEGRADED
        assert aggregator.finalize() == BuildResult.DEGRADED
        assert aggregator.finalized

    def test_record_abort_fails_the_run(self) -> None:
        aggregator = ResultAggregator()

        assert aggregator.record_abort() == BuildResult.FAILED

    def test_recorded_is_a_copy_in_order(self) -> None:
        aggregator = ResultAggregator()
        aggregator.record("a", StageOutcome.SUCCESS)
        aggregator.record("b", StageOutcome.SKIPPED)

        recorded = aggregator.recorded
        recorded["c"] = StageOutcome.FAILED

        assert list(aggregator.recorded) == ["a", "b"]
        assert aggregator.current == BuildResult.SUCCESS
