# tests/property/engine/test_aggregator_properties.py
"""Property-based tests for result aggregation.

Key Invariants:
- The result is the max of the recorded outcomes (order does not matter)
- The result never improves as outcomes are recorded
- SKIPPED never changes the result
- Nothing can be recorded once the result is finalized
"""

from __future__ import annotations

from functools import reduce

import pytest
from hypothesis import given
from hypothesis import strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, precondition, rule

from gantry.contracts.enums import BuildResult, StageOutcome
from gantry.contracts.errors import OrchestrationInvariantError
from gantry.engine.aggregator import ResultAggregator, combine

_SEVERITY = [BuildResult.SUCCESS, BuildResult.DEGRADED, BuildResult.FAILED]

outcomes = st.sampled_from(list(StageOutcome))
outcome_lists = st.lists(outcomes, max_size=12)


def _expected(recorded: list[StageOutcome]) -> BuildResult:
    results = [o.as_result() for o in recorded if o.as_result() is not None]
    return max(results, key=_SEVERITY.index, default=BuildResult.SUCCESS)


class TestCombineProperties:
    @given(recorded=outcome_lists)
    def test_fold_equals_max(self, recorded: list[StageOutcome]) -> None:
        assert reduce(combine, recorded, BuildResult.SUCCESS) == _expected(recorded)

    @given(recorded=outcome_lists, data=st.data())
    def test_order_insensitive(self, recorded: list[StageOutcome], data: st.DataObject) -> None:
        shuffled = data.draw(st.permutations(recorded))

        assert reduce(combine, shuffled, BuildResult.SUCCESS) == reduce(combine, recorded, BuildResult.SUCCESS)

    @given(current=st.sampled_from(_SEVERITY))
    def test_skipped_is_identity(self, current: BuildResult) -> None:
        assert combine(current, StageOutcome.SKIPPED) == current

    @given(current=st.sampled_from(_SEVERITY), outcome=outcomes)
    def test_never_improves(self, current: BuildResult, outcome: StageOutcome) -> None:
        assert _SEVERITY.index(combine(current, outcome)) >= _SEVERITY.index(current)


class AggregatorStateMachine(RuleBasedStateMachine):
    """Records stages one at a time and checks the result against a model."""

    def __init__(self) -> None:
        super().__init__()
        self.aggregator = ResultAggregator()
        self.model: list[StageOutcome] = []
        self.previous = BuildResult.SUCCESS

    @precondition(lambda self: not self.aggregator.finalized)
    @rule(outcome=outcomes)
    def record(self, outcome: StageOutcome) -> None:
        self.aggregator.record(f"stage-{len(self.model)}", outcome)
        self.model.append(outcome)

    @precondition(lambda self: not self.aggregator.finalized and self.model)
    @rule()
    def record_duplicate(self) -> None:
        with pytest.raises(OrchestrationInvariantError):
            self.aggregator.record("stage-0", StageOutcome.SUCCESS)

    @rule()
    def finalize(self) -> None:
        self.aggregator.finalize()

    @precondition(lambda self: self.aggregator.finalized)
    @rule(outcome=outcomes)
    def record_after_finalize(self, outcome: StageOutcome) -> None:
        with pytest.raises(OrchestrationInvariantError):
            self.aggregator.record("late", outcome)

    @invariant()
    def current_matches_model(self) -> None:
        assert self.aggregator.current == _expected(self.model)

    @invariant()
    def monotonic(self) -> None:
        current = self.aggregator.current
        assert _SEVERITY.index(current) >= _SEVERITY.index(self.previous)
        self.previous = current

    @invariant()
    def final_result_only_after_finalize(self) -> None:
        if self.aggregator.finalized:
            assert self.aggregator.final_result() == _expected(self.model)
        else:
            with pytest.raises(OrchestrationInvariantError):
                self.aggregator.final_result()


TestAggregatorStateMachine = AggregatorStateMachine.TestCase
