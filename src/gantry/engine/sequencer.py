# src/gantry/engine/sequencer.py
"""StageSequencer: drives the stages of one run in declared order.

For each stage the sequencer, on the single driver thread:

1. emits StageStarted
2. hands a classified body to the FailureClassifier; the body
   a. checks the run deadline
   b. binds credentials (CredentialScope, released on every exit path)
   c. for each attempt (one, or the stage's retry policy), clips a stage
      deadline from the run deadline and runs the StageExecutor under the
      TimeoutGuard
3. merges env entries captured by the final attempt into the run env
4. appends the frozen StageRecord and emits StageCompleted

A failure that propagates out of the classifier (Strict failure,
infrastructure, credential, or run timeout) marks every remaining stage
skipped and ends sequencing. No further step is started after that.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

import structlog

from gantry.contracts.enums import StageOutcome, TimeoutScope
from gantry.contracts.errors import PipelineError, TimeoutExceeded
from gantry.contracts.events import StageCompleted, StageStarted
from gantry.contracts.pipeline import Stage
from gantry.contracts.protocols import ExecutionContext, SecretStore
from gantry.contracts.results import FailureInfo, RunState, StageRecord
from gantry.core.events import EventBusProtocol, NullEventBus
from gantry.core.logging import get_logger
from gantry.engine.aggregator import ResultAggregator
from gantry.engine.classifier import FailureClassifier
from gantry.engine.credentials import CredentialScope
from gantry.engine.deadline import Deadline, TimeoutGuard
from gantry.engine.executors.stage import StageAttempt, StageExecutor
from gantry.engine.retry import MaxRetriesExceeded, RetryManager, is_retryable_stage_error
from gantry.engine.spans import SpanFactory

logger = get_logger(__name__)


class StageSequencer:
    """Runs stages one at a time and records exactly one outcome per stage.

    Example:
        aggregator = ResultAggregator()
        sequencer = StageSequencer(
            StageExecutor(StepExecutor()),
            secret_store,
            FailureClassifier(aggregator),
            aggregator,
        )
        state = sequencer.run(pipeline.stages, state, context, run_deadline)
    """

    def __init__(
        self,
        stage_executor: StageExecutor,
        secret_store: SecretStore,
        classifier: FailureClassifier,
        aggregator: ResultAggregator,
        *,
        guard: TimeoutGuard | None = None,
        event_bus: EventBusProtocol | None = None,
        span_factory: SpanFactory | None = None,
        default_stage_timeout: float | None = None,
        retry_sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._executor = stage_executor
        self._secrets = secret_store
        self._classifier = classifier
        self._aggregator = aggregator
        self._guard = guard or TimeoutGuard()
        self._events: EventBusProtocol = event_bus or NullEventBus()
        self._spans = span_factory or SpanFactory()
        self._default_stage_timeout = default_stage_timeout
        # Test hook: tenacity sleep override for retry backoff
        self._retry_sleep = retry_sleep

    def run(
        self,
        stages: Sequence[Stage],
        state: RunState,
        context: ExecutionContext,
        run_deadline: Deadline,
    ) -> RunState:
        """Run stages in order; return the same state, updated in place."""
        total = len(stages)
        for index, stage in enumerate(stages):
            try:
                with structlog.contextvars.bound_contextvars(stage=stage.name):
                    self._run_stage(stage, index, total, state, context, run_deadline)
            except PipelineError as error:
                state.aborted_by = FailureInfo.from_exception(error)
                remaining = stages[index + 1 :]
                logger.error(
                    "Run aborted; skipping remaining stages",
                    stage=stage.name,
                    error_type=state.aborted_by.exception_type,
                    error=state.aborted_by.message,
                    skipped=[s.name for s in remaining],
                )
                self._skip(remaining, state)
                break
        return state

    def _run_stage(
        self,
        stage: Stage,
        index: int,
        total: int,
        state: RunState,
        context: ExecutionContext,
        run_deadline: Deadline,
    ) -> None:
        self._events.emit(
            StageStarted(run_id=state.run_id, stage=stage.name, index=index, total=total, policy=stage.policy.kind)
        )
        logger.info("Stage started", index=index + 1, total=total, policy=stage.policy.kind.value)

        attempts: list[StageAttempt] = []
        bound: list[str] = []
        start = time.perf_counter()

        def attempt_once(scope: CredentialScope) -> StageAttempt:
            attempt = StageAttempt(number=len(attempts) + 1)
            attempts.append(attempt)
            timeout = stage.timeout_seconds if stage.timeout_seconds is not None else self._default_stage_timeout
            stage_deadline = run_deadline.clip(timeout, TimeoutScope.STAGE)
            with self._spans.stage_span(
                stage.name,
                policy=stage.policy.kind.value,
                attempt=attempt.number if stage.retry is not None else None,
            ):
                try:
                    return self._guard.run(
                        stage_deadline,
                        lambda token: self._executor.execute(
                            stage,
                            attempt,
                            run_env=state.env,
                            credential_env=scope.env,
                            masker=scope.masker,
                            context=context,
                            deadline=stage_deadline,
                            cancel=token,
                        ),
                        label=stage.name,
                    )
                except TimeoutExceeded as exc:
                    if exc.step is None:
                        exc.step = attempt.current_step
                    raise

        def body() -> StageAttempt:
            run_deadline.check(stage.name)
            with CredentialScope(self._secrets, stage.credentials, stage_name=stage.name) as scope:
                bound.extend(ref.name for ref in scope.refs)
                retry = stage.retry
                if retry is None or retry.max_attempts == 1:
                    return attempt_once(scope)

                manager = RetryManager(retry, sleep=self._retry_sleep, deadline=run_deadline)
                try:
                    return manager.execute_with_retry(
                        lambda: attempt_once(scope),
                        is_retryable=is_retryable_stage_error,
                        on_retry=lambda number, error: logger.warning(
                            "Retrying stage", attempt=number, max_attempts=retry.max_attempts, error=str(error)
                        ),
                    )
                except MaxRetriesExceeded as exc:
                    # Classify the last real failure, not the retry wrapper
                    raise exc.last_error from exc

        try:
            classification = self._classifier.classify(stage.name, stage.policy, body)
        except PipelineError as error:
            self._append_record(
                state,
                stage,
                StageOutcome.FAILED,
                attempts,
                tuple(bound),
                FailureInfo.from_exception(error),
                time.perf_counter() - start,
            )
            raise

        if attempts:
            state.env.update(attempts[-1].captured)
        self._append_record(
            state,
            stage,
            classification.outcome,
            attempts,
            tuple(bound),
            classification.failure,
            time.perf_counter() - start,
        )

    def _append_record(
        self,
        state: RunState,
        stage: Stage,
        outcome: StageOutcome,
        attempts: list[StageAttempt],
        credentials: tuple[str, ...],
        failure: FailureInfo | None,
        duration: float,
    ) -> None:
        record = StageRecord(
            name=stage.name,
            outcome=outcome,
            policy=stage.policy.kind,
            steps=tuple(attempts[-1].steps) if attempts else (),
            failure=failure,
            duration_seconds=duration,
            attempts=len(attempts),
            credentials=credentials,
        )
        state.records.append(record)
        logger.info(
            "Stage completed",
            outcome=outcome.value,
            attempts=record.attempts,
            duration_seconds=round(duration, 3),
            result_so_far=self._aggregator.current.value,
        )
        self._events.emit(
            StageCompleted(
                run_id=state.run_id,
                stage=stage.name,
                outcome=outcome,
                duration_seconds=duration,
                result_so_far=self._aggregator.current,
                reason=failure.message if failure else None,
            )
        )

    def _skip(self, stages: Sequence[Stage], state: RunState) -> None:
        for stage in stages:
            self._aggregator.record(stage.name, StageOutcome.SKIPPED)
            state.records.append(StageRecord.skipped(stage.name, stage.policy.kind))
            self._events.emit(
                StageCompleted(
                    run_id=state.run_id,
                    stage=stage.name,
                    outcome=StageOutcome.SKIPPED,
                    duration_seconds=0.0,
                    result_so_far=self._aggregator.current,
                    reason="skipped after run abort",
                )
            )
