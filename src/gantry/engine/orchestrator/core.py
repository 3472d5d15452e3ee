# src/gantry/engine/orchestrator/core.py
"""PipelineRunner: full run lifecycle.

Coordinates:
- Agent provisioning (exactly once)
- Stage sequencing
- Result finalization
- Post-action dispatch
- Agent teardown (exactly once, whatever happened before)

Ordering guarantee: post actions always run after the result is final and
before the agent is torn down, so handlers can still reach the workspace
(e.g. to archive artifacts) but can no longer change the result.

An unexpected error escaping the sequencer (an engine bug) still folds into
a FAILED, aborted result; post actions fire and the agent is torn down
before the error is re-raised.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gantry.contracts.enums import RESULT_EXIT_CODES, RunStatus, StageOutcome, TimeoutScope
from gantry.contracts.errors import InfrastructureError
from gantry.contracts.events import (
    PhaseAction,
    PhaseCompleted,
    PhaseError,
    PhaseStarted,
    PipelinePhase,
    RunSummary,
)
from gantry.contracts.pipeline import Pipeline
from gantry.contracts.protocols import AgentProvisioner, ExecutionContext, SecretStore, StepRunner
from gantry.contracts.results import FailureInfo, RunResult, RunState, StageRecord
from gantry.core.events import EventBusProtocol, NullEventBus
from gantry.core.logging import get_logger
from gantry.engine.aggregator import ResultAggregator
from gantry.engine.classifier import FailureClassifier
from gantry.engine.deadline import Deadline, TimeoutGuard
from gantry.engine.executors import StageExecutor, StepExecutor
from gantry.engine.post_actions import PostActionDispatcher, PostActions, PostContext
from gantry.engine.sequencer import StageSequencer
from gantry.engine.spans import SpanFactory

if TYPE_CHECKING:
    from gantry.engine.clock import Clock

logger = get_logger(__name__)

# Run-scoped env entries the runner always sets
RUN_ID_VAR = "GANTRY_RUN_ID"
PIPELINE_VAR = "GANTRY_PIPELINE"
WORKSPACE_VAR = "GANTRY_WORKSPACE"


class PipelineRunner:
    """Runs pipelines end to end.

    Manages the complete lifecycle:
    1. Provision one execution context
    2. Sequence the stages (skipped entirely if provisioning failed)
    3. Freeze the build result
    4. Dispatch post actions (always, then the exact-match slot)
    5. Tear down the context

    Example:
        runner = PipelineRunner(LocalAgentProvisioner(), EnvSecretStore(prefix="GANTRY_SECRET_"))
        result = runner.run(pipeline, PostActions(always=notify))
        sys.exit(RESULT_EXIT_CODES[result.result])
    """

    def __init__(
        self,
        provisioner: AgentProvisioner,
        secret_store: SecretStore,
        *,
        step_runner: StepRunner | None = None,
        event_bus: EventBusProtocol | None = None,
        span_factory: SpanFactory | None = None,
        clock: Clock | None = None,
        guard: TimeoutGuard | None = None,
        retry_sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._secrets = secret_store
        self._step_runner: StepRunner = step_runner or StepExecutor()
        self._events: EventBusProtocol = event_bus or NullEventBus()
        self._spans = span_factory or SpanFactory()
        self._clock = clock
        self._guard = guard or TimeoutGuard()
        self._retry_sleep = retry_sleep

    def run(
        self,
        pipeline: Pipeline,
        post_actions: PostActions | None = None,
        *,
        config_hash: str | None = None,
    ) -> RunResult:
        """Execute a pipeline run.

        Never raises for stage, infrastructure or post-action failures: those
        are reflected in the returned RunResult. Only engine bugs
        (OrchestrationInvariantError) propagate, after teardown.
        """
        run_id = uuid.uuid4().hex
        post_actions = post_actions or PostActions()
        started_at = datetime.now(UTC)
        run_start = time.perf_counter()

        if self._clock is not None:
            run_deadline = Deadline.after(pipeline.timeout_seconds, TimeoutScope.RUN, clock=self._clock)
        else:
            run_deadline = Deadline.after(pipeline.timeout_seconds, TimeoutScope.RUN)

        aggregator = ResultAggregator()
        state = RunState(run_id=run_id, pipeline_name=pipeline.name, env={}, started_at=started_at)

        with (
            structlog.contextvars.bound_contextvars(run_id=run_id, pipeline=pipeline.name),
            self._spans.run_span(run_id, pipeline.name) as span,
        ):
            logger.info("Run started", stages=len(pipeline.stages), timeout_seconds=pipeline.timeout_seconds)
            unexpected: Exception | None = None
            context = self._provision(pipeline, aggregator, state)
            try:
                try:
                    if context is not None:
                        state.env = self._build_env(pipeline, context, run_id)
                        self._sequence(pipeline, state, context, run_deadline, aggregator)
                except Exception as exc:
                    unexpected = exc
                    self._abort_unexpected(exc, aggregator, state)
                self._skip_unrecorded(pipeline, aggregator, state)

                final_result = aggregator.finalize()
                run_result = RunResult(
                    run_id=run_id,
                    pipeline_name=pipeline.name,
                    result=final_result,
                    status=RunStatus.ABORTED if state.aborted else RunStatus.COMPLETED,
                    stages=tuple(state.records),
                    started_at=started_at,
                    finished_at=datetime.now(UTC),
                    env=dict(state.env),
                    aborted_by=state.aborted_by,
                    config_hash=config_hash,
                )
                span.set_attribute("run.result", final_result.value)

                run_result = self._dispatch_post_actions(run_result, post_actions, context)
            finally:
                if context is not None:
                    self._teardown(context)

            self._emit_summary(run_result, time.perf_counter() - run_start)
            logger.info(
                "Run finished",
                result=run_result.result.value,
                status=run_result.status.value,
                duration_seconds=round(run_result.duration_seconds, 3),
            )
            if unexpected is not None:
                raise unexpected
            return run_result

    # -- phases ------------------------------------------------------------

    def _provision(self, pipeline: Pipeline, aggregator: ResultAggregator, state: RunState) -> ExecutionContext | None:
        phase_start = time.perf_counter()
        target = pipeline.agent.label
        self._events.emit(PhaseStarted(phase=PipelinePhase.PROVISION, action=PhaseAction.PROVISIONING, target=target))
        try:
            context = self._provisioner.provision(pipeline.agent)
        except Exception as exc:
            error = exc if isinstance(exc, InfrastructureError) else InfrastructureError(f"Provisioning failed: {exc}")
            if error is not exc:
                error.__cause__ = exc
            self._events.emit(PhaseError(phase=PipelinePhase.PROVISION, error=error, target=target))
            logger.error("Provisioning failed; no stage will run", agent=target, error=str(error))
            aggregator.record_abort()
            state.aborted_by = FailureInfo.from_exception(error)
            return None

        self._events.emit(
            PhaseCompleted(phase=PipelinePhase.PROVISION, duration_seconds=time.perf_counter() - phase_start)
        )
        logger.info("Agent provisioned", agent=context.agent_id, workdir=str(context.workdir))
        return context

    def _sequence(
        self,
        pipeline: Pipeline,
        state: RunState,
        context: ExecutionContext,
        run_deadline: Deadline,
        aggregator: ResultAggregator,
    ) -> None:
        phase_start = time.perf_counter()
        self._events.emit(PhaseStarted(phase=PipelinePhase.STAGES, action=PhaseAction.EXECUTING, target=pipeline.name))
        sequencer = StageSequencer(
            StageExecutor(self._step_runner, self._spans),
            self._secrets,
            FailureClassifier(aggregator),
            aggregator,
            guard=self._guard,
            event_bus=self._events,
            span_factory=self._spans,
            default_stage_timeout=pipeline.stage_timeout_seconds,
            retry_sleep=self._retry_sleep,
        )
        sequencer.run(pipeline.stages, state, context, run_deadline)
        self._events.emit(PhaseCompleted(phase=PipelinePhase.STAGES, duration_seconds=time.perf_counter() - phase_start))

    def _dispatch_post_actions(
        self,
        run_result: RunResult,
        post_actions: PostActions,
        context: ExecutionContext | None,
    ) -> RunResult:
        phase_start = time.perf_counter()
        self._events.emit(
            PhaseStarted(phase=PipelinePhase.POST_ACTIONS, action=PhaseAction.DISPATCHING, target=run_result.result.value)
        )
        dispatcher = PostActionDispatcher(self._spans)
        failures = dispatcher.dispatch(
            run_result.result,
            post_actions,
            PostContext(run=run_result, context=context, env=dict(run_result.env)),
        )
        self._events.emit(
            PhaseCompleted(phase=PipelinePhase.POST_ACTIONS, duration_seconds=time.perf_counter() - phase_start)
        )
        if not failures:
            return run_result
        return run_result.with_post_action_failures(failures)

    def _teardown(self, context: ExecutionContext) -> None:
        """Tear down the agent. Errors are logged, never raised over the run outcome."""
        phase_start = time.perf_counter()
        self._events.emit(PhaseStarted(phase=PipelinePhase.TEARDOWN, action=PhaseAction.CLEANING, target=context.agent_id))
        try:
            self._provisioner.teardown(context)
        except Exception as exc:
            logger.warning(
                "Agent teardown failed",
                agent=context.agent_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._events.emit(PhaseError(phase=PipelinePhase.TEARDOWN, error=exc, target=context.agent_id))
            return
        self._events.emit(PhaseCompleted(phase=PipelinePhase.TEARDOWN, duration_seconds=time.perf_counter() - phase_start))

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _abort_unexpected(exc: Exception, aggregator: ResultAggregator, state: RunState) -> None:
        """Fold an error that escaped the sequencer into a failed, aborted run."""
        logger.error(
            "Run aborted by unexpected error",
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        if not aggregator.finalized:
            aggregator.record_abort()
        if state.aborted_by is None:
            state.aborted_by = FailureInfo.from_exception(exc)

    @staticmethod
    def _skip_unrecorded(pipeline: Pipeline, aggregator: ResultAggregator, state: RunState) -> None:
        """Mark every stage that never reached an outcome as SKIPPED."""
        reported = {record.name for record in state.records}
        for stage in pipeline.stages:
            if stage.name not in aggregator.recorded:
                aggregator.record(stage.name, StageOutcome.SKIPPED)
            if stage.name not in reported:
                outcome = aggregator.recorded[stage.name]
                if outcome == StageOutcome.SKIPPED:
                    state.records.append(StageRecord.skipped(stage.name, stage.policy.kind))
                else:
                    state.records.append(StageRecord(name=stage.name, outcome=outcome, policy=stage.policy.kind))

    @staticmethod
    def _build_env(pipeline: Pipeline, context: ExecutionContext, run_id: str) -> dict[str, str]:
        """Run-scoped env: agent base env, pipeline env, then runner entries."""
        env = dict(context.base_env)
        env.update(pipeline.environment)
        env[RUN_ID_VAR] = run_id
        env[PIPELINE_VAR] = pipeline.name
        env[WORKSPACE_VAR] = str(context.workdir)
        return env

    def _emit_summary(self, run_result: RunResult, duration: float) -> None:
        counts = run_result.outcome_counts()
        self._events.emit(
            RunSummary(
                run_id=run_result.run_id,
                pipeline=run_result.pipeline_name,
                result=run_result.result,
                succeeded=counts[StageOutcome.SUCCESS.value],
                degraded=counts[StageOutcome.DEGRADED.value],
                failed=counts[StageOutcome.FAILED.value],
                skipped=counts[StageOutcome.SKIPPED.value],
                duration_seconds=duration,
                exit_code=RESULT_EXIT_CODES[run_result.result],
                tolerated_failures=tuple(
                    (record.name, record.failure.message)
                    for record in run_result.tolerated_failures
                    if record.failure is not None
                ),
                aborted_by=run_result.aborted_by.message if run_result.aborted_by else None,
                post_action_failures=tuple(
                    (item.condition, item.failure.message) for item in run_result.post_action_failures
                ),
            )
        )
