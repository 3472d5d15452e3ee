# src/gantry/engine/executors/stage.py
"""StageExecutor - runs a stage's steps in order.

One attempt of a stage body. Policy, retry and timeout enforcement live in
the sequencer; this executor only sequences steps and turns a rejected exit
code into StepFailure.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace

import structlog

from gantry.contracts.enums import TimeoutScope
from gantry.contracts.errors import StepFailure
from gantry.contracts.pipeline import Stage
from gantry.contracts.protocols import ExecutionContext, StepRunner
from gantry.contracts.results import StepResult
from gantry.engine.credentials import SecretMasker
from gantry.engine.deadline import CancellationToken, Deadline
from gantry.engine.spans import SpanFactory

slog = structlog.get_logger(__name__)


@dataclass
class StageAttempt:
    """What one attempt of a stage body produced so far.

    Filled in as steps complete, so a failed attempt still reports the steps
    that ran before the failure.

    captured holds env entries from capture_as steps; the sequencer merges
    them into the run environment after the attempt returns.

    current_step names the step in flight, so a stage timeout can report
    which step it interrupted.
    """

    number: int = 1
    steps: list[StepResult] = field(default_factory=list)
    captured: dict[str, str] = field(default_factory=dict)
    current_step: str | None = None


class StageExecutor:
    """Executes the steps of one stage.

    Example:
        executor = StageExecutor(StepExecutor(), span_factory)
        attempt = StageAttempt()
        executor.execute(stage, attempt, run_env=state.env, credential_env=scope.env,
                         masker=scope.masker, context=context, deadline=deadline, cancel=token)
    """

    def __init__(self, runner: StepRunner, span_factory: SpanFactory | None = None) -> None:
        self._runner = runner
        self._spans = span_factory or SpanFactory()

    def execute(
        self,
        stage: Stage,
        attempt: StageAttempt,
        *,
        run_env: Mapping[str, str],
        credential_env: Mapping[str, str],
        masker: SecretMasker,
        context: ExecutionContext,
        deadline: Deadline,
        cancel: CancellationToken,
    ) -> StageAttempt:
        """Run every step; stop at the first rejected exit code.

        Step env precedence (last wins): run env, stage environment, values
        captured by earlier steps of this stage, bound credentials.

        Raises:
            StepFailure: A step exited with a code it does not accept
            TimeoutExceeded: A step deadline expired
            InfrastructureError: The runner could not execute a step
        """
        for step in stage.steps:
            cancel.raise_if_cancelled(f"{stage.name}/{step.name}")

            env = {**run_env, **stage.environment, **attempt.captured, **credential_env}
            step_deadline = deadline.clip(step.timeout_seconds, TimeoutScope.STEP)
            attempt.current_step = step.name

            with self._spans.step_span(step.name) as span:
                result = self._runner.execute(
                    step.command,
                    env,
                    context,
                    name=step.name,
                    deadline=step_deadline,
                    cancel=cancel,
                )
                span.set_attribute("step.exit_code", result.exit_code)

            if masker:
                result = replace(result, stdout=masker.mask(result.stdout), stderr=masker.mask(result.stderr))
            attempt.steps.append(result)

            if not step.accepts(result.exit_code):
                slog.warning(
                    "Step rejected exit code",
                    stage=stage.name,
                    step=step.name,
                    exit_code=result.exit_code,
                    accepted=sorted(step.success_exit_codes),
                )
                raise StepFailure(step.name, result.exit_code, result.tail())

            if step.capture_as is not None:
                attempt.captured[step.capture_as] = result.stdout.strip()

        return attempt
