# src/gantry/engine/classifier.py
"""FailureClassifier: applies a stage's failure policy to its body.

Decision table:

| Raised by the body                          | Strict            | Tolerant                 |
|---------------------------------------------|-------------------|--------------------------|
| nothing                                     | success           | success                  |
| StepFailure, stage/step TimeoutExceeded,    | failed, raise     | downgrade_to, continue   |
|   any other Exception                       |   StageFailed     |                          |
| InfrastructureError                         | failed, re-raise  | failed, re-raise         |
| CredentialResolutionError                   | failed, re-raise  | failed, re-raise         |
| run-scoped TimeoutExceeded                  | failed, re-raise  | failed, re-raise         |
| OrchestrationInvariantError                 | not recorded, re-raised (engine bug) |

Every classified stage is recorded into the aggregator exactly once.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from gantry.contracts.enums import StageOutcome, TimeoutScope
from gantry.contracts.errors import (
    CredentialResolutionError,
    InfrastructureError,
    OrchestrationInvariantError,
    StageFailed,
    TimeoutExceeded,
)
from gantry.contracts.pipeline import FailurePolicy
from gantry.contracts.results import FailureInfo
from gantry.core.logging import get_logger
from gantry.engine.aggregator import ResultAggregator

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Classification(Generic[T]):
    """What the classifier decided for a stage that did not propagate.

    value is the body's return value on success, None when a Tolerant
    policy absorbed the failure.
    """

    outcome: StageOutcome
    failure: FailureInfo | None = None
    value: T | None = None


def is_fatal(error: BaseException) -> bool:
    """Failures that bypass stage policy and abort the run."""
    if isinstance(error, InfrastructureError | CredentialResolutionError):
        return True
    return isinstance(error, TimeoutExceeded) and error.scope == TimeoutScope.RUN


class FailureClassifier:
    """Runs a stage body and maps its result onto a StageOutcome."""

    def __init__(self, aggregator: ResultAggregator) -> None:
        self._aggregator = aggregator

    def classify(
        self,
        stage_name: str,
        policy: FailurePolicy,
        operation: Callable[[], T],
    ) -> Classification[T]:
        """Run operation under policy and record the outcome.

        Returns:
            Classification for a successful or Tolerant-absorbed stage

        Raises:
            StageFailed: Strict stage failed (recorded as failed)
            InfrastructureError, CredentialResolutionError, TimeoutExceeded:
                fatal failures, recorded as failed and re-raised unchanged
            OrchestrationInvariantError: engine bug, never recorded
        """
        try:
            value = operation()
        except OrchestrationInvariantError:
            raise
        except Exception as error:
            failure = FailureInfo.from_exception(error)

            if is_fatal(error):
                self._aggregator.record(stage_name, StageOutcome.FAILED)
                logger.error(
                    "Stage aborted run",
                    stage=stage_name,
                    error_type=failure.exception_type,
                    error=failure.message,
                )
                raise

            if policy.is_strict:
                self._aggregator.record(stage_name, StageOutcome.FAILED)
                logger.error(
                    "Strict stage failed",
                    stage=stage_name,
                    error_type=failure.exception_type,
                    error=failure.message,
                )
                raise StageFailed(stage_name, failure) from error

            outcome = policy.downgrade_to
            self._aggregator.record(stage_name, outcome)
            logger.warning(
                "Tolerant stage failure absorbed",
                stage=stage_name,
                outcome=outcome.value,
                error_type=failure.exception_type,
                error=failure.message,
            )
            return Classification(outcome=outcome, failure=failure)

        self._aggregator.record(stage_name, StageOutcome.SUCCESS)
        return Classification(outcome=StageOutcome.SUCCESS, value=value)
