# src/gantry/engine/retry.py
"""RetryManager: stage retry with tenacity.

Retries are an explicit, per-stage caller policy - the engine never retries
on its own. Only failures local to the stage (StepFailure, stage- or
step-scoped TimeoutExceeded) are retryable; infrastructure, credential and
run-timeout errors always propagate on the first attempt.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential_jitter,
)

from gantry.contracts.enums import TimeoutScope
from gantry.contracts.errors import StepFailure, TimeoutExceeded

if TYPE_CHECKING:
    from gantry.core.config import RetrySettings
    from gantry.engine.deadline import Deadline

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when max retry attempts are exceeded."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


def _clip_to_deadline(
    wait: Callable[[RetryCallState], float], deadline: "Deadline"
) -> Callable[[RetryCallState], float]:
    """Never back off past the deadline; the next attempt then fails its deadline check."""

    def clipped(retry_state: RetryCallState) -> float:
        remaining = deadline.remaining()
        delay = wait(retry_state)
        return delay if remaining is None else min(delay, remaining)

    return clipped


def is_retryable_stage_error(error: BaseException) -> bool:
    """Whether a stage body failure may be retried.

    Detached timeouts are not retried: the previous attempt may still be
    running and a second one would race it in the same workspace.
    """
    if isinstance(error, TimeoutExceeded):
        return error.scope != TimeoutScope.RUN and not error.detached
    return isinstance(error, StepFailure)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=3 means: try, retry, retry (3 total).
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: float = 1.0  # seconds
    exponential_base: float = 2.0  # backoff multiplier

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        """Factory from RetrySettings config model.

        Args:
            settings: Validated Pydantic settings model

        Returns:
            RetryConfig with mapped values
        """
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
            exponential_base=settings.exponential_base,
        )


class RetryManager:
    """Manages retry logic for a stage body.

    Uses tenacity for exponential backoff with jitter.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=3))

        result = manager.execute_with_retry(
            operation=lambda: guard.run(deadline, body, label=stage.name),
            is_retryable=is_retryable_stage_error,
            on_retry=lambda attempt, error: logger.warning("retrying", attempt=attempt),
        )
    """

    def __init__(
        self,
        config: RetryConfig,
        *,
        sleep: Callable[[float], None] | None = None,
        deadline: "Deadline | None" = None,
    ) -> None:
        """Initialize with config.

        Args:
            config: Retry configuration
            sleep: Override for the backoff sleep (tests pass a no-op)
            deadline: Enclosing deadline. Backoff is clipped to its remaining
                time and no retry starts once it has passed.
        """
        self._config = config
        self._sleep = sleep
        self._deadline = deadline

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool],
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Operation to execute
            is_retryable: Function to check if error is retryable
            on_retry: Optional callback on retry (attempt, error)

        Returns:
            Result of operation

        Raises:
            MaxRetriesExceeded: If max attempts exceeded
            Exception: If non-retryable error occurs
        """
        attempt = 0
        last_error: BaseException | None = None

        retrying_kwargs = {}
        if self._sleep is not None:
            retrying_kwargs["sleep"] = self._sleep

        stop: Callable[[RetryCallState], bool] = stop_after_attempt(self._config.max_attempts)
        wait: Callable[[RetryCallState], float] = wait_exponential_jitter(
            initial=self._config.base_delay,
            max=self._config.max_delay,
            exp_base=self._config.exponential_base,
            jitter=self._config.jitter,
        )
        if self._deadline is not None and self._deadline.bounded:
            deadline = self._deadline
            stop = stop_any(stop, lambda retry_state: deadline.expired())
            wait = _clip_to_deadline(wait, deadline)

        try:
            for attempt_state in Retrying(
                stop=stop,
                wait=wait,
                retry=retry_if_exception(is_retryable),
                reraise=False,  # We catch RetryError and convert to MaxRetriesExceeded
                **retrying_kwargs,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return operation()
                    except Exception as e:
                        last_error = e
                        # Only call on_retry for retryable errors that will be retried
                        if is_retryable(e) and on_retry and attempt < self._config.max_attempts:
                            on_retry(attempt, e)
                        raise

        except RetryError as e:
            # last_error is always set because RetryError means at least one attempt failed
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(attempt, final_error) from e

        # Should not reach here - Retrying always returns or raises
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
