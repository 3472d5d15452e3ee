# src/gantry/engine/post_actions.py
"""PostActionDispatcher: fires handlers keyed on the final build result.

The handler set is closed: exactly one ``always`` handler and at most one
each of ``success``, ``unstable`` (degraded) and ``failure``. ``always``
runs first, then the single slot that exactly matches the final result.

Handlers run after the result is frozen. A handler failure is logged and
returned as a PostActionFailure - it can never change the build result.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from gantry.contracts.enums import RESULT_POST_CONDITION, BuildResult, PostCondition
from gantry.contracts.results import FailureInfo, PostActionFailure
from gantry.core.logging import get_logger
from gantry.engine.spans import SpanFactory

if TYPE_CHECKING:
    from gantry.contracts.protocols import ExecutionContext
    from gantry.contracts.results import RunResult

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PostContext:
    """What a post-action handler can see.

    Attributes:
        run: The finished run (result already final)
        context: The agent, still provisioned; None if provisioning failed
        env: Run environment at the end of sequencing
    """

    run: RunResult
    context: ExecutionContext | None
    env: Mapping[str, str] = field(default_factory=dict)


PostHandler = Callable[[PostContext], None]


def _noop(post_context: PostContext) -> None:
    pass


@dataclass(frozen=True, slots=True)
class PostActions:
    """The four post-action slots.

    always is required (it may be a no-op); the others are optional.
    """

    always: PostHandler = _noop
    success: PostHandler | None = None
    unstable: PostHandler | None = None
    failure: PostHandler | None = None

    def handler_for(self, condition: PostCondition) -> PostHandler | None:
        return {
            PostCondition.ALWAYS: self.always,
            PostCondition.SUCCESS: self.success,
            PostCondition.UNSTABLE: self.unstable,
            PostCondition.FAILURE: self.failure,
        }[condition]


class PostActionDispatcher:
    """Invokes post actions for a finalized result.

    Holds no reference to the aggregator: the result it receives is the
    already-final value and nothing it does is recorded back.

    Example:
        failures = PostActionDispatcher().dispatch(run.result, actions, PostContext(run, context))
    """

    def __init__(self, span_factory: SpanFactory | None = None) -> None:
        self._spans = span_factory or SpanFactory()

    def dispatch(
        self,
        final_result: BuildResult,
        handlers: PostActions,
        post_context: PostContext,
    ) -> list[PostActionFailure]:
        """Run ``always`` then the matching slot; return handler failures."""
        failures: list[PostActionFailure] = []
        for condition in (PostCondition.ALWAYS, RESULT_POST_CONDITION[final_result]):
            handler = handlers.handler_for(condition)
            if handler is None:
                continue
            failure = self._invoke(condition, handler, post_context)
            if failure is not None:
                failures.append(failure)
        return failures

    def _invoke(
        self,
        condition: PostCondition,
        handler: PostHandler,
        post_context: PostContext,
    ) -> PostActionFailure | None:
        with self._spans.post_action_span(condition.value) as span:
            try:
                handler(post_context)
            except Exception as exc:
                # Reported, never recorded: the result is already final
                logger.error(
                    "Post action failed",
                    condition=condition.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    exc_info=True,
                )
                span.set_attribute("post_action.failed", True)
                return PostActionFailure(condition=condition.value, failure=FailureInfo.from_exception(exc))
        logger.debug("Post action completed", condition=condition.value)
        return None
