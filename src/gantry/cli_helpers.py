"""CLI helper functions: turn validated settings into engine objects."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from gantry.contracts.enums import StageOutcome, TimeoutScope
from gantry.contracts.errors import PostActionError
from gantry.contracts.pipeline import CredentialBinding, FailurePolicy, Pipeline, Stage, Step
from gantry.contracts.protocols import (
    AgentSpec,
    ArchiveOptions,
    ArtifactSink,
    ReportOptions,
    ReportPublisher,
    SecretStore,
    StepRunner,
)
from gantry.core.logging import get_logger
from gantry.core.security import CachedSecretStore, EnvSecretStore
from gantry.engine.deadline import Deadline
from gantry.engine.executors.step import describe_command
from gantry.engine.post_actions import PostActions, PostContext, PostHandler
from gantry.engine.retry import RetryConfig

if TYPE_CHECKING:
    from gantry.core.config import (
        ArchiveAction,
        EchoAction,
        GantrySettings,
        PublishReportAction,
        ShellAction,
        StageSettings,
    )

logger = get_logger(__name__)


def build_stage(config: StageSettings) -> Stage:
    """Build an engine Stage from its settings."""
    steps = tuple(
        Step(
            name=step.name or describe_command(step.run),
            command=step.run if isinstance(step.run, str) else tuple(step.run),
            success_exit_codes=frozenset(step.success_exit_codes),
            capture_as=step.capture_as,
            timeout_seconds=step.timeout_seconds,
        )
        for step in config.steps
    )
    if config.policy == "tolerant":
        policy = FailurePolicy.tolerant(StageOutcome(config.downgrade_to))
    else:
        policy = FailurePolicy.strict()
    return Stage(
        name=config.name,
        steps=steps,
        policy=policy,
        timeout_seconds=config.timeout_seconds,
        credentials=tuple(CredentialBinding(binding.id, binding.variable) for binding in config.credentials),
        environment=dict(config.environment),
        retry=RetryConfig.from_settings(config.retry) if config.retry is not None else None,
    )


def build_pipeline(config: GantrySettings) -> Pipeline:
    """Build the engine Pipeline from validated settings.

    Raises:
        ValueError: If the settings describe an invalid pipeline
    """
    return Pipeline(
        name=config.pipeline.name,
        stages=tuple(build_stage(stage) for stage in config.stages),
        environment=dict(config.pipeline.environment),
        timeout_seconds=config.pipeline.timeout_seconds,
        stage_timeout_seconds=config.pipeline.stage_timeout_seconds,
        agent=AgentSpec(
            label=config.agent.label,
            workdir=config.agent.workdir,
            inherit_env=config.agent.inherit_env,
            clean_workspace=config.agent.clean_workspace,
            env=dict(config.agent.environment),
        ),
    )


def build_secret_store(config: GantrySettings) -> SecretStore:
    """Env-backed secret store, cached for the run when configured."""
    store: SecretStore = EnvSecretStore(prefix=config.secrets.env_prefix)
    if config.secrets.cache:
        store = CachedSecretStore(store)
    return store


class _Placeholders(dict[str, Any]):
    """format_map source that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _require_agent(post_context: PostContext, action_type: str) -> Any:
    if post_context.context is None:
        raise RuntimeError(f"'{action_type}' needs an agent, but provisioning failed")
    return post_context.context


def _run_echo(action: EchoAction, post_context: PostContext) -> None:
    run = post_context.run
    message = action.message.format_map(
        _Placeholders(
            pipeline=run.pipeline_name,
            result=run.result.value,
            run_id=run.run_id,
            status=run.status.value,
        )
    )
    logger.info("Post action message", message=message)


class PostActionBuilder:
    """Builds composed post-action handlers from settings.

    Each slot's actions run in order. A failing action does not stop the
    ones after it; once all have run, the handler raises PostActionError
    listing every failure.
    """

    def __init__(
        self,
        step_runner: StepRunner,
        artifact_sink: ArtifactSink,
        report_publisher: ReportPublisher,
    ) -> None:
        self._step_runner = step_runner
        self._artifacts = artifact_sink
        self._reports = report_publisher

    def build(self, config: GantrySettings) -> PostActions:
        post = config.post
        always = self._compose("always", post.always)
        return PostActions(
            always=always if always is not None else PostActions().always,
            success=self._compose("success", post.success),
            unstable=self._compose("unstable", post.unstable),
            failure=self._compose("failure", post.failure),
        )

    def _compose(self, condition: str, actions: Sequence[Any]) -> PostHandler | None:
        if not actions:
            return None

        def handler(post_context: PostContext) -> None:
            errors: list[str] = []
            for action in actions:
                try:
                    self._run_action(action, post_context)
                except Exception as exc:
                    logger.warning(
                        "Post action step failed",
                        condition=condition,
                        action=action.type,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    errors.append(f"{action.type}: {exc}")
            if errors:
                raise PostActionError(condition, errors)

        return handler

    def _run_action(self, action: Any, post_context: PostContext) -> None:
        if action.type == "echo":
            _run_echo(action, post_context)
        elif action.type == "shell":
            self._run_shell(action, post_context)
        elif action.type == "archive":
            self._run_archive(action, post_context)
        elif action.type == "publish_report":
            self._run_publish(action, post_context)
        else:
            raise ValueError(f"Unknown post action type: {action.type}")

    def _run_shell(self, action: ShellAction, post_context: PostContext) -> None:
        context = _require_agent(post_context, action.type)
        command = action.run if isinstance(action.run, str) else list(action.run)
        result = self._step_runner.execute(
            command,
            post_context.env,
            context,
            name=f"post:{describe_command(command)}",
            deadline=Deadline.after(action.timeout_seconds, TimeoutScope.STEP),
        )
        if result.exit_code != 0:
            raise RuntimeError(f"command exited with code {result.exit_code}: {result.tail()}")

    def _run_archive(self, action: ArchiveAction, post_context: PostContext) -> None:
        context = _require_agent(post_context, action.type)
        self._artifacts.archive(
            context.workdir,
            action.pattern,
            ArchiveOptions(allow_empty=action.allow_empty, fingerprint=action.fingerprint),
        )

    def _run_publish(self, action: PublishReportAction, post_context: PostContext) -> None:
        context = _require_agent(post_context, action.type)
        self._reports.publish(
            context.workdir / action.report_dir,
            action.index_file,
            ReportOptions(name=action.name, allow_missing=action.allow_missing, keep_all=action.keep_all),
        )
