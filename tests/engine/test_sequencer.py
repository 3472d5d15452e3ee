"""Tests for StageSequencer: ordering, policies, skips, env and credential scoping."""

from datetime import UTC, datetime

import pytest

from gantry.contracts.enums import BuildResult, PolicyKind, StageOutcome, TimeoutScope
from gantry.contracts.errors import InfrastructureError
from gantry.contracts.events import StageCompleted, StageStarted
from gantry.contracts.pipeline import CredentialBinding, FailurePolicy, Stage, Step
from gantry.contracts.protocols import SecretStore
from gantry.contracts.results import RunState
from gantry.core.events import EventBus
from gantry.core.security import MappingSecretStore
from gantry.engine.aggregator import ResultAggregator
from gantry.engine.classifier import FailureClassifier
from gantry.engine.clock import MockClock
from gantry.engine.deadline import Deadline, TimeoutGuard
from gantry.engine.executors import StageExecutor
from gantry.engine.retry import RetryConfig
from gantry.engine.sequencer import StageSequencer
from tests.conftest import FakeContext, ScriptedStepRunner, block_until_cancelled

STRICT = FailurePolicy.strict()
TOLERANT = FailurePolicy.tolerant()


def _stage(name: str, *steps: str, policy: FailurePolicy = STRICT, **kwargs) -> Stage:
    return Stage(name, tuple(Step(step, step) for step in steps or (f"{name}-step",)), policy=policy, **kwargs)


class Harness:
    """A sequencer wired to a fresh aggregator and event recorder."""

    def __init__(
        self,
        runner: ScriptedStepRunner,
        secrets: SecretStore | None = None,
        *,
        default_stage_timeout: float | None = None,
    ) -> None:
        self.runner = runner
        self.aggregator = ResultAggregator()
        self.events: list[object] = []
        bus = EventBus()
        bus.subscribe(StageStarted, self.events.append)
        bus.subscribe(StageCompleted, self.events.append)
        self.sequencer = StageSequencer(
            StageExecutor(runner),
            secrets or MappingSecretStore({}),
            FailureClassifier(self.aggregator),
            self.aggregator,
            guard=TimeoutGuard(cancel_grace_seconds=2.0),
            event_bus=bus,
            default_stage_timeout=default_stage_timeout,
            retry_sleep=lambda seconds: None,
        )
        self.state = RunState(run_id="run-1", pipeline_name="ci", env={"BASE": "1"}, started_at=datetime.now(UTC))

    def run(self, stages: list[Stage], context: FakeContext, deadline: Deadline | None = None) -> RunState:
        return self.sequencer.run(stages, self.state, context, deadline or Deadline.unbounded())

    def outcomes(self) -> dict[str, StageOutcome]:
        return {record.name: record.outcome for record in self.state.records}


class TestOrderingAndPolicies:
    def test_all_success(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner())

        harness.run([_stage("build"), _stage("test"), _stage("package")], fake_context)

        assert harness.outcomes() == {
            "build": StageOutcome.SUCCESS,
            "test": StageOutcome.SUCCESS,
            "package": StageOutcome.SUCCESS,
        }
        assert harness.runner.names == ["build-step", "test-step", "package-step"]
        assert harness.aggregator.current == BuildResult.SUCCESS
        assert not harness.state.aborted

    def test_tolerant_tolerant_strict(self, fake_context: FakeContext) -> None:
        """Two tolerated failures degrade the run; the strict stage still runs."""
        harness = Harness(ScriptedStepRunner({"lint-step": 1, "docs-step": 2}))

        harness.run(
            [_stage("lint", policy=TOLERANT), _stage("docs", policy=TOLERANT), _stage("package")],
            fake_context,
        )

        assert harness.outcomes() == {
            "lint": StageOutcome.DEGRADED,
            "docs": StageOutcome.DEGRADED,
            "package": StageOutcome.SUCCESS,
        }
        assert harness.aggregator.current == BuildResult.DEGRADED
        lint = harness.state.records[0]
        assert lint.failure is not None
        assert lint.failure.step == "lint-step"
        assert lint.failure.exit_code == 1

    def test_strict_failure_skips_remaining_stages(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"test-step": 1}))

        harness.run([_stage("build"), _stage("test"), _stage("package"), _stage("deploy")], fake_context)

        assert harness.outcomes() == {
            "build": StageOutcome.SUCCESS,
            "test": StageOutcome.FAILED,
            "package": StageOutcome.SKIPPED,
            "deploy": StageOutcome.SKIPPED,
        }
        # No step of a skipped stage was started
        assert harness.runner.names == ["build-step", "test-step"]
        assert harness.aggregator.current == BuildResult.FAILED
        assert harness.state.aborted_by is not None
        assert harness.state.aborted_by.step == "test-step"

    def test_tolerant_downgrade_to_failed_does_not_abort(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"scan-step": 1}))

        harness.run(
            [_stage("scan", policy=FailurePolicy.tolerant(StageOutcome.FAILED)), _stage("package")],
            fake_context,
        )

        assert harness.outcomes() == {"scan": StageOutcome.FAILED, "package": StageOutcome.SUCCESS}
        assert harness.aggregator.current == BuildResult.FAILED
        assert not harness.state.aborted

    def test_infrastructure_error_aborts_even_tolerant_stage(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"flaky-step": InfrastructureError("agent disconnected")}))

        harness.run([_stage("flaky", policy=TOLERANT), _stage("after")], fake_context)

        assert harness.outcomes() == {"flaky": StageOutcome.FAILED, "after": StageOutcome.SKIPPED}
        assert harness.state.aborted_by is not None
        assert harness.state.aborted_by.exception_type == "InfrastructureError"

    def test_every_stage_recorded_exactly_once(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"b-step": 1}))
        stages = [_stage("a"), _stage("b"), _stage("c")]

        harness.run(stages, fake_context)

        assert [record.name for record in harness.state.records] == ["a", "b", "c"]
        assert list(harness.aggregator.recorded) == ["a", "b", "c"]


class TestEvents:
    def test_started_and_completed_per_stage(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"lint-step": 1, "test-step": 1}))

        harness.run([_stage("lint", policy=TOLERANT), _stage("test"), _stage("deploy")], fake_context)

        summary = [
            (type(event).__name__, event.stage, getattr(event, "outcome", None))  # type: ignore[attr-defined]
            for event in harness.events
        ]
        assert summary == [
            ("StageStarted", "lint", None),
            ("StageCompleted", "lint", StageOutcome.DEGRADED),
            ("StageStarted", "test", None),
            ("StageCompleted", "test", StageOutcome.FAILED),
            ("StageCompleted", "deploy", StageOutcome.SKIPPED),
        ]
        started = harness.events[0]
        assert isinstance(started, StageStarted)
        assert started.policy == PolicyKind.TOLERANT
        assert (started.index, started.total) == (0, 3)
        lint_done = harness.events[1]
        assert isinstance(lint_done, StageCompleted)
        assert lint_done.result_so_far == BuildResult.DEGRADED
        assert lint_done.reason is not None and "lint-step" in lint_done.reason


class TestEnvironment:
    def test_captured_values_visible_to_later_stages(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"rev": (0, "abc123\n")}))
        revision = Stage("revision", (Step("rev", "git rev-parse HEAD", capture_as="GIT_REV"),))

        harness.run([revision, _stage("build")], fake_context)

        assert harness.state.env["GIT_REV"] == "abc123"
        assert harness.runner.calls[1].env["GIT_REV"] == "abc123"
        assert harness.runner.calls[1].env["BASE"] == "1"

    def test_stage_environment_does_not_leak(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner())
        first = _stage("first", environment={"STAGE_LOCAL": "yes"})

        harness.run([first, _stage("second")], fake_context)

        assert harness.runner.calls[0].env["STAGE_LOCAL"] == "yes"
        assert "STAGE_LOCAL" not in harness.runner.calls[1].env
        assert "STAGE_LOCAL" not in harness.state.env


class TestCredentials:
    def test_credentials_only_visible_to_their_stage(self, fake_context: FakeContext) -> None:
        secrets = MappingSecretStore({"deploy-key": "k3y"})
        harness = Harness(ScriptedStepRunner(), secrets)
        deploy = _stage("deploy", credentials=(CredentialBinding("deploy-key", "DEPLOY_KEY"),))

        harness.run([_stage("build"), deploy, _stage("notify")], fake_context)

        build_env, deploy_env, notify_env = (call.env for call in harness.runner.calls)
        assert "DEPLOY_KEY" not in build_env
        assert deploy_env["DEPLOY_KEY"] == "k3y"
        assert "DEPLOY_KEY" not in notify_env
        assert "DEPLOY_KEY" not in harness.state.env
        assert harness.state.records[1].credentials == ("deploy-key",)

    def test_credential_released_after_stage_timeout(self, fake_context: FakeContext) -> None:
        secrets = MappingSecretStore({"token": "s3cr3t"})
        harness = Harness(ScriptedStepRunner({"upload": block_until_cancelled}), secrets)
        upload = Stage(
            "upload",
            (Step("upload", "upload"),),
            policy=TOLERANT,
            timeout_seconds=0.2,
            credentials=(CredentialBinding("token", "TOKEN"),),
        )

        harness.run([upload, _stage("after")], fake_context)

        record = harness.state.records[0]
        assert record.outcome == StageOutcome.DEGRADED
        assert record.failure is not None
        assert record.failure.timed_out
        assert harness.runner.calls[0].env["TOKEN"] == "s3cr3t"
        assert "TOKEN" not in harness.runner.calls[1].env

    def test_unresolvable_credential_aborts_tolerant_stage(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner(), MappingSecretStore({}))
        scan = _stage("scan", policy=TOLERANT, credentials=(CredentialBinding("missing", "TOKEN"),))

        harness.run([scan, _stage("package")], fake_context)

        assert harness.outcomes() == {"scan": StageOutcome.FAILED, "package": StageOutcome.SKIPPED}
        assert harness.runner.calls == []
        assert harness.state.aborted_by is not None
        assert harness.state.aborted_by.exception_type == "CredentialResolutionError"


class TestTimeouts:
    def test_stage_timeout_on_strict_stage_aborts(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"hang": block_until_cancelled}))
        hang = Stage("hang", (Step("hang", "sleep 999"),), timeout_seconds=0.2)

        harness.run([hang, _stage("after")], fake_context)

        assert harness.outcomes() == {"hang": StageOutcome.FAILED, "after": StageOutcome.SKIPPED}
        assert harness.state.aborted_by is not None
        assert harness.state.aborted_by.timed_out

    def test_default_stage_timeout_applies(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"hang": block_until_cancelled}), default_stage_timeout=0.2)
        hang = Stage("hang", (Step("hang", "sleep 999"),), policy=TOLERANT)

        harness.run([hang], fake_context)

        assert harness.outcomes() == {"hang": StageOutcome.DEGRADED}

    def test_stage_timeout_names_the_running_step(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"slow-scanner": block_until_cancelled}))
        scan = Stage(
            "scan",
            (Step("fast", "true"), Step("slow-scanner", "sleep 5")),
            policy=TOLERANT,
            timeout_seconds=0.5,
        )

        harness.run([scan], fake_context)

        record = harness.state.records[0]
        assert record.outcome == StageOutcome.DEGRADED
        assert record.failure is not None
        assert record.failure.timed_out
        assert record.failure.step == "slow-scanner"
        assert [step.name for step in record.steps] == ["fast"]

    def test_expired_run_deadline_aborts_regardless_of_policy(
        self, fake_context: FakeContext, mock_clock: MockClock
    ) -> None:
        harness = Harness(ScriptedStepRunner())
        run_deadline = Deadline.after(1800, TimeoutScope.RUN, clock=mock_clock)
        mock_clock.advance(1800)

        harness.run([_stage("lint", policy=TOLERANT), _stage("test")], fake_context, run_deadline)

        assert harness.outcomes() == {"lint": StageOutcome.FAILED, "test": StageOutcome.SKIPPED}
        assert harness.runner.calls == []
        assert harness.state.aborted_by is not None
        assert harness.state.aborted_by.timed_out


class TestRetry:
    def test_retry_recovers_flaky_stage(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"fetch": [1, 0]}))
        fetch = Stage("deps", (Step("fetch", "pip download"),), retry=RetryConfig(max_attempts=3, base_delay=0.01))

        harness.run([fetch], fake_context)

        record = harness.state.records[0]
        assert record.outcome == StageOutcome.SUCCESS
        assert record.attempts == 2
        assert harness.runner.names == ["fetch", "fetch"]

    def test_exhausted_retries_classify_the_last_failure(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"fetch": 4}))
        fetch = Stage(
            "deps",
            (Step("fetch", "pip download"),),
            policy=TOLERANT,
            retry=RetryConfig(max_attempts=2, base_delay=0.01),
        )

        harness.run([fetch], fake_context)

        record = harness.state.records[0]
        assert record.outcome == StageOutcome.DEGRADED
        assert record.attempts == 2
        assert record.failure is not None
        assert record.failure.exception_type == "StepFailure"
        assert record.failure.exit_code == 4

    def test_infrastructure_errors_are_not_retried(self, fake_context: FakeContext) -> None:
        harness = Harness(ScriptedStepRunner({"fetch": InfrastructureError("gone")}))
        fetch = Stage("deps", (Step("fetch", "pip download"),), retry=RetryConfig(max_attempts=3, base_delay=0.01))

        harness.run([fetch], fake_context)

        assert harness.runner.names == ["fetch"]
        assert harness.outcomes() == {"deps": StageOutcome.FAILED}


@pytest.mark.parametrize("failing_index", [0, 1, 2])
def test_strict_abort_position(failing_index: int, fake_context: FakeContext) -> None:
    names = ["a", "b", "c"]
    harness = Harness(ScriptedStepRunner({f"{names[failing_index]}-step": 1}))

    harness.run([_stage(name) for name in names], fake_context)

    outcomes = [harness.outcomes()[name] for name in names]
    assert outcomes[failing_index] == StageOutcome.FAILED
    assert all(outcome == StageOutcome.SUCCESS for outcome in outcomes[:failing_index])
    assert all(outcome == StageOutcome.SKIPPED for outcome in outcomes[failing_index + 1 :])
