# tests/conftest.py
"""Shared test fixtures and helpers.

Test doubles for the engine's boundary protocols:
- ScriptedStepRunner: StepRunner that returns scripted results per step name
- FakeContext: ExecutionContext backed by a tmp_path workspace
- FakeProvisioner: AgentProvisioner that counts provision/teardown calls

Engine tests drive the real sequencer, classifier and aggregator through
these doubles; only tests under tests/engine/test_step_executor.py and
tests/plugins spawn real processes or touch the filesystem.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from gantry.contracts.errors import InfrastructureError
from gantry.contracts.protocols import AgentSpec, ExecutionContext
from gantry.contracts.results import StepResult
from gantry.engine.clock import MockClock
from gantry.engine.deadline import CancellationToken, Deadline, OperationCancelled

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Boundary test doubles
# =============================================================================


@dataclass
class FakeContext:
    """ExecutionContext over a plain directory."""

    workdir: Path
    agent_id: str = "fake-agent"
    base_env: Mapping[str, str] = field(default_factory=lambda: {"PATH": "/usr/bin:/bin"})
    reachable: bool = True

    def check_reachable(self) -> None:
        if not self.reachable:
            raise InfrastructureError(f"Agent '{self.agent_id}' unreachable")


@dataclass
class StepCall:
    """One call observed by ScriptedStepRunner."""

    name: str
    command: Any
    env: dict[str, str]
    deadline: Deadline | None


# A script entry: exit code, (exit code, stdout), an exception to raise, or a
# callable receiving (env, token) and returning either of the first two.
Script = Any


class ScriptedStepRunner:
    """StepRunner returning scripted results keyed by step name.

    Steps without a script exit 0 with empty output. A list of scripts is
    consumed one entry per call, so retries can see different results.

    Example:
        runner = ScriptedStepRunner({"lint": 1, "version": (0, "1.2.3\\n")})
    """

    def __init__(self, scripts: Mapping[str, Script | list[Script]] | None = None) -> None:
        self._scripts: dict[str, Script | list[Script]] = dict(scripts or {})
        self._lock = threading.Lock()
        self.calls: list[StepCall] = []

    @property
    def names(self) -> list[str]:
        return [call.name for call in self.calls]

    def execute(
        self,
        command: Any,
        env: Mapping[str, str],
        context: ExecutionContext,
        *,
        name: str | None = None,
        deadline: Deadline | None = None,
        cancel: CancellationToken | None = None,
    ) -> StepResult:
        step_name = name or str(command)
        context.check_reachable()
        with self._lock:
            self.calls.append(StepCall(name=step_name, command=command, env=dict(env), deadline=deadline))
            script = self._next_script(step_name)

        if callable(script) and not isinstance(script, BaseException):
            script = script(env, cancel)
        if isinstance(script, BaseException):
            raise script
        if isinstance(script, tuple):
            exit_code, stdout = script
        else:
            exit_code, stdout = int(script), ""
        return StepResult(
            name=step_name,
            exit_code=exit_code,
            stdout=stdout,
            stderr="" if exit_code == 0 else f"{step_name} failed",
            duration_seconds=0.0,
        )

    def _next_script(self, step_name: str) -> Script:
        script = self._scripts.get(step_name, 0)
        if isinstance(script, list):
            if len(script) > 1:
                return script.pop(0)
            return script[0]
        return script


def block_until_cancelled(env: Mapping[str, str], cancel: CancellationToken | None) -> Any:
    """Script for a step that hangs until its stage is cancelled."""
    assert cancel is not None
    stopped = threading.Event()
    cancel.on_cancel(stopped.set)
    stopped.wait(timeout=10)
    raise OperationCancelled("cancelled while blocked")


class FakeProvisioner:
    """AgentProvisioner that hands out one FakeContext."""

    def __init__(self, workdir: Path, *, fail_with: Exception | None = None, teardown_error: Exception | None = None):
        self.workdir = workdir
        self.fail_with = fail_with
        self.teardown_error = teardown_error
        self.provisioned: list[FakeContext] = []
        self.torn_down: list[ExecutionContext] = []
        self.specs: list[AgentSpec] = []

    def provision(self, spec: AgentSpec) -> FakeContext:
        self.specs.append(spec)
        if self.fail_with is not None:
            raise self.fail_with
        context = FakeContext(workdir=self.workdir, agent_id=spec.label, base_env={"PATH": "/usr/bin:/bin", **spec.env})
        self.provisioned.append(context)
        return context

    def teardown(self, context: ExecutionContext) -> None:
        self.torn_down.append(context)
        if self.teardown_error is not None:
            raise self.teardown_error


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    return MockClock(start=1000.0)


@pytest.fixture
def fake_context(tmp_path: Path) -> FakeContext:
    return FakeContext(workdir=tmp_path)


@pytest.fixture
def provisioner(tmp_path: Path) -> FakeProvisioner:
    return FakeProvisioner(tmp_path)
