"""Pipeline definition types.

These answer: "What should the engine run?" They are built once (from
settings or directly in code) and never mutated during a run.

Kept in contracts so the classifier, sequencer and runner can all import
them without importing each other.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from gantry.contracts.enums import PolicyKind, StageOutcome
from gantry.contracts.protocols import AgentSpec

if TYPE_CHECKING:
    from gantry.engine.retry import RetryConfig

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_env_name(kind: str, name: str) -> None:
    if not ENV_NAME_PATTERN.match(name):
        raise ValueError(f"{kind} '{name}' is not a valid environment variable name")


@dataclass(frozen=True, slots=True)
class FailurePolicy:
    """How a stage failure is classified.

    STRICT: the stage is recorded failed and the run aborts.
    TOLERANT: the stage is recorded at downgrade_to and the run continues.
    """

    kind: PolicyKind = PolicyKind.STRICT
    downgrade_to: StageOutcome = StageOutcome.DEGRADED

    def __post_init__(self) -> None:
        if self.downgrade_to not in (StageOutcome.DEGRADED, StageOutcome.FAILED):
            raise ValueError(f"downgrade_to must be 'degraded' or 'failed', got '{self.downgrade_to.value}'")

    @classmethod
    def strict(cls) -> FailurePolicy:
        return cls(kind=PolicyKind.STRICT)

    @classmethod
    def tolerant(cls, downgrade_to: StageOutcome = StageOutcome.DEGRADED) -> FailurePolicy:
        return cls(kind=PolicyKind.TOLERANT, downgrade_to=downgrade_to)

    @property
    def is_strict(self) -> bool:
        return self.kind == PolicyKind.STRICT


@dataclass(frozen=True, slots=True)
class Step:
    """One external command inside a stage.

    Attributes:
        name: Step name (unique within its stage)
        command: Shell string, or argv list run without a shell
        success_exit_codes: Exit codes that count as a pass
        capture_as: Env var that receives the step's stripped stdout, visible
            to later steps and later stages
        timeout_seconds: Optional per-step limit (clipped by the stage deadline)
    """

    name: str
    command: str | tuple[str, ...]
    success_exit_codes: frozenset[int] = frozenset({0})
    capture_as: str | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError(f"Step '{self.name}' has an empty command")
        if not self.success_exit_codes:
            raise ValueError(f"Step '{self.name}' must accept at least one exit code")
        if self.capture_as is not None:
            _check_env_name("capture_as", self.capture_as)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Step '{self.name}' timeout must be positive")

    def accepts(self, exit_code: int) -> bool:
        return exit_code in self.success_exit_codes


@dataclass(frozen=True, slots=True)
class CredentialBinding:
    """Bind a stored credential to an env var for one stage only."""

    credential_id: str
    variable: str

    def __post_init__(self) -> None:
        _check_env_name("Credential variable", self.variable)


@dataclass(frozen=True)
class Stage:
    """A named, ordered unit of steps sharing one failure policy and timeout.

    timeout_seconds of None inherits the pipeline's stage_timeout_seconds.
    """

    name: str
    steps: tuple[Step, ...]
    policy: FailurePolicy = field(default_factory=FailurePolicy.strict)
    timeout_seconds: float | None = None
    credentials: tuple[CredentialBinding, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    retry: RetryConfig | None = None

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"Stage '{self.name}' has no steps")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Stage '{self.name}' timeout must be positive")
        variables = [binding.variable for binding in self.credentials]
        if len(variables) != len(set(variables)):
            raise ValueError(f"Stage '{self.name}' binds the same credential variable twice")


@dataclass(frozen=True)
class Pipeline:
    """An ordered list of stages plus run-level settings.

    Attributes:
        name: Pipeline name (reported in events and GANTRY_PIPELINE)
        stages: Stages in execution order
        environment: Run-scoped env entries
        timeout_seconds: Run deadline; None means unbounded
        stage_timeout_seconds: Default for stages without their own timeout
        agent: What to provision for the run
    """

    name: str
    stages: tuple[Stage, ...]
    environment: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None
    stage_timeout_seconds: float | None = None
    agent: AgentSpec = field(default_factory=AgentSpec)

    def __post_init__(self) -> None:
        names = [stage.name for stage in self.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate stage names: {duplicates}")
        for label, value in (("timeout", self.timeout_seconds), ("stage timeout", self.stage_timeout_seconds)):
            if value is not None and value <= 0:
                raise ValueError(f"Pipeline {label} must be positive")

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]
