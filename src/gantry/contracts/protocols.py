"""Protocols for the engine's boundary collaborators.

The engine only needs these interfaces to invoke and observe the outside
world. Local implementations live in gantry.plugins and gantry.core.security;
anything else (container schedulers, hosted vaults, artifact repositories)
can satisfy the same protocols.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from gantry.contracts.results import StepResult
    from gantry.engine.deadline import CancellationToken, Deadline


@dataclass(frozen=True, slots=True)
class SecretRef:
    """Reference to a resolved secret (never contains the value).

    Attributes:
        name: The credential identifier
        source: Where it was resolved from ("env", "mapping", ...)
    """

    name: str
    source: str


@dataclass(frozen=True, slots=True)
class AgentSpec:
    """What the provisioner should hand back.

    Attributes:
        label: Agent label (used in logs and the workspace directory name)
        workdir: Fixed workspace directory; None means a fresh temporary one
        inherit_env: Seed the run environment from the host environment
        clean_workspace: Remove the workspace on teardown
        env: Extra agent-level environment entries
    """

    label: str = "local"
    workdir: Path | None = None
    inherit_env: bool = True
    clean_workspace: bool = True
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ArchiveOptions:
    """Options for ArtifactSink.archive.

    allow_empty: archiving an absent/empty artifact set is not an error
    fingerprint: record content hashes and skip storing duplicate content
    """

    allow_empty: bool = False
    fingerprint: bool = False


@dataclass(frozen=True, slots=True)
class ReportOptions:
    """Options for ReportPublisher.publish.

    name: Report name (directory under the publish root)
    allow_missing: a missing report directory is logged, not an error
    keep_all: keep one copy per run instead of replacing the previous one
    """

    name: str
    allow_missing: bool = False
    keep_all: bool = False


@runtime_checkable
class ExecutionContext(Protocol):
    """A provisioned agent the engine can run steps on."""

    @property
    def agent_id(self) -> str: ...

    @property
    def workdir(self) -> Path: ...

    @property
    def base_env(self) -> Mapping[str, str]: ...

    def check_reachable(self) -> None:
        """Raise InfrastructureError if the agent can no longer run steps."""
        ...


class AgentProvisioner(Protocol):
    """Provisions exactly one execution context per run."""

    def provision(self, spec: AgentSpec) -> ExecutionContext: ...

    def teardown(self, context: ExecutionContext) -> None: ...


class SecretStore(Protocol):
    """Resolves credential identifiers to secret values."""

    def resolve(self, credential_id: str) -> tuple[str, SecretRef]:
        """Resolve a credential.

        Raises:
            SecretNotFoundError: If the credential does not exist
        """
        ...


class StepRunner(Protocol):
    """Runs one external command. Implemented by StepExecutor."""

    def execute(
        self,
        command: str | list[str] | tuple[str, ...],
        env: Mapping[str, str],
        context: ExecutionContext,
        *,
        name: str | None = None,
        deadline: Deadline | None = None,
        cancel: CancellationToken | None = None,
    ) -> StepResult: ...


class ArtifactSink(Protocol):
    """Archives build artifacts out of the agent workspace."""

    def archive(self, workdir: Path, pattern: str, options: ArchiveOptions) -> list[str]:
        """Archive files matching pattern under workdir; return archived relative paths."""
        ...


class ReportPublisher(Protocol):
    """Publishes a report directory (e.g. an HTML coverage report)."""

    def publish(self, report_dir: Path, index_file: str, options: ReportOptions) -> Path | None:
        """Publish report_dir; return the published location (None if skipped)."""
        ...
