# src/gantry/plugins/agents.py
"""Local agent provisioning.

Provisions an execution context on the current host: a workspace
directory plus a base environment. Steps run as child processes of the
engine with that directory as their working directory.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from gantry.contracts.errors import InfrastructureError
from gantry.contracts.protocols import AgentSpec, ExecutionContext
from gantry.core.logging import get_logger

logger = get_logger(__name__)

# Minimal env for agents that do not inherit the host environment
_MINIMAL_ENV_KEYS: tuple[str, ...] = ("PATH", "HOME", "LANG", "TMPDIR")


@dataclass
class LocalExecutionContext:
    """A workspace directory on this host.

    owns_workdir is True when the provisioner created the directory (and
    may therefore delete it on teardown).
    """

    agent_id: str
    workdir: Path
    base_env: Mapping[str, str] = field(default_factory=dict)
    owns_workdir: bool = False
    clean_workspace: bool = True
    closed: bool = False

    def check_reachable(self) -> None:
        if self.closed:
            raise InfrastructureError(f"Agent '{self.agent_id}' has been torn down")
        if not self.workdir.is_dir():
            raise InfrastructureError(f"Agent '{self.agent_id}' workspace {self.workdir} is missing")


class LocalAgentProvisioner:
    """Provisions LocalExecutionContexts.

    Example:
        provisioner = LocalAgentProvisioner()
        context = provisioner.provision(AgentSpec(label="linux"))
        try:
            ...
        finally:
            provisioner.teardown(context)
    """

    def __init__(self, base_dir: Path | None = None, environ: Mapping[str, str] | None = None) -> None:
        """Initialize provisioner.

        Args:
            base_dir: Parent for temporary workspaces (system temp dir if None)
            environ: Host environment to inherit from (os.environ if None)
        """
        self._base_dir = base_dir
        self._environ = environ

    def provision(self, spec: AgentSpec) -> LocalExecutionContext:
        """Create the workspace and base environment.

        Raises:
            InfrastructureError: If the workspace cannot be created
        """
        agent_id = f"{spec.label}-{uuid.uuid4().hex[:8]}"
        try:
            if spec.workdir is not None:
                workdir = spec.workdir.expanduser().resolve()
                workdir.mkdir(parents=True, exist_ok=True)
                owns_workdir = False
            else:
                if self._base_dir is not None:
                    self._base_dir.mkdir(parents=True, exist_ok=True)
                workdir = Path(tempfile.mkdtemp(prefix=f"gantry-{spec.label}-", dir=self._base_dir))
                owns_workdir = True
        except OSError as exc:
            raise InfrastructureError(f"Cannot create workspace for agent '{spec.label}': {exc}") from exc

        context = LocalExecutionContext(
            agent_id=agent_id,
            workdir=workdir,
            base_env=self._base_env(spec),
            owns_workdir=owns_workdir,
            clean_workspace=spec.clean_workspace,
        )
        logger.debug("Local agent provisioned", agent=agent_id, workdir=str(workdir), owns_workdir=owns_workdir)
        return context

    def teardown(self, context: ExecutionContext) -> None:
        """Close the context and remove a workspace this provisioner created.

        A configured workdir is never deleted.
        """
        if not isinstance(context, LocalExecutionContext):
            raise TypeError(f"LocalAgentProvisioner cannot tear down {type(context).__name__}")
        if context.closed:
            return
        context.closed = True
        if context.owns_workdir and context.clean_workspace:
            shutil.rmtree(context.workdir)
            logger.debug("Workspace removed", agent=context.agent_id, workdir=str(context.workdir))

    def _base_env(self, spec: AgentSpec) -> dict[str, str]:
        host = self._environ if self._environ is not None else os.environ
        if spec.inherit_env:
            env = dict(host)
        else:
            env = {key: host[key] for key in _MINIMAL_ENV_KEYS if key in host}
            env.setdefault("PATH", os.defpath)
        env.update(spec.env)
        return env
