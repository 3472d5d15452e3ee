# src/gantry/engine/executors/step.py
"""StepExecutor - runs one external command on the agent."""

import os
import signal
import subprocess
import time
from collections.abc import Mapping

import structlog

from gantry.contracts.errors import InfrastructureError, TimeoutExceeded
from gantry.contracts.protocols import ExecutionContext
from gantry.contracts.results import StepResult
from gantry.engine.deadline import CancellationToken, Deadline, OperationCancelled

slog = structlog.get_logger(__name__)


def describe_command(command: str | list[str] | tuple[str, ...]) -> str:
    """Short label for a command, used when a step has no name."""
    text = command if isinstance(command, str) else " ".join(command)
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    return first_line[:60]


def _kill_process_group(proc: "subprocess.Popen[str]") -> None:
    """Kill the step and everything it spawned.

    Steps start in their own session, so the process group id is the pid.
    Killing only the shell would leave grandchildren holding the pipes open.
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # Group already gone
        pass


class StepExecutor:
    """Executes commands with captured output.

    The result is data: a non-zero exit code is returned, never raised.
    Only conditions outside the command's own control raise:

    - InfrastructureError: agent unreachable, or the process cannot be spawned
    - TimeoutExceeded: the deadline expired (the process group is killed)
    - OperationCancelled: the enclosing stage timed out and cancelled us

    Example:
        executor = StepExecutor()
        result = executor.execute("pytest -q", env, context, name="unit-tests", deadline=deadline)
        if result.exit_code != 0:
            ...
    """

    def execute(
        self,
        command: str | list[str] | tuple[str, ...],
        env: Mapping[str, str],
        context: ExecutionContext,
        *,
        name: str | None = None,
        deadline: Deadline | None = None,
        cancel: CancellationToken | None = None,
    ) -> StepResult:
        """Run command in context.workdir with exactly env.

        A str command runs through the shell; a list runs as argv.
        """
        step_name = name or describe_command(command)
        context.check_reachable()
        if cancel is not None:
            cancel.raise_if_cancelled(step_name)
        if deadline is not None:
            deadline.check(step_name, step=step_name)

        shell = isinstance(command, str)
        args: str | list[str] = command if isinstance(command, str) else list(command)

        start = time.perf_counter()
        try:
            proc = subprocess.Popen(
                args,
                shell=shell,
                cwd=context.workdir,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            raise InfrastructureError(
                f"Cannot start step '{step_name}' on agent '{context.agent_id}': {exc}"
            ) from exc

        slog.debug("Step started", step=step_name, pid=proc.pid)
        unregister = cancel.on_cancel(lambda: _kill_process_group(proc)) if cancel is not None else None
        try:
            timeout = deadline.remaining() if deadline is not None else None
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                _kill_process_group(proc)
                proc.communicate()
                assert deadline is not None, "communicate() only times out with a deadline"
                slog.warning(
                    "Step timed out",
                    step=step_name,
                    scope=deadline.scope.value,
                    limit_seconds=deadline.limit_seconds,
                )
                raise TimeoutExceeded(deadline.scope, deadline.limit_seconds, step_name, step=step_name) from None
        finally:
            if unregister is not None:
                unregister()

        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"Step '{step_name}' killed by cancellation")

        duration = time.perf_counter() - start
        slog.info("Step finished", step=step_name, exit_code=proc.returncode, duration_seconds=round(duration, 3))
        return StepResult(
            name=step_name,
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )
