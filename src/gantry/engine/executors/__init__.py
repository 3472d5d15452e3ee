# src/gantry/engine/executors/__init__.py
"""Executors that run pipeline work on an agent.

- StepExecutor: one external command, output captured, exit code as data
- StageExecutor: the steps of one stage, in order
"""

from gantry.engine.executors.stage import StageAttempt, StageExecutor
from gantry.engine.executors.step import StepExecutor, describe_command

__all__ = [
    "StageAttempt",
    "StageExecutor",
    "StepExecutor",
    "describe_command",
]
