# src/gantry/engine/orchestrator/__init__.py
"""Orchestrator package: full run lifecycle management.

Public API:
- PipelineRunner: main entry point for running pipelines

Module structure:
- core.py: PipelineRunner (provision, sequence, post actions, teardown)

Pipeline definition types (Pipeline, Stage, Step, FailurePolicy,
CredentialBinding) live in gantry.contracts.pipeline so engine modules can
share them without import cycles.
"""

from gantry.engine.orchestrator.core import PIPELINE_VAR, RUN_ID_VAR, WORKSPACE_VAR, PipelineRunner

__all__ = [
    "PIPELINE_VAR",
    "RUN_ID_VAR",
    "WORKSPACE_VAR",
    "PipelineRunner",
]
