# src/gantry/engine/__init__.py
"""Gantry engine: stage sequencing, timeouts and result aggregation.

This module provides the execution engine for Gantry pipelines:
- PipelineRunner: Full run lifecycle management
- StageSequencer: Stage-by-stage execution with failure isolation
- FailureClassifier: Strict/Tolerant policy application
- ResultAggregator: success < degraded < failed aggregation
- PostActionDispatcher: Result-conditioned post actions
- TimeoutGuard / Deadline: Nested timeouts from one threaded deadline
- SpanFactory: OpenTelemetry integration
- RetryManager: Stage retry with tenacity

Example:
    from gantry.contracts import FailurePolicy, Pipeline, Stage, Step
    from gantry.core.security import EnvSecretStore
    from gantry.engine import PipelineRunner, PostActions
    from gantry.plugins.agents import LocalAgentProvisioner

    pipeline = Pipeline(
        name="build",
        timeout_seconds=1800,
        stages=(
            Stage("compile", (Step("make", "make all"),)),
            Stage("scan", (Step("scan", "scanner ."),), policy=FailurePolicy.tolerant()),
        ),
    )

    runner = PipelineRunner(LocalAgentProvisioner(), EnvSecretStore())
    result = runner.run(pipeline, PostActions(always=notify))
"""

from gantry.engine.aggregator import ResultAggregator, combine
from gantry.engine.classifier import Classification, FailureClassifier
from gantry.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from gantry.engine.credentials import CredentialScope, SecretMasker
from gantry.engine.deadline import CancellationToken, Deadline, OperationCancelled, TimeoutGuard
from gantry.engine.executors import StageAttempt, StageExecutor, StepExecutor
from gantry.engine.orchestrator import PipelineRunner
from gantry.engine.post_actions import PostActionDispatcher, PostActions, PostContext
from gantry.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from gantry.engine.sequencer import StageSequencer
from gantry.engine.spans import SpanFactory

__all__ = [
    "DEFAULT_CLOCK",
    "CancellationToken",
    "Classification",
    "Clock",
    "CredentialScope",
    "Deadline",
    "FailureClassifier",
    "MaxRetriesExceeded",
    "MockClock",
    "OperationCancelled",
    "PipelineRunner",
    "PostActionDispatcher",
    "PostActions",
    "PostContext",
    "ResultAggregator",
    "RetryConfig",
    "RetryManager",
    "SecretMasker",
    "SpanFactory",
    "StageAttempt",
    "StageExecutor",
    "StageSequencer",
    "StepExecutor",
    "SystemClock",
    "TimeoutGuard",
    "combine",
]
