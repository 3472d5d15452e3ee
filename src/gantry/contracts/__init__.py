"""Shared contracts for cross-boundary data types.

All dataclasses, enums, TypedDicts, and Protocols that cross subsystem
boundaries are defined here.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes (PipelineSettings, RetrySettings, ...) are NOT re-exported
here - import them from gantry.core.config.
"""

from gantry.contracts.enums import (
    RESULT_EXIT_CODES,
    USAGE_ERROR_EXIT_CODE,
    RESULT_POST_CONDITION,
    BuildResult,
    PolicyKind,
    PostCondition,
    RunStatus,
    StageOutcome,
    TimeoutScope,
)
from gantry.contracts.errors import (
    CredentialResolutionError,
    ExecutionError,
    InfrastructureError,
    OrchestrationInvariantError,
    PipelineError,
    PostActionError,
    StageFailed,
    StepFailure,
    TimeoutExceeded,
)
from gantry.contracts.pipeline import (
    CredentialBinding,
    FailurePolicy,
    Pipeline,
    Stage,
    Step,
)
from gantry.contracts.protocols import (
    AgentProvisioner,
    AgentSpec,
    ArchiveOptions,
    ArtifactSink,
    ExecutionContext,
    ReportOptions,
    ReportPublisher,
    SecretRef,
    SecretStore,
    StepRunner,
)
from gantry.contracts.results import (
    FailureInfo,
    PostActionFailure,
    RunResult,
    RunState,
    StageRecord,
    StepResult,
)

__all__ = [
    # enums
    "RESULT_EXIT_CODES",
    "USAGE_ERROR_EXIT_CODE",
    "RESULT_POST_CONDITION",
    "BuildResult",
    "PolicyKind",
    "PostCondition",
    "RunStatus",
    "StageOutcome",
    "TimeoutScope",
    # errors
    "CredentialResolutionError",
    "ExecutionError",
    "InfrastructureError",
    "OrchestrationInvariantError",
    "PipelineError",
    "PostActionError",
    "StageFailed",
    "StepFailure",
    "TimeoutExceeded",
    # pipeline
    "CredentialBinding",
    "FailurePolicy",
    "Pipeline",
    "Stage",
    "Step",
    # protocols
    "AgentProvisioner",
    "AgentSpec",
    "ArchiveOptions",
    "ArtifactSink",
    "ExecutionContext",
    "ReportOptions",
    "ReportPublisher",
    "SecretRef",
    "SecretStore",
    "StepRunner",
    # results
    "FailureInfo",
    "PostActionFailure",
    "RunResult",
    "RunState",
    "StageRecord",
    "StepResult",
]
