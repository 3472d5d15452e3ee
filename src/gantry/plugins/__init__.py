# src/gantry/plugins/__init__.py
"""Local implementations of the engine's boundary protocols.

- LocalAgentProvisioner: workspace directories on this host (AgentProvisioner)
- FilesystemArtifactSink: archived artifacts with SHA-256 manifest (ArtifactSink)
- DirectoryReportPublisher: published HTML report directories (ReportPublisher)

Secret stores live in gantry.core.security.
"""

from gantry.plugins.agents import LocalAgentProvisioner, LocalExecutionContext
from gantry.plugins.artifacts import ArtifactArchiveError, ArtifactIntegrityError, FilesystemArtifactSink
from gantry.plugins.reports import DirectoryReportPublisher, ReportPublishError

__all__ = [
    "ArtifactArchiveError",
    "ArtifactIntegrityError",
    "DirectoryReportPublisher",
    "FilesystemArtifactSink",
    "LocalAgentProvisioner",
    "LocalExecutionContext",
    "ReportPublishError",
]
