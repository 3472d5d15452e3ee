# src/gantry/plugins/reports.py
"""Directory report publisher.

Publishes an HTML report directory (coverage, test results) by copying it
out of the agent workspace into ``root/<report name>``. By default each
publication replaces the previous one; keep_all keeps one timestamped copy
per publication.
"""

from __future__ import annotations

import shutil
from datetime import UTC, datetime
from pathlib import Path

from gantry.contracts.protocols import ReportOptions
from gantry.core.logging import get_logger

logger = get_logger(__name__)


class ReportPublishError(Exception):
    """The report directory or its index file is missing."""


class DirectoryReportPublisher:
    """Publishes report directories under a local root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def publish(self, report_dir: Path, index_file: str, options: ReportOptions) -> Path | None:
        """Copy report_dir to the publish root.

        Returns:
            Path of the published index file, or None when the report is
            missing and allow_missing is set

        Raises:
            ReportPublishError: Report missing and allow_missing is False
        """
        index = report_dir / index_file
        if not report_dir.is_dir() or not index.is_file():
            if options.allow_missing:
                logger.warning("Report not found; skipping publish", report=options.name, index=str(index))
                return None
            raise ReportPublishError(f"Report '{options.name}' not found: {index} does not exist")

        target = self.root / options.name
        if options.keep_all:
            target = target / datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        elif target.exists():
            shutil.rmtree(target)

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(report_dir, target)
        logger.info("Report published", report=options.name, location=str(target))
        return target / index_file
