# src/gantry/plugins/artifacts.py
"""Filesystem artifact sink.

Archives workspace files matching a glob pattern into a directory outside
the agent workspace, so they survive teardown.

Without fingerprinting, files are copied under ``root/files/<relative path>``.
With fingerprinting, content is stored content-addressed under
``root/objects/ab/abcdef...`` (identical content stored once) and
``root/manifest.json`` maps each archived relative path to its SHA-256.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import shutil
from pathlib import Path

from gantry.contracts.protocols import ArchiveOptions
from gantry.core.logging import get_logger

logger = get_logger(__name__)

MANIFEST_NAME = "manifest.json"


class ArtifactArchiveError(Exception):
    """Archiving failed (e.g. nothing matched and allow_empty is False)."""


class ArtifactIntegrityError(ArtifactArchiveError):
    """A stored object does not match its fingerprint."""


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FilesystemArtifactSink:
    """Archives artifacts to a local directory.

    Example:
        sink = FilesystemArtifactSink(Path(".gantry/artifacts"))
        archived = sink.archive(context.workdir, "dist/*.whl", ArchiveOptions(fingerprint=True))
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def archive(self, workdir: Path, pattern: str, options: ArchiveOptions) -> list[str]:
        """Archive files under workdir matching pattern.

        Returns:
            Archived paths relative to workdir (POSIX form, sorted)

        Raises:
            ArtifactArchiveError: Nothing matched and allow_empty is False,
                or the pattern escapes the workspace
        """
        matches = self._match(workdir, pattern)
        if not matches:
            if options.allow_empty:
                logger.info("No artifacts matched; nothing archived", pattern=pattern)
                return []
            raise ArtifactArchiveError(f"No artifacts matched '{pattern}' in {workdir}")

        archived: list[str] = []
        fingerprints: dict[str, str] = {}
        for path in matches:
            relative = path.relative_to(workdir).as_posix()
            if options.fingerprint:
                fingerprints[relative] = self._store_object(path)
            else:
                target = self.root / "files" / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)
            archived.append(relative)

        if fingerprints:
            self._update_manifest(fingerprints)

        logger.info(
            "Artifacts archived",
            pattern=pattern,
            count=len(archived),
            fingerprinted=options.fingerprint,
        )
        return archived

    def fingerprints(self) -> dict[str, str]:
        """The manifest: archived relative path -> SHA-256."""
        manifest = self.root / MANIFEST_NAME
        if not manifest.exists():
            return {}
        data: dict[str, str] = json.loads(manifest.read_text(encoding="utf-8"))
        return data

    def object_path(self, content_hash: str) -> Path:
        return self.root / "objects" / content_hash[:2] / content_hash

    def _match(self, workdir: Path, pattern: str) -> list[Path]:
        base = workdir.resolve()
        matches: list[Path] = []
        for path in sorted(workdir.glob(pattern)):
            if not path.is_file():
                continue
            if not path.resolve().is_relative_to(base):
                raise ArtifactArchiveError(f"Artifact pattern '{pattern}' escapes the workspace: {path}")
            matches.append(path)
        return matches

    def _store_object(self, path: Path) -> str:
        """Store file content once; verify an existing copy instead of rewriting it."""
        content_hash = file_sha256(path)
        target = self.object_path(content_hash)
        if target.exists():
            actual = file_sha256(target)
            if not hmac.compare_digest(actual, content_hash):
                raise ArtifactIntegrityError(f"Stored artifact {target} has hash {actual}, expected {content_hash}")
            logger.debug("Artifact content already stored", path=path.name, sha256=content_hash)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
        return content_hash

    def _update_manifest(self, fingerprints: dict[str, str]) -> None:
        manifest = {**self.fingerprints(), **fingerprints}
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")
