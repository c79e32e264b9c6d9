"""
Collection of trained model artifacts.

After the last phase the run's search roots are scanned for model files
newer than the run's start marker and copied to the stable output
directory. The marker is never moved, so harvesting again copies the same
set and nothing new.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence, Union

from ..config import Config
from ..errors import ArtifactCopyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """A model file produced by training."""

    path: Path
    mtime: float


def find_artifacts(
    search_roots: Iterable[Union[str, Path]],
    start_marker: Path,
    extensions: Sequence[str] = Config.ARTIFACT_EXTENSIONS,
) -> list[Artifact]:
    """
    Find model files strictly newer than the start marker.

    Args:
        search_roots: Directories scanned recursively (missing ones are skipped)
        start_marker: File whose mtime is the reference point
        extensions: Recognized artifact suffixes (case-insensitive)

    Returns:
        Matching artifacts sorted by path
    """
    reference = start_marker.stat().st_mtime
    suffixes = {ext.lower() for ext in extensions}

    found: dict[Path, Artifact] = {}
    for root in search_roots:
        root = Path(root)
        if not root.is_dir():
            continue
        for path in root.rglob("*"):
            if path.suffix.lower() not in suffixes or not path.is_file():
                continue
            mtime = path.stat().st_mtime
            if mtime > reference:
                found[path] = Artifact(path=path, mtime=mtime)

    return [found[p] for p in sorted(found)]


def harvest(
    search_roots: Iterable[Union[str, Path]],
    start_marker: Path,
    dest_dir: Path,
    extensions: Sequence[str] = Config.ARTIFACT_EXTENSIONS,
) -> list[Artifact]:
    """
    Copy new model files into dest_dir, overwriting same-named files.

    Returns:
        The artifacts that were copied (empty list is only a warning)

    Raises:
        ArtifactCopyError: If any single copy fails
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest_resolved = dest_dir.resolve()

    artifacts = [
        a
        for a in find_artifacts(search_roots, start_marker, extensions)
        if a.path.parent.resolve() != dest_resolved
    ]
    if not artifacts:
        logger.warning(
            "No new model files found. Check the training log for where outputs were written."
        )
        return []

    for artifact in artifacts:
        logger.info(f"Copying: {artifact.path} -> {dest_dir}/")
        try:
            shutil.copy2(artifact.path, dest_dir / artifact.path.name)
        except OSError as e:
            raise ArtifactCopyError(f"Failed to copy {artifact.path}: {e}") from e

    logger.info(f"Artifacts directory: {dest_dir}")
    return artifacts
