# src/seqflow/engine/artifacts.py
"""Publishing of task outputs into the run output directory.

Work directories are content addressed and hard to browse, so tasks that
declare a `publish_dir` get their outputs copied under the run's output
directory after they succeed. The work directory copy stays authoritative
for caching.
"""

from __future__ import annotations

import hashlib
import shutil
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from seqflow.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PublishedArtifact:
    """One output copied into the output directory.

    Attributes:
        source: Path inside the instance work directory
        destination: Path under the output directory
        content_hash: SHA-256 of file contents (None for directories)
        size_bytes: Size of the file, or total size of a directory tree
    """

    source: str
    destination: str
    content_hash: str | None
    size_bytes: int

    @classmethod
    def for_path(cls, source: Path, destination: Path) -> PublishedArtifact:
        if destination.is_dir():
            size = sum(p.stat().st_size for p in destination.rglob("*") if p.is_file())
            return cls(str(source), str(destination), None, size)
        digest = hashlib.sha256(destination.read_bytes()).hexdigest()
        return cls(str(source), str(destination), digest, destination.stat().st_size)


def _output_paths(value: Any) -> Iterator[Path]:
    if isinstance(value, str | Path):
        yield Path(value)
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _output_paths(v)
    elif isinstance(value, list | tuple):
        for v in value:
            yield from _output_paths(v)


def publish_outputs(
    outputs: Mapping[str, Any],
    outdir: Path,
    publish_dir: str,
) -> list[PublishedArtifact]:
    """Copy every output path into `outdir / publish_dir`.

    Existing files at the destination are overwritten, so re-publishing
    after a resumed run is idempotent.

    Raises:
        OSError: If a copy fails
    """
    target = outdir / publish_dir
    target.mkdir(parents=True, exist_ok=True)
    published: list[PublishedArtifact] = []
    for name, value in outputs.items():
        for source in _output_paths(value):
            destination = target / source.name
            if source.is_dir():
                shutil.copytree(source, destination, dirs_exist_ok=True)
            else:
                shutil.copy2(source, destination)
            published.append(PublishedArtifact.for_path(source, destination))
            logger.debug("output_published", output=name, destination=str(destination))
    return published
