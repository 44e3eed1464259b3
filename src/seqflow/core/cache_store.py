# src/seqflow/core/cache_store.py
"""
Task cache for resumable runs.

Uses content-addressable work directories (fingerprint-based) for:
- Skipping instances whose fingerprint matches a completed record
- Reusing one work directory across every attempt of an instance
- Detecting artifacts that disappeared since the record was written

Structure: work_dir/ab/abcdef123.../
               .seqflow.json   cache record, written only after success
               .command.sh     script of the last attempt (written by the backend)
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol, runtime_checkable

from seqflow.contracts import Aggregate, ChannelItem
from seqflow.core.canonical import CANONICAL_VERSION, canonical_json, stable_hash
from seqflow.core.logging import get_logger

logger = get_logger(__name__)

RECORD_FILE = ".seqflow.json"

CacheMode = Literal["standard", "deep"]


@dataclass(frozen=True)
class CacheRecord:
    """Outputs of a completed instance, keyed by its fingerprint."""

    fingerprint: str
    instance_id: str
    task_id: str
    outputs: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    canonical_version: str = CANONICAL_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "instance_id": self.instance_id,
            "task_id": self.task_id,
            "outputs": self.outputs,
            "created_at": self.created_at,
            "canonical_version": self.canonical_version,
        }


@runtime_checkable
class CacheStore(Protocol):
    """Protocol for cache backends used by the orchestrator."""

    def fingerprint(
        self,
        task_id: str,
        script: str,
        inputs: Mapping[str, Any],
        *,
        key: str | None = None,
        outputs: Iterable[str] = (),
    ) -> str:
        """Deterministic fingerprint of a resolved command."""
        ...

    def workdir_for(self, fingerprint: str) -> Path:
        """Work directory of the instance with this fingerprint."""
        ...

    def lookup(self, fingerprint: str) -> CacheRecord | None:
        """Completed record for `fingerprint`, or None on a miss."""
        ...

    def store(self, record: CacheRecord) -> None:
        """Persist a record after the instance succeeded."""
        ...


def _plain(value: Any) -> Any:
    """Convert channel values to plain data (paths become strings)."""
    if isinstance(value, Aggregate):
        return [_plain(item) for item in value]
    if isinstance(value, ChannelItem):
        return {"key": value.key, "tag": value.tag, "value": _plain(value.value)}
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    return value


def _restore(value: Any) -> Any:
    """Inverse of the JSON round-trip for output values: lists become tuples."""
    if isinstance(value, list):
        return tuple(_restore(v) for v in value)
    if isinstance(value, dict):
        return {k: _restore(v) for k, v in value.items()}
    return value


def _candidate_paths(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _candidate_paths(v)
    elif isinstance(value, list | tuple):
        for v in value:
            yield from _candidate_paths(v)


def _digest_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _file_state(path: Path, mode: CacheMode) -> Any:
    if path.is_dir():
        return {
            str(child.relative_to(path)): _file_state(child, mode)
            for child in sorted(path.rglob("*"))
            if child.is_file()
        }
    stat = path.stat()
    if mode == "deep":
        return _digest_file(path)
    # String form: mtime_ns is outside the JSON safe-integer range
    return f"{stat.st_size}:{stat.st_mtime_ns}"


class FilesystemTaskCache:
    """Filesystem-based task cache.

    Work directories use the first 2 characters of the fingerprint as a
    subdirectory for better file distribution.
    """

    def __init__(self, work_dir: Path, mode: CacheMode = "standard") -> None:
        """Initialize the cache.

        Args:
            work_dir: Root directory for instance work directories
            mode: "standard" hashes input file size and mtime,
                "deep" hashes input file contents
        """
        self.work_dir = work_dir
        self.mode = mode
        self.work_dir.mkdir(parents=True, exist_ok=True)

    def workdir_for(self, fingerprint: str) -> Path:
        return self.work_dir / fingerprint[:2] / fingerprint

    def _record_path(self, fingerprint: str) -> Path:
        return self.workdir_for(fingerprint) / RECORD_FILE

    def fingerprint(
        self,
        task_id: str,
        script: str,
        inputs: Mapping[str, Any],
        *,
        key: str | None = None,
        outputs: Iterable[str] = (),
    ) -> str:
        """Hash of the resolved command and everything that shapes its results.

        Covers task id, instance key, resolved script, input values, input
        file states and declared output names. Input values that name
        existing files contribute their state, so a modified input
        invalidates every downstream fingerprint. The key keeps two instances
        with identical inputs out of one work directory, and the output names
        make a record written before an output was declared a miss.
        """
        plain_inputs = {name: _plain(value) for name, value in inputs.items()}
        files: dict[str, Any] = {}
        for candidate in _candidate_paths(plain_inputs):
            path = Path(candidate)
            if path.is_absolute() and path.exists() and candidate not in files:
                files[candidate] = _file_state(path, self.mode)
        return stable_hash(
            {
                "task_id": task_id,
                "key": key,
                "script": script,
                "inputs": plain_inputs,
                "files": files,
                "outputs": sorted(outputs),
                "mode": self.mode,
            }
        )

    def lookup(self, fingerprint: str) -> CacheRecord | None:
        """Load a record and check that its artifacts still exist."""
        path = self._record_path(fingerprint)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("cache_record_unreadable", fingerprint=fingerprint, error=str(e))
            return None
        if data.get("fingerprint") != fingerprint or data.get("canonical_version") != CANONICAL_VERSION:
            logger.warning("cache_record_mismatch", fingerprint=fingerprint)
            return None
        outputs = _restore(data.get("outputs", {}))
        missing = [p for p in _candidate_paths(outputs) if not Path(p).exists()]
        if missing:
            logger.info("cache_artifacts_missing", fingerprint=fingerprint, missing=missing)
            return None
        return CacheRecord(
            fingerprint=fingerprint,
            instance_id=data["instance_id"],
            task_id=data["task_id"],
            outputs=outputs,
            created_at=data.get("created_at", ""),
        )

    def store(self, record: CacheRecord) -> None:
        path = self._record_path(record.fingerprint)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = record.to_dict()
        payload["outputs"] = _plain(record.outputs)
        if not payload["created_at"]:
            payload["created_at"] = datetime.now(UTC).isoformat()
        # Write then rename so a crash never leaves a partial record
        tmp = path.with_suffix(".tmp")
        tmp.write_text(canonical_json(payload), encoding="utf-8")
        tmp.replace(path)

    def invalidate(self, fingerprint: str) -> bool:
        """Delete the record for `fingerprint`.

        Returns:
            True if a record was deleted, False if not found
        """
        path = self._record_path(fingerprint)
        if not path.exists():
            return False
        path.unlink()
        return True
