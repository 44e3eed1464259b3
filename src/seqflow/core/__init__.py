# src/seqflow/core/__init__.py
"""Core infrastructure: Canonical, Configuration, DAG, Cache, Logging, Templates."""

from seqflow.core.cache_store import (
    CacheRecord,
    CacheStore,
    FilesystemTaskCache,
)
from seqflow.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    stable_hash,
)
from seqflow.core.config import (
    CacheSettings,
    RetrySettings,
    SeqflowSettings,
    load_settings,
)
from seqflow.core.dag import (
    ExecutionGraph,
    GraphValidationError,
    InputBinding,
    NodeInfo,
    ProducerRef,
)
from seqflow.core.logging import (
    configure_logging,
    get_logger,
)
from seqflow.core.pipeline import Pipeline, TaskHandle
from seqflow.core.templates import CommandTemplate

__all__ = [
    "CANONICAL_VERSION",
    "CacheRecord",
    "CacheSettings",
    "CacheStore",
    "CommandTemplate",
    "ExecutionGraph",
    "FilesystemTaskCache",
    "GraphValidationError",
    "InputBinding",
    "NodeInfo",
    "Pipeline",
    "ProducerRef",
    "RetrySettings",
    "SeqflowSettings",
    "TaskHandle",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_settings",
    "stable_hash",
]
