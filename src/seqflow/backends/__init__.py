"""Execution backends: protocol, local processes, pluggy discovery."""

from seqflow.backends.base import ExecutionBackend, Notifier
from seqflow.backends.local import LocalProcessBackend, collect_declared_outputs
from seqflow.backends.manager import BackendManager

__all__ = [
    "BackendManager",
    "ExecutionBackend",
    "LocalProcessBackend",
    "Notifier",
    "collect_declared_outputs",
]
