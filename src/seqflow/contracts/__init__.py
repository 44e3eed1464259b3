"""Shared contracts for cross-boundary data types.

All dataclasses and enums that cross subsystem boundaries are defined here.

Import pattern:
    from seqflow.contracts import TaskDescriptor, TaskStatus, PollResult
"""

from seqflow.contracts.enums import (
    BackendState,
    ChannelKind,
    FailureCause,
    RunStatus,
    SkipReason,
    TaskStatus,
)
from seqflow.contracts.errors import (
    ConfigurationError,
    GraphValidationError,
    InputNotFoundError,
    ResourceExhaustionError,
    SeqflowError,
    TaskExecutionError,
    TaskTimeoutError,
    TemplateError,
)
from seqflow.contracts.descriptors import (
    Aggregate,
    ChannelItem,
    ChannelRef,
    GiB,
    InputSpec,
    OutputSpec,
    Resources,
    TaskDescriptor,
    format_memory,
    parse_memory,
)
from seqflow.contracts.results import PollResult, ResolvedCommand
from seqflow.contracts.run import FailureSummary, InstanceRecord, RunState, RunSummary

__all__ = [
    # descriptors
    "Aggregate",
    "ChannelItem",
    "ChannelRef",
    "GiB",
    "InputSpec",
    "OutputSpec",
    "Resources",
    "TaskDescriptor",
    "format_memory",
    "parse_memory",
    # enums
    "BackendState",
    "ChannelKind",
    "FailureCause",
    "RunStatus",
    "SkipReason",
    "TaskStatus",
    # errors
    "ConfigurationError",
    "GraphValidationError",
    "InputNotFoundError",
    "ResourceExhaustionError",
    "SeqflowError",
    "TaskExecutionError",
    "TaskTimeoutError",
    "TemplateError",
    # results
    "PollResult",
    "ResolvedCommand",
    # run
    "FailureSummary",
    "InstanceRecord",
    "RunState",
    "RunSummary",
]
