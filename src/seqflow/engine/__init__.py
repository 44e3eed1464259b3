"""seqflow engine: Orchestrator, ResourceBudget, RunReporter, output publishing."""

from seqflow.engine.artifacts import PublishedArtifact, publish_outputs
from seqflow.engine.budget import ResourceBudget
from seqflow.engine.orchestrator import Orchestrator, RunResult
from seqflow.engine.reporter import RunReporter, render_text

__all__ = [
    "Orchestrator",
    "PublishedArtifact",
    "ResourceBudget",
    "RunReporter",
    "RunResult",
    "publish_outputs",
    "render_text",
]
