"""Pipeline definitions selectable by name from the CLI."""

from collections.abc import Callable

from seqflow.core.config import SeqflowSettings
from seqflow.core.pipeline import Pipeline
from seqflow.pipelines.rnaseq import build_pipeline as build_rnaseq

PIPELINES: dict[str, Callable[[SeqflowSettings], Pipeline]] = {
    "rnaseq": build_rnaseq,
}

__all__ = ["PIPELINES", "build_rnaseq"]
