# src/seqflow/pipelines/rnaseq.py
"""Paired-end RNA-seq pipeline: QC, alignment, quantification, report.

    reads ──► fastqc ───────────────────────────────┐
      │                                             │
      └─────► star_align ──► featurecounts ─────────┼──► multiqc (collect)
                  ▲                                 │
    genome, gtf ► star_index (skipped when a        │
                  prebuilt index is configured)     │

Tools are invoked through opaque command templates; nothing here knows
what the tools compute.
"""

from __future__ import annotations

from seqflow.contracts import ChannelRef, GiB, Resources
from seqflow.core.config import SeqflowSettings
from seqflow.core.logging import get_logger
from seqflow.core.pipeline import Pipeline

logger = get_logger(__name__)

# Default requests, overridable per task in settings.tasks
DEFAULT_RESOURCES: dict[str, Resources] = {
    "fastqc": Resources(cpus=2, memory=2 * GiB),
    "star_index": Resources(cpus=8, memory=32 * GiB),
    "star_align": Resources(cpus=8, memory=32 * GiB),
    "featurecounts": Resources(cpus=4, memory=4 * GiB),
    "multiqc": Resources(cpus=1, memory=2 * GiB),
}


def build_pipeline(settings: SeqflowSettings) -> Pipeline:
    """Build the RNA-seq pipeline from validated settings.

    Raises:
        InputNotFoundError: If the reads pattern matches no complete pair
    """
    params = settings.params
    pipeline = Pipeline("rnaseq")

    def resources(task_id: str) -> Resources:
        return settings.resources_for(task_id, DEFAULT_RESOURCES[task_id])

    reads = pipeline.from_file_pairs("reads", params.reads)
    genome = pipeline.value("genome", params.genome.resolve())
    gtf = pipeline.value("gtf", params.gtf.resolve())

    prebuilt = params.index.resolve() if params.index is not None else None
    fallback: dict[str, ChannelRef] = {}
    if prebuilt is not None:
        fallback["index"] = pipeline.value("prebuilt_index", prebuilt)

    fastqc = pipeline.task(
        "fastqc",
        "fastqc --threads {{ task.cpus }} --quiet --outdir . {{ reads | shquote }}",
        inputs={"reads": reads},
        outputs={"zip": "*_fastqc.zip", "html": "*_fastqc.html"},
        resources=resources("fastqc"),
        publish_dir="fastqc",
    )

    star_index = pipeline.task(
        "star_index",
        (
            "mkdir -p star_index\n"
            "STAR --runMode genomeGenerate --runThreadN {{ task.cpus }} "
            "--genomeDir star_index "
            "--genomeFastaFiles {{ genome | shquote }} "
            "--sjdbGTFfile {{ gtf | shquote }}"
        ),
        inputs={"genome": genome, "gtf": gtf},
        outputs={"index": "star_index"},
        resources=resources("star_index"),
        condition=lambda: prebuilt is None or not prebuilt.exists(),
        fallback=fallback,
    )

    star_align = pipeline.task(
        "star_align",
        (
            "STAR --runThreadN {{ task.cpus }} "
            "--genomeDir {{ index | shquote }} "
            "--readFilesIn {{ reads | shquote }} "
            "--readFilesCommand zcat "
            "--outSAMtype BAM SortedByCoordinate "
            "--outFileNamePrefix {{ (task.key ~ '.') | shquote }}"
        ),
        inputs={"reads": reads, "index": star_index.out("index")},
        outputs={"bam": "*.Aligned.sortedByCoord.out.bam", "log": "*.Log.final.out"},
        resources=resources("star_align"),
        publish_dir="star",
    )

    featurecounts = pipeline.task(
        "featurecounts",
        (
            "featureCounts -T {{ task.cpus }} -p "
            "-a {{ gtf | shquote }} "
            "-o {{ (task.key ~ '.counts.txt') | shquote }} "
            "{{ bam | shquote }}"
        ),
        inputs={"bam": star_align.out("bam"), "gtf": gtf},
        outputs={"counts": "*.counts.txt", "summary": "*.counts.txt.summary"},
        resources=resources("featurecounts"),
        publish_dir="counts",
    )

    pipeline.task(
        "multiqc",
        (
            "mkdir -p reports\n"
            "{% for tag in reports.tags %}"
            "mkdir -p {{ ('reports/' ~ tag) | shquote }}\n"
            "ln -sf {{ reports.by_tag(tag) | shquote }} {{ ('reports/' ~ tag) | shquote }}/\n"
            "{% endfor %}"
            "multiqc --force --outdir . reports"
        ),
        inputs={
            "reports": pipeline.collect(
                fastqc.out("zip"), star_align.out("log"), featurecounts.out("summary")
            )
        },
        outputs={"report": "multiqc_report.html", "data": "multiqc_data"},
        resources=resources("multiqc"),
        publish_dir=".",
    )

    unknown = sorted(set(settings.tasks) - set(DEFAULT_RESOURCES))
    if unknown:
        logger.warning("unknown_task_overrides", tasks=unknown, known=sorted(DEFAULT_RESOURCES))
    return pipeline
