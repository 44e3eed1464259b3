# src/seqflow/cli.py
"""seqflow Command Line Interface.

Entry point for the seqflow CLI tool.

Exit codes:
    0  run succeeded
    1  run failed or was cancelled
    2  configuration or input error (nothing was dispatched)
"""

import json
import signal
from pathlib import Path
from types import FrameType
from typing import Any

import typer
from pydantic import ValidationError

from seqflow import __version__
from seqflow.contracts import ConfigurationError, InputNotFoundError, RunStatus
from seqflow.core.config import SeqflowSettings, load_settings, resolve_config
from seqflow.core.dag import ExecutionGraph
from seqflow.core.logging import configure_logging

app = typer.Typer(
    name="seqflow",
    help="seqflow: DAG workflow engine for sequencing pipelines.",
    no_args_is_help=True,
)

EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"seqflow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """seqflow: DAG workflow engine for sequencing pipelines."""
    pass


def _load(settings: str, overrides: dict[str, Any] | None = None) -> SeqflowSettings:
    """Load settings, exiting with a configuration error on failure."""
    try:
        return load_settings(Path(settings), overrides)
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


def _build(config: SeqflowSettings, pipeline_name: str) -> ExecutionGraph:
    """Build the execution graph, exiting with a configuration error on failure."""
    from seqflow.pipelines import PIPELINES

    builder = PIPELINES.get(pipeline_name)
    if builder is None:
        typer.echo(
            f"Error: Unknown pipeline '{pipeline_name}'. Available: {', '.join(sorted(PIPELINES))}",
            err=True,
        )
        raise typer.Exit(EXIT_CONFIG_ERROR)
    try:
        return ExecutionGraph.from_pipeline(builder(config))
    except InputNotFoundError as e:
        typer.echo(f"Input error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None
    except ConfigurationError as e:
        typer.echo(f"Pipeline graph error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None


def _param_overrides(**params: Any) -> dict[str, Any]:
    return {"params": {k: v for k, v in params.items() if v is not None}}


@app.command()
def run(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    profile: str | None = typer.Option(
        None,
        "--profile",
        "-p",
        help="Execution profile to use (overrides the settings file).",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        "-r",
        help="Skip instances whose cached outputs are still valid.",
    ),
    reads: str | None = typer.Option(None, "--reads", help="Glob pattern for paired reads."),
    genome: str | None = typer.Option(None, "--genome", help="Reference genome FASTA."),
    gtf: str | None = typer.Option(None, "--gtf", help="Gene annotation GTF."),
    outdir: str | None = typer.Option(None, "--outdir", help="Published output directory."),
    index: str | None = typer.Option(None, "--index", help="Prebuilt aligner index."),
    pipeline: str = typer.Option(
        "rnaseq",
        "--pipeline",
        help="Pipeline definition to run.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed output.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit log events as JSON lines.",
    ),
) -> None:
    """Execute a pipeline run.

    Ctrl-C cancels the run: nothing new is dispatched, running instances
    are terminated, and completed outputs stay cached for --resume.
    """
    overrides = _param_overrides(reads=reads, genome=genome, gtf=gtf, outdir=outdir, index=index)
    if profile is not None:
        overrides["profile"] = profile
    config = _load(settings, overrides)

    level = "DEBUG" if verbose else config.logging.level
    configure_logging(level, json_output=json_logs or config.logging.json_output)

    graph = _build(config, pipeline)
    if verbose:
        typer.echo(f"Graph validated: {graph.node_count} instances, {graph.edge_count} edges")

    from seqflow.backends.manager import BackendManager
    from seqflow.core.cache_store import FilesystemTaskCache
    from seqflow.engine import Orchestrator, ResourceBudget, RunReporter, render_text

    active = config.active_profile
    manager = BackendManager()
    manager.register_builtin_backends()
    manager.load_entrypoints()
    try:
        backend = manager.create(active.backend, active.options)
    except ConfigurationError as e:
        typer.echo(f"Backend error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR) from None

    orchestrator = Orchestrator(
        backend,
        ResourceBudget(active.budget.as_resources()),
        cache=FilesystemTaskCache(config.cache.work_dir, config.cache.mode),
        retry=config.retry,
        resume=resume,
        poll_interval=config.executor.poll_interval_seconds,
        cancel_grace_seconds=config.executor.cancel_grace_seconds,
        outdir=config.params.outdir,
    )

    def _handle_sigint(signum: int, frame: FrameType | None) -> None:
        orchestrator.cancel()

    previous = signal.signal(signal.SIGINT, _handle_sigint)
    try:
        result = orchestrator.run(graph)
    finally:
        signal.signal(signal.SIGINT, previous)
        backend.close()

    reporter = RunReporter()
    summary = reporter.finalize(result.state)
    typer.echo(render_text(summary))

    if config.report.enabled:
        outdir_path = config.params.outdir
        outdir_path.mkdir(parents=True, exist_ok=True)
        report = summary.to_dict()
        report["config"] = resolve_config(config)
        report["pipeline"] = pipeline
        report["resumed"] = resume
        (outdir_path / config.report.summary_file).write_text(
            json.dumps(report, indent=2) + "\n", encoding="utf-8"
        )
        (outdir_path / config.report.trace_file).write_text(
            json.dumps(reporter.trace(result.state), indent=2) + "\n", encoding="utf-8"
        )
        (outdir_path / config.report.dag_file).write_text(
            json.dumps(graph.to_dict(), indent=2) + "\n", encoding="utf-8"
        )
        if verbose:
            typer.echo(f"Reports written to {outdir_path}")

    if result.status != RunStatus.SUCCEEDED:
        raise typer.Exit(EXIT_FAILED)


@app.command()
def validate(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    pipeline: str = typer.Option(
        "rnaseq",
        "--pipeline",
        help="Pipeline definition to validate.",
    ),
) -> None:
    """Validate pipeline configuration and show the instance plan without running."""
    config = _load(settings)
    graph = _build(config, pipeline)

    typer.echo(f"Configuration valid: {Path(settings).name}")
    typer.echo(f"  Profile: {config.profile} ({config.active_profile.backend} backend)")
    typer.echo(f"  Graph: {graph.node_count} instances, {graph.edge_count} edges")
    for task_id in graph.task_order():
        instances = graph.instances_of(task_id)
        skipped = [i for i in instances if i.skip_reason is not None]
        if skipped:
            typer.echo(f"  {task_id}: skipped ({skipped[0].skip_reason.value})")  # type: ignore[union-attr]
        else:
            typer.echo(f"  {task_id}: {len(instances)} instance(s)")


# Backends subcommand group
backends_app = typer.Typer(help="Execution backend commands.")
app.add_typer(backends_app, name="backends")


@backends_app.command("list")
def backends_list() -> None:
    """List registered execution backends."""
    from seqflow.backends.manager import BackendManager

    manager = BackendManager()
    manager.register_builtin_backends()
    manager.load_entrypoints()

    typer.echo("\nBACKENDS:")
    for cls in sorted(manager.get_backends(), key=lambda c: c.name):
        doc = (cls.__doc__ or "").strip().splitlines()
        typer.echo(f"  {cls.name:12} - {doc[0] if doc else ''}")
    typer.echo()


if __name__ == "__main__":
    app()
