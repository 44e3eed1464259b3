# src/seqflow/core/config.py
"""
Configuration schema and loading for seqflow runs.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction and are threaded
explicitly through pipeline construction; task bodies never read them
ambiently.
"""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from seqflow.contracts import ConfigurationError, GiB, Resources, parse_memory


def _memory_field(value: Any) -> Any:
    """Accept "4 GB" style strings for byte-count fields."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int | str):
        try:
            return parse_memory(value)
        except ConfigurationError as e:
            raise ValueError(str(e)) from e
    return value


class ParamsSettings(BaseModel):
    """Pipeline parameters.

    Example YAML:
        params:
          reads: /data/fastq/*_R{1,2}.fastq.gz
          genome: /data/reference/genome.fa
          gtf: /data/reference/genes.gtf
          outdir: /data/results
          index: /data/reference/star_index   # optional prebuilt index
    """

    model_config = {"frozen": True}

    reads: str = Field(description="Glob pattern for paired input files")
    genome: Path = Field(description="Reference genome FASTA")
    gtf: Path = Field(description="Gene annotation (GTF)")
    outdir: Path = Field(default=Path("results"), description="Published output directory")
    index: Path | None = Field(
        default=None,
        description="Prebuilt aligner index; building the index is skipped when it exists",
    )


class ResourceOverride(BaseModel):
    """Per-task resource override.

    Example YAML:
        tasks:
          star_align:
            cpus: 8
            memory: 32 GB
            timeout_seconds: 7200
    """

    model_config = {"frozen": True}

    cpus: int | None = Field(default=None, gt=0)
    memory: int | None = Field(default=None, gt=0, description="Bytes, or a string like '4 GB'")
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("memory", mode="before")
    @classmethod
    def parse_memory_units(cls, v: Any) -> Any:
        """Accept human-readable memory amounts."""
        return _memory_field(v)


class BudgetSettings(BaseModel):
    """Global resource pool shared by all running instances."""

    model_config = {"frozen": True}

    cpus: int = Field(default_factory=lambda: os.cpu_count() or 1, gt=0)
    memory: int = Field(default=8 * GiB, gt=0, description="Bytes, or a string like '64 GB'")

    @field_validator("memory", mode="before")
    @classmethod
    def parse_memory_units(cls, v: Any) -> Any:
        """Accept human-readable memory amounts."""
        return _memory_field(v)

    def as_resources(self) -> Resources:
        return Resources(cpus=self.cpus, memory=self.memory)


class ProfileSettings(BaseModel):
    """Execution profile: which backend runs task bodies and with what budget.

    Example YAML:
        profile: cluster
        profiles:
          cluster:
            backend: kubernetes       # provided by an installed backend plugin
            budget: {cpus: 64, memory: 256 GB}
            options: {namespace: bioinformatics}
    """

    model_config = {"frozen": True}

    backend: str = Field(default="local", description="Registered backend name")
    budget: BudgetSettings = Field(default_factory=BudgetSettings)
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific options passed to the backend constructor",
    )


class RetrySettings(BaseModel):
    """Retry behavior configuration."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum attempts per instance")
    initial_delay_seconds: float = Field(
        default=1.0, ge=0, description="Initial backoff delay"
    )
    max_delay_seconds: float = Field(
        default=60.0, ge=0, description="Maximum backoff delay"
    )
    exponential_base: float = Field(
        default=2.0, ge=1.0, description="Exponential backoff base"
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following failed attempt number `attempt` (1-based)."""
        delay = self.initial_delay_seconds * self.exponential_base ** max(attempt - 1, 0)
        return min(delay, self.max_delay_seconds)


class CacheSettings(BaseModel):
    """Work/cache directory configuration.

    mode:
    - standard: fingerprint covers input paths plus file size and mtime
    - deep: fingerprint covers a SHA-256 of every input file's content
    """

    model_config = {"frozen": True}

    work_dir: Path = Field(default=Path("work"), description="Work and cache directory")
    mode: Literal["standard", "deep"] = Field(default="standard")


class ExecutorSettings(BaseModel):
    """Coordinator loop configuration."""

    model_config = {"frozen": True}

    poll_interval_seconds: float = Field(
        default=0.5, gt=0, description="Upper bound on how long the loop blocks"
    )
    cancel_grace_seconds: float = Field(
        default=30.0, ge=0, description="How long to wait for cancelled instances to stop"
    )


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class ReportSettings(BaseModel):
    """Run report files written into params.outdir."""

    model_config = {"frozen": True}

    enabled: bool = True
    summary_file: str = "report.json"
    trace_file: str = "trace.json"
    dag_file: str = "dag.json"


class SeqflowSettings(BaseModel):
    """Top-level seqflow configuration.

    This is the single source of truth for a run. All settings are
    validated and frozen after construction.
    """

    model_config = {"frozen": True}

    params: ParamsSettings = Field(description="Pipeline parameters")
    profile: str = Field(default="local", description="Selected execution profile")
    profiles: dict[str, ProfileSettings] = Field(
        default_factory=lambda: {"local": ProfileSettings()},
        description="Named execution profiles",
    )
    tasks: dict[str, ResourceOverride] = Field(
        default_factory=dict,
        description="Per-task resource overrides keyed by task id",
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    report: ReportSettings = Field(default_factory=ReportSettings)

    @model_validator(mode="after")
    def validate_profile_exists(self) -> "SeqflowSettings":
        """Ensure the selected profile is defined."""
        if self.profile not in self.profiles:
            raise ValueError(
                f"profile '{self.profile}' not found in profiles. "
                f"Available profiles: {sorted(self.profiles)}"
            )
        return self

    @property
    def active_profile(self) -> ProfileSettings:
        return self.profiles[self.profile]

    def resources_for(self, task_id: str, default: Resources) -> Resources:
        """Apply the per-task override (if any) to a task's default resources."""
        override = self.tasks.get(task_id)
        if override is None:
            return default
        return default.with_overrides(
            cpus=override.cpus,
            memory=override.memory,
            timeout=override.timeout_seconds,
        )


def _lower_keys(value: Any) -> Any:
    """Lowercase mapping keys at every depth.

    Dynaconf uppercases keys that arrive from the environment, including
    nested ones such as OUTDIR from SEQFLOW_PARAMS__OUTDIR.
    """
    if isinstance(value, Mapping):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(v) for v in value]
    return value


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def load_settings(
    config_path: Path,
    overrides: Mapping[str, Any] | None = None,
) -> SeqflowSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Explicit overrides (CLI flags) - highest priority
    2. Environment variables (SEQFLOW_*)
    3. Config file
    4. Defaults from Pydantic schema - lowest priority

    Environment variable format: SEQFLOW_PARAMS__OUTDIR for nested keys.

    Args:
        config_path: Path to YAML configuration file
        overrides: Nested mapping merged over the loaded configuration

    Returns:
        Validated SeqflowSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Explicit check for file existence (Dynaconf silently accepts missing files)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="SEQFLOW",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; convert to lowercase for Pydantic
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = _lower_keys(
        {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    )
    if overrides:
        raw_config = _deep_merge(raw_config, overrides)
    return SeqflowSettings(**raw_config)


def resolve_config(settings: SeqflowSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict for the run report."""
    return settings.model_dump(mode="json")
