from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt, ValidationError, model_validator

from phylomatrix.exceptions import PhyloMatrixUsageError

ENV_PREFIX = "PHYLOMATRIX_"

# Knobs that may be overridden from the environment, e.g. PHYLOMATRIX_MERGE_MAX_DISTANCE=0.1.
ENV_KNOBS = (
    "overlap_threshold",
    "merge_max_distance",
    "backbone_min_coverage",
    "clade_min_density",
    "clade_max_distance",
)


class CommonConfig(BaseModel):
    """Shared command options across PhyloMatrix subcommands."""

    model_config = ConfigDict(extra="forbid")

    outdir: Path = Field(default_factory=Path.cwd)
    threads: PositiveInt = 1
    dry_run: bool = False
    force: bool = False
    log_file: Path | None = None
    verbose: bool = False
    quiet: bool = False

    @model_validator(mode="after")
    def _validate_verbosity(self) -> "CommonConfig":
        if self.verbose and self.quiet:
            raise ValueError("`verbose` and `quiet` cannot both be true.")
        return self


class OrthologizeConfig(CommonConfig):
    alignments: Path | None = None
    seeds_fasta: Path | None = None
    outfile: Path | None = None

    overlap_threshold: float = Field(default=0.51, ge=0.0, le=1.0)
    merge_max_distance: float = Field(default=0.2, ge=0.0, le=1.0)
    min_singleton_sequences: NonNegativeInt = 0

    blastn: str = "blastn"
    makeblastdb: str = "makeblastdb"
    muscle: str = "muscle"
    mock: bool = False
    mock_k: PositiveInt = 11


class BBMergeConfig(CommonConfig):
    alignments: Path | None = None
    taxa: Path | None = None
    outfile: Path | None = None
    markers_file: Path | None = None

    backbone_min_coverage: PositiveInt = 3
    strip_gap_columns: bool = False
    include_taxa: list[str] = Field(default_factory=list)
    prune_candidates: bool = False


class BBDecomposeConfig(CommonConfig):
    alignments: Path | None = None
    taxa: Path | None = None
    backbone: Path | None = None
    tree_format: str = "newick"
    markers_file: Path | None = None
    add_outgroups: bool = False
    classtree: Path | None = None

    clade_min_density: float = Field(default=0.5, ge=0.0, le=1.0)
    clade_max_distance: float = Field(default=0.1, ge=0.0, le=1.0)


class PhyloMatrixConfig(BaseModel):
    """Top-level YAML config model."""

    model_config = ConfigDict(extra="forbid")

    orthologize: OrthologizeConfig | None = None
    bbmerge: BBMergeConfig | None = None
    bbdecompose: BBDecomposeConfig | None = None


def load_config(config_path: Path | None) -> PhyloMatrixConfig:
    """Load and validate a YAML config file."""

    if config_path is None:
        return PhyloMatrixConfig()

    if not config_path.exists():
        raise PhyloMatrixUsageError(f"Config file does not exist: {config_path}")

    if not config_path.is_file():
        raise PhyloMatrixUsageError(f"Config path is not a file: {config_path}")

    payload_raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if payload_raw is None:
        payload_raw = {}

    if not isinstance(payload_raw, dict):
        raise PhyloMatrixUsageError("Config YAML must be a key/value mapping at the top level.")

    try:
        return PhyloMatrixConfig.model_validate(payload_raw)
    except ValidationError as exc:
        raise PhyloMatrixUsageError(f"Invalid config file: {config_path}\n{exc}") from exc


def environment_overrides(
    model_cls: type[BaseModel],
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Collect PHYLOMATRIX_<KNOB> values for the knobs this model declares."""

    source = os.environ if environ is None else environ
    overrides: dict[str, str] = {}
    for knob in ENV_KNOBS:
        if knob not in model_cls.model_fields:
            continue
        value = source.get(f"{ENV_PREFIX}{knob.upper()}")
        if value is not None and value.strip() != "":
            overrides[knob] = value.strip()
    return overrides


T = TypeVar("T", bound=CommonConfig)


def merge_command_config(
    *,
    config_path: Path | None,
    section: str,
    model_cls: type[T],
    cli_overrides: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> T:
    """Merge YAML values, environment knobs and explicit CLI overrides, then validate."""

    root = load_config(config_path)
    section_model = getattr(root, section)

    merged: dict[str, Any] = {}
    if section_model is not None:
        merged.update(section_model.model_dump(exclude_none=True, exclude_unset=True))

    merged.update(environment_overrides(model_cls, environ))

    for key, value in cli_overrides.items():
        if value is not None:
            merged[key] = value

    try:
        return model_cls.model_validate(merged)
    except ValidationError as exc:
        raise PhyloMatrixUsageError(f"Invalid merged config for `{section}`:\n{exc}") from exc
