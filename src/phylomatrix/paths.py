from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from phylomatrix.exceptions import PhyloMatrixUsageError


@dataclass(frozen=True, slots=True)
class OutputLayout:
    root: Path
    merged_dir: Path
    backbone_dir: Path
    clades_dir: Path


def sanitize_identifier(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned.strip("_") or "unknown"


def output_layout(outdir: Path) -> OutputLayout:
    return OutputLayout(
        root=outdir,
        merged_dir=outdir / "merged",
        backbone_dir=outdir / "backbone",
        clades_dir=outdir / "clades",
    )


def create_output_layout(outdir: Path) -> OutputLayout:
    layout = output_layout(outdir)
    layout.root.mkdir(parents=True, exist_ok=True)
    return layout


def merged_cluster_path(layout: OutputLayout, cluster_index: int) -> Path:
    return layout.merged_dir / f"cluster{cluster_index}.fa"


def clade_dir(layout: OutputLayout, clade_index: int) -> Path:
    return layout.clades_dir / f"clade{clade_index}"


def clade_alignment_path(layout: OutputLayout, clade_index: int, alignment_path: Path) -> Path:
    return clade_dir(layout, clade_index) / sanitize_identifier(alignment_path.name)


def clade_outgroup_path(layout: OutputLayout, clade_index: int) -> Path:
    return clade_dir(layout, clade_index) / "outgroup.txt"


def check_clade_alignment_names(alignment_paths: Iterable[Path]) -> None:
    """Reject alignments that would be written to the same clade file."""

    seen: dict[str, Path] = {}
    clashes: list[str] = []
    for path in alignment_paths:
        name = sanitize_identifier(path.name)
        if name in seen:
            clashes.append(f"{seen[name]} and {path} -> {name}")
        else:
            seen[name] = path
    if clashes:
        raise PhyloMatrixUsageError(
            "Alignments would overwrite each other in clade directories: " + "; ".join(clashes)
        )
