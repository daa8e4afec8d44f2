from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from phylomatrix.config import BBDecomposeConfig, merge_command_config
from phylomatrix.core.alignment import Alignment
from phylomatrix.core.coverage import SupermatrixBlock, marker_block, marker_summary_rows
from phylomatrix.core.decompose import (
    AlignmentAssessment,
    assess_alignment,
    choose_outgroup,
    extract_clade_sets,
    outgroup_species,
    read_backbone_tree,
    read_classification_tree,
    write_clade_alignment,
)
from phylomatrix.core.graph import id_sort_key
from phylomatrix.core.taxa import read_taxa_table
from phylomatrix.exceptions import PhyloMatrixError, PhyloMatrixUsageError
from phylomatrix.logging import configure_logging, get_logger, log_event
from phylomatrix.manifest import create_run_manifest, finalize_manifest, write_manifest
from phylomatrix.paths import (
    check_clade_alignment_names,
    clade_alignment_path,
    clade_outgroup_path,
    create_output_layout,
)
from phylomatrix.utils.io import write_lines, write_tsv
from phylomatrix.utils.parallel import map_with_progress
from phylomatrix.utils.validation import read_alignment_list

app = typer.Typer(help="Decompose the backbone tree into clades and assign alignments to them.")
console = Console()


def _print_plan(step_plan: list[str]) -> None:
    console.print("[bold]Backbone decomposition step plan[/bold]")
    for idx, step in enumerate(step_plan, start=1):
        console.print(f"  {idx}. {step}")


def run_bbdecompose(
    *,
    config_path: Path | None,
    alignments: Path | None,
    taxa: Path | None,
    backbone: Path | None,
    tree_format: str | None,
    outdir: Path | None,
    markers_file: Path | None,
    add_outgroups: bool | None,
    classtree: Path | None,
    clade_min_density: float | None,
    clade_max_distance: float | None,
    threads: int | None,
    dry_run: bool | None,
    force: bool | None,
    log_file: Path | None,
    verbose: bool | None,
    quiet: bool | None,
) -> int:
    try:
        cfg = merge_command_config(
            config_path=config_path,
            section="bbdecompose",
            model_cls=BBDecomposeConfig,
            cli_overrides={
                "alignments": alignments,
                "taxa": taxa,
                "backbone": backbone,
                "tree_format": tree_format,
                "outdir": outdir,
                "markers_file": markers_file,
                "add_outgroups": add_outgroups,
                "classtree": classtree,
                "clade_min_density": clade_min_density,
                "clade_max_distance": clade_max_distance,
                "threads": threads,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )

        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("bbdecompose")

        if cfg.alignments is None:
            raise PhyloMatrixUsageError(
                "Missing alignment list. Provide --alignments or set bbdecompose.alignments in config."
            )
        if cfg.taxa is None:
            raise PhyloMatrixUsageError("Missing taxa table. Provide --taxa or set bbdecompose.taxa in config.")
        if cfg.backbone is None:
            raise PhyloMatrixUsageError(
                "Missing backbone tree. Provide --backbone or set bbdecompose.backbone in config."
            )
        if cfg.add_outgroups and cfg.classtree is None:
            raise PhyloMatrixUsageError("--add-outgroups needs a classification tree. Provide --classtree.")

        table = read_taxa_table(cfg.taxa)
        tree = read_backbone_tree(cfg.backbone, cfg.tree_format)
        class_tree = read_classification_tree(cfg.classtree) if cfg.add_outgroups else None
        alignment_paths = read_alignment_list(cfg.alignments)
        check_clade_alignment_names(alignment_paths)

        layout = create_output_layout(cfg.outdir)
        markers_path = cfg.markers_file or layout.root / "markers-clades.tsv"
        assessments_path = layout.root / "assessments.tsv"
        clades_path = layout.root / "clades.tsv"

        if (
            layout.clades_dir.exists()
            and any(layout.clades_dir.iterdir())
            and not cfg.force
            and not cfg.dry_run
        ):
            raise PhyloMatrixUsageError(
                f"Clade output directory already contains files: {layout.clades_dir}. Use --force to overwrite."
            )

        step_plan = [
            "Read the taxa table, backbone tree and merged alignment list",
            "Tally genus occurrences and single-genus subtrees on the backbone",
            "Group paraphyletic and monophyletic genera into clade sets",
            "Pick sister-lineage outgroup species from the classification tree"
            if cfg.add_outgroups
            else "Write clades without outgroup species",
            "Assess each alignment for distance and per-clade species density",
            "Write clade alignments, the clade table and the taxon x marker table",
        ]

        manifest = create_run_manifest(
            command="bbdecompose",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            parameters=cfg.model_dump(mode="json"),
            input_paths=[
                cfg.alignments,
                cfg.taxa,
                cfg.backbone,
                *([cfg.classtree] if class_tree is not None else []),
                *alignment_paths,
            ],
            planned_steps=step_plan,
        )
        write_manifest(layout.root, manifest)

        _print_plan(step_plan)

        clade_sets = extract_clade_sets(tree, table)

        if cfg.dry_run:
            logger.info(
                "Dry-run requested; found %d clade sets, stopping before clade alignments are written.",
                len(clade_sets),
            )
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        def _assess(path: Path) -> tuple[Alignment, AlignmentAssessment]:
            alignment = Alignment.read(path)
            return alignment, assess_alignment(
                alignment,
                clade_sets,
                min_density=cfg.clade_min_density,
                max_distance=cfg.clade_max_distance,
            )

        assessed = map_with_progress(
            _assess,
            alignment_paths,
            threads=cfg.threads,
            description="Assessing alignments",
            console=console,
        )

        if class_tree is not None:
            pool = [alignment for alignment, _ in assessed]
            for clade_set in clade_sets:
                candidates = outgroup_species(class_tree, clade_set.species, table)
                clade_set.outgroup = choose_outgroup(candidates, pool)
                if clade_set.outgroup:
                    logger.info("Outgroup of %s: %s", clade_set.name, ", ".join(clade_set.outgroup))
                else:
                    logger.warning("No outgroup species found for %s.", clade_set.name)

        by_index = {clade_set.index: clade_set for clade_set in clade_sets}
        output_paths: list[Path] = []
        assessment_rows: list[list[str]] = []
        marker_blocks: list[SupermatrixBlock] = []
        summary = {
            "alignments": len(alignment_paths),
            "clade_sets": len(clade_sets),
            "too_divergent": 0,
            "unassigned": 0,
            "clade_alignments": 0,
            "outgroup_species": sum(len(clade_set.outgroup) for clade_set in clade_sets),
        }

        for alignment, assessment in assessed:
            if assessment.too_divergent:
                summary["too_divergent"] += 1
                log_event(
                    logger,
                    "alignment_too_divergent",
                    "%s is too divergent: %.4f > %.4f",
                    alignment.path,
                    assessment.mean_distance,
                    cfg.clade_max_distance,
                    alignment=str(alignment.path),
                    distance=assessment.mean_distance,
                )
            elif not assessment.clade_indices:
                summary["unassigned"] += 1
                logger.debug("%s is not dense enough for any clade.", alignment.path)

            written: set[str] = set()
            for clade_index in assessment.clade_indices:
                clade_set = by_index[clade_index]
                target = write_clade_alignment(
                    alignment,
                    clade_set,
                    clade_alignment_path(layout, clade_index, alignment.path),
                )
                clade_set.alignments.append(target)
                output_paths.append(target)
                written.update(clade_set.species)
                written.update(clade_set.outgroup)
                summary["clade_alignments"] += 1
            if written:
                marker_blocks.append(marker_block(alignment, written))

            assessment_rows.append(
                [
                    alignment.name,
                    f"{assessment.mean_distance:.6f}",
                    ",".join(by_index[idx].name for idx in assessment.clade_indices),
                ]
            )

        for clade_set in clade_sets:
            if clade_set.alignments and clade_set.outgroup:
                output_paths.append(
                    write_lines(clade_outgroup_path(layout, clade_set.index), clade_set.outgroup, force=cfg.force)
                )

        clade_rows = [
            [
                clade_set.name,
                ",".join(clade_set.genera),
                str(len(clade_set.species)),
                str(len(clade_set.alignments)),
                ",".join(clade_set.species),
                ",".join(clade_set.outgroup),
            ]
            for clade_set in clade_sets
        ]
        empty = [clade_set.name for clade_set in clade_sets if not clade_set.alignments]
        if empty:
            logger.warning("No alignments were assigned to %d clade(s): %s", len(empty), ", ".join(empty))

        included = sorted({taxon for block in marker_blocks for taxon in block.sequence_ids}, key=id_sort_key)
        header, marker_rows, footer = marker_summary_rows(
            marker_blocks,
            included,
            labels={species: table.label(species) for species in included},
        )
        output_paths.append(write_tsv(markers_path, header, marker_rows, footer=footer, force=cfg.force))
        output_paths.append(
            write_tsv(
                assessments_path,
                ["alignment", "mean_distance", "clades"],
                assessment_rows,
                force=cfg.force,
            )
        )
        output_paths.append(
            write_tsv(
                clades_path,
                ["clade", "genera", "species_count", "alignments", "species", "outgroup"],
                clade_rows,
                force=cfg.force,
            )
        )

        finalize_manifest(manifest, status="completed", output_paths=output_paths, summary=summary)
        write_manifest(layout.root, manifest)

        logger.info(
            "Wrote %d clade alignments across %d clades to %s.",
            summary["clade_alignments"],
            len(clade_sets),
            layout.clades_dir,
        )
        return 0

    except PhyloMatrixError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover
        get_logger("bbdecompose").exception("Unhandled bbdecompose error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def bbdecompose_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    alignments: Path | None = typer.Option(
        None, "--alignments", help="Text file listing one merged alignment FASTA per line."
    ),
    taxa: Path | None = typer.Option(
        None, "--taxa", help="Taxa table TSV with one column per rank (species and genus required)."
    ),
    backbone: Path | None = typer.Option(None, "--backbone", help="Rooted backbone tree file."),
    tree_format: str | None = typer.Option(None, "--format", help="Backbone tree format: newick or nexus."),
    outdir: Path | None = typer.Option(None, "--outdir", help="Output root directory."),
    markers_file: Path | None = typer.Option(
        None, "--markers-file", help="Taxon x marker table path (default: <outdir>/markers-clades.tsv)."
    ),
    add_outgroups: bool | None = typer.Option(
        None,
        "--add-outgroups/--no-outgroups",
        help="Add sister-lineage outgroup species to each clade; needs --classtree.",
    ),
    classtree: Path | None = typer.Option(
        None, "--classtree", help="Newick classification tree used to pick outgroups."
    ),
    clade_min_density: float | None = typer.Option(
        None, "--min-density", min=0.0, max=1.0, help="Minimum fraction of clade species in an alignment."
    ),
    clade_max_distance: float | None = typer.Option(
        None, "--max-distance", min=0.0, max=1.0, help="Maximum mean distance of a clade alignment."
    ),
    threads: int | None = typer.Option(None, "--threads", min=1, help="Worker threads."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not write outputs."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing output files."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_bbdecompose(
        config_path=config,
        alignments=alignments,
        taxa=taxa,
        backbone=backbone,
        tree_format=tree_format,
        outdir=outdir,
        markers_file=markers_file,
        add_outgroups=add_outgroups,
        classtree=classtree,
        clade_min_density=clade_min_density,
        clade_max_distance=clade_max_distance,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
