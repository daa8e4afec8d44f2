from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from phylomatrix.config import BBMergeConfig, merge_command_config
from phylomatrix.core.alignment import Alignment
from phylomatrix.core.coverage import build_supermatrix, marker_summary_rows, select_alignments
from phylomatrix.core.exemplars import ExemplarScores, genus_pair_distances, restrict_candidates
from phylomatrix.core.taxa import read_taxa_table
from phylomatrix.exceptions import PhyloMatrixError, PhyloMatrixUsageError
from phylomatrix.logging import configure_logging, get_logger, log_event
from phylomatrix.manifest import create_run_manifest, finalize_manifest, write_manifest
from phylomatrix.paths import create_output_layout
from phylomatrix.utils.io import write_text, write_tsv
from phylomatrix.utils.parallel import map_with_progress
from phylomatrix.utils.validation import read_alignment_list

app = typer.Typer(help="Select exemplar taxa and alignments and write the backbone supermatrix.")
console = Console()


def _print_plan(step_plan: list[str]) -> None:
    console.print("[bold]Backbone merge step plan[/bold]")
    for idx, step in enumerate(step_plan, start=1):
        console.print(f"  {idx}. {step}")


def _split_taxa(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def run_bbmerge(
    *,
    config_path: Path | None,
    alignments: Path | None,
    taxa: Path | None,
    outdir: Path | None,
    outfile: Path | None,
    markers_file: Path | None,
    backbone_min_coverage: int | None,
    strip_gap_columns: bool | None,
    include_taxa: str | None,
    prune_candidates: bool | None,
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
            section="bbmerge",
            model_cls=BBMergeConfig,
            cli_overrides={
                "alignments": alignments,
                "taxa": taxa,
                "outdir": outdir,
                "outfile": outfile,
                "markers_file": markers_file,
                "backbone_min_coverage": backbone_min_coverage,
                "strip_gap_columns": strip_gap_columns,
                "include_taxa": _split_taxa(include_taxa),
                "prune_candidates": prune_candidates,
                "threads": threads,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )

        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("bbmerge")

        if cfg.alignments is None:
            raise PhyloMatrixUsageError(
                "Missing alignment list. Provide --alignments or set bbmerge.alignments in config."
            )
        if cfg.taxa is None:
            raise PhyloMatrixUsageError("Missing taxa table. Provide --taxa or set bbmerge.taxa in config.")

        table = read_taxa_table(cfg.taxa)
        included = table.resolve_species(cfg.include_taxa)
        alignment_paths = read_alignment_list(cfg.alignments)
        if not alignment_paths:
            raise PhyloMatrixUsageError(f"No existing alignments listed in {cfg.alignments}")

        layout = create_output_layout(cfg.outdir)
        supermatrix_path = cfg.outfile or layout.backbone_dir / "supermatrix.phy"
        markers_path = cfg.markers_file or layout.backbone_dir / "markers-backbone.tsv"
        exemplars_path = layout.backbone_dir / "exemplars.tsv"

        step_plan = [
            "Read the taxa table and the merged alignment list",
            "Prune exemplar candidates to the largest marker-sharing set"
            if cfg.prune_candidates
            else "Keep every species as an exemplar candidate",
            "Score congeneric species pairs per alignment",
            "Pick the most divergent exemplar pair per genus",
            "Greedily select alignments until exemplars reach minimum coverage",
            "Write the interleaved supermatrix and marker tables",
        ]

        manifest = create_run_manifest(
            command="bbmerge",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            parameters=cfg.model_dump(mode="json"),
            input_paths=[cfg.alignments, cfg.taxa, *alignment_paths],
            planned_steps=step_plan,
        )
        write_manifest(layout.root, manifest)

        _print_plan(step_plan)

        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before the supermatrix is written.")
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        pool = [Alignment.read(path) for path in alignment_paths]
        species_by_genus = table.species_by_genus()
        low_coverage: list[str] = []
        disconnected: list[str] = []
        if cfg.prune_candidates:
            candidates = restrict_candidates(pool, species_by_genus, cfg.backbone_min_coverage)
            low_coverage = candidates.low_coverage
            disconnected = candidates.disconnected
            log_event(
                logger,
                "candidates_pruned",
                "Pruned %d low-coverage and %d disconnected species; %d candidates remain.",
                len(low_coverage),
                len(disconnected),
                len(candidates.candidates),
                low_coverage=low_coverage,
                disconnected=disconnected,
            )
            for genus in candidates.unlinked_genera:
                logger.info("Species of genus %s share no marker; keeping a single exemplar.", genus)
            species_by_genus = candidates.species_by_genus

        pair_results = map_with_progress(
            lambda alignment: genus_pair_distances(alignment, species_by_genus),
            pool,
            threads=cfg.threads,
            description="Scoring exemplar pairs",
            console=console,
        )
        scores = ExemplarScores()
        for result in pair_results:
            scores.add(result)

        pairs = scores.pairs(species_by_genus)
        exemplars = scores.exemplars(species_by_genus)
        logger.info("Chose %d exemplars from %d genera.", len(exemplars), len(pairs))
        forced = [species for species in included if species not in exemplars]
        if forced:
            logger.info("Adding %d included taxa to the exemplars: %s", len(forced), ", ".join(forced))
            exemplars.extend(forced)

        coverage = select_alignments(exemplars, pool, cfg.backbone_min_coverage, keep=set(included))
        for taxon in coverage.dropped_taxa:
            log_event(
                logger,
                "exemplar_dropped",
                "Exemplar %s is covered by only %d alignments.",
                taxon,
                coverage.seen[taxon],
                species=taxon,
                seen=coverage.seen[taxon],
            )
        if not coverage.taxa:
            logger.warning("No exemplar reached %d alignments; the supermatrix is empty.", cfg.backbone_min_coverage)

        supermatrix = build_supermatrix(coverage, pool)
        if cfg.strip_gap_columns:
            before = supermatrix.nchar
            supermatrix = supermatrix.without_gap_columns()
            logger.info("Removed %d gap-only columns.", before - supermatrix.nchar)

        retained = set(coverage.taxa)
        exemplar_rows = [
            [
                pair.genus,
                species,
                table.label(species),
                pair.method,
                f"{pair.score:g}",
                str(coverage.seen[species]),
                "yes" if species in retained else "no",
            ]
            for pair in pairs
            for species in pair.species
        ]
        exemplar_rows.extend(
            [
                table.genus_of(species) or "",
                species,
                table.label(species),
                "included",
                "0",
                str(coverage.seen[species]),
                "yes" if species in retained else "no",
            ]
            for species in forced
        )

        header, marker_rows, footer = marker_summary_rows(
            supermatrix.blocks,
            supermatrix.taxa,
            labels={species: table.label(species) for species in supermatrix.taxa},
        )
        output_paths: list[Path] = [
            write_text(supermatrix_path, supermatrix.to_interleaved(), force=cfg.force),
            write_tsv(markers_path, header, marker_rows, footer=footer, force=cfg.force),
            write_tsv(
                exemplars_path,
                ["genus", "species", "label", "method", "score", "alignments", "retained"],
                exemplar_rows,
                force=cfg.force,
            ),
        ]

        summary = {
            "alignments": len(pool),
            "genera": len(pairs),
            "exemplars": len(exemplars),
            "genera_without_comparisons": sum(1 for pair in pairs if pair.method == "occurrence"),
            "included_taxa": len(forced),
            "low_coverage_species": len(low_coverage),
            "disconnected_species": len(disconnected),
            "exhausted_exemplars": len(coverage.exhausted),
            "dropped_exemplars": len(coverage.dropped_taxa),
            "dropped_alignments": len(coverage.dropped_alignments),
            "selected_alignments": len(supermatrix.blocks),
            "ntax": supermatrix.ntax,
            "nchar": supermatrix.nchar,
        }
        finalize_manifest(manifest, status="completed", output_paths=output_paths, summary=summary)
        write_manifest(layout.root, manifest)

        logger.info(
            "Wrote a %d x %d supermatrix from %d alignments to %s.",
            supermatrix.ntax,
            supermatrix.nchar,
            len(supermatrix.blocks),
            supermatrix_path,
        )
        return 0

    except PhyloMatrixError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover
        get_logger("bbmerge").exception("Unhandled bbmerge error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def bbmerge_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    alignments: Path | None = typer.Option(
        None, "--alignments", help="Text file listing one merged alignment FASTA per line."
    ),
    taxa: Path | None = typer.Option(
        None, "--taxa", help="Taxa table TSV with one column per rank (species and genus required)."
    ),
    outdir: Path | None = typer.Option(None, "--outdir", help="Output root directory."),
    outfile: Path | None = typer.Option(
        None, "--outfile", help="Supermatrix path (default: <outdir>/backbone/supermatrix.phy)."
    ),
    markers_file: Path | None = typer.Option(None, "--markers-file", help="Marker summary table path."),
    backbone_min_coverage: int | None = typer.Option(
        None, "--min-coverage", min=1, help="Alignments each exemplar must appear in."
    ),
    strip_gap_columns: bool | None = typer.Option(
        None,
        "--strip-gap-columns/--keep-gap-columns",
        help="Remove columns holding only gaps or missing data.",
    ),
    include_taxa: str | None = typer.Option(
        None,
        "--include-taxa",
        help="Comma-separated taxon ids or species names to keep regardless of coverage and divergence.",
    ),
    prune_candidates: bool | None = typer.Option(
        None,
        "--prune-candidates/--all-candidates",
        help="Restrict exemplar candidates to well-covered species in the largest marker-sharing set.",
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

    exit_code = run_bbmerge(
        config_path=config,
        alignments=alignments,
        taxa=taxa,
        outdir=outdir,
        outfile=outfile,
        markers_file=markers_file,
        backbone_min_coverage=backbone_min_coverage,
        strip_gap_columns=strip_gap_columns,
        include_taxa=include_taxa,
        prune_candidates=prune_candidates,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
