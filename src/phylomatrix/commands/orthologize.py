from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Sequence

import typer
from rich.console import Console

from phylomatrix.config import OrthologizeConfig, merge_command_config
from phylomatrix.core.alignment import Alignment, FastaRecord, write_fasta_records
from phylomatrix.core.graph import SearchHit, build_similarity_clusters, parse_blast_tabular
from phylomatrix.core.merge import MergeResult, ProfileAligner, merge_cluster
from phylomatrix.core.mock import MockSearch, mock_profile_merge
from phylomatrix.core.sequences import SequenceStore, index_by_seed
from phylomatrix.exceptions import PhyloMatrixError, PhyloMatrixUsageError
from phylomatrix.logging import configure_logging, get_logger, log_event
from phylomatrix.manifest import create_run_manifest, finalize_manifest, write_manifest
from phylomatrix.paths import create_output_layout, merged_cluster_path
from phylomatrix.runners.blast import BlastnRunner, MakeBlastDBRunner
from phylomatrix.runners.muscle import MuscleRunner
from phylomatrix.utils.io import ensure_dir, write_lines, write_tsv
from phylomatrix.utils.parallel import map_with_progress
from phylomatrix.utils.validation import read_alignment_list, validate_optional_file

app = typer.Typer(help="Cluster raw alignments by seed similarity and merge orthologous clusters.")
console = Console()


def blast_search(
    store: SequenceStore,
    *,
    workdir: Path,
    blastn: BlastnRunner,
    makeblastdb: MakeBlastDBRunner,
    threads: int,
) -> Callable[[Sequence[str]], list[SearchHit]]:
    """All-vs-all BLAST of the seed sequences against a database of themselves."""

    def search(seeds: Sequence[str]) -> list[SearchHit]:
        ensure_dir(workdir)
        seeds_fasta = write_fasta_records(
            workdir / "seeds.fa",
            [FastaRecord(header=seed, sequence=store.get(seed)) for seed in seeds],
        )
        db_prefix = workdir / "seeds"
        makeblastdb.build(fasta=seeds_fasta, db_prefix=db_prefix)
        result = blastn.all_vs_all(query=seeds_fasta, db_prefix=db_prefix, threads=threads)
        (workdir / "hits.tsv").write_text(result.stdout, encoding="utf-8")
        return parse_blast_tabular(result.stdout)

    return search


def _print_plan(step_plan: list[str]) -> None:
    console.print("[bold]Orthologize step plan[/bold]")
    for idx, step in enumerate(step_plan, start=1):
        console.print(f"  {idx}. {step}")


def run_orthologize(
    *,
    config_path: Path | None,
    alignments: Path | None,
    seeds_fasta: Path | None,
    outdir: Path | None,
    outfile: Path | None,
    overlap_threshold: float | None,
    merge_max_distance: float | None,
    min_singleton_sequences: int | None,
    mock: bool | None,
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
            section="orthologize",
            model_cls=OrthologizeConfig,
            cli_overrides={
                "alignments": alignments,
                "seeds_fasta": seeds_fasta,
                "outdir": outdir,
                "outfile": outfile,
                "overlap_threshold": overlap_threshold,
                "merge_max_distance": merge_max_distance,
                "min_singleton_sequences": min_singleton_sequences,
                "mock": mock,
                "threads": threads,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )

        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("orthologize")

        if cfg.alignments is None:
            raise PhyloMatrixUsageError(
                "Missing alignment list. Provide --alignments or set orthologize.alignments in config."
            )
        validate_optional_file(cfg.seeds_fasta, "Seed FASTA")

        alignment_paths = read_alignment_list(cfg.alignments)
        if not alignment_paths:
            raise PhyloMatrixUsageError(f"No existing alignments listed in {cfg.alignments}")

        layout = create_output_layout(cfg.outdir)
        merged_list_path = cfg.outfile or layout.root / "merged.txt"

        if (
            layout.merged_dir.exists()
            and any(layout.merged_dir.iterdir())
            and not cfg.force
            and not cfg.dry_run
        ):
            raise PhyloMatrixUsageError(
                f"Merged output directory already contains files: {layout.merged_dir}. Use --force to overwrite."
            )

        blastn = BlastnRunner(cfg.blastn)
        makeblastdb = MakeBlastDBRunner(cfg.makeblastdb)
        muscle = MuscleRunner(cfg.muscle)

        tool_versions: dict[str, str] = {}
        if cfg.mock:
            tool_versions = {"blastn": "mock", "makeblastdb": "mock", "muscle": "mock"}
        else:
            for tool_name, runner in (("blastn", blastn), ("makeblastdb", makeblastdb), ("muscle", muscle)):
                if not runner.is_available():
                    raise PhyloMatrixUsageError(
                        f"Required external tool not found in PATH: {runner.executable}. "
                        f"Install {tool_name} or run with --mock."
                    )
                tool_versions[tool_name] = runner.version(dry_run=cfg.dry_run)

        step_plan = [
            "Read the alignment list and index alignments by seed",
            "Resolve seed sequences and lengths",
            "Run the all-vs-all seed search (BLAST or mock k-mer search)",
            "Build single-linkage clusters from hits with sufficient overlap",
            "Profile-merge each cluster while mean distance stays below the threshold",
            "Write merged alignments and the merged alignment list",
        ]

        input_paths = [cfg.alignments, *alignment_paths]
        if cfg.seeds_fasta is not None:
            input_paths.append(cfg.seeds_fasta)

        manifest = create_run_manifest(
            command="orthologize",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            parameters=cfg.model_dump(mode="json"),
            input_paths=input_paths,
            planned_steps=step_plan,
            tool_versions=tool_versions,
        )
        write_manifest(layout.root, manifest)

        _print_plan(step_plan)

        if cfg.dry_run:
            logger.info("Dry-run requested; stopping before merged alignments are written.")
            finalize_manifest(manifest, status="dry-run", output_paths=[])
            write_manifest(layout.root, manifest)
            return 0

        by_seed = index_by_seed(Alignment.read(path) for path in alignment_paths)
        seeds = list(by_seed)
        logger.info("Indexed %d alignments under %d seeds.", len(alignment_paths), len(seeds))

        if cfg.seeds_fasta is not None:
            store = SequenceStore.from_fasta(cfg.seeds_fasta)
        else:
            store = SequenceStore.from_alignments(by_seed)
        lengths = store.lengths(seeds)

        if cfg.mock:
            search = MockSearch({seed: store.get(seed) for seed in seeds}, k=cfg.mock_k)
            aligner: ProfileAligner = mock_profile_merge
        else:
            search = blast_search(
                store,
                workdir=layout.root / "search",
                blastn=blastn,
                makeblastdb=makeblastdb,
                threads=cfg.threads,
            )
            aligner = muscle.profile_aligner()

        clusters = build_similarity_clusters(
            seeds,
            search=search,
            lengths=lengths,
            overlap=cfg.overlap_threshold,
        )

        ensure_dir(layout.merged_dir)
        jobs = list(enumerate(clusters))

        def _merge(job: tuple[int, tuple[str, ...]]) -> MergeResult:
            cluster_index, cluster = job
            return merge_cluster(
                [by_seed[seed].path for seed in cluster],
                aligner=aligner,
                max_distance=cfg.merge_max_distance,
                output_path=merged_cluster_path(layout, cluster_index),
            )

        results = map_with_progress(
            _merge,
            jobs,
            threads=cfg.threads,
            description="Merging clusters",
            console=console,
        )

        merged_paths: list[Path] = []
        cluster_rows: list[list[str]] = []
        summary = {
            "alignments": len(alignment_paths),
            "seeds": len(seeds),
            "duplicate_seeds": len(alignment_paths) - len(seeds),
            "clusters": len(clusters),
            "singletons": 0,
            "merged_clusters": 0,
            "rejected_merges": 0,
            "dropped_singletons": 0,
        }

        for (cluster_index, cluster), result in zip(jobs, results):
            status = "merged" if result.merged else "unmerged"
            if len(cluster) == 1:
                summary["singletons"] += 1
                status = "singleton"
                record_count = len(Alignment.read(result.path))
                if record_count < cfg.min_singleton_sequences:
                    log_event(
                        logger,
                        "singleton_dropped",
                        "Dropping singleton cluster %s with %d sequences.",
                        cluster[0],
                        record_count,
                        cluster=cluster_index,
                        seed=cluster[0],
                        sequences=record_count,
                    )
                    summary["dropped_singletons"] += 1
                    status = "dropped"
            if result.merged:
                summary["merged_clusters"] += 1
            if result.rejected:
                summary["rejected_merges"] += len(result.rejected)
                log_event(
                    logger,
                    "merge_rejected",
                    "Cluster %d kept %d of %d alignments.",
                    cluster_index,
                    len(result.accepted),
                    result.member_count,
                    cluster=cluster_index,
                    rejected=[str(path) for path in result.rejected],
                )
            if status != "dropped":
                merged_paths.append(result.path)

            cluster_rows.append(
                [
                    str(cluster_index),
                    status,
                    ",".join(cluster),
                    str(len(result.accepted)),
                    str(len(result.rejected)),
                    "" if result.mean_distance is None else f"{result.mean_distance:.6f}",
                    str(result.path),
                ]
            )

        output_paths: list[Path] = [
            write_lines(merged_list_path, merged_paths, force=cfg.force),
            write_tsv(
                layout.root / "clusters.tsv",
                ["cluster", "status", "seeds", "accepted", "rejected", "mean_distance", "alignment"],
                cluster_rows,
                force=cfg.force,
            ),
        ]
        output_paths.extend(path for path in merged_paths if path.parent == layout.merged_dir)

        finalize_manifest(manifest, status="completed", output_paths=output_paths, summary=summary)
        write_manifest(layout.root, manifest)

        logger.info(
            "Wrote %d merged alignments from %d clusters to %s.",
            len(merged_paths),
            len(clusters),
            merged_list_path,
        )
        return 0

    except PhyloMatrixError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        return exc.exit_code
    except Exception as exc:  # pragma: no cover
        get_logger("orthologize").exception("Unhandled orthologize error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def orthologize_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file."),
    alignments: Path | None = typer.Option(
        None,
        "--alignments",
        help="Text file listing one raw alignment FASTA per line.",
    ),
    seeds_fasta: Path | None = typer.Option(
        None,
        "--seeds-fasta",
        help="FASTA of seed sequences; defaults to the seed records inside each alignment.",
    ),
    outdir: Path | None = typer.Option(None, "--outdir", help="Output root directory."),
    outfile: Path | None = typer.Option(None, "--outfile", help="Merged alignment list (default: <outdir>/merged.txt)."),
    overlap_threshold: float | None = typer.Option(
        None, "--overlap", min=0.0, max=1.0, help="Minimum aligned fraction on both sides of a hit."
    ),
    merge_max_distance: float | None = typer.Option(
        None, "--merge-max-distance", min=0.0, max=1.0, help="Reject merges at or above this mean distance."
    ),
    min_singleton_sequences: int | None = typer.Option(
        None, "--min-singleton-sequences", min=0, help="Drop singleton clusters with fewer sequences."
    ),
    mock: bool | None = typer.Option(None, "--mock/--no-mock", help="Mock mode without external binaries."),
    threads: int | None = typer.Option(None, "--threads", min=1, help="Worker threads."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Plan only, do not write outputs."),
    force: bool | None = typer.Option(None, "--force", help="Overwrite existing output files."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_orthologize(
        config_path=config,
        alignments=alignments,
        seeds_fasta=seeds_fasta,
        outdir=outdir,
        outfile=outfile,
        overlap_threshold=overlap_threshold,
        merge_max_distance=merge_max_distance,
        min_singleton_sequences=min_singleton_sequences,
        mock=mock,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
