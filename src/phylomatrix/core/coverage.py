from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Collection, Iterable, Mapping, Sequence

from phylomatrix.core.alignment import GAP_SYMBOLS, Alignment, Defline
from phylomatrix.core.sequences import alignment_seed_id
from phylomatrix.exceptions import PhyloMatrixError
from phylomatrix.logging import get_logger

logger = get_logger("core.coverage")

MISSING_CHARACTER = "?"
NAME_WIDTH = 10


@dataclass(slots=True)
class AlignmentIndex:
    """Which exemplars each alignment holds, and which alignments hold each exemplar."""

    taxa_for_aln: dict[Path, list[str]] = field(default_factory=dict)
    alns_for_taxon: dict[str, list[Path]] = field(default_factory=dict)


def index_alignments(alignments: Sequence[Alignment], exemplars: Sequence[str]) -> AlignmentIndex:
    index = AlignmentIndex(alns_for_taxon={taxon: [] for taxon in exemplars})
    wanted = set(exemplars)
    for alignment in alignments:
        present = [species for species in alignment.species_ids() if species in wanted]
        index.taxa_for_aln[alignment.path] = present
        for species in present:
            index.alns_for_taxon[species].append(alignment.path)
    return index


@dataclass(slots=True)
class CoverageResult:
    """Alignments picked by the greedy cover and the taxa that stayed in."""

    selected: list[Path] = field(default_factory=list)
    taxa: list[str] = field(default_factory=list)
    seen: Counter = field(default_factory=Counter)
    exhausted: list[str] = field(default_factory=list)
    dropped_taxa: list[str] = field(default_factory=list)
    dropped_alignments: list[Path] = field(default_factory=list)


def select_alignments(
    exemplars: Sequence[str],
    alignments: Sequence[Alignment],
    min_coverage: int,
    keep: Collection[str] = (),
) -> CoverageResult:
    """Greedy cover: rarest exemplar first, richest alignment first.

    Each exemplar pulls unselected alignments until it has been seen in
    `min_coverage` of them or runs out. Exemplars left below the minimum are
    dropped, then selected alignments holding none of the remaining taxa.
    Taxa in `keep` stay in whenever at least one selected alignment holds them.
    This is a heuristic; it does not minimise the number of alignments.
    """

    index = index_alignments(alignments, exemplars)
    richness = {path: len(taxa) for path, taxa in index.taxa_for_aln.items()}

    for taxon in exemplars:
        index.alns_for_taxon[taxon].sort(key=lambda path: richness[path], reverse=True)
    ordered_taxa = sorted(exemplars, key=lambda taxon: len(index.alns_for_taxon[taxon]))

    result = CoverageResult()
    chosen: set[Path] = set()

    for taxon in ordered_taxa:
        candidates = iter(index.alns_for_taxon[taxon])
        while result.seen[taxon] < min_coverage:
            path = next((p for p in candidates if p not in chosen), None)
            if path is None:
                logger.info(
                    "Exemplar %s exhausted its alignments after %d of %d.",
                    taxon,
                    result.seen[taxon],
                    min_coverage,
                )
                result.exhausted.append(taxon)
                break
            chosen.add(path)
            result.selected.append(path)
            result.seen.update(index.taxa_for_aln[path])

    for taxon in ordered_taxa:
        if result.seen[taxon] >= min_coverage:
            result.taxa.append(taxon)
        elif taxon in keep and result.seen[taxon] > 0:
            logger.info(
                "Keeping included taxon %s with %d of %d alignments.", taxon, result.seen[taxon], min_coverage
            )
            result.taxa.append(taxon)
        else:
            result.dropped_taxa.append(taxon)
    if result.dropped_taxa:
        logger.warning(
            "Dropping %d exemplar(s) below %d alignments: %s",
            len(result.dropped_taxa),
            min_coverage,
            ", ".join(result.dropped_taxa),
        )

    final_taxa = set(result.taxa)
    kept: list[Path] = []
    for path in result.selected:
        if final_taxa.intersection(index.taxa_for_aln[path]):
            kept.append(path)
        else:
            result.dropped_alignments.append(path)
    result.selected = kept
    return result


@dataclass(frozen=True, slots=True)
class SupermatrixBlock:
    path: Path
    seed_id: str | None
    nchar: int
    rows: Mapping[str, str]
    sequence_ids: Mapping[str, str]


@dataclass(slots=True)
class Supermatrix:
    taxa: list[str]
    blocks: list[SupermatrixBlock]

    @property
    def ntax(self) -> int:
        return len(self.taxa)

    @property
    def nchar(self) -> int:
        return sum(block.nchar for block in self.blocks)

    def row(self, block: SupermatrixBlock, taxon: str) -> str:
        return block.rows.get(taxon, MISSING_CHARACTER * block.nchar)

    def to_interleaved(self) -> str:
        lines = [f"{self.ntax} {self.nchar}"]
        for position, block in enumerate(self.blocks):
            if position:
                lines.append("")
            for taxon in self.taxa:
                sequence = self.row(block, taxon)
                if position == 0:
                    name = taxon.ljust(NAME_WIDTH)
                    if len(taxon) >= NAME_WIDTH:
                        name += " "
                    lines.append(f"{name}{sequence}")
                else:
                    lines.append(sequence)
        return "\n".join(lines) + "\n"

    def without_gap_columns(self) -> "Supermatrix":
        """Drop columns in which every taxon has a gap or missing symbol."""

        blocks: list[SupermatrixBlock] = []
        for block in self.blocks:
            rows = [self.row(block, taxon) for taxon in self.taxa]
            keep = [
                column
                for column in range(block.nchar)
                if any(row[column] not in GAP_SYMBOLS for row in rows)
            ]
            if not keep:
                continue
            stripped = {
                taxon: "".join(sequence[column] for column in keep)
                for taxon, sequence in block.rows.items()
            }
            blocks.append(
                SupermatrixBlock(
                    path=block.path,
                    seed_id=block.seed_id,
                    nchar=len(keep),
                    rows=stripped,
                    sequence_ids=block.sequence_ids,
                )
            )
        return Supermatrix(taxa=list(self.taxa), blocks=blocks)


def _block_for(alignment: Alignment, taxa: Sequence[str]) -> SupermatrixBlock:
    alignment.validate()
    wanted = set(taxa)
    rows: dict[str, str] = {}
    sequence_ids: dict[str, str] = {}
    for record in alignment.records:
        defline = Defline.parse(record.header)
        taxon = defline.species_id
        if taxon is None or taxon not in wanted:
            continue
        if taxon in rows:
            logger.warning(
                "Alignment %s holds several sequences for %s; using the first.",
                alignment.path,
                taxon,
            )
            continue
        rows[taxon] = record.sequence
        sequence_ids[taxon] = defline.seq_id or record.header

    try:
        seed_id = alignment_seed_id(alignment)
    except PhyloMatrixError:
        seed_id = None
    return SupermatrixBlock(
        path=alignment.path,
        seed_id=seed_id,
        nchar=alignment.nchar,
        rows=rows,
        sequence_ids=sequence_ids,
    )


def build_supermatrix(result: CoverageResult, alignments: Iterable[Alignment]) -> Supermatrix:
    by_path = {alignment.path: alignment for alignment in alignments}
    blocks = [_block_for(by_path[path], result.taxa) for path in result.selected]
    return Supermatrix(taxa=list(result.taxa), blocks=blocks)


def marker_block(alignment: Alignment, taxa: Iterable[str]) -> SupermatrixBlock:
    """Every sequence id of `taxa` in one alignment, comma-joined per taxon."""

    wanted = set(taxa)
    rows: dict[str, str] = {}
    sequence_ids: dict[str, list[str]] = {}
    for record in alignment.records:
        defline = Defline.parse(record.header)
        taxon = defline.species_id
        if taxon is None or taxon not in wanted:
            continue
        rows.setdefault(taxon, record.sequence)
        sequence_ids.setdefault(taxon, []).append(defline.seq_id or record.header)

    try:
        seed_id = alignment_seed_id(alignment)
    except PhyloMatrixError:
        seed_id = None
    return SupermatrixBlock(
        path=alignment.path,
        seed_id=seed_id,
        nchar=alignment.nchar,
        rows=rows,
        sequence_ids={taxon: ",".join(ids) for taxon, ids in sequence_ids.items()},
    )


def marker_summary_rows(
    blocks: Sequence[SupermatrixBlock],
    taxa: Sequence[str],
    labels: Mapping[str, str] | None = None,
) -> tuple[list[str], list[list[str]], list[str]]:
    """Taxon x marker table of the sequence ids used, plus one footer per marker."""

    header = ["taxon", *(block.path.name for block in blocks)]
    rows: list[list[str]] = []
    for taxon in taxa:
        label = labels.get(taxon, taxon) if labels else taxon
        rows.append([label, *(block.sequence_ids.get(taxon, "") for block in blocks)])
    footer = [f"{block.path.name}\tseed {block.seed_id or 'NA'}\t{block.nchar} sites" for block in blocks]
    return header, rows, footer
