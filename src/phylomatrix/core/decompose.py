from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Sequence

from Bio import Phylo
from Bio.Phylo.BaseTree import Clade, Tree

from phylomatrix.core.alignment import Alignment, write_fasta_records
from phylomatrix.core.distance import alignment_mean_distance
from phylomatrix.core.graph import id_sort_key
from phylomatrix.core.taxa import TaxonTable
from phylomatrix.exceptions import PhyloMatrixUsageError
from phylomatrix.logging import get_logger
from phylomatrix.utils.validation import validate_nonempty_file, validate_tree_format

logger = get_logger("core.decompose")

# Sets this small cannot resolve a topology on their own.
MIN_CLADE_SPECIES = 3
MAX_OUTGROUP_SPECIES = 4


def read_tree(path: Path, fmt: str = "newick", *, label: str = "Backbone tree") -> Tree:
    validate_nonempty_file(path, label)
    tree_format = validate_tree_format(fmt)
    try:
        tree = next(iter(Phylo.parse(str(path), tree_format)), None)
    except Exception as exc:
        raise PhyloMatrixUsageError(f"Could not parse {label.lower()} {path}: {exc}") from exc
    if tree is None:
        raise PhyloMatrixUsageError(f"No tree found in {path}")
    return tree


def read_backbone_tree(path: Path, fmt: str = "newick") -> Tree:
    return read_tree(path, fmt, label="Backbone tree")


def _postorder(root: Clade) -> Iterator[Clade]:
    """Children before parents, without recursion."""

    stack: list[tuple[Clade, bool]] = [(root, False)]
    while stack:
        clade, expanded = stack.pop()
        if expanded or clade.is_terminal():
            yield clade
            continue
        stack.append((clade, True))
        for child in reversed(clade.clades):
            stack.append((child, False))


@dataclass(frozen=True, slots=True)
class NodeSummary:
    species: frozenset[str]
    genera: Counter
    terminal: bool


@dataclass(slots=True)
class GenusTally:
    """Tip occurrences per genus, and tips seen in single-genus subtrees."""

    all: Counter = field(default_factory=Counter)
    monophyletic: Counter = field(default_factory=Counter)


@dataclass(slots=True)
class TraversalSummary:
    nodes: list[NodeSummary]
    tally: GenusTally
    unknown_tips: list[str] = field(default_factory=list)


def _tip_species(clade: Clade, table: TaxonTable) -> str | None:
    name = (clade.name or "").strip().strip("'\"")
    if name in table:
        return name
    spaced = name.replace("_", " ")
    for species_id, record in table.records.items():
        if record.name and record.name in (name, spaced):
            return species_id
    return None


def summarize_tree(tree: Tree, table: TaxonTable) -> TraversalSummary:
    """First pass: species and genus counts per node, plus the genus tally."""

    tally = GenusTally()
    summaries: dict[int, NodeSummary] = {}
    ordered: list[NodeSummary] = []
    unknown: list[str] = []

    for clade in _postorder(tree.root):
        if clade.is_terminal():
            species = _tip_species(clade, table)
            genus = table.genus_of(species) if species is not None else None
            if species is None or genus is None:
                unknown.append(clade.name or "")
                summary = NodeSummary(species=frozenset(), genera=Counter(), terminal=True)
            else:
                tally.all[genus] += 1
                summary = NodeSummary(species=frozenset({species}), genera=Counter({genus: 1}), terminal=True)
        else:
            species_set: set[str] = set()
            genera: Counter = Counter()
            for child in clade.clades:
                child_summary = summaries.pop(id(child))
                species_set.update(child_summary.species)
                genera.update(child_summary.genera)
            summary = NodeSummary(species=frozenset(species_set), genera=genera, terminal=False)
            if len(species_set) >= 2 and len(genera) == 1:
                for genus, count in genera.items():
                    tally.monophyletic[genus] += count
        summaries[id(clade)] = summary
        ordered.append(summary)

    if unknown:
        logger.warning(
            "Skipping %d tree tip(s) missing from the taxa table: %s",
            len(unknown),
            ", ".join(unknown[:10]),
        )
    return TraversalSummary(nodes=ordered, tally=tally, unknown_tips=unknown)


def paraphyletic_genera(tally: GenusTally) -> set[str]:
    """Genera with exactly two tips that never shared a single-genus subtree."""

    return {genus for genus, count in tally.all.items() if count == 2 and not tally.monophyletic[genus]}


def group_genera(summary: TraversalSummary) -> list[tuple[str, ...]]:
    """Second pass: collect genus groups, each genus ending up in its outermost group."""

    paraphyletic = paraphyletic_genera(summary.tally)
    monophyletic = {genus for genus, count in summary.tally.monophyletic.items() if count}
    groups: list[tuple[str, ...]] = []

    for node in summary.nodes:
        if node.terminal:
            continue
        if any(genus in paraphyletic and count == 2 for genus, count in node.genera.items()):
            members = tuple(sorted(node.genera))
            groups.append(members)
            paraphyletic.difference_update(members)
            monophyletic.difference_update(members)

    for genus in sorted(monophyletic):
        groups.append((genus,))

    last_group = {genus: position for position, members in enumerate(groups) for genus in members}
    resolved: list[tuple[str, ...]] = []
    for position, members in enumerate(groups):
        kept = tuple(genus for genus in members if last_group[genus] == position)
        if kept:
            resolved.append(kept)
    return resolved


@dataclass(slots=True)
class CladeSet:
    index: int
    genera: tuple[str, ...]
    species: tuple[str, ...]
    outgroup: tuple[str, ...] = ()
    alignments: list[Path] = field(default_factory=list)

    @property
    def name(self) -> str:
        return f"clade{self.index}"


def extract_clade_sets(tree: Tree, table: TaxonTable) -> list[CladeSet]:
    summary = summarize_tree(tree, table)
    species_by_genus = table.species_by_genus()

    clade_sets: list[CladeSet] = []
    for genera in group_genera(summary):
        species = sorted(
            {species for genus in genera for species in species_by_genus.get(genus, [])},
            key=id_sort_key,
        )
        if len(species) < MIN_CLADE_SPECIES:
            logger.debug("Skipping genus group %s with %d species", ",".join(genera), len(species))
            continue
        clade_sets.append(CladeSet(index=len(clade_sets), genera=genera, species=tuple(species)))

    logger.info("Decomposed the backbone into %d clade sets.", len(clade_sets))
    return clade_sets


def read_classification_tree(path: Path) -> Tree:
    return read_tree(path, "newick", label="Classification tree")


def _known_species(clade: Clade, table: TaxonTable, exclude: set[str]) -> list[str]:
    found: dict[str, None] = {}
    for tip in clade.get_terminals():
        species = _tip_species(tip, table)
        if species is not None and species not in exclude:
            found.setdefault(species, None)
    return list(found)


def outgroup_species(classtree: Tree, ingroup: Sequence[str], table: TaxonTable) -> list[str]:
    """Species of the nearest sister lineage of the ingroup's common ancestor.

    The sister is the next sibling of the ancestor, else the previous one. When
    it holds no known species the search moves up one level.
    """

    wanted = set(ingroup)
    tips = [tip for tip in classtree.get_terminals() if _tip_species(tip, table) in wanted]
    if not tips:
        logger.warning("No ingroup species found in the classification tree.")
        return []

    mrca = classtree.common_ancestor(tips)
    lineage = [classtree.root, *classtree.get_path(mrca)]
    for depth in range(len(lineage) - 1, 0, -1):
        node, parent = lineage[depth], lineage[depth - 1]
        position = next(idx for idx, child in enumerate(parent.clades) if child is node)
        sisters = parent.clades[position + 1 : position + 2] or parent.clades[max(position - 1, 0) : position]
        for sister in sisters:
            species = _known_species(sister, table, wanted)
            if species:
                return sorted(species, key=id_sort_key)

    logger.warning("Cannot pick an outgroup: the ingroup's common ancestor is the classification root.")
    return []


def choose_outgroup(
    candidates: Sequence[str],
    alignments: Sequence[Alignment],
    limit: int = MAX_OUTGROUP_SPECIES,
) -> tuple[str, ...]:
    """The `limit` candidates found in most alignments, ties by id."""

    occurrences: Counter = Counter()
    wanted = set(candidates)
    for alignment in alignments:
        occurrences.update(species for species in alignment.species_ids() if species in wanted)
    ranked = sorted(occurrences, key=lambda species: (-occurrences[species], id_sort_key(species)))
    return tuple(ranked[:limit])


@dataclass(frozen=True, slots=True)
class AlignmentAssessment:
    path: Path
    mean_distance: float
    clade_indices: tuple[int, ...]
    too_divergent: bool


def assess_alignment(
    alignment: Alignment,
    clade_sets: Sequence[CladeSet],
    *,
    min_density: float,
    max_distance: float,
) -> AlignmentAssessment:
    """Decide which clade sets an alignment is dense enough for."""

    distance = alignment_mean_distance(alignment)
    if distance > max_distance:
        return AlignmentAssessment(
            path=alignment.path, mean_distance=distance, clade_indices=(), too_divergent=True
        )

    present = set(alignment.species_ids())
    matches: list[int] = []
    for clade_set in clade_sets:
        distinct = sum(1 for species in clade_set.species if species in present)
        if distinct > 2 and distinct / float(len(clade_set.species)) >= min_density:
            matches.append(clade_set.index)
    return AlignmentAssessment(
        path=alignment.path,
        mean_distance=distance,
        clade_indices=tuple(matches),
        too_divergent=False,
    )


def write_clade_alignment(alignment: Alignment, clade_set: CladeSet, output_path: Path) -> Path:
    """Write only the sequences of the clade's species and outgroup, in alignment order."""

    restricted = alignment.restrict((*clade_set.species, *clade_set.outgroup))
    return write_fasta_records(output_path, restricted.records)
