from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from phylomatrix.core.alignment import Alignment
from phylomatrix.core.distance import mean_group_distance
from phylomatrix.core.graph import id_sort_key, single_linkage_clusters
from phylomatrix.core.taxa import TaxonTable
from phylomatrix.logging import get_logger

logger = get_logger("core.exemplars")

SpeciesPair = tuple[str, str]

# Genera this small contribute all of their species and are never scored.
MAX_UNSCORED_GENUS_SIZE = 2


@dataclass(frozen=True, slots=True)
class GenusPairResult:
    """Per-alignment species-pair distances within each scorable genus."""

    path: Path
    species: tuple[str, ...]
    distances: Mapping[str, Mapping[SpeciesPair, float]]


@dataclass(frozen=True, slots=True)
class ExemplarPair:
    genus: str
    species: tuple[str, ...]
    score: float
    method: str


def _pair_key(left: str, right: str) -> SpeciesPair:
    return (left, right) if id_sort_key(left) <= id_sort_key(right) else (right, left)


def genus_pair_distances(
    alignment: Alignment,
    species_by_genus: Mapping[str, Sequence[str]],
) -> GenusPairResult:
    """Average p-distance for every pair of congeneric species in one alignment.

    Only genera with more than two species in the taxa table are scored, and only
    when at least two of their species occur in the alignment. A species
    represented by several sequences contributes all of them to the average.
    """

    by_species = alignment.sequences_by_species()
    distances: dict[str, dict[SpeciesPair, float]] = {}

    for genus, members in species_by_genus.items():
        if len(members) <= MAX_UNSCORED_GENUS_SIZE:
            continue
        present = sorted((species for species in members if species in by_species), key=id_sort_key)
        if len(present) < 2:
            continue
        genus_distances: dict[SpeciesPair, float] = {}
        for left, right in combinations(present, 2):
            genus_distances[_pair_key(left, right)] = mean_group_distance(
                by_species[left], by_species[right]
            )
        distances[genus] = genus_distances

    return GenusPairResult(path=alignment.path, species=tuple(by_species), distances=distances)


@dataclass(slots=True)
class ExemplarScores:
    """Accumulates pair scores across alignments, folded in input order."""

    scores: dict[str, dict[SpeciesPair, float]] = field(default_factory=dict)
    occurrences: Counter = field(default_factory=Counter)
    alignments_seen: int = 0

    def add(self, result: GenusPairResult) -> None:
        self.alignments_seen += 1
        self.occurrences.update(result.species)

        for genus, pair_distances in result.distances.items():
            if not pair_distances:
                continue
            genus_scores = self.scores.setdefault(genus, {})
            for pair in pair_distances:
                genus_scores.setdefault(pair, 0.0)

            ordered = sorted(pair_distances, key=lambda p: (id_sort_key(p[0]), id_sort_key(p[1])))
            best_pair = max(ordered, key=pair_distances.__getitem__)
            # With a single comparable pair the weight is zero; the pair still counts as seen.
            genus_scores[best_pair] += len(pair_distances) - 1

    def best_pair(self, genus: str) -> tuple[SpeciesPair, float] | None:
        genus_scores = self.scores.get(genus)
        if not genus_scores:
            return None
        best: tuple[SpeciesPair, float] | None = None
        for pair, score in genus_scores.items():
            if best is None or score > best[1]:
                best = (pair, score)
        return best

    def pairs(self, species_by_genus: Mapping[str, Sequence[str]]) -> list[ExemplarPair]:
        selected: list[ExemplarPair] = []
        for genus, members in species_by_genus.items():
            if not members:
                continue
            if len(members) <= MAX_UNSCORED_GENUS_SIZE:
                selected.append(
                    ExemplarPair(genus=genus, species=tuple(members), score=0.0, method="all")
                )
                continue

            best = self.best_pair(genus)
            if best is not None:
                pair, score = best
                selected.append(ExemplarPair(genus=genus, species=pair, score=score, method="divergence"))
                continue

            ranked = sorted(members, key=lambda species: (-self.occurrences[species], id_sort_key(species)))
            fallback = tuple(ranked[:2])
            logger.warning(
                "No alignment compares two species of genus %s; using the best represented species %s.",
                genus,
                ", ".join(fallback),
            )
            selected.append(ExemplarPair(genus=genus, species=fallback, score=0.0, method="occurrence"))
        return selected

    def exemplars(self, species_by_genus: Mapping[str, Sequence[str]]) -> list[str]:
        """Flattened exemplar species, without repeats, in genus order."""

        seen: dict[str, None] = {}
        for pair in self.pairs(species_by_genus):
            for species in pair.species:
                seen.setdefault(species, None)
        return list(seen)


@dataclass(slots=True)
class CandidateSpecies:
    """Exemplar candidates left after coverage and connectivity pruning."""

    species_by_genus: dict[str, list[str]]
    candidates: set[str] = field(default_factory=set)
    low_coverage: list[str] = field(default_factory=list)
    disconnected: list[str] = field(default_factory=list)
    unlinked_genera: list[str] = field(default_factory=list)


def restrict_candidates(
    alignments: Iterable[Alignment],
    species_by_genus: Mapping[str, Sequence[str]],
    min_coverage: int,
) -> CandidateSpecies:
    """Narrow each genus to species that can hold a connected backbone.

    Species sharing an alignment are linked. Species in fewer than
    `min_coverage` alignments are removed first, then everything outside the
    largest linked component. Within a genus only species linked to a congener
    stay; a genus left with fewer than two of those keeps a single species.
    """

    known = {species for members in species_by_genus.values() for species in members}
    coverage: Counter = Counter()
    neighbours: dict[str, set[str]] = {species: set() for species in known}
    for alignment in alignments:
        present = [species for species in alignment.species_ids() if species in known]
        coverage.update(present)
        for species in present:
            neighbours[species].update(other for other in present if other != species)

    ordered = sorted(known, key=id_sort_key)
    result = CandidateSpecies(species_by_genus={})
    result.low_coverage = [species for species in ordered if coverage[species] < min_coverage]
    covered = [species for species in ordered if coverage[species] >= min_coverage]
    covered_set = set(covered)
    linked = {species: sorted(neighbours[species] & covered_set, key=id_sort_key) for species in covered}

    components = single_linkage_clusters(covered, linked)
    if components:
        result.candidates = set(max(components, key=len))
    result.disconnected = [species for species in covered if species not in result.candidates]

    for genus, members in species_by_genus.items():
        congeners = set(members)
        in_set = [species for species in members if species in result.candidates]
        with_congener = [species for species in in_set if congeners.intersection(linked[species])]
        if len(with_congener) >= 2:
            result.species_by_genus[genus] = with_congener
        elif in_set:
            result.species_by_genus[genus] = [in_set[0]]
            if len(in_set) > 1:
                result.unlinked_genera.append(genus)
        else:
            logger.debug("Genus %s has no exemplar candidates left", genus)
    return result


def select_exemplars(alignments: Iterable[Alignment], table: TaxonTable) -> list[ExemplarPair]:
    species_by_genus = table.species_by_genus()
    scores = ExemplarScores()
    for alignment in alignments:
        scores.add(genus_pair_distances(alignment, species_by_genus))
    return scores.pairs(species_by_genus)
