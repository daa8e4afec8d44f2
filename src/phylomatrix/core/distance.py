from __future__ import annotations

from itertools import combinations
from typing import Sequence

from phylomatrix.core.alignment import Alignment

# Sites where either sequence carries one of these symbols are not compared.
UNCOMPARABLE = frozenset("-?.NnXx")


def p_distance(left: str, right: str) -> float:
    """Uncorrected proportion of differing sites between two aligned sequences.

    Only sites where both sequences carry a residue are compared, and the
    differences are divided by that count rather than the alignment length.
    Two sequences without a single comparable site are treated as maximally
    divergent.
    """

    compared = 0
    differences = 0
    for a, b in zip(left, right):
        if a in UNCOMPARABLE or b in UNCOMPARABLE:
            continue
        compared += 1
        if a.upper() != b.upper():
            differences += 1

    if compared == 0:
        return 1.0
    return differences / compared


def mean_group_distance(left: Sequence[str], right: Sequence[str]) -> float:
    """Average distance over all cross pairs of two groups of sequences."""

    if not left or not right:
        raise ValueError("Cannot average distances over an empty sequence group.")
    total = sum(p_distance(a, b) for a in left for b in right)
    return total / float(len(left) * len(right))


def mean_pairwise_distance(sequences: Sequence[str]) -> float:
    pairs = list(combinations(sequences, 2))
    if not pairs:
        return 0.0
    return sum(p_distance(a, b) for a, b in pairs) / float(len(pairs))


def alignment_mean_distance(alignment: Alignment) -> float:
    return mean_pairwise_distance([record.sequence for record in alignment.records])
