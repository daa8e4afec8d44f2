from __future__ import annotations


def iter_kmers(sequence: str, k: int) -> list[str]:
    normalized = sequence.upper()
    if k <= 0 or len(normalized) < k:
        return []
    return [normalized[idx : idx + k] for idx in range(0, len(normalized) - k + 1)]


def kmer_set(sequence: str, k: int) -> set[str]:
    return set(iter_kmers(sequence, k))


def covered_positions(sequence: str, shared: set[str], k: int) -> int:
    """Number of positions of `sequence` lying inside at least one k-mer from `shared`."""

    covered = [False] * len(sequence)
    for idx, kmer in enumerate(iter_kmers(sequence, k)):
        if kmer in shared:
            for offset in range(idx, idx + k):
                covered[offset] = True
    return sum(covered)
