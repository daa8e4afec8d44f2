"""Deterministic stand-ins for BLAST and MUSCLE, used by `--mock` runs and tests."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence

from phylomatrix.core.alignment import Alignment, FastaRecord, format_fasta_records
from phylomatrix.core.graph import SearchHit
from phylomatrix.core.kmer import covered_positions, kmer_set


class MockSearch:
    """All-vs-all search reporting, per pair, the positions covered by shared k-mers."""

    def __init__(self, sequences: Mapping[str, str], *, k: int = 11) -> None:
        self.sequences = dict(sequences)
        self.k = k

    def __call__(self, seeds: Sequence[str]) -> list[SearchHit]:
        kmers = {seed: kmer_set(self.sequences[seed], self.k) for seed in seeds}
        hits: list[SearchHit] = []
        for query in seeds:
            for hit in seeds:
                shared = kmers[query] & kmers[hit]
                if not shared:
                    continue
                hits.append(
                    SearchHit(
                        query_id=query,
                        hit_id=hit,
                        query_aligned=covered_positions(self.sequences[query].upper(), shared, self.k),
                        hit_aligned=covered_positions(self.sequences[hit].upper(), shared, self.k),
                    )
                )
        return hits


def mock_profile_merge(first: Path, second: Path) -> str:
    """Stack two alignments, padding the shorter one with trailing gaps."""

    left = Alignment.read(first)
    right = Alignment.read(second)
    width = max(left.nchar, right.nchar)
    records = [
        FastaRecord(header=record.header, sequence=record.sequence.ljust(width, "-"))
        for record in (*left.records, *right.records)
    ]
    return format_fasta_records(records)
