from __future__ import annotations

from phylomatrix.core.kmer import covered_positions, iter_kmers, kmer_set
from phylomatrix.core.mock import MockSearch


def test_iter_kmers_and_kmer_set() -> None:
    assert iter_kmers("acgta", 3) == ["ACG", "CGT", "GTA"]
    assert iter_kmers("AC", 3) == []
    assert kmer_set("ACGTACG", 3) == {"ACG", "CGT", "GTA", "TAC"}


def test_covered_positions_counts_each_position_once() -> None:
    assert covered_positions("ACGTAC", {"ACG", "CGT"}, 3) == 4
    assert covered_positions("ACGTAC", set(), 3) == 0


def test_mock_search_reports_shared_kmer_coverage() -> None:
    search = MockSearch(
        {
            "1": "ACGTTGCAAGCTTGAC",
            "2": "ACGTTGCAAGCTTGAG",
            "3": "TTTTTTTTTTTTTTTT",
        },
        k=5,
    )

    hits = {(hit.query_id, hit.hit_id): hit for hit in search(["1", "2", "3"])}

    assert hits[("1", "2")].query_aligned == 15
    assert hits[("2", "1")].hit_aligned == 15
    assert hits[("1", "1")].query_aligned == 16
    assert ("1", "3") not in hits
