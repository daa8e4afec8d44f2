from __future__ import annotations

import pytest

from phylomatrix.core.graph import (
    SearchHit,
    accepted_hits,
    build_similarity_clusters,
    parse_blast_tabular,
    single_linkage_clusters,
)
from phylomatrix.exceptions import MissingInputError


def test_parse_blast_tabular_sums_hsps_per_pair() -> None:
    report = "\n".join(
        [
            "1\t2\t1\t50\t10\t59",
            "1\t2\t70\t60\t80\t70",
            "2\t1\t5\t14\t1\t10",
            "",
            "# comment line",
        ]
    )

    hits = {(hit.query_id, hit.hit_id): hit for hit in parse_blast_tabular(report)}

    assert hits[("1", "2")].query_aligned == 61
    assert hits[("1", "2")].hit_aligned == 61
    assert hits[("2", "1")].query_aligned == 10
    assert len(hits) == 2


def test_accepted_hits_requires_strict_overlap_on_both_sides() -> None:
    lengths = {"1": 100, "2": 100, "3": 200}
    hits = [
        SearchHit("1", "1", 100, 100),
        SearchHit("1", "2", 51, 90),
        SearchHit("2", "1", 52, 60),
        SearchHit("2", "3", 90, 90),
    ]

    accepted = accepted_hits(hits, lengths, overlap=0.51)

    assert accepted == {"1": [], "2": ["1"]}


def test_accepted_hits_rejects_unknown_seed() -> None:
    with pytest.raises(MissingInputError):
        accepted_hits([SearchHit("1", "9", 10, 10)], {"1": 10}, overlap=0.5)


def test_single_linkage_clusters_partition_every_seed() -> None:
    seeds = ["10", "2", "3", "4", "5"]
    accepted = {"2": ["3"], "4": [], "5": ["3"]}

    clusters = single_linkage_clusters(seeds, accepted)

    assert clusters == [("2", "3", "5"), ("4",), ("10",)]
    flattened = [seed for cluster in clusters for seed in cluster]
    assert sorted(flattened) == sorted(seeds)
    assert len(flattened) == len(set(flattened))


def test_single_linkage_joins_seeds_reachable_only_backwards() -> None:
    clusters = single_linkage_clusters(["1", "2", "3"], {"1": ["2"], "3": ["2"]})

    assert clusters == [("1", "2", "3")]


def test_reclustering_union_of_linked_clusters_gives_one_cluster() -> None:
    first = single_linkage_clusters(["1", "2", "3", "4"], {"1": ["2"], "3": ["4"]})
    assert first == [("1", "2"), ("3", "4")]

    merged = single_linkage_clusters(["1", "2", "3", "4"], {"1": ["2"], "3": ["4"], "2": ["3"]})
    assert merged == [("1", "2", "3", "4")]


def test_build_similarity_clusters_uses_search_callable() -> None:
    calls: list[list[str]] = []

    def _search(seeds):  # type: ignore[no-untyped-def]
        calls.append(list(seeds))
        return [
            SearchHit("a", "b", 80, 80),
            SearchHit("b", "c", 10, 10),
        ]

    clusters = build_similarity_clusters(
        ["a", "b", "c"],
        search=_search,
        lengths={"a": 100, "b": 100, "c": 100},
        overlap=0.51,
    )

    assert calls == [["a", "b", "c"]]
    assert clusters == [("a", "b"), ("c",)]
