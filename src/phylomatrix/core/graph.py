from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Sequence

from phylomatrix.exceptions import MissingInputError
from phylomatrix.logging import get_logger

logger = get_logger("core.graph")

Cluster = tuple[str, ...]


@dataclass(frozen=True, slots=True)
class SearchHit:
    """Aligned-interval lengths summed over all HSPs of one query/hit pair."""

    query_id: str
    hit_id: str
    query_aligned: int
    hit_aligned: int


def id_sort_key(seq_id: str) -> tuple[int, int, str]:
    """Numeric ids sort numerically, anything else lexicographically after them."""

    if seq_id.isdigit():
        return (0, int(seq_id), seq_id)
    return (1, 0, seq_id)


def parse_blast_tabular(text: str) -> list[SearchHit]:
    """Parse `-outfmt "6 qseqid sseqid qstart qend sstart send"` into summed hits."""

    totals: dict[tuple[str, str], list[int]] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split("\t")
        if len(fields) < 6:
            continue
        try:
            qstart, qend, sstart, send = (int(value) for value in fields[2:6])
        except ValueError:
            continue
        key = (fields[0], fields[1])
        lengths = totals.setdefault(key, [0, 0])
        lengths[0] += abs(qend - qstart) + 1
        lengths[1] += abs(send - sstart) + 1

    return [
        SearchHit(query_id=query, hit_id=hit, query_aligned=lengths[0], hit_aligned=lengths[1])
        for (query, hit), lengths in totals.items()
    ]


def _length_of(lengths: Mapping[str, int], seq_id: str) -> int:
    try:
        length = lengths[seq_id]
    except KeyError:
        raise MissingInputError(f"Search hit references unknown seed sequence {seq_id}") from None
    if length <= 0:
        raise MissingInputError(f"Seed sequence {seq_id} is empty")
    return length


def hit_overlaps(hit: SearchHit, lengths: Mapping[str, int]) -> tuple[float, float]:
    return (
        hit.query_aligned / float(_length_of(lengths, hit.query_id)),
        hit.hit_aligned / float(_length_of(lengths, hit.hit_id)),
    )


def accepted_hits(
    hits: Iterable[SearchHit],
    lengths: Mapping[str, int],
    *,
    overlap: float,
) -> dict[str, list[str]]:
    """Keep hits whose aligned fraction exceeds `overlap` on both the query and the hit side."""

    accepted: dict[str, list[str]] = {}
    for hit in hits:
        neighbours = accepted.setdefault(hit.query_id, [])
        if hit.query_id == hit.hit_id:
            continue
        query_fraction, hit_fraction = hit_overlaps(hit, lengths)
        if query_fraction > overlap and hit_fraction > overlap:
            if hit.hit_id not in neighbours:
                neighbours.append(hit.hit_id)
        else:
            logger.debug(
                "Discarding hit %s for query %s (overlap %.3f/%.3f)",
                hit.hit_id,
                hit.query_id,
                query_fraction,
                hit_fraction,
            )
    return accepted


def single_linkage_clusters(
    seeds: Iterable[str],
    accepted: Mapping[str, Sequence[str]],
) -> list[Cluster]:
    """Return the connected components of the accepted-hit graph.

    Hits are treated as undirected edges, so a seed reachable only backwards still
    joins its cluster. Every seed ends up in exactly one cluster; seeds without
    accepted hits form singletons.
    """

    node_set = set(seeds)
    for query, neighbours in accepted.items():
        node_set.add(query)
        node_set.update(neighbours)

    adjacency: dict[str, set[str]] = defaultdict(set)
    for query, neighbours in accepted.items():
        for neighbour in neighbours:
            if neighbour == query:
                continue
            adjacency[query].add(neighbour)
            adjacency[neighbour].add(query)

    visited: set[str] = set()
    clusters: set[Cluster] = set()

    for seed in sorted(node_set, key=id_sort_key):
        if seed in visited:
            continue

        queue: deque[str] = deque([seed])
        visited.add(seed)
        component: list[str] = []

        while queue:
            current = queue.popleft()
            component.append(current)
            for neighbour in adjacency[current]:
                if neighbour not in visited:
                    visited.add(neighbour)
                    queue.append(neighbour)

        clusters.add(tuple(sorted(component, key=id_sort_key)))

    return sorted(clusters, key=lambda cluster: id_sort_key(cluster[0]))


def build_similarity_clusters(
    seeds: Sequence[str],
    *,
    search: Callable[[Sequence[str]], Iterable[SearchHit]],
    lengths: Mapping[str, int],
    overlap: float,
) -> list[Cluster]:
    """Run the all-vs-all search over `seeds` and cluster the accepted hits."""

    hits = list(search(seeds))
    accepted = accepted_hits(hits, lengths, overlap=overlap)
    edge_count = sum(len(neighbours) for neighbours in accepted.values())
    logger.info("Accepted %d directed hits among %d seeds.", edge_count, len(seeds))
    clusters = single_linkage_clusters(seeds, accepted)
    logger.info(
        "Built %d single-linkage clusters (%d singletons).",
        len(clusters),
        sum(1 for cluster in clusters if len(cluster) == 1),
    )
    return clusters
