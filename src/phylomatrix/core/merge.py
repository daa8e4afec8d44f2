from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from phylomatrix.core.alignment import Alignment, dedup_records, write_fasta_records
from phylomatrix.core.distance import alignment_mean_distance
from phylomatrix.exceptions import PhyloMatrixError
from phylomatrix.logging import get_logger

logger = get_logger("core.merge")

# Profile-aligns two alignment files and returns the merged FASTA text.
ProfileAligner = Callable[[Path, Path], str]


@dataclass(slots=True)
class MergeResult:
    """Outcome of folding one cluster's alignments into a single alignment."""

    path: Path
    accepted: list[Path] = field(default_factory=list)
    rejected: list[Path] = field(default_factory=list)
    merged: bool = False
    mean_distance: float | None = None

    @property
    def member_count(self) -> int:
        return len(self.accepted) + len(self.rejected)


def _try_profile_merge(aligner: ProfileAligner, accumulator: Path, candidate: Path) -> Alignment | None:
    try:
        text = aligner(accumulator, candidate)
    except PhyloMatrixError as exc:
        logger.warning("Profile alignment of %s onto %s failed: %s", candidate, accumulator, exc)
        return None

    merged = Alignment.from_text(accumulator, text or "")
    if not merged.records:
        logger.warning("Profile alignment of %s onto %s produced no records.", candidate, accumulator)
        return None
    return merged


def merge_cluster(
    files: Sequence[Path],
    *,
    aligner: ProfileAligner,
    max_distance: float,
    output_path: Path,
) -> MergeResult:
    """Greedily merge the alignments of one cluster.

    The first file seeds the accumulator. Every following file is profile-aligned
    against the current accumulator and kept only if the result stays below
    `max_distance` in mean pairwise distance; otherwise the accumulator is left
    untouched and the file is skipped for good. When nothing could be merged the
    first file is returned as it is.
    """

    if not files:
        raise ValueError("Cannot merge an empty cluster.")

    result = MergeResult(path=files[0], accepted=[files[0]])
    if len(files) == 1:
        return result

    accumulator = files[0]
    for candidate in files[1:]:
        merged = _try_profile_merge(aligner, accumulator, candidate)
        if merged is None:
            result.rejected.append(candidate)
            continue

        distance = alignment_mean_distance(merged)
        if distance >= max_distance:
            logger.debug(
                "Rejecting %s: mean distance %.4f is not below %.4f",
                candidate,
                distance,
                max_distance,
            )
            result.rejected.append(candidate)
            continue

        write_fasta_records(output_path, dedup_records(merged.records))
        accumulator = output_path
        result.accepted.append(candidate)
        result.mean_distance = distance
        result.merged = True

    if result.merged:
        result.path = output_path
    logger.debug(
        "Cluster of %d alignments: %d merged, %d rejected",
        len(files),
        len(result.accepted),
        len(result.rejected),
    )
    return result
