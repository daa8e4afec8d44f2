from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from phylomatrix.core.alignment import Alignment, Defline, read_fasta_records, seed_id_from_path, ungapped
from phylomatrix.exceptions import MissingInputError
from phylomatrix.logging import get_logger, log_event

logger = get_logger("core.sequences")


@dataclass(slots=True)
class SequenceStore:
    """Resolves sequence ids to raw (ungapped) sequences."""

    sequences: dict[str, str] = field(default_factory=dict)

    def __contains__(self, seq_id: object) -> bool:
        return seq_id in self.sequences

    def get(self, seq_id: str) -> str:
        try:
            return self.sequences[seq_id]
        except KeyError:
            raise MissingInputError(f"No sequence available for id {seq_id}") from None

    def length(self, seq_id: str) -> int:
        return len(self.get(seq_id))

    def lengths(self, seq_ids: Iterable[str]) -> dict[str, int]:
        return {seq_id: self.length(seq_id) for seq_id in seq_ids}

    @classmethod
    def from_fasta(cls, path: Path) -> "SequenceStore":
        """Load a FASTA whose headers are either bare ids or full deflines."""

        store = cls()
        for record in read_fasta_records(path):
            seq_id = Defline.parse(record.header).seq_id or record.header.split()[0]
            store.sequences.setdefault(seq_id, ungapped(record.sequence))
        return store

    @classmethod
    def from_alignments(cls, alignments: Mapping[str, Alignment]) -> "SequenceStore":
        """Take each seed's sequence from the record of its own alignment."""

        store = cls()
        for seed_id, alignment in alignments.items():
            for record in alignment.records:
                if Defline.parse(record.header).seq_id == seed_id:
                    store.sequences[seed_id] = ungapped(record.sequence)
                    break
        return store


def alignment_seed_id(alignment: Alignment) -> str:
    """The seed id of a raw alignment, from its deflines or else its file name."""

    seed_ids = alignment.seed_ids()
    if seed_ids:
        return seed_ids[0]
    from_name = seed_id_from_path(alignment.path)
    if from_name is None:
        raise MissingInputError(f"Cannot determine the seed id of alignment {alignment.path}")
    return from_name


def index_by_seed(alignments: Iterable[Alignment]) -> dict[str, Alignment]:
    indexed: dict[str, Alignment] = {}
    for alignment in alignments:
        seed_id = alignment_seed_id(alignment)
        if seed_id in indexed:
            log_event(
                logger,
                "duplicate_seed_dropped",
                "Seed %s is shared by %s and %s; dropping the second.",
                seed_id,
                indexed[seed_id].path,
                alignment.path,
                level=logging.WARNING,
                seed=seed_id,
                kept=str(indexed[seed_id].path),
                dropped=str(alignment.path),
            )
            continue
        indexed[seed_id] = alignment
    return indexed
