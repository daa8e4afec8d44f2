from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from phylomatrix.exceptions import MalformedAlignmentError, MissingInputError
from phylomatrix.utils.io import ensure_dir

GAP_SYMBOLS = frozenset("-?.")


@dataclass(frozen=True, slots=True)
class FastaRecord:
    """Simple FASTA record; the header is the full defline without `>`."""

    header: str
    sequence: str


@dataclass(frozen=True, slots=True)
class Defline:
    """Decoded `gi|<id>|seed_gi|<id>|taxon|<id>|mrca|<id>` header."""

    seq_id: str | None
    seed_id: str | None
    species_id: str | None
    mrca_id: str | None

    @classmethod
    def parse(cls, header: str) -> "Defline":
        tokens = header.strip().split()[0].split("|") if header.strip() else []
        fields: dict[str, str] = {}
        for idx in range(0, len(tokens) - 1, 2):
            key = tokens[idx].strip()
            value = tokens[idx + 1].strip()
            if key and value and key not in fields:
                fields[key] = value
        return cls(
            seq_id=fields.get("gi"),
            seed_id=fields.get("seed_gi"),
            species_id=fields.get("taxon"),
            mrca_id=fields.get("mrca"),
        )

    def format(self) -> str:
        return (
            f"gi|{self.seq_id or ''}|seed_gi|{self.seed_id or ''}"
            f"|taxon|{self.species_id or ''}|mrca|{self.mrca_id or ''}"
        )


def parse_fasta_string(text: str) -> list[FastaRecord]:
    """Parse FASTA text, preserving record order and joining wrapped lines."""

    records: list[FastaRecord] = []
    header: str | None = None
    seq_chunks: list[str] = []

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith(">"):
            if header is not None:
                records.append(FastaRecord(header=header, sequence="".join(seq_chunks)))
            header = line[1:].strip()
            seq_chunks = []
        elif header is not None:
            seq_chunks.append(line.replace(" ", ""))

    if header is not None:
        records.append(FastaRecord(header=header, sequence="".join(seq_chunks)))

    return records


def read_fasta_records(path: Path) -> list[FastaRecord]:
    if not path.is_file():
        raise MissingInputError(f"Alignment file does not exist: {path}")
    return parse_fasta_string(path.read_text(encoding="utf-8"))


def format_fasta_records(records: Iterable[FastaRecord]) -> str:
    return "".join(f">{record.header}\n{record.sequence}\n" for record in records)


def write_fasta_records(path: Path, records: Iterable[FastaRecord]) -> Path:
    """Write two-line FASTA records (no wrapping), replacing any existing file."""

    ensure_dir(path.parent)
    path.write_text(format_fasta_records(records), encoding="utf-8")
    return path


@dataclass(frozen=True, slots=True)
class Alignment:
    """An ordered set of aligned records read from one FASTA file."""

    path: Path
    records: tuple[FastaRecord, ...]

    @classmethod
    def read(cls, path: Path) -> "Alignment":
        return cls(path=path, records=tuple(read_fasta_records(path)))

    @classmethod
    def from_text(cls, path: Path, text: str) -> "Alignment":
        return cls(path=path, records=tuple(parse_fasta_string(text)))

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def nchar(self) -> int:
        return len(self.records[0].sequence) if self.records else 0

    def __len__(self) -> int:
        return len(self.records)

    def validate(self) -> "Alignment":
        lengths = {len(record.sequence) for record in self.records}
        if len(lengths) > 1:
            raise MalformedAlignmentError(
                f"Sequences in {self.path} have unequal lengths: {sorted(lengths)}"
            )
        return self

    def deflines(self) -> list[Defline]:
        return [Defline.parse(record.header) for record in self.records]

    def species_ids(self) -> list[str]:
        """Distinct species ids in order of first occurrence."""

        seen: dict[str, None] = {}
        for defline in self.deflines():
            if defline.species_id is not None:
                seen.setdefault(defline.species_id, None)
        return list(seen)

    def sequences_by_species(self, species_ids: Iterable[str] | None = None) -> dict[str, list[str]]:
        wanted = set(species_ids) if species_ids is not None else None
        grouped: dict[str, list[str]] = {}
        for record in self.records:
            species_id = Defline.parse(record.header).species_id
            if species_id is None or (wanted is not None and species_id not in wanted):
                continue
            grouped.setdefault(species_id, []).append(record.sequence)
        return grouped

    def restrict(self, species_ids: Iterable[str]) -> "Alignment":
        wanted = set(species_ids)
        kept = tuple(
            record for record in self.records if Defline.parse(record.header).species_id in wanted
        )
        return Alignment(path=self.path, records=kept)

    def seed_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for defline in self.deflines():
            if defline.seed_id is not None:
                seen.setdefault(defline.seed_id, None)
        return list(seen)


def dedup_records(records: Sequence[FastaRecord]) -> list[FastaRecord]:
    """Drop repeated sequences of the same database id, keeping the first occurrence."""

    kept: list[FastaRecord] = []
    seen: set[str] = set()
    for record in records:
        key = Defline.parse(record.header).seq_id or record.header
        if key in seen:
            continue
        seen.add(key)
        kept.append(record)
    return kept


def ungapped(sequence: str) -> str:
    return "".join(char for char in sequence if char not in GAP_SYMBOLS)


def seed_id_from_path(path: Path) -> str | None:
    """Seed ids are encoded as the leading digits of raw alignment file names."""

    stem = path.name.split(".", 1)[0]
    digits = stem.split("-", 1)[0]
    return digits if digits.isdigit() else None
