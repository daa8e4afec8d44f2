from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from phylomatrix.exceptions import PhyloMatrixUsageError
from phylomatrix.utils.validation import validate_nonempty_file

SPECIES_RANK = "species"
GENUS_RANK = "genus"
NAME_COLUMN = "name"
MISSING_VALUES = frozenset({"", "NA", "na", "N/A"})


@dataclass(frozen=True, slots=True)
class TaxonRecord:
    """One species row: rank name -> taxon identifier, plus an optional label."""

    species_id: str
    ranks: Mapping[str, str]
    name: str | None = None

    def get(self, rank: str) -> str | None:
        return self.ranks.get(rank)


@dataclass(slots=True)
class TaxonTable:
    """Taxon records together with the ordered rank columns of the source table."""

    ranks: tuple[str, ...]
    records: dict[str, TaxonRecord] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, species_id: object) -> bool:
        return species_id in self.records

    def add(self, record: TaxonRecord) -> None:
        if record.species_id in self.records:
            raise PhyloMatrixUsageError(f"Duplicated species id in taxa table: {record.species_id}")
        self.records[record.species_id] = record

    def genus_of(self, species_id: str) -> str | None:
        record = self.records.get(species_id)
        return record.get(GENUS_RANK) if record is not None else None

    def label(self, species_id: str) -> str:
        record = self.records.get(species_id)
        if record is not None and record.name:
            return record.name
        return species_id

    def species_by_genus(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for species_id, record in self.records.items():
            genus = record.get(GENUS_RANK)
            if genus is None:
                continue
            grouped.setdefault(genus, []).append(species_id)
        return grouped

    def species_for_taxa(self, taxon_ids: Iterable[str], rank: str | None = None) -> list[str]:
        """All species whose lineage contains one of `taxon_ids` (at `rank`, or any rank)."""

        wanted = set(taxon_ids)
        ranks = (rank,) if rank is not None else self.ranks
        return [
            species_id
            for species_id, record in self.records.items()
            if any(record.get(r) in wanted for r in ranks)
        ]

    def resolve_species(self, queries: Iterable[str]) -> list[str]:
        """Species under each query, given as a taxon id at any rank or as a species name."""

        resolved: dict[str, None] = {}
        unknown: list[str] = []
        for query in queries:
            spaced = query.replace("_", " ")
            matches = self.species_for_taxa([query])
            matches.extend(
                species_id
                for species_id, record in self.records.items()
                if record.name in (query, spaced)
            )
            if not matches:
                unknown.append(query)
            for species_id in matches:
                resolved.setdefault(species_id, None)
        if unknown:
            raise PhyloMatrixUsageError(f"Taxa not found in the taxa table: {', '.join(unknown)}")
        return list(resolved)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return None if stripped in MISSING_VALUES else stripped


def parse_taxa_rows(header: list[str], rows: Iterable[Mapping[str, str | None]]) -> TaxonTable:
    if SPECIES_RANK not in header:
        raise PhyloMatrixUsageError("Taxa table is missing the required `species` column.")
    if GENUS_RANK not in header:
        raise PhyloMatrixUsageError("Taxa table is missing the required `genus` column.")

    ranks = tuple(column for column in header if column != NAME_COLUMN)
    table = TaxonTable(ranks=ranks)
    for row in rows:
        species_id = _clean(row.get(SPECIES_RANK))
        if species_id is None:
            continue
        rank_values: dict[str, str] = {}
        for rank in ranks:
            value = _clean(row.get(rank))
            if value is not None:
                rank_values[rank] = value
        table.add(TaxonRecord(species_id=species_id, ranks=rank_values, name=_clean(row.get(NAME_COLUMN))))
    return table


def read_taxa_table(path: Path) -> TaxonTable:
    """Read a tab-separated taxa table with one column per taxonomic rank."""

    validate_nonempty_file(path, "Taxa table")
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle, delimiter="\t")
        if reader.fieldnames is None:
            raise PhyloMatrixUsageError(f"Taxa table has no header row: {path}")
        header = [name.strip() for name in reader.fieldnames]
        rows = [{key.strip(): value for key, value in row.items() if key is not None} for row in reader]

    table = parse_taxa_rows(header, rows)
    if not table.records:
        raise PhyloMatrixUsageError(f"Taxa table has no species rows: {path}")
    return table
