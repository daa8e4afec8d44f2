from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterable, Sequence

from phylomatrix.exceptions import PhyloMatrixUsageError


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _check_overwrite(path: Path, force: bool) -> None:
    if path.exists() and not force:
        raise PhyloMatrixUsageError(f"Refusing to overwrite existing file without --force: {path}")


def write_text(path: Path, content: str, *, force: bool = False) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)
    path.write_text(content, encoding="utf-8")
    return path


def write_lines(path: Path, lines: Iterable[str | Path], *, force: bool = False) -> Path:
    """Write one entry per line, e.g. a list of alignment paths."""

    return write_text(path, "".join(f"{line}\n" for line in lines), force=force)


def write_tsv(
    path: Path,
    header: Sequence[str],
    rows: Iterable[Sequence[Any]],
    *,
    footer: Iterable[str] = (),
    force: bool = False,
) -> Path:
    ensure_dir(path.parent)
    _check_overwrite(path, force)

    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter="\t", lineterminator="\n")
        writer.writerow(header)
        for row in rows:
            writer.writerow(list(row))
        for line in footer:
            handle.write(f"# {line}\n")

    return path
