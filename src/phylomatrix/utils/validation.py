from __future__ import annotations

import logging
from pathlib import Path

from phylomatrix.exceptions import MissingInputError, PhyloMatrixUsageError

TREE_FORMATS = ("newick", "nexus")

logger = logging.getLogger("phylomatrix.validation")


def validate_existing_file(path: Path, label: str) -> None:
    if not path.exists():
        raise MissingInputError(f"{label} does not exist: {path}")
    if not path.is_file():
        raise PhyloMatrixUsageError(f"{label} is not a file: {path}")


def validate_nonempty_file(path: Path, label: str) -> None:
    validate_existing_file(path, label)
    if path.stat().st_size == 0:
        raise PhyloMatrixUsageError(f"{label} is empty: {path}")


def validate_optional_file(path: Path | None, label: str) -> None:
    if path is None:
        return
    validate_existing_file(path, label)


def validate_tree_format(fmt: str) -> str:
    lowered = fmt.lower()
    if lowered not in TREE_FORMATS:
        raise PhyloMatrixUsageError(
            f"Unsupported tree format {fmt!r}; expected one of: {', '.join(TREE_FORMATS)}"
        )
    return lowered


def _resolve_list_path(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute() and not path.exists():
        candidate = base_dir / path
        if candidate.exists():
            return candidate
    return path


def read_alignment_list(list_path: Path) -> list[Path]:
    """Read an alignment list file: one path per line.

    Blank lines and entries whose file does not exist are skipped, duplicates keep
    their first position. Relative entries are tried against the working directory
    first and then against the directory holding the list.
    """

    validate_nonempty_file(list_path, "Alignment list")

    paths: list[Path] = []
    seen: set[Path] = set()
    skipped = 0
    for raw_line in list_path.read_text(encoding="utf-8").splitlines():
        entry = raw_line.strip()
        if not entry:
            continue
        path = _resolve_list_path(list_path.parent, entry)
        if not path.is_file():
            skipped += 1
            logger.debug("Skipping missing alignment listed in %s: %s", list_path, entry)
            continue
        if path in seen:
            continue
        seen.add(path)
        paths.append(path)

    if skipped:
        logger.warning("Skipped %d listed alignment(s) that do not exist.", skipped)
    return paths
