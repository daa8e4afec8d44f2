from __future__ import annotations

from pathlib import Path

from phylomatrix.logging import get_logger
from phylomatrix.runners.base import ToolRunner
from phylomatrix.utils.subprocess import CommandResult

# Columns consumed by phylomatrix.core.graph.parse_blast_tabular.
TABULAR_FORMAT = "6 qseqid sseqid qstart qend sstart send"


class MakeBlastDBRunner(ToolRunner):
    """Wrapper around `makeblastdb` for the seed sequence database."""

    def __init__(self, executable: str = "makeblastdb") -> None:
        super().__init__(executable, logger=get_logger("runners.blast"))

    def build(self, *, fasta: Path, db_prefix: Path, dry_run: bool = False) -> CommandResult:
        return self.run(
            ["-in", fasta, "-dbtype", "nucl", "-out", db_prefix],
            dry_run=dry_run,
        )


class BlastnRunner(ToolRunner):
    """Wrapper around `blastn` producing tabular hit reports on stdout."""

    def __init__(self, executable: str = "blastn") -> None:
        super().__init__(executable, logger=get_logger("runners.blast"))

    def all_vs_all(
        self,
        *,
        query: Path,
        db_prefix: Path,
        threads: int = 1,
        dry_run: bool = False,
    ) -> CommandResult:
        return self.run(
            [
                "-query",
                query,
                "-db",
                db_prefix,
                "-outfmt",
                TABULAR_FORMAT,
                "-num_threads",
                str(threads),
            ],
            dry_run=dry_run,
        )
