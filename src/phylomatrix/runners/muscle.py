from __future__ import annotations

from pathlib import Path

from phylomatrix.logging import get_logger
from phylomatrix.runners.base import ToolRunner
from phylomatrix.utils.subprocess import CommandResult


class MuscleRunner(ToolRunner):
    """Wrapper around MUSCLE profile-profile alignment."""

    def __init__(self, executable: str = "muscle") -> None:
        super().__init__(executable, logger=get_logger("runners.muscle"))

    def profile(self, *, first: Path, second: Path, dry_run: bool = False) -> CommandResult:
        return self.run(
            ["-profile", "-in1", first, "-in2", second, "-quiet"],
            dry_run=dry_run,
        )

    def profile_aligner(self):
        """Adapter with the signature expected by `merge_cluster`."""

        def align(first: Path, second: Path) -> str:
            return self.profile(first=first, second=second).stdout

        return align
