"""External tool runner adapters."""

from phylomatrix.runners.blast import BlastnRunner, MakeBlastDBRunner
from phylomatrix.runners.muscle import MuscleRunner

__all__ = [
    "BlastnRunner",
    "MakeBlastDBRunner",
    "MuscleRunner",
]
