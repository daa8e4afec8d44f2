from __future__ import annotations


class PhyloMatrixError(Exception):
    """Base class for PhyloMatrix exceptions."""

    exit_code: int = 1


class PhyloMatrixUsageError(PhyloMatrixError):
    """Raised when command arguments or inputs are invalid."""

    exit_code = 2


class MissingInputError(PhyloMatrixUsageError):
    """Raised when a required alignment, sequence or table cannot be found."""


class MalformedAlignmentError(PhyloMatrixError):
    """Raised when the sequences of one alignment differ in length."""
