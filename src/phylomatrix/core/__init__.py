"""Core algorithms of the PhyloMatrix pipeline."""

from phylomatrix.core.alignment import Alignment, FastaRecord
from phylomatrix.core.taxa import TaxonTable

__all__ = ["Alignment", "FastaRecord", "TaxonTable"]
