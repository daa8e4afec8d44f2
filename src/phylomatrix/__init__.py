"""PhyloMatrix: orthology merging, exemplar selection and backbone decomposition."""

__version__ = "0.1.0"
