"""Statistical analysis of single-cell immune repertoires.

Contig/cell/cluster containers, CD-HIT clustering, medoids, chain pairing
and stratified permutation tests of cluster membership.
"""

__version__ = "0.1.0"
__author__ = "cellrep contributors"

from . import (
    canonicalize,
    ccdb,
    cdhit,
    contrasts,
    export,
    fine_clustering,
    ingest,
    pairing,
    permute,
    statistics,
    utils,
)
from .ccdb import ContigCellDB
from .permute import PermuteTest, PermuteTestList, cluster_permute_test

__all__ = [
    "ContigCellDB",
    "PermuteTest",
    "PermuteTestList",
    "cluster_permute_test",
    "canonicalize",
    "ccdb",
    "cdhit",
    "contrasts",
    "export",
    "fine_clustering",
    "ingest",
    "pairing",
    "permute",
    "statistics",
    "utils",
]
