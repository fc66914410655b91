"""Within-cluster distances, medoids and optional sub-clustering."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from Bio.Align import PairwiseAligner, substitution_matrices
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from .ccdb import ContigCellDB
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MATRICES = {"AA": "BLOSUM62", "DNA": "NUC.4.4"}


@dataclass
class FineClusterResult:
    distance: np.ndarray
    medoid: int
    d_medoid: np.ndarray
    fc: np.ndarray
    avg_distance: float
    max_distance: float


def make_aligner(
    type: str = "AA",
    substitution_matrix: Optional[str] = None,
    open_gap_score: float = -8.0,
    extend_gap_score: float = -1.0,
) -> PairwiseAligner:
    """Global aligner scored with a named substitution matrix."""
    if type not in DEFAULT_MATRICES:
        raise ConfigurationError(f"type must be one of {sorted(DEFAULT_MATRICES)}, got {type!r}")
    name = substitution_matrix or DEFAULT_MATRICES[type]
    try:
        matrix = substitution_matrices.load(name)
    except (FileNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown substitution matrix '{name}'") from exc
    aligner = PairwiseAligner()
    aligner.mode = "global"
    aligner.substitution_matrix = matrix
    aligner.open_gap_score = open_gap_score
    aligner.extend_gap_score = extend_gap_score
    return aligner


def distance_matrix(seqs: Sequence[str], aligner: PairwiseAligner) -> np.ndarray:
    """Score-derived distances ``(s_ii + s_jj) / 2 - s_ij``.

    Identical sequences are scored once. The result is symmetric with a zero
    diagonal and no negative entries.
    """
    seqs = [str(seq) for seq in seqs]
    unique, inverse = np.unique(np.asarray(seqs, dtype=object), return_inverse=True)
    n = len(unique)
    scores = np.zeros((n, n))
    for i in range(n):
        for j in range(i, n):
            s = aligner.score(unique[i], unique[j])
            scores[i, j] = s
            scores[j, i] = s
    self_scores = np.diag(scores)
    unique_dist = (self_scores[:, None] + self_scores[None, :]) / 2 - scores
    unique_dist = np.clip(unique_dist, 0, None)
    np.fill_diagonal(unique_dist, 0)
    return unique_dist[np.ix_(inverse, inverse)]


def fine_cluster_seqs(
    seqs: Sequence[str],
    type: str = "AA",
    substitution_matrix: Optional[str] = None,
    cut_height: Optional[float] = None,
    aligner: Optional[PairwiseAligner] = None,
) -> FineClusterResult:
    """Medoid and distance summary of one cluster's sequences.

    The medoid minimises the summed distance to all other members (first
    member on ties). With ``cut_height`` the members are split by
    complete-linkage hierarchical clustering cut at that distance; otherwise
    every member belongs to fine cluster 1.
    """
    if len(seqs) == 0:
        raise ConfigurationError("fine_cluster_seqs needs at least one sequence")
    aligner = aligner or make_aligner(type, substitution_matrix)
    dist = distance_matrix(seqs, aligner)
    n = dist.shape[0]
    medoid = int(np.argmin(dist.sum(axis=1)))
    d_medoid = dist[medoid].copy()

    if n > 1:
        upper = dist[np.triu_indices(n, k=1)]
        avg_distance = float(upper.mean())
        max_distance = float(upper.max())
    else:
        avg_distance = 0.0
        max_distance = 0.0

    if cut_height is not None and n > 1:
        tree = linkage(squareform(dist, checks=False), method="complete")
        fc = fcluster(tree, t=cut_height, criterion="distance").astype(int)
    else:
        fc = np.ones(n, dtype=int)

    return FineClusterResult(
        distance=dist,
        medoid=medoid,
        d_medoid=d_medoid,
        fc=fc,
        avg_distance=avg_distance,
        max_distance=max_distance,
    )


def fine_clustering(
    ccdb: ContigCellDB,
    sequence_key: str = "cdr3",
    type: str = "AA",
    substitution_matrix: Optional[str] = None,
    cut_height: Optional[float] = None,
) -> ContigCellDB:
    """Annotate every cluster with its medoid and member distances.

    Adds ``is_medoid``, ``d_medoid`` and ``fc`` to ``contig_tbl`` and
    ``avg_distance``, ``max_distance`` and ``n_cluster`` to ``cluster_tbl``.
    Contigs with a missing sequence get ``d_medoid`` NaN and no medoid flag.
    """
    if not ccdb.cluster_pk:
        raise ConfigurationError("fine_clustering requires a clustered ContigCellDB (cluster_pk is empty)")
    contig_tbl = ccdb.contig_tbl.copy()
    if sequence_key not in contig_tbl.columns:
        raise ConfigurationError(f"sequence_key '{sequence_key}' not found in contig_tbl")

    cluster_pk = list(ccdb.cluster_pk)
    aligner = make_aligner(type, substitution_matrix)
    is_medoid = np.zeros(len(contig_tbl), dtype=bool)
    d_medoid = np.full(len(contig_tbl), np.nan)
    fc = pd.Series(pd.NA, index=contig_tbl.index, dtype="Int64")
    stats: Dict[Tuple, Dict[str, float]] = {}

    eligible = contig_tbl[sequence_key].notna()
    groups = contig_tbl.loc[eligible].groupby(cluster_pk, sort=False, observed=True).indices
    for key, positions in groups.items():
        rows = contig_tbl.index[eligible.to_numpy()][positions]
        result = fine_cluster_seqs(
            contig_tbl.loc[rows, sequence_key].tolist(),
            type=type,
            cut_height=cut_height,
            aligner=aligner,
        )
        locs = contig_tbl.index.get_indexer(rows)
        is_medoid[locs[result.medoid]] = True
        d_medoid[locs] = result.d_medoid
        fc.loc[rows] = result.fc
        stats[key if isinstance(key, tuple) else (key,)] = {
            "avg_distance": result.avg_distance,
            "max_distance": result.max_distance,
        }

    contig_tbl["is_medoid"] = is_medoid
    contig_tbl["d_medoid"] = d_medoid
    contig_tbl["fc"] = fc

    summary = pd.DataFrame(
        [dict(zip(cluster_pk, key), **values) for key, values in stats.items()],
        columns=[*cluster_pk, "avg_distance", "max_distance"],
    )
    counts = contig_tbl.groupby(cluster_pk, observed=True).size().rename("n_cluster").reset_index()
    cluster_tbl = ccdb.cluster_tbl.drop(
        columns=[c for c in ("avg_distance", "max_distance", "n_cluster") if c in ccdb.cluster_tbl.columns]
    )
    for frame in (summary, counts):
        for key in cluster_pk:
            frame[key] = frame[key].astype(cluster_tbl[key].dtype)
    cluster_tbl = cluster_tbl.merge(summary, on=cluster_pk, how="left").merge(counts, on=cluster_pk, how="left")
    cluster_tbl["n_cluster"] = cluster_tbl["n_cluster"].fillna(0).astype(int)

    logger.info(
        "Fine clustering computed medoids for %d cluster(s) (median max distance %.2f)",
        len(stats),
        float(summary["max_distance"].median()) if len(summary) else 0.0,
    )
    return ccdb.replace(contig_tbl=contig_tbl, cluster_tbl=cluster_tbl)
