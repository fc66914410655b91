import numpy as np
import pytest

from src.cellrep.exceptions import ConfigurationError
from src.cellrep.fine_clustering import distance_matrix, fine_cluster_seqs, fine_clustering, make_aligner

B1 = "CASSLGQGAEAFF"
B1_VARIANT = "CASSLGQGAEAFY"
A1 = "CAVRDSNYQLIW"


def test_distance_matrix_properties():
    aligner = make_aligner("AA")
    dist = distance_matrix([B1, B1, B1_VARIANT, A1], aligner)
    assert dist.shape == (4, 4)
    assert np.allclose(dist, dist.T)
    assert np.all(np.diag(dist) == 0)
    assert dist[0, 1] == 0
    assert (dist >= 0).all()
    # F/Y substitution under BLOSUM62: (6 + 7) / 2 - 3
    assert dist[0, 2] == pytest.approx(3.5)
    assert dist[0, 3] > dist[0, 2]


def test_medoid_minimises_total_distance():
    result = fine_cluster_seqs([B1_VARIANT, B1, B1], type="AA")
    assert result.medoid == 1
    assert result.d_medoid.tolist() == pytest.approx([3.5, 0.0, 0.0])
    assert result.max_distance == pytest.approx(3.5)
    assert result.fc.tolist() == [1, 1, 1]


def test_singleton_cluster():
    result = fine_cluster_seqs([A1])
    assert result.medoid == 0
    assert result.avg_distance == 0.0
    assert result.max_distance == 0.0
    assert result.fc.tolist() == [1]


def test_cut_height_splits_members():
    result = fine_cluster_seqs([B1, B1_VARIANT, A1], cut_height=5)
    assert result.fc[0] == result.fc[1]
    assert result.fc[2] != result.fc[0]


def test_unknown_matrix_rejected():
    with pytest.raises(ConfigurationError):
        make_aligner("AA", substitution_matrix="NOT_A_MATRIX")


def test_fine_clustering_annotates_tables(clustered_ccdb):
    fine = fine_clustering(clustered_ccdb, sequence_key="cdr3")
    contigs = fine.contig_tbl
    for column in ("is_medoid", "d_medoid", "fc"):
        assert column in contigs.columns
    # one medoid per cluster
    medoids = contigs.groupby("cluster_idx")["is_medoid"].sum()
    assert (medoids == 1).all()
    # every cluster holds identical sequences here
    assert (contigs["d_medoid"] == 0).all()
    clusters = fine.cluster_tbl
    assert {"avg_distance", "max_distance", "n_cluster"} <= set(clusters.columns)
    assert clusters["n_cluster"].sum() == fine.n_contigs


def test_fine_clustering_requires_clusters(contig_df):
    from src.cellrep.ccdb import ContigCellDB

    with pytest.raises(ConfigurationError):
        fine_clustering(ContigCellDB.from_10x(contig_df))
