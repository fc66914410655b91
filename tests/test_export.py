import anndata as ad
import numpy as np
import pandas as pd
import pytest

from src.cellrep.canonicalize import canonicalize_by_chain
from src.cellrep.ccdb import ContigCellDB
from src.cellrep.exceptions import ConfigurationError
from src.cellrep.export import attach_to_anndata, read_ccdb, write_ccdb


def test_write_and_read_ccdb(tmp_path, clustered_ccdb):
    paths = write_ccdb(clustered_ccdb, tmp_path / "ccdb")
    for key in ("contigs", "cells", "clusters", "manifest"):
        assert paths[key].exists()
    restored = read_ccdb(tmp_path / "ccdb")
    assert restored.contig_pk == clustered_ccdb.contig_pk
    assert restored.cluster_pk == ("cluster_idx",)
    assert restored.n_contigs == clustered_ccdb.n_contigs
    assert restored.n_clusters == clustered_ccdb.n_clusters


def test_round_trip_keeps_dtypes(tmp_path):
    contig_tbl = pd.DataFrame({
        "barcode": ["001", "002", "002"],
        "contig_id": ["c1", "c2", "c3"],
        "lineage": pd.array([1, pd.NA, 2], dtype="Int64"),
    })
    ccdb = ContigCellDB(contig_tbl, contig_pk=["barcode", "contig_id"], cell_pk="barcode")
    paths = write_ccdb(ccdb, tmp_path / "ccdb")
    assert "clusters" not in paths

    restored = read_ccdb(tmp_path / "ccdb")
    assert restored.cell_tbl["barcode"].tolist() == ["001", "002"]
    assert restored.contig_tbl["lineage"].dtype == "Int64"
    assert restored.contig_tbl["lineage"].isna().tolist() == [False, True, False]
    assert restored.cluster_pk == ()


def test_attach_to_anndata(clustered_ccdb):
    ccdb = canonicalize_by_chain(
        clustered_ccdb.filter_cells("sample == 'S1'"), "TRB", contig_fields=["cdr3", "cluster_idx"]
    )
    obs = pd.DataFrame(index=["AAAC-1", "AACC-1", "TTTT-1"])
    adata = ad.AnnData(X=np.zeros((3, 2)), obs=obs)

    attach_to_anndata(adata, ccdb, fields=["cdr3", "cluster_idx"])

    assert adata.obs.loc["AAAC-1", "cellrep_cdr3"] == "CASSLGQGAEAFF"
    assert pd.isna(adata.obs.loc["TTTT-1", "cellrep_cdr3"])
    assert adata.uns["cellrep"]["n_matched"] == 2
    assert adata.uns["cellrep"]["fields"] == ["cellrep_cdr3", "cellrep_cluster_idx"]


def test_attach_requires_unique_barcodes(clustered_ccdb):
    duplicated = clustered_ccdb.cell_tbl.assign(barcode="AAAC-1")
    ccdb = clustered_ccdb.replace(cell_tbl=duplicated.drop_duplicates(["barcode", "sample"]))
    adata = ad.AnnData(X=np.zeros((1, 1)), obs=pd.DataFrame(index=["AAAC-1"]))
    with pytest.raises(ConfigurationError, match="not unique"):
        attach_to_anndata(adata, ccdb)
