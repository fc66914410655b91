"""Tests for workflow orchestration and the command-line interface."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import yaml

import src.cellrep.cli as cli
import src.cellrep.workflow as workflow

from conftest import CELLS


@pytest.fixture()
def pipeline_config(tmp_path: Path, contig_df: pd.DataFrame) -> Dict:
    """Write synthetic contigs and a minimal config pointing at them."""
    raw_dir = tmp_path / "data" / "raw"
    raw_dir.mkdir(parents=True)
    contigs_path = raw_dir / "filtered_contig_annotations.csv"
    contig_df.to_csv(contigs_path, index=False)

    barcodes = [barcode for barcode, *_ in CELLS]
    adata = ad.AnnData(X=np.zeros((len(barcodes), 3), dtype=np.float32))
    adata.obs_names = barcodes
    h5ad_path = raw_dir / "cells.h5ad"
    adata.write_h5ad(h5ad_path)

    return {
        "seed": 11,
        "paths": {
            "interim_dir": str(tmp_path / "data" / "interim"),
            "metrics_dir": str(tmp_path / "processed" / "metrics"),
            "figures_dir": str(tmp_path / "processed" / "figures"),
        },
        "contigs": {"path": str(contigs_path), "format": "10x_vdj"},
        "clustering": {"identity": 0.9},
        "pairing": {"min_expansion": 2},
        "permutation": {
            "n_perm": 50,
            "tests": [
                {
                    "name": "trb_expansion",
                    "chain": "TRB",
                    "cell_covariate_keys": ["sample"],
                    "statistic": "expanded_fraction",
                    "statistic_kwargs": {"min_size": 2},
                },
                {
                    "name": "tra_clusters",
                    "chain": "TRA",
                    "cell_covariate_keys": "sample",
                    "statistic": "shared_clusters",
                    "alternative": "greater",
                },
            ],
        },
        "report": {"path": str(tmp_path / "processed" / "report.md")},
        "export": {"h5ad": str(h5ad_path)},
    }


def test_run_pipeline(pipeline_config, fake_cdhit, tmp_path):
    log_dir = tmp_path / "logs"
    result = workflow.run_pipeline(pipeline_config, log_dir=log_dir)

    assert fake_cdhit, "cd-hit was not invoked"
    assert result.ccdb.cluster_pk == ("cluster_idx",)
    assert result.pairing.max_idx == 4
    assert set(result.tests) == {"trb_expansion", "tra_clusters"}
    assert result.tests["trb_expansion"].term == "S2 vs S1"
    assert result.tests["trb_expansion"].n_dropped == 1

    metrics = Path(pipeline_config["paths"]["metrics_dir"])
    table = pd.read_csv(metrics / workflow.PERMUTATION_RESULTS_FILENAME, sep="\t")
    assert list(table.columns) == ["test", "term", "observed", "expected", "p_value", "n_perm"]
    assert set(table["test"]) == {"trb_expansion", "tra_clusters"}
    assert (metrics / workflow.SUMMARY_FILENAME).exists()
    assert (metrics / workflow.CLUSTER_PAIRS_FILENAME).exists()

    report = result.report_path.read_text()
    assert "## Permutation Tests" in report
    assert "### trb_expansion" in report
    assert "## Chain Pairing" in report
    for path in result.figures.values():
        assert Path(path).exists()

    annotated = ad.read_h5ad(Path(pipeline_config["export"]["h5ad"]).with_name("cells_cellrep.h5ad"))
    assert "cellrep_pair_idx" in annotated.obs.columns
    assert annotated.uns["cellrep"]["n_matched"] == len(CELLS)

    assert (log_dir / "pipeline.log").exists()


def test_permutation_tests_are_seeded(pipeline_config, fake_cdhit):
    from src.cellrep.ingest import ingest_contigs

    ingest_contigs(pipeline_config)
    ccdb = workflow.run_clustering(pipeline_config)
    first = workflow.run_permutation_tests(pipeline_config, ccdb)
    second = workflow.run_permutation_tests(pipeline_config, ccdb)
    np.testing.assert_array_equal(first["trb_expansion"].permuted, second["trb_expansion"].permuted)


def test_cell_metadata_is_joined(pipeline_config, fake_cdhit, tmp_path):
    from src.cellrep.ingest import ingest_contigs

    metadata = pd.DataFrame({
        "barcode": [barcode for barcode, *_ in CELLS],
        "sample": [sample for _, sample, *_ in CELLS],
        "donor": ["d1", "d2"] * 4,
    })
    metadata_path = tmp_path / "cells.tsv"
    metadata.to_csv(metadata_path, sep="\t", index=False)
    pipeline_config["permutation"]["cell_metadata"] = str(metadata_path)
    pipeline_config["permutation"]["tests"] = [
        {
            "name": "by_donor",
            "chain": "TRB",
            "cell_covariate_keys": ["donor"],
            "cell_stratify_keys": ["sample"],
            "statistic": "shared_clusters",
        }
    ]

    ingest_contigs(pipeline_config)
    ccdb = workflow.run_clustering(pipeline_config)
    tests = workflow.run_permutation_tests(pipeline_config, ccdb)
    assert tests["by_donor"].cell_stratify_keys == ("sample",)


def test_cli_stages(pipeline_config, fake_cdhit, tmp_path, monkeypatch):
    pipeline_config["export"]["h5ad"] = None
    config_path = tmp_path / "cellrep.yaml"
    config_path.write_text(yaml.safe_dump(pipeline_config))

    for command in ("ingest", "cluster", "permute", "report"):
        monkeypatch.setattr(sys, "argv", ["cellrep", command, "--config", str(config_path), "--seed", "5"])
        cli.main()

    metrics = Path(pipeline_config["paths"]["metrics_dir"])
    assert (metrics / workflow.PERMUTATION_RESULTS_FILENAME).exists()
    summary = (metrics / workflow.SUMMARY_FILENAME).read_text()
    assert "trb_expansion" in summary
    assert Path(pipeline_config["report"]["path"]).exists()


def test_cli_rejects_unknown_command(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["cellrep", "deploy"])
    with pytest.raises(SystemExit):
        cli.main()
