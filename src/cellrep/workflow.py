"""Workflow orchestration for the cellrep pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd

from . import export, ingest, viz
from .canonicalize import canonicalize_by_chain, canonicalize_cell, canonicalize_cluster
from .ccdb import ContigCellDB
from .cdhit import cdhit_ccdb
from .config import (
    clustering_config,
    export_config,
    figures_dir,
    fine_clustering_config,
    interim_dir,
    metrics_dir,
    pairing_config,
    permutation_config,
)
from .exceptions import ConfigurationError
from .fine_clustering import fine_clustering
from .pairing import PairingTables, enumerate_pairing, pairing_tables
from .permute import PermuteTest, PermuteTestList, cluster_permute_test
from .report import write_report
from .statistics import get_statistic
from .utils import ensure_dir, set_seed, timer, write_json

CCDB_DIRNAME = "ccdb"
SUMMARY_FILENAME = "cellrep_summary.json"
PERMUTATION_RESULTS_FILENAME = "permutation_results.tsv"
CLUSTER_PAIRS_FILENAME = "cluster_pairs.tsv"
PAIRING_CELLS_FILENAME = "pairing_cells.tsv"

TestResult = Union[PermuteTest, PermuteTestList]


@dataclass
class PipelineResult:
    ccdb: ContigCellDB
    pairing: Optional[PairingTables]
    tests: Dict[str, TestResult]
    summary: Dict
    report_path: Path
    figures: Dict[str, Path] = field(default_factory=dict)


def ccdb_dir(config: Dict) -> Path:
    return interim_dir(config) / CCDB_DIRNAME


def load_ccdb(config: Dict) -> ContigCellDB:
    """Container built from the harmonised contig table written by ingest."""
    path = ingest.get_output_path(config)
    if not path.exists():
        raise FileNotFoundError(f"Contig table {path} not found; run the ingest stage first")
    contigs = pd.read_parquet(path)
    return ContigCellDB.from_10x(contigs)


def cluster_contigs(config: Dict, ccdb: ContigCellDB) -> ContigCellDB:
    """CD-HIT clustering, fine clustering and cluster canonicalization."""
    cfg = clustering_config(config)
    with timer("CD-HIT clustering"):
        clustered = cdhit_ccdb(
            ccdb,
            sequence_key=cfg["sequence_key"],
            type=cfg["type"],
            cluster_pk=cfg["cluster_pk"],
            identity=cfg["identity"],
            min_length=cfg["min_length"],
            word_size=cfg["word_size"],
            executable=cfg["executable"],
            threads=cfg["threads"],
            memory=cfg["memory"],
        )

    fine_cfg = fine_clustering_config(config)
    if fine_cfg["enabled"]:
        with timer("Fine clustering"):
            clustered = fine_clustering(
                clustered,
                sequence_key=cfg["sequence_key"],
                type=cfg["type"],
                substitution_matrix=fine_cfg["substitution_matrix"],
                cut_height=fine_cfg["cut_height"],
            )

    fields = [
        column
        for column in (cfg["sequence_key"], "chain", "v_gene", "j_gene")
        if column in clustered.contig_tbl.columns
    ]
    return canonicalize_cluster(clustered, tie_break_keys=("umis", "reads"), contig_fields=fields)


def run_clustering(config: Dict, ccdb: Optional[ContigCellDB] = None) -> ContigCellDB:
    ccdb = ccdb if ccdb is not None else load_ccdb(config)
    clustered = cluster_contigs(config, ccdb)
    export.write_ccdb(clustered, ccdb_dir(config))
    logging.info("Clustered container: %s", clustered)
    return clustered


def run_pairing(config: Dict, ccdb: ContigCellDB) -> PairingTables:
    cfg = pairing_config(config)
    pairing = pairing_tables(
        ccdb,
        chains=cfg["chains"],
        chain_key=cfg["chain_key"],
        tie_break_keys=cfg["tie_break_keys"],
        min_expansion=cfg["min_expansion"],
        orphan_level=cfg["orphan_level"],
    )
    out_dir = metrics_dir(config)
    ensure_dir(out_dir)
    pairing.cluster_pair_tbl.to_csv(out_dir / CLUSTER_PAIRS_FILENAME, sep="\t", index=False)
    pairing.cell_tbl.to_csv(out_dir / PAIRING_CELLS_FILENAME, sep="\t", index=False)
    return pairing


def _with_cell_metadata(config: Dict, ccdb: ContigCellDB) -> ContigCellDB:
    path = permutation_config(config)["cell_metadata"]
    if not path:
        return ccdb
    metadata = pd.read_csv(path, sep="\t" if str(path).endswith((".tsv", ".txt")) else ",")
    keys = [key for key in ccdb.cell_pk if key in metadata.columns]
    if not keys:
        raise ConfigurationError(
            f"Cell metadata {path} shares no key column with cell_pk {list(ccdb.cell_pk)}"
        )
    cell_tbl = ccdb.cell_tbl
    for key in keys:
        metadata[key] = metadata[key].astype(cell_tbl[key].dtype)
    extra = [column for column in metadata.columns if column not in cell_tbl.columns]
    merged = cell_tbl.merge(metadata.loc[:, [*keys, *extra]].drop_duplicates(subset=keys), on=keys, how="left")
    return ccdb.replace(cell_tbl=merged)


def _labelled(config: Dict, ccdb: ContigCellDB, chain: Optional[str]) -> ContigCellDB:
    pair_cfg = pairing_config(config)
    fields = list(ccdb.cluster_pk)
    if chain:
        return canonicalize_by_chain(
            ccdb,
            chain,
            chain_key=pair_cfg["chain_key"],
            tie_break_keys=pair_cfg["tie_break_keys"],
            contig_fields=fields,
        )
    return canonicalize_cell(ccdb, tie_break_keys=pair_cfg["tie_break_keys"], contig_fields=fields)


def run_permutation_tests(
    config: Dict,
    ccdb: ContigCellDB,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, TestResult]:
    """Run every test listed under ``permutation.tests``."""
    cfg = permutation_config(config)
    rng = rng if rng is not None else set_seed(int(config.get("seed", 0)))
    base = _with_cell_metadata(config, ccdb)
    results: Dict[str, TestResult] = {}
    for position, test in enumerate(cfg["tests"], start=1):
        name = test.get("name") or f"test{position}"
        if "cell_covariate_keys" not in test or "statistic" not in test:
            raise ConfigurationError(f"Permutation test '{name}' needs cell_covariate_keys and statistic")
        labelled = _labelled(config, base, test.get("chain"))
        with timer(f"Permutation test ({name})"):
            results[name] = cluster_permute_test(
                labelled,
                cell_covariate_keys=test["cell_covariate_keys"],
                statistic=get_statistic(test["statistic"]),
                n_perm=int(test.get("n_perm", cfg["n_perm"])),
                cell_stratify_keys=test.get("cell_stratify_keys") or (),
                contrasts=test.get("contrasts"),
                alternative=test.get("alternative", cfg["alternative"]),
                random_state=rng,
                n_jobs=int(cfg["n_jobs"]),
                **(test.get("statistic_kwargs") or {}),
            )
        logging.info("Permutation test %s:\n%s", name, results[name])
    return results


def permutation_results_table(tests: Dict[str, TestResult]) -> pd.DataFrame:
    frames = [result.tidy().assign(test=name) for name, result in tests.items()]
    if not frames:
        return pd.DataFrame(columns=["test", "term", "observed", "expected", "p_value", "n_perm"])
    table = pd.concat(frames, ignore_index=True)
    return table[["test", "term", "observed", "expected", "p_value", "n_perm"]]


def run_permutations(config: Dict, ccdb: Optional[ContigCellDB] = None) -> Dict[str, TestResult]:
    ccdb = ccdb if ccdb is not None else export.read_ccdb(ccdb_dir(config))
    tests = run_permutation_tests(config, ccdb)
    out_dir = metrics_dir(config)
    ensure_dir(out_dir)
    permutation_results_table(tests).to_csv(out_dir / PERMUTATION_RESULTS_FILENAME, sep="\t", index=False)
    for name, result in tests.items():
        viz.plot_permute_test(result, figures_dir(config) / viz.permutation_figure_name(name))
    return tests


def _top_clusters(ccdb: ContigCellDB, sequence_key: str, n: int = 10) -> List[Dict]:
    if not ccdb.cluster_pk or "n_cluster" not in ccdb.cluster_tbl.columns:
        return []
    pk = ccdb.cluster_pk[0]
    top = ccdb.cluster_tbl.sort_values("n_cluster", ascending=False, kind="mergesort").head(n)
    rows = []
    for _, row in top.iterrows():
        sequence = row.get(sequence_key)
        rows.append({
            "cluster": str(row[pk]),
            "n_cluster": int(row["n_cluster"]),
            "sequence": "" if pd.isna(sequence) else str(sequence),
        })
    return rows


def build_summary(
    config: Dict,
    ccdb: ContigCellDB,
    pairing: Optional[PairingTables],
    permutation_table: Optional[pd.DataFrame],
) -> Dict:
    summary: Dict = {
        "ccdb": ccdb.summary(),
        "top_clusters": _top_clusters(ccdb, clustering_config(config)["sequence_key"]),
    }
    if pairing is not None:
        chain_key = pairing_config(config)["chain_key"]
        per_cell = enumerate_pairing(ccdb, chain_key=chain_key)
        summary["pairing"] = {
            "pairing_counts": per_cell["pairing"].value_counts().to_dict(),
            "max_idx": pairing.max_idx,
            "min_expansion": pairing_config(config)["min_expansion"],
        }
    if permutation_table is not None and not permutation_table.empty:
        summary["permutation"] = {
            name: group.drop(columns="test").to_dict(orient="records")
            for name, group in permutation_table.groupby("test", sort=False)
        }
    return summary


def _export_anndata(config: Dict, ccdb: ContigCellDB, pairing: Optional[PairingTables]) -> Optional[Path]:
    cfg = export_config(config)
    if not cfg["h5ad"]:
        return None
    adata = ad.read_h5ad(cfg["h5ad"])
    labelled = _labelled(config, ccdb, None)
    if pairing is not None:
        cell_pk = list(ccdb.cell_pk)
        keep = [*cell_pk, *pairing.pair_keys, "pair_idx"]
        labelled = labelled.replace(
            cell_tbl=labelled.cell_tbl.merge(pairing.cell_tbl.loc[:, keep], on=cell_pk, how="left")
        )
    export.attach_to_anndata(adata, labelled, barcode_key=cfg["barcode_key"], obs_key=cfg["obs_key"])
    out_path = Path(cfg["output"] or Path(cfg["h5ad"]).with_name(Path(cfg["h5ad"]).stem + "_cellrep.h5ad"))
    ensure_dir(out_path.parent)
    adata.write_h5ad(out_path)
    logging.info("Wrote annotated AnnData to %s", out_path)
    return out_path


def run_report(
    config: Dict,
    ccdb: Optional[ContigCellDB] = None,
    pairing: Optional[PairingTables] = None,
    tests: Optional[Dict[str, TestResult]] = None,
) -> PipelineResult:
    """Figures, summary JSON and the markdown report for a clustered container."""
    ccdb = ccdb if ccdb is not None else export.read_ccdb(ccdb_dir(config))
    pairing = pairing if pairing is not None else run_pairing(config, ccdb)
    results_path = metrics_dir(config) / PERMUTATION_RESULTS_FILENAME
    if tests is not None:
        table = permutation_results_table(tests)
    elif results_path.exists():
        table = pd.read_csv(results_path, sep="\t")
    else:
        table = None

    figures = viz.generate_figures(figures_dir(config), ccdb, pairing)
    if table is not None:
        for name in table["test"].unique():
            path = figures_dir(config) / viz.permutation_figure_name(name)
            if path.exists():
                figures[f"permutation_{name}"] = path

    summary = build_summary(config, ccdb, pairing, table)
    write_json(metrics_dir(config) / SUMMARY_FILENAME, summary)
    path = write_report(config, summary, figures)
    logging.info("Wrote report to %s", path)
    return PipelineResult(
        ccdb=ccdb,
        pairing=pairing,
        tests=tests or {},
        summary=summary,
        report_path=path,
        figures=figures,
    )


def _attach_file_logger(log_dir: Path, filename: str = "pipeline.log") -> logging.Handler:
    """Attach a file handler to the root logger and return it."""
    ensure_dir(log_dir)
    handler = logging.FileHandler(log_dir / filename)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    logging.getLogger().addHandler(handler)
    return handler


def _remove_handler(handler: logging.Handler) -> None:
    handler.flush()
    handler.close()
    logging.getLogger().removeHandler(handler)


def run_pipeline(config: Dict, *, log_dir: Optional[Union[Path, str]] = "logs") -> PipelineResult:
    """Ingest, cluster, pair, test and report in one pass."""
    logging.info("Starting cellrep pipeline")
    file_handler = _attach_file_logger(Path(log_dir)) if log_dir else None
    try:
        with timer("Ingest"):
            ingest.ingest_contigs(config)
        with timer("Clustering"):
            ccdb = run_clustering(config)
        with timer("Pairing"):
            pairing = run_pairing(config, ccdb)
        with timer("Permutation tests"):
            tests = run_permutations(config, ccdb)
        with timer("Report"):
            result = run_report(config, ccdb, pairing, tests)
        with timer("AnnData export"):
            _export_anndata(config, ccdb, pairing)
        logging.info("cellrep pipeline completed successfully")
        return result
    finally:
        if file_handler is not None:
            _remove_handler(file_handler)
