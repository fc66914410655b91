"""Configuration helpers for the cellrep pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

DEFAULT_INTERIM_DIR = "data/interim"
DEFAULT_METRICS_DIR = "processed/metrics"
DEFAULT_FIGURES_DIR = "processed/figures"
DEFAULT_REPORT_PATH = "processed/report.md"

DEFAULT_CONTIG_FILTERS = {
    "productive": True,
    "high_confidence": True,
    "full_length": True,
    "is_cell": False,
    "chains": None,
}


def _section(config: Optional[Dict], name: str) -> Dict:
    if not config:
        return {}
    return dict(config.get(name) or {})


def paths_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "paths")
    cfg.setdefault("interim_dir", DEFAULT_INTERIM_DIR)
    cfg.setdefault("metrics_dir", DEFAULT_METRICS_DIR)
    cfg.setdefault("figures_dir", DEFAULT_FIGURES_DIR)
    return cfg


def contigs_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "contigs")
    filters = dict(DEFAULT_CONTIG_FILTERS)
    filters.update(cfg.get("filters") or {})
    cfg["filters"] = filters
    cfg.setdefault("format", None)
    cfg.setdefault("sample", None)
    cfg.setdefault("pop", None)
    return cfg


def clustering_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "clustering")
    cfg.setdefault("sequence_key", "cdr3")
    cfg.setdefault("type", "AA")
    cfg.setdefault("identity", 0.96)
    cfg.setdefault("min_length", 6)
    cfg.setdefault("word_size", None)
    cfg.setdefault("cluster_pk", "cluster_idx")
    cfg.setdefault("executable", None)
    cfg.setdefault("threads", 1)
    cfg.setdefault("memory", 800)
    return cfg


def fine_clustering_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "fine_clustering")
    cfg.setdefault("enabled", True)
    cfg.setdefault("substitution_matrix", None)
    cfg.setdefault("cut_height", None)
    return cfg


def pairing_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "pairing")
    cfg.setdefault("chain_key", "chain")
    cfg.setdefault("chains", ["TRA", "TRB"])
    cfg.setdefault("min_expansion", 2)
    cfg.setdefault("orphan_level", 1)
    cfg.setdefault("tie_break_keys", ["umis", "reads"])
    return cfg


def permutation_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "permutation")
    cfg.setdefault("n_perm", 1000)
    cfg.setdefault("n_jobs", 1)
    cfg.setdefault("alternative", "two-sided")
    cfg.setdefault("cell_metadata", None)
    cfg.setdefault("tests", [])
    return cfg


def interim_dir(config: Optional[Dict]) -> Path:
    return Path(paths_config(config)["interim_dir"])


def metrics_dir(config: Optional[Dict]) -> Path:
    return Path(paths_config(config)["metrics_dir"])


def figures_dir(config: Optional[Dict]) -> Path:
    return Path(paths_config(config)["figures_dir"])


def embed_figures(config: Optional[Dict]) -> bool:
    return bool(_section(config, "report").get("embed_figures", True))


def report_path(config: Optional[Dict]) -> Path:
    return Path(_section(config, "report").get("path", DEFAULT_REPORT_PATH))


def export_config(config: Optional[Dict]) -> Dict:
    cfg = _section(config, "export")
    cfg.setdefault("h5ad", None)
    cfg.setdefault("output", None)
    cfg.setdefault("barcode_key", "barcode")
    cfg.setdefault("obs_key", None)
    return cfg
