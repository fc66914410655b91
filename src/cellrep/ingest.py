"""Load 10x/AIRR contig annotations and harmonise them into a contig table."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

import pandas as pd

from .config import contigs_config, interim_dir, metrics_dir
from .schemas import validate_contig_table
from .utils import ensure_dir, write_json

SUPPORTED_FORMATS = {"10x_vdj", "airr"}

CONTIGS_FILENAME = "contigs.parquet"
INGEST_SUMMARY_FILENAME = "ingest_summary.json"

_10X_COLUMNS = {
    "barcode": "barcode",
    "contig_id": "contig_id",
    "chain": "chain",
    "cdr3": "cdr3",
    "cdr3_nt": "cdr3_nt",
    "v_gene": "v_gene",
    "d_gene": "d_gene",
    "j_gene": "j_gene",
    "c_gene": "c_gene",
    "productive": "productive",
    "full_length": "full_length",
    "high_confidence": "high_confidence",
    "is_cell": "is_cell",
    "umis": "umis",
    "umi_count": "umis",
    "reads": "reads",
    "read_count": "reads",
    "raw_clonotype_id": "raw_clonotype_id",
}

_AIRR_COLUMNS = {
    "cell_id": "barcode",
    "sequence_id": "contig_id",
    "locus": "chain",
    "junction_aa": "cdr3",
    "junction": "cdr3_nt",
    "v_call": "v_gene",
    "d_call": "d_gene",
    "j_call": "j_gene",
    "c_call": "c_gene",
    "productive": "productive",
    "complete_vdj": "full_length",
    "duplicate_count": "umis",
    "umi_count": "umis",
    "consensus_count": "reads",
    "clone_id": "raw_clonotype_id",
}

STRING_COLUMNS = ["cdr3", "cdr3_nt", "v_gene", "d_gene", "j_gene", "c_gene", "raw_clonotype_id"]
FLAG_COLUMNS = ["productive", "full_length", "high_confidence", "is_cell"]


def get_output_path(config: Dict) -> Path:
    return interim_dir(config) / CONTIGS_FILENAME


def _normalise_flag(series: pd.Series) -> pd.Series:
    mapping = {
        "true": True,
        "t": True,
        "yes": True,
        "y": True,
        "1": True,
        "productive": True,
        "false": False,
        "f": False,
        "no": False,
        "n": False,
        "0": False,
        "unproductive": False,
        "non-productive": False,
    }
    normalised = series.astype(str).str.strip().str.lower().map(mapping)
    return normalised.astype("boolean")


def _detect_format(path: Path, fmt: Optional[str]) -> str:
    if fmt is None:
        fmt = "10x_vdj" if path.suffix.lower() == ".csv" else "airr"
    fmt = fmt.lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported contig format '{fmt}' (expected one of {sorted(SUPPORTED_FORMATS)})")
    return fmt


def load_contigs(
    path: Path,
    fmt: Optional[str] = None,
    *,
    sample: Optional[str] = None,
    pop: Optional[str] = None,
) -> pd.DataFrame:
    """Read a contig annotation file into the harmonised contig schema."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    fmt = _detect_format(path, fmt)
    logging.info("Loading contig annotations %s (format=%s)", path, fmt)

    if fmt == "10x_vdj":
        raw = pd.read_csv(path)
        df = raw.rename(columns=_10X_COLUMNS)
    else:
        raw = pd.read_csv(path, sep="\t")
        df = raw.rename(columns=_AIRR_COLUMNS)

    if "barcode" not in df.columns:
        raise ValueError(f"Contig table {path} has no barcode/cell_id column")
    if "chain" not in df.columns:
        raise ValueError(f"Contig table {path} has no chain/locus column")

    df = df.loc[:, ~df.columns.duplicated()].copy()
    df["barcode"] = df["barcode"].astype(str).str.strip()
    df["chain"] = df["chain"].fillna("").astype(str).str.upper()
    if "contig_id" not in df.columns:
        df["contig_id"] = df["barcode"] + "_contig_" + (df.groupby("barcode").cumcount() + 1).astype(str)
    df["contig_id"] = df["contig_id"].astype(str)

    for column in STRING_COLUMNS:
        if column in df.columns:
            df[column] = df[column].astype("string").replace({"None": pd.NA, "": pd.NA})
        else:
            df[column] = pd.Series(pd.NA, index=df.index, dtype="string")

    for column in FLAG_COLUMNS:
        if column in df.columns:
            df[column] = _normalise_flag(df[column])
        else:
            df[column] = pd.Series(pd.NA, index=df.index, dtype="boolean")

    for column in ("umis", "reads"):
        if column in df.columns:
            df[column] = pd.to_numeric(df[column], errors="coerce")
        else:
            df[column] = float("nan")

    if sample is not None:
        df["sample"] = str(sample)
    if pop is not None:
        df["pop"] = str(pop)

    df["length"] = df["cdr3_nt"].str.len().astype("Int64")
    return df.reset_index(drop=True)


def filter_contigs_table(
    df: pd.DataFrame,
    *,
    productive: bool = True,
    high_confidence: bool = True,
    full_length: bool = True,
    is_cell: bool = False,
    chains: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """Drop contigs failing the requested quality flags.

    A flag that is requested but entirely missing from the table is ignored.
    """
    mask = pd.Series(True, index=df.index)
    for column, wanted in (
        ("productive", productive),
        ("high_confidence", high_confidence),
        ("full_length", full_length),
        ("is_cell", is_cell),
    ):
        if not wanted or column not in df.columns or df[column].isna().all():
            continue
        mask &= df[column].fillna(False).astype(bool)
    if chains:
        wanted_chains = {str(chain).upper() for chain in chains}
        mask &= df["chain"].isin(wanted_chains)

    removed = int((~mask).sum())
    if removed:
        logging.info("Filtered %d of %d contigs failing quality flags", removed, len(df))
    return df.loc[mask].reset_index(drop=True)


def ingest_contigs(config: Dict) -> Path:
    """Load, filter, validate and persist the contig table named in config."""
    contig_cfg = contigs_config(config)
    source = contig_cfg.get("path")
    if not source:
        raise ValueError("Configuration 'contigs.path' is required for ingest")

    raw = load_contigs(
        Path(source),
        contig_cfg.get("format"),
        sample=contig_cfg.get("sample"),
        pop=contig_cfg.get("pop"),
    )
    filtered = filter_contigs_table(raw, **contig_cfg["filters"])
    validate_contig_table(filtered)

    out_path = get_output_path(config)
    ensure_dir(out_path.parent)
    filtered.to_parquet(out_path, index=False)

    summary = {
        "source": str(source),
        "n_rows": int(len(raw)),
        "n_retained": int(len(filtered)),
        "n_cells": int(filtered["barcode"].nunique()),
        "chains": filtered["chain"].value_counts().to_dict(),
    }
    write_json(metrics_dir(config) / INGEST_SUMMARY_FILENAME, summary)
    logging.info("Wrote harmonised contig table to %s", out_path)
    return out_path
