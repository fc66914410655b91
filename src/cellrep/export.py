"""Export containers to disk and annotate AnnData objects."""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

import anndata as ad
import pandas as pd

from .ccdb import ContigCellDB
from .exceptions import ConfigurationError
from .utils import ensure_dir, write_json

CONTIGS_PARQUET = "contigs.parquet"
CELLS_PARQUET = "cells.parquet"
CLUSTERS_PARQUET = "clusters.parquet"
MANIFEST_JSON = "manifest.json"


def write_ccdb(ccdb: ContigCellDB, outdir: Path) -> Dict[str, Path]:
    """Write the tables as parquet plus a JSON manifest of keys.

    The cluster table is written only when the container has a ``cluster_pk``.
    """
    outdir = Path(outdir)
    ensure_dir(outdir)
    tables = {"contigs": (ccdb.contig_tbl, CONTIGS_PARQUET), "cells": (ccdb.cell_tbl, CELLS_PARQUET)}
    if ccdb.cluster_pk:
        tables["clusters"] = (ccdb.cluster_tbl, CLUSTERS_PARQUET)
    paths = {}
    for name, (table, filename) in tables.items():
        paths[name] = outdir / filename
        table.to_parquet(paths[name], index=False)
    paths["manifest"] = outdir / MANIFEST_JSON
    write_json(paths["manifest"], {
        **ccdb.summary(),
        "tables": {name: path.name for name, path in paths.items() if name != "manifest"},
    })
    logging.info("Wrote ContigCellDB tables to %s", outdir)
    return paths


def read_ccdb(outdir: Path) -> ContigCellDB:
    """Load a container written by :func:`write_ccdb`."""
    outdir = Path(outdir)
    manifest = json.loads((outdir / MANIFEST_JSON).read_text())
    tables = manifest["tables"]
    contig_tbl = pd.read_parquet(outdir / tables["contigs"])
    cell_tbl = pd.read_parquet(outdir / tables["cells"])
    cluster_pk = manifest.get("cluster_pk") or []
    cluster_tbl = pd.read_parquet(outdir / tables["clusters"]) if cluster_pk else None
    return ContigCellDB(
        contig_tbl,
        contig_pk=manifest["contig_pk"],
        cell_tbl=cell_tbl,
        cell_pk=manifest["cell_pk"],
        cluster_tbl=cluster_tbl,
        cluster_pk=cluster_pk,
    )


def attach_to_anndata(
    adata: ad.AnnData,
    ccdb: ContigCellDB,
    *,
    barcode_key: str = "barcode",
    obs_key: Optional[str] = None,
    fields: Optional[Sequence[str]] = None,
    prefix: str = "cellrep_",
) -> None:
    """Join cell-level annotations from ``ccdb`` into ``adata.obs`` in-place.

    Cells are matched on ``cell_tbl[barcode_key]`` against ``adata.obs[obs_key]``
    (or ``obs_names`` when ``obs_key`` is None). ``fields`` defaults to every
    non-key column of ``cell_tbl``; each is written as ``{prefix}{field}``.
    """
    cell_tbl = ccdb.cell_tbl
    if barcode_key not in cell_tbl.columns:
        raise ConfigurationError(f"cell_tbl has no '{barcode_key}' column")
    if cell_tbl[barcode_key].duplicated().any():
        raise ConfigurationError(
            f"'{barcode_key}' is not unique in cell_tbl; filter to a single sample/pop before attaching"
        )
    if fields is None:
        fields = [column for column in cell_tbl.columns if column not in ccdb.cell_pk]
    missing = [field for field in fields if field not in cell_tbl.columns]
    if missing:
        raise ConfigurationError(f"fields not in cell_tbl: {', '.join(missing)}")

    by_barcode = cell_tbl.set_index(cell_tbl[barcode_key].astype(str))
    obs = adata.obs
    if obs_key is None:
        obs_barcodes = pd.Index(adata.obs_names.astype(str))
    else:
        obs_barcodes = pd.Index(obs[obs_key].astype(str))
    for field in fields:
        values = by_barcode[field].reindex(obs_barcodes)
        values.index = obs.index
        obs[f"{prefix}{field}"] = values

    matched = int(obs_barcodes.isin(by_barcode.index).sum())
    adata.uns["cellrep"] = {
        "contig_pk": list(ccdb.contig_pk),
        "cell_pk": list(ccdb.cell_pk),
        "cluster_pk": list(ccdb.cluster_pk),
        "fields": [f"{prefix}{field}" for field in fields],
        "n_matched": matched,
    }
    logging.info("Attached %d field(s) for %d of %d cells", len(fields), matched, adata.n_obs)
