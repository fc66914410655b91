"""Figure generation for clustering, pairing and permutation results."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .ccdb import ContigCellDB
from .pairing import PairingTables
from .permute import PermuteTest, PermuteTestList

CLUSTER_SIZES_FIG = "cluster_sizes.png"
PAIRING_HEATMAP_FIG = "pairing_heatmap.png"


sns.set_style("whitegrid")


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _save(fig: plt.Figure, path: Path, what: str) -> None:
    fig.tight_layout()
    _ensure_parent(path)
    fig.savefig(path, dpi=300)
    plt.close(fig)
    logging.info("Saved %s to %s", what, path)


def _placeholder(path: Path, message: str) -> None:
    _ensure_parent(path)
    fig, ax = plt.subplots(figsize=(5, 3))
    ax.axis("off")
    ax.text(0.5, 0.5, message, ha="center", va="center", wrap=True)
    fig.tight_layout()
    fig.savefig(path, dpi=300)
    plt.close(fig)
    logging.info("Created placeholder figure at %s", path)


def plot_cluster_sizes(ccdb: ContigCellDB, path: Path) -> None:
    """Histogram of the number of contigs per cluster, split by chain when known."""
    path = Path(path)
    if not ccdb.cluster_pk or ccdb.contig_tbl.empty:
        _placeholder(path, "No cluster assignments available")
        return
    pk = list(ccdb.cluster_pk)
    contigs = ccdb.contig_tbl
    group_cols = [*pk, "chain"] if "chain" in contigs.columns else pk
    sizes = contigs.groupby(group_cols, observed=True).size().reset_index(name="n_contigs")
    fig, ax = plt.subplots(figsize=(7, 4))
    sns.histplot(
        data=sizes,
        x="n_contigs",
        hue="chain" if "chain" in sizes.columns else None,
        discrete=True,
        element="step",
        ax=ax,
    )
    ax.set_yscale("log")
    ax.set_xlabel("Contigs per cluster")
    ax.set_ylabel("Clusters")
    ax.set_title("Cluster size distribution")
    _save(fig, path, "cluster size distribution")


def plot_pairing_heatmap(pairing: PairingTables, path: Path, top: int = 30) -> None:
    """Heatmap of cell counts for the most frequent retained cluster pairs."""
    path = Path(path)
    pairs = pairing.cluster_pair_tbl
    idx1, idx2 = pairing.pair_keys
    if pairs.empty:
        _placeholder(path, "No cluster pairs available")
        return
    complete = pairs.dropna(subset=[idx1, idx2])
    complete = complete.loc[complete["expanded"] | complete["whitelisted"]]
    if complete.empty:
        _placeholder(path, "No expanded cluster pairs")
        return
    shown = complete.sort_values("n_cells", ascending=False).head(top)
    pivot = shown.pivot_table(index=idx1, columns=idx2, values="n_cells", aggfunc="sum").fillna(0).astype(float)
    fig, ax = plt.subplots(figsize=(max(6, pivot.shape[1] * 0.4), max(5, pivot.shape[0] * 0.3)))
    sns.heatmap(pivot, cmap="mako", annot=pivot.size <= 100, fmt=".0f", ax=ax)
    ax.set_xlabel(idx2)
    ax.set_ylabel(idx1)
    ax.set_title("Expanded cluster pairs")
    _save(fig, path, "pairing heatmap")


def plot_permute_test(result: Union[PermuteTest, PermuteTestList], path: Path, bins: int = 30) -> None:
    """Histogram of permuted statistics with the observed value marked, one panel per term."""
    path = Path(path)
    tests = [result] if isinstance(result, PermuteTest) else list(result)
    if not tests:
        _placeholder(path, "No permutation results")
        return
    ncols = min(3, len(tests))
    nrows = math.ceil(len(tests) / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3 * nrows), squeeze=False)
    for ax, test in zip(axes.flat, tests):
        draws = test.permuted[np.isfinite(test.permuted)]
        if draws.size:
            sns.histplot(x=draws, bins=bins, color="steelblue", ax=ax)
        else:
            ax.text(0.5, 0.5, "Statistic undefined", ha="center", va="center", transform=ax.transAxes)
        if np.isfinite(test.observed):
            ax.axvline(test.observed, color="firebrick", linestyle="--", label="observed")
        ax.set_title(f"{test.term} (p={test.p_value:.3g})", fontsize=9)
        ax.set_xlabel("Permuted statistic")
    for ax in list(axes.flat)[len(tests):]:
        ax.axis("off")
    axes.flat[0].legend(loc="upper right", fontsize=8)
    _save(fig, path, "permutation histogram")


def permutation_figure_name(name: str) -> str:
    return f"permutation_{name}.png"


def generate_figures(
    figures_dir: Path,
    ccdb: ContigCellDB,
    pairing: Optional[PairingTables] = None,
    tests: Optional[Dict[str, Union[PermuteTest, PermuteTestList]]] = None,
) -> Dict[str, Path]:
    figures_dir = Path(figures_dir)
    paths = {"cluster_sizes": figures_dir / CLUSTER_SIZES_FIG}
    plot_cluster_sizes(ccdb, paths["cluster_sizes"])
    if pairing is not None:
        paths["pairing_heatmap"] = figures_dir / PAIRING_HEATMAP_FIG
        plot_pairing_heatmap(pairing, paths["pairing_heatmap"])
    for name, result in (tests or {}).items():
        key = f"permutation_{name}"
        paths[key] = figures_dir / permutation_figure_name(name)
        plot_permute_test(result, paths[key])
    return paths
