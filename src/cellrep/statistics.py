"""Ready-made statistics for :func:`cellrep.permute.cluster_permute_test`."""

from __future__ import annotations

from typing import Callable, Dict

import pandas as pd

from .contrasts import covariate_levels
from .exceptions import ConfigurationError


def _covariate_series(covariates: pd.DataFrame) -> pd.Series:
    if covariates.shape[1] == 1:
        return covariates.iloc[:, 0]
    return covariates.astype(str).agg("|".join, axis=1)


def purity(labels: pd.Series, covariates: pd.DataFrame) -> float:
    """Mean share of the dominant covariate level within multi-cell clusters.

    Returns NaN when no cluster holds more than one cell.
    """
    frame = pd.DataFrame({"label": labels.to_numpy(), "covariate": _covariate_series(covariates).to_numpy()})
    sizes = frame.groupby("label", observed=True)["covariate"].transform("size")
    frame = frame.loc[sizes > 1]
    if frame.empty:
        return float("nan")
    counts = frame.groupby(["label", "covariate"], observed=True).size()
    dominant = counts.groupby(level="label", observed=True).max()
    totals = counts.groupby(level="label", observed=True).sum()
    return float((dominant / totals).mean())


def expanded_fraction(labels: pd.Series, covariates: pd.DataFrame, min_size: int = 2) -> pd.Series:
    """Fraction of cells in clusters with at least ``min_size`` cells, per covariate level."""
    covariate = _covariate_series(covariates)
    values = pd.Series(labels.to_numpy())
    sizes = values.map(values.value_counts()).to_numpy()
    expanded = pd.Series(sizes >= min_size, index=covariate.index)
    levels = covariate_levels(covariate)
    fractions = expanded.groupby(covariate.to_numpy(), observed=True).mean()
    return fractions.reindex(levels).astype(float)


def cluster_count(labels: pd.Series, covariates: pd.DataFrame) -> int:
    """Number of distinct clusters."""
    return int(labels.nunique())


def shared_clusters(labels: pd.Series, covariates: pd.DataFrame) -> int:
    """Number of clusters observed in more than one covariate level."""
    covariate = _covariate_series(covariates)
    frame = pd.DataFrame({"label": labels.to_numpy(), "covariate": covariate.to_numpy()})
    per_cluster = frame.groupby("label", observed=True)["covariate"].nunique()
    return int((per_cluster > 1).sum())


STATISTICS: Dict[str, Callable] = {
    "purity": purity,
    "expanded_fraction": expanded_fraction,
    "cluster_count": cluster_count,
    "shared_clusters": shared_clusters,
}


def get_statistic(name: str) -> Callable:
    try:
        return STATISTICS[name]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown statistic '{name}' (available: {', '.join(sorted(STATISTICS))})"
        ) from exc
