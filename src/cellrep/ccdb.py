"""Contig/cell/cluster container with declared join keys.

A :class:`ContigCellDB` bundles three related tables:

``contig_tbl``
    one row per contig, uniquely identified by ``contig_pk``;
``cell_tbl``
    one row per cell, identified by ``cell_pk`` (a set of contig columns);
``cluster_tbl``
    one row per cluster, identified by ``cluster_pk`` (empty until the
    contigs have been clustered).

Instances are immutable. Replacing a table with :meth:`ContigCellDB.replace`
never touches the others; re-synchronisation is the explicit
:meth:`ContigCellDB.equalize` step. The ``filter_*`` helpers combine both.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Condition = Union[str, pd.Series, np.ndarray, Sequence[bool], Callable[[pd.DataFrame], pd.Series]]

TENX_CONTIG_PK = ("barcode", "pop", "sample", "contig_id")
TENX_CELL_PK = ("barcode", "pop", "sample")


def _as_keys(keys: Optional[Union[str, Iterable[str]]]) -> Tuple[str, ...]:
    if keys is None:
        return ()
    if isinstance(keys, str):
        return (keys,)
    return tuple(keys)


def _require_columns(df: pd.DataFrame, keys: Sequence[str], table: str) -> None:
    missing = [key for key in keys if key not in df.columns]
    if missing:
        raise ConfigurationError(f"{table} is missing key column(s): {', '.join(missing)}")


def _require_unique(df: pd.DataFrame, keys: Sequence[str], table: str) -> None:
    duplicated = df.duplicated(subset=list(keys))
    if duplicated.any():
        raise ConfigurationError(
            f"{table} keys {list(keys)} are not unique ({int(duplicated.sum())} duplicated rows)"
        )


def semi_join_mask(left: pd.DataFrame, right: pd.DataFrame, keys: Sequence[str]) -> np.ndarray:
    """Boolean mask of ``left`` rows whose ``keys`` occur in ``right``."""
    keys = list(keys)
    marker = right.loc[:, keys].drop_duplicates().assign(_cellrep_present=True)
    merged = left.loc[:, keys].merge(marker, on=keys, how="left")
    return merged["_cellrep_present"].fillna(False).to_numpy(dtype=bool)


def _distinct(df: pd.DataFrame, keys: Sequence[str], *, dropna: bool = False) -> pd.DataFrame:
    distinct = df.loc[:, list(keys)]
    if dropna:
        distinct = distinct.dropna()
    return distinct.drop_duplicates().reset_index(drop=True)


def resolve_condition(df: pd.DataFrame, condition: Condition) -> np.ndarray:
    """Boolean row mask from a query string, callable or mask; missing counts as False."""
    if isinstance(condition, str):
        condition = df.eval(condition)
    elif callable(condition):
        condition = condition(df)
    if isinstance(condition, pd.Series):
        condition = condition.fillna(False)
    mask = np.asarray(condition, dtype=bool)
    if mask.shape != (len(df),):
        raise ConfigurationError(
            f"Filter mask has shape {mask.shape}; expected ({len(df)},)"
        )
    return mask


class ContigCellDB:
    """Contig, cell and cluster tables joined by declared keys."""

    def __init__(
        self,
        contig_tbl: pd.DataFrame,
        contig_pk: Union[str, Iterable[str]],
        cell_tbl: Optional[pd.DataFrame] = None,
        cell_pk: Union[str, Iterable[str], None] = None,
        cluster_tbl: Optional[pd.DataFrame] = None,
        cluster_pk: Union[str, Iterable[str], None] = (),
        *,
        equalize: bool = True,
    ) -> None:
        self._contig_pk = _as_keys(contig_pk)
        self._cell_pk = _as_keys(cell_pk)
        self._cluster_pk = _as_keys(cluster_pk)
        if not self._contig_pk:
            raise ConfigurationError("contig_pk must name at least one column")
        if not self._cell_pk:
            raise ConfigurationError("cell_pk must name at least one column")

        _require_columns(contig_tbl, self._contig_pk, "contig_tbl")
        _require_columns(contig_tbl, self._cell_pk, "contig_tbl")
        _require_unique(contig_tbl, self._contig_pk, "contig_tbl")
        self._contig_tbl = contig_tbl.reset_index(drop=True)

        if cell_tbl is None:
            cell_tbl = _distinct(self._contig_tbl, self._cell_pk)
        _require_columns(cell_tbl, self._cell_pk, "cell_tbl")
        _require_unique(cell_tbl, self._cell_pk, "cell_tbl")
        self._cell_tbl = cell_tbl.reset_index(drop=True)

        if self._cluster_pk:
            _require_columns(self._contig_tbl, self._cluster_pk, "contig_tbl")
            if cluster_tbl is None:
                cluster_tbl = _distinct(self._contig_tbl, self._cluster_pk, dropna=True)
            _require_columns(cluster_tbl, self._cluster_pk, "cluster_tbl")
            _require_unique(cluster_tbl, self._cluster_pk, "cluster_tbl")
            self._cluster_tbl = cluster_tbl.reset_index(drop=True)
        else:
            self._cluster_tbl = cluster_tbl.reset_index(drop=True) if cluster_tbl is not None else pd.DataFrame()

        if equalize:
            synced = self.equalize()
            self._contig_tbl = synced._contig_tbl
            self._cell_tbl = synced._cell_tbl
            self._cluster_tbl = synced._cluster_tbl

    @classmethod
    def from_10x(
        cls,
        contig_tbl: pd.DataFrame,
        contig_pk: Iterable[str] = TENX_CONTIG_PK,
        cell_pk: Iterable[str] = TENX_CELL_PK,
        **kwargs,
    ) -> "ContigCellDB":
        """Build a container from a 10x-style contig table.

        Key columns absent from the table (e.g. ``pop`` for a single
        population) are dropped from the keys.
        """
        contig_pk = [key for key in contig_pk if key in contig_tbl.columns]
        cell_pk = [key for key in cell_pk if key in contig_tbl.columns]
        return cls(contig_tbl, contig_pk=contig_pk, cell_pk=cell_pk, **kwargs)

    # ------------------------------------------------------------------ #
    # Accessors

    @property
    def contig_tbl(self) -> pd.DataFrame:
        return self._contig_tbl

    @property
    def cell_tbl(self) -> pd.DataFrame:
        return self._cell_tbl

    @property
    def cluster_tbl(self) -> pd.DataFrame:
        return self._cluster_tbl

    @property
    def contig_pk(self) -> Tuple[str, ...]:
        return self._contig_pk

    @property
    def cell_pk(self) -> Tuple[str, ...]:
        return self._cell_pk

    @property
    def cluster_pk(self) -> Tuple[str, ...]:
        return self._cluster_pk

    @property
    def n_contigs(self) -> int:
        return int(len(self._contig_tbl))

    @property
    def n_cells(self) -> int:
        return int(len(self._cell_tbl))

    @property
    def n_clusters(self) -> int:
        return int(len(self._cluster_tbl)) if self._cluster_pk else 0

    # ------------------------------------------------------------------ #
    # Table replacement and synchronisation

    def replace(
        self,
        *,
        contig_tbl: Optional[pd.DataFrame] = None,
        cell_tbl: Optional[pd.DataFrame] = None,
        cluster_tbl: Optional[pd.DataFrame] = None,
        cluster_pk: Union[str, Iterable[str], None] = None,
    ) -> "ContigCellDB":
        """Return a copy with some tables swapped out, without re-synchronising."""
        new_cluster_pk = self._cluster_pk if cluster_pk is None else _as_keys(cluster_pk)
        if cluster_tbl is None and new_cluster_pk == self._cluster_pk and self._cluster_pk:
            cluster_tbl = self._cluster_tbl
        return ContigCellDB(
            contig_tbl if contig_tbl is not None else self._contig_tbl,
            contig_pk=self._contig_pk,
            cell_tbl=cell_tbl if cell_tbl is not None else self._cell_tbl,
            cell_pk=self._cell_pk,
            cluster_tbl=cluster_tbl,
            cluster_pk=new_cluster_pk,
            equalize=False,
        )

    def equalize(self, contig: bool = True, cell: bool = True, cluster: bool = True) -> "ContigCellDB":
        """Re-synchronise the three tables.

        Args:
            contig: keep only contigs whose cell is in ``cell_tbl`` and whose
                cluster (if clustered) is in ``cluster_tbl``.
            cell: keep only cells with at least one contig.
            cluster: keep only clusters with at least one contig.
        """
        contig_tbl = self._contig_tbl
        cell_tbl = self._cell_tbl
        cluster_tbl = self._cluster_tbl

        if contig:
            mask = semi_join_mask(contig_tbl, cell_tbl, self._cell_pk)
            if self._cluster_pk:
                mask &= semi_join_mask(contig_tbl, cluster_tbl, self._cluster_pk)
            if not mask.all():
                logger.debug("equalize dropped %d contig(s)", int((~mask).sum()))
            contig_tbl = contig_tbl.loc[mask].reset_index(drop=True)
        if cell:
            mask = semi_join_mask(cell_tbl, contig_tbl, self._cell_pk)
            cell_tbl = cell_tbl.loc[mask].reset_index(drop=True)
        if cluster and self._cluster_pk:
            mask = semi_join_mask(cluster_tbl, contig_tbl, self._cluster_pk)
            cluster_tbl = cluster_tbl.loc[mask].reset_index(drop=True)

        return ContigCellDB(
            contig_tbl,
            contig_pk=self._contig_pk,
            cell_tbl=cell_tbl,
            cell_pk=self._cell_pk,
            cluster_tbl=cluster_tbl if self._cluster_pk else None,
            cluster_pk=self._cluster_pk,
            equalize=False,
        )

    def filter_contigs(self, condition: Condition) -> "ContigCellDB":
        mask = resolve_condition(self._contig_tbl, condition)
        filtered = self.replace(contig_tbl=self._contig_tbl.loc[mask])
        return filtered.equalize(contig=False)

    def filter_cells(self, condition: Condition) -> "ContigCellDB":
        mask = resolve_condition(self._cell_tbl, condition)
        filtered = self.replace(cell_tbl=self._cell_tbl.loc[mask])
        return filtered.equalize(cell=False)

    def filter_clusters(self, condition: Condition) -> "ContigCellDB":
        if not self._cluster_pk:
            raise ConfigurationError("Container has no cluster_pk; cluster the contigs first")
        mask = resolve_condition(self._cluster_tbl, condition)
        filtered = self.replace(cluster_tbl=self._cluster_tbl.loc[mask])
        return filtered.equalize(cluster=False)

    # ------------------------------------------------------------------ #
    # Combination and display

    @classmethod
    def concat(cls, ccdbs: Sequence["ContigCellDB"]) -> "ContigCellDB":
        """Row-bind containers sharing identical keys."""
        if not ccdbs:
            raise ConfigurationError("concat requires at least one ContigCellDB")
        first = ccdbs[0]
        for other in ccdbs[1:]:
            if (other.contig_pk, other.cell_pk, other.cluster_pk) != (
                first.contig_pk,
                first.cell_pk,
                first.cluster_pk,
            ):
                raise ConfigurationError("Cannot concatenate ContigCellDBs with different keys")
        cluster_tbl = (
            pd.concat([c.cluster_tbl for c in ccdbs], ignore_index=True) if first.cluster_pk else None
        )
        return cls(
            pd.concat([c.contig_tbl for c in ccdbs], ignore_index=True),
            contig_pk=first.contig_pk,
            cell_tbl=pd.concat([c.cell_tbl for c in ccdbs], ignore_index=True),
            cell_pk=first.cell_pk,
            cluster_tbl=cluster_tbl,
            cluster_pk=first.cluster_pk,
        )

    def summary(self) -> Dict:
        return {
            "n_contigs": self.n_contigs,
            "n_cells": self.n_cells,
            "n_clusters": self.n_clusters,
            "contig_pk": list(self._contig_pk),
            "cell_pk": list(self._cell_pk),
            "cluster_pk": list(self._cluster_pk),
        }

    def __repr__(self) -> str:
        cluster = (
            f"{self.n_clusters} clusters (pk: {', '.join(self._cluster_pk)})"
            if self._cluster_pk
            else "no clusters"
        )
        return (
            f"ContigCellDB of {self.n_contigs} contigs (pk: {', '.join(self._contig_pk)}); "
            f"{self.n_cells} cells (pk: {', '.join(self._cell_pk)}); {cluster}"
        )
