"""Propagate a representative contig's fields to the cell or cluster table."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .ccdb import Condition, ContigCellDB, resolve_condition
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _rank_contigs(
    contigs: pd.DataFrame,
    group_keys: Sequence[str],
    contig_pk: Sequence[str],
    tie_break_keys: Sequence[str],
    order: int,
) -> pd.DataFrame:
    """The ``order``-th contig (1-based) of each group after ranking.

    Contigs are ranked by ``tie_break_keys`` descending (missing values
    last); exact ties keep ``contig_pk`` order.
    """
    if order < 1:
        raise ConfigurationError(f"order must be >= 1, got {order}")
    ranked = contigs.sort_values(list(contig_pk), kind="mergesort")
    tie_keys = [key for key in tie_break_keys if key in ranked.columns]
    if tie_keys:
        ranked = ranked.sort_values(tie_keys, ascending=False, kind="mergesort", na_position="last")
    position = ranked.groupby(list(group_keys), sort=False, dropna=False, observed=True).cumcount()
    return ranked.loc[position == order - 1]


def _default_fields(contig_tbl: pd.DataFrame, exclude: Iterable[str]) -> List[str]:
    excluded = set(exclude)
    return [column for column in contig_tbl.columns if column not in excluded]


def _attach(
    target: pd.DataFrame,
    chosen: pd.DataFrame,
    keys: Sequence[str],
    fields: Sequence[str],
    overwrite: bool,
    suffix: str = "",
) -> pd.DataFrame:
    renamed = {field: f"{field}{suffix}" for field in fields}
    existing = [renamed[field] for field in fields if renamed[field] in target.columns]
    if overwrite:
        target = target.drop(columns=existing)
    else:
        fields = [field for field in fields if renamed[field] not in existing]
    incoming = chosen.loc[:, [*keys, *fields]].rename(columns=renamed)
    return target.merge(incoming, on=list(keys), how="left")


def canonicalize_cell(
    ccdb: ContigCellDB,
    contig_filter: Optional[Condition] = None,
    tie_break_keys: Sequence[str] = ("umis", "reads"),
    order: int = 1,
    contig_fields: Optional[Sequence[str]] = None,
    overwrite: bool = True,
    suffix: str = "",
) -> ContigCellDB:
    """Copy the fields of one canonical contig per cell into ``cell_tbl``.

    Among contigs passing ``contig_filter`` the ``order``-th after ranking by
    ``tie_break_keys`` (descending) is chosen. Cells with no eligible contig
    get missing values. ``contig_fields`` defaults to every non-key contig
    column; existing cell columns are replaced unless ``overwrite`` is False.
    """
    contig_tbl = ccdb.contig_tbl
    eligible = contig_tbl
    if contig_filter is not None:
        eligible = contig_tbl.loc[resolve_condition(contig_tbl, contig_filter)]
    fields = list(contig_fields) if contig_fields is not None else _default_fields(contig_tbl, ccdb.contig_pk)
    missing = [field for field in fields if field not in contig_tbl.columns]
    if missing:
        raise ConfigurationError(f"contig_fields not in contig_tbl: {', '.join(missing)}")
    fields = [field for field in fields if field not in ccdb.cell_pk]

    chosen = _rank_contigs(eligible, ccdb.cell_pk, ccdb.contig_pk, tie_break_keys, order)
    cell_tbl = _attach(ccdb.cell_tbl, chosen, ccdb.cell_pk, fields, overwrite, suffix)
    n_missing = ccdb.n_cells - len(chosen)
    if n_missing > 0:
        logger.info("%d cell(s) have no eligible contig for canonicalization", n_missing)
    return ccdb.replace(cell_tbl=cell_tbl)


def canonicalize_cluster(
    ccdb: ContigCellDB,
    representative: Optional[str] = None,
    contig_filter: Optional[Condition] = None,
    tie_break_keys: Sequence[str] = (),
    order: int = 1,
    contig_fields: Optional[Sequence[str]] = None,
    overwrite: bool = True,
) -> ContigCellDB:
    """Copy the fields of one canonical contig per cluster into ``cluster_tbl``.

    By default the medoid contigs (``is_medoid``) are eligible when fine
    clustering has run, otherwise every contig. With ``representative`` a
    contig is eligible only when its value in that column equals the
    cluster's value.
    """
    if not ccdb.cluster_pk:
        raise ConfigurationError("canonicalize_cluster requires a clustered ContigCellDB")
    contig_tbl = ccdb.contig_tbl
    cluster_pk = list(ccdb.cluster_pk)

    if contig_filter is not None:
        mask = resolve_condition(contig_tbl, contig_filter)
    elif "is_medoid" in contig_tbl.columns:
        mask = contig_tbl["is_medoid"].fillna(False).to_numpy(dtype=bool)
    else:
        mask = np.ones(len(contig_tbl), dtype=bool)

    if representative is not None:
        if representative not in contig_tbl.columns or representative not in ccdb.cluster_tbl.columns:
            raise ConfigurationError(
                f"representative '{representative}' must be a column of both contig_tbl and cluster_tbl"
            )
        wanted = ccdb.cluster_tbl.loc[:, [*cluster_pk, representative]].rename(
            columns={representative: "_cellrep_representative"}
        )
        joined = contig_tbl.loc[:, [*cluster_pk, representative]].merge(wanted, on=cluster_pk, how="left")
        mask &= (joined[representative] == joined["_cellrep_representative"]).fillna(False).to_numpy(dtype=bool)

    fields = (
        list(contig_fields)
        if contig_fields is not None
        else _default_fields(contig_tbl, [*ccdb.contig_pk, *cluster_pk])
    )
    fields = [field for field in fields if field not in cluster_pk]
    if representative is not None:
        fields = [field for field in fields if field != representative]

    chosen = _rank_contigs(contig_tbl.loc[mask], cluster_pk, ccdb.contig_pk, tie_break_keys, order)
    cluster_tbl = _attach(ccdb.cluster_tbl, chosen, cluster_pk, fields, overwrite)
    return ccdb.replace(cluster_tbl=cluster_tbl)


def canonicalize_by_chain(
    ccdb: ContigCellDB,
    chain: str,
    chain_key: str = "chain",
    tie_break_keys: Sequence[str] = ("umis", "reads"),
    contig_fields: Optional[Sequence[str]] = None,
    suffix: str = "",
) -> ContigCellDB:
    """Canonical contig per cell restricted to contigs of one ``chain``."""
    if chain_key not in ccdb.contig_tbl.columns:
        raise ConfigurationError(f"chain_key '{chain_key}' not found in contig_tbl")
    return canonicalize_cell(
        ccdb,
        contig_filter=lambda df: df[chain_key] == chain,
        tie_break_keys=tie_break_keys,
        contig_fields=contig_fields,
        suffix=suffix,
    )
