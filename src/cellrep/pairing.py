"""Chain pairing per cell and expanded cluster-pair tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .canonicalize import canonicalize_by_chain
from .ccdb import ContigCellDB
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PAIRINGS = (
    ("TCR_alpha_beta", ({"TRA"}, {"TRB"})),
    ("TCR_gamma_delta", ({"TRG"}, {"TRD"})),
    ("BCR_heavy_light", ({"IGH"}, {"IGK", "IGL"})),
)


def _classify(chains: Iterable[str]) -> str:
    present = set(chains)
    for name, (first, second) in PAIRINGS:
        if present & first and present & second:
            return name
    return "unpaired"


def enumerate_pairing(ccdb: ContigCellDB, chain_key: str = "chain") -> pd.DataFrame:
    """Per-cell chain composition.

    Returns one row per cell with ``chain_expression`` (sorted distinct chains
    joined by ``_``), ``pairing`` and ``n_chains`` (distinct chains) plus
    ``n_contigs``.
    """
    contig_tbl = ccdb.contig_tbl
    if chain_key not in contig_tbl.columns:
        raise ConfigurationError(f"chain_key '{chain_key}' not found in contig_tbl")
    cell_pk = list(ccdb.cell_pk)
    contigs = contig_tbl.loc[contig_tbl[chain_key].notna(), [*cell_pk, chain_key]]
    grouped = contigs.groupby(cell_pk, sort=False, dropna=False)[chain_key]
    chain_sets = grouped.agg(lambda values: tuple(sorted(set(map(str, values)))))
    summary = pd.DataFrame({
        "chain_expression": chain_sets.map("_".join),
        "pairing": chain_sets.map(_classify),
        "n_chains": chain_sets.map(len),
        "n_contigs": grouped.size(),
    }).reset_index()

    cells = ccdb.cell_tbl.loc[:, cell_pk].merge(summary, on=cell_pk, how="left")
    cells["chain_expression"] = cells["chain_expression"].fillna("")
    cells["pairing"] = cells["pairing"].fillna("unpaired")
    cells["n_chains"] = cells["n_chains"].fillna(0).astype(int)
    cells["n_contigs"] = cells["n_contigs"].fillna(0).astype(int)
    return cells


@dataclass
class PairingTables:
    cell_tbl: pd.DataFrame
    idx1_tbl: pd.DataFrame
    idx2_tbl: pd.DataFrame
    cluster_pair_tbl: pd.DataFrame
    max_idx: int
    pair_keys: Tuple[str, str]


PairList = Union[pd.DataFrame, Sequence[Tuple]]


def _pair_frame(pairs: Optional[PairList], columns: Sequence[str]) -> pd.DataFrame:
    if pairs is None:
        return pd.DataFrame(columns=list(columns))
    if isinstance(pairs, pd.DataFrame):
        missing = [column for column in columns if column not in pairs.columns]
        if missing:
            raise ConfigurationError(f"cluster_whitelist is missing column(s): {', '.join(missing)}")
        return pairs.loc[:, list(columns)]
    return pd.DataFrame(list(pairs), columns=list(columns))


def pairing_tables(
    ccdb: ContigCellDB,
    chains: Sequence[str] = ("TRA", "TRB"),
    chain_key: str = "chain",
    tie_break_keys: Sequence[str] = ("umis", "reads"),
    min_expansion: int = 2,
    orphan_level: int = 1,
    cluster_keys: Sequence[str] = (),
    cluster_whitelist: Optional[PairList] = None,
    cluster_blacklist: Optional[Iterable] = None,
) -> PairingTables:
    """Tabulate the combinations of clusters carried by each cell's two chains.

    For each cell the canonical contig of ``chains[0]`` and ``chains[1]``
    provides ``{cluster_pk}_1`` and ``{cluster_pk}_2``. Pair combinations are
    counted; those seen in at least ``min_expansion`` cells are flagged
    ``expanded``. Orphan combinations (one chain missing) are kept only when
    ``orphan_level >= 1`` and their single-chain cluster reaches
    ``min_expansion`` cells. Pairs listed in ``cluster_whitelist`` are always
    retained; clusters in ``cluster_blacklist`` are removed on either chain.
    Retained combinations are numbered by ``pair_idx`` (largest first).
    """
    if len(ccdb.cluster_pk) != 1:
        raise ConfigurationError("pairing_tables requires a single-column cluster_pk")
    if len(chains) != 2:
        raise ConfigurationError(f"pairing_tables needs exactly two chains, got {list(chains)}")
    if min_expansion < 1:
        raise ConfigurationError(f"min_expansion must be >= 1, got {min_expansion}")

    pk = ccdb.cluster_pk[0]
    cell_pk = list(ccdb.cell_pk)
    idx1, idx2 = f"{pk}_1", f"{pk}_2"
    fields = [pk, *cluster_keys]

    paired = ccdb.replace(cell_tbl=ccdb.cell_tbl.loc[:, cell_pk])
    for position, chain in enumerate(chains, start=1):
        paired = canonicalize_by_chain(
            paired,
            chain,
            chain_key=chain_key,
            tie_break_keys=tie_break_keys,
            contig_fields=fields,
            suffix=f"_{position}",
        )
    cell_tbl = paired.cell_tbl.copy()

    blacklist = set(cluster_blacklist or ())
    if blacklist:
        for column in (idx1, idx2):
            hit = cell_tbl[column].isin(blacklist)
            if hit.any():
                logger.info("Blacklist removed %d %s assignment(s)", int(hit.sum()), column)
            cell_tbl.loc[hit, column] = pd.NA

    idx1_tbl = cell_tbl[idx1].dropna().value_counts().rename_axis(idx1).rename("n_cells").reset_index()
    idx2_tbl = cell_tbl[idx2].dropna().value_counts().rename_axis(idx2).rename("n_cells").reset_index()

    combos = (
        cell_tbl.loc[cell_tbl[idx1].notna() | cell_tbl[idx2].notna()]
        .groupby([idx1, idx2], dropna=False, observed=True)
        .size()
        .rename("n_cells")
        .reset_index()
    )
    combos["orphan"] = combos[idx1].isna() | combos[idx2].isna()
    combos["expanded"] = combos["n_cells"] >= min_expansion

    if len(combos):
        size1 = combos[idx1].map(idx1_tbl.set_index(idx1)["n_cells"])
        size2 = combos[idx2].map(idx2_tbl.set_index(idx2)["n_cells"])
        single_size = size1.where(combos[idx1].notna(), size2).fillna(0)
        orphan_ok = (orphan_level >= 1) & (single_size >= min_expansion)
        combos.loc[combos["orphan"], "expanded"] = orphan_ok[combos["orphan"]]
        combos = combos.loc[~combos["orphan"] | orphan_ok].reset_index(drop=True)

    whitelist = _pair_frame(cluster_whitelist, [idx1, idx2]).drop_duplicates()
    if len(whitelist):
        for column in (idx1, idx2):
            whitelist[column] = whitelist[column].astype(combos[column].dtype)
        flagged = whitelist.assign(whitelisted=True)
        combos = combos.merge(flagged, on=[idx1, idx2], how="left")
        combos["whitelisted"] = combos["whitelisted"].fillna(False).astype(bool)
    else:
        combos["whitelisted"] = False

    combos = combos.sort_values(
        ["n_cells", idx1, idx2], ascending=[False, True, True], na_position="last", kind="mergesort"
    ).reset_index(drop=True)
    retained = combos["expanded"] | combos["whitelisted"]
    combos["pair_idx"] = pd.Series(pd.NA, index=combos.index, dtype="Int64")
    combos.loc[retained, "pair_idx"] = np.arange(1, int(retained.sum()) + 1)

    cell_tbl = cell_tbl.merge(combos.loc[retained, [idx1, idx2, "pair_idx"]], on=[idx1, idx2], how="left")
    max_idx = int(retained.sum())
    logger.info(
        "Pairing %s/%s: %d combination(s), %d retained at min_expansion=%d",
        chains[0],
        chains[1],
        len(combos),
        max_idx,
        min_expansion,
    )
    return PairingTables(
        cell_tbl=cell_tbl,
        idx1_tbl=idx1_tbl,
        idx2_tbl=idx2_tbl,
        cluster_pair_tbl=combos,
        max_idx=max_idx,
        pair_keys=(idx1, idx2),
    )
