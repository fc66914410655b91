"""Sequence clustering through the external CD-HIT program."""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord
from Bio import SeqIO

from .ccdb import ContigCellDB
from .exceptions import ConfigurationError, ExternalToolError

logger = logging.getLogger(__name__)

CDHIT_AA = "cd-hit"
CDHIT_DNA = "cd-hit-est"

SEQUENCE_TYPES = {"AA", "DNA"}

_CLUSTER_HEADER = re.compile(r"^>Cluster\s+(\d+)")
_MEMBER_LINE = re.compile(
    r"^\d+\s+(?P<length>\d+)(?:aa|nt),\s+>(?P<name>.+?)\.\.\.\s+(?:(?P<rep>\*)|at\s+(?P<at>.*?)(?P<pct>[\d.]+)%)\s*$"
)


def default_word_size(identity: float, type: str = "AA") -> int:
    """Word size CD-HIT accepts for a given identity threshold."""
    if type == "AA":
        if identity >= 0.7:
            return 5
        if identity >= 0.6:
            return 4
        if identity >= 0.5:
            return 3
        if identity >= 0.4:
            return 2
        raise ConfigurationError(f"cd-hit does not support identity {identity} < 0.4")
    if identity >= 0.95:
        return 10
    if identity >= 0.9:
        return 8
    if identity >= 0.88:
        return 7
    if identity >= 0.85:
        return 6
    if identity >= 0.8:
        return 5
    if identity >= 0.75:
        return 4
    raise ConfigurationError(f"cd-hit-est does not support identity {identity} < 0.75")


def parse_clstr(text: str) -> pd.DataFrame:
    """Parse the ``.clstr`` membership report written by CD-HIT.

    Returns one row per sequence with columns ``name``, ``cluster_idx``
    (1-based), ``length``, ``is_representative`` and ``identity`` (percent
    identity to the representative; 100 for representatives).
    """
    rows = []
    cluster: Optional[int] = None
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        header = _CLUSTER_HEADER.match(line)
        if header:
            cluster = int(header.group(1)) + 1
            continue
        member = _MEMBER_LINE.match(line)
        if member is None or cluster is None:
            raise ExternalToolError(f"Unrecognised line in CD-HIT cluster report: {line!r}")
        is_rep = member.group("rep") is not None
        rows.append({
            "name": member.group("name"),
            "cluster_idx": cluster,
            "length": int(member.group("length")),
            "is_representative": is_rep,
            "identity": 100.0 if is_rep else float(member.group("pct")),
        })
    return pd.DataFrame(rows, columns=["name", "cluster_idx", "length", "is_representative", "identity"])


def _write_fasta(sequences: List[str], path: Path) -> List[str]:
    names = [f"seq{idx}" for idx in range(len(sequences))]
    records = (SeqRecord(Seq(seq), id=name, description="") for name, seq in zip(names, sequences))
    SeqIO.write(records, path, "fasta")
    return names


def _run(cmd: List[str]) -> None:
    logger.debug("Running %s", " ".join(cmd))
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except FileNotFoundError as exc:
        raise ExternalToolError(
            f"CD-HIT executable '{cmd[0]}' not found; install cd-hit or set clustering.executable"
        ) from exc
    except subprocess.CalledProcessError as exc:
        raise ExternalToolError(
            f"CD-HIT failed with return code {exc.returncode}: {exc.stderr.strip()}"
        ) from exc


def cdhit(
    seqs: Iterable[Optional[str]],
    identity: float = 0.96,
    type: str = "AA",
    *,
    word_size: Optional[int] = None,
    min_length: int = 6,
    global_identity: bool = True,
    length_difference: float = 0.0,
    executable: Optional[str] = None,
    threads: int = 1,
    memory: int = 800,
) -> pd.DataFrame:
    """Cluster sequences with CD-HIT.

    Args:
        seqs: sequences to cluster; missing values are allowed.
        identity: sequence identity threshold (``-c``).
        type: ``"AA"`` (``cd-hit``) or ``"DNA"`` (``cd-hit-est``).
        word_size: ``-n``; derived from ``identity`` when omitted.
        min_length: sequences shorter than this are not clustered.
        global_identity: ``-G 1`` (identity over the full shorter sequence).
        length_difference: ``-s``, minimum length ratio of shorter/longer.
        executable: override the CD-HIT program name or path.
        threads: ``-T``.
        memory: ``-M`` in megabytes.

    Returns:
        DataFrame aligned with ``seqs`` holding ``seq_idx``, ``sequence``, ``cluster_idx``
        (nullable, 1-based), ``is_representative`` and ``identity``.
    """
    if type not in SEQUENCE_TYPES:
        raise ConfigurationError(f"type must be one of {sorted(SEQUENCE_TYPES)}, got {type!r}")
    if not 0 < identity <= 1:
        raise ConfigurationError(f"identity must lie in (0, 1], got {identity}")

    sequences = pd.Series(list(seqs), dtype="object")
    eligible = sequences.notna() & (sequences.astype(str).str.len() >= min_length)
    n_short = int((sequences.notna() & ~eligible).sum())
    if n_short:
        logger.info("Excluding %d sequence(s) shorter than %d from clustering", n_short, min_length)

    result = pd.DataFrame({
        "seq_idx": np.arange(len(sequences)),
        "sequence": sequences,
        "cluster_idx": pd.Series(pd.NA, index=sequences.index, dtype="Int64"),
        "is_representative": False,
        "identity": np.nan,
    })
    unique = list(pd.unique(sequences[eligible].astype(str)))
    if not unique:
        logger.warning("No sequences eligible for clustering")
        return result

    word_size = word_size or default_word_size(identity, type)
    program = executable or (CDHIT_AA if type == "AA" else CDHIT_DNA)

    with tempfile.TemporaryDirectory() as tmpdir:
        fasta_path = Path(tmpdir) / "input.fasta"
        out_path = Path(tmpdir) / "clusters"
        names = _write_fasta(unique, fasta_path)
        cmd = [
            program,
            "-i", str(fasta_path),
            "-o", str(out_path),
            "-c", str(identity),
            "-n", str(word_size),
            "-l", str(max(min_length - 1, 1)),
            "-G", "1" if global_identity else "0",
            "-s", str(length_difference),
            "-d", "0",
            "-T", str(threads),
            "-M", str(memory),
        ]
        if type == "DNA":
            cmd.extend(["-r", "0"])
        _run(cmd)
        clusters = parse_clstr(Path(f"{out_path}.clstr").read_text())

    by_name = clusters.set_index("name")
    by_sequence = by_name.reindex(names)
    by_sequence.index = unique
    matched = sequences.where(eligible)
    result["cluster_idx"] = matched.map(by_sequence["cluster_idx"]).astype("Int64")
    result["is_representative"] = matched.map(by_sequence["is_representative"]).fillna(False).astype(bool)
    result["identity"] = matched.map(by_sequence["identity"]).astype(float)
    logger.info(
        "CD-HIT grouped %d unique sequence(s) into %d cluster(s) at identity %.2f",
        len(unique),
        clusters["cluster_idx"].nunique(),
        identity,
    )
    return result


def cdhit_ccdb(
    ccdb: ContigCellDB,
    sequence_key: str = "cdr3",
    type: str = "AA",
    *,
    cluster_pk: str = "cluster_idx",
    identity: float = 0.96,
    min_length: int = 6,
    **cdhit_kwargs,
) -> ContigCellDB:
    """Cluster the contigs of ``ccdb`` on ``sequence_key`` and attach clusters.

    Contigs that receive no cluster (missing or short sequence) are dropped.
    The resulting ``cluster_tbl`` holds the representative sequence (under
    ``sequence_key``) and ``n_cluster``, the number of contigs per cluster.
    """
    contig_tbl = ccdb.contig_tbl
    if sequence_key not in contig_tbl.columns:
        raise ConfigurationError(f"sequence_key '{sequence_key}' not found in contig_tbl")
    if cluster_pk in contig_tbl.columns:
        logger.warning("Overwriting existing '%s' column in contig_tbl", cluster_pk)

    unique = pd.Series(pd.unique(contig_tbl[sequence_key].dropna().astype(str)))
    clustered = cdhit(unique, identity=identity, type=type, min_length=min_length, **cdhit_kwargs)
    seq_to_cluster = dict(zip(clustered["sequence"], clustered["cluster_idx"]))

    contig_tbl = contig_tbl.copy()
    contig_tbl[cluster_pk] = contig_tbl[sequence_key].map(seq_to_cluster).astype("Int64")
    unclustered = contig_tbl[cluster_pk].isna()
    if unclustered.any():
        logger.info("Dropping %d contig(s) without a cluster assignment", int(unclustered.sum()))
        contig_tbl = contig_tbl.loc[~unclustered].reset_index(drop=True)

    representatives = clustered.loc[clustered["is_representative"], ["cluster_idx", "sequence"]]
    cluster_tbl = (
        contig_tbl.groupby(cluster_pk).size().rename("n_cluster").reset_index()
        .merge(
            representatives.rename(columns={"cluster_idx": cluster_pk, "sequence": sequence_key}),
            on=cluster_pk,
            how="left",
        )
    )
    cluster_tbl = cluster_tbl[[cluster_pk, sequence_key, "n_cluster"]]

    clustered_ccdb = ccdb.replace(contig_tbl=contig_tbl, cluster_tbl=cluster_tbl, cluster_pk=cluster_pk)
    return clustered_ccdb.equalize()
