import os
import subprocess
import sys
from pathlib import Path

os.environ.setdefault("MPLBACKEND", "Agg")

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pandas as pd
import pytest
from Bio import SeqIO

TRB = {"B1": "CASSLGQGAEAFF", "B2": "CASSPDRGNTEAFF", "B3": "CASSYSTDTQYF"}
TRA = {"A1": "CAVRDSNYQLIW", "A2": "CAMREGSSGGYNKLIF", "A3": "CAASGGSYIPTF"}

# barcode, sample, alpha clonotype, beta clonotype
CELLS = [
    ("AAAC-1", "S1", "A1", "B1"),
    ("AAAG-1", "S1", "A1", "B1"),
    ("AACC-1", "S1", "A2", "B2"),
    ("AACG-1", "S1", None, "B1"),
    ("AAGC-1", "S2", "A1", "B1"),
    ("AAGG-1", "S2", "A3", "B3"),
    ("ACCC-1", "S2", "A2", "B2"),
    ("ACCG-1", "S2", "A3", None),
]


def make_contigs() -> pd.DataFrame:
    """Two-sample synthetic contig table with known clonotypes."""
    rows = []
    for barcode, sample, alpha, beta in CELLS:
        chains = []
        if alpha:
            chains.append(("TRA", TRA[alpha], "TRAV1-2", "TRAJ33", 5, 50))
        if beta:
            chains.append(("TRB", TRB[beta], "TRBV6-5", "TRBJ1-1", 10, 120))
        if barcode == "AAAC-1":
            # secondary beta with lower UMI support
            chains.append(("TRB", TRB["B2"], "TRBV7-9", "TRBJ2-7", 3, 30))
        for position, (chain, cdr3, v_gene, j_gene, umis, reads) in enumerate(chains, start=1):
            rows.append({
                "barcode": barcode,
                "sample": sample,
                "contig_id": f"{barcode}_contig_{position}",
                "chain": chain,
                "cdr3": cdr3,
                "v_gene": v_gene,
                "j_gene": j_gene,
                "productive": True,
                "umis": float(umis),
                "reads": float(reads),
            })
    return pd.DataFrame(rows)


@pytest.fixture
def contig_df() -> pd.DataFrame:
    return make_contigs()


def _arg(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def fake_cdhit_run(cmd, **kwargs):
    """Stand-in for the cd-hit process.

    Sequences sharing everything but their last residue fall into one
    cluster; the first such sequence is the representative.
    """
    records = list(SeqIO.parse(_arg(cmd, "-i"), "fasta"))
    clusters = {}
    for record in records:
        clusters.setdefault(str(record.seq)[:-1], []).append(record)
    lines = []
    for number, members in enumerate(clusters.values()):
        lines.append(f">Cluster {number}")
        for idx, record in enumerate(members):
            suffix = "*" if idx == 0 else "at 92.31%"
            lines.append(f"{idx}\t{len(record.seq)}aa, >{record.id}... {suffix}")
    Path(_arg(cmd, "-o") + ".clstr").write_text("\n".join(lines) + "\n")
    return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


@pytest.fixture
def fake_cdhit(monkeypatch):
    calls = []

    def _run(cmd, **kwargs):
        calls.append(list(cmd))
        return fake_cdhit_run(cmd, **kwargs)

    monkeypatch.setattr("src.cellrep.cdhit.subprocess.run", _run)
    return calls


@pytest.fixture
def clustered_ccdb(contig_df, fake_cdhit):
    from src.cellrep.ccdb import ContigCellDB
    from src.cellrep.cdhit import cdhit_ccdb

    return cdhit_ccdb(ContigCellDB.from_10x(contig_df), sequence_key="cdr3", type="AA")
