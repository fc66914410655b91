"""Generate the markdown report for a cellrep run."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

from .config import embed_figures, report_path
from .utils import ensure_dir


def _rel_path(path: Path, base: Path) -> str:
    return os.path.relpath(path, base)


def _format_value(value) -> str:
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


def _permutation_table(rows: List[Dict]) -> List[str]:
    lines = [
        "| Term | Observed | Expected | p-value | Permutations |",
        "| --- | --- | --- | --- | --- |",
    ]
    for row in rows:
        lines.append(
            f"| {row['term']} | {_format_value(row['observed'])} | {_format_value(row['expected'])} "
            f"| {_format_value(row['p_value'])} | {row['n_perm']} |"
        )
    return lines


def render_report(summary: Dict, figures: Optional[Dict[str, Path]] = None, base: Optional[Path] = None) -> str:
    """Markdown text summarising containers, pairing and permutation results."""
    lines: List[str] = []
    lines.append("# Repertoire Analysis Report")
    lines.append("")

    counts = summary.get("ccdb", {})
    lines.append("## Contigs, Cells and Clusters")
    lines.append("")
    lines.append(f"- Contigs retained: {counts.get('n_contigs', 0):,}")
    lines.append(f"- Cells: {counts.get('n_cells', 0):,}")
    lines.append(f"- Clusters: {counts.get('n_clusters', 0):,}")

    top = summary.get("top_clusters", [])[:5]
    if top:
        formatted = ", ".join(
            f"{item['cluster']} ({item['n_cluster']} contigs"
            + (f", {item['sequence']}" if item.get("sequence") else "")
            + ")"
            for item in top
        )
        lines.append(f"- Largest clusters: {formatted}")

    pairing = summary.get("pairing", {})
    if pairing:
        lines.append("")
        lines.append("## Chain Pairing")
        lines.append("")
        for label, count in sorted(pairing.get("pairing_counts", {}).items()):
            lines.append(f"- {label}: {count:,} cells")
        lines.append(
            f"- Retained cluster pairs (min expansion {pairing.get('min_expansion', 2)}): "
            f"{pairing.get('max_idx', 0):,}"
        )

    permutation = summary.get("permutation", {})
    if permutation:
        lines.append("")
        lines.append("## Permutation Tests")
        for name, rows in permutation.items():
            lines.append("")
            lines.append(f"### {name}")
            lines.append("")
            lines.extend(_permutation_table(rows))

    if figures and base is not None:
        shown = [(key, path) for key, path in figures.items() if Path(path).exists()]
        if shown:
            lines.append("")
            lines.append("## Figures")
            lines.append("")
            for key, path in shown:
                title = key.replace("_", " ").title()
                lines.append(f"![{title}]({_rel_path(Path(path), base)})")
    lines.append("")
    return "\n".join(lines)


def write_report(config: Dict, summary: Dict, figures: Optional[Dict[str, Path]] = None) -> Path:
    path = report_path(config)
    ensure_dir(path.parent)
    text = render_report(summary, figures if embed_figures(config) else None, base=path.parent)
    path.write_text(text)
    return path
