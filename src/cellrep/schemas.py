"""Pandera schemas for contig and unit tables."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import pandas as pd
import pandera as pa


contig_table_schema = pa.DataFrameSchema(
    {
        "barcode": pa.Column(str, required=True, nullable=False),
        "contig_id": pa.Column(str, required=False, nullable=False),
        "sample": pa.Column(str, required=False, nullable=True),
        "pop": pa.Column(str, required=False, nullable=True),
        "chain": pa.Column(str, required=True, nullable=False),
        "cdr3": pa.Column(str, required=False, nullable=True),
        "cdr3_nt": pa.Column(str, required=False, nullable=True),
        "v_gene": pa.Column(str, required=False, nullable=True),
        "d_gene": pa.Column(str, required=False, nullable=True),
        "j_gene": pa.Column(str, required=False, nullable=True),
        "productive": pa.Column(pd.BooleanDtype(), required=False, nullable=True),
        "umis": pa.Column(float, pa.Check.ge(0), required=False, nullable=True),
        "reads": pa.Column(float, pa.Check.ge(0), required=False, nullable=True),
    },
    strict=False,
    coerce=True,
)


def validate_contig_table(df: pd.DataFrame, *, raise_on_error: bool = True) -> tuple[bool, Optional[str]]:
    """Validate a harmonised contig table."""
    try:
        contig_table_schema.validate(df, lazy=True)
        if "contig_id" in df.columns:
            key = [col for col in ("barcode", "pop", "sample", "contig_id") if col in df.columns]
            duplicated = df.duplicated(subset=key)
            if duplicated.any():
                raise ValueError(
                    f"Contig table has {int(duplicated.sum())} duplicated rows on key {key}"
                )
        return True, None
    except (pa.errors.SchemaError, pa.errors.SchemaErrors, ValueError) as exc:
        message = f"Contig table validation failed: {exc}"
        logging.error(message)
        if raise_on_error:
            raise
        return False, message


def unit_table_schema(
    label_key: str,
    covariate_keys: Sequence[str],
    stratify_keys: Iterable[str] = (),
) -> pa.DataFrameSchema:
    """Schema for the unit table fed into the permutation engine.

    Label and covariate columns may hold missing values (they are dropped and
    counted by the engine); stratification columns may not.
    """
    columns = {label_key: pa.Column(required=True, nullable=True)}
    for key in covariate_keys:
        columns[key] = pa.Column(required=True, nullable=True)
    for key in stratify_keys:
        columns[key] = pa.Column(required=True, nullable=False)
    return pa.DataFrameSchema(columns, strict=False)
