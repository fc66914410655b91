"""Stratified permutation tests of cluster membership against cell covariates.

The engine shuffles a cluster-label column (optionally within strata),
recomputes a user-supplied statistic for every shuffle and compares the
observed value against the resulting null distribution.

``statistic(labels, covariates, **kwargs)`` receives the label column as a
:class:`pandas.Series` and the covariate columns as a
:class:`pandas.DataFrame` (both aligned on the same index) and must return
either a scalar or a fixed-length 1-D vector. The output shape seen on the
observed call is enforced for every permuted call.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence as SequenceABC
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import pandera as pa
from joblib import Parallel, delayed

from .ccdb import ContigCellDB
from .contrasts import (
    ContrastSet,
    ContrastSpec,
    apply_contrasts,
    comparison_term,
    covariate_levels,
    pairwise_comparisons,
    pairwise_contrast_matrix,
    resolve_contrasts,
)
from .exceptions import ConfigurationError, DegenerateDataError, StatisticShapeError
from .schemas import unit_table_schema

logger = logging.getLogger(__name__)

ALTERNATIVES = ("two-sided", "greater", "less")

Statistic = Callable[..., Any]
RandomState = Union[None, int, np.random.Generator]


@dataclass
class PermuteTest:
    """Result of one permutation test (one term)."""

    observed: float
    expected: float
    p_value: float
    n_perm: int
    permuted: np.ndarray = field(repr=False)
    term: str = "statistic"
    cell_label_key: str = ""
    cell_covariate_keys: Tuple[str, ...] = ()
    cell_stratify_keys: Tuple[str, ...] = ()
    contrast: Optional[np.ndarray] = field(default=None, repr=False)
    alternative: str = "two-sided"
    n_dropped: int = 0
    n_units: int = 0

    def tidy(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{
                "term": self.term,
                "observed": self.observed,
                "expected": self.expected,
                "p_value": self.p_value,
                "n_perm": self.n_perm,
            }]
        )

    def summary(self) -> str:
        covariates = ", ".join(self.cell_covariate_keys)
        lines = [f"PermuteTest of {self.cell_label_key} ~ {covariates}"]
        if self.cell_stratify_keys:
            lines[0] += f" (stratified by {', '.join(self.cell_stratify_keys)})"
        lines.append(f"  term: {self.term}")
        lines.append(
            f"  observed = {self.observed:.4g}, expected = {self.expected:.4g}, "
            f"p-value = {self.p_value:.4g} ({self.alternative}, {self.n_perm} permutations)"
        )
        lines.append(f"  units: {self.n_units} ({self.n_dropped} dropped for missing values)")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.summary()


@dataclass
class PermuteTestList(SequenceABC):
    """Ordered collection of :class:`PermuteTest` results sharing one configuration."""

    tests: List[PermuteTest] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.tests)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return PermuteTestList(self.tests[index])
        return self.tests[index]

    def __iter__(self) -> Iterator[PermuteTest]:
        return iter(self.tests)

    @property
    def terms(self) -> List[str]:
        return [test.term for test in self.tests]

    def tidy(self) -> pd.DataFrame:
        if not self.tests:
            return pd.DataFrame(columns=["term", "observed", "expected", "p_value", "n_perm"])
        return pd.concat([test.tidy() for test in self.tests], ignore_index=True)

    def summary(self, n: int = 3) -> str:
        lines = [f"PermuteTestList of {len(self.tests)} result(s)"]
        for test in self.tests[:n]:
            lines.append(test.summary())
        remaining = len(self.tests) - n
        if remaining > 0:
            lines.append(f"... {remaining} more result(s) omitted")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.summary()


# ---------------------------------------------------------------------- #
# Permutation helpers


def stratum_blocks(frame: pd.DataFrame, keys: Sequence[str] = ()) -> List[np.ndarray]:
    """Positional row indices of each stratum (all rows when ``keys`` is empty)."""
    if not keys:
        return [np.arange(len(frame))]
    groups = frame.groupby(list(keys), sort=False, observed=True, dropna=False).indices
    return [np.asarray(idx) for idx in groups.values()]


def permute_labels(
    labels: Union[pd.Series, np.ndarray],
    blocks: Iterable[np.ndarray],
    rng: np.random.Generator,
) -> Union[pd.Series, np.ndarray]:
    """Shuffle ``labels`` independently within each block of positions."""
    order = np.arange(len(labels))
    for block in blocks:
        order[block] = block[rng.permutation(len(block))]
    if isinstance(labels, pd.Series):
        return labels.iloc[order].set_axis(labels.index)
    return np.asarray(labels)[order]


def _check_blocks(frame: pd.DataFrame, label_key: str, blocks: List[np.ndarray], stratify_keys: Sequence[str]) -> None:
    labels = frame[label_key].to_numpy()
    for block in blocks:
        if pd.unique(labels[block]).size < 2:
            if stratify_keys:
                stratum = frame.iloc[block[0]][list(stratify_keys)].to_dict()
                where = f"stratum {stratum}"
            else:
                where = "the unit table"
            raise DegenerateDataError(
                f"{where} has fewer than two distinct '{label_key}' values; permutation is degenerate"
            )


def _as_vector(value: Any) -> Tuple[np.ndarray, Optional[pd.Index]]:
    if isinstance(value, pd.Series):
        return value.to_numpy(dtype=float), value.index
    try:
        array = np.asarray(value, dtype=float)
    except (TypeError, ValueError) as exc:
        raise StatisticShapeError(f"Statistic returned a non-numeric value: {value!r}") from exc
    if array.ndim > 1:
        raise StatisticShapeError(f"Statistic must return a scalar or 1-D vector, got shape {array.shape}")
    return array, None


def _contract(value: Any, contrast_set: Optional[ContrastSet], shape: Tuple[int, ...]) -> np.ndarray:
    vector, _ = _as_vector(value)
    if vector.shape != shape:
        raise StatisticShapeError(
            f"Statistic returned shape {vector.shape} but the observed call returned {shape}"
        )
    if contrast_set is not None:
        return apply_contrasts(value if isinstance(value, pd.Series) else vector, contrast_set)
    return np.atleast_1d(vector)


def _permuted_statistic(
    seed: int,
    labels: pd.Series,
    covariates: pd.DataFrame,
    blocks: List[np.ndarray],
    statistic: Statistic,
    statistic_kwargs: dict,
    contrast_set: Optional[ContrastSet],
    shape: Tuple[int, ...],
) -> np.ndarray:
    rng = np.random.default_rng(seed)
    shuffled = permute_labels(labels, blocks, rng)
    return _contract(statistic(shuffled, covariates, **statistic_kwargs), contrast_set, shape)


def p_values(observed: np.ndarray, permuted: np.ndarray, alternative: str = "two-sided") -> np.ndarray:
    """Permutation p-values with +1 continuity correction.

    ``permuted`` has one row per permutation and one column per term.
    Two-sided extremeness is the absolute deviation from the permutation
    mean; ``greater``/``less`` compare signed values against the observed.
    Ties (within floating tolerance) count as extreme. A NaN observed value
    or any NaN draw makes that term's p-value NaN.
    """
    if alternative not in ALTERNATIVES:
        raise ConfigurationError(f"alternative must be one of {ALTERNATIVES}, got {alternative!r}")
    n_perm = permuted.shape[0]
    invalid = np.isnan(observed) | np.isnan(permuted).any(axis=0)
    if alternative == "two-sided":
        center = permuted.mean(axis=0)
        stat = np.abs(permuted - center)
        reference = np.abs(observed - center)
        extreme = (stat >= reference) | np.isclose(stat, reference)
    elif alternative == "greater":
        extreme = (permuted >= observed) | np.isclose(permuted, observed)
    else:
        extreme = (permuted <= observed) | np.isclose(permuted, observed)
    pvals = (1.0 + extreme.sum(axis=0)) / (1.0 + n_perm)
    if invalid.any():
        logger.warning(
            "Statistic is NaN for the observed data or some permutations in %d term(s); p-value set to NaN",
            int(invalid.sum()),
        )
        pvals = np.where(invalid, np.nan, pvals)
    return pvals


# ---------------------------------------------------------------------- #
# Engine


@dataclass
class _Run:
    frame: pd.DataFrame
    contrast_set: Optional[ContrastSet]
    terms: Tuple[str, ...]
    observed_value: Any
    shape: Tuple[int, ...]


def _keys(keys: Union[str, Iterable[str], None]) -> Tuple[str, ...]:
    if keys is None:
        return ()
    if isinstance(keys, str):
        return (keys,)
    return tuple(keys)


def _unit_table(data: Union[ContigCellDB, pd.DataFrame], cell_label_key: Optional[str]) -> Tuple[pd.DataFrame, str]:
    if isinstance(data, ContigCellDB):
        table = data.cell_tbl
        if cell_label_key is None:
            if not data.cluster_pk:
                raise ConfigurationError("cell_label_key is required when the container has no cluster_pk")
            cell_label_key = data.cluster_pk[0]
            if cell_label_key not in table.columns:
                raise ConfigurationError(
                    f"cell_tbl has no '{cell_label_key}' column; canonicalize cells to carry cluster labels"
                )
        return table, cell_label_key
    if isinstance(data, pd.DataFrame):
        if cell_label_key is None:
            raise ConfigurationError("cell_label_key is required when data is a DataFrame")
        return data, cell_label_key
    raise ConfigurationError(f"data must be a ContigCellDB or DataFrame, got {type(data).__name__}")


def _call(statistic: Statistic, frame: pd.DataFrame, label_key: str, covariate_keys: Sequence[str], kwargs: dict) -> Any:
    return statistic(frame[label_key], frame.loc[:, list(covariate_keys)], **kwargs)


def _element_terms(value: Any, shape: Tuple[int, ...], statistic: Statistic) -> Tuple[str, ...]:
    if shape == ():
        return (getattr(statistic, "__name__", "statistic").strip("<>") or "statistic",)
    _, index = _as_vector(value)
    if index is not None and not isinstance(index, pd.RangeIndex):
        return tuple(str(label) for label in index)
    return tuple(f"stat[{idx}]" for idx in range(shape[0]))


def _restrict(frame: pd.DataFrame, covariate: str, pair: Tuple[Any, Any]) -> pd.DataFrame:
    subset = frame.loc[frame[covariate].isin(list(pair))].reset_index(drop=True)
    if isinstance(subset[covariate].dtype, pd.CategoricalDtype):
        subset[covariate] = subset[covariate].cat.remove_unused_categories()
    return subset


def _plan(
    frame: pd.DataFrame,
    label_key: str,
    covariate_keys: Tuple[str, ...],
    statistic: Statistic,
    statistic_kwargs: dict,
    contrasts: Optional[ContrastSpec],
) -> List[_Run]:
    levels = covariate_levels(frame[covariate_keys[0]]) if len(covariate_keys) == 1 else None

    if contrasts is not None:
        observed_value = _call(statistic, frame, label_key, covariate_keys, statistic_kwargs)
        shape = _as_vector(observed_value)[0].shape
        contrast_set = resolve_contrasts(contrasts, levels=levels)
        _contract(observed_value, contrast_set, shape)
        return [_Run(frame, contrast_set, contrast_set.terms, observed_value, shape)]

    if levels is not None and len(levels) > 2:
        # a scalar statistic is compared one pair of levels at a time
        covariate = covariate_keys[0]
        runs = []
        for pair in pairwise_comparisons(levels):
            subset = _restrict(frame, covariate, pair)
            value = _call(statistic, subset, label_key, covariate_keys, statistic_kwargs)
            value_shape = _as_vector(value)[0].shape
            if value_shape != ():
                break
            runs.append(_Run(subset, None, (comparison_term(*pair),), value, value_shape))
        else:
            return runs

    observed_value = _call(statistic, frame, label_key, covariate_keys, statistic_kwargs)
    shape = _as_vector(observed_value)[0].shape
    if levels is not None and len(levels) >= 2 and shape == (len(levels),):
        contrast_set = pairwise_contrast_matrix(levels)
        return [_Run(frame, contrast_set, contrast_set.terms, observed_value, shape)]

    return [_Run(frame, None, _element_terms(observed_value, shape, statistic), observed_value, shape)]


def cluster_permute_test(
    data: Union[ContigCellDB, pd.DataFrame],
    cell_covariate_keys: Union[str, Sequence[str]],
    statistic: Statistic,
    n_perm: int,
    cell_label_key: Optional[str] = None,
    cell_stratify_keys: Union[str, Sequence[str]] = (),
    contrasts: Optional[ContrastSpec] = None,
    alternative: str = "two-sided",
    random_state: RandomState = None,
    n_jobs: int = 1,
    **statistic_kwargs,
) -> Union[PermuteTest, PermuteTestList]:
    """Permutation test for association between cluster labels and covariates.

    Args:
        data: a :class:`ContigCellDB` (its ``cell_tbl`` is the unit table and
            the first ``cluster_pk`` the default label) or a DataFrame.
        cell_covariate_keys: covariate column(s) passed to ``statistic``.
        statistic: ``statistic(labels, covariates, **statistic_kwargs)``
            returning a scalar or 1-D vector.
        n_perm: number of permutations (>= 1).
        cell_label_key: label column to permute.
        cell_stratify_keys: columns defining permutation blocks.
        contrasts: contrast weights over covariate levels applied to a
            vector statistic (see :func:`resolve_contrasts`).
        alternative: ``"two-sided"``, ``"greater"`` or ``"less"``.
        random_state: seed or generator; per-permutation seeds are drawn
            from it up front so results do not depend on ``n_jobs``.
        n_jobs: joblib workers for the permutation loop.

    Returns:
        A :class:`PermuteTest` when there is exactly one term, otherwise a
        :class:`PermuteTestList` in contrast/comparison order.

    Raises:
        ConfigurationError: bad keys, ``n_perm < 1`` or unknown alternative.
        StatisticShapeError: inconsistent statistic output shape.
        DegenerateDataError: no units remain, or a block has one label.
    """
    if isinstance(n_perm, bool) or not isinstance(n_perm, (int, np.integer)) or n_perm < 1:
        raise ConfigurationError(f"n_perm must be a positive integer, got {n_perm!r}")
    if alternative not in ALTERNATIVES:
        raise ConfigurationError(f"alternative must be one of {ALTERNATIVES}, got {alternative!r}")
    covariate_keys = _keys(cell_covariate_keys)
    stratify_keys = _keys(cell_stratify_keys)
    if not covariate_keys:
        raise ConfigurationError("At least one covariate key is required")

    table, label_key = _unit_table(data, cell_label_key)
    columns = [label_key, *covariate_keys, *stratify_keys]
    missing = [column for column in dict.fromkeys(columns) if column not in table.columns]
    if missing:
        raise ConfigurationError(f"Unit table is missing column(s): {', '.join(missing)}")
    try:
        unit_table_schema(label_key, covariate_keys, stratify_keys).validate(table, lazy=True)
    except (pa.errors.SchemaError, pa.errors.SchemaErrors) as exc:
        raise ConfigurationError(f"Unit table failed validation: {exc}") from exc

    frame = table.loc[:, list(dict.fromkeys(columns))]
    complete = frame.dropna(subset=[label_key, *covariate_keys]).reset_index(drop=True)
    n_dropped = int(len(frame) - len(complete))
    if n_dropped:
        logger.info("Dropped %d unit(s) with missing label or covariate values", n_dropped)
    if complete.empty:
        raise DegenerateDataError("No units remain after dropping missing label/covariate values")

    _check_blocks(complete, label_key, stratum_blocks(complete, stratify_keys), stratify_keys)
    runs = _plan(complete, label_key, covariate_keys, statistic, statistic_kwargs, contrasts)

    rng = np.random.default_rng(random_state)
    results: List[PermuteTest] = []
    for run in runs:
        blocks = stratum_blocks(run.frame, stratify_keys)
        _check_blocks(run.frame, label_key, blocks, stratify_keys)
        observed = _contract(run.observed_value, run.contrast_set, run.shape)
        seeds = rng.integers(0, 2**32 - 1, size=n_perm, dtype=np.uint64)
        labels = run.frame[label_key]
        covariates = run.frame.loc[:, list(covariate_keys)]
        args = (labels, covariates, blocks, statistic, statistic_kwargs, run.contrast_set, run.shape)
        if n_jobs == 1:
            draws = [_permuted_statistic(int(seed), *args) for seed in seeds]
        else:
            draws = Parallel(n_jobs=n_jobs)(delayed(_permuted_statistic)(int(seed), *args) for seed in seeds)
        permuted = np.vstack(draws)
        expected = permuted.mean(axis=0)
        pvals = p_values(observed, permuted, alternative)

        for idx, term in enumerate(run.terms):
            results.append(
                PermuteTest(
                    observed=float(observed[idx]),
                    expected=float(expected[idx]),
                    p_value=float(pvals[idx]),
                    n_perm=int(n_perm),
                    permuted=permuted[:, idx].copy(),
                    term=term,
                    cell_label_key=label_key,
                    cell_covariate_keys=covariate_keys,
                    cell_stratify_keys=stratify_keys,
                    contrast=None if run.contrast_set is None else run.contrast_set.weights[idx].copy(),
                    alternative=alternative,
                    n_dropped=n_dropped,
                    n_units=int(len(run.frame)),
                )
            )

    logger.info(
        "Permutation test of %s ~ %s: %d term(s), %d permutation(s)",
        label_key,
        "+".join(covariate_keys),
        len(results),
        n_perm,
    )
    if len(results) == 1:
        return results[0]
    return PermuteTestList(results)
