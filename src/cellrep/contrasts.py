"""Contrast and pairwise-comparison resolution for covariate levels."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, StatisticShapeError

logger = logging.getLogger(__name__)

ContrastSpec = Union["ContrastSet", pd.DataFrame, pd.Series, Mapping[str, Any], Sequence[float], np.ndarray]


@dataclass(frozen=True)
class ContrastSet:
    """Weights over covariate levels, one row per contrast."""

    weights: np.ndarray
    terms: Tuple[str, ...]
    levels: Optional[Tuple[Any, ...]] = None

    def __post_init__(self) -> None:
        if self.weights.ndim != 2:
            raise ConfigurationError("Contrast weights must form a 2-D matrix")
        if len(self.terms) != self.weights.shape[0]:
            raise ConfigurationError("Each contrast needs exactly one term name")
        if self.levels is not None and len(self.levels) != self.weights.shape[1]:
            raise ConfigurationError(
                f"Contrasts have {self.weights.shape[1]} weights but {len(self.levels)} level labels"
            )

    def __len__(self) -> int:
        return int(self.weights.shape[0])

    @property
    def n_levels(self) -> int:
        return int(self.weights.shape[1])


def covariate_levels(series: pd.Series) -> List[Any]:
    """Levels of a covariate: declared categorical order or first appearance."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.dropna().unique())
        return [level for level in series.cat.categories if level in present]
    return list(pd.unique(series.dropna()))


def comparison_term(later: Any, earlier: Any) -> str:
    return f"{later} vs {earlier}"


def pairwise_comparisons(levels: Sequence[Any]) -> List[Tuple[Any, Any]]:
    """All ``(later, earlier)`` level pairs: (2 vs 1), (3 vs 1), (3 vs 2), ..."""
    levels = list(levels)
    return [(levels[j], levels[i]) for j in range(1, len(levels)) for i in range(j)]


def pairwise_contrast_matrix(levels: Sequence[Any]) -> ContrastSet:
    """Pairwise comparisons as +1/-1 weight vectors over ``levels``."""
    levels = list(levels)
    if len(levels) < 2:
        raise ConfigurationError("Pairwise comparisons need at least two covariate levels")
    position = {level: idx for idx, level in enumerate(levels)}
    pairs = pairwise_comparisons(levels)
    weights = np.zeros((len(pairs), len(levels)))
    for row, (later, earlier) in enumerate(pairs):
        weights[row, position[later]] = 1.0
        weights[row, position[earlier]] = -1.0
    return ContrastSet(
        weights=weights,
        terms=tuple(comparison_term(later, earlier) for later, earlier in pairs),
        levels=tuple(levels),
    )


def _describe(weights: np.ndarray, levels: Sequence[Any]) -> str:
    parts = []
    for weight, level in zip(weights, levels):
        if np.isclose(weight, 0):
            continue
        magnitude = abs(weight)
        coef = "" if np.isclose(magnitude, 1) else f"{magnitude:g}*"
        sign = "-" if weight < 0 else "+"
        parts.append(f"{sign} {coef}{level}")
    if not parts:
        return "0"
    text = " ".join(parts)
    return text[2:] if text.startswith("+ ") else "-" + text[2:]


def _from_mappings(named: Dict[str, Mapping[Any, float]], levels: Optional[Sequence[Any]]) -> ContrastSet:
    if levels is None:
        seen: List[Any] = []
        for mapping in named.values():
            seen.extend(level for level in mapping if level not in seen)
        levels = seen
    levels = list(levels)
    weights = np.zeros((len(named), len(levels)))
    for row, mapping in enumerate(named.values()):
        unknown = [level for level in mapping if level not in levels]
        if unknown:
            raise ConfigurationError(f"Contrast refers to unknown level(s): {unknown}")
        for level, weight in mapping.items():
            weights[row, levels.index(level)] = float(weight)
    return ContrastSet(weights=weights, terms=tuple(str(name) for name in named), levels=tuple(levels))


def resolve_contrasts(contrasts: ContrastSpec, levels: Optional[Sequence[Any]] = None) -> ContrastSet:
    """Normalise a contrast definition into a :class:`ContrastSet`.

    Accepted forms are a 1-D vector (one contrast), a 2-D array or list of
    vectors (rows are contrasts), a DataFrame (rows are contrasts, columns are
    levels when labelled), a Series indexed by level, a flat ``{level: weight}``
    dict (one contrast), or a dict mapping a term name to either a vector or
    a ``{level: weight}`` mapping. When ``levels`` is given, labelled weights
    are laid out in that order.

    Weights are expected to sum to zero but this is not enforced.
    """
    if isinstance(contrasts, ContrastSet):
        cset = contrasts
    elif isinstance(contrasts, pd.DataFrame):
        labelled_cols = not isinstance(contrasts.columns, pd.RangeIndex)
        labelled_rows = not isinstance(contrasts.index, pd.RangeIndex)
        weights = contrasts.to_numpy(dtype=float)
        col_levels = tuple(contrasts.columns) if labelled_cols else _level_labels(levels, weights.shape[1])
        terms = (
            tuple(str(idx) for idx in contrasts.index)
            if labelled_rows
            else _default_terms(weights, col_levels)
        )
        cset = ContrastSet(weights=weights, terms=terms, levels=col_levels)
    elif isinstance(contrasts, pd.Series):
        weights = contrasts.to_numpy(dtype=float)[np.newaxis, :]
        col_levels = tuple(contrasts.index)
        name = str(contrasts.name) if contrasts.name is not None else _describe(weights[0], col_levels)
        cset = ContrastSet(weights=weights, terms=(name,), levels=col_levels)
    elif isinstance(contrasts, Mapping):
        if not contrasts:
            raise ConfigurationError("Contrast mapping is empty")
        values = list(contrasts.values())
        if all(isinstance(value, Mapping) for value in values):
            cset = _from_mappings(dict(contrasts), levels)
        elif all(_is_weight(value) for value in values):
            # a single contrast given as {level: weight}
            cset = _from_mappings({"": contrasts}, levels)
            cset = ContrastSet(cset.weights, (_describe(cset.weights[0], cset.levels),), cset.levels)
        else:
            weights = np.vstack([np.asarray(value, dtype=float) for value in values])
            cset = ContrastSet(
                weights=weights,
                terms=tuple(str(name) for name in contrasts),
                levels=_level_labels(levels, weights.shape[1]),
            )
    else:
        try:
            weights = np.asarray(contrasts, dtype=float)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Cannot interpret contrasts: {contrasts!r}") from exc
        if weights.ndim == 1:
            weights = weights[np.newaxis, :]
        if weights.ndim != 2 or weights.size == 0:
            raise ConfigurationError("Contrasts must be a vector or a matrix of weights")
        col_levels = _level_labels(levels, weights.shape[1])
        cset = ContrastSet(weights=weights, terms=_default_terms(weights, col_levels), levels=col_levels)

    if levels is not None and cset.levels is not None and tuple(cset.levels) != tuple(levels):
        cset = _reorder(cset, levels)

    sums = cset.weights.sum(axis=1)
    if not np.allclose(sums, 0):
        logger.debug("Contrast weights do not sum to zero: %s", sums.tolist())
    return cset


def _is_weight(value: Any) -> bool:
    return isinstance(value, (int, float, np.number)) and not isinstance(value, (bool, np.bool_))


def _level_labels(levels: Optional[Sequence[Any]], n_levels: int) -> Optional[Tuple[Any, ...]]:
    if levels is None or len(levels) != n_levels:
        return None
    return tuple(levels)


def _reorder(cset: ContrastSet, levels: Sequence[Any]) -> ContrastSet:
    """Lay the weights out in ``levels`` order; absent levels get weight zero."""
    levels = list(levels)
    unknown = [level for level in cset.levels if level not in levels]
    if unknown:
        raise ConfigurationError(f"Contrast refers to unknown level(s): {unknown}")
    weights = np.zeros((len(cset), len(levels)))
    for col, level in enumerate(cset.levels):
        weights[:, levels.index(level)] = cset.weights[:, col]
    return ContrastSet(weights=weights, terms=cset.terms, levels=tuple(levels))


def _default_terms(weights: np.ndarray, levels: Optional[Sequence[Any]]) -> Tuple[str, ...]:
    if levels is not None and len(levels) == weights.shape[1]:
        return tuple(_describe(row, levels) for row in weights)
    return tuple(f"contrast{idx + 1}" for idx in range(weights.shape[0]))


def apply_contrasts(value: Union[pd.Series, np.ndarray, Sequence[float]], contrast_set: ContrastSet) -> np.ndarray:
    """Contract a vector statistic against every contrast in ``contrast_set``.

    A Series with a labelled (non-range) index is aligned to the contrast
    levels when those are known; anything else is taken positionally.
    """
    if (
        isinstance(value, pd.Series)
        and contrast_set.levels is not None
        and not isinstance(value.index, pd.RangeIndex)
    ):
        missing = [level for level in contrast_set.levels if level not in value.index]
        if missing:
            raise StatisticShapeError(
                f"Statistic output lacks contrast level(s) {missing}; got {list(value.index)}"
            )
        vector = value.reindex(list(contrast_set.levels)).to_numpy(dtype=float)
    else:
        vector = np.asarray(value, dtype=float)
    if vector.ndim != 1 or vector.shape[0] != contrast_set.n_levels:
        raise StatisticShapeError(
            f"Contrasts expect a statistic vector of length {contrast_set.n_levels}, got shape {vector.shape}"
        )
    return contrast_set.weights @ vector
