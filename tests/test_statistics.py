import math

import pandas as pd
import pytest

from src.cellrep.exceptions import ConfigurationError
from src.cellrep.statistics import (
    cluster_count,
    expanded_fraction,
    get_statistic,
    purity,
    shared_clusters,
)


@pytest.fixture
def units():
    labels = pd.Series([1, 1, 1, 2, 2, 3, 4])
    covariates = pd.DataFrame({"sample": ["S1", "S1", "S2", "S2", "S2", "S1", "S2"]})
    return labels, covariates


def test_purity(units):
    labels, covariates = units
    # cluster 1: 2/3 from S1, cluster 2: 2/2 from S2
    assert purity(labels, covariates) == pytest.approx((2 / 3 + 1.0) / 2)


def test_purity_without_expanded_clusters():
    labels = pd.Series([1, 2, 3])
    covariates = pd.DataFrame({"sample": ["S1", "S2", "S1"]})
    assert math.isnan(purity(labels, covariates))


def test_expanded_fraction(units):
    labels, covariates = units
    fractions = expanded_fraction(labels, covariates)
    assert list(fractions.index) == ["S1", "S2"]
    assert fractions["S1"] == pytest.approx(2 / 3)
    assert fractions["S2"] == pytest.approx(3 / 4)
    strict = expanded_fraction(labels, covariates, min_size=3)
    assert strict["S2"] == pytest.approx(1 / 4)


def test_counts(units):
    labels, covariates = units
    assert cluster_count(labels, covariates) == 4
    assert shared_clusters(labels, covariates) == 1


def test_multiple_covariates_are_combined(units):
    labels, covariates = units
    covariates = covariates.assign(batch=["a", "a", "a", "a", "b", "b", "b"])
    fractions = expanded_fraction(labels, covariates)
    assert "S1|a" in fractions.index
    assert shared_clusters(labels, covariates) == 2


def test_get_statistic():
    assert get_statistic("purity") is purity
    with pytest.raises(ConfigurationError, match="available"):
        get_statistic("entropy")
