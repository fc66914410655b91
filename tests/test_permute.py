import numpy as np
import pandas as pd
import pytest
from joblib import parallel_config

from src.cellrep.canonicalize import canonicalize_by_chain
from src.cellrep.exceptions import ConfigurationError, DegenerateDataError, StatisticShapeError
from src.cellrep.permute import (
    PermuteTest,
    PermuteTestList,
    cluster_permute_test,
    p_values,
    permute_labels,
    stratum_blocks,
)
from src.cellrep.statistics import cluster_count, purity


def count_a_in_x(labels, covariates):
    return int(((labels == "A") & (covariates.iloc[:, 0] == "x")).sum())


def count_a_per_level(labels, covariates):
    covariate = covariates.iloc[:, 0]
    counts = (labels == "A").groupby(covariate.to_numpy()).sum()
    return counts.reindex(pd.unique(covariate)).fillna(0).astype(float)


def share_a(labels, covariates):
    covariate = covariates.iloc[:, 0]
    shares = (labels == "A").groupby(covariate.to_numpy()).mean()
    return float(shares.max() - shares.min())


@pytest.fixture
def scenario():
    return pd.DataFrame({"label": list("AABBAB"), "group": list("xyxyxy")})


@pytest.fixture
def three_levels():
    return pd.DataFrame({
        "label": list("AABABBABBA" "BA"),
        "group": list("xxxxyyyyzzzz"),
    })


def test_scenario_expected_value(scenario):
    result = cluster_permute_test(
        scenario, "group", count_a_in_x, n_perm=1000, cell_label_key="label", random_state=42
    )
    assert isinstance(result, PermuteTest)
    assert result.observed == 2
    assert result.expected == pytest.approx(1.5, abs=0.15)
    assert result.term == "count_a_in_x"
    assert result.n_units == 6
    assert result.permuted.shape == (1000,)


def test_p_value_is_a_permutation_fraction(scenario):
    result = cluster_permute_test(
        scenario, "group", count_a_in_x, n_perm=200, cell_label_key="label",
        alternative="greater", random_state=1,
    )
    scaled = result.p_value * (result.n_perm + 1)
    assert scaled == pytest.approx(round(scaled))
    # P(count >= 2) = 1/2 under the hypergeometric null
    assert 0.3 < result.p_value < 0.7


def test_same_seed_same_result(scenario):
    kwargs = dict(cell_label_key="label", n_perm=100, random_state=7)
    first = cluster_permute_test(scenario, "group", count_a_in_x, **kwargs)
    second = cluster_permute_test(scenario, "group", count_a_in_x, **kwargs)
    np.testing.assert_array_equal(first.permuted, second.permuted)
    assert first.p_value == second.p_value


def test_parallel_matches_serial(three_levels):
    serial = cluster_permute_test(
        three_levels, "group", count_a_per_level, n_perm=50, cell_label_key="label", random_state=3
    )
    with parallel_config(backend="threading"):
        parallel = cluster_permute_test(
            three_levels, "group", count_a_per_level, n_perm=50, cell_label_key="label",
            random_state=3, n_jobs=2,
        )
    for left, right in zip(serial, parallel):
        np.testing.assert_array_equal(left.permuted, right.permuted)


def test_stratified_permutation_preserves_stratum_composition():
    frame = pd.DataFrame({
        "label": list("AABBAABB"),
        "group": list("xyxyxyxy"),
        "batch": ["b1"] * 4 + ["b2"] * 4,
    })

    def count_a_in_b1(labels, covariates):
        return int((labels[covariates["batch"] == "b1"] == "A").sum())

    result = cluster_permute_test(
        frame, ["group", "batch"], count_a_in_b1, n_perm=100,
        cell_label_key="label", cell_stratify_keys="batch", random_state=0,
    )
    assert np.all(result.permuted == 2)
    assert result.expected == result.observed


def test_permute_labels_within_blocks():
    labels = pd.Series(list("AABBCC"), index=list("uvwxyz"))
    blocks = [np.array([0, 1, 2]), np.array([3, 4, 5])]
    rng = np.random.default_rng(0)
    for _ in range(20):
        shuffled = permute_labels(labels, blocks, rng)
        assert list(shuffled.index) == list("uvwxyz")
        assert sorted(shuffled.iloc[:3]) == ["A", "A", "B"]
        assert sorted(shuffled.iloc[3:]) == ["B", "C", "C"]


def test_stratum_blocks_cover_all_rows():
    frame = pd.DataFrame({"batch": ["b1", "b2", "b1", "b3"]})
    blocks = stratum_blocks(frame, ["batch"])
    assert sorted(np.concatenate(blocks).tolist()) == [0, 1, 2, 3]
    assert len(stratum_blocks(frame)) == 1


def test_single_label_stratum_is_degenerate():
    frame = pd.DataFrame({
        "label": list("AAAABABB"),
        "group": list("xyxyxyxy"),
        "batch": ["b1"] * 4 + ["b2"] * 4,
    })
    with pytest.raises(DegenerateDataError, match="b1"):
        cluster_permute_test(
            frame, "group", count_a_in_x, n_perm=10, cell_label_key="label", cell_stratify_keys="batch"
        )


def test_two_levels_vector_statistic_gives_single_test(scenario):
    result = cluster_permute_test(
        scenario, "group", count_a_per_level, n_perm=50, cell_label_key="label", random_state=0
    )
    assert isinstance(result, PermuteTest)
    assert result.term == "y vs x"
    # A count at y minus A count at x
    assert result.observed == -1
    assert result.contrast.tolist() == [-1.0, 1.0]


def test_three_levels_pairwise_order(three_levels):
    result = cluster_permute_test(
        three_levels, "group", count_a_per_level, n_perm=50, cell_label_key="label", random_state=0
    )
    assert isinstance(result, PermuteTestList)
    assert result.terms == ["y vs x", "z vs x", "z vs y"]


def test_three_levels_scalar_statistic_restricts_to_pairs(three_levels):
    result = cluster_permute_test(
        three_levels, "group", share_a, n_perm=50, cell_label_key="label", random_state=0
    )
    assert isinstance(result, PermuteTestList)
    assert len(result) == 3
    assert result.terms == ["y vs x", "z vs x", "z vs y"]
    assert all(test.n_units == 8 for test in result)


def test_explicit_contrast(three_levels):
    counts = count_a_per_level(three_levels["label"], three_levels[["group"]])
    result = cluster_permute_test(
        three_levels, "group", count_a_per_level, n_perm=50, cell_label_key="label",
        contrasts=[1, -0.5, -0.5], random_state=0,
    )
    assert isinstance(result, PermuteTest)
    assert result.observed == pytest.approx(counts["x"] - 0.5 * counts["y"] - 0.5 * counts["z"])


def test_named_contrasts(three_levels):
    result = cluster_permute_test(
        three_levels, "group", count_a_per_level, n_perm=20, cell_label_key="label",
        contrasts={"x_vs_rest": {"x": 1, "y": -0.5, "z": -0.5}, "z_vs_y": {"y": -1, "z": 1}},
        random_state=0,
    )
    assert result.terms == ["x_vs_rest", "z_vs_y"]


def count_a_array(labels, covariates):
    return count_a_per_level(labels, covariates).to_numpy()


def test_level_mapping_contrast_follows_covariate_order(three_levels):
    # A counts: x=3, y=1, z=2
    result = cluster_permute_test(
        three_levels, "group", count_a_array, n_perm=20, cell_label_key="label",
        contrasts={"y_vs_x": {"y": 1, "x": -1, "z": 0}}, random_state=0,
    )
    assert result.term == "y_vs_x"
    assert result.observed == pytest.approx(-2.0)
    assert result.contrast.tolist() == [-1.0, 1.0, 0.0]


def test_flat_level_mapping_contrast(three_levels):
    result = cluster_permute_test(
        three_levels, "group", count_a_array, n_perm=20, cell_label_key="label",
        contrasts={"z": -0.5, "x": 1, "y": -0.5}, random_state=0,
    )
    assert isinstance(result, PermuteTest)
    assert result.term == "x - 0.5*y - 0.5*z"
    assert result.observed == pytest.approx(1.5)


def test_scalar_statistic_is_evaluated_once_per_run(three_levels):
    calls = []

    def counted(labels, covariates):
        calls.append(len(labels))
        return share_a(labels, covariates)

    cluster_permute_test(three_levels, "group", counted, n_perm=5, cell_label_key="label", random_state=0)
    # three pairwise runs, each one observed call plus five permutations
    assert len(calls) == 3 * (1 + 5)
    assert set(calls) == {8}


def test_nan_statistic_gives_nan_p_value():
    frame = pd.DataFrame({"label": list("ABCDEF"), "group": list("xyxyxy")})
    result = cluster_permute_test(frame, "group", purity, n_perm=99, cell_label_key="label", random_state=0)
    assert np.isnan(result.observed)
    assert np.isnan(result.p_value)


def test_p_values_with_nan_draws():
    permuted = np.array([[0.0, 1.0], [np.nan, 2.0], [3.0, 3.0]])
    observed = np.array([3.0, 3.0])
    pvals = p_values(observed, permuted, "greater")
    assert np.isnan(pvals[0])
    assert pvals[1] == pytest.approx(2 / 4)
    assert np.isnan(p_values(np.array([np.nan]), np.array([[1.0], [2.0]]))[0])


def test_contrast_length_mismatch(three_levels):
    with pytest.raises(StatisticShapeError):
        cluster_permute_test(
            three_levels, "group", count_a_per_level, n_perm=10, cell_label_key="label",
            contrasts=[1, -1],
        )


def test_inconsistent_statistic_shape(scenario):
    calls = []

    def drifting(labels, covariates):
        calls.append(1)
        return np.zeros(2 if len(calls) == 1 else 3)

    with pytest.raises(StatisticShapeError):
        cluster_permute_test(scenario, "group", drifting, n_perm=5, cell_label_key="label")


def test_invalid_arguments(scenario):
    with pytest.raises(ConfigurationError):
        cluster_permute_test(scenario, "group", count_a_in_x, n_perm=0, cell_label_key="label")
    with pytest.raises(ConfigurationError):
        cluster_permute_test(scenario, "group", count_a_in_x, n_perm=10, cell_label_key="missing")
    with pytest.raises(ConfigurationError):
        cluster_permute_test(scenario, "group", count_a_in_x, n_perm=10)
    with pytest.raises(ConfigurationError):
        cluster_permute_test(
            scenario, "group", count_a_in_x, n_perm=10, cell_label_key="label", alternative="both"
        )


def test_missing_values_are_dropped(scenario):
    scenario.loc[6] = ["A", None]
    result = cluster_permute_test(
        scenario, "group", count_a_in_x, n_perm=20, cell_label_key="label", random_state=0
    )
    assert result.n_dropped == 1
    assert result.n_units == 6


def test_p_values_alternatives():
    permuted = np.array([[0.0], [1.0], [2.0], [3.0]])
    observed = np.array([3.0])
    assert p_values(observed, permuted, "greater")[0] == pytest.approx(2 / 5)
    assert p_values(observed, permuted, "less")[0] == pytest.approx(1.0)
    # mean 1.5: |0-1.5| and |3-1.5| tie with the observed deviation
    assert p_values(observed, permuted, "two-sided")[0] == pytest.approx(3 / 5)


def test_tidy_and_summary(three_levels):
    result = cluster_permute_test(
        three_levels, "group", count_a_per_level, n_perm=20, cell_label_key="label", random_state=0
    )
    tidy = result.tidy()
    assert list(tidy.columns) == ["term", "observed", "expected", "p_value", "n_perm"]
    assert len(tidy) == 3
    text = result.summary(n=1)
    assert "PermuteTestList of 3 result(s)" in text
    assert "... 2 more result(s) omitted" in text
    assert isinstance(result[1:], PermuteTestList)


def test_ccdb_input_uses_cluster_labels(clustered_ccdb):
    ccdb = canonicalize_by_chain(clustered_ccdb, "TRB", contig_fields=["cluster_idx"])
    result = cluster_permute_test(ccdb, "sample", cluster_count, n_perm=20, random_state=0)
    assert result.cell_label_key == "cluster_idx"
    assert result.n_dropped == 1
