import numpy as np
import pandas as pd
import pytest

from conftest import make_candidates, rt_map
from mass_align import ConfigurationError, InsufficientDataError, ScoreConfig, evaluate_params, score_pairs
from mass_align.scoring import score_function


def _identity(rtx):
    return np.asarray(rtx, dtype=float)


def _table(**overrides):
    data = {
        "idx": ["a", "a", "b", "c"],
        "idy": ["p", "q", "p", "r"],
        "mzx": [100.0, 100.0, 100.001, 300.0],
        "mzy": [100.0, 100.002, 100.0, 300.0],
        "rtx": [5.0, 5.0, 5.2, 9.0],
        "rty": [5.0, 5.5, 5.0, 9.0],
        "Qx": [0.5, 0.5, 0.4, 0.2],
        "Qy": [0.5, 0.6, 0.5, 0.2],
        "group": [1, 1, 1, 2],
    }
    data.update(overrides)
    return pd.DataFrame(data)


def test_score_function_bounds():
    assert score_function(0.0, 0.0, 0.0, 75, 10, 0.25) == 1.0
    s = score_function([0.001, 0.0, 0.0, 1e6], [0.0, 0.01, 0.0, 1e6], [0.0, 0.0, 0.1, 1e6], 75, 10, 0.25)
    assert np.all(s > 0)
    assert np.all(s < 1)


def test_score_function_decreases_in_each_term():
    base = score_function(0.001, 0.01, 0.1, 75, 10, 0.25)
    assert score_function(0.002, 0.01, 0.1, 75, 10, 0.25) < base
    assert score_function(0.001, 0.02, 0.1, 75, 10, 0.25) < base
    assert score_function(0.001, 0.01, 0.2, 75, 10, 0.25) < base


def test_score_pairs_columns_and_ranks():
    table = _table()
    scored = score_pairs(table, _identity)

    assert "score" not in table.columns
    assert scored["score"].iloc[0] == 1.0
    assert scored["score"].iloc[3] == 1.0
    assert np.allclose(scored["rtProj"], table["rtx"])
    assert scored["rankX"].tolist() == [1, 2, 1, 1]
    assert scored["rankY"].tolist() == [1, 1, 2, 1]


def test_dense_rank_ties():
    table = _table(mzy=[100.0, 100.0, 100.0, 300.0], rty=[5.0, 5.0, 5.0, 9.0], Qy=[0.5, 0.5, 0.5, 0.2])
    scored = score_pairs(table, _identity)
    # Rows 0 and 1 are identical deviations from the same X feature.
    assert scored["rankX"].tolist()[:2] == [1, 1]
    assert scored["rankY"].tolist()[:3] == [1, 1, 2]


def test_rt_deviation_is_scaled_by_rty_range():
    table = _table()
    scored = score_pairs(table, _identity, ScoreConfig(A=1.0, B=1.0, C=1.0))
    expected = np.exp(-(0.002 + 0.5 / 4.0 + 0.1))
    assert scored["score"].iloc[1] == pytest.approx(expected)


def test_ppm_deviation():
    table = _table(mzy=[100.001, 100.0, 100.0, 300.0])
    scored = score_pairs(table, _identity, ScoreConfig(A=0.1, B=1.0, C=1.0, use_ppm=True))
    assert scored["score"].iloc[0] == pytest.approx(np.exp(-1.0), rel=1e-6)


def test_adduct_penalty_only_for_plain_differing_labels():
    table = _table(
        adductX=["[M+H]+", "[M+H]+", "(M+H)", ""],
        adductY=["[M+Na]+", "[M+H]+", "[M+Na]+", "[M+Na]+"],
    )
    plain = score_pairs(table, _identity)
    penalized = score_pairs(table, _identity, ScoreConfig(use_adduct=True, adduct=2.0))
    ratio = (plain["score"] / penalized["score"]).tolist()
    assert ratio == pytest.approx([2.0, 1.0, 1.0, 1.0])


def test_rescoring_is_idempotent():
    once = score_pairs(_table(), _identity)
    twice = score_pairs(once, _identity)
    pd.testing.assert_frame_equal(once, twice)


def test_group_restriction_keeps_other_rows():
    scored = score_pairs(_table(), _identity, ScoreConfig(groups=[1]))
    assert scored["score"].iloc[:3].notna().all()
    assert np.isnan(scored["score"].iloc[3])
    assert pd.isna(scored["rankX"].iloc[3])

    previous = score_pairs(_table(), _identity)
    rescored = score_pairs(previous, lambda rtx: np.asarray(rtx) + 1.0, ScoreConfig(groups=[1]))
    assert rescored["score"].iloc[3] == previous["score"].iloc[3]
    assert rescored["score"].iloc[0] < previous["score"].iloc[0]


def test_background_rows_are_not_scored(candidates):
    scored = score_pairs(candidates, rt_map)
    bg = scored["group"] == 0
    assert scored.loc[bg, "score"].isna().all()
    assert scored.loc[~bg, "score"].between(0, 1, inclusive="right").all()


def test_true_pairs_outrank_decoys(candidates):
    scored = score_pairs(candidates, rt_map)
    true_pairs = scored["idy"].str.startswith("y")
    decoys = scored["idy"].str.startswith("d")
    assert (scored.loc[true_pairs, "rankX"] == 1).all()
    assert (scored.loc[decoys, "rankX"] == 2).all()


@pytest.mark.parametrize(
    "kwargs", [{"A": 0}, {"B": -1.0}, {"C": float("nan")}, {"adduct": 0.5}, {"A": "75"}, {"adduct": None}]
)
def test_invalid_score_config(kwargs):
    with pytest.raises(ConfigurationError):
        score_pairs(_table(), _identity, ScoreConfig(**kwargs))


def _identity_candidates():
    table = make_candidates(30, seed=3)
    table["idy"] = table["idy"].str.replace("y", "x", regex=False)
    return table


def test_evaluate_params_grid_sorted():
    table = _identity_candidates()
    result = evaluate_params(table, rt_map, A=(50, 100), B=(5, 10), C=(0.1,))

    assert len(result) == 4
    assert list(result.columns) == [
        "A",
        "B",
        "C",
        "objective",
        "n_identity",
        "n_hits",
        "hit_fraction",
        "n_false",
        "mean_identity_score",
    ]
    assert result["objective"].is_monotonic_decreasing
    assert (result["n_identity"] == 30).all()
    assert result["hit_fraction"].iloc[0] > 0.9
    assert (result["n_false"] == 0).all()


def test_evaluate_params_penalizes_false_hits():
    table = _identity_candidates()
    loose = evaluate_params(table, rt_map, A=(1,), B=(0.01,), C=(0.01,), min_score=0.5, penalty=5.0)
    assert loose["n_false"].iloc[0] > 0
    assert loose["objective"].iloc[0] == loose["n_hits"].iloc[0] - 5.0 * loose["n_false"].iloc[0]


def test_evaluate_params_requires_identities(candidates):
    with pytest.raises(InsufficientDataError):
        evaluate_params(candidates, rt_map, A=(75,), B=(10,), C=(0.25,))


def test_group_restriction_on_candidate_table(candidates):
    scored = score_pairs(candidates, rt_map, ScoreConfig(groups=[1, 2, 3]))
    inside = candidates["group"].isin([1, 2, 3])
    assert scored.loc[inside, "score"].notna().all()
    assert scored.loc[~inside, "score"].isna().all()
    assert scored.loc[~inside, "rankX"].isna().all()


def test_evaluate_params_restricted_to_groups():
    table = _identity_candidates()
    result = evaluate_params(table, rt_map, A=(50,), B=(5,), C=(0.1,), groups=[1, 2, 3, 4])
    assert result["n_identity"].tolist() == [4]
    assert result["n_hits"].iloc[0] <= 4
