import numpy as np
import pandas as pd
import pytest

from conftest import rt_map
from mass_align import ConfigurationError, LabelConfig, label_rows, score_pairs
from mass_align.labeling import LABEL_CONFLICT, LABEL_IDENTITY, LABEL_KEEP, LABEL_REMOVE, _assign_subgroups


def _pairs(rows):
    base = {
        "idx": "F1",
        "idy": "Y1",
        "mzx": 200.0,
        "mzy": 200.0,
        "rtx": 5.0,
        "rty": 5.0,
        "Qx": 0.5,
        "Qy": 0.5,
        "group": 1,
        "score": 0.9,
        "rankX": 1,
        "rankY": 1,
    }
    return pd.DataFrame([{**base, **row} for row in rows])


def _shared_x():
    # P1 and P2 claim the same X feature F12.
    return _pairs(
        [
            {"idx": "F12", "idy": "Y1", "mzy": 200.000, "rty": 5.00, "score": 0.90, "rankX": 1, "rankY": 1},
            {"idx": "F12", "idy": "Y2", "mzy": 200.001, "rty": 5.02, "score": 0.87, "rankX": 2, "rankY": 1},
        ]
    )


def test_close_competitors_conflict():
    out = label_rows(_shared_x(), LabelConfig(method="score", delta=0.2))
    assert out["labels"].tolist() == [LABEL_CONFLICT, LABEL_CONFLICT]
    assert out["subgroup"].tolist() == [1, 1]
    assert out["alt"].isna().all()


def test_dominated_competitor_removed():
    out = label_rows(_shared_x(), LabelConfig(method="score", delta=0.01))
    assert out["labels"].tolist() == [LABEL_KEEP, LABEL_REMOVE]
    assert out["subgroup"].isna().all()


def test_mzrt_method_compares_unshared_feature():
    close = label_rows(_shared_x(), LabelConfig(method="mzrt", delta=(0.005, 0.005, 0.05, 0.05)))
    assert close["labels"].tolist() == [LABEL_CONFLICT, LABEL_CONFLICT]

    far = label_rows(_shared_x(), LabelConfig(method="mzrt", delta=(0.005, 0.0001, 0.05, 0.05)))
    assert far["labels"].tolist() == [LABEL_KEEP, LABEL_REMOVE]


def test_identity_rows_never_reclassified():
    table = _pairs(
        [
            {"idx": "glucose", "idy": "Glucose", "score": 0.01, "rankX": 9, "rankY": 9},
            {"idx": "(glucose)", "idy": "(glucose)", "rtx": 8.0, "rty": 8.0, "score": 0.01},
        ]
    )
    out = label_rows(table)
    assert out["labels"].tolist() == [LABEL_IDENTITY, LABEL_REMOVE]


def test_thresholds():
    table = _pairs(
        [
            {"idx": "a", "idy": "p", "score": 0.3},
            {"idx": "b", "idy": "q", "rtx": 6.0, "rty": 6.0, "score": np.nan, "rankX": None, "rankY": None},
            {"idx": "c", "idy": "r", "rtx": 7.0, "rty": 7.0, "score": 0.95},
        ]
    )
    table["rtProj"] = [5.0, 6.0, 9.0]
    out = label_rows(table, LabelConfig(max_rt_err=1.0))
    assert out["labels"].tolist() == [LABEL_REMOVE, LABEL_REMOVE, LABEL_REMOVE]

    out = label_rows(table)
    assert out["labels"].tolist() == [LABEL_REMOVE, LABEL_REMOVE, LABEL_KEEP]


def test_balanced_rank_rule():
    table = _pairs([{"rankX": 5, "rankY": 1}])
    assert label_rows(table, LabelConfig(balanced=True))["labels"].tolist() == [LABEL_KEEP]
    assert label_rows(table, LabelConfig(balanced=False))["labels"].tolist() == [LABEL_REMOVE]

    both = _pairs([{"rankX": 5, "rankY": 4}])
    assert label_rows(both, LabelConfig(balanced=True))["labels"].tolist() == [LABEL_REMOVE]


def test_independent_conflicts_get_separate_subgroups():
    table = _pairs(
        [
            {"idx": "A", "idy": "Y1", "score": 0.90},
            {"idx": "A", "idy": "Y2", "mzy": 200.001, "score": 0.89, "rankX": 2},
            {"idx": "B", "idy": "Y3", "mzx": 400.0, "mzy": 400.0, "score": 0.80},
            {"idx": "B", "idy": "Y4", "mzx": 400.0, "mzy": 400.001, "score": 0.75, "rankX": 2},
            {"idx": "C", "idy": "Y5", "mzx": 600.0, "mzy": 600.0, "score": 0.99},
        ]
    )
    out = label_rows(table, LabelConfig(delta=0.1))
    assert out["labels"].tolist() == [LABEL_CONFLICT] * 4 + [LABEL_KEEP]
    assert out["subgroup"].tolist()[:4] == [1, 1, 2, 2]
    assert pd.isna(out["subgroup"].iloc[4])


def test_assign_subgroups_records_alternative_component():
    conflict = np.array([0, 1, 2, 3])
    edges = [(0, 1), (2, 3)]
    keys_x = np.array([10, 10, 20, 20])
    keys_y = np.array([1, 2, 2, 3])
    subgroup, alt = _assign_subgroups(conflict, edges, keys_x, keys_y)
    assert subgroup == {0: 1, 1: 1, 2: 2, 3: 2}
    assert alt == {1: 2, 2: 1}


def test_labels_partition_and_remove(candidates):
    scored = score_pairs(candidates, rt_map)
    labeled = label_rows(scored)
    assert len(labeled) == len(scored)
    assert set(labeled["labels"]) <= {LABEL_IDENTITY, LABEL_KEEP, LABEL_REMOVE, LABEL_CONFLICT}
    assert labeled["labels"].notna().all()

    n_remove = int((labeled["labels"] == LABEL_REMOVE).sum())
    assert n_remove > 0
    trimmed = label_rows(scored, LabelConfig(remove=True))
    assert len(trimmed) == len(scored) - n_remove
    assert (trimmed["labels"] != LABEL_REMOVE).all()


def test_requires_scored_table(candidates):
    with pytest.raises(ConfigurationError):
        label_rows(candidates)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"method": "score", "delta": (0.1, 0.1, 0.1, 0.1)},
        {"method": "mzrt", "delta": 0.1},
        {"method": "nearest"},
        {"min_score": 1.5},
        {"max_rank_x": 0},
        {"max_rt_err": 0.0},
        {"max_rank_x": float("inf")},
        {"max_rank_y": "3"},
        {"min_score": "high"},
        {"max_rt_err": float("nan")},
        {"delta": "wide"},
    ],
)
def test_invalid_label_config(kwargs):
    with pytest.raises(ConfigurationError):
        label_rows(_shared_x(), LabelConfig(**kwargs))
