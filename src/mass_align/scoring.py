"""Pair scoring against the fitted retention time model.

Every candidate pair receives a similarity score in (0, 1]:

    score = exp(-(A * dmz + B * drt + C * dQ))

where dmz is |mzx - mzy| (Da, or ppm relative to mzx when ``use_ppm``),
drt is |rty - rtProj| divided by the rty range of the candidate table, and
dQ is |Qx - Qy|. Pairs with differing adduct labels can be penalized by a
constant divisor. Scores are ranked (dense, descending) among all pairs
sharing the same X feature (rankX) and the same Y feature (rankY).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import product
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError, InsufficientDataError
from .lcms_utils import (
    DEFAULT_BRACKETS,
    compare_identities,
    feature_keys,
    is_bracketed,
    is_real,
    ppm_diff,
    valid_rows,
    validate_candidate_table,
)

logger = logging.getLogger(__name__)

_SCORE_FLOOR = np.finfo(float).tiny


@dataclass
class ScoreConfig:
    """Configuration for pair scoring."""

    # Weights of the m/z, RT and Q deviations.
    A: float = 75.0
    B: float = 10.0
    C: float = 0.25
    # Measure m/z deviation in ppm instead of Da.
    use_ppm: bool = False
    # Divide the score by `adduct` when both adduct labels are set and differ.
    use_adduct: bool = False
    adduct: float = 1.25
    # Restrict (re)scoring to these m/z groups; None scores every group.
    groups: Optional[Sequence[int]] = None
    brackets: Tuple[str, ...] = DEFAULT_BRACKETS

    def validate(self) -> None:
        for name in ("A", "B", "C"):
            value = getattr(self, name)
            if not is_real(value) or not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number; got {value!r}")
        if not is_real(self.adduct) or not np.isfinite(self.adduct) or self.adduct < 1:
            raise ConfigurationError(f"adduct penalty must be >= 1; got {self.adduct!r}")


def score_function(dmz, drt, dq, A: float, B: float, C: float) -> np.ndarray:
    """Bounded similarity: 1 at zero deviation, strictly decreasing in each term."""
    penalty = A * np.asarray(dmz, dtype=float) + B * np.asarray(drt, dtype=float) + C * np.asarray(dq, dtype=float)
    return np.maximum(np.exp(-penalty), _SCORE_FLOOR)


def _rty_range(table: pd.DataFrame) -> float:
    rty = table["rty"].to_numpy(dtype=float)
    span = float(np.max(rty) - np.min(rty)) if rty.size else 0.0
    return span if span > 0 else 1.0


def _adduct_mismatch(table: pd.DataFrame, brackets: Sequence[str]) -> np.ndarray:
    if "adductX" not in table.columns or "adductY" not in table.columns:
        return np.zeros(len(table), dtype=bool)
    ax = table["adductX"].fillna("").astype(str).str.strip().to_numpy()
    ay = table["adductY"].fillna("").astype(str).str.strip().to_numpy()
    present = (ax != "") & (ay != "")
    plain = ~is_bracketed(ax, brackets) & ~is_bracketed(ay, brackets)
    return present & plain & (ax != ay)


def _deviations(table: pd.DataFrame, rt_proj: np.ndarray, use_ppm: bool, rty_range: float):
    mzx = table["mzx"].to_numpy(dtype=float)
    mzy = table["mzy"].to_numpy(dtype=float)
    dmz = ppm_diff(mzx, mzy) if use_ppm else np.abs(mzx - mzy)
    drt = np.abs(table["rty"].to_numpy(dtype=float) - rt_proj) / rty_range
    dq = np.abs(table["Qx"].to_numpy(dtype=float) - table["Qy"].to_numpy(dtype=float))
    return dmz, drt, dq


def _scoring_mask(table: pd.DataFrame, groups: Optional[Sequence[int]]) -> np.ndarray:
    mask = valid_rows(table).to_numpy()
    if groups is not None:
        mask = mask & table["group"].isin(list(groups)).to_numpy()
    return mask


def rank_pairs(table: pd.DataFrame, score_col: str = "score") -> Tuple[pd.Series, pd.Series]:
    """Dense descending rank of scores per X feature and per Y feature."""
    keys_x, keys_y = feature_keys(table)
    scores = pd.Series(table[score_col].to_numpy(dtype=float), index=table.index)
    rank_x = scores.groupby(keys_x).rank(method="dense", ascending=False)
    rank_y = scores.groupby(keys_y).rank(method="dense", ascending=False)
    return rank_x.astype("Int64"), rank_y.astype("Int64")


def score_pairs(
    table: pd.DataFrame,
    model: Callable,
    config: Optional[ScoreConfig] = None,
) -> pd.DataFrame:
    """Score candidate pairs against a fitted RT model.

    Args:
        table: grouped candidate table.
        model: callable mapping rtx to projected rty (e.g. ``RTModel``).
        config: scoring parameters.

    Returns:
        A copy of ``table`` with ``rtProj``, ``score``, ``rankX`` and
        ``rankY``. Rows outside the scored groups keep previous values.
    """
    cfg = config or ScoreConfig()
    cfg.validate()
    validate_candidate_table(table)

    out = table.copy()
    for col in ("rtProj", "score"):
        if col not in out.columns:
            out[col] = np.nan
        out[col] = out[col].astype(float)

    mask = _scoring_mask(out, cfg.groups)
    if mask.any():
        sub = out.loc[mask]
        rt_proj = np.asarray(model(sub["rtx"].to_numpy(dtype=float)), dtype=float)
        dmz, drt, dq = _deviations(sub, rt_proj, cfg.use_ppm, _rty_range(table))
        score = score_function(dmz, drt, dq, cfg.A, cfg.B, cfg.C)
        if cfg.use_adduct:
            score = np.where(_adduct_mismatch(sub, cfg.brackets), score / cfg.adduct, score)
        out.loc[mask, "rtProj"] = rt_proj
        out.loc[mask, "score"] = score

    out["rankX"], out["rankY"] = rank_pairs(out)
    logger.info("Scored %d candidate pairs", int(mask.sum()))
    return out


def evaluate_params(
    table: pd.DataFrame,
    model: Callable,
    *,
    A: Sequence[float] = tuple(range(60, 151, 10)),
    B: Sequence[float] = tuple(range(6, 16)),
    C: Sequence[float] = (0.1, 0.2, 0.3, 0.4, 0.5),
    min_score: float = 0.8,
    penalty: float = 5.0,
    use_ppm: bool = False,
    groups: Optional[Sequence[int]] = None,
    brackets: Sequence[str] = DEFAULT_BRACKETS,
) -> pd.DataFrame:
    """Grid search of score weights against shared-identity pairs.

    For each (A, B, C), identity pairs ranked first on both axes with a score
    of at least ``min_score`` count as hits; non-identity pairs sharing a
    feature with an identity pair and scoring at least ``min_score`` count
    as false hits. ``objective = hits - penalty * false hits``.

    Returns one row per grid point, best objective first.
    """
    if not is_real(min_score) or not 0 <= min_score <= 1:
        raise ConfigurationError(f"min_score must lie in [0, 1]; got {min_score!r}")
    if not is_real(penalty) or not np.isfinite(penalty) or penalty < 0:
        raise ConfigurationError(f"penalty must be non-negative; got {penalty!r}")
    grid = list(product(A, B, C))
    for a, b, c in grid:
        ScoreConfig(A=a, B=b, C=c).validate()
    validate_candidate_table(table)

    sub = table.loc[_scoring_mask(table, groups)]
    truth = compare_identities(sub["idx"], sub["idy"], brackets)
    if not truth.any():
        raise InsufficientDataError("No pairs with shared identities available for parameter evaluation")

    rt_proj = np.asarray(model(sub["rtx"].to_numpy(dtype=float)), dtype=float)
    dmz, drt, dq = _deviations(sub, rt_proj, use_ppm, _rty_range(table))
    keys_x, keys_y = feature_keys(sub)
    competing = ~truth & (np.isin(keys_x, keys_x[truth]) | np.isin(keys_y, keys_y[truth]))
    n_identity = int(truth.sum())

    rows = []
    for a, b, c in grid:
        score = pd.Series(score_function(dmz, drt, dq, a, b, c))
        rank_x = score.groupby(keys_x).rank(method="dense", ascending=False).to_numpy()
        rank_y = score.groupby(keys_y).rank(method="dense", ascending=False).to_numpy()
        s = score.to_numpy()
        hits = truth & (rank_x == 1) & (rank_y == 1) & (s >= min_score)
        false_hits = competing & (s >= min_score)
        rows.append(
            {
                "A": a,
                "B": b,
                "C": c,
                "objective": float(hits.sum()) - penalty * float(false_hits.sum()),
                "n_identity": n_identity,
                "n_hits": int(hits.sum()),
                "hit_fraction": float(hits.sum()) / n_identity,
                "n_false": int(false_hits.sum()),
                "mean_identity_score": float(np.mean(s[truth])),
            }
        )

    result = pd.DataFrame(rows)
    return result.sort_values(
        ["objective", "mean_identity_score"], ascending=[False, False], kind="mergesort"
    ).reset_index(drop=True)
