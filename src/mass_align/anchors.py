"""Anchor selection: ordered retention time pairs used to fit the RT model.

Anchors are drawn from abundant feature pairs whose m/z, abundance quantile
and linear RT quantile agree within tolerance. Selection is greedy: the most
abundant remaining pair is accepted and every pair within an RT exclusion
window of it is discarded. The greedy pass is run once from the X side and
once from the Y side; only pairs chosen by both passes are kept. Optionally,
pairs sharing an identity string are accepted first and exempt from the
tolerance checks.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError
from .lcms_utils import (
    DEFAULT_BRACKETS,
    FEATURE_COLUMNS,
    compare_identities,
    is_real,
    linear_rt_quantile,
    rt_extremes,
    valid_rows,
    validate_candidate_table,
)

logger = logging.getLogger(__name__)

ANCHOR_IDENTITY = "identity"
ANCHOR_ABUNDANT = "abundant"


@dataclass
class AnchorConfig:
    """Configuration for anchor selection."""

    # Accept shared identities (idx == idy) before the abundance-driven passes.
    use_id: bool = False
    # Tolerances on |mzx - mzy|, |Qx - Qy| and |rtqx - rtqy| for abundant anchors.
    tolmz: float = 0.003
    tolQ: float = 0.3
    tolrtq: float = 0.3
    # RT exclusion windows around each accepted anchor (minutes).
    windx: float = 0.03
    windy: float = 0.03
    # Identity strings wrapped in one of these are annotations, not identities.
    brackets: Tuple[str, ...] = DEFAULT_BRACKETS
    # Fewer anchors than this triggers an advisory warning.
    min_anchors: int = 20

    def validate(self) -> None:
        for name in ("tolmz", "tolQ", "tolrtq", "windx", "windy"):
            value = getattr(self, name)
            if not is_real(value) or not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number; got {value!r}")
        m = self.min_anchors
        if not is_real(m) or not np.isfinite(m) or int(m) != m or m < 0:
            raise ConfigurationError(f"min_anchors must be a non-negative integer; got {m!r}")


def greedy_anchor_pass(
    rt_primary: np.ndarray,
    rt_secondary: np.ndarray,
    q_primary: np.ndarray,
    q_secondary: np.ndarray,
    wind_primary: float,
    wind_secondary: float,
) -> np.ndarray:
    """One greedy selection pass; returns positions of the selected pairs.

    Pairs are visited by decreasing primary abundance (ties broken by the
    secondary abundance, then input order). A visited pair that is still
    available becomes an anchor and removes every available pair lying
    within ``wind_primary`` on the primary RT axis or ``wind_secondary`` on
    the secondary RT axis.
    """
    rt_primary = np.asarray(rt_primary, dtype=float)
    rt_secondary = np.asarray(rt_secondary, dtype=float)
    n = rt_primary.size
    if n == 0:
        return np.array([], dtype=int)

    order = np.lexsort((np.arange(n), -np.asarray(q_secondary, dtype=float), -np.asarray(q_primary, dtype=float)))
    available = np.ones(n, dtype=bool)
    selected = []
    for i in order:
        if not available[i]:
            continue
        selected.append(int(i))
        near = (np.abs(rt_primary - rt_primary[i]) < wind_primary) | (
            np.abs(rt_secondary - rt_secondary[i]) < wind_secondary
        )
        available &= ~near
        available[i] = False
    return np.asarray(selected, dtype=int)


def _identity_anchors(
    cand: pd.DataFrame,
    cfg: AnchorConfig,
) -> Tuple[np.ndarray, np.ndarray]:
    """Identity anchors and the pairs they remove from consideration.

    Returns two boolean masks over ``cand``: accepted identity anchors, and
    pairs excluded from any further selection (duplicate identities plus
    non-identity pairs inside an identity anchor's exclusion windows).
    """
    n = len(cand)
    shared = compare_identities(cand["idx"], cand["idy"], cfg.brackets)
    excluded = np.zeros(n, dtype=bool)
    if not shared.any():
        return shared, excluded

    qsum = cand["Qx"].to_numpy(dtype=float) + cand["Qy"].to_numpy(dtype=float)
    names = cand["idx"].astype(str).str.strip().str.lower().to_numpy()

    # Keep the most abundant representation of every repeated identity.
    pos = np.nonzero(shared)[0]
    pos = pos[np.lexsort((pos, -qsum[pos]))]
    seen = set()
    for p in pos:
        if names[p] in seen:
            shared[p] = False
            excluded[p] = True
        else:
            seen.add(names[p])

    rtx = cand["rtx"].to_numpy(dtype=float)
    rty = cand["rty"].to_numpy(dtype=float)
    pos = np.nonzero(shared)[0]
    for p in pos[np.lexsort((pos, -qsum[pos]))]:
        near = (np.abs(rtx - rtx[p]) < cfg.windx) | (np.abs(rty - rty[p]) < cfg.windy)
        excluded |= near & ~shared

    return shared, excluded


def select_anchors(
    table: pd.DataFrame,
    config: Optional[AnchorConfig] = None,
    *,
    rt_bounds: Optional[Sequence[float]] = None,
) -> pd.DataFrame:
    """Select anchor pairs from a grouped candidate table.

    Args:
        table: candidate table (all rows; only group > 0 rows are considered).
        config: selection parameters.
        rt_bounds: (min rtx, min rty, max rtx, max rty); computed over the
            full table when omitted.

    Returns:
        Anchor rows (index preserved from ``table``) sorted by rtx, with a
        ``labels`` column holding ``"identity"`` or ``"abundant"``.
    """
    cfg = config or AnchorConfig()
    cfg.validate()
    validate_candidate_table(table)

    if rt_bounds is None:
        rt_bounds = rt_extremes(table)
    rtx_min, rty_min, rtx_max, rty_max = (float(v) for v in rt_bounds)

    cand = table.loc[valid_rows(table)]
    columns = [c for c in FEATURE_COLUMNS if c in cand.columns]
    if cand.empty:
        anchors = cand[columns].assign(labels=pd.Series(dtype=object))
        _warn_few_anchors(0, cfg)
        return anchors

    rtx = cand["rtx"].to_numpy(dtype=float)
    rty = cand["rty"].to_numpy(dtype=float)
    qx = cand["Qx"].to_numpy(dtype=float)
    qy = cand["Qy"].to_numpy(dtype=float)
    rtqx = linear_rt_quantile(rtx, rtx_min, rtx_max)
    rtqy = linear_rt_quantile(rty, rty_min, rty_max)

    if cfg.use_id:
        identity, excluded = _identity_anchors(cand, cfg)
    else:
        identity = np.zeros(len(cand), dtype=bool)
        excluded = np.zeros(len(cand), dtype=bool)

    mzdiff = np.abs(cand["mzx"].to_numpy(dtype=float) - cand["mzy"].to_numpy(dtype=float))
    within = (mzdiff < cfg.tolmz) & (np.abs(qx - qy) < cfg.tolQ) & (np.abs(rtqx - rtqy) < cfg.tolrtq)
    pool = np.nonzero(within & ~identity & ~excluded)[0]

    pass_x = pool[greedy_anchor_pass(rtx[pool], rty[pool], qx[pool], qy[pool], cfg.windx, cfg.windy)]
    pass_y = pool[greedy_anchor_pass(rty[pool], rtx[pool], qy[pool], qx[pool], cfg.windy, cfg.windx)]
    mutual = np.intersect1d(pass_x, pass_y)

    logger.info(
        "Anchor passes: %d X-primary, %d Y-primary, %d mutual, %d identity",
        pass_x.size,
        pass_y.size,
        mutual.size,
        int(identity.sum()),
    )

    labels = np.full(len(cand), None, dtype=object)
    labels[mutual] = ANCHOR_ABUNDANT
    labels[identity] = ANCHOR_IDENTITY
    keep = np.nonzero(pd.notna(labels))[0]

    anchors = cand.iloc[keep][columns].copy()
    anchors["labels"] = labels[keep]
    anchors = anchors.sort_values(["rtx", "rty"], kind="mergesort")

    _warn_few_anchors(len(anchors), cfg)
    return anchors


def _warn_few_anchors(n: int, cfg: AnchorConfig) -> None:
    if n < int(cfg.min_anchors):
        msg = (
            f"number of anchors ({n}) less than {int(cfg.min_anchors)}; "
            "consider looser tolerances or using identities."
        )
        logger.warning(msg)
        warnings.warn(msg, UserWarning, stacklevel=3)
