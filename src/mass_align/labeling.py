"""Row labeling: resolve competing pairs into IDENTITY, KEEP, REMOVE or CONFLICT.

Pairs failing the score, rank or RT-error thresholds are marked for
removal. Among the remaining pairs, any X or Y feature claimed by more than
one pair is a collision; the pair ranked first on both axes serves as the
benchmark and each competitor is either judged too close to call (CONFLICT)
or dominated (REMOVE). Conflicting pairs are grouped into connected
subgroups for manual review.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import networkx as nx
import numpy as np
import pandas as pd

from .errors import ConfigurationError
from .lcms_utils import DEFAULT_BRACKETS, compare_identities, feature_keys, is_real, validate_candidate_table

logger = logging.getLogger(__name__)

LABEL_IDENTITY = "IDENTITY"
LABEL_KEEP = "KEEP"
LABEL_REMOVE = "REMOVE"
LABEL_CONFLICT = "CONFLICT"

CONFLICT_METHODS = ("score", "mzrt")


@dataclass
class LabelConfig:
    """Configuration for row labeling and conflict detection."""

    min_score: float = 0.5
    max_rank_x: int = 3
    max_rank_y: int = 3
    # Absolute |rty - rtProj| above which a pair is removed.
    max_rt_err: float = float("inf")
    # "score": competitors within `delta` score of the benchmark conflict.
    # "mzrt": competitors whose unshared feature lies within
    #         (mzx, mzy, rtx, rty) tolerances of the benchmark's conflict.
    method: str = "score"
    delta: Union[float, Sequence[float]] = 0.1
    # True: a pair is removed on rank only when both rank limits fail.
    balanced: bool = True
    # Drop REMOVE rows from the output.
    remove: bool = False
    brackets: Tuple[str, ...] = DEFAULT_BRACKETS

    def validate(self) -> None:
        if not is_real(self.min_score) or not 0 <= self.min_score <= 1:
            raise ConfigurationError(f"min_score must lie in [0, 1]; got {self.min_score!r}")
        for name in ("max_rank_x", "max_rank_y"):
            value = getattr(self, name)
            if not is_real(value) or not np.isfinite(value) or int(value) != value or value < 1:
                raise ConfigurationError(f"{name} must be an integer >= 1; got {value!r}")
        if not is_real(self.max_rt_err) or not self.max_rt_err > 0:
            raise ConfigurationError(f"max_rt_err must be positive; got {self.max_rt_err!r}")
        if self.method not in CONFLICT_METHODS:
            raise ConfigurationError(f"Unsupported conflict method {self.method!r}; expected one of {CONFLICT_METHODS}")
        try:
            delta = np.atleast_1d(np.asarray(self.delta, dtype=float))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"delta must be numeric; got {self.delta!r}") from e
        if self.method == "score":
            if delta.size != 1 or not 0 <= delta[0] <= 1:
                raise ConfigurationError("delta for method 'score' must be a single value in [0, 1]")
        elif delta.size != 4 or np.any(delta < 0) or not np.all(np.isfinite(delta)):
            raise ConfigurationError("delta for method 'mzrt' must be 4 non-negative values (mzx, mzy, rtx, rty)")


def _benchmark(members: np.ndarray, score: np.ndarray, rank_x: np.ndarray, rank_y: np.ndarray) -> int:
    top = members[(rank_x[members] == 1) & (rank_y[members] == 1)]
    pool = top if top.size else members
    return int(pool[np.argmax(score[pool])])


def _collisions(
    keep: np.ndarray,
    keys: np.ndarray,
    shared_axis: str,
    table: pd.DataFrame,
    score: np.ndarray,
    rank_x: np.ndarray,
    rank_y: np.ndarray,
    cfg: LabelConfig,
) -> Tuple[Set[int], List[Tuple[int, int]]]:
    """Removals and conflict edges among KEEP pairs sharing one feature axis."""
    delta = np.atleast_1d(np.asarray(cfg.delta, dtype=float))
    if shared_axis == "x":
        mz_other, rt_other = table["mzy"].to_numpy(dtype=float), table["rty"].to_numpy(dtype=float)
        tol_mz, tol_rt = (delta[1], delta[3]) if delta.size == 4 else (0.0, 0.0)
    else:
        mz_other, rt_other = table["mzx"].to_numpy(dtype=float), table["rtx"].to_numpy(dtype=float)
        tol_mz, tol_rt = (delta[0], delta[2]) if delta.size == 4 else (0.0, 0.0)

    members_by_key: Dict[int, List[int]] = defaultdict(list)
    for pos in keep:
        members_by_key[int(keys[pos])].append(int(pos))

    removed: Set[int] = set()
    edges: List[Tuple[int, int]] = []
    for members in members_by_key.values():
        if len(members) < 2:
            continue
        members = np.asarray(members, dtype=int)
        bench = _benchmark(members, score, rank_x, rank_y)
        for other in members:
            if other == bench:
                continue
            if cfg.method == "score":
                close = abs(score[other] - score[bench]) < delta[0]
            else:
                close = (abs(mz_other[other] - mz_other[bench]) < tol_mz) and (
                    abs(rt_other[other] - rt_other[bench]) < tol_rt
                )
            if close:
                edges.append((bench, int(other)))
            else:
                removed.add(int(other) if score[other] <= score[bench] else bench)
    return removed, edges


def _assign_subgroups(
    conflict: np.ndarray,
    edges: List[Tuple[int, int]],
    keys_x: np.ndarray,
    keys_y: np.ndarray,
) -> Tuple[Dict[int, int], Dict[int, int]]:
    """Connected-component ids for conflicting rows, plus secondary ids.

    Components come from the conflict relations; a conflicting row that
    shares a feature with a conflicting row of another component records
    the lowest such component id as its alternative.
    """
    graph = nx.Graph()
    graph.add_nodes_from(int(p) for p in conflict)
    graph.add_edges_from(edges)

    components = sorted((sorted(c) for c in nx.connected_components(graph)), key=lambda c: c[0])
    subgroup = {node: gid for gid, comp in enumerate(components, start=1) for node in comp}

    by_feature: Dict[Tuple[str, int], List[int]] = defaultdict(list)
    for p in conflict:
        by_feature[("x", int(keys_x[p]))].append(int(p))
        by_feature[("y", int(keys_y[p]))].append(int(p))

    alt: Dict[int, int] = {}
    for p in conflict:
        p = int(p)
        others = {
            subgroup[q]
            for feat in (("x", int(keys_x[p])), ("y", int(keys_y[p])))
            for q in by_feature[feat]
            if subgroup[q] != subgroup[p]
        }
        if others:
            alt[p] = min(others)
    return subgroup, alt


def label_rows(table: pd.DataFrame, config: Optional[LabelConfig] = None) -> pd.DataFrame:
    """Label every scored candidate pair.

    Args:
        table: output of ``score_pairs`` (needs score, rankX, rankY).
        config: thresholds and conflict detection parameters.

    Returns:
        A copy of ``table`` with ``labels``, ``subgroup`` and ``alt``
        columns; REMOVE rows are dropped when ``config.remove`` is set.
    """
    cfg = config or LabelConfig()
    cfg.validate()
    validate_candidate_table(table)
    missing = [c for c in ("score", "rankX", "rankY") if c not in table.columns]
    if missing:
        raise ConfigurationError(f"Table must be scored before labeling; missing columns: {missing}")

    out = table.copy()
    n = len(out)
    score = pd.to_numeric(out["score"], errors="coerce").to_numpy(dtype=float, na_value=np.nan)
    rank_x = pd.to_numeric(out["rankX"], errors="coerce").to_numpy(dtype=float, na_value=np.nan)
    rank_y = pd.to_numeric(out["rankY"], errors="coerce").to_numpy(dtype=float, na_value=np.nan)
    if "rtProj" in out.columns:
        rt_err = np.abs(out["rty"].to_numpy(dtype=float) - pd.to_numeric(out["rtProj"], errors="coerce").to_numpy(dtype=float))
    else:
        rt_err = np.zeros(n)

    identity = compare_identities(out["idx"], out["idy"], cfg.brackets)

    with np.errstate(invalid="ignore"):
        fail_x = ~(rank_x <= cfg.max_rank_x)
        fail_y = ~(rank_y <= cfg.max_rank_y)
        rank_fail = (fail_x & fail_y) if cfg.balanced else (fail_x | fail_y)
        fail = ~np.isfinite(score) | (score < cfg.min_score) | rank_fail | (rt_err > cfg.max_rt_err)

    labels = np.where(identity, LABEL_IDENTITY, np.where(fail, LABEL_REMOVE, LABEL_KEEP)).astype(object)

    keys_x, keys_y = feature_keys(out)
    keep = np.nonzero(labels == LABEL_KEEP)[0]
    removed_x, edges_x = _collisions(keep, keys_x, "x", out, score, rank_x, rank_y, cfg)
    removed_y, edges_y = _collisions(keep, keys_y, "y", out, score, rank_x, rank_y, cfg)
    removed = removed_x | removed_y
    edges = [(a, b) for a, b in edges_x + edges_y if a not in removed and b not in removed]

    if removed:
        labels[sorted(removed)] = LABEL_REMOVE
    conflict = np.array(sorted({p for edge in edges for p in edge}), dtype=int)
    labels[conflict] = LABEL_CONFLICT

    subgroup, alt = _assign_subgroups(conflict, edges, keys_x, keys_y)
    out["labels"] = labels
    out["subgroup"] = pd.array([subgroup.get(i) for i in range(n)], dtype="Int64")
    out["alt"] = pd.array([alt.get(i) for i in range(n)], dtype="Int64")

    counts = pd.Series(labels).value_counts()
    logger.info(
        "Labels: %s",
        ", ".join(f"{lab}={int(counts.get(lab, 0))}" for lab in (LABEL_IDENTITY, LABEL_KEEP, LABEL_REMOVE, LABEL_CONFLICT)),
    )

    if cfg.remove:
        out = out.loc[out["labels"] != LABEL_REMOVE]
    return out
