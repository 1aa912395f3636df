"""Retention time model: maps rtx onto rty using the selected anchors.

The fit set is the anchor list bracketed by two boundary points (the global
minimum and maximum retention times of both datasets). Outlying anchors are
removed over a number of filtering rounds by comparing their residuals with
the mean residual of fits at every candidate complexity value. The
complexity value (basis dimension for ``gam``, span for ``loess``) is then
chosen by k-fold cross-validation and the model is refit on all surviving
points.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.model_selection import KFold

from .anchors import ANCHOR_ABUNDANT, ANCHOR_IDENTITY
from .errors import ConfigurationError, InsufficientDataError, ModelFitError
from .lcms_utils import is_real
from .smoothers import make_smoother

logger = logging.getLogger(__name__)

# Filtering never leaves fewer nonzero-weight points than this.
MIN_FIT_POINTS = 22

FIT_METHODS = ("gam", "loess")


def _is_count(value) -> bool:
    return is_real(value) and np.isfinite(value) and int(value) == value


@dataclass
class FitConfig:
    """Configuration for fitting the retention time model."""

    # "gam": penalized regression spline; "loess": local linear smoother
    method: str = "gam"
    # Candidate basis dimensions (gam) and spans (loess); CV picks one.
    k: Sequence[int] = (10, 12, 14, 16, 18, 20)
    spans: Sequence[float] = (0.2, 0.22, 0.24, 0.26, 0.28, 0.3)
    # Protect identity anchors from being filtered.
    use_id: bool = False
    # Outlier filtering: a point is flagged by a fit when its residual exceeds
    # ratio * mean residual, and zero-weighted when flagged by more than frac
    # of the fits.
    iter_filter: int = 2
    ratio: float = 2.0
    frac: float = 0.5
    # Scalar, one weight per anchor, or a divisor of (anchors + 2) recycled.
    weights: Union[float, Sequence[float]] = 1.0
    n_folds: int = 10
    # Robustness iterations inside each loess fit.
    iter_loess: int = 10
    # gam error family: "scat" (robust, Student-t reweighting) or "gaussian".
    family: str = "scat"
    # P-spline degree and difference penalty order.
    degree: int = 3
    penalty_order: int = 2
    seed: Optional[int] = None
    n_jobs: int = 1

    @property
    def values(self) -> List[float]:
        raw = self.k if self.method == "gam" else self.spans
        raw = [raw] if np.isscalar(raw) else list(raw)
        out: List[float] = []
        for v in raw:
            if v not in out:
                out.append(v)
        return out

    def validate(self) -> None:
        if self.method not in FIT_METHODS:
            raise ConfigurationError(f"Unsupported fit method {self.method!r}; expected one of {FIT_METHODS}")
        values = self.values
        if not values:
            raise ConfigurationError("At least one candidate complexity value is required")
        if self.family not in ("scat", "gaussian"):
            raise ConfigurationError(f"Unsupported gam family {self.family!r}; expected 'scat' or 'gaussian'")
        counts = (("degree", 1), ("penalty_order", 1), ("iter_filter", 0), ("iter_loess", 0), ("n_folds", 2))
        for name, low in counts:
            value = getattr(self, name)
            if not _is_count(value) or value < low:
                raise ConfigurationError(f"{name} must be an integer >= {low}; got {value!r}")
        if not all(is_real(v) and np.isfinite(v) for v in values):
            raise ConfigurationError(f"Candidate complexity values must be finite numbers; got {values!r}")
        if self.method == "gam":
            for v in values:
                if float(v) != int(v) or int(v) < self.degree + 1:
                    raise ConfigurationError(f"k values must be integers >= {self.degree + 1}; got {v!r}")
        else:
            for v in values:
                if not 0 < float(v) <= 1:
                    raise ConfigurationError(f"spans must lie in (0, 1]; got {v!r}")
        if not is_real(self.ratio) or not self.ratio > 1:
            raise ConfigurationError(f"ratio must be greater than 1; got {self.ratio!r}")
        if not is_real(self.frac) or not 0 < self.frac < 1:
            raise ConfigurationError(f"frac must lie in (0, 1); got {self.frac!r}")
        if not _is_count(self.n_jobs) or self.n_jobs == 0:
            raise ConfigurationError(f"n_jobs must be a nonzero integer; got {self.n_jobs!r}")
        try:
            w = np.atleast_1d(np.asarray(self.weights, dtype=float))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"weights must be numeric; got {self.weights!r}") from e
        if w.size == 0 or not np.all(np.isfinite(w)) or np.any(w < 0):
            raise ConfigurationError("weights must be finite and non-negative")


@dataclass
class RTModel:
    """Fitted rtx -> rty mapping."""

    method: str
    value: float
    smoother: object
    points: pd.DataFrame
    anchors: pd.DataFrame
    cv_errors: Dict[float, float] = field(default_factory=dict)

    def predict(self, rtx) -> np.ndarray:
        return self.smoother.predict(np.asarray(rtx, dtype=float))

    def __call__(self, rtx) -> np.ndarray:
        return self.predict(rtx)


def format_fit_points(
    anchors: pd.DataFrame,
    rt_bounds: Sequence[float],
    weights: Union[float, Sequence[float]] = 1.0,
    use_id: bool = False,
) -> pd.DataFrame:
    """Anchors bracketed by the two boundary points, with initial weights.

    Boundary points are labelled as identities so that filtering never
    removes them.
    """
    rtx_min, rty_min, rtx_max, rty_max = (float(v) for v in rt_bounds)
    n = len(anchors)

    if use_id and "labels" in anchors.columns:
        labels = anchors["labels"].astype(object).to_numpy()
    else:
        labels = np.full(n, ANCHOR_ABUNDANT, dtype=object)

    w = np.atleast_1d(np.asarray(weights, dtype=float))
    if w.size == 1:
        w_all = np.full(n + 2, float(w[0]))
    elif w.size == n:
        w_all = np.concatenate([[1.0], w, [1.0]])
    elif (n + 2) % w.size == 0:
        w_all = np.resize(w, n + 2)
    else:
        raise ConfigurationError(
            f"weights must have length 1, {n} (anchors) or a divisor of {n + 2}; got {w.size}"
        )
    if not (w_all[0] > 0 and w_all[-1] > 0):
        raise ConfigurationError("weights of the two boundary points must be positive")

    return pd.DataFrame(
        {
            "rtx": np.concatenate([[rtx_min], anchors["rtx"].to_numpy(dtype=float), [rtx_max]]),
            "rty": np.concatenate([[rty_min], anchors["rty"].to_numpy(dtype=float), [rty_max]]),
            "labels": np.concatenate([[ANCHOR_IDENTITY], labels, [ANCHOR_IDENTITY]]),
            "weights": w_all,
            "boundary": np.r_[True, np.zeros(n, dtype=bool), True],
        }
    )


def _fit_residuals(value, x: np.ndarray, y: np.ndarray, w: np.ndarray, cfg: FitConfig) -> Optional[np.ndarray]:
    try:
        model = _make(cfg, value).fit(x, y, w)
        return np.abs(model.predict(x) - y)
    except (ModelFitError, np.linalg.LinAlgError, FloatingPointError) as e:
        logger.warning("Fit failed for %s=%s: %s", _value_name(cfg), value, e)
        return None


def _fold_error(value, x_train, y_train, w_train, x_test, y_test, cfg: FitConfig) -> Optional[float]:
    try:
        model = _make(cfg, value).fit(x_train, y_train, w_train)
        preds = model.predict(x_test)
    except (ModelFitError, np.linalg.LinAlgError, FloatingPointError) as e:
        logger.warning("Cross-validation fit failed for %s=%s: %s", _value_name(cfg), value, e)
        return None
    mse = float(np.mean((preds - y_test) ** 2))
    return mse if np.isfinite(mse) else None


def _make(cfg: FitConfig, value):
    return make_smoother(
        cfg.method,
        value,
        degree=cfg.degree,
        penalty_order=cfg.penalty_order,
        family=cfg.family,
        iter_loess=cfg.iter_loess,
    )


def _value_name(cfg: FitConfig) -> str:
    return "k" if cfg.method == "gam" else "span"


def filter_anchors(points: pd.DataFrame, config: FitConfig) -> pd.DataFrame:
    """Zero the weight of points that are outliers under most candidate fits.

    Each round works on a snapshot of the weights and is committed only when
    at least ``MIN_FIT_POINTS`` nonzero-weight points remain and at least one
    point was removed; otherwise iteration stops.
    """
    cfg = config
    values = cfg.values
    x = points["rtx"].to_numpy(dtype=float)
    y = points["rty"].to_numpy(dtype=float)
    protected = points["labels"].eq(ANCHOR_IDENTITY).to_numpy()
    weights = points["weights"].to_numpy(dtype=float).copy()

    for iteration in range(int(cfg.iter_filter)):
        logger.info("Performing filtering iteration: %d", iteration + 1)
        snapshot = weights.copy()
        residuals = Parallel(n_jobs=cfg.n_jobs)(delayed(_fit_residuals)(v, x, y, snapshot, cfg) for v in values)
        residuals = [r for r in residuals if r is not None]
        if not residuals:
            raise ModelFitError("All candidate values failed during anchor filtering")

        R = np.column_stack(residuals)
        include = snapshot > 0
        thresholds = cfg.ratio * R[include].mean(axis=0)
        flagged = R > thresholds[np.newaxis, :]
        remove = (flagged.mean(axis=1) > cfg.frac) & ~protected

        proposed = np.where(remove, 0.0, snapshot)
        n_before = int(np.count_nonzero(snapshot > 0))
        n_after = int(np.count_nonzero(proposed > 0))
        if n_after < MIN_FIT_POINTS or n_after == n_before:
            logger.info("Stopping filtering: %d of %d points would remain", n_after, n_before)
            break
        logger.info("Removed %d points; %d remain", n_before - n_after, n_after)
        weights = proposed

    out = points.copy()
    out["weights"] = weights
    return out


def cross_validate(points: pd.DataFrame, config: FitConfig) -> Tuple[float, Dict[float, float]]:
    """Pick the complexity value with the lowest k-fold mean squared error.

    Folds are drawn from the nonzero-weight anchors only; the boundary
    points belong to every training set. A value whose fit fails in any
    fold is excluded.
    """
    cfg = config
    values = cfg.values
    logger.info("Performing %d-fold cross validation", int(cfg.n_folds))

    pts = points.loc[points["weights"] > 0]
    x = pts["rtx"].to_numpy(dtype=float)
    y = pts["rty"].to_numpy(dtype=float)
    w = pts["weights"].to_numpy(dtype=float)
    inner = np.nonzero(~pts["boundary"].to_numpy(dtype=bool))[0]

    n_splits = min(int(cfg.n_folds), inner.size)
    if n_splits < 2:
        raise InsufficientDataError("Too few anchors for cross validation")
    kf = KFold(n_splits=n_splits, shuffle=True, random_state=cfg.seed)

    tasks = []
    for _, test_pos in kf.split(inner):
        test = inner[test_pos]
        train = np.setdiff1d(np.arange(len(pts)), test)
        for v in values:
            tasks.append((v, train, test))

    results = Parallel(n_jobs=cfg.n_jobs)(
        delayed(_fold_error)(v, x[train], y[train], w[train], x[test], y[test], cfg) for v, train, test in tasks
    )

    per_value: Dict[float, List[Optional[float]]] = {v: [] for v in values}
    for (v, _, _), err in zip(tasks, results):
        per_value[v].append(err)

    cv_errors: Dict[float, float] = {}
    for v, errs in per_value.items():
        cv_errors[v] = float("nan") if any(e is None for e in errs) else float(np.mean(errs))

    finite = {v: e for v, e in cv_errors.items() if np.isfinite(e)}
    if not finite:
        raise ModelFitError("All candidate values failed during cross validation")
    best = min(finite, key=lambda v: (finite[v], values.index(v)))
    return best, cv_errors


def fit_rt_model(
    anchors: pd.DataFrame,
    rt_bounds: Sequence[float],
    config: Optional[FitConfig] = None,
) -> RTModel:
    """Fit the rtx -> rty mapping from anchors.

    Args:
        anchors: output of ``select_anchors`` (needs rtx, rty; labels used
            when ``use_id`` is set).
        rt_bounds: (min rtx, min rty, max rtx, max rty) of the full
            candidate table; these become the two boundary points.
        config: fitting parameters.

    Returns:
        RTModel carrying the final smoother, the selected complexity value,
        the fit points with final weights, and the anchors with ``rtProj``.
    """
    cfg = config or FitConfig()
    cfg.validate()

    points = format_fit_points(anchors, rt_bounds, cfg.weights, cfg.use_id)
    n_points = int(np.count_nonzero(points["weights"] > 0))
    if n_points < MIN_FIT_POINTS:
        raise InsufficientDataError(
            f"{n_points} fit points (anchors + 2 boundary points) available; "
            f"at least {MIN_FIT_POINTS} are required"
        )

    points = filter_anchors(points, cfg)

    values = cfg.values
    if len(values) > 1:
        best, cv_errors = cross_validate(points, cfg)
    else:
        best, cv_errors = values[0], {}

    logger.info("Fitting model with %s = %s", _value_name(cfg), best)
    fit_pts = points.loc[points["weights"] > 0]
    try:
        smoother = _make(cfg, best).fit(
            fit_pts["rtx"].to_numpy(dtype=float),
            fit_pts["rty"].to_numpy(dtype=float),
            fit_pts["weights"].to_numpy(dtype=float),
        )
    except np.linalg.LinAlgError as e:
        raise ModelFitError(f"Final fit failed for {_value_name(cfg)}={best}: {e}") from e

    fitted_anchors = anchors.copy()
    fitted_anchors["rtProj"] = smoother.predict(fitted_anchors["rtx"].to_numpy(dtype=float))
    fitted_anchors["weights"] = points["weights"].to_numpy()[1:-1]

    return RTModel(
        method=cfg.method,
        value=best,
        smoother=smoother,
        points=points,
        anchors=fitted_anchors,
        cv_errors=cv_errors,
    )
