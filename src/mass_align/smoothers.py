"""Weighted 1-D smoothers used to map retention times between datasets.

Two families are available:

- ``PenalizedSpline``: cubic B-spline basis of fixed dimension with a
  difference penalty on adjacent coefficients (P-spline). The penalty
  strength is chosen by weighted generalized cross-validation. With the
  ``scat`` family the fit is repeated with Student-t (scaled t) weights so
  that gross outliers lose their influence.
- ``LoessSmoother``: local linear regression with tricube neighbourhood
  weights over a span fraction of the points, with bisquare robustness
  iterations (symmetric LOESS).

Both accept per-point prior weights; zero-weight points take no part in
the fit but can still be predicted.
"""
from __future__ import annotations

import math
from typing import Optional

import numpy as np
import scipy.linalg
from sklearn.preprocessing import SplineTransformer

from .errors import ModelFitError


def _prepare(x, y, weights) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=float).ravel()
    y = np.asarray(y, dtype=float).ravel()
    if weights is None:
        w = np.ones_like(x)
    else:
        w = np.broadcast_to(np.asarray(weights, dtype=float), x.shape).copy()
    if x.shape != y.shape:
        raise ValueError("x and y must have the same length")
    mask = np.isfinite(x) & np.isfinite(y) & np.isfinite(w) & (w > 0)
    x, y, w = x[mask], y[mask], w[mask]
    if np.unique(x).size < 2:
        raise ModelFitError("at least two distinct x values with positive weight are required")
    return x, y, w / np.mean(w)


class PenalizedSpline:
    """Penalized regression spline with ``n_basis`` B-spline basis functions.

    ``family="scat"`` refits up to ``iterations`` times with Student-t
    weights ``(df + 1) / (df + (r / sigma)**2)`` on top of the prior weights;
    ``family="gaussian"`` fits once.
    """

    def __init__(
        self,
        n_basis: int = 10,
        degree: int = 3,
        penalty_order: int = 2,
        family: str = "scat",
        t_df: float = 3.0,
        iterations: int = 10,
        lambdas: Optional[np.ndarray] = None,
    ):
        if n_basis - degree + 1 < 2:
            raise ValueError(f"n_basis must be at least degree + 1 = {degree + 1}")
        if family not in ("scat", "gaussian"):
            raise ValueError(f"Unsupported spline family: {family!r}")
        self.n_basis = int(n_basis)
        self.degree = int(degree)
        self.penalty_order = int(penalty_order)
        self.family = family
        self.t_df = float(t_df)
        self.iterations = int(iterations) if family == "scat" else 0
        self.lambdas = np.logspace(-8, 2, 31) if lambdas is None else np.asarray(lambdas, dtype=float)
        self.lam_: Optional[float] = None
        self.edf_: Optional[float] = None

    def fit(self, x, y, weights=None) -> "PenalizedSpline":
        x, y, w = _prepare(x, y, weights)

        self._basis = SplineTransformer(
            n_knots=self.n_basis - self.degree + 1,
            degree=self.degree,
            knots="uniform",
            extrapolation="linear",
            include_bias=True,
        )
        B = self._basis.fit_transform(x[:, np.newaxis])
        D = np.diff(np.eye(B.shape[1]), n=self.penalty_order, axis=0)
        P = D.T @ D
        # Penalty grid relative to the data term so lambdas are unit-free.
        scale = float(np.trace((B.T * w) @ B)) / max(float(np.trace(P)), 1e-12)

        robust = np.ones_like(w)
        for it in range(self.iterations + 1):
            self.lam_, self.coef_, self.edf_ = self._solve(B, P, y, w * robust, scale)
            if it == self.iterations:
                break
            resid = y - B @ self.coef_
            sigma = 1.4826 * float(np.median(np.abs(resid)))
            if sigma <= 1e-12 * max(1.0, float(np.max(np.abs(y)))):
                break
            robust = (self.t_df + 1.0) / (self.t_df + (resid / sigma) ** 2)
        return self

    def _solve(self, B: np.ndarray, P: np.ndarray, y: np.ndarray, w: np.ndarray, scale: float):
        """Penalized weighted least squares with the GCV-optimal lambda."""
        BtW = B.T * w
        BtWB = BtW @ B
        BtWy = BtW @ y
        n_eff = float(w.size)

        best = None
        for lam in scale * self.lambdas:
            A = BtWB + lam * P
            try:
                coef = scipy.linalg.solve(A, BtWy, assume_a="pos")
                edf = float(np.trace(scipy.linalg.solve(A, BtWB, assume_a="pos")))
            except np.linalg.LinAlgError:
                continue
            resid = y - B @ coef
            rss = float(np.sum(w * resid**2))
            denom = n_eff - edf
            if denom <= 0 or not np.all(np.isfinite(coef)):
                continue
            gcv = n_eff * rss / denom**2
            if np.isfinite(gcv) and (best is None or gcv < best[0]):
                best = (gcv, float(lam), coef, edf)

        if best is None:
            raise ModelFitError(f"penalized spline with {self.n_basis} basis functions could not be fitted")
        return best[1], best[2], best[3]

    def predict(self, x_new) -> np.ndarray:
        x_new = np.atleast_1d(np.asarray(x_new, dtype=float))
        return self._basis.transform(x_new.reshape(-1, 1)) @ self.coef_


class LoessSmoother:
    """Local linear regression over the nearest ``span`` fraction of points."""

    def __init__(self, span: float = 0.25, iterations: int = 10, chunk_size: int = 2048):
        if not 0 < span <= 1:
            raise ValueError("span must lie in (0, 1]")
        self.span = float(span)
        self.iterations = int(iterations)
        self.chunk_size = int(chunk_size)

    def fit(self, x, y, weights=None) -> "LoessSmoother":
        x, y, w = _prepare(x, y, weights)
        self._x, self._y, self._w = x, y, w
        self._robust = np.ones_like(x)

        for _ in range(self.iterations):
            resid = y - self._local_fit(x)
            s = float(np.median(np.abs(resid)))
            if s <= 1e-12 * max(1.0, float(np.max(np.abs(y)))):
                break
            u = resid / (6.0 * s)
            self._robust = np.where(np.abs(u) < 1.0, (1.0 - u**2) ** 2, 0.0)
        return self

    def predict(self, x_new) -> np.ndarray:
        x_new = np.atleast_1d(np.asarray(x_new, dtype=float))
        out = np.empty_like(x_new)
        for start in range(0, x_new.size, self.chunk_size):
            stop = start + self.chunk_size
            out[start:stop] = self._local_fit(x_new[start:stop])
        return out

    def _local_fit(self, xq: np.ndarray) -> np.ndarray:
        x, y = self._x, self._y
        n = x.size
        q = min(n, max(3, int(math.ceil(self.span * n))))

        dx = x[np.newaxis, :] - xq[:, np.newaxis]
        d = np.abs(dx)
        h = np.partition(d, q - 1, axis=1)[:, q - 1]
        h = np.where(h > 0, h * (1.0 + 1e-10), 1e-12)
        tricube = np.clip(1.0 - (d / h[:, np.newaxis]) ** 3, 0.0, 1.0) ** 3
        W = tricube * (self._w * self._robust)[np.newaxis, :]

        s0 = W.sum(axis=1)
        s1 = (W * dx).sum(axis=1)
        s2 = (W * dx * dx).sum(axis=1)
        t0 = (W * y).sum(axis=1)
        t1 = (W * dx * y).sum(axis=1)
        det = s0 * s2 - s1 * s1

        with np.errstate(divide="ignore", invalid="ignore"):
            linear = (s2 * t0 - s1 * t1) / det
            flat = t0 / s0
        fit = np.where(np.abs(det) > 1e-12 * np.maximum(s0 * s2, 1e-300), linear, flat)
        if not np.all(np.isfinite(fit)):
            raise ModelFitError(f"loess with span {self.span} produced non-finite values")
        return fit


def make_smoother(
    method: str,
    value: float,
    *,
    degree: int = 3,
    penalty_order: int = 2,
    family: str = "scat",
    iter_loess: int = 10,
):
    """Construct an unfitted smoother for one complexity value."""
    if method == "gam":
        return PenalizedSpline(n_basis=int(value), degree=degree, penalty_order=penalty_order, family=family)
    if method == "loess":
        return LoessSmoother(span=float(value), iterations=iter_loess)
    raise ValueError(f"Unsupported smoothing method: {method!r}")
