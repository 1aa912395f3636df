from __future__ import annotations

import numbers
from typing import Iterable, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError, InsufficientDataError


# Structural columns supplied by the grouping step; never modified here.
FEATURE_COLUMNS = [
    "idx",
    "idy",
    "mzx",
    "mzy",
    "rtx",
    "rty",
    "Qx",
    "Qy",
    "adductX",
    "adductY",
    "group",
]

# Derived columns appended/overwritten by the alignment stages.
DERIVED_COLUMNS = ["rtProj", "score", "rankX", "rankY", "labels", "subgroup", "alt"]

REQUIRED_COLUMNS = ["idx", "idy", "mzx", "mzy", "rtx", "rty", "Qx", "Qy", "group"]

DEFAULT_BRACKETS: Tuple[str, ...] = ("(", "[", "{")
_CLOSING = {"(": ")", "[": "]", "{": "}", "<": ">"}


def is_real(value) -> bool:
    """True for real numbers (bools excluded)."""
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def ppm_diff(mz1, mz2):
    """Calculate PPM difference between two m/z values (relative to mz1)."""
    mz1 = np.asarray(mz1, dtype=float)
    mz2 = np.asarray(mz2, dtype=float)
    return np.abs(mz1 - mz2) / mz1 * 1e6


def linear_rt_quantile(rt, rt_min: float, rt_max: float) -> np.ndarray:
    """Map retention times onto [0,1] linearly between the dataset extremes."""
    rt = np.asarray(rt, dtype=float)
    span = float(rt_max) - float(rt_min)
    if span <= 0:
        return np.zeros_like(rt)
    return (rt - float(rt_min)) / span


def rt_extremes(table: pd.DataFrame) -> Tuple[float, float, float, float]:
    """(min rtx, min rty, max rtx, max rty) over the full candidate table."""
    if table.empty:
        raise InsufficientDataError("Candidate table is empty; no retention time range available.")
    rtx = table["rtx"].to_numpy(dtype=float)
    rty = table["rty"].to_numpy(dtype=float)
    return float(np.min(rtx)), float(np.min(rty)), float(np.max(rtx)), float(np.max(rty))


def _clean_ids(ids: Iterable) -> np.ndarray:
    out = []
    for v in ids:
        if v is None or (isinstance(v, float) and np.isnan(v)) or v is pd.NA:
            out.append("")
        else:
            out.append(str(v).strip())
    return np.asarray(out, dtype=object)


def is_bracketed(ids: Iterable, brackets: Sequence[str] = DEFAULT_BRACKETS) -> np.ndarray:
    """True where a string is wrapped in one of ``brackets``, e.g. ``(caffeine)``.

    Wrapped strings mark tentative annotations; ``[M+H]+`` is not wrapped.
    """
    ids = _clean_ids(ids)
    pairs = [(str(b), _CLOSING.get(str(b), str(b))) for b in brackets if str(b)]
    return np.array(
        [any(len(s) >= 2 and s.startswith(o) and s.endswith(c) for o, c in pairs) for s in ids],
        dtype=bool,
    )


def compare_identities(
    idx: Iterable,
    idy: Iterable,
    brackets: Sequence[str] = DEFAULT_BRACKETS,
) -> np.ndarray:
    """Shared identity mask.

    A pair shares an identity when both strings are non-empty, neither is
    bracket-decorated, and they are equal ignoring case.
    """
    a = _clean_ids(idx)
    b = _clean_ids(idy)
    if len(a) != len(b):
        raise ValueError("idx and idy must have the same length")
    nonempty = np.array([(s != "") and (t != "") for s, t in zip(a, b)], dtype=bool)
    plain = ~is_bracketed(a, brackets) & ~is_bracketed(b, brackets)
    same = np.array([s.lower() == t.lower() for s, t in zip(a, b)], dtype=bool)
    return nonempty & plain & same


def feature_keys(table: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
    """Integer codes identifying the X and Y feature behind every row.

    Two rows refer to the same X feature when they agree on group, idx,
    mzx and rtx (Y analogous); identity strings alone are not unique.
    """
    if table.empty:
        return np.array([], dtype=int), np.array([], dtype=int)
    kx = pd.MultiIndex.from_arrays(
        [table["group"], _clean_ids(table["idx"]), table["mzx"].round(8), table["rtx"].round(8)]
    )
    ky = pd.MultiIndex.from_arrays(
        [table["group"], _clean_ids(table["idy"]), table["mzy"].round(8), table["rty"].round(8)]
    )
    codes_x, _ = pd.factorize(kx)
    codes_y, _ = pd.factorize(ky)
    return np.asarray(codes_x, dtype=int), np.asarray(codes_y, dtype=int)


def validate_candidate_table(table: pd.DataFrame, *, require: Sequence[str] = REQUIRED_COLUMNS) -> None:
    """Validate the candidate table handed over by the grouping step."""
    if not isinstance(table, pd.DataFrame):
        raise ConfigurationError("Candidate table must be a pandas DataFrame.")
    missing = [col for col in require if col not in table.columns]
    if missing:
        raise ConfigurationError(f"Candidate table missing columns: {missing}")

    numeric = [c for c in ("mzx", "mzy", "rtx", "rty", "Qx", "Qy", "group") if c in require]
    for col in numeric:
        values = pd.to_numeric(table[col], errors="coerce")
        if values.isna().any():
            raise ConfigurationError(f"Candidate table contains missing or non-numeric values in '{col}'")


def valid_rows(table: pd.DataFrame) -> pd.Series:
    """Rows that take part in alignment (group > 0)."""
    return pd.to_numeric(table["group"], errors="coerce").fillna(0) > 0
