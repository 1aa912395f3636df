import numpy as np
import pandas as pd
import pytest


def rt_map(rtx):
    return 0.8 * np.asarray(rtx, dtype=float) + 0.5 + 0.3 * np.sin(np.asarray(rtx, dtype=float) / 3.0)


def make_candidates(n: int = 80, *, seed: int = 0, decoys: bool = True, background: bool = True) -> pd.DataFrame:
    """Synthetic grouped candidate table with one true pair per group.

    Every third group also carries a decoy Y feature with a distant
    retention time. An optional group-0 row stands in for an unmatched
    background feature.
    """
    rng = np.random.default_rng(seed)
    rtx = np.sort(rng.uniform(0.5, 20.0, n))
    mzx = rng.uniform(100.0, 900.0, n)
    qx = rng.uniform(0.05, 1.0, n)
    rty = rt_map(rtx) + rng.normal(0.0, 0.01, n)
    mzy = mzx + rng.normal(0.0, 0.0005, n)
    qy = np.clip(qx + rng.normal(0.0, 0.03, n), 0.0, 1.0)

    rows = []
    for i in range(n):
        g = i + 1
        rows.append(
            {
                "idx": f"x{i}",
                "idy": f"y{i}",
                "mzx": mzx[i],
                "mzy": mzy[i],
                "rtx": rtx[i],
                "rty": rty[i],
                "Qx": qx[i],
                "Qy": qy[i],
                "adductX": "",
                "adductY": "",
                "group": g,
            }
        )
        if decoys and i % 3 == 0:
            j = (i + n // 2) % n
            rows.append(
                {
                    "idx": f"x{i}",
                    "idy": f"d{i}",
                    "mzx": mzx[i],
                    "mzy": mzx[i] + 0.001,
                    "rtx": rtx[i],
                    "rty": rty[j],
                    "Qx": qx[i],
                    "Qy": qy[j],
                    "adductX": "",
                    "adductY": "",
                    "group": g,
                }
            )
    if background:
        rows.append(
            {
                "idx": "bg",
                "idy": "",
                "mzx": 150.0,
                "mzy": 150.0,
                "rtx": 10.0,
                "rty": 9.0,
                "Qx": 0.99,
                "Qy": 0.99,
                "adductX": "",
                "adductY": "",
                "group": 0,
            }
        )
    return pd.DataFrame(rows)


@pytest.fixture
def candidates() -> pd.DataFrame:
    return make_candidates()
