"""Alignment pipeline: anchors, RT model, scoring and labeling in one call."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .anchors import ANCHOR_IDENTITY, AnchorConfig, select_anchors
from .labeling import LABEL_CONFLICT, LABEL_IDENTITY, LABEL_KEEP, LABEL_REMOVE, LabelConfig, label_rows
from .lcms_utils import rt_extremes, valid_rows, validate_candidate_table
from .rt_model import FitConfig, RTModel, fit_rt_model
from .scoring import ScoreConfig, score_pairs

logger = logging.getLogger(__name__)


@dataclass
class AlignmentConfig:
    """Parameters for every alignment stage."""

    anchors: AnchorConfig = field(default_factory=AnchorConfig)
    fit: FitConfig = field(default_factory=FitConfig)
    score: ScoreConfig = field(default_factory=ScoreConfig)
    label: LabelConfig = field(default_factory=LabelConfig)

    def validate(self) -> None:
        self.anchors.validate()
        self.fit.validate()
        self.score.validate()
        self.label.validate()


@dataclass
class AlignmentResult:
    """Container for alignment results."""

    table: pd.DataFrame
    anchors: pd.DataFrame
    model: RTModel
    stats: Dict[str, object]


def align(table: pd.DataFrame, config: Optional[AlignmentConfig] = None) -> AlignmentResult:
    """Run anchor selection, RT model fitting, scoring and labeling.

    All configurations are validated before any computation starts.
    """
    cfg = config or AlignmentConfig()
    cfg.validate()
    validate_candidate_table(table)

    start_time = time.time()
    bounds = rt_extremes(table)

    anchors = select_anchors(table, cfg.anchors, rt_bounds=bounds)
    model = fit_rt_model(anchors, bounds, cfg.fit)
    scored = score_pairs(table, model, cfg.score)
    labeled = label_rows(scored, cfg.label)

    stats = _summarize(table, anchors, model, labeled)
    stats["execution_time"] = time.time() - start_time
    return AlignmentResult(table=labeled, anchors=model.anchors, model=model, stats=stats)


def _summarize(table: pd.DataFrame, anchors: pd.DataFrame, model: RTModel, labeled: pd.DataFrame) -> Dict[str, object]:
    """Calculate alignment summary metrics."""
    fitted = model.anchors
    used = fitted["weights"] > 0 if "weights" in fitted.columns else pd.Series(True, index=fitted.index)
    resid = (fitted["rty"] - fitted["rtProj"]).abs()

    counts = labeled["labels"].value_counts()
    return {
        "num_pairs": int(valid_rows(table).sum()),
        "num_anchors": int(len(anchors)),
        "num_identity_anchors": int((anchors["labels"] == ANCHOR_IDENTITY).sum()) if len(anchors) else 0,
        "num_anchors_used": int(used.sum()),
        "fit_method": model.method,
        "fit_value": model.value,
        "cv_errors": dict(model.cv_errors),
        "mean_anchor_rt_error": float(resid[used].mean()) if used.any() else np.nan,
        "num_identity": int(counts.get(LABEL_IDENTITY, 0)),
        "num_keep": int(counts.get(LABEL_KEEP, 0)),
        "num_remove": int(counts.get(LABEL_REMOVE, 0)),
        "num_conflict": int(counts.get(LABEL_CONFLICT, 0)),
    }
