"""
mass_align: retention-time-model-driven alignment of paired LC-MS feature tables.
"""

from .anchors import AnchorConfig, select_anchors
from .errors import ConfigurationError, InsufficientDataError, ModelFitError
from .labeling import LabelConfig, label_rows
from .pipeline import AlignmentConfig, AlignmentResult, align
from .rt_model import FitConfig, RTModel, fit_rt_model
from .scoring import ScoreConfig, evaluate_params, score_pairs

__version__ = "0.1.0"

__all__ = [
    "AnchorConfig",
    "select_anchors",
    "FitConfig",
    "RTModel",
    "fit_rt_model",
    "ScoreConfig",
    "score_pairs",
    "evaluate_params",
    "LabelConfig",
    "label_rows",
    "AlignmentConfig",
    "AlignmentResult",
    "align",
    "ConfigurationError",
    "InsufficientDataError",
    "ModelFitError",
    "__version__",
]
