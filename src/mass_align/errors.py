"""Exceptions raised by the alignment stages."""


class ConfigurationError(ValueError):
    """Malformed or out-of-range parameters, rejected before computation."""


class InsufficientDataError(RuntimeError):
    """Too few anchors or fit points remain to build a retention time model."""


class ModelFitError(RuntimeError):
    """A smoother failed to produce a finite fit."""
