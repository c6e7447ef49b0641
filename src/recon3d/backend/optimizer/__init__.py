"""Bundle adjustment optimizers."""

from .scipy_ba import BAResult, BundleAdjuster

__all__ = ["BAResult", "BundleAdjuster"]
