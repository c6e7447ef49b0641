"""Optional Rerun viewer (install the ``viz`` extra)."""

from .rerun_visualizer import RerunVisualizer

__all__ = ["RerunVisualizer"]
