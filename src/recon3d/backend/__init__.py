"""Map management and bundle adjustment."""

from .covisibility import CovisibilityGraph
from .keyframe import KeyFrame, KeyframeSelector
from .local_mapping import LocalMapping, LocalMappingResult
from .map_manager import InsertResult, LocalMap, MapManager, MapSnapshot, estimate_normals
from .map_point import MapPoint
from .messages import (
    BACorrection,
    BARequest,
    LoopCorrection,
    LoopRequest,
    ShutdownMessage,
    TaskResult,
)
from .optimizer import BAResult, BundleAdjuster
from .workers import BackgroundWorker

__all__ = [
    # Map
    "MapManager",
    "MapSnapshot",
    "InsertResult",
    "LocalMap",
    "MapPoint",
    "estimate_normals",
    # Keyframe
    "KeyFrame",
    "KeyframeSelector",
    # Covisibility
    "CovisibilityGraph",
    # Bundle Adjustment
    "BundleAdjuster",
    "BAResult",
    # Local Mapping
    "LocalMapping",
    "LocalMappingResult",
    # Workers
    "BackgroundWorker",
    # Messages
    "BARequest",
    "BACorrection",
    "LoopRequest",
    "LoopCorrection",
    "TaskResult",
    "ShutdownMessage",
]
