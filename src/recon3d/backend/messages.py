"""Message types exchanged between the tracking thread and background workers.

Workers receive a request built from a ``MapSnapshot`` and return a
correction stamped with the snapshot version. The map applies a correction
only if no newer correction of the same kind has been applied since.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from ..geometry import SE3
    from .map_manager import MapSnapshot


@dataclass
class BARequest:
    """Tracking -> worker: optimize the keyframes of a snapshot.

    ``snapshot.local_keyframe_ids`` are free; every other keyframe in the
    snapshot is held fixed.
    """

    snapshot: MapSnapshot
    camera_matrix: np.ndarray
    is_global: bool = False
    max_iterations: int | None = None


@dataclass
class BACorrection:
    """Worker -> tracking: pose and point corrections from bundle adjustment."""

    base_version: int
    # keyframe_id -> T_world_camera
    poses: dict[int, SE3] = field(default_factory=dict)
    # mappoint_id -> new position
    points: dict[int, np.ndarray] = field(default_factory=dict)
    # Points whose mean reprojection error stayed above threshold
    high_error_point_ids: set[int] = field(default_factory=set)
    initial_cost: float = 0.0
    final_cost: float = 0.0
    degraded: bool = False
    is_global: bool = False


@dataclass
class LoopRequest:
    """Tracking -> worker: look for a loop closing at a new keyframe."""

    snapshot: MapSnapshot
    keyframe_id: int


@dataclass
class LoopCorrection:
    """Worker -> tracking: verified loop and the corrected trajectory.

    Attributes:
        base_version: Map version of the snapshot the loop was found in
        query_kf_id: Keyframe that closed the loop
        match_kf_id: Earlier keyframe it was matched to
        relative_pose: Verified T_match_query
        poses: Corrected T_world_camera by keyframe id
        old_poses: Poses before correction, for keyframes in poses
        points: Corrected positions by map point id
        fused_points: (keep_id, remove_id) duplicate pairs across the loop
        degraded: The correction's optimization did not converge
    """

    base_version: int
    query_kf_id: int
    match_kf_id: int
    relative_pose: SE3
    poses: dict[int, SE3] = field(default_factory=dict)
    old_poses: dict[int, SE3] = field(default_factory=dict)
    points: dict[int, np.ndarray] = field(default_factory=dict)
    fused_points: list[tuple[int, int]] = field(default_factory=list)
    degraded: bool = False


@dataclass
class TaskResult:
    """Outcome of one background task.

    Exactly one of value, error or cancelled describes how it ended.
    """

    kind: str
    request_id: int
    value: Any = None
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True if the task produced a value."""
        return self.error is None and not self.cancelled


@dataclass
class ShutdownMessage:
    """Signal to stop a worker thread gracefully."""

    pass
