"""Pose graph optimization for global drift correction.

When a loop closure is detected, we have a constraint between two
non-adjacent keyframes. Pose graph optimization distributes the
accumulated drift across the entire trajectory by minimizing the
error in all relative pose constraints.

Unlike bundle adjustment which optimizes poses AND 3D points,
pose graph optimization only optimizes poses (faster, global).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..geometry import SE3

logger = logging.getLogger(__name__)


@dataclass
class PoseEdge:
    """An edge in the pose graph.

    Attributes:
        from_id: Source keyframe ID
        to_id: Target keyframe ID
        measurement: Measured relative transform T_from_to
        information: 6x6 information matrix (inverse covariance)
        is_loop: Whether this is a loop closure edge
    """

    from_id: int
    to_id: int
    measurement: SE3
    information: np.ndarray = field(default_factory=lambda: np.eye(6, dtype=np.float64))
    is_loop: bool = False


@dataclass
class PoseGraphResult:
    """Optimized poses and how the optimization went."""

    poses: dict[int, SE3]
    initial_cost: float = 0.0
    final_cost: float = 0.0
    converged: bool = False
    degraded: bool = False


def relative_error(T_from: SE3, T_to: SE3, measurement: SE3) -> np.ndarray:
    """6D error [rotation vector, translation] of (T_from^-1 T_to)^-1 measurement."""
    T_err = T_from.inverse().compose(T_to).inverse().compose(measurement)
    rvec, _ = cv2.Rodrigues(T_err.rotation)
    return np.concatenate([rvec.flatten(), T_err.translation])


class PoseGraph:
    """Pose graph for global trajectory optimization.

    Stores keyframe poses (T_world_camera) and relative constraints
    (odometry/covisibility and loop edges).
    """

    def __init__(self) -> None:
        """Initialize empty pose graph."""
        self._poses: dict[int, SE3] = {}
        self._odometry_edges: list[PoseEdge] = []
        self._loop_edges: list[PoseEdge] = []

    def add_keyframe(self, keyframe_id: int, pose: SE3) -> None:
        """Add a keyframe to the pose graph."""
        self._poses[keyframe_id] = pose.copy()

    def add_odometry_edge(
        self,
        from_id: int,
        to_id: int,
        relative_pose: SE3,
        information: np.ndarray | None = None,
    ) -> None:
        """Add a sequential or covisibility edge.

        Args:
            from_id: Source keyframe ID
            to_id: Target keyframe ID
            relative_pose: Measured T_from_to
            information: 6x6 information matrix (default: identity)
        """
        if information is None:
            information = np.eye(6, dtype=np.float64)
        self._odometry_edges.append(
            PoseEdge(from_id, to_id, relative_pose, information.copy(), is_loop=False)
        )

    def add_loop_edge(
        self,
        from_id: int,
        to_id: int,
        relative_pose: SE3,
        information: np.ndarray | None = None,
    ) -> None:
        """Add a loop closure edge.

        Args:
            from_id: Match (older) keyframe ID
            to_id: Query keyframe ID
            relative_pose: Verified T_from_to
            information: 6x6 information matrix (default: 10x identity)
        """
        if information is None:
            information = 10.0 * np.eye(6, dtype=np.float64)
        self._loop_edges.append(
            PoseEdge(from_id, to_id, relative_pose, information.copy(), is_loop=True)
        )

    def optimize(
        self,
        fixed_ids: set[int] | None = None,
        max_iterations: int = 50,
    ) -> PoseGraphResult:
        """Optimize all poses in the graph.

        Args:
            fixed_ids: Keyframes held fixed (the lowest id if none given)
            max_iterations: Cap on residual evaluations per free pose

        Returns:
            PoseGraphResult; its poses never have a higher cost than the input
        """
        all_edges = [
            e
            for e in self._odometry_edges + self._loop_edges
            if e.from_id in self._poses and e.to_id in self._poses
        ]
        if len(self._poses) < 2 or not all_edges:
            return PoseGraphResult(poses=self.poses, converged=True)

        pose_ids = sorted(self._poses)
        fixed = set(fixed_ids or ()) & set(pose_ids) or {pose_ids[0]}
        free_ids = [pid for pid in pose_ids if pid not in fixed]
        if not free_ids:
            return PoseGraphResult(poses=self.poses, converged=True)
        slot = {pid: i for i, pid in enumerate(free_ids)}

        x0 = np.concatenate([self._poses[pid].log() for pid in free_ids])
        sqrt_info = [np.sqrt(np.diag(e.information)) for e in all_edges]

        def unpack(x: np.ndarray) -> dict[int, SE3]:
            poses = {pid: self._poses[pid] for pid in fixed}
            for pid, i in slot.items():
                poses[pid] = SE3.exp(x[6 * i : 6 * i + 6])
            return poses

        def residuals(x: np.ndarray) -> np.ndarray:
            poses = unpack(x)
            return np.concatenate(
                [
                    relative_error(poses[e.from_id], poses[e.to_id], e.measurement) * w
                    for e, w in zip(all_edges, sqrt_info)
                ]
            )

        best = {"cost": 0.5 * float(np.sum(residuals(x0) ** 2)), "x": x0.copy()}
        initial_cost = best["cost"]

        def tracked_residuals(x: np.ndarray) -> np.ndarray:
            res = residuals(x)
            cost = 0.5 * float(np.sum(res**2))
            if np.isfinite(cost) and cost < best["cost"]:
                best["cost"] = cost
                best["x"] = x.copy()
            return res

        sparsity = lil_matrix((6 * len(all_edges), len(x0)), dtype=int)
        for e_idx, edge in enumerate(all_edges):
            rows = slice(6 * e_idx, 6 * e_idx + 6)
            for pid in (edge.from_id, edge.to_id):
                if pid in slot:
                    sparsity[rows, 6 * slot[pid] : 6 * slot[pid] + 6] = 1

        converged = False
        try:
            result = least_squares(
                tracked_residuals,
                x0,
                method="trf",
                jac_sparsity=sparsity,
                ftol=1e-8,
                xtol=1e-8,
                max_nfev=max_iterations * len(free_ids),
            )
            converged = result.status > 0
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.warning("[PoseGraph] Optimization failed: %s", e)

        optimized = {pid: pose.copy() for pid, pose in unpack(best["x"]).items()}
        self._poses.update(optimized)
        if not converged:
            logger.warning(
                "[PoseGraph] Not converged, keeping best state (cost %.4f -> %.4f)",
                initial_cost,
                best["cost"],
            )
        return PoseGraphResult(
            poses=optimized,
            initial_cost=initial_cost,
            final_cost=best["cost"],
            converged=converged,
            degraded=not converged,
        )

    def get_pose(self, keyframe_id: int) -> SE3 | None:
        """Get pose of a keyframe."""
        return self._poses.get(keyframe_id)

    @property
    def num_poses(self) -> int:
        """Number of poses in graph."""
        return len(self._poses)

    @property
    def num_edges(self) -> int:
        """Total number of edges in graph."""
        return len(self._odometry_edges) + len(self._loop_edges)

    @property
    def num_loop_edges(self) -> int:
        """Number of loop closure edges."""
        return len(self._loop_edges)

    @property
    def poses(self) -> dict[int, SE3]:
        """Get all poses (copies)."""
        return {k: v.copy() for k, v in self._poses.items()}
