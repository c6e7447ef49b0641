"""Two-view triangulation with cheirality, parallax and reprojection checks."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .camera import project_points
from .pose import SE3


@dataclass
class TriangulationResult:
    """Triangulated points and per-point validity."""

    points: np.ndarray  # Nx3 world points
    valid: np.ndarray  # (N,) bool: passed every check
    reprojection_errors: np.ndarray  # (N,) max error over both views (pixels)
    parallax_deg: np.ndarray  # (N,) angle between viewing rays

    @property
    def num_valid(self) -> int:
        """Number of points that passed every check."""
        return int(np.count_nonzero(self.valid))


def triangulate_points(
    K: np.ndarray,
    pose1: SE3,
    pose2: SE3,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """Linearly triangulate matched pixels from two posed views.

    Args:
        K: 3x3 intrinsic matrix
        pose1: T_world_camera of the first view
        pose2: T_world_camera of the second view
        pts1: Nx2 pixels in the first image
        pts2: Nx2 pixels in the second image

    Returns:
        Nx3 points in world coordinates
    """
    if len(pts1) == 0:
        return np.empty((0, 3), dtype=np.float64)

    T1 = pose1.inverse()
    T2 = pose2.inverse()
    # P = K [R | t] with T_camera_world
    P1 = K @ np.hstack([T1.rotation, T1.translation.reshape(3, 1)])
    P2 = K @ np.hstack([T2.rotation, T2.translation.reshape(3, 1)])

    points_4d = cv2.triangulatePoints(
        P1,
        P2,
        np.asarray(pts1, dtype=np.float64).T,
        np.asarray(pts2, dtype=np.float64).T,
    )
    w = points_4d[3]
    w = np.where(np.abs(w) < 1e-12, 1e-12, w)
    return (points_4d[:3] / w).T


def triangulate_and_check(
    K: np.ndarray,
    pose1: SE3,
    pose2: SE3,
    pts1: np.ndarray,
    pts2: np.ndarray,
    max_reprojection_error: float = 4.0,
    min_parallax_deg: float = 1.0,
) -> TriangulationResult:
    """Triangulate and flag points that are valid for the map.

    A point is valid if it lies in front of both cameras, reprojects within
    max_reprojection_error pixels in both views and is seen under at least
    min_parallax_deg of parallax.
    """
    points = triangulate_points(K, pose1, pose2, pts1, pts2)
    n = len(points)
    if n == 0:
        empty = np.empty(0)
        return TriangulationResult(points, empty.astype(bool), empty, empty)

    uv1, depth1 = project_points(K, pose1.inverse(), points)
    uv2, depth2 = project_points(K, pose2.inverse(), points)
    err = np.maximum(
        np.linalg.norm(uv1 - pts1, axis=1), np.linalg.norm(uv2 - pts2, axis=1)
    )

    parallax = parallax_angles(pose1.position, pose2.position, points)

    valid = (
        np.isfinite(points).all(axis=1)
        & (depth1 > 0)
        & (depth2 > 0)
        & (err < max_reprojection_error)
        & (parallax >= min_parallax_deg)
    )
    return TriangulationResult(
        points=points,
        valid=valid,
        reprojection_errors=err,
        parallax_deg=parallax,
    )


def parallax_angles(
    center1: np.ndarray, center2: np.ndarray, points: np.ndarray
) -> np.ndarray:
    """Return the angle (degrees) between the two viewing rays of each point."""
    ray1 = points - center1
    ray2 = points - center2
    n1 = np.linalg.norm(ray1, axis=1)
    n2 = np.linalg.norm(ray2, axis=1)
    denom = np.maximum(n1 * n2, 1e-12)
    cos_angle = np.clip(np.sum(ray1 * ray2, axis=1) / denom, -1.0, 1.0)
    return np.degrees(np.arccos(cos_angle))
