"""Geometric verification for loop closure candidates.

After place recognition finds visually similar keyframes, geometric
verification confirms the match: descriptors are matched with the same
ratio test and RANSAC check as tracking, then the query camera is
localized against the candidate's map points with PnP + RANSAC.

This gate is the only protection against perceptual aliasing (different
places that look similar); a candidate that fails any check is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..backend.keyframe import KeyFrame
from ..backend.map_point import MapPoint
from ..frontend.feature_matcher import FeatureMatcher
from ..frontend.motion_estimator import MotionEstimator
from ..geometry import SE3


@dataclass
class VerificationResult:
    """Result of geometric verification.

    Attributes:
        is_valid: Whether verification succeeded
        relative_pose: T_match_query, query camera in the match camera frame
        corrected_pose: Query T_world_camera consistent with the match keyframe
        num_inliers: Number of PnP inliers
        num_matches: Number of feature matches after the RANSAC check
        inlier_ratio: PnP inliers / 3D-2D correspondences
        point_pairs: (match point id, query point id) for inlier keypoints
            that already carry a map point in both keyframes
        reason: Why verification failed
    """

    is_valid: bool
    relative_pose: SE3 | None = None
    corrected_pose: SE3 | None = None
    num_inliers: int = 0
    num_matches: int = 0
    inlier_ratio: float = 0.0
    point_pairs: list[tuple[int, int]] = field(default_factory=list)
    reason: str = ""


class GeometricVerifier:
    """Verifies loop closure candidates using geometric constraints."""

    def __init__(
        self,
        camera_matrix: np.ndarray,
        matcher: FeatureMatcher | None = None,
        min_inliers: int = 30,
        min_inlier_ratio: float = 0.3,
        ransac_threshold: float = 3.0,
        max_reproj_error: float = 2.0,
    ) -> None:
        """Initialize geometric verifier.

        Args:
            camera_matrix: 3x3 camera intrinsics matrix
            matcher: Feature matcher (ratio test + RANSAC check)
            min_inliers: Minimum PnP inliers for a valid loop
            min_inlier_ratio: Minimum ratio of inliers to correspondences
            ransac_threshold: PnP RANSAC reprojection threshold in pixels
            max_reproj_error: Maximum mean inlier reprojection error
        """
        self._camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        self._matcher = matcher or FeatureMatcher()
        self._min_inliers = min_inliers
        self._min_inlier_ratio = min_inlier_ratio
        self._max_reproj_error = max_reproj_error
        self._pnp = MotionEstimator(
            reprojection_threshold=ransac_threshold,
            max_iterations=200,
            min_inliers=min_inliers,
            prior_weight=0.0,
        )

    def verify(
        self,
        query: KeyFrame,
        candidate: KeyFrame,
        points: dict[int, MapPoint],
    ) -> VerificationResult:
        """Verify a loop closure candidate geometrically.

        Args:
            query: Keyframe that triggered the query
            candidate: Earlier keyframe returned by place recognition
            points: Map points by id (the candidate's observations are looked up here)

        Returns:
            VerificationResult with validity and relative pose
        """
        matches = self._matcher.match(query.features, candidate.features)
        if len(matches) < self._min_inliers:
            return VerificationResult(
                False, num_matches=len(matches), reason="too few feature matches"
            )

        # 3D-2D: candidate map points against query keypoints
        q_idx, c_pid = [], []
        for qi, ci in zip(matches.indices_a, matches.indices_b):
            pid = candidate.keypoint_to_point.get(int(ci))
            if pid is not None and pid in points:
                q_idx.append(int(qi))
                c_pid.append(pid)
        if len(q_idx) < self._min_inliers:
            return VerificationResult(
                False, num_matches=len(matches), reason="too few mapped matches"
            )

        points_3d = np.array([points[p].position for p in c_pid])
        points_2d = query.features.points[q_idx].astype(np.float64)
        estimate = self._pnp.estimate_pose(points_3d, points_2d, self._camera_matrix)
        if not estimate.success:
            return VerificationResult(
                False,
                num_matches=len(matches),
                num_inliers=estimate.num_inliers,
                reason="PnP failed",
            )

        inlier_ratio = estimate.inlier_ratio
        if estimate.num_inliers < self._min_inliers or inlier_ratio < self._min_inlier_ratio:
            return VerificationResult(
                False,
                num_matches=len(matches),
                num_inliers=estimate.num_inliers,
                inlier_ratio=inlier_ratio,
                reason="too few PnP inliers",
            )
        if estimate.reprojection_error > self._max_reproj_error:
            return VerificationResult(
                False,
                num_matches=len(matches),
                num_inliers=estimate.num_inliers,
                inlier_ratio=inlier_ratio,
                reason="reprojection error too high",
            )

        pairs = []
        for i in np.flatnonzero(estimate.inliers):
            query_pid = query.keypoint_to_point.get(q_idx[i])
            if query_pid is not None and query_pid != c_pid[i]:
                pairs.append((c_pid[i], query_pid))

        corrected = estimate.pose
        return VerificationResult(
            is_valid=True,
            relative_pose=candidate.pose.inverse().compose(corrected),
            corrected_pose=corrected,
            num_inliers=estimate.num_inliers,
            num_matches=len(matches),
            inlier_ratio=inlier_ratio,
            point_pairs=pairs,
        )
