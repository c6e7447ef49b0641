"""Camera pose from 3D-2D correspondences: PnP RANSAC plus nonlinear refinement."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import least_squares

from ..geometry import SE3

logger = logging.getLogger(__name__)


@dataclass
class PoseEstimate:
    """Result of pose estimation.

    Attributes:
        success: True if a pose was found with enough inliers
        pose: Estimated T_world_camera, None if failed
        inliers: Boolean mask over the input correspondences
        num_inliers: Number of inlier correspondences
        reprojection_error: Mean inlier reprojection error (pixels)
        used_prior: True if an inertial prior contributed to the refinement
    """

    success: bool
    pose: SE3 | None
    inliers: np.ndarray  # (N,) bool
    num_inliers: int
    reprojection_error: float
    used_prior: bool = False

    @property
    def inlier_ratio(self) -> float:
        """Inliers / attempted correspondences."""
        n = len(self.inliers)
        return self.num_inliers / n if n else 0.0

    @classmethod
    def failure(cls, n_points: int, num_inliers: int = 0) -> PoseEstimate:
        """Return a failed estimate for n_points correspondences."""
        return cls(
            success=False,
            pose=None,
            inliers=np.zeros(n_points, dtype=bool),
            num_inliers=num_inliers,
            reprojection_error=float("inf"),
        )


def reprojection_errors(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    T_camera_world: SE3,
    camera_matrix: np.ndarray,
) -> np.ndarray:
    """Return per-correspondence reprojection error (pixels), inf behind camera."""
    p_cam = T_camera_world.transform_points(points_3d)
    z = p_cam[:, 2]
    safe = np.where(z > 1e-9, z, 1.0)
    u = camera_matrix[0, 0] * p_cam[:, 0] / safe + camera_matrix[0, 2]
    v = camera_matrix[1, 1] * p_cam[:, 1] / safe + camera_matrix[1, 2]
    err = np.hypot(u - points_2d[:, 0], v - points_2d[:, 1])
    return np.where(z > 1e-9, err, np.inf)


class MotionEstimator:
    """Estimates the camera pose from map points and their image observations.

    PnP RANSAC gives a robust initial pose; a Huber-weighted least-squares
    refinement over the inliers then minimizes reprojection error, optionally
    pulled towards an inertial prediction. The prior is down-weighted as the
    number of visual inliers grows.
    """

    def __init__(
        self,
        reprojection_threshold: float = 3.0,
        ransac_confidence: float = 0.99,
        max_iterations: int = 100,
        min_inliers: int = 15,
        refine_iterations: int = 20,
        prior_weight: float = 1.0,
    ) -> None:
        """Initialize motion estimator.

        Args:
            reprojection_threshold: Inlier threshold in pixels
            ransac_confidence: PnP RANSAC confidence
            max_iterations: PnP RANSAC iteration cap
            min_inliers: Minimum inliers for a valid pose
            refine_iterations: Cap on refinement residual evaluations per parameter
            prior_weight: Base weight of the inertial prior
        """
        self._reprojection_threshold = reprojection_threshold
        self._ransac_confidence = ransac_confidence
        self._max_iterations = max_iterations
        self._min_inliers = min_inliers
        self._refine_iterations = refine_iterations
        self._prior_weight = prior_weight

    def estimate_pose(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        camera_matrix: np.ndarray,
        initial_pose: SE3 | None = None,
        prior_pose: SE3 | None = None,
    ) -> PoseEstimate:
        """Estimate T_world_camera from 3D-2D correspondences.

        Args:
            points_3d: Nx3 world points
            points_2d: Nx2 observed pixels
            camera_matrix: 3x3 intrinsic matrix
            initial_pose: Optional pose guess for PnP
            prior_pose: Optional inertial prediction used as a soft prior

        Returns:
            PoseEstimate
        """
        n_points = len(points_3d)
        if n_points < 4:
            return PoseEstimate.failure(n_points)

        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)

        rvec_init = tvec_init = None
        use_guess = False
        guess = prior_pose or initial_pose
        if guess is not None:
            rvec_init, tvec_init = guess.inverse().to_rvec_tvec()
            rvec_init = rvec_init.reshape(3, 1)
            tvec_init = tvec_init.reshape(3, 1)
            use_guess = True

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                objectPoints=points_3d.reshape(-1, 1, 3),
                imagePoints=points_2d.reshape(-1, 1, 2),
                cameraMatrix=camera_matrix,
                distCoeffs=None,
                rvec=rvec_init,
                tvec=tvec_init,
                useExtrinsicGuess=use_guess,
                iterationsCount=self._max_iterations,
                reprojectionError=self._reprojection_threshold,
                confidence=self._ransac_confidence,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            logger.debug("solvePnPRansac failed: %s", e)
            return PoseEstimate.failure(n_points)

        if not success or inliers is None or len(inliers) < self._min_inliers:
            return PoseEstimate.failure(n_points, 0 if inliers is None else len(inliers))
        if not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
            return PoseEstimate.failure(n_points)

        inlier_mask = np.zeros(n_points, dtype=bool)
        inlier_mask[inliers.flatten()] = True

        T_cw = SE3.from_rvec_tvec(rvec, tvec)
        T_cw = self.refine(
            points_3d[inlier_mask],
            points_2d[inlier_mask],
            camera_matrix,
            T_cw,
            None if prior_pose is None else prior_pose.inverse(),
        )

        errors = reprojection_errors(points_3d, points_2d, T_cw, camera_matrix)
        inlier_mask = errors < self._reprojection_threshold
        num_inliers = int(np.count_nonzero(inlier_mask))
        if num_inliers < self._min_inliers:
            return PoseEstimate.failure(n_points, num_inliers)

        return PoseEstimate(
            success=True,
            pose=T_cw.inverse(),
            inliers=inlier_mask,
            num_inliers=num_inliers,
            reprojection_error=float(np.mean(errors[inlier_mask])),
            used_prior=prior_pose is not None,
        )

    def refine(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        camera_matrix: np.ndarray,
        T_camera_world: SE3,
        prior_T_camera_world: SE3 | None = None,
    ) -> SE3:
        """Minimize robust reprojection error over the 6-DoF pose.

        The prior residual, when given, penalizes the rotation (radians) and
        translation (relative to median scene depth) difference to the prior,
        both scaled to pixels by the focal length. Its weight is
        prior_weight / sqrt(num correspondences).

        Returns:
            Refined T_camera_world (the input pose if refinement fails)
        """
        if len(points_3d) < 4:
            return T_camera_world

        fx = camera_matrix[0, 0]
        x0 = T_camera_world.log()
        depths = T_camera_world.transform_points(points_3d)[:, 2]
        depth_scale = max(float(np.median(np.abs(depths))), 1e-3)
        prior_w = self._prior_weight / np.sqrt(len(points_3d))
        prior_x = None if prior_T_camera_world is None else prior_T_camera_world.log()

        def residuals(x: np.ndarray) -> np.ndarray:
            R, _ = cv2.Rodrigues(x[:3])
            p_cam = points_3d @ R.T + x[3:]
            z = np.where(np.abs(p_cam[:, 2]) < 1e-9, 1e-9, p_cam[:, 2])
            u = fx * p_cam[:, 0] / z + camera_matrix[0, 2]
            v = camera_matrix[1, 1] * p_cam[:, 1] / z + camera_matrix[1, 2]
            res = np.concatenate([u - points_2d[:, 0], v - points_2d[:, 1]])
            if prior_x is None:
                return res
            d_rot = (x[:3] - prior_x[:3]) * fx
            d_trans = (x[3:] - prior_x[3:]) * fx / depth_scale
            return np.concatenate([res, prior_w * d_rot, prior_w * d_trans])

        try:
            result = least_squares(
                residuals,
                x0,
                method="trf",
                loss="huber",
                f_scale=self._reprojection_threshold,
                max_nfev=self._refine_iterations * 6,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug("Pose refinement failed: %s", e)
            return T_camera_world

        if not np.isfinite(result.x).all():
            return T_camera_world
        return SE3.exp(result.x)

    @property
    def reprojection_threshold(self) -> float:
        """Return inlier threshold."""
        return self._reprojection_threshold

    @property
    def min_inliers(self) -> int:
        """Return minimum required inliers."""
        return self._min_inliers
