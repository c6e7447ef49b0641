"""Two-view map bootstrap from an essential matrix or a homography."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

from ..config import MappingConfig, TrackingConfig
from ..geometry import SE3, rotation_angle, triangulate_and_check
from .feature_extractor import Features
from .feature_matcher import Matches

logger = logging.getLogger(__name__)


@dataclass
class InitializationResult:
    """Outcome of a two-view bootstrap attempt.

    The first view defines the world frame (identity pose). On success the
    second pose and the points carry the metric scale given by the baseline.
    """

    success: bool
    message: str = ""
    pose: SE3 | None = None  # T_world_camera of the second view
    points: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    indices_ref: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    indices_cur: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.int64))
    model: str = ""
    median_parallax_deg: float = 0.0


@dataclass
class _Candidate:
    R: np.ndarray  # Rotation cam1 -> cam2
    t: np.ndarray  # Unit translation cam1 -> cam2
    num_good: int = 0


class TwoViewInitializer:
    """Recovers relative pose and an initial point set from two frames.

    Both a homography and an essential matrix are estimated. The homography
    is used when it explains a large enough share of the inliers (planar or
    low-parallax scenes). Every decomposition is scored by the number of
    points it triangulates in front of both cameras; near-ties are broken
    by closeness to the expected rotation.
    """

    def __init__(
        self,
        config: TrackingConfig | None = None,
        mapping_config: MappingConfig | None = None,
        ransac_threshold: float = 2.0,
    ) -> None:
        """Initialize.

        Args:
            config: Bootstrap thresholds
            mapping_config: Triangulation gates for the initial points
            ransac_threshold: Pixel threshold for H/E estimation
        """
        self._config = config or TrackingConfig()
        self._mapping = mapping_config or MappingConfig()
        self._threshold = ransac_threshold

    def initialize(
        self,
        features_ref: Features,
        features_cur: Features,
        matches: Matches,
        camera_matrix: np.ndarray,
        baseline: float,
        expected_rotation: np.ndarray | None = None,
    ) -> InitializationResult:
        """Attempt to bootstrap a map.

        Args:
            features_ref: Features of the first frame
            features_cur: Features of the second frame
            matches: Matches from first (a) to second (b)
            camera_matrix: 3x3 intrinsic matrix
            baseline: Metric distance between the two camera centers
            expected_rotation: Predicted rotation cam1 -> cam2 (identity if None)

        Returns:
            InitializationResult; failures are retried on the next frame
        """
        cfg = self._config
        if len(matches) < cfg.min_init_matches:
            return InitializationResult(
                False, f"Too few matches ({len(matches)} < {cfg.min_init_matches})"
            )
        if baseline <= 0:
            return InitializationResult(False, "Non-positive baseline")

        K = np.asarray(camera_matrix, dtype=np.float64)
        pts1 = features_ref.points[matches.indices_a].astype(np.float64)
        pts2 = features_cur.points[matches.indices_b].astype(np.float64)

        H, mask_h = cv2.findHomography(pts1, pts2, cv2.RANSAC, self._threshold)
        E, mask_e = cv2.findEssentialMat(
            pts1, pts2, K, method=cv2.RANSAC, prob=0.999, threshold=self._threshold
        )
        score_h = 0 if mask_h is None else int(mask_h.sum())
        score_e = 0 if (mask_e is None or E is None) else int(mask_e.sum())
        if score_h + score_e == 0:
            return InitializationResult(False, "No geometric model found")

        ratio_h = score_h / (score_h + score_e)
        if H is not None and (ratio_h > cfg.homography_ratio_threshold or E is None):
            model = "homography"
            inliers = mask_h.ravel().astype(bool)
            candidates = self._homography_candidates(H, K)
        else:
            model = "essential"
            inliers = mask_e.ravel().astype(bool)
            # findEssentialMat may stack several solutions
            candidates = self._essential_candidates(E[:3, :3])

        if np.count_nonzero(inliers) < cfg.min_init_points:
            return InitializationResult(False, f"Too few {model} inliers", model=model)

        p1, p2 = pts1[inliers], pts2[inliers]
        identity = SE3.identity()
        for candidate in candidates:
            pose2 = SE3.from_Rt(candidate.R, candidate.t).inverse()
            tri = triangulate_and_check(
                K, identity, pose2, p1, p2,
                max_reprojection_error=self._mapping.max_reprojection_px,
                min_parallax_deg=0.0,
            )
            candidate.num_good = tri.num_valid

        best = self._select(candidates, expected_rotation)
        if best is None or best.num_good < cfg.min_init_points:
            return InitializationResult(
                False, "Too few points in front of both cameras", model=model
            )

        pose2 = SE3.from_Rt(best.R, best.t * baseline).inverse()
        tri = triangulate_and_check(
            K, identity, pose2, p1, p2,
            max_reprojection_error=self._mapping.max_reprojection_px,
            min_parallax_deg=self._mapping.min_parallax_deg / 2,
        )
        median_parallax = (
            float(np.median(tri.parallax_deg[tri.valid])) if tri.num_valid else 0.0
        )
        if median_parallax < cfg.min_init_parallax_deg:
            return InitializationResult(
                False,
                f"Insufficient parallax ({median_parallax:.2f} deg)",
                model=model,
                median_parallax_deg=median_parallax,
            )
        if tri.num_valid < cfg.min_init_points:
            return InitializationResult(
                False, f"Too few triangulated points ({tri.num_valid})", model=model
            )

        inlier_idx = np.flatnonzero(inliers)[tri.valid]
        logger.info(
            "[Init] %s model, %d points, median parallax %.2f deg",
            model,
            tri.num_valid,
            median_parallax,
        )
        return InitializationResult(
            success=True,
            message="ok",
            pose=pose2,
            points=tri.points[tri.valid],
            indices_ref=matches.indices_a[inlier_idx],
            indices_cur=matches.indices_b[inlier_idx],
            model=model,
            median_parallax_deg=median_parallax,
        )

    @staticmethod
    def _homography_candidates(H: np.ndarray, K: np.ndarray) -> list[_Candidate]:
        """Decompose H into up to four (R, t) hypotheses with unit t."""
        _, rotations, translations, _ = cv2.decomposeHomographyMat(H, K)
        candidates = []
        for R, t in zip(rotations, translations):
            t = np.asarray(t, dtype=np.float64).flatten()
            norm = np.linalg.norm(t)
            if norm < 1e-9:
                continue
            candidates.append(_Candidate(R=np.asarray(R, dtype=np.float64), t=t / norm))
        return candidates

    @staticmethod
    def _essential_candidates(E: np.ndarray) -> list[_Candidate]:
        """Return the four (R, t) decompositions of E."""
        R1, R2, t = cv2.decomposeEssentialMat(E)
        t = t.flatten() / max(np.linalg.norm(t), 1e-12)
        return [
            _Candidate(R=R1, t=t),
            _Candidate(R=R1, t=-t),
            _Candidate(R=R2, t=t),
            _Candidate(R=R2, t=-t),
        ]

    @staticmethod
    def _select(
        candidates: list[_Candidate], expected_rotation: np.ndarray | None
    ) -> _Candidate | None:
        """Pick the best-supported candidate, closest to the expected rotation."""
        if not candidates:
            return None
        best_count = max(c.num_good for c in candidates)
        if best_count == 0:
            return None

        R_expected = np.eye(3) if expected_rotation is None else expected_rotation
        contenders = [c for c in candidates if c.num_good >= 0.9 * best_count]
        return min(contenders, key=lambda c: rotation_angle(R_expected.T @ c.R))
