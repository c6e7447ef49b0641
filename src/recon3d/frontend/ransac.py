"""Seeded RANSAC for two-view epipolar and homography models."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import cv2
import numpy as np

from ..geometry.epipolar import sampson_error, transfer_error

logger = logging.getLogger(__name__)


class GeometricModel(Enum):
    """Two-view model types."""

    FUNDAMENTAL = "fundamental"
    HOMOGRAPHY = "homography"


MIN_SAMPLES = {GeometricModel.FUNDAMENTAL: 8, GeometricModel.HOMOGRAPHY: 4}


@dataclass
class RansacResult:
    """Best hypothesis found by RANSAC."""

    model: GeometricModel | None
    matrix: np.ndarray | None  # 3x3 F (x2^T F x1 = 0) or H (x2 ~ H x1)
    inlier_mask: np.ndarray  # (N,) bool
    iterations: int = 0

    @property
    def num_inliers(self) -> int:
        """Number of inliers."""
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def success(self) -> bool:
        """Return True if a model was found."""
        return self.matrix is not None


def _fit_fundamental(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray | None:
    F, _ = cv2.findFundamentalMat(pts1, pts2, cv2.FM_8POINT)
    if F is None or F.shape != (3, 3) or not np.isfinite(F).all():
        return None
    return F


def _fit_homography(pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray | None:
    H, _ = cv2.findHomography(pts1, pts2, 0)
    if H is None or H.shape != (3, 3) or not np.isfinite(H).all():
        return None
    return H


def _required_iterations(
    inlier_ratio: float, sample_size: int, confidence: float, cap: int
) -> int:
    """Iterations needed to draw one all-inlier sample with given confidence."""
    if inlier_ratio <= 0.0:
        return cap
    p_good = inlier_ratio**sample_size
    if p_good >= 1.0:
        return 1
    n = np.log(1.0 - confidence) / np.log(1.0 - p_good)
    return int(min(cap, max(1, np.ceil(n))))


def ransac(
    pts1: np.ndarray,
    pts2: np.ndarray,
    model: GeometricModel,
    threshold: float,
    max_iterations: int,
    confidence: float = 0.999,
    seed: int = 0,
) -> RansacResult:
    """Estimate a two-view model with RANSAC.

    Hypotheses are fitted to minimal samples drawn from a generator seeded
    with ``seed``, so the result is reproducible. The best hypothesis is
    refitted on its inliers and kept if that does not lose inliers.

    Args:
        pts1: Nx2 pixels in the first image
        pts2: Nx2 pixels in the second image
        model: Model to estimate
        threshold: Inlier threshold in pixels
        max_iterations: Hypothesis cap
        confidence: Early-exit probability of having drawn a clean sample
        seed: Random seed

    Returns:
        RansacResult; an all-False mask when fewer than a minimal sample exists
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    n = len(pts1)
    sample_size = MIN_SAMPLES[model]
    empty = RansacResult(model=None, matrix=None, inlier_mask=np.zeros(n, dtype=bool))
    if n < sample_size:
        return empty

    fit: Callable[[np.ndarray, np.ndarray], np.ndarray | None]
    if model == GeometricModel.FUNDAMENTAL:
        fit = _fit_fundamental

        def error(M: np.ndarray) -> np.ndarray:
            return sampson_error(M, pts1, pts2) < threshold**2

    else:
        fit = _fit_homography

        def error(M: np.ndarray) -> np.ndarray:
            return transfer_error(M, pts1, pts2) < threshold

    rng = np.random.default_rng(seed)
    best_matrix: np.ndarray | None = None
    best_mask = np.zeros(n, dtype=bool)
    best_count = 0
    needed = max_iterations
    iteration = 0

    while iteration < needed:
        iteration += 1
        sample = rng.choice(n, size=sample_size, replace=False)
        M = fit(pts1[sample], pts2[sample])
        if M is None:
            continue
        mask = error(M)
        count = int(np.count_nonzero(mask))
        if count > best_count:
            best_matrix, best_mask, best_count = M, mask, count
            needed = _required_iterations(
                count / n, sample_size, confidence, max_iterations
            )

    if best_matrix is None:
        return RansacResult(
            model=None, matrix=None, inlier_mask=best_mask, iterations=iteration
        )

    if best_count > sample_size:
        refined = fit(pts1[best_mask], pts2[best_mask])
        if refined is not None:
            refined_mask = error(refined)
            if np.count_nonzero(refined_mask) >= best_count:
                best_matrix, best_mask = refined, refined_mask

    return RansacResult(
        model=model, matrix=best_matrix, inlier_mask=best_mask, iterations=iteration
    )


def ransac_best_model(
    pts1: np.ndarray,
    pts2: np.ndarray,
    threshold: float,
    max_iterations: int,
    confidence: float = 0.999,
    seed: int = 0,
) -> RansacResult:
    """Run RANSAC for both F and H and keep whichever explains more points.

    Planar scenes are degenerate for the fundamental matrix; the homography
    wins ties.
    """
    h_result = ransac(
        pts1, pts2, GeometricModel.HOMOGRAPHY, threshold, max_iterations, confidence, seed
    )
    f_result = ransac(
        pts1, pts2, GeometricModel.FUNDAMENTAL, threshold, max_iterations, confidence, seed
    )
    if f_result.success and f_result.num_inliers > h_result.num_inliers:
        return f_result
    return h_result
