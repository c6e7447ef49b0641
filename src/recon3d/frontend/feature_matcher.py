"""Descriptor matching with a mutual ratio test and a RANSAC geometric check."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ..config import MatcherConfig
from .feature_extractor import Features
from .ransac import GeometricModel, RansacResult, ransac, ransac_best_model

logger = logging.getLogger(__name__)

MAX_HAMMING = 256.0  # ORB descriptor bits


@dataclass(frozen=True)
class FeatureMatch:
    """A correspondence between feature index_a of set A and index_b of set B."""

    index_a: int
    index_b: int
    confidence: float  # In [0, 1]


@dataclass
class Matches:
    """Column-wise match set.

    Attributes:
        indices_a: Indices into the first feature set
        indices_b: Indices into the second feature set
        distances: Hamming distances
        confidences: Match confidences in [0, 1]
    """

    indices_a: np.ndarray  # (N,) int
    indices_b: np.ndarray  # (N,) int
    distances: np.ndarray  # (N,) float32
    confidences: np.ndarray  # (N,) float64

    @classmethod
    def empty(cls) -> Matches:
        """Return an empty match set."""
        return cls(
            indices_a=np.empty(0, dtype=np.int64),
            indices_b=np.empty(0, dtype=np.int64),
            distances=np.empty(0, dtype=np.float32),
            confidences=np.empty(0, dtype=np.float64),
        )

    def __len__(self) -> int:
        """Return number of matches."""
        return len(self.indices_a)

    def filter(self, mask: np.ndarray) -> Matches:
        """Return the matches selected by a boolean mask."""
        return Matches(
            indices_a=self.indices_a[mask],
            indices_b=self.indices_b[mask],
            distances=self.distances[mask],
            confidences=self.confidences[mask],
        )

    def swapped(self) -> Matches:
        """Return the same matches with A and B exchanged."""
        return Matches(
            indices_a=self.indices_b,
            indices_b=self.indices_a,
            distances=self.distances,
            confidences=self.confidences,
        )

    def pairs(self) -> set[tuple[int, int]]:
        """Return the matched (index_a, index_b) pairs."""
        return set(zip(self.indices_a.tolist(), self.indices_b.tolist()))

    def to_list(self) -> list[FeatureMatch]:
        """Return the matches as FeatureMatch values."""
        return [
            FeatureMatch(int(a), int(b), float(c))
            for a, b, c in zip(self.indices_a, self.indices_b, self.confidences)
        ]


def _best_two(knn: list) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return (best index, best distance, second distance) per query row."""
    n = len(knn)
    best_idx = np.full(n, -1, dtype=np.int64)
    d1 = np.full(n, np.inf)
    d2 = np.full(n, np.inf)
    for i, pair in enumerate(knn):
        if len(pair) >= 1:
            best_idx[i] = pair[0].trainIdx
            d1[i] = pair[0].distance
        if len(pair) >= 2:
            d2[i] = pair[1].distance
    return best_idx, d1, d2


def _first_is_canonical(features_a: Features, features_b: Features) -> bool:
    """Pick an order for the geometric check that does not depend on call order."""
    if len(features_a) != len(features_b):
        return len(features_a) < len(features_b)
    return features_a.descriptors.tobytes() <= features_b.descriptors.tobytes()


class FeatureMatcher:
    """Matches two feature sets.

    A pair (i, j) is kept only if j is i's nearest neighbour in B, i is j's
    nearest neighbour in A, and both directions pass the ratio test. The
    geometric check is run in an order that does not depend on which set is
    passed first, so match(a, b) and match(b, a) return the same pairs.
    """

    def __init__(self, config: MatcherConfig | None = None) -> None:
        """Initialize matcher.

        Args:
            config: Matching parameters
        """
        self._config = config or MatcherConfig()
        self._bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

    def match_descriptors(self, desc_a: np.ndarray, desc_b: np.ndarray) -> Matches:
        """Mutual nearest-neighbour matching with a two-sided ratio test.

        Args:
            desc_a: NxD uint8 descriptors
            desc_b: MxD uint8 descriptors

        Returns:
            Matches sorted by index_a
        """
        if len(desc_a) == 0 or len(desc_b) == 0:
            return Matches.empty()

        knn_ab = self._bf_matcher.knnMatch(desc_a, desc_b, k=2)
        knn_ba = self._bf_matcher.knnMatch(desc_b, desc_a, k=2)
        best_ab, d1_ab, d2_ab = _best_two(knn_ab)
        best_ba, d1_ba, d2_ba = _best_two(knn_ba)

        ratio = self._config.ratio_threshold
        max_dist = self._config.max_hamming_distance

        def passes(d1: np.ndarray, d2: np.ndarray) -> np.ndarray:
            # Strict inequality rejects exact ties, including duplicate descriptors
            single = np.isinf(d2)
            return (d1 <= max_dist) & (single | (d1 < ratio * d2))

        ok_ab = (best_ab >= 0) & passes(d1_ab, d2_ab)
        ok_ba = (best_ba >= 0) & passes(d1_ba, d2_ba)

        idx_a = np.flatnonzero(ok_ab)
        idx_b = best_ab[idx_a]
        mutual = ok_ba[idx_b] & (best_ba[idx_b] == idx_a)
        idx_a, idx_b = idx_a[mutual], idx_b[mutual]
        if len(idx_a) == 0:
            return Matches.empty()

        def confidence(d1: np.ndarray, d2: np.ndarray) -> np.ndarray:
            denom = np.where(np.isinf(d2), MAX_HAMMING, np.maximum(d2, 1e-9))
            return np.clip(1.0 - d1 / denom, 0.0, 1.0)

        conf = np.minimum(
            confidence(d1_ab[idx_a], d2_ab[idx_a]),
            confidence(d1_ba[idx_b], d2_ba[idx_b]),
        )
        return Matches(
            indices_a=idx_a.astype(np.int64),
            indices_b=idx_b.astype(np.int64),
            distances=d1_ab[idx_a].astype(np.float32),
            confidences=conf,
        )

    def geometric_check(
        self, pts_a: np.ndarray, pts_b: np.ndarray
    ) -> RansacResult:
        """Run the configured RANSAC model on matched pixel pairs."""
        cfg = self._config
        if cfg.geometric_model == "auto":
            return ransac_best_model(
                pts_a,
                pts_b,
                cfg.ransac_threshold_px,
                cfg.ransac_max_iterations,
                cfg.ransac_confidence,
                cfg.ransac_seed,
            )
        return ransac(
            pts_a,
            pts_b,
            GeometricModel(cfg.geometric_model),
            cfg.ransac_threshold_px,
            cfg.ransac_max_iterations,
            cfg.ransac_confidence,
            cfg.ransac_seed,
        )

    def match(
        self,
        features_a: Features,
        features_b: Features,
        geometric_check: bool = True,
    ) -> Matches:
        """Match two feature sets.

        Args:
            features_a: First feature set
            features_b: Second feature set
            geometric_check: Drop matches inconsistent with the best
                RANSAC model

        Returns:
            Matches; empty when no usable correspondence exists
        """
        if len(features_a) == 0 or len(features_b) == 0:
            return Matches.empty()

        if not _first_is_canonical(features_a, features_b):
            return self.match(features_b, features_a, geometric_check).swapped()

        matches = self.match_descriptors(features_a.descriptors, features_b.descriptors)
        if not geometric_check or len(matches) == 0:
            return matches

        result = self.geometric_check(
            features_a.points[matches.indices_a], features_b.points[matches.indices_b]
        )
        logger.debug(
            "Geometric check (%s): %d/%d inliers",
            result.model.value if result.model else "none",
            result.num_inliers,
            len(matches),
        )
        return matches.filter(result.inlier_mask)

    @property
    def config(self) -> MatcherConfig:
        """Return the matching configuration."""
        return self._config
