"""ORB feature extraction with grid-based spatial distribution."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ..config import FeatureConfig

logger = logging.getLogger(__name__)

DESCRIPTOR_BYTES = 32  # ORB: 256-bit binary descriptor


@dataclass(frozen=True)
class Feature:
    """A single detected and described image point."""

    x: float
    y: float
    descriptor: np.ndarray  # (32,) uint8
    scale: float  # Keypoint diameter (pixels)
    orientation: float  # Degrees, OpenCV convention
    response: float  # Detector strength
    octave: int = 0


@dataclass(frozen=True)
class Features:
    """Feature set of one frame, stored column-wise and ranked by response.

    Attributes:
        points: Nx2 float32 keypoint coordinates (x, y)
        descriptors: Nx32 uint8 ORB descriptors
        scales: (N,) keypoint diameters
        orientations: (N,) keypoint angles in degrees
        responses: (N,) detector responses, non-increasing
        octaves: (N,) pyramid levels
    """

    points: np.ndarray
    descriptors: np.ndarray
    scales: np.ndarray
    orientations: np.ndarray
    responses: np.ndarray
    octaves: np.ndarray

    def __post_init__(self) -> None:
        """Freeze arrays so a frame's features cannot change after extraction."""
        for name in ("points", "descriptors", "scales", "orientations", "responses", "octaves"):
            getattr(self, name).setflags(write=False)

    @classmethod
    def empty(cls) -> Features:
        """Return an empty feature set."""
        return cls(
            points=np.empty((0, 2), dtype=np.float32),
            descriptors=np.empty((0, DESCRIPTOR_BYTES), dtype=np.uint8),
            scales=np.empty(0, dtype=np.float32),
            orientations=np.empty(0, dtype=np.float32),
            responses=np.empty(0, dtype=np.float32),
            octaves=np.empty(0, dtype=np.int32),
        )

    @classmethod
    def from_keypoints(
        cls, keypoints: list[cv2.KeyPoint], descriptors: np.ndarray
    ) -> Features:
        """Build a feature set from OpenCV keypoints and descriptors."""
        if len(keypoints) == 0:
            return cls.empty()
        return cls(
            points=np.array([kp.pt for kp in keypoints], dtype=np.float32),
            descriptors=np.ascontiguousarray(descriptors, dtype=np.uint8),
            scales=np.array([kp.size for kp in keypoints], dtype=np.float32),
            orientations=np.array([kp.angle for kp in keypoints], dtype=np.float32),
            responses=np.array([kp.response for kp in keypoints], dtype=np.float32),
            octaves=np.array([kp.octave for kp in keypoints], dtype=np.int32),
        )

    def subset(self, indices: np.ndarray) -> Features:
        """Return a new feature set with the given rows."""
        indices = np.asarray(indices, dtype=np.int64)
        return Features(
            points=self.points[indices],
            descriptors=self.descriptors[indices],
            scales=self.scales[indices],
            orientations=self.orientations[indices],
            responses=self.responses[indices],
            octaves=self.octaves[indices],
        )

    def __getitem__(self, index: int) -> Feature:
        """Return the feature at index."""
        return Feature(
            x=float(self.points[index, 0]),
            y=float(self.points[index, 1]),
            descriptor=self.descriptors[index],
            scale=float(self.scales[index]),
            orientation=float(self.orientations[index]),
            response=float(self.responses[index]),
            octave=int(self.octaves[index]),
        )

    def __len__(self) -> int:
        """Return number of features."""
        return len(self.points)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Return a uint8 single-channel view of image."""
    if image.ndim == 3:
        if image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        else:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.dtype != np.uint8:
        image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return image


def grid_suppression(
    points: np.ndarray,
    responses: np.ndarray,
    cell_size: int,
    max_per_cell: int,
) -> np.ndarray:
    """Keep the strongest max_per_cell points in each grid cell.

    Args:
        points: Nx2 coordinates
        responses: (N,) scores
        cell_size: Cell side in pixels
        max_per_cell: Points kept per cell

    Returns:
        Indices of kept points sorted by decreasing response (ties by index)
    """
    if len(points) == 0:
        return np.empty(0, dtype=np.int64)

    cells = np.floor(points / cell_size).astype(np.int64)
    cell_ids = cells[:, 0] * 100_003 + cells[:, 1]

    # Strongest first within each cell, stable on index
    order = np.lexsort((np.arange(len(points)), -responses, cell_ids))
    sorted_cells = cell_ids[order]
    starts = np.r_[0, np.flatnonzero(np.diff(sorted_cells)) + 1]
    rank = np.arange(len(order)) - np.repeat(starts, np.diff(np.r_[starts, len(order)]))
    kept = order[rank < max_per_cell]

    return kept[np.lexsort((kept, -responses[kept]))]


class FeatureExtractor:
    """Detects and describes ORB features, spread over the image by a grid.

    Output is deterministic for a fixed image and configuration. Images that
    are too small or too flat yield an empty set, which downstream stages
    treat as "frame unusable".
    """

    def __init__(self, config: FeatureConfig | None = None) -> None:
        """Initialize the ORB detector.

        Args:
            config: Extraction parameters
        """
        self._config = config or FeatureConfig()
        # Over-detect so the grid has candidates to choose from
        self._orb = cv2.ORB_create(
            nfeatures=self._config.n_features * 2,
            scaleFactor=self._config.scale_factor,
            nlevels=self._config.n_levels,
            fastThreshold=self._config.fast_threshold,
        )

    def is_usable(self, image: np.ndarray) -> bool:
        """Return True if the image meets the minimum resolution and contrast."""
        if image is None or image.ndim < 2:
            return False
        h, w = image.shape[:2]
        if min(h, w) < self._config.min_image_size:
            return False
        gray = to_grayscale(image)
        return float(gray.std()) >= self._config.min_contrast

    def extract(self, image: np.ndarray, mask: np.ndarray | None = None) -> Features:
        """Detect and describe features in an image.

        Args:
            image: Grayscale or BGR image
            mask: Optional uint8 mask, 0 = ignore

        Returns:
            Features ranked by response, at most n_features long
        """
        if not self.is_usable(image):
            logger.debug("Image below minimum resolution/contrast, no features")
            return Features.empty()

        gray = to_grayscale(image)
        keypoints, descriptors = self._orb.detectAndCompute(gray, mask)
        if descriptors is None or len(keypoints) == 0:
            return Features.empty()

        features = Features.from_keypoints(list(keypoints), descriptors)
        kept = grid_suppression(
            features.points,
            features.responses,
            self._config.grid_cell_size,
            self._config.max_per_cell,
        )[: self._config.n_features]

        return features.subset(kept)

    @property
    def config(self) -> FeatureConfig:
        """Return the extraction configuration."""
        return self._config
