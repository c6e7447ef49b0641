"""Map point data structure."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


def hamming_distances(descriptors: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Return Hamming distances between each row of descriptors and query."""
    xor = np.bitwise_xor(descriptors, query[None, :])
    return np.unpackbits(xor, axis=1).sum(axis=1)


@dataclass
class MapPoint:
    """A triangulated 3D landmark.

    Observations are stored as keyframe id -> keypoint index. They are
    lookups into the map's keyframe arena, never ownership.

    Attributes:
        id: Unique identifier
        position: 3D position in world frame
        descriptor: Representative ORB descriptor (32 bytes)
        observations: kf_id -> keypoint index in that keyframe
        reference_kf_id: Keyframe that created the point
        created_at_keyframe: Number of keyframes inserted when it was created
        color: Optional RGB color
        normal: Mean unit viewing direction (point -> cameras)
        visible_count: Frames where the point projected inside the image
        found_count: Frames where the point was matched
        high_error_strikes: Consecutive BA passes with high reprojection error
    """

    id: int
    position: np.ndarray  # (3,) float64
    descriptor: np.ndarray  # (32,) uint8
    observations: dict[int, int] = field(default_factory=dict)
    reference_kf_id: int = -1
    created_at_keyframe: int = 0
    color: np.ndarray | None = None  # (3,) uint8 RGB
    normal: np.ndarray | None = None  # (3,)
    visible_count: int = 1
    found_count: int = 1
    high_error_strikes: int = 0

    def __post_init__(self) -> None:
        """Ensure arrays are proper types."""
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.descriptor = np.asarray(self.descriptor, dtype=np.uint8).flatten()

    @property
    def num_observations(self) -> int:
        """Return number of keyframes observing this point."""
        return len(self.observations)

    @property
    def found_ratio(self) -> float:
        """Fraction of predicted sightings where the point was matched."""
        return self.found_count / max(self.visible_count, 1)

    def add_observation(self, kf_id: int, keypoint_idx: int) -> None:
        """Record an observation."""
        self.observations[kf_id] = keypoint_idx

    def remove_observation(self, kf_id: int) -> None:
        """Forget the observation from kf_id, if any."""
        self.observations.pop(kf_id, None)

    def update_normal(self, camera_centers: list[np.ndarray]) -> None:
        """Set the normal to the mean direction from the point to the cameras."""
        if not camera_centers:
            return
        dirs = np.asarray(camera_centers) - self.position
        norms = np.linalg.norm(dirs, axis=1, keepdims=True)
        mean = (dirs / np.maximum(norms, 1e-12)).mean(axis=0)
        n = np.linalg.norm(mean)
        if n > 1e-12:
            self.normal = mean / n

    def update_descriptor(self, descriptors: np.ndarray) -> None:
        """Pick the descriptor with the smallest median distance to the others."""
        if len(descriptors) == 0:
            return
        if len(descriptors) <= 2:
            self.descriptor = np.asarray(descriptors[0], dtype=np.uint8)
            return
        medians = [
            np.median(hamming_distances(descriptors, d)) for d in descriptors
        ]
        self.descriptor = np.asarray(descriptors[int(np.argmin(medians))], dtype=np.uint8)

    def copy(self) -> MapPoint:
        """Return an independent copy."""
        return MapPoint(
            id=self.id,
            position=self.position.copy(),
            descriptor=self.descriptor.copy(),
            observations=dict(self.observations),
            reference_kf_id=self.reference_kf_id,
            created_at_keyframe=self.created_at_keyframe,
            color=None if self.color is None else self.color.copy(),
            normal=None if self.normal is None else self.normal.copy(),
            visible_count=self.visible_count,
            found_count=self.found_count,
            high_error_strikes=self.high_error_strikes,
        )
