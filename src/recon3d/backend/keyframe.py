"""Keyframe data structure and insertion criteria.

Not every frame becomes a keyframe: only those that moved or rotated far
enough from the last keyframe, arrived long enough after it, or tracked
noticeably fewer of its points.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from ..config import KeyframeConfig
from ..geometry import SE3

if TYPE_CHECKING:
    from ..frontend.feature_extractor import Features


@dataclass
class KeyFrame:
    """A frame kept for long-term mapping.

    Attributes:
        id: Keyframe id (arena index, never reused)
        frame_id: Id of the source frame
        timestamp_ns: Capture time
        pose: T_world_camera
        features: Feature set extracted from the frame
        keypoint_to_point: keypoint index -> map point id
        image: Source image, kept for colors and texturing
        depth: Optional depth map aligned with image
    """

    id: int
    frame_id: int
    timestamp_ns: int
    pose: SE3
    features: Features
    keypoint_to_point: dict[int, int] = field(default_factory=dict)
    image: np.ndarray | None = None
    depth: np.ndarray | None = None

    def observed_point_ids(self) -> set[int]:
        """Return ids of observed map points."""
        return set(self.keypoint_to_point.values())

    def keypoint_of(self, point_id: int) -> int | None:
        """Return the keypoint index observing point_id, if any."""
        for kp_idx, pid in self.keypoint_to_point.items():
            if pid == point_id:
                return kp_idx
        return None

    def unmatched_keypoints(self) -> np.ndarray:
        """Return indices of keypoints not associated with a map point."""
        mask = np.ones(len(self.features), dtype=bool)
        if self.keypoint_to_point:
            mask[list(self.keypoint_to_point)] = False
        return np.flatnonzero(mask)

    def sample_colors(self, keypoint_indices: np.ndarray) -> np.ndarray | None:
        """Return RGB colors of the image at the given keypoints."""
        if self.image is None or len(keypoint_indices) == 0:
            return None
        h, w = self.image.shape[:2]
        pts = np.round(self.features.points[keypoint_indices]).astype(int)
        x = np.clip(pts[:, 0], 0, w - 1)
        y = np.clip(pts[:, 1], 0, h - 1)
        if self.image.ndim == 2:
            gray = self.image[y, x]
            return np.stack([gray, gray, gray], axis=1).astype(np.uint8)
        bgr = self.image[y, x, :3]
        return bgr[:, ::-1].astype(np.uint8)

    @property
    def num_observations(self) -> int:
        """Return number of map point observations."""
        return len(self.keypoint_to_point)

    def copy(self) -> KeyFrame:
        """Return a copy sharing the immutable features and images."""
        return KeyFrame(
            id=self.id,
            frame_id=self.frame_id,
            timestamp_ns=self.timestamp_ns,
            pose=self.pose.copy(),
            features=self.features,
            keypoint_to_point=dict(self.keypoint_to_point),
            image=self.image,
            depth=self.depth,
        )


class KeyframeSelector:
    """Decides when the tracked frame should become a keyframe."""

    def __init__(self, config: KeyframeConfig | None = None) -> None:
        """Initialize keyframe selector.

        Args:
            config: Insertion thresholds
        """
        self._config = config or KeyframeConfig()
        self._min_rotation_rad = np.deg2rad(self._config.min_rotation_deg)

    def should_insert(
        self,
        frame_id: int,
        timestamp_ns: int,
        pose: SE3,
        last_keyframe: KeyFrame | None,
        num_tracked: int | None = None,
    ) -> tuple[bool, str]:
        """Determine if a new keyframe should be created.

        Args:
            frame_id: Current frame id
            timestamp_ns: Current frame time
            pose: Current T_world_camera
            last_keyframe: Most recent keyframe, None if the map is empty
            num_tracked: Map points of the last keyframe tracked in this frame

        Returns:
            Tuple of (insert?, reason)
        """
        if last_keyframe is None:
            return True, "first"

        if frame_id - last_keyframe.frame_id < self._config.min_frames_between:
            return False, ""

        translation, rotation = last_keyframe.pose.distance_to(pose)
        if translation > self._config.min_translation:
            return True, "translation"
        if rotation > self._min_rotation_rad:
            return True, "rotation"

        elapsed_s = (timestamp_ns - last_keyframe.timestamp_ns) * 1e-9
        if elapsed_s > self._config.max_interval_s:
            return True, "time"

        if num_tracked is not None and last_keyframe.num_observations > 0:
            ratio = num_tracked / last_keyframe.num_observations
            if ratio < self._config.min_tracked_ratio:
                return True, "tracked_ratio"

        return False, ""
