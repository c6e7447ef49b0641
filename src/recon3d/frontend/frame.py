"""Input frame type consumed by the pose estimator."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .imu_integrator import IMUMeasurement


@dataclass
class Frame:
    """One camera frame from the sensor layer.

    Attributes:
        image: Grayscale or BGR image
        timestamp_ns: Capture time in nanoseconds
        imu: Inertial samples since the previous frame (may be empty)
        frame_id: Sequence number, assigned by the caller or the system
        depth: Optional metric depth map aligned with image
    """

    image: np.ndarray
    timestamp_ns: int
    imu: list[IMUMeasurement] = field(default_factory=list)
    frame_id: int = -1
    depth: np.ndarray | None = None

    @property
    def timestamp_s(self) -> float:
        """Timestamp in seconds."""
        return self.timestamp_ns * 1e-9
