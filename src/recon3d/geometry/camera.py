"""Pinhole camera model: intrinsics, radial distortion and pose."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import yaml

from ..errors import GeometryError
from .pose import SE3, quaternion_to_rotation, rotation_to_quaternion

logger = logging.getLogger(__name__)


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters (pinhole model)."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)
    width: int = 0  # Image width (pixels), 0 if unknown
    height: int = 0  # Image height (pixels), 0 if unknown

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    @classmethod
    def from_matrix(cls, K: np.ndarray, width: int = 0, height: int = 0) -> CameraIntrinsics:
        """Create intrinsics from a 3x3 K matrix."""
        K = np.asarray(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise GeometryError(f"Intrinsic matrix must be 3x3, got {K.shape}")
        return cls(
            fx=float(K[0, 0]),
            fy=float(K[1, 1]),
            cx=float(K[0, 2]),
            cy=float(K[1, 2]),
            width=width,
            height=height,
        )


@dataclass
class DistortionCoeffs:
    """Radial distortion coefficients (three-term polynomial)."""

    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0

    def to_array(self) -> np.ndarray:
        """Return coefficients in OpenCV order (k1, k2, p1, p2, k3)."""
        return np.array([self.k1, self.k2, 0.0, 0.0, self.k3], dtype=np.float64)

    @property
    def is_zero(self) -> bool:
        """Return True if the model has no distortion."""
        return self.k1 == 0.0 and self.k2 == 0.0 and self.k3 == 0.0

    def apply(self, xy: np.ndarray) -> np.ndarray:
        """Distort normalized image coordinates (Nx2)."""
        if self.is_zero:
            return xy
        r2 = np.sum(xy * xy, axis=1, keepdims=True)
        factor = 1.0 + self.k1 * r2 + self.k2 * r2**2 + self.k3 * r2**3
        return xy * factor


def project_points(
    K: np.ndarray, T_camera_world: SE3, points: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Project world points into an undistorted pinhole image.

    Args:
        K: 3x3 intrinsic matrix
        T_camera_world: Transform from world to camera frame
        points: Nx3 world points

    Returns:
        Tuple of (Nx2 pixel coordinates, (N,) depths in the camera frame)
    """
    p_cam = T_camera_world.transform_points(points)
    depth = p_cam[:, 2]
    safe = np.where(np.abs(depth) < 1e-9, 1e-9, depth)
    uv = np.empty((len(p_cam), 2), dtype=np.float64)
    uv[:, 0] = K[0, 0] * p_cam[:, 0] / safe + K[0, 2]
    uv[:, 1] = K[1, 1] * p_cam[:, 1] / safe + K[1, 2]
    return uv, depth


@dataclass
class Camera:
    """A posed camera: position, unit orientation quaternion and calibration.

    The orientation quaternion (w, x, y, z) rotates camera-frame vectors
    into the world frame. It is normalized on construction so every
    Camera holds a unit quaternion.
    """

    position: np.ndarray  # (3,) camera origin in world frame
    orientation: np.ndarray  # (4,) unit quaternion (w, x, y, z)
    intrinsics: CameraIntrinsics
    distortion: DistortionCoeffs = field(default_factory=DistortionCoeffs)

    def __post_init__(self) -> None:
        """Validate shapes and normalize the quaternion."""
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        if self.position.shape != (3,):
            raise GeometryError(f"Position must be (3,), got {self.position.shape}")

        q = np.asarray(self.orientation, dtype=np.float64).flatten()
        if q.shape != (4,):
            raise GeometryError(f"Orientation must be (4,), got {q.shape}")
        norm = np.linalg.norm(q)
        if not np.isfinite(norm) or norm < 1e-12:
            raise GeometryError("Orientation quaternion has zero norm")
        self.orientation = q / norm

    @classmethod
    def from_pose(
        cls,
        pose: SE3,
        intrinsics: CameraIntrinsics,
        distortion: DistortionCoeffs | None = None,
    ) -> Camera:
        """Create a camera from a T_world_camera pose."""
        return cls(
            position=pose.translation,
            orientation=rotation_to_quaternion(pose.rotation),
            intrinsics=intrinsics,
            distortion=distortion or DistortionCoeffs(),
        )

    @property
    def pose(self) -> SE3:
        """T_world_camera derived from position and orientation."""
        return SE3(
            rotation=quaternion_to_rotation(self.orientation),
            translation=self.position,
        )

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 T_world_camera transform."""
        return self.pose.to_matrix()

    @property
    def K(self) -> np.ndarray:
        """3x3 intrinsic matrix."""
        return self.intrinsics.to_matrix()

    def project(self, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Project world points to (distorted) pixel coordinates.

        Args:
            points: Nx3 world points

        Returns:
            Tuple of (Nx2 pixels, (N,) depths). Points behind the camera
            get a non-positive depth and meaningless pixels.
        """
        p_cam = self.pose.inverse().transform_points(points)
        depth = p_cam[:, 2]
        safe = np.where(np.abs(depth) < 1e-9, 1e-9, depth)
        xy = self.distortion.apply(p_cam[:, :2] / safe[:, None])

        uv = np.empty_like(xy)
        uv[:, 0] = self.intrinsics.fx * xy[:, 0] + self.intrinsics.cx
        uv[:, 1] = self.intrinsics.fy * xy[:, 1] + self.intrinsics.cy
        return uv, depth

    def in_image(self, uv: np.ndarray, margin: float = 0.0) -> np.ndarray:
        """Return a boolean mask of pixels inside the image bounds."""
        w, h = self.intrinsics.width, self.intrinsics.height
        if w <= 0 or h <= 0:
            return np.ones(len(uv), dtype=bool)
        return (
            (uv[:, 0] >= margin)
            & (uv[:, 0] < w - margin)
            & (uv[:, 1] >= margin)
            & (uv[:, 1] < h - margin)
        )

    @staticmethod
    def load_calibration(
        yaml_path: str | Path,
    ) -> tuple[CameraIntrinsics, DistortionCoeffs]:
        """Parse an EuRoC-style sensor.yaml calibration file.

        Expected keys: ``intrinsics: [fu, fv, cu, cv]``,
        ``distortion_coefficients`` (3 radial terms, or 4/5 OpenCV terms
        whose tangential part is dropped) and optionally
        ``resolution: [width, height]``.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file format is invalid
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        intrinsics_list = data.get("intrinsics")
        if intrinsics_list is None or len(intrinsics_list) != 4:
            raise ValueError(f"Invalid intrinsics in {yaml_path}")
        width, height = data.get("resolution", [0, 0])

        intrinsics = CameraIntrinsics(
            fx=float(intrinsics_list[0]),
            fy=float(intrinsics_list[1]),
            cx=float(intrinsics_list[2]),
            cy=float(intrinsics_list[3]),
            width=int(width),
            height=int(height),
        )

        coeffs = [float(c) for c in data.get("distortion_coefficients", [])]
        if len(coeffs) == 0:
            distortion = DistortionCoeffs()
        elif len(coeffs) == 3:
            distortion = DistortionCoeffs(*coeffs)
        elif len(coeffs) in (4, 5):
            if coeffs[2] != 0.0 or coeffs[3] != 0.0:
                logger.warning(
                    "Dropping tangential distortion terms from %s", yaml_path
                )
            k3 = coeffs[4] if len(coeffs) == 5 else 0.0
            distortion = DistortionCoeffs(coeffs[0], coeffs[1], k3)
        else:
            raise ValueError(f"Invalid distortion coefficients in {yaml_path}")

        return intrinsics, distortion
