"""Rigid transforms and quaternion conversions."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from ..errors import GeometryError


def quaternion_to_rotation(q: np.ndarray) -> np.ndarray:
    """Convert a Hamilton quaternion (w, x, y, z) to a rotation matrix.

    Args:
        q: Quaternion as (4,) array. Normalized before conversion.

    Returns:
        3x3 rotation matrix

    Raises:
        GeometryError: If q is not 4 finite values or has zero norm
    """
    q = np.asarray(q, dtype=np.float64).flatten()
    if q.shape != (4,) or not np.isfinite(q).all():
        raise GeometryError(f"Quaternion must be 4 finite values, got {q}")
    norm = np.linalg.norm(q)
    if norm < 1e-12:
        raise GeometryError("Quaternion has zero norm")

    w, x, y, z = q / norm
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ],
        dtype=np.float64,
    )


def rotation_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert a rotation matrix to a unit quaternion (w, x, y, z).

    Uses Shepperd's method, branching on the largest diagonal term for
    numerical stability. The sign is chosen so that w >= 0.

    Args:
        R: 3x3 rotation matrix

    Returns:
        (4,) unit quaternion
    """
    R = np.asarray(R, dtype=np.float64)
    trace = np.trace(R)

    if trace > 0:
        s = 2.0 * np.sqrt(trace + 1.0)
        q = np.array(
            [
                0.25 * s,
                (R[2, 1] - R[1, 2]) / s,
                (R[0, 2] - R[2, 0]) / s,
                (R[1, 0] - R[0, 1]) / s,
            ]
        )
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q = np.array(
            [
                (R[2, 1] - R[1, 2]) / s,
                0.25 * s,
                (R[0, 1] + R[1, 0]) / s,
                (R[0, 2] + R[2, 0]) / s,
            ]
        )
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q = np.array(
            [
                (R[0, 2] - R[2, 0]) / s,
                (R[0, 1] + R[1, 0]) / s,
                0.25 * s,
                (R[1, 2] + R[2, 1]) / s,
            ]
        )
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q = np.array(
            [
                (R[1, 0] - R[0, 1]) / s,
                (R[0, 2] + R[2, 0]) / s,
                (R[1, 2] + R[2, 1]) / s,
                0.25 * s,
            ]
        )

    q /= np.linalg.norm(q)
    if q[0] < 0:
        q = -q
    return q


def rotation_angle(R: np.ndarray) -> float:
    """Return the rotation angle of R in radians."""
    cos_angle = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.arccos(cos_angle))


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation).

    Poses are stored as T_world_camera, mapping camera-frame points into
    the world frame:

        p_world = R @ p_camera + t

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate shapes."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise GeometryError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise GeometryError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Return the identity transform."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_Rt(cls, R: np.ndarray, t: np.ndarray) -> SE3:
        """Create a transform from a rotation matrix and translation."""
        return cls(rotation=R, translation=t)

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create a transform from a 4x4 homogeneous matrix.

        Args:
            T: 4x4 matrix [[R, t], [0, 1]]

        Returns:
            SE3 transformation
        """
        T = np.asarray(T, dtype=np.float64)
        if T.shape != (4, 4):
            raise GeometryError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create a transform from an OpenCV Rodrigues vector and translation.

        cv2.solvePnP returns T_camera_world; call inverse() on the result to
        obtain the camera pose.
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    @classmethod
    def from_quaternion(cls, q: np.ndarray, translation: np.ndarray) -> SE3:
        """Create a transform from a (w, x, y, z) quaternion and translation.

        Raises:
            GeometryError: If the quaternion has zero norm
        """
        return cls(rotation=quaternion_to_rotation(q), translation=translation)

    @classmethod
    def exp(cls, xi: np.ndarray) -> SE3:
        """Build a transform from a 6-vector (rotation vector, translation).

        The translation part is used as-is (decoupled parameterization),
        matching how the optimizers parameterize poses.
        """
        xi = np.asarray(xi, dtype=np.float64).flatten()
        return cls.from_rvec_tvec(xi[:3], xi[3:])

    def log(self) -> np.ndarray:
        """Return the 6-vector (rotation vector, translation) of this transform."""
        rvec, tvec = self.to_rvec_tvec()
        return np.concatenate([rvec, tvec])

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (Rodrigues vector, translation) for OpenCV."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def to_quaternion(self) -> np.ndarray:
        """Return the rotation as a unit quaternion (w, x, y, z), w >= 0."""
        return rotation_to_quaternion(self.rotation)

    def inverse(self) -> SE3:
        """Return T^-1 = [R^T, -R^T t]."""
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Return self @ other.

        Example:
            T_world_prev.compose(T_prev_curr) gives T_world_curr
        """
        return SE3(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the transform to Nx3 points."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)
        if points.shape[1] != 3:
            raise GeometryError(f"Points must be Nx3, got {points.shape}")
        return points @ self.rotation.T + self.translation

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Apply the transform to a single 3D point."""
        point = np.asarray(point, dtype=np.float64).flatten()
        return self.rotation @ point + self.translation

    def distance_to(self, other: SE3) -> tuple[float, float]:
        """Return (translation distance, rotation angle in radians) to other."""
        delta = self.inverse().compose(other)
        return float(np.linalg.norm(delta.translation)), rotation_angle(
            delta.rotation
        )

    def is_valid(self) -> bool:
        """Return True if every entry is finite and R is a proper rotation."""
        if not (np.isfinite(self.rotation).all() and np.isfinite(self.translation).all()):
            return False
        should_be_identity = self.rotation.T @ self.rotation
        return bool(
            np.allclose(should_be_identity, np.eye(3), atol=1e-6)
            and np.linalg.det(self.rotation) > 0
        )

    @property
    def position(self) -> np.ndarray:
        """Camera origin in world coordinates."""
        return self.translation.copy()

    @property
    def forward(self) -> np.ndarray:
        """Viewing direction (camera Z axis) in world coordinates."""
        return self.rotation[:, 2].copy()

    def copy(self) -> SE3:
        """Return a deep copy."""
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    def __repr__(self) -> str:
        """Return string representation."""
        pos = self.position
        return f"SE3(position=[{pos[0]:.3f}, {pos[1]:.3f}, {pos[2]:.3f}])"

    def __matmul__(self, other: SE3) -> SE3:
        """Compose with the @ operator."""
        return self.compose(other)
