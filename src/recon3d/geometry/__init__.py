"""Geometry primitives shared by every pipeline stage."""

from .camera import Camera, CameraIntrinsics, DistortionCoeffs, project_points
from .pose import SE3, quaternion_to_rotation, rotation_angle, rotation_to_quaternion
from .triangulation import (
    TriangulationResult,
    parallax_angles,
    triangulate_and_check,
    triangulate_points,
)
from .types import Mesh, PointCloud

__all__ = [
    # Pose
    "SE3",
    "quaternion_to_rotation",
    "rotation_to_quaternion",
    "rotation_angle",
    # Camera
    "Camera",
    "CameraIntrinsics",
    "DistortionCoeffs",
    "project_points",
    # Triangulation
    "TriangulationResult",
    "triangulate_points",
    "triangulate_and_check",
    "parallax_angles",
    # Products
    "PointCloud",
    "Mesh",
]
