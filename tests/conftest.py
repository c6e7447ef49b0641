"""Shared fixtures: calibration, synthetic images and synthetic maps."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from recon3d.backend import KeyFrame, MapPoint
from recon3d.frontend.feature_extractor import Features
from recon3d.geometry import SE3, CameraIntrinsics, project_points

WIDTH, HEIGHT = 640, 480
FOCAL = 500.0
PLANE_DEPTH = 2.0
TEXTURE_SCALE = 0.002  # meters per texture pixel


@pytest.fixture
def intrinsics() -> CameraIntrinsics:
    """640x480 pinhole camera with f = 500."""
    return CameraIntrinsics(
        fx=FOCAL, fy=FOCAL, cx=WIDTH / 2, cy=HEIGHT / 2, width=WIDTH, height=HEIGHT
    )


@pytest.fixture
def camera_matrix(intrinsics: CameraIntrinsics) -> np.ndarray:
    return intrinsics.to_matrix()


def make_texture(seed: int = 0, size: int = 2000) -> np.ndarray:
    """Blocky random texture with plenty of corners."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(0, 256, size=(size // 8, size // 8), dtype=np.uint8)
    texture = cv2.resize(blocks, (size, size), interpolation=cv2.INTER_NEAREST)
    return cv2.GaussianBlur(texture, (3, 3), 0)


def render_plane(texture: np.ndarray, position: np.ndarray) -> np.ndarray:
    """Render a fronto-parallel textured plane at z = PLANE_DEPTH.

    The camera looks along +z with identity rotation. Texture pixel (0, 0)
    sits at world (x, y) = (-size/2, -size/2) * TEXTURE_SCALE.
    """
    cx, cy, cz = position
    distance = PLANE_DEPTH - cz
    half = texture.shape[1] / 2
    a = distance / (FOCAL * TEXTURE_SCALE)
    # Image pixel -> texture pixel
    H = np.array(
        [
            [a, 0.0, (cx - distance * (WIDTH / 2) / FOCAL) / TEXTURE_SCALE + half],
            [0.0, a, (cy - distance * (HEIGHT / 2) / FOCAL) / TEXTURE_SCALE + half],
            [0.0, 0.0, 1.0],
        ]
    )
    return cv2.warpPerspective(
        texture,
        H,
        (WIDTH, HEIGHT),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_REFLECT,
    )


@pytest.fixture
def plane_texture() -> np.ndarray:
    return make_texture()


def random_descriptors(n: int, seed: int = 0) -> np.ndarray:
    """Distinct random ORB-like descriptors."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(n, 32), dtype=np.uint8)


def make_features(points: np.ndarray, descriptors: np.ndarray) -> Features:
    n = len(points)
    return Features(
        points=np.asarray(points, dtype=np.float32),
        descriptors=np.ascontiguousarray(descriptors, dtype=np.uint8),
        scales=np.full(n, 31.0, dtype=np.float32),
        orientations=np.zeros(n, dtype=np.float32),
        responses=np.linspace(1.0, 0.5, n, dtype=np.float32) if n else np.empty(0, np.float32),
        octaves=np.zeros(n, dtype=np.int32),
    )


class SyntheticScene:
    """Points on a box in front of a row of cameras, with exact projections.

    By default the cameras sit at 0.15 m steps along +x looking down +z.
    With ``converge`` they are centered on x = 0 and turned towards the
    middle of the box, which keeps the geometry well conditioned for
    wide baselines.
    """

    def __init__(
        self,
        n_keyframes: int = 5,
        n_points: int = 150,
        seed: int = 0,
        baseline: float = 0.15,
        depth_range: tuple[float, float] = (3.0, 5.0),
        converge: bool = False,
    ) -> None:
        rng = np.random.default_rng(seed)
        self.K = np.array([[FOCAL, 0, WIDTH / 2], [0, FOCAL, HEIGHT / 2], [0, 0, 1]])
        self.points = np.column_stack(
            [
                rng.uniform(-1.0, 1.0, n_points),
                rng.uniform(-0.7, 0.7, n_points),
                rng.uniform(depth_range[0], depth_range[1], n_points),
            ]
        )
        self.descriptors = random_descriptors(n_points, seed)
        if not converge:
            self.poses = [
                SE3.from_Rt(np.eye(3), np.array([baseline * i, 0.0, 0.0]))
                for i in range(n_keyframes)
            ]
            return
        target = np.array([0.0, 0.0, 0.5 * sum(depth_range)])
        self.poses = []
        for i in range(n_keyframes):
            center = np.array([baseline * (i - 0.5 * (n_keyframes - 1)), 0.0, 0.0])
            z_axis = (target - center) / np.linalg.norm(target - center)
            x_axis = np.cross([0.0, 1.0, 0.0], z_axis)
            x_axis /= np.linalg.norm(x_axis)
            y_axis = np.cross(z_axis, x_axis)
            self.poses.append(SE3.from_Rt(np.column_stack([x_axis, y_axis, z_axis]), center))

    def project(self, pose: SE3) -> np.ndarray:
        uv, _ = project_points(self.K, pose.inverse(), self.points)
        return uv

    def build(
        self,
        pose_noise: float = 0.0,
        point_noise: float = 0.0,
        seed: int = 1,
    ) -> tuple[list[KeyFrame], list[MapPoint]]:
        """KeyFrames observing every point, optionally with perturbed estimates."""
        rng = np.random.default_rng(seed)
        keyframes = []
        for kf_id, pose in enumerate(self.poses):
            features = make_features(self.project(pose), self.descriptors)
            estimate = pose
            if kf_id > 0 and pose_noise > 0:
                estimate = SE3.from_Rt(
                    pose.rotation, pose.translation + rng.normal(0, pose_noise, 3)
                )
            keyframes.append(
                KeyFrame(
                    id=kf_id,
                    frame_id=kf_id,
                    timestamp_ns=kf_id * 100_000_000,
                    pose=estimate,
                    features=features,
                    keypoint_to_point={i: i for i in range(len(self.points))},
                )
            )
        map_points = []
        for i, position in enumerate(self.points):
            noisy = position + (rng.normal(0, point_noise, 3) if point_noise > 0 else 0.0)
            map_points.append(
                MapPoint(
                    id=i,
                    position=noisy,
                    descriptor=self.descriptors[i],
                    observations={kf.id: i for kf in keyframes},
                    reference_kf_id=0,
                )
            )
        return keyframes, map_points


@pytest.fixture
def synthetic_scene() -> SyntheticScene:
    return SyntheticScene()
